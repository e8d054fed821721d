"""Tests for YOLO label formatting and atomic label output.

Tests cover:

- format_labels() line format, precision and empty input
- atomic_write_text() replacing files and cleaning up on failure
- LabelWriter.label_path_for() mirrored and alongside layouts
- LabelWriter.write() empty files, directory creation, error mapping
- LabelWriter.write_class_names()
"""

from __future__ import annotations

from pathlib import Path
from unittest import mock

import pytest

from src.annotation.errors import LabelWriteError
from src.annotation.label_writer import (
    CLASSES_FILENAME,
    LabelWriter,
    atomic_write_text,
    format_labels,
)
from src.annotation.types import FrameDescriptor, NormalizedDetection


# ── Helpers ─────────────────────────────────────────────────────────


def _make_frame(root: Path, rel: str, index: int = 0) -> FrameDescriptor:
    return FrameDescriptor(index=index, path=root / rel, relative_path=Path(rel))


def _leftover_temp_files(directory: Path) -> list[Path]:
    return [p for p in directory.iterdir() if p.name.endswith(".tmp")]


# ── format_labels ───────────────────────────────────────────────────


class TestFormatLabels:
    """YOLO text format."""

    def test_single_detection(self):
        text = format_labels([NormalizedDetection(3, 0.5, 0.25, 0.1, 0.2)])
        assert text == "3 0.500000 0.250000 0.100000 0.200000\n"

    def test_multiple_detections_keep_order(self):
        dets = [
            NormalizedDetection(1, 0.1, 0.1, 0.1, 0.1),
            NormalizedDetection(0, 0.9, 0.9, 0.1, 0.1),
        ]
        lines = format_labels(dets).splitlines()
        assert [line.split()[0] for line in lines] == ["1", "0"]

    def test_custom_precision(self):
        text = format_labels([NormalizedDetection(0, 1 / 3, 0.5, 0.5, 0.5)], precision=3)
        assert text == "0 0.333 0.500 0.500 0.500\n"

    def test_no_detections_is_empty_string(self):
        assert format_labels([]) == ""


# ── atomic_write_text ───────────────────────────────────────────────


class TestAtomicWriteText:
    """Temp-file-and-rename semantics."""

    def test_writes_new_file(self, tmp_path: Path):
        target = tmp_path / "a.txt"
        atomic_write_text(target, "hello\n")
        assert target.read_text() == "hello\n"
        assert _leftover_temp_files(tmp_path) == []

    def test_replaces_existing_file(self, tmp_path: Path):
        target = tmp_path / "a.txt"
        target.write_text("old\n")
        atomic_write_text(target, "new\n")
        assert target.read_text() == "new\n"

    def test_crash_before_rename_keeps_old_content(self, tmp_path: Path):
        """A failure at rename leaves the previous file intact and no temp files."""
        target = tmp_path / "a.txt"
        target.write_text("old\n")
        with mock.patch(
            "src.annotation.label_writer.os.replace", side_effect=OSError("disk full")
        ):
            with pytest.raises(OSError, match="disk full"):
                atomic_write_text(target, "new\n")
        assert target.read_text() == "old\n"
        assert _leftover_temp_files(tmp_path) == []

    def test_crash_on_new_file_leaves_nothing(self, tmp_path: Path):
        target = tmp_path / "a.txt"
        with mock.patch(
            "src.annotation.label_writer.os.replace", side_effect=KeyboardInterrupt
        ):
            with pytest.raises(KeyboardInterrupt):
                atomic_write_text(target, "new\n")
        assert list(tmp_path.iterdir()) == []


# ── LabelWriter ─────────────────────────────────────────────────────


class TestLabelPathFor:
    """Label placement."""

    def test_mirrored_layout(self, tmp_path: Path):
        writer = LabelWriter(tmp_path / "labels")
        frame = _make_frame(tmp_path / "in", "level1/frame_001.png")
        assert writer.label_path_for(frame) == tmp_path / "labels" / "level1" / "frame_001.txt"

    def test_alongside_layout(self, tmp_path: Path):
        writer = LabelWriter(None)
        frame = _make_frame(tmp_path / "in", "sub/frame.jpg")
        assert writer.label_path_for(frame) == tmp_path / "in" / "sub" / "frame.txt"

    def test_same_stem_different_extension_collides(self, tmp_path: Path):
        writer = LabelWriter(tmp_path / "labels")
        a = _make_frame(tmp_path, "a.png", 0)
        b = _make_frame(tmp_path, "a.jpg", 1)
        assert writer.label_path_for(a) == writer.label_path_for(b)


class TestLabelWriterWrite:
    """Writing label files."""

    def test_write_detections(self, tmp_path: Path):
        writer = LabelWriter(tmp_path)
        path = writer.write(
            tmp_path / "f.txt", [NormalizedDetection(2, 0.5, 0.5, 0.2, 0.4)]
        )
        assert path.read_text() == "2 0.500000 0.500000 0.200000 0.400000\n"

    def test_zero_detections_writes_empty_file(self, tmp_path: Path):
        """Negative samples still get a (zero-byte) label file."""
        path = LabelWriter(tmp_path).write(tmp_path / "empty.txt", [])
        assert path.exists()
        assert path.stat().st_size == 0

    def test_creates_parent_directories(self, tmp_path: Path):
        target = tmp_path / "deep" / "er" / "f.txt"
        LabelWriter(tmp_path).write(target, [])
        assert target.exists()

    def test_os_error_becomes_label_write_error(self, tmp_path: Path):
        writer = LabelWriter(tmp_path)
        with mock.patch(
            "src.annotation.label_writer.atomic_write_text",
            side_effect=OSError("read-only file system"),
        ):
            with pytest.raises(LabelWriteError, match="read-only"):
                writer.write(tmp_path / "f.txt", [])

    def test_parent_is_a_file_raises(self, tmp_path: Path):
        (tmp_path / "blocker").write_text("x")
        with pytest.raises(LabelWriteError):
            LabelWriter(tmp_path).write(tmp_path / "blocker" / "f.txt", [])


class TestWriteClassNames:
    def test_writes_one_name_per_line(self, tmp_path: Path):
        path = LabelWriter(tmp_path / "out").write_class_names(["player", "enemy"])
        assert path == tmp_path / "out" / CLASSES_FILENAME
        assert path.read_text() == "player\nenemy\n"

    def test_alongside_mode_writes_nothing(self):
        assert LabelWriter(None).write_class_names(["player"]) is None

    def test_class_names_file_is_reserved(self, tmp_path: Path):
        assert LabelWriter(tmp_path).reserved_paths() == {tmp_path / CLASSES_FILENAME}

    def test_alongside_mode_reserves_nothing(self):
        assert LabelWriter(None).reserved_paths() == set()
