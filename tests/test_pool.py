"""Tests for the bounded worker pool.

Tests cover:

- AdmissionGate limit, release and cancellation
- Every frame gets exactly one outcome
- Concurrent detect calls never exceed the worker count
- Frames are pulled lazily (in-flight bound)
- Single-worker runs
- Per-frame failures do not stop sibling frames
- Label path collisions, including the reserved classes.txt
- Cancellation mid-run
- Empty sources
"""

from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Iterator

import pytest

from src.annotation.errors import SourceEmptyError
from src.annotation.frame_source import FrameSource
from src.annotation.label_writer import LabelWriter
from src.annotation.pool import AdmissionGate, WorkerPool
from src.annotation.types import FrameDescriptor, RawDetection
from src.annotation.worker import AnnotationWorker

from conftest import ScriptedAdapter, write_frame

EXTS = (".png", ".jpg")


# ── Helpers ─────────────────────────────────────────────────────────


def _make_frames(root: Path, count: int) -> Path:
    for i in range(count):
        write_frame(root / f"frame_{i:03d}.png", width=32, height=32)
    return root


def _make_pool(
    out: Path,
    adapter: ScriptedAdapter,
    concurrency: int = 2,
    prefetch_margin: int = 1,
) -> WorkerPool:
    worker = AnnotationWorker(adapter, LabelWriter(out))
    return WorkerPool(worker, concurrency=concurrency, prefetch_margin=prefetch_margin)


class _CountingSource:
    """Wrap a frame iterable and count how many frames were pulled."""

    def __init__(self, frames):
        self.frames = frames
        self.pulled = 0

    def __iter__(self) -> Iterator[FrameDescriptor]:
        for frame in self.frames:
            self.pulled += 1
            yield frame


def _wait_for(predicate, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        time.sleep(0.01)


def _run_in_thread(pool: WorkerPool, frames) -> tuple[threading.Thread, dict]:
    result: dict = {}

    def _target():
        result["report"] = pool.run(frames)

    thread = threading.Thread(target=_target, daemon=True)
    thread.start()
    return thread, result


# ── AdmissionGate ───────────────────────────────────────────────────


class TestAdmissionGate:
    def test_acquire_up_to_limit(self):
        gate = AdmissionGate(2)
        never = threading.Event()
        assert gate.acquire(never)
        assert gate.acquire(never)
        assert gate.in_flight == 2
        assert gate.peak == 2

    def test_blocks_until_release(self):
        gate = AdmissionGate(1)
        never = threading.Event()
        gate.acquire(never)
        acquired = threading.Event()

        def _second():
            gate.acquire(never)
            acquired.set()

        threading.Thread(target=_second, daemon=True).start()
        assert not acquired.wait(0.2)
        gate.release()
        assert acquired.wait(2.0)

    def test_cancel_unblocks_waiter(self):
        gate = AdmissionGate(1)
        cancel = threading.Event()
        gate.acquire(cancel)
        result: list[bool] = []
        waiter = threading.Thread(target=lambda: result.append(gate.acquire(cancel)))
        waiter.start()
        cancel.set()
        gate.wake_all()
        waiter.join(2.0)
        assert result == [False]
        assert gate.in_flight == 1

    def test_invalid_limit(self):
        with pytest.raises(ValueError):
            AdmissionGate(0)


# ── WorkerPool ──────────────────────────────────────────────────────


class TestWorkerPoolCoverage:
    """One outcome per frame."""

    def test_all_frames_succeed(self, tmp_path: Path):
        root = _make_frames(tmp_path / "in", 12)
        adapter = ScriptedAdapter(lambda img: [RawDetection(0, 0.9, (0, 0, 8, 8))])
        report = _make_pool(tmp_path / "out", adapter, concurrency=4).run(
            FrameSource(root, EXTS)
        )
        assert report.total == 12
        assert report.succeeded == 12
        assert report.detection_count == 12
        assert len(list((tmp_path / "out").glob("*.txt"))) == 12

    def test_single_worker(self, tmp_path: Path):
        root = _make_frames(tmp_path / "in", 5)
        adapter = ScriptedAdapter()
        report = _make_pool(tmp_path / "out", adapter, concurrency=1, prefetch_margin=0).run(
            FrameSource(root, EXTS)
        )
        assert report.succeeded == 5
        assert adapter.max_active == 1

    def test_failure_does_not_stop_siblings(self, tmp_path: Path):
        root = _make_frames(tmp_path / "in", 4)
        (root / "frame_002.png").write_bytes(b"corrupt")
        report = _make_pool(tmp_path / "out", ScriptedAdapter()).run(FrameSource(root, EXTS))
        assert (report.succeeded, report.failed) == (3, 1)
        assert report.failures == ((root.resolve() / "frame_002.png", "could not decode image"),)
        assert not (tmp_path / "out" / "frame_002.txt").exists()

    def test_empty_source_gives_zero_report(self, tmp_path: Path):
        (tmp_path / "in").mkdir()
        report = _make_pool(tmp_path / "out", ScriptedAdapter()).run(
            FrameSource(tmp_path / "in", EXTS)
        )
        assert report.total == 0
        assert report.succeeded == report.failed == report.skipped == 0

    def test_source_empty_error_from_iterable(self, tmp_path: Path):
        def _frames():
            raise SourceEmptyError("nothing here")
            yield  # pragma: no cover

        report = _make_pool(tmp_path / "out", ScriptedAdapter()).run(_frames())
        assert report.total == 0

    def test_invalid_concurrency(self, tmp_path: Path):
        with pytest.raises(ValueError):
            _make_pool(tmp_path, ScriptedAdapter(), concurrency=0)


class TestWorkerPoolBackpressure:
    """Bounded concurrency and lazy pulling."""

    def test_concurrent_detects_bounded_by_workers(self, tmp_path: Path):
        root = _make_frames(tmp_path / "in", 20)

        def _slow(img):
            time.sleep(0.02)
            return []

        adapter = ScriptedAdapter(_slow)
        pool = _make_pool(tmp_path / "out", adapter, concurrency=3, prefetch_margin=2)
        report = pool.run(FrameSource(root, EXTS))
        assert report.succeeded == 20
        assert 1 <= adapter.max_active <= 3
        assert pool.gate.peak <= 3 + 2

    def test_frames_pulled_lazily(self, tmp_path: Path):
        """While workers are blocked, the scheduler stops pulling frames."""
        root = _make_frames(tmp_path / "in", 10)
        release = threading.Event()

        def _blocked(img):
            release.wait(timeout=10)
            return []

        adapter = ScriptedAdapter(_blocked)
        pool = _make_pool(tmp_path / "out", adapter, concurrency=2, prefetch_margin=1)
        source = _CountingSource(FrameSource(root, EXTS))

        thread, result = _run_in_thread(pool, source)
        try:
            _wait_for(lambda: adapter.active == 2)
            time.sleep(0.2)
            # concurrency + margin admitted, plus the one waiting at the gate.
            assert source.pulled <= 2 + 1 + 1
            assert pool.gate.in_flight <= 3
        finally:
            release.set()
            thread.join(10)

        assert result["report"].succeeded == 10


class TestWorkerPoolCollisions:
    def test_same_stem_collision_fails_later_frame(self, tmp_path: Path):
        root = tmp_path / "in"
        write_frame(root / "a.png")
        write_frame(root / "a.jpg")
        write_frame(root / "b.png")
        report = _make_pool(tmp_path / "out", ScriptedAdapter()).run(FrameSource(root, EXTS))
        assert report.total == 3
        assert (report.succeeded, report.failed) == (2, 1)
        (path, reason), = report.failures
        assert path.name == "a.png"
        assert reason == "label path collision with a.jpg"

    def test_frame_cannot_take_class_names_file(self, tmp_path: Path):
        root = tmp_path / "in"
        write_frame(root / "classes.png")
        write_frame(root / "frame_000.png")
        report = _make_pool(tmp_path / "out", ScriptedAdapter()).run(FrameSource(root, EXTS))
        assert (report.succeeded, report.failed) == (1, 1)
        (path, reason), = report.failures
        assert path.name == "classes.png"
        assert reason == "label path collision with classes.txt"
        assert not (tmp_path / "out" / "classes.txt").exists()

    def test_alongside_mode_reserves_nothing(self, tmp_path: Path):
        root = tmp_path / "in"
        write_frame(root / "classes.png")
        worker = AnnotationWorker(ScriptedAdapter(), LabelWriter(None))
        report = WorkerPool(worker, concurrency=1).run(FrameSource(root, EXTS))
        assert report.succeeded == 1
        assert (root / "classes.txt").exists()


class TestWorkerPoolCancellation:
    def test_cancel_mid_run(self, tmp_path: Path):
        root = _make_frames(tmp_path / "in", 10)
        release = threading.Event()

        def _blocked(img):
            release.wait(timeout=10)
            return []

        adapter = ScriptedAdapter(_blocked)
        pool = _make_pool(tmp_path / "out", adapter, concurrency=2, prefetch_margin=1)

        thread, result = _run_in_thread(pool, FrameSource(root, EXTS))
        try:
            _wait_for(lambda: adapter.active == 2)
            pool.cancel()
        finally:
            release.set()
            thread.join(10)

        report = result["report"]
        assert report.cancelled is True
        assert report.total == 10
        assert report.succeeded + report.failed + report.skipped == 10
        assert report.skipped >= 7
        assert all(reason == "cancelled" for _, reason in report.skips)
        labels = list((tmp_path / "out").glob("*.txt")) if (tmp_path / "out").exists() else []
        assert len(labels) == report.succeeded

    def test_cancel_before_run_skips_everything(self, tmp_path: Path):
        root = _make_frames(tmp_path / "in", 3)
        adapter = ScriptedAdapter()
        pool = _make_pool(tmp_path / "out", adapter)
        pool.cancel()
        report = pool.run(FrameSource(root, EXTS))
        assert report.skipped == 3
        assert adapter.calls == 0
