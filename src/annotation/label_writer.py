"""YOLO label formatting and atomic label file output.

Each frame gets one ``.txt`` label file with one line per detection::

    <class_id> <cx> <cy> <w> <h>

Coordinates use fixed decimal precision.  A frame with no detections
gets an empty file, which YOLO treats as a negative sample.

Files are written to a temporary file in the destination directory and
renamed into place, so readers never observe a partially written label
even if the process dies mid-write.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Iterable, Optional, Sequence

from src.annotation.errors import LabelWriteError
from src.annotation.types import FrameDescriptor, NormalizedDetection

logger = logging.getLogger(__name__)

LABEL_SUFFIX = ".txt"
CLASSES_FILENAME = "classes.txt"


def format_labels(
    detections: Iterable[NormalizedDetection],
    precision: int = 6,
) -> str:
    """Render detections in YOLO label format.

    Parameters
    ----------
    detections : iterable of NormalizedDetection
        Detections in output order.
    precision : int
        Decimal places for the coordinates.

    Returns
    -------
    str
        Newline-terminated lines, or ``""`` when there are none.
    """
    lines = [
        f"{d.class_id} {d.cx:.{precision}f} {d.cy:.{precision}f} "
        f"{d.w:.{precision}f} {d.h:.{precision}f}\n"
        for d in detections
    ]
    return "".join(lines)


def atomic_write_text(path: Path, content: str) -> None:
    """Write ``content`` to ``path`` via a temp file and rename.

    Raises
    ------
    OSError
        If the temp file cannot be created, written or renamed.  The
        temp file is removed before the error propagates.
    """
    fd, tmp = tempfile.mkstemp(
        prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent)
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as fh:
            fh.write(content)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, path)
    except BaseException:
        try:
            os.remove(tmp)
        except FileNotFoundError:
            pass
        raise


class LabelWriter:
    """Places and writes per-frame label files.

    Parameters
    ----------
    output_dir : str or Path or None
        Root of the mirrored label tree.  A frame at
        ``<input>/a/b.png`` gets ``<output_dir>/a/b.txt``.  When
        ``None``, labels are written next to their images.
    precision : int
        Decimal places for coordinates.
    """

    def __init__(
        self,
        output_dir: Optional[str | Path] = None,
        precision: int = 6,
    ) -> None:
        self.output_dir = Path(output_dir) if output_dir is not None else None
        self.precision = precision

    def label_path_for(self, frame: FrameDescriptor) -> Path:
        """Return the label file location for ``frame``."""
        if self.output_dir is None:
            return frame.path.with_suffix(LABEL_SUFFIX)
        return self.output_dir / frame.relative_path.with_suffix(LABEL_SUFFIX)

    def reserved_paths(self) -> set[Path]:
        """Paths in the output root that no frame label may claim."""
        if self.output_dir is None:
            return set()
        return {self.output_dir / CLASSES_FILENAME}

    def write(
        self,
        label_path: Path,
        detections: Sequence[NormalizedDetection],
    ) -> Path:
        """Atomically write ``detections`` to ``label_path``.

        Parent directories are created as needed.

        Parameters
        ----------
        label_path : Path
            Destination label file.
        detections : sequence of NormalizedDetection
            Detections to write; may be empty.

        Returns
        -------
        Path
            The written label path.

        Raises
        ------
        LabelWriteError
            If the directory is not writable or the disk is full.
        """
        content = format_labels(detections, self.precision)
        try:
            label_path.parent.mkdir(parents=True, exist_ok=True)
            atomic_write_text(label_path, content)
        except OSError as exc:
            raise LabelWriteError(f"Could not write {label_path}: {exc}") from exc

        logger.debug("Wrote %s (%d objects)", label_path, len(detections))
        return label_path

    def write_class_names(self, class_names: Sequence[str]) -> Path | None:
        """Write ``classes.txt`` (one name per line) into the output root.

        Returns
        -------
        Path or None
            The written file, or ``None`` when labels are written next
            to their images and there is no single output root.
        """
        if self.output_dir is None:
            return None
        path = self.output_dir / CLASSES_FILENAME
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            atomic_write_text(path, "".join(f"{name}\n" for name in class_names))
        except OSError as exc:
            raise LabelWriteError(f"Could not write {path}: {exc}") from exc
        return path
