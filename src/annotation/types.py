"""Data model for the annotation pipeline.

Frames flow through the pipeline as immutable :class:`FrameDescriptor`
values.  The detection backend produces :class:`RawDetection` boxes in
pixel space; workers convert them to :class:`NormalizedDetection`
values (YOLO format: centre and size as fractions of the image) and
report one :data:`FrameOutcome` per frame.  The
:class:`PipelineReport` is built once at the end of a run.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional, Union

# Tolerance for boxes clipped exactly to the image edge.
EPSILON = 1e-6


@dataclass(frozen=True)
class FrameDescriptor:
    """One input frame discovered by the frame source.

    Attributes
    ----------
    index : int
        Stable position in discovery order, starting at 0.
    path : Path
        Absolute path to the image file.
    relative_path : Path
        Path relative to the scanned input root.  Used to lay out
        mirrored label directories.
    width, height : int or None
        Image dimensions, filled in by the worker after decoding.
    """

    index: int
    path: Path
    relative_path: Path
    width: Optional[int] = None
    height: Optional[int] = None

    def with_size(self, width: int, height: int) -> "FrameDescriptor":
        """Return a copy of this descriptor carrying decoded dimensions."""
        return replace(self, width=width, height=height)


@dataclass(frozen=True)
class RawDetection:
    """A detection as returned by the detection backend.

    Attributes
    ----------
    class_id : int
        Model class index.
    confidence : float
        Detection confidence in ``[0, 1]``.
    bbox_px : tuple[float, float, float, float]
        ``(x_min, y_min, x_max, y_max)`` in pixels.

    Raises
    ------
    ValueError
        If the box is degenerate or the confidence is out of range.
    """

    class_id: int
    confidence: float
    bbox_px: tuple[float, float, float, float]

    def __post_init__(self) -> None:
        if self.class_id < 0:
            raise ValueError(f"class_id must be non-negative, got {self.class_id}")
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be in [0, 1], got {self.confidence}")
        x_min, y_min, x_max, y_max = self.bbox_px
        if x_max <= x_min or y_max <= y_min:
            raise ValueError(f"Degenerate bounding box: {self.bbox_px}")


@dataclass(frozen=True)
class NormalizedDetection:
    """A detection in YOLO label coordinates.

    All four coordinates are fractions of the image size in ``(0, 1]``.
    """

    class_id: int
    cx: float
    cy: float
    w: float
    h: float

    def __post_init__(self) -> None:
        for name in ("cx", "cy", "w", "h"):
            value = getattr(self, name)
            if not 0.0 < value <= 1.0:
                raise ValueError(f"{name} must be in (0, 1], got {value}")
        if self.cx - self.w / 2 < -EPSILON or self.cx + self.w / 2 > 1 + EPSILON:
            raise ValueError(f"Box exceeds horizontal bounds: cx={self.cx}, w={self.w}")
        if self.cy - self.h / 2 < -EPSILON or self.cy + self.h / 2 > 1 + EPSILON:
            raise ValueError(f"Box exceeds vertical bounds: cy={self.cy}, h={self.h}")


def _clamp01(value: float) -> float:
    return min(1.0, max(0.0, value))


def normalize_detection(
    detection: RawDetection,
    width: int,
    height: int,
) -> NormalizedDetection | None:
    """Convert a pixel-space detection to normalized YOLO coordinates.

    The box is first clipped to the image so that detector boxes
    spilling past the frame edge still produce valid labels.  Boxes
    that lie entirely outside the image have no area after clipping
    and are dropped.

    Parameters
    ----------
    detection : RawDetection
        Detection in pixel coordinates.
    width, height : int
        Decoded image dimensions.

    Returns
    -------
    NormalizedDetection or None
        The normalized detection, or ``None`` if nothing of the box
        remains inside the image.

    Raises
    ------
    ValueError
        If ``width`` or ``height`` is not positive.
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"Image dimensions must be positive, got {width}x{height}")

    x_min, y_min, x_max, y_max = detection.bbox_px
    x1 = min(max(x_min, 0.0), float(width))
    y1 = min(max(y_min, 0.0), float(height))
    x2 = min(max(x_max, 0.0), float(width))
    y2 = min(max(y_max, 0.0), float(height))

    if x2 <= x1 or y2 <= y1:
        return None

    w = _clamp01((x2 - x1) / width)
    h = _clamp01((y2 - y1) / height)
    cx = _clamp01((x1 + x2) / 2.0 / width)
    cy = _clamp01((y1 + y2) / 2.0 / height)

    # Sub-pixel slivers can underflow to zero after division.
    if w <= 0.0 or h <= 0.0 or cx <= 0.0 or cy <= 0.0:
        return None

    return NormalizedDetection(class_id=detection.class_id, cx=cx, cy=cy, w=w, h=h)


@dataclass(frozen=True)
class FrameSuccess:
    """Label file written for a frame."""

    index: int
    path: Path
    label_path: Path
    detection_count: int


@dataclass(frozen=True)
class FrameFailure:
    """Frame could not be annotated; ``reason`` explains why."""

    index: int
    path: Path
    reason: str


@dataclass(frozen=True)
class FrameSkipped:
    """Frame was intentionally not processed (cancelled, already labelled)."""

    index: int
    path: Path
    reason: str


FrameOutcome = Union[FrameSuccess, FrameFailure, FrameSkipped]


@dataclass(frozen=True)
class PipelineReport:
    """Summary of a completed (or cancelled) annotation run.

    Attributes
    ----------
    total : int
        Number of frames discovered.
    succeeded, failed, skipped : int
        Outcome counts; they always sum to ``total``.
    failures : tuple[tuple[Path, str], ...]
        ``(path, reason)`` for each failed frame, sorted by frame index.
    skips : tuple[tuple[Path, str], ...]
        ``(path, reason)`` for each skipped frame, sorted by frame index.
    detection_count : int
        Total detections written across all label files.
    cancelled : bool
        Whether the run was interrupted before all frames were processed.
    """

    total: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    failures: tuple[tuple[Path, str], ...] = ()
    skips: tuple[tuple[Path, str], ...] = ()
    detection_count: int = 0
    cancelled: bool = False
