"""Per-frame annotation: decode, detect, normalize, write.

:class:`AnnotationWorker` is stateless between frames and is shared by
all pool threads.  :meth:`AnnotationWorker.process` never raises: every
failure is caught at the frame boundary and reported as a
``FrameFailure`` outcome so that sibling frames keep running.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path

import cv2
import numpy as np

from src.annotation.detection import DetectionAdapter
from src.annotation.errors import (
    AdapterError,
    AnnotationError,
    DecodeError,
    DetectionCancelledError,
    DetectionTimeoutError,
)
from src.annotation.label_writer import LabelWriter
from src.annotation.types import (
    FrameDescriptor,
    FrameFailure,
    FrameOutcome,
    FrameSkipped,
    FrameSuccess,
    NormalizedDetection,
    RawDetection,
    normalize_detection,
)

logger = logging.getLogger(__name__)

CANCELLED = "cancelled"
LABEL_EXISTS = "label exists"


def decode_image(path: Path) -> np.ndarray:
    """Read an image file into a BGR array.

    Raises
    ------
    DecodeError
        If the file is missing, unreadable or not a decodable image.
    """
    try:
        image = cv2.imread(str(path), cv2.IMREAD_COLOR)
    except cv2.error as exc:
        raise DecodeError(f"could not decode image: {exc}") from exc
    if image is None or image.size == 0:
        raise DecodeError("could not decode image")
    return image


class AnnotationWorker:
    """Turns one frame into one label file.

    Parameters
    ----------
    adapter : DetectionAdapter
        Detection backend, shared by all workers.
    writer : LabelWriter
        Label file writer.
    confidence_threshold : float
        Detections strictly below this confidence are dropped.
    skip_existing : bool
        Report frames whose label file already exists as skipped
        instead of re-annotating them.
    """

    def __init__(
        self,
        adapter: DetectionAdapter,
        writer: LabelWriter,
        confidence_threshold: float = 0.25,
        skip_existing: bool = False,
    ) -> None:
        self.adapter = adapter
        self.writer = writer
        self.confidence_threshold = confidence_threshold
        self.skip_existing = skip_existing

    def process(
        self,
        frame: FrameDescriptor,
        label_path: Path,
        cancel_event: threading.Event | None = None,
    ) -> FrameOutcome:
        """Annotate ``frame`` and write its label to ``label_path``.

        Parameters
        ----------
        frame : FrameDescriptor
            The frame to annotate.
        label_path : Path
            Destination label file, reserved for this frame by the
            scheduler.
        cancel_event : threading.Event, optional
            Checked between stages; when set, the frame is skipped
            without writing a label.

        Returns
        -------
        FrameOutcome
            Exactly one outcome for ``frame``.
        """
        try:
            return self._process(frame, label_path, cancel_event)
        except DetectionCancelledError:
            return FrameSkipped(index=frame.index, path=frame.path, reason=CANCELLED)
        except AnnotationError as exc:
            logger.warning("Frame %d (%s) failed: %s", frame.index, frame.path.name, exc)
            return FrameFailure(index=frame.index, path=frame.path, reason=exc.reason)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected error on frame %d (%s)", frame.index, frame.path)
            return FrameFailure(
                index=frame.index, path=frame.path, reason=f"unexpected error: {exc}"
            )

    def _process(
        self,
        frame: FrameDescriptor,
        label_path: Path,
        cancel_event: threading.Event | None,
    ) -> FrameOutcome:
        if cancel_event is not None and cancel_event.is_set():
            return FrameSkipped(index=frame.index, path=frame.path, reason=CANCELLED)

        if self.skip_existing and label_path.exists():
            logger.debug("Skipped %s (label exists)", frame.path.name)
            return FrameSkipped(index=frame.index, path=frame.path, reason=LABEL_EXISTS)

        image = decode_image(frame.path)
        height, width = image.shape[:2]
        frame = frame.with_size(width, height)

        raw = self._detect(image)
        del image

        if cancel_event is not None and cancel_event.is_set():
            return FrameSkipped(index=frame.index, path=frame.path, reason=CANCELLED)

        detections = self._normalize(raw, width, height, frame.path.name)
        self.writer.write(label_path, detections)

        logger.debug(
            "Frame %d (%s): %d/%d detections kept",
            frame.index,
            frame.path.name,
            len(detections),
            len(raw),
        )
        return FrameSuccess(
            index=frame.index,
            path=frame.path,
            label_path=label_path,
            detection_count=len(detections),
        )

    def _detect(self, image: np.ndarray) -> list[RawDetection]:
        """Call the adapter, mapping backend exceptions to adapter errors."""
        try:
            return list(self.adapter.detect(image))
        except AnnotationError:
            raise
        except TimeoutError as exc:
            raise DetectionTimeoutError() from exc
        except Exception as exc:
            raise AdapterError(f"detection failed: {exc}") from exc

    def _normalize(
        self,
        raw: list[RawDetection],
        width: int,
        height: int,
        name: str,
    ) -> list[NormalizedDetection]:
        """Filter by confidence and convert to YOLO coordinates."""
        kept: list[NormalizedDetection] = []
        for det in raw:
            if det.confidence < self.confidence_threshold:
                continue
            norm = normalize_detection(det, width, height)
            if norm is None:
                logger.debug("Dropped out-of-frame box %s on %s", det.bbox_px, name)
                continue
            kept.append(norm)
        return kept
