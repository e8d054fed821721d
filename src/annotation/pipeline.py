"""Public entry point for a batch annotation run."""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path

from src.annotation.config import AnnotationConfig
from src.annotation.detection import DetectionAdapter, TimeoutDetectionAdapter
from src.annotation.errors import OutputDirError
from src.annotation.frame_source import FrameSource
from src.annotation.label_writer import LabelWriter
from src.annotation.pool import WorkerPool
from src.annotation.types import PipelineReport
from src.annotation.worker import AnnotationWorker

logger = logging.getLogger(__name__)


def prepare_output_dir(output_dir: Path | None) -> None:
    """Create the label output root.

    Raises
    ------
    OutputDirError
        If the directory cannot be created or is not a directory.
    """
    if output_dir is None:
        return
    try:
        output_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise OutputDirError(f"Cannot create output directory {output_dir}: {exc}") from exc
    if not output_dir.is_dir():
        raise OutputDirError(f"Output path is not a directory: {output_dir}")


def run_pipeline(
    config: AnnotationConfig,
    adapter: DetectionAdapter,
    cancel_event: threading.Event | None = None,
) -> PipelineReport:
    """Annotate every frame under ``config.input_dir``.

    The input directory is validated before anything is written, so a
    missing source leaves no output behind.  Per-frame errors never
    escape; they are summarised in the returned report.

    Parameters
    ----------
    config : AnnotationConfig
        Run configuration.
    adapter : DetectionAdapter
        Detection backend.  Always wrapped in a
        :class:`TimeoutDetectionAdapter`, so a blocked call is bounded by
        ``config.per_frame_timeout_s`` (when set) and by the cancellation
        grace period.
    cancel_event : threading.Event, optional
        Set it (e.g. from a SIGINT handler) to stop admitting frames.
        The partial report is still returned.

    Returns
    -------
    PipelineReport

    Raises
    ------
    SourceNotFoundError
        If the input directory does not exist.
    OutputDirError
        If the output directory cannot be created.
    AggregationInvariantError
        If the scheduler lost or duplicated a frame outcome.
    """
    cancel_event = cancel_event or threading.Event()

    source = FrameSource(
        config.input_dir,
        extensions=config.supported_extensions,
        recursive=config.recursive_scan,
    )
    source.validate()
    prepare_output_dir(config.output_dir)

    logger.info(
        "Annotating %s -> %s (concurrency=%d, conf>=%.2f, timeout=%s)",
        config.input_dir,
        config.output_dir if config.output_dir is not None else "<alongside images>",
        config.concurrency,
        config.confidence_threshold,
        f"{config.per_frame_timeout_s:.1f}s" if config.per_frame_timeout_s else "none",
    )

    timed = TimeoutDetectionAdapter(
        adapter,
        timeout_s=config.per_frame_timeout_s,
        max_workers=config.concurrency,
        cancel_event=cancel_event,
        grace_period_s=config.cancel_grace_period_s,
    )

    worker = AnnotationWorker(
        adapter=timed,
        writer=LabelWriter(config.output_dir, precision=config.label_precision),
        confidence_threshold=config.confidence_threshold,
        skip_existing=config.skip_existing,
    )
    pool = WorkerPool(
        worker,
        concurrency=config.concurrency,
        prefetch_margin=config.prefetch_margin,
        cancel_event=cancel_event,
    )

    start = time.monotonic()
    try:
        report = pool.run(source)
    finally:
        timed.close()

    logger.info(
        "Annotation finished in %.1fs (%d detections written)",
        time.monotonic() - start,
        report.detection_count,
    )
    return report
