"""Bounded worker pool that fans frames out to annotation workers.

The scheduler runs on the calling thread.  It pulls frames from the
source one at a time and admits each through an :class:`AdmissionGate`
that caps the number of in-flight frames at
``concurrency + prefetch_margin``.  Frames are decoded only inside a
running worker, so at most ``concurrency`` decoded images are resident
at once, however large the input directory is.

Every admitted or rejected frame produces exactly one outcome in the
:class:`~src.annotation.aggregator.ResultAggregator`; the report is
built only after the executor has joined all worker threads.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Iterable

from src.annotation.aggregator import ResultAggregator
from src.annotation.errors import SourceEmptyError
from src.annotation.types import (
    FrameDescriptor,
    FrameFailure,
    FrameSkipped,
    PipelineReport,
)
from src.annotation.worker import CANCELLED, AnnotationWorker

logger = logging.getLogger(__name__)

# Wake-up interval for the admission wait, so cancellation is seen
# even if no worker finishes.
_GATE_POLL_S = 0.1


class AdmissionGate:
    """Counter of in-flight frames with a blocking upper bound.

    Parameters
    ----------
    limit : int
        Maximum number of frames admitted but not yet finished.
    """

    def __init__(self, limit: int) -> None:
        if limit < 1:
            raise ValueError(f"limit must be >= 1, got {limit}")
        self.limit = limit
        self._cond = threading.Condition()
        self._in_flight = 0
        self._peak = 0

    @property
    def in_flight(self) -> int:
        with self._cond:
            return self._in_flight

    @property
    def peak(self) -> int:
        """Highest in-flight count observed so far."""
        with self._cond:
            return self._peak

    def acquire(self, cancel_event: threading.Event) -> bool:
        """Block until a slot is free.

        Returns
        -------
        bool
            ``True`` if a slot was taken, ``False`` if ``cancel_event``
            was set while waiting.
        """
        with self._cond:
            while self._in_flight >= self.limit:
                if cancel_event.is_set():
                    return False
                self._cond.wait(timeout=_GATE_POLL_S)
            if cancel_event.is_set():
                return False
            self._in_flight += 1
            self._peak = max(self._peak, self._in_flight)
            return True

    def release(self) -> None:
        with self._cond:
            self._in_flight -= 1
            self._cond.notify()

    def wake_all(self) -> None:
        with self._cond:
            self._cond.notify_all()


class WorkerPool:
    """Run an :class:`AnnotationWorker` over a stream of frames.

    Parameters
    ----------
    worker : AnnotationWorker
        Shared, thread-safe per-frame processor.
    concurrency : int
        Number of worker threads.
    prefetch_margin : int
        Extra frames admitted beyond ``concurrency``.  These wait in
        the executor queue undecoded.
    cancel_event : threading.Event, optional
        Shared cancellation signal.  A fresh event is created if not
        given; :meth:`cancel` sets it.
    """

    def __init__(
        self,
        worker: AnnotationWorker,
        concurrency: int,
        prefetch_margin: int = 2,
        cancel_event: threading.Event | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        self.worker = worker
        self.concurrency = concurrency
        self.prefetch_margin = max(0, prefetch_margin)
        self.cancel_event = cancel_event or threading.Event()
        self.gate = AdmissionGate(concurrency + self.prefetch_margin)

    def cancel(self) -> None:
        """Stop admitting frames; in-flight frames wind down."""
        if not self.cancel_event.is_set():
            logger.info("Cancellation requested; no new frames will be admitted")
        self.cancel_event.set()
        self.gate.wake_all()

    def run(self, frames: Iterable[FrameDescriptor]) -> PipelineReport:
        """Process every frame and return the aggregated report.

        Parameters
        ----------
        frames : iterable of FrameDescriptor
            Frames in submission order.  Pulled lazily.  A
            :class:`~src.annotation.errors.SourceEmptyError` raised by
            the iterable yields a zero-frame report.

        Returns
        -------
        PipelineReport

        Raises
        ------
        AggregationInvariantError
            If an outcome is missing or duplicated (scheduler bug).
        """
        aggregator = ResultAggregator()
        # Label path -> name of the frame or file that owns it.
        claimed: dict[Path, str] = {
            path: path.name for path in self.worker.writer.reserved_paths()
        }
        total = 0

        executor = ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix="annotate"
        )
        try:
            for frame in frames:
                total += 1
                self._admit(frame, executor, aggregator, claimed)
        except SourceEmptyError as exc:
            logger.warning("%s", exc)
        finally:
            # Joins every worker thread before the report is built.
            executor.shutdown(wait=True)

        report = aggregator.build_report(total, cancelled=self.cancel_event.is_set())
        logger.info(
            "Processed %d frames: %d succeeded, %d failed, %d skipped%s",
            report.total,
            report.succeeded,
            report.failed,
            report.skipped,
            " (cancelled)" if report.cancelled else "",
        )
        return report

    def _admit(
        self,
        frame: FrameDescriptor,
        executor: ThreadPoolExecutor,
        aggregator: ResultAggregator,
        claimed: dict[Path, str],
    ) -> None:
        """Submit ``frame`` or record its outcome directly."""
        if self.cancel_event.is_set():
            aggregator.record(FrameSkipped(frame.index, frame.path, CANCELLED))
            return

        label_path = self.worker.writer.label_path_for(frame)
        owner = claimed.get(label_path)
        if owner is not None:
            reason = f"label path collision with {owner}"
            logger.warning("Frame %d (%s): %s", frame.index, frame.path.name, reason)
            aggregator.record(FrameFailure(frame.index, frame.path, reason))
            return
        claimed[label_path] = frame.relative_path.as_posix()

        if not self.gate.acquire(self.cancel_event):
            aggregator.record(FrameSkipped(frame.index, frame.path, CANCELLED))
            return

        try:
            executor.submit(self._run_frame, frame, label_path, aggregator)
        except BaseException:
            self.gate.release()
            raise

    def _run_frame(
        self,
        frame: FrameDescriptor,
        label_path: Path,
        aggregator: ResultAggregator,
    ) -> None:
        try:
            aggregator.record(self.worker.process(frame, label_path, self.cancel_event))
        finally:
            self.gate.release()
