"""Detection backend boundary.

The pipeline only knows the :class:`DetectionAdapter` interface: give
it a decoded BGR frame, get back a list of pixel-space
:class:`~src.annotation.types.RawDetection` values.  Any backend (the
ultralytics YOLO wrapper in :mod:`src.perception.yolo_detector`, a
remote service, a test double) can be plugged in as long as ``detect``
is safe to call from several worker threads at once.

:class:`TimeoutDetectionAdapter` wraps another adapter and bounds each
call by a per-frame timeout.
"""

from __future__ import annotations

import abc
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from concurrent.futures import wait

import numpy as np

from src.annotation.errors import (
    AdapterError,
    DetectionCancelledError,
    DetectionTimeoutError,
)
from src.annotation.types import RawDetection

logger = logging.getLogger(__name__)

# Poll interval while waiting on a detection call, so cancellation is
# noticed promptly.
_WAIT_SLICE_S = 0.05


class DetectionAdapter(abc.ABC):
    """Single-method interface to an object detection backend."""

    @abc.abstractmethod
    def detect(self, image: np.ndarray) -> list[RawDetection]:
        """Run detection on one decoded frame.

        Parameters
        ----------
        image : np.ndarray
            BGR image as ``(H, W, 3)`` uint8 array.

        Returns
        -------
        list[RawDetection]
            Detections in backend order; may be empty.

        Raises
        ------
        AdapterError
            If inference fails.
        """


class TimeoutDetectionAdapter(DetectionAdapter):
    """Bound each detection call of ``adapter`` by ``timeout_s`` seconds.

    Calls run on a dedicated inference executor so the calling worker
    can stop waiting.  The timeout clock starts when the backend call
    begins running, not when it is queued, so a call stuck behind a
    straggler is not charged for the wait.  Python threads cannot be
    killed, so a call that overruns keeps its inference thread busy
    until the backend returns; :meth:`close` waits for such stragglers
    for at most the grace period.

    Parameters
    ----------
    adapter : DetectionAdapter
        The backend to wrap.
    timeout_s : float or None
        Per-call timeout in seconds.  ``None`` disables the timeout;
        calls are then bounded only by cancellation.
    max_workers : int
        Size of the inference executor.  Should match the worker pool
        concurrency.
    cancel_event : threading.Event, optional
        When set, queued and running calls are given at most ``grace_period_s`` more before being abandoned with
        :class:`~src.annotation.errors.DetectionCancelledError`.
    grace_period_s : float
        Grace period for in-flight calls after cancellation and on
        :meth:`close`.
    """

    def __init__(
        self,
        adapter: DetectionAdapter,
        timeout_s: float | None,
        max_workers: int,
        cancel_event: threading.Event | None = None,
        grace_period_s: float = 5.0,
    ) -> None:
        self.adapter = adapter
        self.timeout_s = timeout_s
        self.grace_period_s = grace_period_s
        self._cancel_event = cancel_event or threading.Event()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="detect"
        )
        self._lock = threading.Lock()
        self._pending: set[Future] = set()

    def detect(self, image: np.ndarray) -> list[RawDetection]:
        started: list[float] = []
        future = self._executor.submit(self._timed_call, image, started)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._discard)

        cancel_deadline: float | None = None
        while True:
            now = time.monotonic()
            if self._cancel_event.is_set() and cancel_deadline is None:
                cancel_deadline = now + self.grace_period_s

            deadline: float | None = None
            if started and self.timeout_s is not None:
                deadline = started[0] + self.timeout_s
            limits = [t for t in (deadline, cancel_deadline) if t is not None]
            wait_s = _WAIT_SLICE_S
            if limits:
                remaining = max(min(limits) - now, 0.0)
                if remaining == 0 and not future.done():
                    future.cancel()
                    if cancel_deadline is not None and (
                        deadline is None or cancel_deadline <= deadline
                    ):
                        raise DetectionCancelledError()
                    raise DetectionTimeoutError()
                wait_s = min(remaining, _WAIT_SLICE_S)

            try:
                return future.result(timeout=wait_s)
            except FutureTimeoutError:
                if not future.done() or not isinstance(future.exception(), TimeoutError):
                    continue
                # The backend itself raised TimeoutError.
                raise DetectionTimeoutError() from None
            except TimeoutError as exc:
                raise DetectionTimeoutError() from exc
            except AdapterError:
                raise
            except Exception as exc:
                raise AdapterError(f"Detection failed: {exc}") from exc

    def _timed_call(self, image: np.ndarray, started: list[float]) -> list[RawDetection]:
        started.append(time.monotonic())
        return self.adapter.detect(image)

    def _discard(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def close(self) -> None:
        """Shut down the inference executor.

        Waits up to ``grace_period_s`` for calls that outlived their
        timeout, then returns without joining any that are still stuck.
        """
        with self._lock:
            pending = set(self._pending)
        if pending:
            done, not_done = wait(pending, timeout=self.grace_period_s)
            if not_done:
                logger.warning(
                    "%d detection call(s) still running after %.1fs grace period; "
                    "abandoning them",
                    len(not_done),
                    self.grace_period_s,
                )
                self._executor.shutdown(wait=False, cancel_futures=True)
                return
        self._executor.shutdown(wait=True)

    def __enter__(self) -> "TimeoutDetectionAdapter":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:  # noqa: ANN001
        self.close()
        return False
