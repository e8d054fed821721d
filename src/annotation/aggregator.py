"""Fan-in of per-frame outcomes and final report construction."""

from __future__ import annotations

import logging
import threading

from src.annotation.errors import AggregationInvariantError
from src.annotation.types import (
    FrameFailure,
    FrameOutcome,
    FrameSkipped,
    FrameSuccess,
    PipelineReport,
)

logger = logging.getLogger(__name__)


class ResultAggregator:
    """Thread-safe collector of :data:`FrameOutcome` values keyed by index.

    Workers call :meth:`record` from their own threads in completion
    order.  The lock is held only for the dictionary update.  Once all
    workers are joined, :meth:`build_report` checks that every frame
    index in ``[0, total)`` received exactly one outcome.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._outcomes: dict[int, FrameOutcome] = {}
        self._duplicates: list[int] = []

    def record(self, outcome: FrameOutcome) -> None:
        """Store ``outcome``.  A second outcome for an index is kept aside."""
        with self._lock:
            if outcome.index in self._outcomes:
                self._duplicates.append(outcome.index)
                duplicate = True
            else:
                self._outcomes[outcome.index] = outcome
                duplicate = False
        if duplicate:
            logger.error("Duplicate outcome for frame %d: %r", outcome.index, outcome)

    def __len__(self) -> int:
        with self._lock:
            return len(self._outcomes)

    def outcomes(self) -> list[FrameOutcome]:
        """Return recorded outcomes sorted by frame index."""
        with self._lock:
            return [self._outcomes[i] for i in sorted(self._outcomes)]

    def build_report(self, total: int, cancelled: bool = False) -> PipelineReport:
        """Validate coverage and build the final :class:`PipelineReport`.

        Parameters
        ----------
        total : int
            Number of frames submitted by the scheduler.
        cancelled : bool
            Whether the run was interrupted.

        Returns
        -------
        PipelineReport

        Raises
        ------
        AggregationInvariantError
            If any index in ``[0, total)`` is missing, duplicated, or an
            index outside that range was recorded.
        """
        with self._lock:
            outcomes = dict(self._outcomes)
            duplicates = sorted(set(self._duplicates))

        missing = [i for i in range(total) if i not in outcomes]
        unexpected = sorted(i for i in outcomes if i < 0 or i >= total)
        if missing or duplicates or unexpected:
            raise AggregationInvariantError(missing, duplicates, unexpected)

        ordered = [outcomes[i] for i in range(total)]
        successes = [o for o in ordered if isinstance(o, FrameSuccess)]
        failures = [o for o in ordered if isinstance(o, FrameFailure)]
        skips = [o for o in ordered if isinstance(o, FrameSkipped)]

        return PipelineReport(
            total=total,
            succeeded=len(successes),
            failed=len(failures),
            skipped=len(skips),
            failures=tuple((o.path, o.reason) for o in failures),
            skips=tuple((o.path, o.reason) for o in skips),
            detection_count=sum(o.detection_count for o in successes),
            cancelled=cancelled,
        )
