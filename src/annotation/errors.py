"""Exception hierarchy for the annotation pipeline.

Errors fall into three groups:

- **Fatal** -- :class:`SourceNotFoundError` and :class:`OutputDirError`
  abort a run before any frame is processed.
- **Per-frame** -- :class:`DecodeError`, :class:`AdapterError` (and its
  :class:`DetectionTimeoutError` subclass) and :class:`LabelWriteError`
  are converted into ``FrameFailure`` outcomes by the worker and never
  leave the frame boundary.
- **Internal** -- :class:`AggregationInvariantError` signals a
  scheduler bug (duplicate or missing outcome) and is kept separate
  from user-facing frame failures.
"""

from __future__ import annotations


class AnnotationError(Exception):
    """Base class for all annotation pipeline errors."""

    @property
    def reason(self) -> str:
        """Short human-readable reason recorded in frame outcomes."""
        return str(self)


class SourceError(AnnotationError):
    """Raised when the input frame directory cannot be enumerated."""


class SourceNotFoundError(SourceError):
    """Raised when the input root does not exist or is not a directory."""


class SourceEmptyError(SourceError):
    """Raised when the input root contains no supported image files.

    Non-fatal: the pool turns it into a valid zero-frame report.
    """


class OutputDirError(AnnotationError):
    """Raised when the label output directory cannot be created."""


class DecodeError(AnnotationError):
    """Raised when an image file cannot be read or decoded."""


class AdapterError(AnnotationError):
    """Raised by a detection adapter when inference fails."""


class DetectionTimeoutError(AdapterError):
    """Raised when a detection call exceeds the per-frame timeout."""

    def __init__(self, message: str = "timeout") -> None:
        super().__init__(message)


class DetectionCancelledError(AdapterError):
    """Raised when a pending detection call is abandoned on cancellation."""

    def __init__(self, message: str = "cancelled") -> None:
        super().__init__(message)


class LabelWriteError(AnnotationError):
    """Raised when a label file cannot be written to its destination."""


class AggregationInvariantError(AnnotationError):
    """Raised when collected outcomes do not cover every frame exactly once.

    Attributes
    ----------
    missing : list[int]
        Frame indices with no recorded outcome.
    duplicates : list[int]
        Frame indices that received more than one outcome.
    unexpected : list[int]
        Recorded indices outside ``[0, total)``.
    """

    def __init__(
        self,
        missing: list[int],
        duplicates: list[int],
        unexpected: list[int],
    ) -> None:
        self.missing = missing
        self.duplicates = duplicates
        self.unexpected = unexpected
        super().__init__(
            "Outcome/frame bijection violated: "
            f"missing={missing[:10]}, duplicates={duplicates[:10]}, "
            f"unexpected={unexpected[:10]}"
        )
