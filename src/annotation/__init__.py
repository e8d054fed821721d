"""Annotation module: concurrent batch labelling of captured game frames.

Scans a directory of screenshots, runs each frame through a detection
backend on a bounded worker pool, and writes one YOLO label file per
frame.

Typical usage::

    from src.annotation import load_annotation_config, run_pipeline
    from src.perception import YoloDetectionAdapter

    config = load_annotation_config("default")
    adapter = YoloDetectionAdapter(config.weights_path, device=config.device)
    report = run_pipeline(config, adapter)
"""

from .aggregator import ResultAggregator
from .config import AnnotationConfig, load_annotation_config
from .detection import DetectionAdapter, TimeoutDetectionAdapter
from .errors import (
    AdapterError,
    AggregationInvariantError,
    AnnotationError,
    DecodeError,
    DetectionCancelledError,
    DetectionTimeoutError,
    LabelWriteError,
    OutputDirError,
    SourceEmptyError,
    SourceError,
    SourceNotFoundError,
)
from .frame_source import FrameSource
from .label_writer import LabelWriter, format_labels
from .pipeline import run_pipeline
from .pool import AdmissionGate, WorkerPool
from .types import (
    FrameDescriptor,
    FrameFailure,
    FrameOutcome,
    FrameSkipped,
    FrameSuccess,
    NormalizedDetection,
    PipelineReport,
    RawDetection,
    normalize_detection,
)
from .worker import AnnotationWorker

__all__ = [
    "AdapterError",
    "AdmissionGate",
    "AggregationInvariantError",
    "AnnotationConfig",
    "AnnotationError",
    "AnnotationWorker",
    "DecodeError",
    "DetectionAdapter",
    "DetectionCancelledError",
    "DetectionTimeoutError",
    "FrameDescriptor",
    "FrameFailure",
    "FrameOutcome",
    "FrameSkipped",
    "FrameSource",
    "FrameSuccess",
    "LabelWriteError",
    "LabelWriter",
    "NormalizedDetection",
    "OutputDirError",
    "PipelineReport",
    "RawDetection",
    "ResultAggregator",
    "SourceEmptyError",
    "SourceError",
    "SourceNotFoundError",
    "TimeoutDetectionAdapter",
    "WorkerPool",
    "format_labels",
    "load_annotation_config",
    "normalize_detection",
    "run_pipeline",
]
