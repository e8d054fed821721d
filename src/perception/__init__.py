"""Perception module: YOLO detection backend for frame annotation."""

from .yolo_detector import YoloDetectionAdapter, resolve_device

__all__ = [
    "YoloDetectionAdapter",
    "resolve_device",
]
