"""Shared pytest fixtures for the frame annotation test suite.

Provides small on-disk frame directories and scripted detection
adapters so pipeline tests run without model weights.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Callable

import cv2
import numpy as np
import pytest

from src.annotation.detection import DetectionAdapter
from src.annotation.types import RawDetection


def write_frame(path: Path, width: int = 64, height: int = 48, value: int = 0) -> Path:
    """Write a solid BGR image; ``value`` lets adapters tell frames apart."""
    path.parent.mkdir(parents=True, exist_ok=True)
    image = np.full((height, width, 3), value, dtype=np.uint8)
    assert cv2.imwrite(str(path), image)
    return path


class ScriptedAdapter(DetectionAdapter):
    """Detection adapter driven by a per-image callback.

    Records the number of concurrent ``detect`` calls so tests can
    assert the backpressure bound.
    """

    def __init__(self, behaviour: Callable[[np.ndarray], list[RawDetection]] | None = None):
        self.behaviour = behaviour or (lambda image: [])
        self.calls = 0
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def detect(self, image: np.ndarray) -> list[RawDetection]:
        with self._lock:
            self.calls += 1
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            return self.behaviour(image)
        finally:
            with self._lock:
                self.active -= 1


@pytest.fixture
def frames_dir(tmp_path: Path) -> Path:
    """Directory with three 64x48 PNG frames (pixel values 10, 20, 30)."""
    root = tmp_path / "frames"
    for i, value in enumerate((10, 20, 30)):
        write_frame(root / f"frame{i}.png", value=value)
    return root


@pytest.fixture
def scripted_adapter() -> ScriptedAdapter:
    return ScriptedAdapter()
