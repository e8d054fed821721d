"""YOLO detection backend for the annotation pipeline.

Loads a trained YOLOv8 model and turns its predictions into
:class:`~src.annotation.types.RawDetection` values.  Uses
``resolve_device()`` to auto-detect the best available device
(XPU > CUDA > CPU) by default.

When an OpenVINO-exported model directory exists alongside the
``.pt`` weights (e.g. ``best_openvino_model/``), the adapter
automatically uses it for inference on CPU or Intel devices.

Ultralytics requires ``device="intel:<OV_DEVICE>"`` for OpenVINO
device routing (e.g. ``"intel:GPU"`` for Intel Arc GPUs).  The
adapter translates ``resolve_device()`` outputs (``"xpu"`` →
``"intel:GPU"``, ``"cpu"`` → ``"intel:CPU"``) automatically.

A single model instance is shared by all pipeline workers.  Ultralytics
predictors keep per-call state, so inference calls are serialised with
a lock; decoding and label writing still overlap across workers.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Optional

import numpy as np

from src.annotation.detection import DetectionAdapter
from src.annotation.errors import AdapterError
from src.annotation.types import RawDetection

try:
    from ultralytics import YOLO

    _ULTRALYTICS_AVAILABLE = True
except ImportError:
    YOLO = None  # type: ignore[assignment,misc]
    _ULTRALYTICS_AVAILABLE = False

logger = logging.getLogger(__name__)

# Devices where OpenVINO IR models are preferred over PyTorch .pt
_OPENVINO_PREFERRED_DEVICES = frozenset({"cpu", "auto"})

# Mapping from resolve_device() output to OpenVINO device names.
# NOTE: The "intel:" prefix is an ultralytics routing convention, not a
# hardware vendor constraint.  OpenVINO's "CPU" plugin runs on AMD,
# Intel and ARM CPUs alike.
_OPENVINO_DEVICE_MAP: dict[str, str] = {
    "xpu": "GPU",  # mapped to "intel:GPU.N" at runtime
    "cpu": "CPU",
    "auto": "AUTO",
}


def _resolve_openvino_device(requested_device: str) -> str:
    """Map a ``resolve_device()`` output to an ``"intel:<OV_DEVICE>"`` string.

    ultralytics validates the OpenVINO device name against
    ``ov.Core().available_devices`` using an exact string match.
    OpenVINO lists discrete GPUs as ``"GPU.0"``, ``"GPU.1"`` (not
    plain ``"GPU"``), so the runtime is queried for the first match.

    Parameters
    ----------
    requested_device : str
        Device string from ``resolve_device()``.

    Returns
    -------
    str
        ``"intel:<OV_DEVICE>"`` string for ultralytics.
    """
    ov_hint = _OPENVINO_DEVICE_MAP.get(requested_device, "AUTO")

    if ov_hint in ("CPU", "AUTO"):
        return f"intel:{ov_hint}"

    try:
        import openvino as ov

        available = ov.Core().available_devices
        if ov_hint in available:
            return f"intel:{ov_hint}"
        for dev in available:
            if dev.startswith(ov_hint):
                logger.info(
                    "OpenVINO device '%s' not in available_devices, using '%s' instead",
                    ov_hint,
                    dev,
                )
                return f"intel:{dev}"
    except ImportError:
        logger.debug("openvino not installed, falling back to intel:AUTO")
    except Exception as exc:
        logger.debug("OpenVINO device query failed: %s", exc)

    return f"intel:{ov_hint}"


def resolve_device(requested: str = "auto") -> str:
    """Resolve the best available compute device for inference.

    Parameters
    ----------
    requested : str
        ``"auto"`` (try xpu > cuda > cpu), ``"xpu"``, ``"cuda"``,
        or ``"cpu"``.

    Returns
    -------
    str
        Device string suitable for ``YoloDetectionAdapter(device=...)``.
    """
    if requested != "auto":
        return requested

    try:
        import torch

        if hasattr(torch, "xpu") and torch.xpu.is_available():
            return "xpu"
        if torch.cuda.is_available():
            return "cuda"
    except ImportError:
        pass
    return "cpu"


def _find_openvino_model(weights_path: Path) -> Path | None:
    """Locate an OpenVINO model directory next to the ``.pt`` weights.

    Ultralytics exports produce a directory named
    ``<stem>_openvino_model/`` containing the IR files.

    Returns
    -------
    Path or None
        The OpenVINO model directory if it exists and contains an
        ``.xml`` model file, otherwise ``None``.
    """
    ov_dir = weights_path.parent / f"{weights_path.stem}_openvino_model"
    if not ov_dir.is_dir():
        return None
    if not list(ov_dir.glob("*.xml")):
        logger.debug("OpenVINO dir %s exists but contains no .xml files", ov_dir)
        return None
    return ov_dir


class YoloDetectionAdapter(DetectionAdapter):
    """Runs YOLOv8 inference on game frames.

    The model is loaded on first use (or explicitly with
    :meth:`load`), so constructing the adapter is cheap.

    Parameters
    ----------
    weights_path : str or Path
        Path to the trained ``.pt`` weights file.
    device : str
        ``"auto"`` to auto-detect (xpu > cuda > cpu), or an explicit
        device string.  Default ``"auto"``.
    confidence_floor : float
        Confidence passed to the model.  The pipeline applies its own
        threshold afterwards, so this only prunes obvious noise.
    iou_threshold : float
        IoU threshold for NMS.  Default is 0.45.
    img_size : int
        Inference image size (square).  Default is 416.
    classes : list[str], optional
        Class names in index order.  If None, read from the model
        after loading.

    Raises
    ------
    RuntimeError
        If ultralytics is not installed.
    """

    def __init__(
        self,
        weights_path: str | Path = "weights/best.pt",
        device: str = "auto",
        confidence_floor: float = 0.01,
        iou_threshold: float = 0.45,
        img_size: int = 416,
        classes: Optional[list[str]] = None,
    ) -> None:
        if not _ULTRALYTICS_AVAILABLE:
            raise RuntimeError(
                "ultralytics is required for YoloDetectionAdapter. "
                "Install it with: pip install ultralytics"
            )

        self.weights_path = Path(weights_path)
        self.device = resolve_device(device)
        self.confidence_floor = confidence_floor
        self.iou_threshold = iou_threshold
        self.img_size = img_size
        self._user_classes = classes
        self.class_names: list[str] = list(classes) if classes else []

        self.model: Any = None
        self._using_openvino = False
        self._ov_device: str | None = None
        self._lock = threading.Lock()

    def is_loaded(self) -> bool:
        """Return True if the model is loaded and ready for inference."""
        return self.model is not None

    def load(self) -> None:
        """Load the YOLO model and move it to the target device.

        Prefers an OpenVINO export next to the weights on CPU and Intel
        devices, falling back to the PyTorch model.  Falls back to CPU
        if the requested device is unavailable.

        Raises
        ------
        FileNotFoundError
            If ``weights_path`` does not exist.
        RuntimeError
            If the model cannot be placed on any device.
        """
        with self._lock:
            if self.model is None:
                self._load_locked()

    def _load_locked(self) -> None:
        if not self.weights_path.exists():
            raise FileNotFoundError(f"YOLO weights file not found: {self.weights_path}")

        effective_path = self.weights_path
        self._using_openvino = False
        self._ov_device = None

        if self.device in _OPENVINO_PREFERRED_DEVICES or self.device == "xpu":
            ov_dir = _find_openvino_model(self.weights_path)
            if ov_dir is not None:
                effective_path = ov_dir
                self._using_openvino = True
                self._ov_device = _resolve_openvino_device(self.device)
                logger.info(
                    "OpenVINO model found, using %s (device: %s → %s)",
                    ov_dir,
                    self.device,
                    self._ov_device,
                )

        model = YOLO(str(effective_path))

        if not self._using_openvino:
            try:
                model.to(self.device)
                logger.info("YOLO model loaded on device: %s", self.device)
            except Exception:
                logger.warning("Device '%s' unavailable, falling back to CPU", self.device)
                self.device = "cpu"
                try:
                    model.to("cpu")
                except Exception as cpu_exc:
                    raise RuntimeError(
                        "Failed to move YOLO model to any device (requested and CPU)."
                    ) from cpu_exc
        else:
            logger.info("YOLO model loaded via OpenVINO: %s", effective_path)

        if self._user_classes is None and hasattr(model, "names"):
            names = model.names
            if isinstance(names, dict):
                self.class_names = [str(names[k]) for k in sorted(names)]
            elif isinstance(names, (list, tuple)):
                self.class_names = [str(n) for n in names]

        self.model = model

    def detect(self, image: np.ndarray) -> list[RawDetection]:
        """Run inference on a single frame.

        Parameters
        ----------
        image : np.ndarray
            BGR image as ``(H, W, 3)`` uint8 array.

        Returns
        -------
        list[RawDetection]
            Detections with pixel ``(x1, y1, x2, y2)`` boxes.
            Degenerate boxes are dropped.

        Raises
        ------
        AdapterError
            If the model cannot be loaded or inference fails.
        """
        try:
            with self._lock:
                if self.model is None:
                    self._load_locked()
                results = self.model(
                    image,
                    imgsz=self.img_size,
                    conf=self.confidence_floor,
                    iou=self.iou_threshold,
                    verbose=False,
                    **({"device": self._ov_device} if self._using_openvino else {}),
                )
        except Exception as exc:
            raise AdapterError(f"YOLO inference failed: {exc}") from exc

        if not results:
            return []
        boxes = results[0].boxes
        if boxes is None or len(boxes) == 0:
            return []

        xyxy = boxes.xyxy.cpu().numpy()
        confs = boxes.conf.cpu().numpy()
        class_ids = boxes.cls.cpu().numpy()

        detections: list[RawDetection] = []
        for (x1, y1, x2, y2), conf, cls_id in zip(xyxy, confs, class_ids):
            if x2 <= x1 or y2 <= y1:
                continue
            detections.append(
                RawDetection(
                    class_id=int(cls_id),
                    confidence=min(1.0, max(0.0, float(conf))),
                    bbox_px=(float(x1), float(y1), float(x2), float(y2)),
                )
            )
        return detections
