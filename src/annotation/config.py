"""Annotation run configuration.

An :class:`AnnotationConfig` describes one batch annotation run: where
frames are read from, where labels go, how many frames are processed
concurrently, and which detector weights to use.

Configs can be loaded from YAML files via :func:`load_annotation_config`.
String values in YAML configs support environment variable expansion
using ``$VAR``, ``${VAR}`` or ``${VAR:-default}`` syntax, as well as
``~`` for the user home directory.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

# Default search path for annotation config YAML files.
_CONFIGS_DIR = Path(__file__).resolve().parent.parent.parent / "configs" / "annotation"

# Pattern matching $VAR or ${VAR} for environment variable expansion.
_ENV_VAR_RE = re.compile(r"\$\{([^}]+)\}|\$([A-Za-z_][A-Za-z0-9_]*)")

DEFAULT_EXTENSIONS = (".png", ".jpg", ".jpeg", ".bmp")

# Game entity classes, in model class-index order.
DEFAULT_CLASS_NAMES = ["player", "enemy", "projectile", "powerup", "obstacle"]


def _default_concurrency() -> int:
    return os.cpu_count() or 1


@dataclass
class AnnotationConfig:
    """Declarative description of an annotation run.

    Parameters
    ----------
    input_dir : str or Path
        Directory containing captured frames.
    output_dir : str or Path or None
        Root of the mirrored label tree.  ``None`` writes each label
        next to its image.
    concurrency : int
        Maximum number of frames processed simultaneously.  Defaults
        to the number of available CPUs.
    confidence_threshold : float
        Detections below this confidence are discarded.
    supported_extensions : list[str]
        Image file extensions to pick up (case-insensitive).
    recursive_scan : bool
        Descend into subdirectories of ``input_dir``.
    per_frame_timeout_s : float or None
        Upper bound on a single detection call.  ``None`` disables the
        timeout.
    prefetch_margin : int
        Frames admitted beyond ``concurrency`` so idle workers always
        find queued work.
    cancel_grace_period_s : float
        How long in-flight detection calls may continue after a
        cancellation request.
    label_precision : int
        Decimal places used for label coordinates.
    skip_existing : bool
        Leave frames that already have a label file untouched.
    weights_path : str or Path
        Detector weights (``.pt``).  An OpenVINO export next to it is
        preferred on CPU and Intel devices.
    device : str
        ``"auto"``, ``"xpu"``, ``"cuda"`` or ``"cpu"``.
    img_size : int
        Square inference size passed to the detector.
    iou_threshold : float
        IoU threshold for non-maximum suppression.
    class_names : list[str]
        Class names in model index order.
    """

    input_dir: str | Path = "screenshots"
    output_dir: Optional[str | Path] = "output/labels"

    # Scheduling
    concurrency: int = field(default_factory=_default_concurrency)
    prefetch_margin: int = 2
    per_frame_timeout_s: Optional[float] = 30.0
    cancel_grace_period_s: float = 5.0

    # Frame discovery
    supported_extensions: list[str] = field(
        default_factory=lambda: list(DEFAULT_EXTENSIONS)
    )
    recursive_scan: bool = False

    # Labels
    confidence_threshold: float = 0.25
    label_precision: int = 6
    skip_existing: bool = False

    # Detector
    weights_path: str | Path = "weights/best.pt"
    device: str = "auto"
    img_size: int = 416
    iou_threshold: float = 0.45
    class_names: list[str] = field(default_factory=lambda: list(DEFAULT_CLASS_NAMES))

    def __post_init__(self) -> None:
        self.input_dir = Path(os.path.expanduser(_expand_vars(str(self.input_dir))))
        if self.output_dir is not None and str(self.output_dir) != "":
            self.output_dir = Path(
                os.path.expanduser(_expand_vars(str(self.output_dir)))
            )
        else:
            self.output_dir = None
        self.weights_path = Path(os.path.expanduser(_expand_vars(str(self.weights_path))))
        self.supported_extensions = _normalize_extensions(self.supported_extensions)

        if self.concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {self.concurrency}")
        if self.prefetch_margin < 0:
            raise ValueError(f"prefetch_margin must be >= 0, got {self.prefetch_margin}")
        if not 0.0 <= self.confidence_threshold <= 1.0:
            raise ValueError(
                f"confidence_threshold must be in [0, 1], got {self.confidence_threshold}"
            )
        if self.per_frame_timeout_s is not None and self.per_frame_timeout_s <= 0:
            raise ValueError(
                f"per_frame_timeout_s must be positive or None, got {self.per_frame_timeout_s}"
            )
        if self.cancel_grace_period_s < 0:
            raise ValueError(
                f"cancel_grace_period_s must be >= 0, got {self.cancel_grace_period_s}"
            )
        if self.label_precision < 1:
            raise ValueError(f"label_precision must be >= 1, got {self.label_precision}")


def _normalize_extensions(extensions: list[str] | tuple[str, ...]) -> list[str]:
    """Lowercase extensions and make sure each has a leading dot."""
    normalized: list[str] = []
    for ext in extensions:
        ext = ext.strip().lower()
        if not ext:
            continue
        if not ext.startswith("."):
            ext = f".{ext}"
        if ext not in normalized:
            normalized.append(ext)
    if not normalized:
        raise ValueError("supported_extensions must contain at least one extension")
    return normalized


def _expand_vars(value: str) -> str:
    """Expand ``$VAR`` and ``${VAR}`` references in a string.

    Undefined variables are left as-is (no error).

    Parameters
    ----------
    value : str
        String potentially containing environment variable references.

    Returns
    -------
    str
        String with known variables expanded.
    """

    def _replace(match: re.Match) -> str:
        braced = match.group(1)  # From ${...}
        bare = match.group(2)  # From $VAR
        original: str = match.group(0) or ""

        if braced is not None:
            if ":-" in braced:
                var_name, default = braced.split(":-", 1)
                return os.environ.get(var_name, default)
            return os.environ.get(braced, original)

        return os.environ.get(bare or "", original)

    return _ENV_VAR_RE.sub(_replace, value)


def _expand_vars_recursive(data: dict) -> dict:
    """Expand environment variables in string values of *data*.

    Lists of strings (e.g. ``supported_extensions``) are expanded
    element-wise.
    """
    expanded: dict = {}
    for key, value in data.items():
        if isinstance(value, str):
            expanded[key] = _expand_vars(value)
        elif isinstance(value, list):
            expanded[key] = [
                _expand_vars(item) if isinstance(item, str) else item for item in value
            ]
        else:
            expanded[key] = value
    return expanded


def load_annotation_config(
    name: str | Path = "default",
    configs_dir: str | Path | None = None,
) -> AnnotationConfig:
    """Load an :class:`AnnotationConfig` from a YAML file.

    ``name`` is either a path to a YAML file or a config name looked up
    as ``<configs_dir>/<name>.yaml`` (default ``configs/annotation/``).

    Parameters
    ----------
    name : str or Path
        Config name or explicit YAML path.
    configs_dir : str or Path, optional
        Override the default config directory.

    Returns
    -------
    AnnotationConfig

    Raises
    ------
    FileNotFoundError
        If no YAML file is found.
    ValueError
        If the YAML contains unknown fields or invalid values.
    """
    candidate = Path(name)
    if candidate.suffix in (".yaml", ".yml") and candidate.exists():
        config_path = candidate
        search_dir = candidate.parent
    else:
        search_dir = Path(configs_dir) if configs_dir else _CONFIGS_DIR
        config_path = search_dir / f"{name}.yaml"

    if not config_path.exists():
        raise FileNotFoundError(
            f"No annotation config found at {config_path}. "
            f"Available configs: {[p.stem for p in search_dir.glob('*.yaml')]}"
        )

    logger.info("Loading annotation config from %s", config_path)
    with open(config_path, "r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh)

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValueError(
            f"Expected a YAML mapping in {config_path}, got {type(raw).__name__}"
        )

    raw = _expand_vars_recursive(raw)

    valid_fields = {f.name for f in dataclasses.fields(AnnotationConfig)}
    unknown = set(raw) - valid_fields
    if unknown:
        raise ValueError(
            f"Unknown fields in {config_path}: {sorted(unknown)}. "
            f"Valid fields: {sorted(valid_fields)}"
        )

    try:
        return AnnotationConfig(**raw)
    except TypeError as exc:
        raise ValueError(
            f"Invalid config in {config_path}: {exc}. "
            f"Valid fields: {sorted(valid_fields)}"
        ) from exc
