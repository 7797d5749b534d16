"""
Configuration and constants for flexible NMS over ensembled detections.

Defaults follow the merge + soft-decay + ensemble-rescaling variant:
boxes overlapping the anchor above MERGE_THRESHOLD are fused into it,
boxes between SUPPRESS_THRESHOLD and MERGE_THRESHOLD keep their geometry
but have their confidence decayed.
"""

import math
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

import yaml

# Clustering parameters
MERGE_THRESHOLD = 0.75
SUPPRESS_THRESHOLD = 0.3
MERGE_EXPONENT = 4.0
DECAY_SIGMA = 2.0

# Output parameters
CLASS_LABEL = "car"
COORD_PRECISION = 1
CONFIDENCE_PRECISION = 3
MIN_CONFIDENCE = None

# Input schema
REQUIRED_COLUMNS = ("image_filename", "x0", "y0", "x1", "y1", "confidence")
OUTPUT_HEADER = ("image_filename", "x0", "y0", "x1", "y1", "label", "confidence")

# Section name accepted at the top of a YAML config file
CONFIG_SECTION = "flexible_nms"


class ConfigurationError(ValueError):
    """Raised when the run configuration cannot be used."""


@dataclass
class NMSConfig:
    """All tunables of one flexible NMS run."""

    ensemble_size: Optional[int] = None
    merge_threshold: float = MERGE_THRESHOLD
    suppress_threshold: float = SUPPRESS_THRESHOLD
    merge_exponent: float = MERGE_EXPONENT
    decay_sigma: float = DECAY_SIGMA
    min_confidence: Optional[float] = MIN_CONFIDENCE
    coord_precision: int = COORD_PRECISION
    confidence_precision: int = CONFIDENCE_PRECISION
    label: str = CLASS_LABEL

    def validate(self) -> "NMSConfig":
        """
        Check the configuration before any processing starts.

        Returns self so calls can be chained.

        Raises:
            ConfigurationError: on any unusable value
        """
        if self.ensemble_size is None:
            raise ConfigurationError("ensemble_size is not set")
        if isinstance(self.ensemble_size, bool) or not isinstance(self.ensemble_size, (int, float)) \
                or not math.isfinite(self.ensemble_size) \
                or int(self.ensemble_size) != self.ensemble_size:
            raise ConfigurationError(
                f"ensemble_size must be an integer, got {self.ensemble_size!r}"
            )
        self.ensemble_size = int(self.ensemble_size)
        if self.ensemble_size < 1:
            raise ConfigurationError(
                f"ensemble_size must be at least 1, got {self.ensemble_size}"
            )
        for name in ("merge_threshold", "suppress_threshold", "merge_exponent", "decay_sigma"):
            _require_number(name, getattr(self, name))
        if self.min_confidence is not None:
            _require_number("min_confidence", self.min_confidence)
        for name in ("coord_precision", "confidence_precision"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigurationError(f"{name} must be an integer, got {value!r}")
        if not isinstance(self.label, str) or not self.label:
            raise ConfigurationError(f"label must be a non-empty string, got {self.label!r}")

        if not 0.0 <= self.suppress_threshold < self.merge_threshold <= 1.0:
            raise ConfigurationError(
                "thresholds must satisfy 0 <= suppress_threshold < merge_threshold <= 1, "
                f"got suppress={self.suppress_threshold}, merge={self.merge_threshold}"
            )
        if self.merge_exponent < 0:
            raise ConfigurationError(
                f"merge_exponent must be non-negative, got {self.merge_exponent}"
            )
        if self.decay_sigma <= 0:
            raise ConfigurationError(
                f"decay_sigma must be positive, got {self.decay_sigma}"
            )
        if self.coord_precision < 0 or self.confidence_precision < 0:
            raise ConfigurationError("output precisions must be non-negative")
        return self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _require_number(name: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ConfigurationError(f"{name} must be a finite number, got {value!r}")


def load_config_file(config_path) -> Dict[str, Any]:
    """
    Load NMS settings from a YAML file.

    The file holds a mapping of NMSConfig field names, either at the top
    level or nested under a ``flexible_nms:`` section.

    Returns:
        {field_name: value} for the fields present in the file
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"{config_path}: invalid YAML: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"{config_path}: expected a mapping at the top level")
    if CONFIG_SECTION in data:
        data = data[CONFIG_SECTION] or {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"{config_path}: '{CONFIG_SECTION}' must be a mapping")

    known = {f.name for f in fields(NMSConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigurationError(
            f"{config_path}: unknown config keys: {', '.join(unknown)}"
        )
    return data


def resolve_config(
    sources: Sequence,
    file_values: Optional[Dict[str, Any]] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> NMSConfig:
    """
    Build the validated config for a run.

    Precedence: built-in defaults < config file values < explicit overrides
    (None values in overrides are ignored). When no ensemble size is given,
    one contribution per input source is expected.
    """
    if not sources:
        raise ConfigurationError("no input sources given")

    config = NMSConfig()
    if file_values:
        config = replace(config, **file_values)
    if overrides:
        config = replace(config, **{k: v for k, v in overrides.items() if v is not None})

    if config.ensemble_size is None:
        config.ensemble_size = len(sources)

    return config.validate()
