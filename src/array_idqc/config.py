"""Configuration file support for array-idqc."""

import logging
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from .errors import ConfigValidationError

logger = logging.getLogger(__name__)

VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

VALID_DIRECTIONS = {">=", "<="}

VALID_CALIBRATIONS = {"adaptive", "fixed"}

CONFIG_TABLE = "array_idqc"


@dataclass(frozen=True)
class QCConfig:
    """Settings for one identity QC run.

    With ``fingerprint_calibration="adaptive"`` the same/different donor
    cutoff is estimated from the pairwise statistics of the batch and
    ``fingerprint_threshold`` (when set) is only the fallback. With
    ``"fixed"`` the threshold is used as given.
    """

    learn: bool = True
    em_max_iterations: int = 100
    em_convergence_tolerance: float = 1e-6
    variance_floor: float = 1e-4
    outlier_weight: float = 0.01
    min_observations: int = 10
    fingerprint_calibration: str = "adaptive"
    fingerprint_threshold: float | None = None
    min_mode_separation: float = 0.2
    min_shared_markers: int = 1
    outlier_cutoff: float = -4.0
    control_metric_cutoffs: dict[str, tuple[float, str]] = field(default_factory=dict)
    workers: int = 1
    block_size: int = 512
    log_level: str = "INFO"

    def with_overrides(self, **overrides: Any) -> "QCConfig":
        """Return a validated copy with the given fields replaced."""
        merged = {f.name: getattr(self, f.name) for f in fields(self)}
        merged.update(overrides)
        return config_from_dict(merged)


DEFAULT_CONFIG = QCConfig()


def configure_logging(log_level: str = "INFO") -> None:
    """Configure logging for the array_idqc package."""
    level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )
    logging.getLogger("array_idqc").setLevel(level)


def _require_type(config_dict: dict[str, Any], key: str, expected: type | tuple[type, ...]):
    value = config_dict[key]
    # bool is an int subclass; reject it for numeric settings
    if isinstance(value, bool) and expected is not bool:
        raise ConfigValidationError(f"{key} must be a number, got bool")
    if not isinstance(value, expected):
        names = (
            expected.__name__
            if isinstance(expected, type)
            else " or ".join(t.__name__ for t in expected)
        )
        raise ConfigValidationError(f"{key} must be {names}, got {type(value).__name__}")
    return value


def _normalize_cutoffs(raw: Any) -> dict[str, tuple[float, str]]:
    if not isinstance(raw, dict):
        raise ConfigValidationError(
            f"control_metric_cutoffs must be a table, got {type(raw).__name__}"
        )

    cutoffs: dict[str, tuple[float, str]] = {}
    for name, entry in raw.items():
        if isinstance(entry, dict):
            threshold = entry.get("threshold")
            direction = entry.get("direction", ">=")
        elif isinstance(entry, (list, tuple)) and len(entry) == 2:
            threshold, direction = entry
        else:
            raise ConfigValidationError(
                f"control_metric_cutoffs.{name} must be a table with threshold and direction"
            )

        if isinstance(threshold, bool) or not isinstance(threshold, (int, float)):
            raise ConfigValidationError(
                f"control_metric_cutoffs.{name}.threshold must be a number, got {threshold!r}"
            )
        if direction not in VALID_DIRECTIONS:
            raise ConfigValidationError(
                f"control_metric_cutoffs.{name}.direction must be one of "
                f"{sorted(VALID_DIRECTIONS)}, got '{direction}'"
            )
        cutoffs[name] = (float(threshold), direction)
    return cutoffs


def validate_config(config_dict: dict[str, Any]) -> None:
    """Validate configuration values.

    Raises:
        ConfigValidationError: If any configuration value is invalid.
    """
    if "learn" in config_dict:
        _require_type(config_dict, "learn", bool)

    for key in ("em_max_iterations", "workers", "block_size", "min_observations"):
        if key in config_dict:
            value = _require_type(config_dict, key, int)
            if value <= 0:
                raise ConfigValidationError(f"{key} must be positive, got {value}")

    if "min_shared_markers" in config_dict:
        value = _require_type(config_dict, "min_shared_markers", int)
        if value < 1:
            raise ConfigValidationError(f"min_shared_markers must be at least 1, got {value}")

    for key in ("em_convergence_tolerance", "variance_floor"):
        if key in config_dict:
            value = _require_type(config_dict, key, (int, float))
            if value <= 0:
                raise ConfigValidationError(f"{key} must be positive, got {value}")

    if "outlier_weight" in config_dict:
        value = _require_type(config_dict, "outlier_weight", (int, float))
        if not 0 < value < 1:
            raise ConfigValidationError(f"outlier_weight must be in (0, 1), got {value}")

    if "min_mode_separation" in config_dict:
        value = _require_type(config_dict, "min_mode_separation", (int, float))
        if value < 0:
            raise ConfigValidationError(f"min_mode_separation must be >= 0, got {value}")

    if "outlier_cutoff" in config_dict:
        _require_type(config_dict, "outlier_cutoff", (int, float))

    calibration = config_dict.get("fingerprint_calibration", "adaptive")
    if calibration not in VALID_CALIBRATIONS:
        raise ConfigValidationError(
            f"fingerprint_calibration must be one of {sorted(VALID_CALIBRATIONS)}, "
            f"got '{calibration}'"
        )

    threshold = config_dict.get("fingerprint_threshold")
    if threshold is not None:
        threshold = _require_type(config_dict, "fingerprint_threshold", (int, float))
        if not 0.0 <= threshold <= 1.0:
            raise ConfigValidationError(
                f"fingerprint_threshold must be in [0, 1], got {threshold}"
            )
    elif calibration == "fixed":
        raise ConfigValidationError(
            "fingerprint_threshold is required when fingerprint_calibration is 'fixed'"
        )

    if "control_metric_cutoffs" in config_dict:
        _normalize_cutoffs(config_dict["control_metric_cutoffs"])

    if "log_level" in config_dict:
        log_level = config_dict["log_level"]
        if not isinstance(log_level, str):
            raise ConfigValidationError(
                f"log_level must be a string, got {type(log_level).__name__}"
            )
        if log_level.upper() not in VALID_LOG_LEVELS:
            raise ConfigValidationError(
                f"log_level must be one of {VALID_LOG_LEVELS}, got '{log_level}'"
            )


def config_from_dict(config_dict: dict[str, Any]) -> QCConfig:
    """Build a QCConfig from a plain mapping, ignoring unknown keys."""
    validate_config(config_dict)

    valid_fields = {f.name for f in fields(QCConfig)}
    unknown = sorted(set(config_dict) - valid_fields)
    if unknown:
        logger.warning("Ignoring unknown configuration keys: %s", ", ".join(unknown))

    filtered_config = {k: v for k, v in config_dict.items() if k in valid_fields}
    if "control_metric_cutoffs" in filtered_config:
        filtered_config["control_metric_cutoffs"] = _normalize_cutoffs(
            filtered_config["control_metric_cutoffs"]
        )
    if "log_level" in filtered_config:
        filtered_config["log_level"] = filtered_config["log_level"].upper()

    return QCConfig(**filtered_config)


def load_config(config_path: Path, overrides: dict[str, Any] | None = None) -> QCConfig:
    """Load configuration from a TOML file.

    Settings live under the ``[array_idqc]`` table; control metric cutoffs
    under ``[array_idqc.control_metric_cutoffs.<metric name>]``.

    Args:
        config_path: Path to the TOML configuration file.
        overrides: Optional dict of values to override loaded config.

    Returns:
        QCConfig instance with loaded values.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        ConfigValidationError: If any configuration value is invalid.
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "rb") as f:
        toml_data = tomllib.load(f)

    config_dict = dict(toml_data.get(CONFIG_TABLE, {}))

    if overrides:
        config_dict.update(overrides)

    config = config_from_dict(config_dict)
    logger.debug("Loaded configuration from %s", config_path)
    return config
