"""Configuration dataclass and loading utilities.

Provides a strongly-typed configuration object that is injected into the
pipeline, the execution pool and the context handlers instead of relying on
a global module-level dictionary.

Values are resolved in this order (later wins):
- DEFAULT_CONFIG
- the JSON config file, when present
- ``CAMTEXT_*`` environment variables
"""
from __future__ import annotations
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Optional, Tuple
import json, os, logging
from .defaults import DEFAULT_CONFIG, ISOLATION_MODES, INPUT_LAYOUTS
from ..core.entities import ImageSize

ENV_PREFIX = "CAMTEXT_"


@dataclass(slots=True)
class Config:
    # Models
    detection_model_path: str = DEFAULT_CONFIG["detection_model_path"]
    recognition_model_path: str = DEFAULT_CONFIG["recognition_model_path"]
    prefer_gpu: bool = DEFAULT_CONFIG["prefer_gpu"]

    # Detection
    detection_height: int = DEFAULT_CONFIG["detection_height"]
    detection_width: int = DEFAULT_CONFIG["detection_width"]
    binarize_threshold: int = DEFAULT_CONFIG["binarize_threshold"]
    min_box_side: int = DEFAULT_CONFIG["min_box_side"]
    offset_ratio: float = DEFAULT_CONFIG["offset_ratio"]
    det_mean: float = DEFAULT_CONFIG["det_mean"]
    det_std: float = DEFAULT_CONFIG["det_std"]
    input_layout: str = DEFAULT_CONFIG["input_layout"]

    # Recognition
    recognition_height: int = DEFAULT_CONFIG["recognition_height"]
    recognition_width: int = DEFAULT_CONFIG["recognition_width"]
    rec_mean: float = DEFAULT_CONFIG["rec_mean"]
    rec_std: float = DEFAULT_CONFIG["rec_std"]
    vocab: str = DEFAULT_CONFIG["vocab"]
    blank_index: Optional[int] = DEFAULT_CONFIG["blank_index"]

    # Device profile
    batch_size: int = DEFAULT_CONFIG["batch_size"]
    constrained_batch_size: int = DEFAULT_CONFIG["constrained_batch_size"]
    max_dimension: int = DEFAULT_CONFIG["max_dimension"]
    constrained_max_dimension: int = DEFAULT_CONFIG["constrained_max_dimension"]
    constrained_memory_gb: float = DEFAULT_CONFIG["constrained_memory_gb"]
    force_constrained: bool = DEFAULT_CONFIG["force_constrained"]

    # Execution pool
    pool_size: int = DEFAULT_CONFIG["pool_size"]
    max_pool_size: int = DEFAULT_CONFIG["max_pool_size"]
    isolation: str = DEFAULT_CONFIG["isolation"]
    init_timeout_seconds: float = DEFAULT_CONFIG["init_timeout_seconds"]
    context_timeout_seconds: float = DEFAULT_CONFIG["context_timeout_seconds"]
    watchdog_timeout_seconds: float = DEFAULT_CONFIG["watchdog_timeout_seconds"]

    # Buffer governance
    max_live_buffers: int = DEFAULT_CONFIG["max_live_buffers"]
    max_live_bytes_mb: int = DEFAULT_CONFIG["max_live_bytes_mb"]
    memory_monitor_interval: float = DEFAULT_CONFIG["memory_monitor_interval"]
    enable_memory_monitor: bool = DEFAULT_CONFIG["enable_memory_monitor"]

    # Debug and Logging Settings
    debug: bool = DEFAULT_CONFIG["debug"]
    log_level: str = DEFAULT_CONFIG["log_level"]
    log_dir: str = DEFAULT_CONFIG["log_dir"]
    enable_file_logging: bool = DEFAULT_CONFIG["enable_file_logging"]
    structured_logging: bool = DEFAULT_CONFIG["structured_logging"]

    # Arbitrary extra values retained for forward compatibility
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        # merge extra keys at top-level for saving
        extra = d.pop("extra", {})
        d.update(extra)
        return d

    def get(self, key: str, default: Any = None) -> Any:
        return getattr(self, key, self.extra.get(key, default))

    @property
    def detection_size(self) -> ImageSize:
        return ImageSize(self.detection_height, self.detection_width)

    @property
    def recognition_size(self) -> Tuple[int, int]:
        return (self.recognition_height, self.recognition_width)

    @property
    def max_live_bytes(self) -> int:
        return int(self.max_live_bytes_mb) * 1024 * 1024

    def context_init_payload(self) -> Dict[str, Any]:
        """Build the ``init`` message payload sent to every execution context."""
        return {
            "detection_model_path": self.detection_model_path,
            "recognition_model_path": self.recognition_model_path,
            "prefer_gpu": self.prefer_gpu,
            "detection_size": [self.detection_height, self.detection_width],
            "binarize_threshold": self.binarize_threshold,
            "min_box_side": self.min_box_side,
            "offset_ratio": self.offset_ratio,
            "det_mean": self.det_mean,
            "det_std": self.det_std,
            "rec_mean": self.rec_mean,
            "rec_std": self.rec_std,
            "input_layout": self.input_layout,
            "vocab": self.vocab,
            "blank_index": self.blank_index,
            "max_live_buffers": self.max_live_buffers,
            "max_live_bytes": self.max_live_bytes,
            "log_level": self.log_level,
            "structured_logging": self.structured_logging,
        }


def load_config(path: str = "config.json", env_prefix: str = ENV_PREFIX) -> Config:
    """Load configuration from a JSON file with environment overrides.

    Args:
        path: Path to config.json file
        env_prefix: Prefix of environment variables that override file values

    Returns:
        Config: Loaded and validated configuration
    """
    data: Dict[str, Any] = {}

    if os.path.isfile(path):
        try:
            with open(path, "r", encoding="utf-8") as f:
                loaded_data = json.load(f)
                if loaded_data is None:
                    logging.warning(f"Configuration file '{path}' is empty, using defaults")
                elif not isinstance(loaded_data, dict):
                    logging.error(f"Configuration file '{path}' does not contain a valid JSON object, using defaults")
                else:
                    data = loaded_data
                    logging.info(f"Successfully loaded configuration from '{path}'")
        except json.JSONDecodeError as e:
            logging.error(f"Failed to parse JSON configuration file '{path}': {e}. Using defaults.")
        except PermissionError:
            logging.error(f"Permission denied reading configuration file '{path}'. Using defaults.")
        except OSError as e:
            logging.error(f"Error reading configuration file '{path}': {e}. Using defaults.")
    else:
        logging.info(f"Configuration file '{path}' does not exist. Using defaults.")

    merged = {**DEFAULT_CONFIG, **data}
    merged = _apply_environment_overrides(merged, env_prefix)
    merged = _sanitize_config_values(merged)

    # capture unknown keys
    fields = [k for k in Config.__annotations__ if k != "extra"]
    extra = {k: v for k, v in merged.items() if k not in Config.__annotations__}
    if extra:
        logging.info(f"Found extra configuration keys: {list(extra.keys())}")

    return Config(**{k: merged[k] for k in fields}, extra=extra)


def save_config(cfg: Config, path: str = "config.json") -> None:
    """Save configuration to a JSON file.

    Raises:
        ConfigError: If the file cannot be written.
    """
    from ..core.exceptions import ConfigError

    try:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(cfg.to_dict(), f, indent=2, ensure_ascii=False)
        logging.info(f"Configuration saved successfully to '{path}'")
    except OSError as e:
        logging.error(f"Error saving configuration file '{path}': {e}")
        raise ConfigError(f"Cannot write configuration to '{path}': {e}") from e


def _coerce_env_value(raw: str, default: Any) -> Any:
    """Convert an environment string to the type of the default value."""
    if isinstance(default, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    if default is None:
        raw = raw.strip()
        if raw.lower() in ("", "none", "null"):
            return None
        return int(raw)
    return raw


def _apply_environment_overrides(config_dict: Dict[str, Any], prefix: str = ENV_PREFIX) -> Dict[str, Any]:
    """Apply ``<prefix><KEY>`` environment variables to configuration.

    Args:
        config_dict: Base configuration dictionary
        prefix: Environment variable prefix

    Returns:
        dict: Updated configuration with environment overrides
    """
    updated = config_dict.copy()
    for key, default in DEFAULT_CONFIG.items():
        env_name = f"{prefix}{key.upper()}"
        raw = os.environ.get(env_name)
        if raw is None:
            continue
        try:
            updated[key] = _coerce_env_value(raw, default)
            logging.debug(f"Applied environment override {env_name}")
        except ValueError:
            logging.warning(f"Ignoring invalid value for {env_name}: {raw!r}")

    if updated.get("debug"):
        updated["log_level"] = "DEBUG"
    return updated


def _sanitize_config_values(config_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Replace out-of-range or malformed values with their defaults.

    Args:
        config_dict: Configuration dictionary to sanitize

    Returns:
        dict: Sanitized configuration dictionary
    """
    sanitized = config_dict.copy()

    numeric_validations = {
        "detection_height": (32, 4096),
        "detection_width": (32, 4096),
        "binarize_threshold": (0, 254),
        "min_box_side": (0, 64),
        "offset_ratio": (0.0, 10.0),
        "det_mean": (0.0, 1.0),
        "det_std": (0.001, 1.0),
        "rec_mean": (0.0, 1.0),
        "rec_std": (0.001, 1.0),
        "recognition_height": (8, 512),
        "recognition_width": (8, 2048),
        "batch_size": (1, 256),
        "constrained_batch_size": (1, 256),
        "max_dimension": (64, 16384),
        "constrained_max_dimension": (64, 16384),
        "constrained_memory_gb": (0.0, 1024.0),
        "pool_size": (0, 64),
        "max_pool_size": (1, 64),
        "init_timeout_seconds": (0.1, 600.0),
        "context_timeout_seconds": (0.1, 600.0),
        "watchdog_timeout_seconds": (0.1, 3600.0),
        "max_live_buffers": (1, 1_000_000),
        "max_live_bytes_mb": (1, 1_000_000),
        "memory_monitor_interval": (0.1, 3600.0),
    }

    for key, (min_val, max_val) in numeric_validations.items():
        value = sanitized.get(key)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            logging.warning(f"Value {key}={value!r} is not numeric, using default")
            sanitized[key] = DEFAULT_CONFIG.get(key)
        elif not (min_val <= value <= max_val):
            logging.warning(f"Value {key}={value} out of range [{min_val}, {max_val}], using default")
            sanitized[key] = DEFAULT_CONFIG.get(key)

    if sanitized.get("isolation") not in ISOLATION_MODES:
        logging.warning(f"Unknown isolation mode {sanitized.get('isolation')!r}, using default")
        sanitized["isolation"] = DEFAULT_CONFIG["isolation"]

    layout = str(sanitized.get("input_layout", "")).upper()
    if layout not in INPUT_LAYOUTS:
        logging.warning(f"Unknown input layout {sanitized.get('input_layout')!r}, using default")
        layout = DEFAULT_CONFIG["input_layout"]
    sanitized["input_layout"] = layout

    vocab = sanitized.get("vocab")
    if not isinstance(vocab, str) or not vocab:
        logging.warning("Vocabulary must be a non-empty string, using default")
        sanitized["vocab"] = DEFAULT_CONFIG["vocab"]

    blank = sanitized.get("blank_index")
    if blank is not None and (isinstance(blank, bool) or not isinstance(blank, int) or blank < 0):
        logging.warning(f"Invalid blank_index {blank!r}, using vocabulary length")
        sanitized["blank_index"] = None

    if sanitized["max_pool_size"] < sanitized["pool_size"]:
        logging.warning(
            f"pool_size={sanitized['pool_size']} exceeds max_pool_size={sanitized['max_pool_size']}, capping"
        )
        sanitized["pool_size"] = sanitized["max_pool_size"]

    return sanitized


__all__ = ["Config", "load_config", "save_config", "ENV_PREFIX"]
