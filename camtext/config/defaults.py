"""Default configuration values."""

from typing import Any, Dict

VOCAB = (
    "0123456789abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"
    "!\"#$%&'()*+,-./:;<=>?@[\\]^_`{|}~"
    "°£€¥¢฿àâéèêëîïôùûüçÀÂÉÈÊËÎÏÔÙÛÜÇ"
)

DEFAULT_CONFIG: Dict[str, Any] = {
    # Models
    "detection_model_path": "models/db_mobilenet_v2.pt",
    "recognition_model_path": "models/crnn_mobilenet_v2.pt",
    "prefer_gpu": False,

    # Detection
    "detection_height": 512,
    "detection_width": 512,
    "binarize_threshold": 77,  # 0..255, strictly greater is foreground
    "min_box_side": 2,  # rects with a side <= this are noise
    "offset_ratio": 1.8,
    "det_mean": 0.785,
    "det_std": 0.275,
    "input_layout": "NHWC",  # NHWC or NCHW

    # Recognition
    "recognition_height": 32,
    "recognition_width": 128,
    "rec_mean": 0.694,
    "rec_std": 0.298,
    "vocab": VOCAB,
    "blank_index": None,  # None means len(vocab)

    # Device profile
    "batch_size": 16,
    "constrained_batch_size": 4,
    "max_dimension": 4096,
    "constrained_max_dimension": 2048,
    "constrained_memory_gb": 4.0,
    "force_constrained": False,

    # Execution pool
    "pool_size": 0,  # 0 = hardware parallelism
    "max_pool_size": 4,
    "isolation": "process",  # process or thread
    "init_timeout_seconds": 60.0,
    "context_timeout_seconds": 10.0,
    "watchdog_timeout_seconds": 30.0,

    # Buffer governance
    "max_live_buffers": 512,
    "max_live_bytes_mb": 256,
    "memory_monitor_interval": 5.0,
    "enable_memory_monitor": False,

    # Debug and Logging Settings
    "debug": False,
    "log_level": "INFO",
    "log_dir": "logs",
    "enable_file_logging": False,
    "structured_logging": False,
}

ISOLATION_MODES = ("process", "thread")
INPUT_LAYOUTS = ("NHWC", "NCHW")
