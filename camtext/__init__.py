"""
camtext - camera text extraction core.

Detects text regions in an image, normalizes them into fixed-size crops and
recognizes them across a pool of isolated execution contexts.
"""

__version__ = "1.0.0"

from .config.settings import Config, load_config, save_config
from .core.entities import BoundingBox, DecodedWord, DeviceProfile, ExtractionResult
from .services.pipeline import TextExtractionPipeline

__all__ = [
    "Config", "load_config", "save_config",
    "BoundingBox", "DecodedWord", "DeviceProfile", "ExtractionResult",
    "TextExtractionPipeline",
]
