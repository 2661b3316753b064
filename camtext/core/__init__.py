"""Core domain entities, errors and runtime infrastructure."""

from .entities import (
    ImageSize, Rect, BoxStyle, BoundingBox, PixelBBox, Crop, RecognitionBatch,
    DecodedWord, DeviceProfile, ExtractionResult,
)
from .exceptions import (
    ApplicationError, ConfigError, ShapeMismatch, ModelLoadError, DegenerateCropError,
    BatchProcessingError, ContextTimeoutError, UnexpectedOutputShape,
    ChannelClosedError, PoolStateError, ContextError,
)

__all__ = [
    "ImageSize", "Rect", "BoxStyle", "BoundingBox", "PixelBBox", "Crop", "RecognitionBatch",
    "DecodedWord", "DeviceProfile", "ExtractionResult",
    "ApplicationError", "ConfigError", "ShapeMismatch", "ModelLoadError", "DegenerateCropError",
    "BatchProcessingError", "ContextTimeoutError", "UnexpectedOutputShape",
    "ChannelClosedError", "PoolStateError", "ContextError",
]
