"""Custom exceptions for the text extraction pipeline."""
from typing import Any, Dict, Type


class ApplicationError(Exception):
    """Base application error."""
    pass

class ConfigError(ApplicationError):
    """Configuration-related errors."""
    pass

class ShapeMismatch(ApplicationError):
    """Heatmap length does not match its declared dimensions."""
    pass

class ModelLoadError(ApplicationError):
    """An inference model could not be loaded."""
    pass

class DegenerateCropError(ApplicationError):
    """A crop has zero or negative width or height."""
    pass

class BatchProcessingError(ApplicationError):
    """Inference or decoding failed for one recognition batch."""
    pass

class ContextTimeoutError(ApplicationError):
    """An execution context missed its deadline."""
    pass

class UnexpectedOutputShape(ApplicationError):
    """Inference returned neither a single buffer nor a list of buffers."""
    pass

class ChannelClosedError(ApplicationError):
    """The channel to an execution context is closed."""
    pass

class PoolStateError(ApplicationError):
    """The execution pool cannot accept work in its current state."""
    pass

class ContextError(ApplicationError):
    """Generic failure reported by an execution context."""
    pass


_REPLY_ERRORS: Dict[str, Type[ApplicationError]] = {
    cls.__name__: cls
    for cls in (
        ConfigError, ShapeMismatch, ModelLoadError, DegenerateCropError,
        BatchProcessingError, ContextTimeoutError, UnexpectedOutputShape,
        ChannelClosedError, PoolStateError, ContextError,
    )
}


def exception_from_reply(data: Dict[str, Any]) -> ApplicationError:
    """Rebuild a typed exception from the payload of an ``error`` reply.

    Args:
        data: Reply payload carrying ``error`` (message) and ``error_type``.

    Returns:
        An instance of the named error class, or ContextError when the
        name is unknown.
    """
    data = data or {}
    message = str(data.get("error") or "unknown context error")
    cls = _REPLY_ERRORS.get(str(data.get("error_type", "")), ContextError)
    return cls(message)
