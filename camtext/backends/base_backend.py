"""Base interface for inference engine backends."""
from abc import ABC, abstractmethod
from typing import List, Dict, Any, Optional, Union
import os
import numpy as np

InferenceOutput = Union[np.ndarray, List[np.ndarray]]


class InferenceBackend(ABC):
    """Abstract base class for model backends.

    A backend wraps one opaque model: it is loaded once per execution
    context and then called with a ready-made input batch.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config or {}
        self.is_loaded = False
        self.model_info: Dict[str, Any] = {}

    @abstractmethod
    def load_model(self, model_path: str) -> bool:
        """Load a model from path.

        Raises:
            ModelLoadError: If the model cannot be loaded.
        """
        pass

    @abstractmethod
    def infer(self, input_buffer: np.ndarray) -> InferenceOutput:
        """Run inference; returns one output buffer or a list of them."""
        pass

    def get_model_info(self) -> Dict[str, Any]:
        return dict(self.model_info)

    def is_model_loaded(self) -> bool:
        return self.is_loaded

    def unload_model(self) -> None:
        """Unload the current model to free memory."""
        self.is_loaded = False
        self.model_info = {}

    @abstractmethod
    def get_supported_formats(self) -> List[str]:
        pass

    def validate_model(self, model_path: str) -> bool:
        """Check that the file exists and has a supported extension."""
        if not model_path or not os.path.isfile(model_path):
            return False
        return os.path.splitext(model_path)[1].lower() in self.get_supported_formats()
