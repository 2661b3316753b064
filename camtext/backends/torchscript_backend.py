"""TorchScript backend for exported detection and recognition models."""
import logging
from typing import List, Dict, Any, Optional

import numpy as np

from .base_backend import InferenceBackend, InferenceOutput
from ..core.device_utils import DeviceDetector
from ..core.exceptions import ModelLoadError, UnexpectedOutputShape

logger = logging.getLogger(__name__)

# Try to import torch
HAS_TORCH = False
try:
    import torch
    HAS_TORCH = True
except ImportError:
    HAS_TORCH = False


class TorchScriptBackend(InferenceBackend):
    """Runs a ``torch.jit`` scripted model on CPU or CUDA."""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        super().__init__(config)
        self.model = None
        self.model_path: Optional[str] = None
        self.device = 'cpu'

    def load_model(self, model_path: str) -> bool:
        if not HAS_TORCH:
            raise ModelLoadError("PyTorch not installed. Cannot use TorchScript backend.")
        if not self.validate_model(model_path):
            raise ModelLoadError(f"Model file not found or unsupported: {model_path}")

        device_info = DeviceDetector.detect_device(self.config.get('prefer_gpu', False))
        self.device = device_info.device
        try:
            self.model = torch.jit.load(model_path, map_location=self.device)
            self.model.eval()
        except (RuntimeError, ValueError, OSError) as e:
            self.is_loaded = False
            raise ModelLoadError(f"Failed to load TorchScript model {model_path}: {e}") from e

        self.model_path = model_path
        self.is_loaded = True
        self.model_info = {
            'backend': 'torchscript',
            'model_path': model_path,
            'device': self.device,
        }
        logger.info(f"Loaded TorchScript model {model_path} on {self.device}")
        return True

    def infer(self, input_buffer: np.ndarray) -> InferenceOutput:
        if not self.is_loaded or self.model is None:
            raise ModelLoadError("No model loaded")

        tensor = torch.from_numpy(np.ascontiguousarray(input_buffer)).to(self.device)
        with torch.inference_mode():
            output = self.model(tensor)
        return self._to_numpy(output)

    def _to_numpy(self, output: Any) -> InferenceOutput:
        if isinstance(output, torch.Tensor):
            return output.detach().cpu().numpy()
        if isinstance(output, (list, tuple)):
            return [self._to_numpy(item) for item in output]
        if isinstance(output, dict):
            return [self._to_numpy(item) for item in output.values()]
        raise UnexpectedOutputShape(f"Model returned unsupported output type {type(output).__name__}")

    def unload_model(self) -> None:
        self.model = None
        self.model_path = None
        super().unload_model()

    def get_supported_formats(self) -> List[str]:
        return ['.pt', '.pth', '.torchscript']
