"""Inference engine backends."""

from .base_backend import InferenceBackend, InferenceOutput
from .torchscript_backend import TorchScriptBackend, HAS_TORCH

__all__ = ["InferenceBackend", "InferenceOutput", "TorchScriptBackend", "HAS_TORCH"]
