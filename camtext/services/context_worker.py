"""Message handler that runs inside each execution context.

The handler owns the detection and recognition model handles of its
context. It answers the protocol messages:

- ``init``: load both models, reply ``initialized``
- ``detect``: run detection on a canvas and extract boxes, reply ``detectComplete``
- ``processRegion``: recognize a batch of crops, reply ``regionComplete``
- ``getMemoryInfo``: report buffer and process memory, reply ``memoryInfo``

Exceptions raised here are turned into ``error`` replies by the channel.
"""
from __future__ import annotations

import logging
import os
from typing import Any, Callable, Dict, Optional

import numpy as np

from ..backends.base_backend import InferenceBackend, InferenceOutput
from ..backends.torchscript_backend import TorchScriptBackend
from ..config.defaults import DEFAULT_CONFIG
from ..core.channel import Message, RESPONSE_TYPES
from ..core.entities import ImageSize
from ..core.exceptions import (
    BatchProcessingError, ContextError, ModelLoadError, UnexpectedOutputShape,
)
from ..core.logging_config import configure_context_logging
from ..core.memory_manager import ResourceGovernor
from ..utils.image_utils import normalize_channels, resize_nearest, to_layout
from .box_extraction import HeatmapBoxExtractor
from .sequence_decoder import SequenceDecoder

logger = logging.getLogger(__name__)

BackendFactory = Callable[[Dict[str, Any]], InferenceBackend]


def first_output(output: InferenceOutput) -> np.ndarray:
    """Accept a single buffer or a list of buffers; return the primary buffer."""
    if isinstance(output, np.ndarray):
        return output
    if isinstance(output, (list, tuple)) and output and isinstance(output[0], np.ndarray):
        return output[0]
    raise UnexpectedOutputShape(f"Inference returned {type(output).__name__}, expected array or list of arrays")


class ContextWorker:
    """Protocol handler holding one context's model handles."""

    def __init__(self, backend_factory: Optional[BackendFactory] = None):
        self.backend_factory = backend_factory or TorchScriptBackend
        self.detector: Optional[InferenceBackend] = None
        self.recognizer: Optional[InferenceBackend] = None
        self.extractor: Optional[HeatmapBoxExtractor] = None
        self.decoder: Optional[SequenceDecoder] = None
        self.governor = ResourceGovernor()
        self.settings: Dict[str, Any] = {}
        self._handlers = {
            "init": self._handle_init,
            "detect": self._handle_detect,
            "processRegion": self._handle_process_region,
            "getMemoryInfo": self._handle_memory_info,
        }

    @property
    def is_initialized(self) -> bool:
        return self.detector is not None and self.recognizer is not None

    def handle(self, message: Message) -> Message:
        handler = self._handlers.get(message.type)
        if handler is None:
            raise ContextError(f"Unknown message type '{message.type}'")
        if message.type not in ("init", "getMemoryInfo") and not self.is_initialized:
            raise ContextError(f"Context received '{message.type}' before init")
        return Message(RESPONSE_TYPES[message.type], handler(message.data or {}))

    def _setting(self, key: str) -> Any:
        return self.settings.get(key, DEFAULT_CONFIG.get(key))

    def _load(self, path: str) -> InferenceBackend:
        backend = self.backend_factory({'prefer_gpu': self._setting('prefer_gpu')})
        try:
            backend.load_model(path)
        except ModelLoadError:
            raise
        except Exception as e:
            raise ModelLoadError(f"Failed to load model {path}: {e}") from e
        return backend

    def _handle_init(self, data: Dict[str, Any]) -> Dict[str, Any]:
        self.settings = dict(data)
        configure_context_logging(self._setting('log_level'), self._setting('structured_logging'))
        self.close()
        self.detector = self._load(self._setting('detection_model_path'))
        try:
            self.recognizer = self._load(self._setting('recognition_model_path'))
        except ModelLoadError:
            self.detector.unload_model()
            self.detector = None
            raise

        self.extractor = HeatmapBoxExtractor(
            threshold=self._setting('binarize_threshold'),
            min_box_side=self._setting('min_box_side'),
            offset_ratio=self._setting('offset_ratio'),
        )
        self.decoder = SequenceDecoder(self._setting('vocab'), self._setting('blank_index'))
        self.governor = ResourceGovernor(
            max_live_buffers=self._setting('max_live_buffers'),
            max_live_bytes=self.settings.get('max_live_bytes'),
        )
        logger.info(f"Context {os.getpid()} initialized")
        return {
            'context_pid': os.getpid(),
            'models': {
                'detection': self.detector.get_model_info(),
                'recognition': self.recognizer.get_model_info(),
            },
        }

    def _detection_size(self) -> ImageSize:
        height, width = self._setting('detection_size') or (
            DEFAULT_CONFIG['detection_height'], DEFAULT_CONFIG['detection_width']
        )
        return ImageSize(int(height), int(width))

    def _handle_detect(self, data: Dict[str, Any]) -> Dict[str, Any]:
        image = np.asarray(data['image'])
        size = self._detection_size()
        with self.governor.scope("detect") as arena:
            if image.shape[:2] != (size.height, size.width):
                image = resize_nearest(image, (size.height, size.width))
            batch = arena.track(normalize_channels(image[np.newaxis], self._setting('det_mean'), self._setting('det_std')))
            batch = to_layout(batch, self._setting('input_layout'))
            # 1xHxWx1 and 1x1xHxW outputs both flatten to H*W values
            heatmap = arena.track(first_output(self.detector.infer(batch)))
            boxes = self.extractor.extract(heatmap, size)
        return {
            'boxes': [box.to_dict() for box in boxes],
            'heatmap_size': [size.height, size.width],
        }

    def _handle_process_region(self, data: Dict[str, Any]) -> Dict[str, Any]:
        box_ids = [int(i) for i in data.get('box_ids', [])]
        crops = np.asarray(data['crops']) if len(box_ids) else None
        if crops is None:
            return {'box_ids': [], 'words': []}
        if crops.ndim != 4 or crops.shape[0] != len(box_ids):
            raise BatchProcessingError(
                f"Expected {len(box_ids)} crops as N x H x W x C, got shape {crops.shape}"
            )
        with self.governor.scope("recognize") as arena:
            batch = arena.track(normalize_channels(crops, self._setting('rec_mean'), self._setting('rec_std')))
            batch = to_layout(batch, self._setting('input_layout'))
            logits = arena.track(first_output(self.recognizer.infer(batch)))
            words = self.decoder.decode_logits(logits)
        if len(words) != len(box_ids):
            raise BatchProcessingError(f"Decoded {len(words)} sequences for {len(box_ids)} crops")
        return {'box_ids': box_ids, 'words': words}

    def _handle_memory_info(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return self.governor.memory_info()

    def close(self) -> None:
        for backend in (self.detector, self.recognizer):
            if backend is not None:
                backend.unload_model()
        self.detector = None
        self.recognizer = None
        self.governor.stop_monitoring()
