"""Pytest configuration and shared fixtures for the text extraction core.

Model backends are replaced by ``FakeBackend``, which produces a fixed
heatmap for detection and reads crop intensity for recognition, so the full
pipeline can run without any model files.
"""
import os
import sys
import time
import tempfile
import functools
import pytest
import logging
from pathlib import Path
from typing import Callable, List, Tuple

import numpy as np

# Add the project root to Python path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from camtext.backends.base_backend import InferenceBackend
from camtext.config.defaults import VOCAB
from camtext.config.settings import Config
from camtext.core.channel import Message, ThreadChannel
from camtext.core.entities import BoundingBox, BoxStyle, Crop, DeviceProfile, ImageSize, PixelBBox
from camtext.core.exceptions import ModelLoadError
from camtext.core.execution_pool import ExecutionPool
from camtext.services.context_worker import ContextWorker


# Configure logging for tests
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler()]
)

FAKE_DETECTOR_PATH = "fake://detector"
FAKE_RECOGNIZER_PATH = "fake://recognizer"

# Text regions (x, y, w, h) painted into the fake heatmap and the sample scene.
SCENE_RECTS: List[Tuple[int, int, int, int]] = [(50, 60, 120, 40), (300, 300, 80, 30)]
# Pixel value painted into each region, and the word the fake recognizer reads from it.
SCENE_VALUES = [200, 50]
SCENE_WORDS = ["HELLO", "WORLD"]


def make_heatmap(size: ImageSize, rects, value: float = 0.9) -> np.ndarray:
    """Heatmap with the given rectangles set to value."""
    heatmap = np.zeros((size.height, size.width), dtype=np.float32)
    for x, y, w, h in rects:
        heatmap[y:y + h, x:x + w] = value
    return heatmap


def word_to_logits(word: str, steps: int = 32, vocab: str = VOCAB) -> np.ndarray:
    """One-hot T x C scores that greedy CTC decodes back to word."""
    blank = len(vocab)
    labels = []
    for ch in word:
        labels.extend([vocab.index(ch), blank])
    labels.extend([blank] * (steps - len(labels)))
    logits = np.zeros((steps, blank + 1), dtype=np.float32)
    logits[np.arange(steps), labels[:steps]] = 1.0
    return logits


class FakeBackend(InferenceBackend):
    """Stand-in model selected by its path."""

    def load_model(self, model_path: str) -> bool:
        if model_path not in (FAKE_DETECTOR_PATH, FAKE_RECOGNIZER_PATH):
            raise ModelLoadError(f"Cannot load {model_path}")
        self.role = "detection" if model_path == FAKE_DETECTOR_PATH else "recognition"
        self.is_loaded = True
        self.model_info = {"backend": "fake", "role": self.role, "model_path": model_path}
        return True

    def infer(self, input_buffer: np.ndarray):
        if self.role == "detection":
            n, h, w = input_buffer.shape[:3]
            return make_heatmap(ImageSize(h, w), SCENE_RECTS)[np.newaxis, :, :, np.newaxis]
        # undo (x - 255*mean) / (255*std) to recover raw pixel intensity
        raw = input_buffer * (255.0 * 0.298) + 255.0 * 0.694
        out = []
        for crop in raw:
            peak = float(crop.max())
            if peak > 150:
                word = SCENE_WORDS[0]
            elif peak > 25:
                word = SCENE_WORDS[1]
            else:
                word = ""
            out.append(word_to_logits(word))
        return [np.stack(out)]

    def get_supported_formats(self) -> List[str]:
        return [".fake"]


class InitOnlyHandler:
    """Minimal protocol handler: acknowledges init and echoes regions."""

    def handle(self, message: Message) -> Message:
        if message.type == "init":
            return Message("initialized", {})
        if message.type == "getMemoryInfo":
            return Message("memoryInfo", {"live_buffers": 0})
        return Message("regionComplete", dict(message.data))


@pytest.fixture
def temp_dir():
    """Provide a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def test_config():
    """Configuration wired to the fake models and thread isolation."""
    return Config(
        detection_model_path=FAKE_DETECTOR_PATH,
        recognition_model_path=FAKE_RECOGNIZER_PATH,
        isolation="thread",
        init_timeout_seconds=5.0,
        context_timeout_seconds=5.0,
        watchdog_timeout_seconds=10.0,
    )


@pytest.fixture
def device_profile():
    return DeviceProfile(max_dimension=4096, batch_size=16, is_constrained=False, pool_size=2)


@pytest.fixture
def constrained_profile():
    return DeviceProfile(max_dimension=2048, batch_size=4, is_constrained=True, pool_size=1)


@pytest.fixture
def scene_image():
    """512x512 BGR image with one bright and one dim text region."""
    image = np.zeros((512, 512, 3), dtype=np.uint8)
    for (x, y, w, h), value in zip(SCENE_RECTS, SCENE_VALUES):
        image[y:y + h, x:x + w] = value
    return image


@pytest.fixture
def heatmap_factory():
    return make_heatmap


@pytest.fixture
def logits_factory():
    return word_to_logits


@pytest.fixture
def scene():
    """Regions, intensities and expected words of the sample scene."""
    return {"rects": list(SCENE_RECTS), "values": list(SCENE_VALUES), "words": list(SCENE_WORDS)}


@pytest.fixture
def fake_backend_class():
    return FakeBackend


@pytest.fixture
def crop_factory():
    """Build Crops with a given box id and fill value."""
    def _make(box_id: int, value: int = 0) -> Crop:
        box = BoundingBox(
            id=box_id,
            corners=((0.1, 0.1), (0.2, 0.1), (0.2, 0.2), (0.1, 0.2)),
            style=BoxStyle("#000000"),
        )
        buffer = np.full((32, 128, 3), value, dtype=np.uint8)
        return Crop(buffer=buffer, source_box=box, pixel_bbox=PixelBBox(box_id, box_id, 10, 10))
    return _make


@pytest.fixture
def thread_pool_factory():
    """Create thread-backed pools from a handler factory; all are terminated at teardown."""
    pools: List[ExecutionPool] = []

    def _make(handler_factory, size: int = 2, context_timeout: float = 5.0,
              init_timeout: float = 5.0, initialize: bool = True) -> ExecutionPool:
        pool = ExecutionPool(
            lambda i: ThreadChannel(handler_factory, name=f"test-{i}"),
            size=size,
            init_timeout=init_timeout,
            context_timeout=context_timeout,
            name="TestPool",
        )
        pools.append(pool)
        if initialize:
            pool.initialize()
        return pool

    yield _make
    for pool in pools:
        pool.terminate(wait=False)


@pytest.fixture
def echo_handler_class():
    return InitOnlyHandler


@pytest.fixture
def fake_worker_factory():
    return functools.partial(ContextWorker, backend_factory=FakeBackend)


@pytest.fixture
def wait_until():
    """Poll a predicate until it holds or the timeout passes."""
    def _wait(predicate: Callable[[], bool], timeout: float = 3.0, interval: float = 0.01) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(interval)
        return predicate()
    return _wait


# Test markers and utilities
def pytest_configure(config):
    """Configure pytest with custom markers and settings."""
    config.addinivalue_line("markers", "slow: mark test as slow running")
    config.addinivalue_line("markers", "integration: mark test as integration test")
    config.addinivalue_line("markers", "unit: mark test as unit test")
    config.addinivalue_line("markers", "performance: mark test as performance test")
    config.addinivalue_line("markers", "process: mark test as spawning context processes")


def pytest_collection_modifyitems(config, items):
    """Add markers based on test file location."""
    for item in items:
        path = str(item.fspath)
        if "integration" in path:
            item.add_marker(pytest.mark.integration)
        elif "performance" in path:
            item.add_marker(pytest.mark.performance)
        elif "unit" in path:
            item.add_marker(pytest.mark.unit)

        if item.get_closest_marker("process") and not os.getenv("RUN_PROCESS_TESTS"):
            item.add_marker(pytest.mark.skip(reason="Process isolation tests disabled. Set RUN_PROCESS_TESTS=1."))
