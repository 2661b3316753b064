"""End-to-end tests of the text extraction pipeline against fake models."""
import threading

import cv2
import numpy as np
import pytest

from camtext.core.channel import Message, ProcessChannel, ThreadChannel
from camtext.core.entities import DeviceProfile
from camtext.core.exceptions import ContextTimeoutError, ModelLoadError
from camtext.core.execution_pool import PoolState
from camtext.services.context_worker import ContextWorker
from camtext.services.pipeline import TextExtractionPipeline, build_channel_factory


class StallingWorker(ContextWorker):
    """ContextWorker whose detect step blocks while ``stall`` is set."""

    stall = threading.Event()
    release = threading.Event()

    def handle(self, message: Message) -> Message:
        if message.type == "detect" and self.stall.is_set():
            self.release.wait(10)
        return super().handle(message)


def contains(bbox, rect) -> bool:
    x, y, w, h = rect
    return bbox.x <= x and bbox.y <= y and bbox.x + bbox.width >= x + w and bbox.y + bbox.height >= y + h


@pytest.fixture
def pipeline(test_config, device_profile, fake_worker_factory):
    pipeline = TextExtractionPipeline(
        test_config,
        handler_factory=fake_worker_factory,
        device_profile=DeviceProfile(max_dimension=4096, batch_size=1, is_constrained=False, pool_size=2),
    )
    yield pipeline
    pipeline.close()


class TestExtraction:

    def test_scene_words_with_boxes(self, pipeline, scene_image, scene):
        result = pipeline.extract_text(scene_image)

        assert len(result.boxes) == 2
        assert sorted(w.word for w in result.words) == sorted(scene["words"])
        for word in result.words:
            rect = scene["rects"][scene["words"].index(word.word)]
            assert contains(word.bounding_box, rect)
        assert result.correlation_id
        assert set(result.stage_times) == {"prepare", "detect", "crop", "recognize"}
        assert result.skipped_crops == 0 and result.dropped_batches == 0

    def test_words_follow_box_order(self, pipeline, scene_image):
        result = pipeline.extract_text(scene_image)
        assert [w.box_id for w in result.words] == [b.id for b in result.boxes]

    def test_blank_image_has_no_words(self, pipeline):
        result = pipeline.extract_text(np.zeros((512, 512, 3), dtype=np.uint8))
        assert len(result.boxes) == 2
        assert result.is_empty
        assert result.text == ""

    def test_source_scaled_from_canvas(self, pipeline, scene_image, scene):
        """A 1024x1024 source is detected on the 512x512 canvas; boxes map back to source pixels."""
        large = cv2.resize(scene_image, (1024, 1024), interpolation=cv2.INTER_NEAREST)
        result = pipeline.extract_text(large)
        hello = next(w for w in result.words if w.word == "HELLO")
        x, y, w, h = scene["rects"][0]
        assert contains(hello.bounding_box, (2 * x, 2 * y, 2 * w, 2 * h))

    def test_boxes_in_native_pixels_when_source_downscaled(self, test_config, fake_worker_factory,
                                                           scene_image, scene):
        """Sources above max_dimension are shrunk for cropping; reported boxes stay in native pixels."""
        large = cv2.resize(scene_image, (1024, 1024), interpolation=cv2.INTER_NEAREST)
        profile = DeviceProfile(max_dimension=512, batch_size=4, is_constrained=False, pool_size=1)
        with TextExtractionPipeline(test_config, fake_worker_factory, profile) as pipeline:
            result = pipeline.extract_text(large)

        assert sorted(w.word for w in result.words) == sorted(scene["words"])
        for word in result.words:
            x, y, w, h = scene["rects"][scene["words"].index(word.word)]
            assert contains(word.bounding_box, (2 * x, 2 * y, 2 * w, 2 * h))

    def test_constrained_profile(self, test_config, fake_worker_factory, constrained_profile, scene_image, scene):
        with TextExtractionPipeline(test_config, fake_worker_factory, constrained_profile) as pipeline:
            result = pipeline.extract_text(scene_image)
        assert sorted(w.word for w in result.words) == sorted(scene["words"])

    def test_rgb_and_grayscale_input(self, pipeline, scene_image):
        assert len(pipeline.extract_text(scene_image[:, :, ::-1].copy(), color_order="RGB").words) == 2
        gray = cv2.cvtColor(scene_image, cv2.COLOR_BGR2GRAY)
        assert len(pipeline.extract_text(gray).words) == 2

    def test_from_file(self, pipeline, scene_image, temp_dir):
        path = temp_dir / "scene.png"
        cv2.imwrite(str(path), scene_image)
        assert len(pipeline.extract_text_from_file(str(path)).words) == 2
        with pytest.raises(FileNotFoundError):
            pipeline.extract_text_from_file(str(temp_dir / "missing.png"))

    def test_empty_image_rejected(self, pipeline):
        with pytest.raises(ValueError):
            pipeline.extract_text(np.zeros((0, 0, 3), dtype=np.uint8))

    def test_buffers_released_after_call(self, pipeline, scene_image):
        pipeline.extract_text(scene_image)
        assert pipeline.governor.stats().live_buffers == 0

    def test_memory_info(self, pipeline, scene_image):
        pipeline.extract_text(scene_image)
        info = pipeline.memory_info()
        assert info["pool"]["state"] == "ready"
        assert info["context"]["live_buffers"] == 0
        assert "rss_mb" in info["coordinator"]

    def test_stage_stats(self, pipeline, scene_image):
        pipeline.extract_text(scene_image)
        stats = pipeline.stage_stats()
        assert {"extract.prepare", "extract.detect", "extract.crop", "extract.recognize"} <= set(stats)
        assert stats["extract.detect"]["count"] >= 1


class TestFailures:

    def test_model_load_failure(self, test_config, device_profile, fake_worker_factory):
        test_config.recognition_model_path = "missing.pt"
        pipeline = TextExtractionPipeline(test_config, fake_worker_factory, device_profile)
        with pytest.raises(ModelLoadError):
            pipeline.start()
        assert pipeline.pool is None

    def test_watchdog_resets_pool(self, test_config, fake_backend_class, scene_image):
        StallingWorker.stall.set()
        StallingWorker.release.clear()
        test_config.watchdog_timeout_seconds = 0.3
        profile = DeviceProfile(max_dimension=4096, batch_size=4, is_constrained=False, pool_size=1)
        pipeline = TextExtractionPipeline(
            test_config, lambda: StallingWorker(backend_factory=fake_backend_class), profile,
        )
        try:
            with pytest.raises(ContextTimeoutError):
                pipeline.extract_text(scene_image)
            assert pipeline.pool.generation == 1
            assert pipeline.pool.state is PoolState.READY

            StallingWorker.stall.clear()
            test_config.watchdog_timeout_seconds = 10.0
            assert len(pipeline.extract_text(scene_image).words) == 2
        finally:
            StallingWorker.stall.clear()
            StallingWorker.release.set()
            pipeline.close()


class TestChannelFactory:

    def test_isolation_modes(self, test_config):
        assert isinstance(build_channel_factory(test_config)(0), ThreadChannel)
        test_config.isolation = "process"
        assert isinstance(build_channel_factory(test_config)(0), ProcessChannel)


@pytest.mark.process
@pytest.mark.slow
def test_process_isolation(test_config, device_profile, fake_worker_factory, scene_image, scene):
    test_config.isolation = "process"
    test_config.init_timeout_seconds = 60.0
    with TextExtractionPipeline(test_config, fake_worker_factory, device_profile) as pipeline:
        result = pipeline.extract_text(scene_image)
    assert sorted(w.word for w in result.words) == sorted(scene["words"])
