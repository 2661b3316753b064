"""End-to-end text extraction: image in, words with pixel boxes out."""
from __future__ import annotations

import logging
import time
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Dict, List, Optional, Tuple

import cv2
import numpy as np

from ..config.settings import Config
from ..core.channel import Channel, HandlerFactory, ProcessChannel, ThreadChannel
from ..core.device_utils import probe_device_profile
from ..core.entities import BoundingBox, DeviceProfile, ExtractionResult, ImageSize
from ..core.exceptions import ApplicationError, ContextTimeoutError, PoolStateError
from ..core.execution_pool import ChannelFactory, ExecutionPool
from ..core.logging_config import CorrelationContext
from ..core.memory_manager import ResourceGovernor
from ..core.performance import PerformanceMonitor, PerformanceTimer
from ..utils.image_utils import resize_nearest, resize_to_max_dimension, to_rgb
from .batch_scheduler import BatchScheduler
from .context_worker import ContextWorker
from .crop_normalizer import CropNormalizer

logger = logging.getLogger(__name__)


def build_channel_factory(config: Config, handler_factory: Optional[HandlerFactory] = None) -> ChannelFactory:
    """Channel constructor for the configured isolation mode."""
    handler_factory = handler_factory or ContextWorker

    if config.isolation == "thread":
        def make_thread_channel(index: int) -> Channel:
            return ThreadChannel(handler_factory, name=f"context-{index}")
        return make_thread_channel

    def make_process_channel(index: int) -> Channel:
        return ProcessChannel(handler_factory, name=f"context-{index}")
    return make_process_channel


class TextExtractionPipeline:
    """Runs detection, cropping and recognition for one image at a time.

    The whole call is guarded by a watchdog: if it does not finish within
    ``watchdog_timeout_seconds`` the execution pool is reset and
    ``ContextTimeoutError`` is raised without a partial result.
    """

    def __init__(self,
                 config: Optional[Config] = None,
                 handler_factory: Optional[HandlerFactory] = None,
                 device_profile: Optional[DeviceProfile] = None,
                 channel_factory: Optional[ChannelFactory] = None):
        self.config = config or Config()
        self.handler_factory = handler_factory or ContextWorker
        self.device_profile = device_profile
        self.channel_factory = channel_factory
        self.pool: Optional[ExecutionPool] = None
        self.scheduler: Optional[BatchScheduler] = None
        self.normalizer = CropNormalizer(self.config.recognition_size)
        self.governor = ResourceGovernor(
            max_live_buffers=self.config.max_live_buffers,
            max_live_bytes=self.config.max_live_bytes,
        )

    @property
    def is_started(self) -> bool:
        return self.pool is not None

    def start(self) -> None:
        """Probe the device and bring up the execution pool.

        Raises:
            ModelLoadError: A context could not load its models.
            ContextTimeoutError: A context did not finish its handshake in time.
        """
        if self.pool is not None:
            return
        if self.device_profile is None:
            self.device_profile = probe_device_profile(self.config)
        channel_factory = self.channel_factory or build_channel_factory(self.config, self.handler_factory)

        pool = ExecutionPool(
            channel_factory,
            size=self.device_profile.pool_size,
            init_payload=self.config.context_init_payload(),
            init_timeout=self.config.init_timeout_seconds,
            context_timeout=self.config.context_timeout_seconds,
            name="RecognitionPool",
        )
        pool.initialize()
        self.pool = pool
        self.scheduler = BatchScheduler(pool, self.governor)
        if self.config.enable_memory_monitor:
            self.governor.start_monitoring(self.config.memory_monitor_interval)
        logger.info(f"Pipeline started with {pool.size} contexts ({self.config.isolation} isolation)")

    def prepare_canvas(self, image: np.ndarray, color_order: str = "BGR") -> Tuple[np.ndarray, np.ndarray]:
        """Return (downscaled RGB source, detection canvas)."""
        source = resize_to_max_dimension(to_rgb(image, color_order), self.device_profile.max_dimension)
        size = self.config.detection_size
        canvas = resize_nearest(source, (size.height, size.width))
        return source, canvas

    def detect_boxes(self, canvas: np.ndarray, deadline: Optional[float] = None) -> List[BoundingBox]:
        """Run detection on a canvas in one context and rebuild its boxes."""
        future = self.pool.submit("detect", {"image": canvas})
        timeout = None if deadline is None else max(0.0, deadline - time.monotonic())
        try:
            reply = future.result(timeout=timeout)
        except FutureTimeout:
            raise ContextTimeoutError("Detection did not finish before the watchdog deadline") from None
        return [BoundingBox.from_dict(item) for item in reply.get("boxes", [])]

    def extract_text(self, image: np.ndarray, color_order: str = "BGR") -> ExtractionResult:
        """Extract words and their source-pixel boxes from an image.

        Args:
            image: H x W x 3 (or 4, or grayscale) uint8 image
            color_order: Channel order of image, "BGR" (OpenCV) or "RGB"

        Returns:
            ExtractionResult, possibly with no words

        Raises:
            ContextTimeoutError: The watchdog or a context deadline expired; the pool was reset.
            ModelLoadError: The pool could not be (re)initialized.
            ShapeMismatch: The detection output did not match the declared heatmap size.
        """
        if image is None or not isinstance(image, np.ndarray) or image.size == 0:
            raise ValueError("extract_text requires a non-empty image array")
        self.start()

        started = time.perf_counter()
        stage_times: Dict[str, float] = {}
        with CorrelationContext() as corr_id:
            if not self.pool.wait_ready(self.config.init_timeout_seconds):
                raise PoolStateError(f"Pool is {self.pool.state.value}, cannot extract text")
            generation = self.pool.generation
            deadline = time.monotonic() + self.config.watchdog_timeout_seconds

            try:
                with self.governor.scope("extract") as arena:
                    with PerformanceTimer("extract.prepare") as timer:
                        source, canvas = self.prepare_canvas(image, color_order)
                        arena.track(source)
                        arena.track(canvas)
                    stage_times["prepare"] = timer.duration_ms

                    with PerformanceTimer("extract.detect") as timer:
                        boxes = self.detect_boxes(canvas, deadline)
                    stage_times["detect"] = timer.duration_ms

                    with PerformanceTimer("extract.crop") as timer:
                        crops, skipped = self.normalizer.normalize_all(
                            source, boxes,
                            canvas_size=self.config.detection_size,
                            report_size=ImageSize(*image.shape[:2]),
                        )
                        for crop in crops:
                            arena.track(crop.buffer)
                    stage_times["crop"] = timer.duration_ms

                    with PerformanceTimer("extract.recognize") as timer:
                        report = self.scheduler.recognize(crops, self.device_profile, deadline)
                    stage_times["recognize"] = timer.duration_ms
            except ContextTimeoutError as e:
                logger.error(f"Extraction timed out: {e}")
                self._reset_after_timeout(str(e), generation)
                raise

            elapsed_ms = int((time.perf_counter() - started) * 1000)
            logger.info(
                f"Extracted {len(report.words)} words from {len(boxes)} boxes in {elapsed_ms} ms "
                f"(skipped crops: {skipped}, dropped batches: {report.dropped_batches})"
            )
            return ExtractionResult(
                words=report.words,
                boxes=boxes,
                elapsed_ms=elapsed_ms,
                correlation_id=corr_id,
                skipped_crops=skipped,
                dropped_batches=report.dropped_batches,
                stage_times=stage_times,
            )

    def _reset_after_timeout(self, reason: str, generation: int) -> None:
        try:
            self.pool.reset(reason=f"watchdog: {reason}", expected_generation=generation)
        except ApplicationError as e:
            logger.error(f"Pool reinitialization after timeout failed: {e}")

    def extract_text_from_file(self, path: str) -> ExtractionResult:
        image = cv2.imread(str(path), cv2.IMREAD_COLOR)
        if image is None:
            raise FileNotFoundError(f"Cannot read image '{path}'")
        return self.extract_text(image, color_order="BGR")

    def memory_info(self) -> Dict[str, Any]:
        """Memory of the coordinator, one context, and the pool counters."""
        info: Dict[str, Any] = {'coordinator': self.governor.memory_info()}
        if self.pool is not None:
            info['pool'] = self.pool.stats()
            future = self.pool.submit("getMemoryInfo", {})
            try:
                info['context'] = future.result(timeout=self.config.context_timeout_seconds)
            except FutureTimeout:
                raise ContextTimeoutError("Context did not report memory info in time") from None
        return info

    def stage_stats(self) -> Dict[str, Dict[str, float]]:
        """Latency statistics of every extraction stage run in this process."""
        return PerformanceMonitor.instance().summary("extract.")

    def close(self) -> None:
        self.governor.stop_monitoring()
        if self.pool is not None:
            self.pool.terminate()
            self.pool = None
            self.scheduler = None

    def __enter__(self) -> 'TextExtractionPipeline':
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
