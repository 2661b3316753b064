"""Services package for the extraction pipeline."""

from .box_extraction import HeatmapBoxExtractor
from .crop_normalizer import CropNormalizer
from .sequence_decoder import SequenceDecoder
from .batch_scheduler import BatchScheduler, RecognitionReport
from .context_worker import ContextWorker
from .pipeline import TextExtractionPipeline, build_channel_factory

__all__ = [
    "HeatmapBoxExtractor", "CropNormalizer", "SequenceDecoder",
    "BatchScheduler", "RecognitionReport", "ContextWorker",
    "TextExtractionPipeline", "build_channel_factory",
]
