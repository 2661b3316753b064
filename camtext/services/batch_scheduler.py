"""Partitioning of crops into recognition batches and their dispatch to the pool."""
from __future__ import annotations

import logging
import time
from concurrent.futures import Future, TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..core.entities import Crop, DecodedWord, DeviceProfile, RecognitionBatch
from ..core.exceptions import (
    ApplicationError, BatchProcessingError, ContextTimeoutError, ModelLoadError, PoolStateError,
)
from ..core.execution_pool import ExecutionPool
from ..core.memory_manager import ResourceGovernor

logger = logging.getLogger(__name__)

# Failures that end the whole extraction instead of a single batch.
FATAL_ERRORS = (ContextTimeoutError, ModelLoadError, PoolStateError)


@dataclass
class RecognitionReport:
    words: List[DecodedWord]
    batches: int
    dropped_batches: int


class BatchScheduler:
    """Drives recognition of crops through the execution pool.

    Unconstrained devices submit every batch up front and let the pool queue
    the excess. Constrained devices run one batch at a time and give the
    governor a chance to reclaim memory in between.
    """

    def __init__(self, pool: ExecutionPool, governor: Optional[ResourceGovernor] = None):
        self.pool = pool
        self.governor = governor or ResourceGovernor()

    @staticmethod
    def partition(crops: Sequence[Crop], batch_size: int) -> List[RecognitionBatch]:
        """Split crops into consecutive batches of at most batch_size."""
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        return [
            RecognitionBatch(index=i // batch_size, crops=list(crops[i:i + batch_size]))
            for i in range(0, len(crops), batch_size)
        ]

    def run_recognition(self, crops: Sequence[Crop], device_profile: DeviceProfile,
                        deadline: Optional[float] = None) -> List[DecodedWord]:
        return self.recognize(crops, device_profile, deadline).words

    def recognize(self, crops: Sequence[Crop], device_profile: DeviceProfile,
                  deadline: Optional[float] = None) -> RecognitionReport:
        """Recognize every crop and pair each non-empty word with its box.

        Args:
            crops: Normalized crops, in the order their words should be reported
            device_profile: Session capability profile; sets batch size and pacing
            deadline: ``time.monotonic()`` value after which waiting is abandoned

        Returns:
            RecognitionReport with words in batch and intra-batch order

        Raises:
            ContextTimeoutError: A context or the deadline expired.
            ModelLoadError, PoolStateError: The pool can no longer serve requests.
        """
        batches = self.partition(crops, device_profile.batch_size)
        if not batches:
            return RecognitionReport(words=[], batches=0, dropped_batches=0)

        logger.debug(
            f"Recognizing {len(crops)} crops in {len(batches)} batches "
            f"(batch_size={device_profile.batch_size}, constrained={device_profile.is_constrained})"
        )

        words: List[DecodedWord] = []
        dropped = 0
        if device_profile.is_constrained:
            for n, batch in enumerate(batches):
                if n:
                    self.governor.reclaim()
                batch_words = self._collect(batch, self._submit(batch), deadline)
                if batch_words is None:
                    dropped += 1
                else:
                    words.extend(batch_words)
        else:
            submitted: List[Tuple[RecognitionBatch, Future]] = []
            try:
                for batch in batches:
                    submitted.append((batch, self._submit(batch)))
                for batch, future in submitted:
                    batch_words = self._collect(batch, future, deadline)
                    if batch_words is None:
                        dropped += 1
                    else:
                        words.extend(batch_words)
            except FATAL_ERRORS:
                for _, future in submitted:
                    future.cancel()
                raise

        if dropped:
            logger.warning(f"Dropped {dropped} of {len(batches)} recognition batches")
        return RecognitionReport(words=words, batches=len(batches), dropped_batches=dropped)

    def _submit(self, batch: RecognitionBatch) -> Future:
        payload = {'crops': batch.stack(), 'box_ids': batch.box_ids}
        return self.pool.submit('processRegion', payload)

    def _collect(self, batch: RecognitionBatch, future: Future,
                 deadline: Optional[float]) -> Optional[List[DecodedWord]]:
        """Wait for one batch. Returns None when the batch is dropped."""
        timeout = None if deadline is None else max(0.0, deadline - time.monotonic())
        try:
            reply = future.result(timeout=timeout)
            return self.associate(batch, reply)
        except FutureTimeout:
            raise ContextTimeoutError(f"Recognition deadline passed while waiting for batch {batch.index}") from None
        except FATAL_ERRORS:
            raise
        except ApplicationError as e:
            error = e if isinstance(e, BatchProcessingError) else BatchProcessingError(
                f"Batch {batch.index} failed: {type(e).__name__}: {e}"
            )
            logger.error(f"{error}; dropping {len(batch)} crops")
            return None

    @staticmethod
    def associate(batch: RecognitionBatch, reply: Dict[str, Any]) -> List[DecodedWord]:
        """Pair decoded words with crops by box id, skipping empty words.

        Raises:
            BatchProcessingError: The reply does not cover exactly the batch's boxes.
        """
        ids = [int(i) for i in reply.get('box_ids', [])]
        texts = list(reply.get('words', []))
        if len(ids) != len(texts) or sorted(ids) != sorted(batch.box_ids):
            raise BatchProcessingError(
                f"Batch {batch.index} reply covers boxes {ids}, expected {batch.box_ids}"
            )
        by_id = dict(zip(ids, texts))
        return [
            DecodedWord(word=by_id[crop.box_id], bounding_box=crop.pixel_bbox, box_id=crop.box_id)
            for crop in batch.crops
            if by_id[crop.box_id]
        ]
