"""Unit tests for recognition batching and word association."""
import threading
import time

import numpy as np
import pytest

from camtext.core.channel import Message
from camtext.core.entities import DeviceProfile, RecognitionBatch
from camtext.core.exceptions import BatchProcessingError, ContextTimeoutError
from camtext.core.memory_manager import ResourceGovernor
from camtext.services.batch_scheduler import BatchScheduler


class ReversingHandler:
    """Answers regions with ids in reverse order; blank crops read as empty words.

    A batch containing box 99 fails, and any crop filled with 255 blocks
    until the gate opens.
    """

    gate = threading.Event()

    def handle(self, message: Message) -> Message:
        if message.type == "init":
            return Message("initialized", {})
        crops = np.asarray(message.data["crops"])
        ids = list(message.data["box_ids"])
        if 99 in ids:
            raise BatchProcessingError("recognizer produced garbage")
        if crops.max() == 255:
            self.gate.wait(10)
        words = ["" if crop.max() == 0 else f"W{box_id}" for crop, box_id in zip(crops, ids)]
        return Message("regionComplete", {"box_ids": ids[::-1], "words": words[::-1]})


class CountingGovernor(ResourceGovernor):
    def __init__(self):
        super().__init__()
        self.reclaims = 0

    def reclaim(self) -> int:
        self.reclaims += 1
        return 0


@pytest.fixture
def pool(thread_pool_factory):
    ReversingHandler.gate.clear()
    yield thread_pool_factory(ReversingHandler, size=2)
    ReversingHandler.gate.set()


def profile(batch_size, constrained=False):
    return DeviceProfile(max_dimension=4096, batch_size=batch_size, is_constrained=constrained, pool_size=2)


class TestPartition:

    def test_batch_sizes(self, crop_factory):
        crops = [crop_factory(i) for i in range(70)]
        batches = BatchScheduler.partition(crops, 16)
        assert [len(b) for b in batches] == [16, 16, 16, 16, 6]
        assert [b.index for b in batches] == [0, 1, 2, 3, 4]
        assert batches[4].box_ids == list(range(64, 70))

    def test_empty(self):
        assert BatchScheduler.partition([], 16) == []

    def test_invalid_batch_size(self, crop_factory):
        with pytest.raises(ValueError):
            BatchScheduler.partition([crop_factory(0)], 0)


class TestRecognize:

    def test_words_follow_crop_order(self, pool, crop_factory):
        crops = [crop_factory(i, value=0 if i == 3 else 10) for i in range(10)]
        report = BatchScheduler(pool).recognize(crops, profile(batch_size=4))

        assert report.batches == 3
        assert report.dropped_batches == 0
        assert [w.word for w in report.words] == [f"W{i}" for i in range(10) if i != 3]
        assert all(w.bounding_box == crops[w.box_id].pixel_bbox for w in report.words)

    def test_failed_batch_is_dropped(self, pool, crop_factory):
        crops = [crop_factory(i, value=10) for i in (0, 1, 99, 2, 4, 5)]
        report = BatchScheduler(pool).recognize(crops, profile(batch_size=2))

        assert report.dropped_batches == 1
        assert [w.box_id for w in report.words] == [0, 1, 4, 5]

    def test_constrained_runs_sequentially(self, pool, crop_factory):
        governor = CountingGovernor()
        crops = [crop_factory(i, value=10) for i in range(9)]
        words = BatchScheduler(pool, governor).run_recognition(crops, profile(batch_size=4, constrained=True))

        assert len(words) == 9
        assert governor.reclaims == 2

    def test_no_crops(self, pool):
        report = BatchScheduler(pool).recognize([], profile(batch_size=4))
        assert report.words == [] and report.batches == 0

    def test_deadline(self, pool, crop_factory):
        crops = [crop_factory(0, value=255)]
        with pytest.raises(ContextTimeoutError):
            BatchScheduler(pool).recognize(crops, profile(batch_size=4), deadline=time.monotonic() + 0.1)


class TestAssociate:

    def test_skips_empty_words(self, crop_factory):
        batch = RecognitionBatch(0, [crop_factory(5), crop_factory(6)])
        words = BatchScheduler.associate(batch, {"box_ids": [6, 5], "words": ["", "HI"]})
        assert [(w.box_id, w.word) for w in words] == [(5, "HI")]

    @pytest.mark.parametrize("reply", [
        {"box_ids": [5], "words": ["A"]},
        {"box_ids": [5, 7], "words": ["A", "B"]},
        {"box_ids": [5, 6], "words": ["A"]},
    ])
    def test_mismatch(self, crop_factory, reply):
        batch = RecognitionBatch(0, [crop_factory(5), crop_factory(6)])
        with pytest.raises(BatchProcessingError):
            BatchScheduler.associate(batch, reply)
