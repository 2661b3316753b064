"""Greedy CTC decoding of recognition label sequences."""
from __future__ import annotations

from typing import Iterable, List, Optional, Sequence

import numpy as np

from ..config.defaults import VOCAB


class SequenceDecoder:
    """Collapses per-position label indices into text, one string per sequence.

    Repeated labels collapse unless a blank separates them. Indices outside
    the vocabulary are treated as blanks.
    """

    def __init__(self, vocab: str = VOCAB, blank_index: Optional[int] = None):
        self.vocab = vocab
        self.blank_index = len(vocab) if blank_index is None else blank_index

    def decode_sequence(self, labels: Iterable[int]) -> str:
        chars = []
        last = None
        for raw in labels:
            k = int(raw)
            if k == self.blank_index or not 0 <= k < len(self.vocab):
                last = None
                continue
            if k != last:
                chars.append(self.vocab[k])
                last = k
        return "".join(chars)

    def decode(self, label_sequences: Sequence[Iterable[int]]) -> List[str]:
        """Decode each label sequence into its (possibly empty) string."""
        return [self.decode_sequence(seq) for seq in label_sequences]

    def decode_logits(self, output: np.ndarray) -> List[str]:
        """Decode N x T x C class scores, or N x T label indices."""
        scores = np.asarray(output)
        if scores.ndim == 3:
            labels = scores.argmax(axis=-1)
        elif scores.ndim == 2 and np.issubdtype(scores.dtype, np.integer):
            labels = scores
        elif scores.ndim == 2:
            # single sequence of T x C scores
            labels = scores.argmax(axis=-1)[np.newaxis, :]
        else:
            raise ValueError(f"Cannot decode output of shape {scores.shape}")
        return self.decode(labels.tolist())

    def encode(self, text: str) -> List[int]:
        """Map characters back to vocabulary indices."""
        return [self.vocab.index(ch) for ch in text]

    @staticmethod
    def join(texts: Sequence[str]) -> str:
        """Caller convention for display: non-empty words separated by one space."""
        return " ".join(t for t in texts if t)
