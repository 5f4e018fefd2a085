"""
Thread-safe sample store shared by the capture callback and its readers.
"""

import threading
from typing import List

import numpy as np

from .converter import TARGET_SAMPLE_RATE


class SampleBuffer:
    """
    Append-only store of 16 kHz mono float32 samples.

    The audio callback is the only writer; the streaming loop and any other
    reader take snapshots. The lock guards the chunk list only, so it is held
    for an append or a list copy and never for longer.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._chunks: List[np.ndarray] = []
        self._count = 0

    def append(self, samples: np.ndarray) -> None:
        """Append a block of samples. The block is copied."""
        block = np.array(samples, dtype=np.float32, copy=True).reshape(-1)
        if block.size == 0:
            return
        block.setflags(write=False)
        with self._lock:
            self._chunks.append(block)
            self._count += block.size

    def snapshot(self) -> np.ndarray:
        """Return a copy of every sample appended so far."""
        with self._lock:
            chunks = list(self._chunks)
        if not chunks:
            return np.zeros(0, dtype=np.float32)
        return np.concatenate(chunks)

    def clear(self) -> None:
        """Drop all samples. Only called when a session ends."""
        with self._lock:
            self._chunks = []
            self._count = 0

    def __len__(self) -> int:
        with self._lock:
            return self._count

    @property
    def duration(self) -> float:
        """Buffered audio length in seconds."""
        return len(self) / TARGET_SAMPLE_RATE
