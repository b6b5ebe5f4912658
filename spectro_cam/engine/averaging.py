"""Fixed capacity running mean over the most recent profiles."""

from __future__ import annotations

from collections import deque
from typing import Deque, Optional

import numpy as np

from spectro_cam.engine.errors import ConfigurationError


def _check_capacity(capacity: int) -> int:
    if isinstance(capacity, bool) or int(capacity) != capacity or int(capacity) <= 0:
        raise ConfigurationError("Averaging buffer capacity must be a positive integer")
    return int(capacity)


class AveragingBuffer:
    """FIFO of the last ``capacity`` profiles.

    ``mean`` averages over however many entries are held, so a buffer that
    is still warming up is never padded with zeros.
    """

    def __init__(self, capacity: int) -> None:
        self._capacity = _check_capacity(capacity)
        self._entries: Deque[np.ndarray] = deque(maxlen=self._capacity)

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def shape(self) -> Optional[tuple]:
        return self._entries[0].shape if self._entries else None

    def push(self, profile: np.ndarray) -> None:
        entry = np.array(profile, dtype=float, copy=True)
        if self._entries and entry.shape != self._entries[0].shape:
            # Old and new profiles cover different pixels.
            self._entries.clear()
        self._entries.append(entry)

    def mean(self) -> np.ndarray:
        if not self._entries:
            raise ValueError("Averaging buffer is empty")
        first = self._entries[0]
        if len(self._entries) == 1:
            return first.copy()
        stacked = np.stack(self._entries)
        # Mean of offsets from the first entry: identical inputs give exactly that input.
        return first + (stacked - first).mean(axis=0)

    def resize(self, capacity: int) -> None:
        self._capacity = _check_capacity(capacity)
        self._entries = deque(maxlen=self._capacity)

    def clear(self) -> None:
        self._entries.clear()
