"""Hand-off of camera frames from the capture thread to the pipeline thread."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
import logging
import threading
from typing import Deque, Optional

import numpy as np

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class RawFrame:
    """One captured image; ``pixels`` is height x width (x channels, RGB order)."""

    pixels: np.ndarray
    sequence: int
    timestamp: float


class LatestFrameChannel:
    """Bounded queue that never blocks the producer.

    When full, the oldest frame is discarded so the consumer always works on
    recent data. ``get`` returns None on timeout or once the channel is
    closed and drained.
    """

    def __init__(self, capacity: int = 1) -> None:
        capacity = int(capacity)
        if capacity <= 0:
            raise ValueError("Frame channel capacity must be positive")
        self._frames: Deque[RawFrame] = deque()
        self._capacity = capacity
        self._cond = threading.Condition()
        self._closed = False
        self._dropped = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def dropped(self) -> int:
        with self._cond:
            return self._dropped

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def __len__(self) -> int:
        with self._cond:
            return len(self._frames)

    def put(self, frame: RawFrame) -> bool:
        """Queue ``frame``; returns False when the channel is closed."""

        with self._cond:
            if self._closed:
                return False
            if len(self._frames) >= self._capacity:
                dropped = self._frames.popleft()
                self._dropped += 1
                logger.debug("Dropped frame %d; pipeline is behind", dropped.sequence)
            self._frames.append(frame)
            self._cond.notify()
            return True

    def get(self, timeout: Optional[float] = None) -> Optional[RawFrame]:
        with self._cond:
            if not self._frames and not self._closed:
                self._cond.wait(timeout)
            if self._frames:
                return self._frames.popleft()
            return None

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()
