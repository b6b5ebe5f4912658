"""Frame producers feeding a ``LatestFrameChannel``."""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import List, Optional

import cv2
import numpy as np

from spectro_cam.engine.frame_channel import LatestFrameChannel, RawFrame

logger = logging.getLogger(__name__)


def list_cameras(max_index: int = 10) -> List[int]:
    """Indices of cameras that open and deliver a frame."""

    cameras = []
    for index in range(max_index + 1):
        cap = cv2.VideoCapture(index)
        try:
            if cap.isOpened():
                ok, _ = cap.read()
                if ok:
                    cameras.append(index)
        finally:
            cap.release()
    return cameras


class _FrameProducer(threading.Thread):
    def __init__(self, channel: LatestFrameChannel, name: str) -> None:
        super().__init__(name=name, daemon=True)
        self.channel = channel
        self._stop_event = threading.Event()
        self._sequence = 0

    def stop(self) -> None:
        self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def _publish(self, pixels: np.ndarray) -> None:
        pixels.setflags(write=False)
        frame = RawFrame(pixels=pixels, sequence=self._sequence, timestamp=time.monotonic())
        self._sequence += 1
        self.channel.put(frame)


class CameraCapture(_FrameProducer):
    """Reads frames from an OpenCV device and converts them to RGB."""

    def __init__(
        self,
        channel: LatestFrameChannel,
        device: int = 0,
        *,
        width: Optional[int] = None,
        height: Optional[int] = None,
    ) -> None:
        super().__init__(channel, name=f"camera-{device}")
        self.device = device
        self.width = width
        self.height = height
        self.frame_size: Optional[tuple] = None

    def _open(self):
        cap = cv2.VideoCapture(self.device)
        if not cap.isOpened():
            cap.release()
            raise RuntimeError(f"Failed to open camera {self.device}")
        if self.width:
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, int(self.width))
        if self.height:
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, int(self.height))
        self.frame_size = (
            int(cap.get(cv2.CAP_PROP_FRAME_WIDTH)),
            int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT)),
        )
        logger.info("Opened camera %s at %dx%d", self.device, *self.frame_size)
        return cap

    def run(self) -> None:
        try:
            cap = self._open()
        except RuntimeError as exc:
            logger.error("%s", exc)
            return
        failures = 0
        try:
            while not self.stopped:
                ok, frame = cap.read()
                if not ok or frame is None:
                    failures += 1
                    if failures in (1, 50):
                        logger.warning("Camera %s returned no frame", self.device)
                    time.sleep(0.01)
                    continue
                failures = 0
                if frame.ndim == 3:
                    frame = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
                self._publish(frame)
        finally:
            cap.release()
            logger.info("Camera %s released", self.device)


class StaticFrameSource(_FrameProducer):
    """Replays one image at a fixed rate; useful without camera hardware."""

    def __init__(self, channel: LatestFrameChannel, image: np.ndarray, fps: float = 30.0) -> None:
        super().__init__(channel, name="static-frames")
        if fps <= 0:
            raise ValueError("Frame rate must be positive")
        self.image = np.array(image, copy=True)
        self.interval = 1.0 / float(fps)

    @classmethod
    def from_file(cls, channel: LatestFrameChannel, path: str | Path, fps: float = 30.0) -> "StaticFrameSource":
        image = cv2.imread(str(path), cv2.IMREAD_COLOR)
        if image is None:
            raise FileNotFoundError(f"Could not read image {path}")
        return cls(channel, cv2.cvtColor(image, cv2.COLOR_BGR2RGB), fps)

    def run(self) -> None:
        while not self._stop_event.wait(self.interval):
            self._publish(self.image.copy())
