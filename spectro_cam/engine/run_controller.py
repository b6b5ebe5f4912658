import logging
from typing import Optional

from PyQt6.QtCore import QObject, pyqtSignal, QThreadPool, QRunnable

from spectro_cam.engine.frame_channel import LatestFrameChannel
from spectro_cam.engine.pipeline import SpectralPipeline

logger = logging.getLogger(__name__)

# Seconds to wait for a frame before republishing the previous snapshot.
DEFAULT_FRAME_TIMEOUT = 0.5


class ProcessingSignals(QObject):
    snapshot = pyqtSignal(object)  # PipelineSnapshot
    message = pyqtSignal(str)
    finished = pyqtSignal(object)  # None or Exception


class ProcessingRunnable(QRunnable):
    def __init__(self, pipeline: SpectralPipeline, channel: LatestFrameChannel, timeout: float = DEFAULT_FRAME_TIMEOUT):
        super().__init__()
        self.pipeline, self.channel, self.timeout = pipeline, channel, timeout
        self.signals = ProcessingSignals()
        self._cancelled = False
        self.processed = 0

    def run(self):
        self._emit_message("Processing started")
        self.pipeline.reset()
        try:
            while not self._cancelled:
                if not self.step(self.timeout) and self.channel.closed:
                    break
        except Exception as e:
            logger.exception("Processing loop stopped")
            self.signals.finished.emit(e)
            return
        self._emit_message(f"Processing stopped after {self.processed} frames")
        self.signals.finished.emit(None)

    def step(self, timeout: Optional[float] = None) -> bool:
        """Process one frame if available; returns False on a gap."""

        frame = self.channel.get(timeout)
        if frame is None:
            snapshot = self.pipeline.republish_last()
            if snapshot is not None:
                self.signals.snapshot.emit(snapshot)
            return False
        try:
            snapshot = self.pipeline.process_frame(frame)
        except Exception as e:
            # A bad frame must not stop the live view.
            logger.exception("Failed to process frame %d", frame.sequence)
            self._emit_message(f"Frame {frame.sequence} failed: {e}")
            return True
        self.processed += 1
        self.signals.snapshot.emit(snapshot)
        return True

    def cancel(self):
        self._cancelled = True
        self._emit_message("Stop requested")

    def _emit_message(self, message: str):
        self.signals.message.emit(message)


class RunController(QObject):
    job_started = pyqtSignal()
    job_finished = pyqtSignal(object)
    job_message = pyqtSignal(str)
    snapshot_ready = pyqtSignal(object)

    def __init__(self, parent=None):
        super().__init__(parent)
        self.pool = QThreadPool.globalInstance()
        self._current_runnable: Optional[ProcessingRunnable] = None

    def start(self, pipeline: SpectralPipeline, channel: LatestFrameChannel, timeout: float = DEFAULT_FRAME_TIMEOUT):
        if self._current_runnable is not None:
            raise RuntimeError("Processing is already running")
        runnable = ProcessingRunnable(pipeline, channel, timeout)
        runnable.signals.finished.connect(self._on_finished)
        runnable.signals.message.connect(self.job_message)
        runnable.signals.snapshot.connect(self.snapshot_ready)
        self._current_runnable = runnable
        self.job_started.emit()
        self.pool.start(runnable)

    def stop(self) -> bool:
        if self._current_runnable is None:
            return False
        self._current_runnable.cancel()
        return True

    def wait(self, msecs: int = 5000) -> bool:
        return self.pool.waitForDone(msecs)

    def _on_finished(self, result):
        self._current_runnable = None
        self.job_finished.emit(result)

    def is_running(self) -> bool:
        return self._current_runnable is not None
