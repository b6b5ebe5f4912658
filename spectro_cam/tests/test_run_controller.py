import os

import numpy as np
import pytest

os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")

pytest.importorskip("PyQt6.QtWidgets", exc_type=ImportError)
from PyQt6 import QtCore, QtWidgets

from spectro_cam.engine.frame_channel import LatestFrameChannel, RawFrame
from spectro_cam.engine.pipeline import SpectralPipeline
from spectro_cam.engine.run_controller import ProcessingRunnable, RunController
from spectro_cam.engine.settings_model import PipelineSettings


@pytest.fixture(scope="module")
def qt_app():
    app = QtWidgets.QApplication.instance()
    if app is None:
        app = QtWidgets.QApplication([])
    app.setQuitOnLastWindowClosed(False)
    return app


def _pipeline():
    settings = PipelineSettings.from_dict({"roi": {"x": 0, "y": 0, "width": 32, "height": 4}})
    return SpectralPipeline(settings)


def _frame(seq):
    pixels = np.full((4, 32, 3), 40, dtype=np.uint8)
    return RawFrame(pixels=pixels, sequence=seq, timestamp=seq / 30.0)


def test_step_publishes_snapshot(qt_app):
    channel = LatestFrameChannel()
    runnable = ProcessingRunnable(_pipeline(), channel, timeout=0.01)
    received = []
    runnable.signals.snapshot.connect(received.append)

    channel.put(_frame(1))
    assert runnable.step(0.01)
    assert runnable.processed == 1
    assert len(received) == 1
    assert not received[0].stale


def test_gap_republishes_last_snapshot(qt_app):
    channel = LatestFrameChannel()
    runnable = ProcessingRunnable(_pipeline(), channel, timeout=0.01)
    received = []
    runnable.signals.snapshot.connect(received.append)

    assert not runnable.step(0.01)
    assert received == []

    channel.put(_frame(1))
    runnable.step(0.01)
    assert not runnable.step(0.01)
    assert received[-1].stale
    assert received[-1].spectrum is received[0].spectrum


def test_bad_frame_does_not_stop_processing(qt_app):
    channel = LatestFrameChannel(capacity=2)
    runnable = ProcessingRunnable(_pipeline(), channel, timeout=0.01)
    messages = []
    runnable.signals.message.connect(messages.append)

    channel.put(RawFrame(pixels=np.zeros((2, 2, 2, 2)), sequence=7, timestamp=0.0))
    channel.put(_frame(8))
    assert runnable.step(0.01)
    assert any("Frame 7 failed" in message for message in messages)
    assert runnable.step(0.01)
    assert runnable.processed == 1


def test_run_controller_drains_channel_until_closed(qt_app):
    pipeline = _pipeline()
    channel = LatestFrameChannel(capacity=4)
    controller = RunController()
    finished = []
    loop = QtCore.QEventLoop()

    def _done(result):
        finished.append(result)
        loop.quit()

    controller.job_finished.connect(_done)
    for seq in range(3):
        channel.put(_frame(seq))
    channel.close()
    controller.start(pipeline, channel, timeout=0.01)
    assert controller.is_running()
    with pytest.raises(RuntimeError):
        controller.start(pipeline, channel)

    QtCore.QTimer.singleShot(5000, loop.quit)
    loop.exec()

    assert finished == [None]
    assert not controller.is_running()
    assert pipeline.slot.latest() is not None
    assert pipeline.slot.latest().sequence == 2


def test_stop_cancels_running_job(qt_app):
    channel = LatestFrameChannel()
    controller = RunController()
    finished = []
    loop = QtCore.QEventLoop()

    def _done(result):
        finished.append(result)
        loop.quit()

    controller.job_finished.connect(_done)
    assert not controller.stop()
    controller.start(_pipeline(), channel, timeout=0.01)
    assert controller.stop()

    QtCore.QTimer.singleShot(5000, loop.quit)
    loop.exec()
    assert finished == [None]
