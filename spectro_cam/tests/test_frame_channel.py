import threading
import time

import numpy as np
import pytest

from spectro_cam.engine.frame_channel import LatestFrameChannel, RawFrame
from spectro_cam.engine.snapshot import PipelineSnapshot, SnapshotSlot


def _frame(seq):
    return RawFrame(pixels=np.full((2, 2), seq, dtype=np.uint8), sequence=seq, timestamp=float(seq))


def test_full_channel_drops_oldest():
    channel = LatestFrameChannel(capacity=2)
    for seq in range(5):
        assert channel.put(_frame(seq))

    assert channel.dropped == 3
    assert len(channel) == 2
    assert channel.get(timeout=0).sequence == 3
    assert channel.get(timeout=0).sequence == 4


def test_single_slot_channel_keeps_newest_frame():
    channel = LatestFrameChannel()
    for seq in range(3):
        channel.put(_frame(seq))

    assert channel.capacity == 1
    assert channel.dropped == 2
    assert channel.get(timeout=0).sequence == 2
    assert channel.get(timeout=0) is None


def test_get_times_out_when_empty():
    channel = LatestFrameChannel()
    start = time.monotonic()
    assert channel.get(timeout=0.05) is None
    assert time.monotonic() - start >= 0.04


def test_closed_channel_rejects_frames_but_drains():
    channel = LatestFrameChannel(capacity=1)
    channel.put(_frame(1))
    channel.close()

    assert channel.closed
    assert not channel.put(_frame(2))
    assert channel.get(timeout=1.0).sequence == 1
    assert channel.get(timeout=1.0) is None


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        LatestFrameChannel(capacity=0)


def test_slow_consumer_never_blocks_producer():
    channel = LatestFrameChannel(capacity=1)
    seen = []

    def consume():
        while True:
            frame = channel.get(timeout=1.0)
            if frame is None:
                return
            seen.append(frame.sequence)
            time.sleep(0.005)

    consumer = threading.Thread(target=consume)
    consumer.start()
    for seq in range(200):
        channel.put(_frame(seq))
    channel.close()
    consumer.join(timeout=5.0)

    assert not consumer.is_alive()
    assert seen == sorted(seen)
    assert seen[-1] == 199
    assert channel.dropped + len(seen) == 200


def test_snapshot_slot_returns_latest_publication():
    slot = SnapshotSlot()
    assert slot.latest() is None

    first = PipelineSnapshot(sequence=1, timestamp=1.0, spectrum=None)
    second = PipelineSnapshot(sequence=2, timestamp=2.0, spectrum=None)
    slot.publish(first)
    slot.publish(second)

    assert slot.latest() is second
    assert slot.version == 2


def test_stale_copy_keeps_content():
    snapshot = PipelineSnapshot(sequence=4, timestamp=1.5, spectrum=None)
    stale = snapshot.as_stale()
    assert stale.stale and not snapshot.stale
    assert stale.sequence == 4
    assert stale.ok
