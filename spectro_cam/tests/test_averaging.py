import numpy as np
import pytest

from spectro_cam.engine.averaging import AveragingBuffer
from spectro_cam.engine.errors import ConfigurationError


def test_identical_inputs_average_to_exact_input():
    profile = np.array([[0.1, 0.7, 1e-9, 123.456]])
    buffer = AveragingBuffer(5)
    for _ in range(5):
        buffer.push(profile)
    np.testing.assert_array_equal(buffer.mean(), profile)


def test_oldest_entry_evicted_at_capacity():
    buffer = AveragingBuffer(3)
    for value in (1.0, 2.0, 3.0, 4.0):
        buffer.push(np.full((1, 2), value))
    assert len(buffer) == 3
    np.testing.assert_allclose(buffer.mean(), 3.0)


def test_partial_buffer_not_padded():
    buffer = AveragingBuffer(10)
    buffer.push(np.array([2.0, 4.0]))
    buffer.push(np.array([4.0, 8.0]))
    np.testing.assert_allclose(buffer.mean(), [3.0, 6.0])


def test_pushed_profile_is_copied():
    buffer = AveragingBuffer(2)
    profile = np.array([1.0, 2.0])
    buffer.push(profile)
    profile[:] = 100.0
    np.testing.assert_array_equal(buffer.mean(), [1.0, 2.0])


def test_shape_change_clears_history():
    buffer = AveragingBuffer(4)
    buffer.push(np.ones(3))
    buffer.push(np.ones(3))
    buffer.push(np.full(5, 7.0))
    assert len(buffer) == 1
    np.testing.assert_array_equal(buffer.mean(), np.full(5, 7.0))


def test_resize_clears_history():
    buffer = AveragingBuffer(2)
    buffer.push(np.ones(2))
    buffer.resize(6)
    assert buffer.capacity == 6
    assert len(buffer) == 0


@pytest.mark.parametrize("capacity", [0, -3, 2.5])
def test_invalid_capacity_rejected(capacity):
    with pytest.raises(ConfigurationError):
        AveragingBuffer(capacity)


def test_empty_buffer_has_no_mean():
    with pytest.raises(ValueError):
        AveragingBuffer(1).mean()
