import numpy as np
import pytest

from spectro_cam.engine.correction import (
    GAIN_PRESETS,
    ChannelCorrection,
    LinearizationCurve,
    SpectralResponse,
    build_correction,
    with_combined_channel,
)
from spectro_cam.engine.errors import ConfigurationError


def test_gain_applied_without_linearization():
    correction = ChannelCorrection(gains=(2.0, 1.0, 1.0))
    assert correction.correct(100.0, 0) == 200.0


def test_linearization_clamps_outside_breakpoints():
    curve = LinearizationCurve([(0.0, 0.0), (100.0, 50.0)])
    np.testing.assert_array_equal(curve(np.array([-10.0, 50.0, 150.0])), [0.0, 25.0, 50.0])


def test_gain_is_applied_before_linearization():
    curve = LinearizationCurve([(0.0, 0.0), (100.0, 100.0), (200.0, 400.0)])
    correction = ChannelCorrection(gains=(2.0,), curves=curve)
    # 75 * 2 = 150 lies on the second segment: 100 + 50 * 3
    assert correction.correct(75.0, 0) == pytest.approx(250.0)


def test_unknown_preset_leaves_gains_untouched():
    correction = ChannelCorrection.from_preset("rec601")
    with pytest.raises(ConfigurationError):
        correction.apply_preset("not-a-preset")
    assert correction.gains == GAIN_PRESETS["rec601"]


def test_preset_switch_updates_all_channels():
    correction = ChannelCorrection()
    correction.apply_preset("srgb")
    assert correction.gains == (0.2126, 0.7152, 0.0722)


def test_correction_is_repeatable():
    curve = LinearizationCurve.from_transfer("rec709")
    correction = ChannelCorrection(gains=(1.0, 0.5, 2.0), curves=curve)
    profile = np.array([[0.0, 10.0, 128.0], [1.0, 20.0, 255.0], [5.0, 60.0, 90.0]])
    first = correction.correct_profile(profile)
    second = correction.correct_profile(profile)
    np.testing.assert_array_equal(first, second)
    np.testing.assert_array_equal(profile[0], [0.0, 10.0, 128.0])


def test_transfer_curve_keeps_endpoints_and_darkens_midtones():
    curve = LinearizationCurve.from_transfer("srgb")
    assert curve(np.array([0.0]))[0] == pytest.approx(0.0)
    assert curve(np.array([255.0]))[0] == pytest.approx(255.0)
    assert curve(np.array([128.0]))[0] < 128.0


def test_breakpoints_must_increase():
    with pytest.raises(ConfigurationError):
        LinearizationCurve([(0.0, 0.0), (0.0, 1.0)])
    with pytest.raises(ConfigurationError):
        LinearizationCurve([(0.0, 1.0), (1.0, 0.0)])
    with pytest.raises(ConfigurationError):
        LinearizationCurve([(0.0, 0.0)])


def test_missing_channel_gain_is_configuration_error():
    correction = ChannelCorrection(gains=(1.0, 1.0))
    with pytest.raises(ConfigurationError):
        correction.correct(1.0, 2)


def test_combined_channel_sums_colour_rows():
    rows = np.array([[1.0, 2.0], [3.0, 4.0], [5.0, 6.0]])
    combined, names = with_combined_channel(rows, ("r", "g", "b"))
    assert names == ("r", "g", "b", "sum")
    np.testing.assert_array_equal(combined[-1], [9.0, 12.0])

    single, names = with_combined_channel(rows[:1], ("luminance",))
    assert names == ("luminance",)
    assert single.shape == (1, 2)


def test_spectral_response_interpolates_unusable_samples():
    response = SpectralResponse.from_reference(
        np.array([1.0, 2.0, 0.0, 4.0]), np.array([2.0, 2.0, 2.0, 2.0])
    )
    np.testing.assert_allclose(response.factors, [2.0, 1.0, 0.75, 0.5])

    intensity = np.ones((2, 4))
    out = response.apply(intensity, ("luminance", "sum"))
    np.testing.assert_allclose(out[1], [2.0, 1.0, 0.75, 0.5])
    np.testing.assert_array_equal(out[0], 1.0)


def test_spectral_response_skips_mismatched_length():
    response = SpectralResponse.from_reference(np.ones(3), np.full(3, 2.0))
    intensity = np.ones((1, 5))
    assert response.apply(intensity, ("sum",)) is intensity


def test_build_correction_from_settings():
    correction = build_correction({"values": [1.0, 2.0, 3.0]}, {"mode": "off"})
    assert correction.gains == (1.0, 2.0, 3.0)
    assert correction.curve(0).is_identity

    custom = build_correction({"preset": "unity"}, {"mode": "custom", "breakpoints": [[0, 0], [10, 20]]})
    assert custom.correct(5.0, 1) == pytest.approx(10.0)

    with pytest.raises(ConfigurationError):
        build_correction({"preset": "unity"}, {"mode": "gamma"})


def test_full_profile_gain_is_exact():
    correction = ChannelCorrection(gains=(2.0,))
    corrected = correction.correct_profile(np.full((1, 100), 100.0))
    assert corrected.shape == (1, 100)
    assert np.all(corrected == 200.0)


@pytest.mark.parametrize("breakpoints", [[["a", 1], [2, 3]], [1, 2, 3], [(0, 0, 1), (255, 255, 1)], 5])
def test_malformed_breakpoints_are_configuration_errors(breakpoints):
    with pytest.raises(ConfigurationError):
        LinearizationCurve(breakpoints)


def test_colour_gains_skip_luminance_profile():
    correction = ChannelCorrection.from_preset("srgb")
    corrected = correction.correct_profile(np.full((1, 4), 80.0))
    np.testing.assert_allclose(corrected, 80.0)

    colour = correction.correct_profile(np.full((3, 4), 80.0))
    np.testing.assert_allclose(colour[:, 0], 80.0 * np.array(GAIN_PRESETS["srgb"]))
