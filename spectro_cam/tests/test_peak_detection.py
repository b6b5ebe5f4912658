import numpy as np
import pytest

from spectro_cam.engine.errors import ConfigurationError
from spectro_cam.engine.peak_detection import PeakDipConfig, detect_peaks_dips, resolve_peak_config
from spectro_cam.engine.spectrum import PeakKind, Spectrum


def _spectrum(x, y, channel="sum"):
    return Spectrum(wavelength=x, intensity=np.asarray(y).reshape(1, -1), channels=(channel,))


def _gaussian(x, center, sigma, amplitude):
    return amplitude * np.exp(-((x - center) ** 2) / (2.0 * sigma**2))


def test_single_gaussian_gives_one_peak():
    x = np.linspace(400.0, 700.0, 301)
    found = detect_peaks_dips(_spectrum(x, _gaussian(x, 550.0, 10.0, 100.0)))

    assert len(found) == 1
    peak = found[0]
    assert peak.kind is PeakKind.PEAK
    assert peak.wavelength_nm == pytest.approx(550.0)
    assert peak.intensity == pytest.approx(100.0)
    assert peak.prominence == pytest.approx(100.0, abs=1e-2)


def test_plateau_reports_midpoint():
    x = np.arange(400.0, 407.0)
    config = PeakDipConfig(window_nm=1.0, horizon_nm=0.0)
    found = detect_peaks_dips(_spectrum(x, [0, 1, 3, 3, 3, 1, 0]), config)

    assert [(p.index, p.kind) for p in found] == [(3, PeakKind.PEAK)]
    assert found[0].wavelength_nm == 403.0


def test_monotonic_spectrum_has_no_extrema():
    x = np.linspace(400.0, 700.0, 50)
    assert detect_peaks_dips(_spectrum(x, np.linspace(0.0, 100.0, 50))) == ()


def test_minor_bump_below_prominence_ignored():
    x = np.linspace(400.0, 700.0, 301)
    y = _gaussian(x, 450.0, 10.0, 0.5) + _gaussian(x, 600.0, 10.0, 50.0)
    found = detect_peaks_dips(_spectrum(x, y), PeakDipConfig(min_prominence=1.0, detect_dips=False))

    assert [p.wavelength_nm for p in found] == [pytest.approx(600.0)]


def test_absorption_dip_detected():
    x = np.linspace(400.0, 700.0, 301)
    y = 100.0 - _gaussian(x, 500.0, 10.0, 40.0)
    found = detect_peaks_dips(_spectrum(x, y))

    assert len(found) == 1
    dip = found[0]
    assert dip.kind is PeakKind.DIP
    assert dip.wavelength_nm == pytest.approx(500.0)
    assert dip.intensity == pytest.approx(60.0)
    assert dip.prominence == pytest.approx(40.0, abs=1e-2)


def test_unique_window_keeps_strongest_peak():
    x = 400.0 + np.arange(30, dtype=float)
    y = np.zeros(30)
    y[10] = 5.0
    y[13] = 8.0
    base = dict(window_nm=2.0, horizon_nm=0.0, detect_dips=False)

    both = detect_peaks_dips(_spectrum(x, y), PeakDipConfig(**base))
    assert [p.index for p in both] == [10, 13]

    unique = detect_peaks_dips(_spectrum(x, y), PeakDipConfig(unique_window_nm=10.0, **base))
    assert [p.index for p in unique] == [13]


def test_window_wider_than_peak_separation_suppresses_lower_peak():
    x = 400.0 + np.arange(30, dtype=float)
    y = np.zeros(30)
    y[10] = 5.0
    y[13] = 8.0
    found = detect_peaks_dips(_spectrum(x, y), PeakDipConfig(window_nm=8.0, horizon_nm=0.0, detect_dips=False))
    assert [p.index for p in found] == [13]


def test_detection_is_repeatable():
    x = np.linspace(400.0, 700.0, 301)
    y = _gaussian(x, 480.0, 5.0, 30.0) + _gaussian(x, 620.0, 8.0, 60.0) + 5.0
    spectrum = _spectrum(x, y)
    assert detect_peaks_dips(spectrum) == detect_peaks_dips(spectrum)


def test_results_sorted_by_wavelength():
    x = np.linspace(400.0, 700.0, 301)
    y = 50.0 + _gaussian(x, 620.0, 8.0, 30.0) - _gaussian(x, 480.0, 8.0, 30.0)
    found = detect_peaks_dips(_spectrum(x, y))
    assert [p.kind for p in found] == [PeakKind.DIP, PeakKind.PEAK]
    assert found[0].wavelength_nm < found[1].wavelength_nm


def test_unknown_channel_falls_back_to_last_row():
    x = np.linspace(400.0, 700.0, 301)
    y = _gaussian(x, 550.0, 10.0, 100.0)
    spectrum = _spectrum(x, y, channel="luminance")
    found = detect_peaks_dips(spectrum, PeakDipConfig(channel="sum"))
    assert [p.index for p in found] == [150]


def test_negative_settings_rejected():
    with pytest.raises(ConfigurationError):
        PeakDipConfig(window_nm=-1.0)
    with pytest.raises(ConfigurationError):
        PeakDipConfig.from_mapping({"min_prominence": "lots"})


def test_resolve_config_ignores_unknown_keys():
    resolved = resolve_peak_config({"window_nm": 2.0, "colour": "red", "horizon_nm": None})
    assert resolved["window_nm"] == 2.0
    assert resolved["horizon_nm"] == 50.0
    assert "colour" not in resolved
