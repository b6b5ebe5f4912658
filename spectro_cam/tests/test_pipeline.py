import numpy as np
import pytest

from spectro_cam.engine.errors import ISSUE_CONFIGURATION, ConfigurationError
from spectro_cam.engine.frame_channel import RawFrame
from spectro_cam.engine.pipeline import SpectralPipeline
from spectro_cam.engine.reference import ReferenceKind
from spectro_cam.engine.settings_model import PipelineSettings
from spectro_cam.engine.spectrum import PeakKind

WIDTH = 100
HEIGHT = 10


def _settings(**overrides):
    params = {
        "roi": {"x": 0, "y": 0, "width": WIDTH, "height": HEIGHT},
        "calibration": {"points": [[0, 400.0], [WIDTH - 1, 700.0]]},
        "averaging": {"capacity": 1},
    }
    params.update(overrides)
    return PipelineSettings.from_dict({"params": params})


def _frame(seq=0, width=WIDTH, r=None, g=20, b=30):
    pixels = np.zeros((HEIGHT, width, 3), dtype=np.uint8)
    pixels[:, :, 0] = np.arange(width) + 10 if r is None else r
    pixels[:, :, 1] = g
    pixels[:, :, 2] = b
    return RawFrame(pixels=pixels, sequence=seq, timestamp=seq / 30.0)


@pytest.fixture
def pipeline():
    pipe = SpectralPipeline(_settings())
    yield pipe
    pipe.close()


def test_colour_frame_gives_calibrated_spectrum(pipeline):
    snapshot = pipeline.process_frame(_frame())
    spectrum = snapshot.spectrum

    assert snapshot.ok and not snapshot.stale
    assert len(spectrum) == WIDTH
    assert spectrum.channels == ("r", "g", "b", "sum")
    assert spectrum.calibrated
    assert np.all(np.diff(spectrum.wavelength) > 0)
    assert spectrum.wavelength[0] == pytest.approx(400.0)
    assert spectrum.wavelength[-1] == pytest.approx(700.0)
    np.testing.assert_allclose(spectrum.channel("r"), np.arange(WIDTH) + 10)
    np.testing.assert_allclose(
        spectrum.channel("sum"),
        spectrum.channel("r") + spectrum.channel("g") + spectrum.channel("b"),
    )
    assert pipeline.slot.latest() is snapshot


def test_grayscale_frame_has_single_channel(pipeline):
    pixels = np.full((HEIGHT, WIDTH), 50, dtype=np.uint8)
    snapshot = pipeline.process_frame(RawFrame(pixels=pixels, sequence=0, timestamp=0.0))
    assert snapshot.spectrum.channels == ("luminance",)


def test_gain_preset_scales_channels():
    pipe = SpectralPipeline(_settings(gain={"values": [2.0, 1.0, 0.5]}))
    spectrum = pipe.process_frame(_frame(r=10)).spectrum
    np.testing.assert_allclose(spectrum.channel("r"), 20.0)
    np.testing.assert_allclose(spectrum.channel("b"), 15.0)
    np.testing.assert_allclose(spectrum.channel("sum"), 55.0)


def test_roi_outside_frame_publishes_stale_snapshot():
    pipe = SpectralPipeline(_settings(roi={"x": 200, "y": 0, "width": 50, "height": 5}))
    snapshot = pipe.process_frame(_frame())

    assert snapshot.stale
    assert snapshot.spectrum is None
    assert [issue.kind for issue in snapshot.issues] == [ISSUE_CONFIGURATION]


def test_roi_moved_off_frame_keeps_last_spectrum(pipeline):
    good = pipeline.process_frame(_frame(seq=1))
    assert pipeline.configure(_settings(roi={"x": 500, "y": 0, "width": 10, "height": 2})) == []

    snapshot = pipeline.process_frame(_frame(seq=2))
    assert snapshot.stale
    assert snapshot.spectrum is good.spectrum
    assert not snapshot.ok


def test_rejected_settings_keep_active_calibration(pipeline):
    errors = pipeline.configure(_settings(calibration={"points": [[0, 700.0], [99, 400.0]]}))
    assert errors

    spectrum = pipeline.process_frame(_frame()).spectrum
    assert spectrum.wavelength[0] == pytest.approx(400.0)
    assert spectrum.wavelength[-1] == pytest.approx(700.0)


def test_invalid_initial_settings_raise():
    with pytest.raises(ConfigurationError):
        SpectralPipeline(_settings(averaging={"capacity": 0}))


def test_settings_take_effect_at_next_frame(pipeline):
    assert pipeline.configure(_settings(flip=True)) == []
    assert pipeline.settings.params["flip"] is False

    spectrum = pipeline.process_frame(_frame()).spectrum
    assert pipeline.settings.params["flip"] is True
    # Red ramp now runs from the long wavelength end.
    assert spectrum.channel("r")[0] == pytest.approx(WIDTH - 1 + 10)


def test_tungsten_reference_available_before_first_frame(pipeline):
    reference = pipeline.generate_tungsten(3000.0)

    assert pipeline.reference.kind is ReferenceKind.TUNGSTEN
    assert len(reference) == WIDTH
    assert reference.wavelength[0] == pytest.approx(400.0)
    assert reference.intensity.max() == pytest.approx(1.0)


def test_requested_tungsten_uses_configured_temperature():
    pipe = SpectralPipeline(_settings(reference={"temperature_k": 3200.0, "peak_value": 2.0}))
    pipe.request_tungsten()
    assert pipe.apply_pending() == []
    assert pipe.reference.reference.meta["temperature_k"] == 3200.0
    assert pipe.reference.reference.intensity.max() == pytest.approx(2.0)


def test_capture_zero_gives_zero_absorbance(pipeline):
    pipeline.process_frame(_frame(seq=1))
    pipeline.request_capture_zero()

    snapshot = pipeline.process_frame(_frame(seq=2))
    assert snapshot.absorbance is not None
    assert snapshot.absorbance.reference_kind == "zero_capture"
    for trace in snapshot.absorbance.traces:
        np.testing.assert_allclose(trace.absorbance, 0.0, atol=1e-12)
        assert trace.undefined.size == 0
    assert snapshot.ok


def test_dark_samples_reported_as_data_issue(pipeline):
    pipeline.process_frame(_frame(seq=1))
    pipeline.request_capture_zero()
    pipeline.apply_pending()

    snapshot = pipeline.process_frame(_frame(seq=2, r=0))
    assert snapshot.absorbance.trace("r").undefined.size == WIDTH
    assert [issue.kind for issue in snapshot.issues] == ["data"]


def test_capture_zero_without_spectrum_reports_failure(pipeline):
    pipeline.request_capture_zero()
    failures = pipeline.apply_pending()
    assert len(failures) == 1
    assert not pipeline.reference.has_reference


def test_republish_marks_last_snapshot_stale(pipeline):
    assert pipeline.republish_last() is None

    fresh = pipeline.process_frame(_frame())
    stale = pipeline.republish_last()
    assert stale.stale
    assert stale.spectrum is fresh.spectrum
    assert pipeline.slot.latest() is stale


def test_frame_size_change_resizes_axis(pipeline):
    pipeline.process_frame(_frame(seq=1))
    spectrum = pipeline.process_frame(_frame(seq=2, width=80)).spectrum

    assert len(spectrum) == 80
    assert spectrum.wavelength[0] == pytest.approx(400.0)
    assert spectrum.wavelength[-1] == pytest.approx(400.0 + 79 * 300.0 / 99.0)


def test_averaging_over_frames():
    pipe = SpectralPipeline(_settings(averaging={"capacity": 4}))
    for seq, value in enumerate((10, 20, 30, 40, 50)):
        snapshot = pipe.process_frame(_frame(seq=seq, r=value))
    # 10 has been evicted.
    np.testing.assert_allclose(snapshot.spectrum.channel("r"), 35.0)


def test_identical_frames_average_exactly():
    pipe = SpectralPipeline(_settings(averaging={"capacity": 7}))
    frame = _frame()
    for _ in range(7):
        snapshot = pipe.process_frame(frame)
    np.testing.assert_array_equal(snapshot.spectrum.channel("r"), np.arange(WIDTH) + 10.0)


def test_parallel_extraction_matches_serial():
    serial = SpectralPipeline(_settings())
    parallel = SpectralPipeline(_settings(workers=2))
    try:
        frame = _frame()
        a = serial.process_frame(frame).spectrum
        b = parallel.process_frame(frame).spectrum
        np.testing.assert_array_equal(a.intensity, b.intensity)
        np.testing.assert_array_equal(a.wavelength, b.wavelength)
    finally:
        parallel.close()


def test_response_calibration_matches_reference(pipeline):
    reference = pipeline.generate_tungsten(2800.0)
    pipeline.process_frame(_frame(seq=1))
    pipeline.request_response_calibration()

    snapshot = pipeline.process_frame(_frame(seq=2))
    assert pipeline.response is not None
    np.testing.assert_allclose(snapshot.spectrum.channel("sum"), reference.intensity[0], rtol=1e-9)
    np.testing.assert_allclose(snapshot.absorbance.trace("sum").absorbance, 0.0, atol=1e-9)

    pipeline.request_clear_response()
    pipeline.apply_pending()
    assert pipeline.response is None


def test_response_calibration_requires_reference(pipeline):
    pipeline.process_frame(_frame())
    pipeline.request_response_calibration()
    assert pipeline.apply_pending()
    assert pipeline.response is None


def test_lowpass_keeps_steady_signal():
    pipe = SpectralPipeline(_settings(lowpass={"enabled": True, "cutoff_hz": 2.0, "sample_rate_hz": 30.0}))
    frame_values = None
    for seq in range(30):
        snapshot = pipe.process_frame(_frame(seq=seq))
        frame_values = snapshot.spectrum.channel("r")
    np.testing.assert_allclose(frame_values, np.arange(WIDTH) + 10.0)
    assert pipe.frame_rate == pytest.approx(30.0)


def test_peak_reported_in_snapshot(pipeline):
    cols = np.arange(WIDTH)
    bump = (10 + 100 * np.exp(-((cols - 50) ** 2) / 18.0)).astype(np.uint8)
    snapshot = pipeline.process_frame(_frame(r=bump, g=bump, b=bump))

    assert [p.kind for p in snapshot.peaks] == [PeakKind.PEAK]
    assert snapshot.peaks[0].index == 50
    assert snapshot.peaks[0].wavelength_nm == pytest.approx(400.0 + 50 * 300.0 / 99.0)


def test_clear_reference_request(pipeline):
    pipeline.generate_tungsten()
    pipeline.request_clear_reference()
    pipeline.apply_pending()
    assert not pipeline.reference.has_reference
    assert pipeline.process_frame(_frame()).absorbance is None


@pytest.mark.parametrize(
    "breakpoints",
    [
        [["a", 1], [2, 3]],
        [1, 2, 3],
        [[0, 0, 1], [255, 255, 1]],
    ],
)
def test_malformed_breakpoints_are_returned_as_errors(pipeline, breakpoints):
    errors = pipeline.configure({"linearization": {"mode": "custom", "breakpoints": breakpoints}})
    assert errors
    assert pipeline.settings.params["linearization"]["mode"] == "off"


def test_colour_preset_leaves_luminance_frame_unscaled():
    pipe = SpectralPipeline(_settings(gain={"preset": "srgb"}))
    pixels = np.full((HEIGHT, WIDTH), 50, dtype=np.uint8)
    spectrum = pipe.process_frame(RawFrame(pixels=pixels, sequence=0, timestamp=0.0)).spectrum
    np.testing.assert_allclose(spectrum.channel("luminance"), 50.0)


def test_dark_frame_is_subtracted_from_later_frames(pipeline):
    pipeline.process_frame(_frame(seq=1))
    pipeline.request_capture_dark()

    snapshot = pipeline.process_frame(_frame(seq=2, g=25))
    assert pipeline.dark_active
    assert snapshot.dark_subtracted
    np.testing.assert_allclose(snapshot.spectrum.channel("r"), 0.0)
    np.testing.assert_allclose(snapshot.spectrum.channel("g"), 5.0)
    np.testing.assert_allclose(snapshot.spectrum.channel("sum"), 5.0)


def test_dark_frame_is_not_an_absorbance_reference(pipeline):
    pipeline.process_frame(_frame(seq=1))
    pipeline.request_capture_dark()
    snapshot = pipeline.process_frame(_frame(seq=2))
    assert not pipeline.reference.has_reference
    assert snapshot.absorbance is None


def test_dark_frame_dropped_on_frame_size_change(pipeline):
    pipeline.process_frame(_frame(seq=1))
    pipeline.request_capture_dark()
    pipeline.process_frame(_frame(seq=2))

    snapshot = pipeline.process_frame(_frame(seq=3, width=80))
    assert not pipeline.dark_active
    assert not snapshot.dark_subtracted
    np.testing.assert_allclose(snapshot.spectrum.channel("r"), np.arange(80) + 10.0)


def test_dark_frame_dropped_when_flip_changes(pipeline):
    pipeline.process_frame(_frame(seq=1))
    pipeline.request_capture_dark()
    pipeline.apply_pending()
    assert pipeline.dark_active

    assert pipeline.configure(_settings(flip=True)) == []
    pipeline.apply_pending()
    assert not pipeline.dark_active


def test_clear_dark_request(pipeline):
    pipeline.process_frame(_frame(seq=1))
    pipeline.request_capture_dark()
    pipeline.apply_pending()
    pipeline.request_clear_dark()
    pipeline.apply_pending()

    snapshot = pipeline.process_frame(_frame(seq=2))
    assert not snapshot.dark_subtracted
    np.testing.assert_allclose(snapshot.spectrum.channel("g"), 20.0)


def test_capture_dark_without_spectrum_reports_failure(pipeline):
    pipeline.request_capture_dark()
    failures = pipeline.apply_pending()
    assert failures == ["No live spectrum to capture as dark frame"]
    assert not pipeline.dark_active
