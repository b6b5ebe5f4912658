"""Per-frame spectral processing.

``SpectralPipeline`` owns every stateful stage and is driven from a single
thread. Settings changes and reference actions are queued from any thread and
applied between frames, so one spectrum never mixes old and new settings.
"""

from __future__ import annotations

from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
import logging
import os
import threading
from typing import Any, Callable, Deque, List, Mapping, Optional, Tuple

import numpy as np

from spectro_cam.engine.averaging import AveragingBuffer
from spectro_cam.engine.calibration import CalibrationModel
from spectro_cam.engine.correction import (
    ChannelCorrection,
    SpectralResponse,
    build_correction,
    with_combined_channel,
)
from spectro_cam.engine.errors import ISSUE_CONFIGURATION, ISSUE_DATA, ConfigurationError, FrameIssue
from spectro_cam.engine.extraction import RegionOfInterest, extract_channel, extract_profile
from spectro_cam.engine.filters import LowPassFilterBank, smooth_spectral_axis
from spectro_cam.engine.frame_channel import RawFrame
from spectro_cam.engine.peak_detection import PeakDipConfig, detect_peaks_dips
from spectro_cam.engine.reference import ReferenceEngine, ReferenceKind
from spectro_cam.engine.settings_model import PipelineSettings
from spectro_cam.engine.snapshot import PipelineSnapshot, SnapshotSlot
from spectro_cam.engine.spectrum import COMBINED_CHANNEL, Spectrum, build_spectrum, channel_names

logger = logging.getLogger(__name__)

# Weight of the newest frame interval in the frame-rate estimate.
RATE_SMOOTHING = 0.2


def _default_parallel_workers() -> int:
    return max(1, min(4, os.cpu_count() or 1))


def _resolve_workers(value: Any) -> int:
    try:
        workers = int(value) if value is not None else 1
    except (TypeError, ValueError):
        workers = 1
    if workers < 1:
        workers = _default_parallel_workers()
    return workers


@dataclass(frozen=True)
class _StagedConfig:
    """Fully validated components ready to be swapped in."""

    settings: PipelineSettings
    roi: RegionOfInterest
    reduction: str
    flip: bool
    calibration: CalibrationModel
    correction: ChannelCorrection
    averaging_capacity: int
    lowpass: Optional[LowPassFilterBank]
    smoothing_cutoff: Optional[float]
    peaks: PeakDipConfig
    temperature_k: float
    peak_value: float
    reference_scale: float
    workers: int


def _build_config(settings: PipelineSettings) -> _StagedConfig:
    roi_cfg = settings.section("roi")
    roi = RegionOfInterest(
        x=roi_cfg.get("x", 0),
        y=roi_cfg.get("y", 0),
        width=roi_cfg.get("width", 640),
        height=roi_cfg.get("height", 20),
        axis=str(roi_cfg.get("axis", "horizontal")),
    )
    cal_cfg = settings.section("calibration")
    calibration = CalibrationModel(
        cal_cfg.get("points") or (),
        pixel_count=roi.extent,
        max_degree=cal_cfg.get("max_degree", 3),
    )
    correction = build_correction(settings.section("gain"), settings.section("linearization"))

    capacity = settings.section("averaging").get("capacity", 10)
    # Validates the capacity the same way the live buffer will.
    AveragingBuffer(capacity)

    lowpass_cfg = settings.section("lowpass")
    lowpass = None
    if lowpass_cfg.get("enabled"):
        lowpass = LowPassFilterBank(
            float(lowpass_cfg.get("cutoff_hz", 2.0)),
            float(lowpass_cfg.get("sample_rate_hz", 30.0)),
        )

    smoothing_cfg = settings.section("smoothing")
    smoothing_cutoff = None
    if smoothing_cfg.get("enabled"):
        smoothing_cutoff = float(smoothing_cfg.get("cutoff", 0.5))
        if not 0.0 < smoothing_cutoff < 1.0:
            raise ConfigurationError("Spectral smoothing cutoff must lie between 0 and 1")

    ref_cfg = settings.section("reference")
    probe = ReferenceEngine(
        peak_value=ref_cfg.get("peak_value", 1.0),
        scale=ref_cfg.get("scale", 1.0),
    )
    temperature_k = float(ref_cfg.get("temperature_k", 2800.0))
    if not temperature_k > 0:
        raise ConfigurationError("Tungsten temperature must be a positive number of kelvin")

    return _StagedConfig(
        settings=settings,
        roi=roi,
        reduction=str(settings.params.get("reduction", "mean")),
        flip=bool(settings.params.get("flip", False)),
        calibration=calibration,
        correction=correction,
        averaging_capacity=int(capacity),
        lowpass=lowpass,
        smoothing_cutoff=smoothing_cutoff,
        peaks=PeakDipConfig.from_mapping(settings.section("peaks")),
        temperature_k=temperature_k,
        peak_value=probe.peak_value,
        reference_scale=probe.scale,
        workers=_resolve_workers(settings.params.get("workers", 1)),
    )


class SpectralPipeline:
    def __init__(
        self,
        settings: Optional[PipelineSettings | Mapping[str, Any]] = None,
        *,
        slot: Optional[SnapshotSlot] = None,
    ) -> None:
        self.slot = slot or SnapshotSlot()
        self.reference = ReferenceEngine()
        self._lock = threading.Lock()
        self._staged: Optional[_StagedConfig] = None
        self._actions: Deque[Tuple[str, Callable[[], None]]] = deque()

        self._config: Optional[_StagedConfig] = None
        self._averaging = AveragingBuffer(1)
        self._lowpass: Optional[LowPassFilterBank] = None
        self._response: Optional[SpectralResponse] = None
        self._dark: Optional[np.ndarray] = None
        self._executor: Optional[ThreadPoolExecutor] = None

        self._profile_shape: Optional[tuple] = None
        self._last_filtered: Optional[np.ndarray] = None
        self._last_profile: Optional[np.ndarray] = None
        self._last_channels: Tuple[str, ...] = ()
        self._last_timestamp: Optional[float] = None
        self._rate_estimate: Optional[float] = None
        self._last_snapshot: Optional[PipelineSnapshot] = None

        errors = self.configure(settings if settings is not None else PipelineSettings())
        if errors:
            raise ConfigurationError("; ".join(errors))
        self.apply_pending()

    # ------------------------------------------------------------------
    # Configuration and requests
    @property
    def settings(self) -> PipelineSettings:
        assert self._config is not None
        return self._config.settings

    @property
    def calibration(self) -> CalibrationModel:
        assert self._config is not None
        return self._config.calibration

    @property
    def response(self) -> Optional[SpectralResponse]:
        return self._response

    @property
    def dark_active(self) -> bool:
        return self._dark is not None

    @property
    def last_snapshot(self) -> Optional[PipelineSnapshot]:
        return self._last_snapshot

    @property
    def frame_rate(self) -> Optional[float]:
        return self._rate_estimate

    def configure(self, settings: PipelineSettings | Mapping[str, Any]) -> List[str]:
        """Validate and stage ``settings``; returns error messages.

        Nothing is staged when any error is reported, so the active
        configuration stays in use.
        """

        if not isinstance(settings, PipelineSettings):
            settings = PipelineSettings.from_dict(settings)
        errors = settings.validate()
        if not errors:
            try:
                staged = _build_config(settings)
            except ConfigurationError as exc:
                errors = [str(exc)]
        if errors:
            logger.warning("Rejected settings: %s", "; ".join(errors))
            return errors
        with self._lock:
            self._staged = staged
        return []

    def _request(self, name: str, action: Callable[[], None]) -> None:
        with self._lock:
            self._actions.append((name, action))

    def request_capture_zero(self) -> None:
        self._request("capture_zero", self._capture_zero)

    def request_tungsten(self, temperature_k: Optional[float] = None) -> None:
        self._request("tungsten", lambda: self.generate_tungsten(temperature_k))

    def request_clear_reference(self) -> None:
        self._request("clear_reference", self.reference.clear_reference)

    def request_reference(self, spectrum: Spectrum) -> None:
        self._request("reference", lambda: self.reference.set_reference(spectrum, ReferenceKind.IMPORTED))

    def request_response_calibration(self) -> None:
        self._request("response_calibration", self._calibrate_response)

    def request_clear_response(self) -> None:
        self._request("clear_response", self._clear_response)

    def request_capture_dark(self) -> None:
        """Subtract the current filtered profile from every later frame."""

        self._request("capture_dark", self._capture_dark)

    def request_clear_dark(self) -> None:
        self._request("clear_dark", lambda: self._drop_dark("on request"))

    def apply_pending(self) -> List[str]:
        """Apply staged settings then queued actions; call between frames."""

        with self._lock:
            staged, self._staged = self._staged, None
            actions = list(self._actions)
            self._actions.clear()

        if staged is not None:
            self._apply_config(staged)

        failures: List[str] = []
        for name, action in actions:
            try:
                action()
            except ConfigurationError as exc:
                logger.warning("Could not apply %s: %s", name.replace("_", " "), exc)
                failures.append(str(exc))
        return failures

    def _apply_config(self, staged: _StagedConfig) -> None:
        previous = self._config
        self._config = staged

        if self._profile_shape is not None:
            staged.calibration.set_pixel_count(self._profile_shape[-1])

        pixel_settings_changed = previous is None or (
            previous.roi != staged.roi
            or previous.reduction != staged.reduction
            or previous.flip != staged.flip
            or previous.settings.section("gain") != staged.settings.section("gain")
            or previous.settings.section("linearization") != staged.settings.section("linearization")
        )
        if previous is None or self._averaging.capacity != staged.averaging_capacity:
            self._averaging.resize(staged.averaging_capacity)
        elif pixel_settings_changed:
            self._averaging.clear()

        self._apply_lowpass(staged.lowpass)
        if pixel_settings_changed:
            if self._lowpass is not None:
                self._lowpass.reset()
            self._last_filtered = None
            self._drop_dark("profile settings changed")

        self.reference.set_peak_value(staged.peak_value)
        self.reference.set_scale(staged.reference_scale)

        if staged.workers <= 1 and self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        elif staged.workers > 1 and (
            self._executor is None or previous is None or previous.workers != staged.workers
        ):
            if self._executor is not None:
                self._executor.shutdown(wait=True)
            self._executor = ThreadPoolExecutor(max_workers=staged.workers, thread_name_prefix="extract")
        logger.info("Applied settings (%s)", staged.calibration.fit().describe())

    def _apply_lowpass(self, staged: Optional[LowPassFilterBank]) -> None:
        if staged is None:
            self._lowpass = None
            return
        if self._lowpass is None:
            self._lowpass = staged
        else:
            rate = self._rate_estimate or staged.sample_rate_hz
            try:
                # Keeps the running state when the filter stays stable.
                self._lowpass.configure(staged.cutoff_hz, rate)
            except ConfigurationError:
                self._lowpass = staged
        if self._rate_estimate:
            self._lowpass.update_sample_rate(self._rate_estimate)

    # ------------------------------------------------------------------
    # Reference actions, run on the pipeline thread
    def _capture_zero(self) -> None:
        snapshot = self._last_snapshot
        if snapshot is None or snapshot.spectrum is None:
            raise ConfigurationError("No live spectrum to capture as reference")
        self.reference.capture_zero(snapshot.spectrum)

    def _current_axis(self) -> Tuple[np.ndarray, bool]:
        assert self._config is not None
        count = self._profile_shape[-1] if self._profile_shape is not None else self._config.roi.extent
        self._config.calibration.set_pixel_count(count)
        result = self._config.calibration.fit()
        return np.sort(result.wavelengths, kind="stable"), result.calibrated

    def generate_tungsten(self, temperature_k: Optional[float] = None) -> Spectrum:
        """Tungsten reference over the active wavelength axis; no frame needed."""

        assert self._config is not None
        temperature = self._config.temperature_k if temperature_k is None else float(temperature_k)
        wavelengths, calibrated = self._current_axis()
        return self.reference.generate_tungsten(temperature, wavelengths, calibrated=calibrated)

    def _calibrate_response(self) -> None:
        reference = self.reference.reference
        if reference is None:
            raise ConfigurationError("Set a reference before calibrating the spectral response")
        if self._last_profile is None or COMBINED_CHANNEL not in self._last_channels:
            raise ConfigurationError("Spectral response calibration needs a live colour spectrum")
        assert self._config is not None
        axis = self._config.calibration.fit().wavelengths
        if reference.intensity.shape[0] == 1:
            ref_row = reference.intensity[0]
        elif COMBINED_CHANNEL in reference.channels:
            ref_row = reference.channel(COMBINED_CHANNEL)
        else:
            ref_row = reference.intensity[-1]
        target = np.interp(axis, reference.wavelength, ref_row, left=np.nan, right=np.nan)
        measured = self._last_profile[self._last_channels.index(COMBINED_CHANNEL)]
        self._response = SpectralResponse.from_reference(measured, target)
        logger.info("Spectral response calibrated against %s reference", self.reference.kind.value)

    def _clear_response(self) -> None:
        self._response = None

    def _capture_dark(self) -> None:
        if self._last_filtered is None:
            raise ConfigurationError("No live spectrum to capture as dark frame")
        self._dark = self._last_filtered.copy()
        logger.info("Captured dark frame (%d bins)", self._dark.shape[-1])

    def _drop_dark(self, reason: Optional[str] = None) -> None:
        if self._dark is None:
            return
        self._dark = None
        if reason:
            logger.info("Dark frame cleared: %s", reason)

    # ------------------------------------------------------------------
    # Frame processing
    def reset(self) -> None:
        """Forget all frame history, e.g. when processing restarts."""

        self._averaging.clear()
        if self._lowpass is not None:
            self._lowpass.reset()
        self._last_timestamp = None
        self._rate_estimate = None

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def _extract_and_correct(self, pixels: np.ndarray) -> np.ndarray:
        cfg = self._config
        assert cfg is not None
        channels = 1 if pixels.ndim == 2 else pixels.shape[2]
        if self._executor is None or channels < 2:
            profile = extract_profile(pixels, cfg.roi, reduction=cfg.reduction, flip=cfg.flip)
            if profile.shape[-1] == 0:
                return profile
            return cfg.correction.correct_profile(profile)

        def _one(channel: int) -> np.ndarray:
            raw = extract_channel(pixels, cfg.roi, channel, reduction=cfg.reduction, flip=cfg.flip)
            return cfg.correction.correct(raw, channel)

        rows = list(self._executor.map(_one, range(channels)))
        return np.vstack(rows)

    def _update_rate(self, timestamp: float) -> None:
        last, self._last_timestamp = self._last_timestamp, timestamp
        if last is None:
            return
        dt = timestamp - last
        if not dt > 0:
            return
        instant = 1.0 / dt
        if self._rate_estimate is None:
            self._rate_estimate = instant
        else:
            self._rate_estimate += RATE_SMOOTHING * (instant - self._rate_estimate)
        if self._lowpass is not None:
            self._lowpass.update_sample_rate(self._rate_estimate)

    def _on_dimension_change(self, shape: tuple) -> None:
        if self._profile_shape is not None:
            logger.info("Profile shape changed from %s to %s; clearing history", self._profile_shape, shape)
        self._profile_shape = shape
        self._averaging.clear()
        if self._lowpass is not None:
            self._lowpass.reset()
        self._last_filtered = None
        self._drop_dark("profile shape changed")
        assert self._config is not None
        self._config.calibration.set_pixel_count(shape[-1])

    def process_frame(self, frame: RawFrame) -> PipelineSnapshot:
        self.apply_pending()
        cfg = self._config
        assert cfg is not None

        pixels = np.asarray(frame.pixels)
        corrected = self._extract_and_correct(pixels)
        if corrected.shape[-1] == 0:
            height, width = pixels.shape[:2]
            issue = FrameIssue(
                ISSUE_CONFIGURATION,
                f"ROI ({cfg.roi.x}, {cfg.roi.y}, {cfg.roi.width}x{cfg.roi.height}) lies outside the {width}x{height} frame",
            )
            logger.debug("Frame %d: %s", frame.sequence, issue.message)
            return self._republish(frame, (issue,))

        names = channel_names(corrected.shape[0])
        combined, names = with_combined_channel(corrected, names)
        if combined.shape != self._profile_shape:
            self._on_dimension_change(combined.shape)

        self._update_rate(float(frame.timestamp))
        self._averaging.push(combined)
        averaged = self._averaging.mean()
        if self._lowpass is not None:
            averaged = self._lowpass.process(averaged)
        self._last_filtered = averaged
        if self._dark is not None:
            averaged = averaged - self._dark
        self._last_profile = averaged
        self._last_channels = names

        if self._response is not None:
            averaged = self._response.apply(averaged, names)

        calibration = cfg.calibration.fit()
        spectrum = build_spectrum(
            calibration.wavelengths,
            averaged,
            names,
            calibrated=calibration.calibrated,
            meta={"sequence": frame.sequence, "timestamp": frame.timestamp},
        )
        if cfg.smoothing_cutoff is not None:
            spectrum = spectrum.copy(intensity=smooth_spectral_axis(spectrum.intensity, cfg.smoothing_cutoff))

        peaks = detect_peaks_dips(spectrum, cfg.peaks)
        absorbance = self.reference.absorbance(spectrum)
        issues: List[FrameIssue] = []
        if absorbance is not None and absorbance.undefined_count():
            issues.append(
                FrameIssue(
                    ISSUE_DATA,
                    f"Absorbance undefined at {absorbance.undefined_count()} samples",
                )
            )

        snapshot = PipelineSnapshot(
            sequence=frame.sequence,
            timestamp=frame.timestamp,
            spectrum=spectrum,
            peaks=peaks,
            absorbance=absorbance,
            reference=self.reference.scaled_reference(),
            calibration=calibration,
            issues=tuple(issues),
            dark_subtracted=self._dark is not None,
        )
        self._last_snapshot = snapshot
        self.slot.publish(snapshot)
        return snapshot

    def _republish(self, frame: RawFrame, issues: Tuple[FrameIssue, ...]) -> PipelineSnapshot:
        last = self._last_snapshot
        if last is None:
            snapshot = PipelineSnapshot(
                sequence=frame.sequence,
                timestamp=frame.timestamp,
                spectrum=None,
                reference=self.reference.scaled_reference(),
                issues=issues,
                stale=True,
            )
        else:
            snapshot = PipelineSnapshot(
                sequence=last.sequence,
                timestamp=last.timestamp,
                spectrum=last.spectrum,
                peaks=last.peaks,
                absorbance=last.absorbance,
                reference=last.reference,
                calibration=last.calibration,
                issues=issues,
                stale=True,
                dark_subtracted=last.dark_subtracted,
            )
        self.slot.publish(snapshot)
        return snapshot

    def republish_last(self) -> Optional[PipelineSnapshot]:
        """Publish the previous snapshot again, marked stale, when no frame arrived."""

        self.apply_pending()
        last = self._last_snapshot
        if last is None:
            return None
        snapshot = last.as_stale()
        self.slot.publish(snapshot)
        return snapshot
