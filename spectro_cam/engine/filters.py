"""Low-pass filtering of the spectrum.

``LowPassFilterBank`` smooths frame-to-frame noise: every channel and
wavelength bin owns an independent second order Butterworth section that is
advanced once per frame. ``smooth_spectral_axis`` instead filters along the
wavelength axis of a single spectrum.
"""

from __future__ import annotations

import logging
import math
from typing import Optional

import numpy as np
from scipy.signal import butter, sosfilt, sosfilt_zi, sosfiltfilt

from spectro_cam.engine.errors import ConfigurationError

logger = logging.getLogger(__name__)

FILTER_ORDER = 2

# Relative sample-rate change below which coefficients are kept.
RATE_TOLERANCE = 0.1


def _design(cutoff_hz: float, sample_rate_hz: float) -> np.ndarray:
    return butter(FILTER_ORDER, cutoff_hz, btype="low", fs=sample_rate_hz, output="sos")


def _check(cutoff_hz: float, sample_rate_hz: float) -> None:
    if not (math.isfinite(cutoff_hz) and cutoff_hz > 0):
        raise ConfigurationError("Low-pass cutoff must be a positive frequency")
    if not (math.isfinite(sample_rate_hz) and sample_rate_hz > 0):
        raise ConfigurationError("Sample rate must be positive")
    nyquist = sample_rate_hz / 2.0
    if cutoff_hz >= nyquist:
        raise ConfigurationError(
            f"Low-pass cutoff {cutoff_hz:g} Hz must be below the Nyquist frequency {nyquist:g} Hz"
        )


class LowPassFilterBank:
    def __init__(self, cutoff_hz: float, sample_rate_hz: float) -> None:
        _check(float(cutoff_hz), float(sample_rate_hz))
        self._cutoff = float(cutoff_hz)
        self._rate = float(sample_rate_hz)
        self._sos: Optional[np.ndarray] = _design(self._cutoff, self._rate)
        self._state: Optional[np.ndarray] = None

    @property
    def cutoff_hz(self) -> float:
        return self._cutoff

    @property
    def sample_rate_hz(self) -> float:
        return self._rate

    @property
    def bypassed(self) -> bool:
        """True while the sample rate is too low for the configured cutoff."""

        return self._sos is None

    @property
    def primed(self) -> bool:
        return self._state is not None

    def configure(self, cutoff_hz: float, sample_rate_hz: float) -> None:
        cutoff_hz, sample_rate_hz = float(cutoff_hz), float(sample_rate_hz)
        _check(cutoff_hz, sample_rate_hz)
        was_stable = self._sos is not None
        self._cutoff, self._rate = cutoff_hz, sample_rate_hz
        self._sos = _design(cutoff_hz, sample_rate_hz)
        if not was_stable:
            self.reset()

    def update_sample_rate(self, sample_rate_hz: float) -> None:
        """Follow the measured frame rate.

        A rate whose Nyquist frequency falls to or below the cutoff cannot be
        filtered; the bank then resets and passes samples through until the
        rate recovers.
        """

        rate = float(sample_rate_hz)
        if not (math.isfinite(rate) and rate > 0):
            return
        if self._sos is not None and abs(rate - self._rate) <= RATE_TOLERANCE * self._rate:
            return
        if self._cutoff >= rate / 2.0:
            if self._sos is not None:
                logger.warning(
                    "Frame rate %.2f Hz too low for %.2f Hz low-pass cutoff; filter bypassed",
                    rate,
                    self._cutoff,
                )
            self._rate = rate
            self._sos = None
            self.reset()
            return
        if self._sos is None:
            logger.info("Frame rate %.2f Hz supports the low-pass filter again", rate)
        self.configure(self._cutoff, rate)

    def reset(self) -> None:
        """Forget the filter history.

        The next sample seeds the state as if it had been constant forever,
        so it passes through unchanged instead of ramping up from zero.
        """

        self._state = None

    def process(self, sample: np.ndarray) -> np.ndarray:
        """Filter one frame of shape ``(channels, bins)`` and advance the state."""

        x = np.asarray(sample, dtype=float)
        if self._sos is None:
            return x.copy()
        sos = self._sos
        if self._state is None or self._state.shape[1:-1] != x.shape:
            # Seed each section at steady state for this sample.
            zi = sosfilt_zi(sos)
            self._state = zi.reshape((sos.shape[0],) + (1,) * x.ndim + (2,)) * x[np.newaxis, ..., np.newaxis]
        y, self._state = sosfilt(sos, x[..., np.newaxis], axis=-1, zi=self._state)
        return y[..., 0]


def smooth_spectral_axis(intensity: np.ndarray, cutoff: float) -> np.ndarray:
    """Zero-phase low-pass along the last axis.

    ``cutoff`` is a fraction of the Nyquist frequency of the sample spacing.
    Spectra too short for the forward-backward pass are returned unchanged.
    """

    cutoff = float(cutoff)
    if not 0.0 < cutoff < 1.0:
        raise ConfigurationError("Spectral smoothing cutoff must lie between 0 and 1")
    arr = np.asarray(intensity, dtype=float)
    sos = butter(FILTER_ORDER, cutoff, btype="low", output="sos")
    # sosfiltfilt's default padding needs more than 3 * (2 * sections + 1) samples.
    min_len = 3 * (2 * sos.shape[0] + 1) + 1
    if arr.shape[-1] < min_len:
        return arr.copy()
    return sosfiltfilt(sos, arr, axis=-1)
