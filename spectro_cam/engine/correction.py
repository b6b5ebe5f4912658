"""Per-channel gain, linearization and spectral response correction."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from spectro_cam.engine.errors import ConfigurationError
from spectro_cam.engine.spectrum import COMBINED_CHANNEL

logger = logging.getLogger(__name__)

GAIN_PRESETS: Dict[str, Tuple[float, float, float]] = {
    "unity": (1.0, 1.0, 1.0),
    "srgb": (0.2126, 0.7152, 0.0722),
    "rec601": (0.299, 0.587, 0.114),
    "rec709": (0.2126, 0.7152, 0.0722),
}

LINEARIZATION_MODES = ("off", "srgb", "rec709", "rec601", "custom")

# 8-bit sensor full scale used by the transfer curve presets.
FULL_SCALE = 255.0


def _srgb_decode(v: np.ndarray) -> np.ndarray:
    return np.where(v <= 0.04045, v / 12.92, ((v + 0.055) / 1.055) ** 2.4)


def _bt_decode(v: np.ndarray) -> np.ndarray:
    # Rec. 601 and Rec. 709 share the same opto-electronic transfer function.
    return np.where(v < 0.081, v / 4.5, ((v + 0.099) / 1.099) ** (1.0 / 0.45))


_TRANSFER_DECODERS = {
    "srgb": _srgb_decode,
    "rec709": _bt_decode,
    "rec601": _bt_decode,
}


class LinearizationCurve:
    """Monotonic piecewise linear mapping from raw to linear intensity.

    Values outside the breakpoint range take the nearest endpoint value. A
    curve without breakpoints is the identity.
    """

    def __init__(self, breakpoints: Optional[Iterable[Sequence[float]]] = None) -> None:
        if breakpoints is None:
            self._raw: Optional[np.ndarray] = None
            self._linear: Optional[np.ndarray] = None
            return
        pairs: List[Tuple[float, float]] = []
        try:
            for bp in breakpoints:
                raw_value, linear_value = bp
                pairs.append((float(raw_value), float(linear_value)))
        except (TypeError, ValueError):
            raise ConfigurationError(
                f"Linearization breakpoints must be numeric (raw, linear) pairs, got {breakpoints!r}"
            ) from None
        if len(pairs) < 2:
            raise ConfigurationError("Linearization needs at least two breakpoints")
        raw = np.array([bp[0] for bp in pairs], dtype=float)
        linear = np.array([bp[1] for bp in pairs], dtype=float)
        if not (np.all(np.isfinite(raw)) and np.all(np.isfinite(linear))):
            raise ConfigurationError("Linearization breakpoints must be finite")
        if np.any(np.diff(raw) <= 0):
            raise ConfigurationError("Linearization raw values must be strictly increasing")
        if np.any(np.diff(linear) < 0):
            raise ConfigurationError("Linearization output must not decrease")
        self._raw = raw
        self._linear = linear

    @classmethod
    def identity(cls) -> "LinearizationCurve":
        return cls(None)

    @classmethod
    def from_transfer(cls, mode: str, *, full_scale: float = FULL_SCALE, samples: int = 64) -> "LinearizationCurve":
        """Sample an inverse gamma transfer curve into breakpoints."""

        if mode == "off":
            return cls.identity()
        decoder = _TRANSFER_DECODERS.get(mode)
        if decoder is None:
            raise ConfigurationError(f"Unknown linearization mode '{mode}'")
        encoded = np.linspace(0.0, 1.0, int(samples))
        linear = decoder(encoded)
        return cls(zip(encoded * full_scale, linear * full_scale))

    @property
    def is_identity(self) -> bool:
        return self._raw is None

    @property
    def breakpoints(self) -> Tuple[Tuple[float, float], ...]:
        if self._raw is None or self._linear is None:
            return ()
        return tuple(zip(self._raw.tolist(), self._linear.tolist()))

    def __call__(self, values: np.ndarray) -> np.ndarray:
        arr = np.asarray(values, dtype=float)
        if self._raw is None or self._linear is None:
            return arr.copy()
        return np.interp(arr, self._raw, self._linear)


def _gain_vector(gains: Sequence[float]) -> Tuple[float, ...]:
    values = tuple(float(g) for g in gains)
    if not values:
        raise ConfigurationError("At least one channel gain is required")
    if any(not np.isfinite(g) or g < 0 for g in values):
        raise ConfigurationError("Channel gains must be finite and non-negative")
    return values


class ChannelCorrection:
    """``correct(raw, channel) == linearize(raw * gain[channel], channel)``."""

    def __init__(
        self,
        gains: Sequence[float] = GAIN_PRESETS["unity"],
        curves: Optional[Sequence[LinearizationCurve] | LinearizationCurve] = None,
    ) -> None:
        self._gains = _gain_vector(gains)
        self._curves: Tuple[LinearizationCurve, ...] = ()
        self._shared_curve = LinearizationCurve.identity()
        self.set_curves(curves)

    @classmethod
    def from_preset(cls, name: str, curves=None) -> "ChannelCorrection":
        correction = cls(curves=curves)
        correction.apply_preset(name)
        return correction

    @property
    def gains(self) -> Tuple[float, ...]:
        return self._gains

    def set_gains(self, gains: Sequence[float]) -> None:
        self._gains = _gain_vector(gains)

    def apply_preset(self, name: str) -> None:
        key = str(name).strip().lower()
        if key not in GAIN_PRESETS:
            raise ConfigurationError(f"Unknown gain preset '{name}'")
        self._gains = GAIN_PRESETS[key]

    def set_curves(self, curves: Optional[Sequence[LinearizationCurve] | LinearizationCurve]) -> None:
        if curves is None:
            self._curves, self._shared_curve = (), LinearizationCurve.identity()
        elif isinstance(curves, LinearizationCurve):
            self._curves, self._shared_curve = (), curves
        else:
            self._curves, self._shared_curve = tuple(curves), LinearizationCurve.identity()

    def gain(self, channel: int) -> float:
        if len(self._gains) == 1:
            return self._gains[0]
        try:
            return self._gains[channel]
        except IndexError:
            raise ConfigurationError(
                f"No gain configured for channel {channel} ({len(self._gains)} gains)"
            ) from None

    def curve(self, channel: int) -> LinearizationCurve:
        if self._curves:
            return self._curves[min(channel, len(self._curves) - 1)]
        return self._shared_curve

    def correct(self, raw: np.ndarray | float, channel: int) -> np.ndarray:
        scaled = np.asarray(raw, dtype=float) * self.gain(channel)
        return self.curve(channel)(scaled)

    def correct_profile(self, profile: np.ndarray) -> np.ndarray:
        rows = np.asarray(profile, dtype=float)
        if rows.ndim == 1:
            rows = rows.reshape(1, -1)
        if rows.shape[0] == 1 and len(self._gains) > 1:
            # Luminance frames are already colour weighted.
            return self.curve(0)(rows).reshape(1, -1)
        return np.vstack([self.correct(rows[idx], idx) for idx in range(rows.shape[0])])


def with_combined_channel(corrected: np.ndarray, channels: Sequence[str]) -> Tuple[np.ndarray, Tuple[str, ...]]:
    """Append the summed channel for colour profiles."""

    names = tuple(channels)
    if len(names) < 2:
        return corrected, names
    combined = corrected.sum(axis=0, keepdims=True)
    return np.vstack([corrected, combined]), names + (COMBINED_CHANNEL,)


def _nan_safe(values: np.ndarray) -> np.ndarray:
    """Interpolate NaNs in ``values`` from their finite neighbours."""

    arr = np.asarray(values, dtype=float)
    if np.all(np.isfinite(arr)):
        return arr

    x = np.arange(arr.size)
    mask = np.isfinite(arr)
    if not np.any(mask):
        return np.ones_like(arr)

    arr = arr.copy()
    arr[~mask] = np.interp(x[~mask], x[mask], arr[mask])
    return arr


@dataclass(frozen=True, eq=False)
class SpectralResponse:
    """Per-sample factors mapping the measured combined channel to a reference."""

    factors: np.ndarray
    channel: str = COMBINED_CHANNEL

    @classmethod
    def from_reference(
        cls,
        measured: np.ndarray,
        reference: np.ndarray,
        *,
        channel: str = COMBINED_CHANNEL,
    ) -> "SpectralResponse":
        measured = np.asarray(measured, dtype=float)
        reference = np.asarray(reference, dtype=float)
        if measured.shape != reference.shape:
            raise ConfigurationError("Measured and reference traces must have the same length")
        with np.errstate(divide="ignore", invalid="ignore"):
            factors = np.where(measured > 0, reference / measured, np.nan)
        factors[~np.isfinite(factors)] = np.nan
        if not np.any(np.isfinite(factors)):
            raise ConfigurationError("Measured spectrum has no usable samples for response correction")
        invalid = int(np.count_nonzero(~np.isfinite(factors)))
        if invalid:
            logger.info("Interpolated %d response factors with no measured signal", invalid)
        return cls(factors=_nan_safe(factors), channel=channel)

    def apply(self, intensity: np.ndarray, channels: Sequence[str]) -> np.ndarray:
        names = tuple(channels)
        if self.channel not in names:
            return intensity
        if self.factors.size != intensity.shape[-1]:
            logger.debug(
                "Response factors (%d) do not match spectrum length (%d); skipped",
                self.factors.size,
                intensity.shape[-1],
            )
            return intensity
        out = np.array(intensity, dtype=float, copy=True)
        out[names.index(self.channel)] *= self.factors
        return out


def build_correction(
    gain_cfg: Mapping[str, object] | None,
    linearization_cfg: Mapping[str, object] | None,
) -> ChannelCorrection:
    """Construct a correction from the ``gain`` and ``linearization`` settings."""

    gain_cfg = dict(gain_cfg or {})
    lin_cfg = dict(linearization_cfg or {})

    mode = str(lin_cfg.get("mode", "off") or "off").lower()
    if mode not in LINEARIZATION_MODES:
        raise ConfigurationError(f"Unknown linearization mode '{mode}'")
    if mode == "custom":
        curve = LinearizationCurve(lin_cfg.get("breakpoints") or [])
    else:
        curve = LinearizationCurve.from_transfer(mode, full_scale=float(lin_cfg.get("full_scale", FULL_SCALE)))

    values = gain_cfg.get("values")
    if values:
        return ChannelCorrection(gains=list(values), curves=curve)  # type: ignore[arg-type]
    return ChannelCorrection.from_preset(str(gain_cfg.get("preset", "unity")), curves=curve)

