"""Peak and dip detection on calibrated spectra.

Extrema are strict over a neighbourhood measured in nanometres and must reach
a minimum prominence inside a bounded search horizon. Everything here is a
pure function of the spectrum and the configuration so repeated calls on the
same input give the same list.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import math
from typing import Dict, List, Mapping, Optional, Tuple

import numpy as np
from scipy.signal import peak_prominences

from spectro_cam.engine.errors import ConfigurationError
from spectro_cam.engine.spectrum import PeakDip, PeakKind, Spectrum

logger = logging.getLogger(__name__)

DEFAULT_PEAK_CONFIG: Dict[str, object] = {
    "window_nm": 5.0,
    "min_prominence": 1.0,
    "horizon_nm": 50.0,
    "unique_window_nm": 0.0,
    "detect_peaks": True,
    "detect_dips": True,
    "channel": "sum",
}


def resolve_peak_config(peak_cfg: Optional[Mapping[str, object]] = None) -> Dict[str, object]:
    """Return merged peak configuration using shared defaults."""

    resolved = dict(DEFAULT_PEAK_CONFIG)
    if peak_cfg:
        resolved.update({k: v for k, v in peak_cfg.items() if v is not None and k in DEFAULT_PEAK_CONFIG})
    return resolved


@dataclass(frozen=True)
class PeakDipConfig:
    window_nm: float = 5.0
    min_prominence: float = 1.0
    horizon_nm: float = 50.0
    unique_window_nm: float = 0.0
    detect_peaks: bool = True
    detect_dips: bool = True
    channel: str = "sum"

    def __post_init__(self) -> None:
        for name in ("window_nm", "min_prominence", "horizon_nm", "unique_window_nm"):
            try:
                value = float(getattr(self, name))
            except (TypeError, ValueError):
                raise ConfigurationError(f"Peak detection {name} must be numeric") from None
            if not math.isfinite(value) or value < 0:
                raise ConfigurationError(f"Peak detection {name} must be a non-negative number")
            object.__setattr__(self, name, value)

    @classmethod
    def from_mapping(cls, cfg: Optional[Mapping[str, object]] = None) -> "PeakDipConfig":
        resolved = resolve_peak_config(cfg)
        return cls(
            window_nm=resolved["window_nm"],  # type: ignore[arg-type]
            min_prominence=resolved["min_prominence"],  # type: ignore[arg-type]
            horizon_nm=resolved["horizon_nm"],  # type: ignore[arg-type]
            unique_window_nm=resolved["unique_window_nm"],  # type: ignore[arg-type]
            detect_peaks=bool(resolved["detect_peaks"]),
            detect_dips=bool(resolved["detect_dips"]),
            channel=str(resolved["channel"]),
        )


def _nan_safe(values: np.ndarray) -> np.ndarray:
    values = np.asarray(values, dtype=float)
    if np.all(np.isfinite(values)):
        return values
    idx = np.arange(values.size)
    mask = np.isfinite(values)
    if not np.any(mask):
        return np.zeros_like(values)
    filled = values.copy()
    filled[~mask] = np.interp(idx[~mask], idx[mask], values[mask])
    return filled


def _estimate_spacing(x: np.ndarray) -> float:
    diffs = np.diff(np.asarray(x, dtype=float))
    if diffs.size == 0:
        return float("nan")
    spacing = float(np.nanmedian(np.abs(diffs)))
    return spacing if np.isfinite(spacing) and spacing > 0 else float("nan")


def _local_spacing(x: np.ndarray) -> np.ndarray:
    """Sample spacing around every point, in axis units."""

    fallback = _estimate_spacing(x)
    if not np.isfinite(fallback):
        fallback = 1.0
    spacing = np.abs(np.gradient(np.asarray(x, dtype=float)))
    bad = ~np.isfinite(spacing) | (spacing <= 0)
    spacing[bad] = fallback
    return spacing


def _half_window_points(window_nm: float, spacing: np.ndarray) -> np.ndarray:
    if window_nm <= 0:
        return np.ones(spacing.size, dtype=int)
    return np.maximum(1, np.ceil((window_nm / 2.0) / spacing).astype(int))


def _horizon_points(horizon_nm: float, x: np.ndarray) -> Optional[int]:
    if horizon_nm <= 0:
        return None
    spacing = _estimate_spacing(x)
    if not np.isfinite(spacing):
        return None
    half = int(math.ceil(horizon_nm / spacing))
    return max(3, 2 * half + 1)


def _plateau_runs(y: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    starts = np.flatnonzero(np.r_[True, y[1:] != y[:-1]])
    ends = np.r_[starts[1:] - 1, y.size - 1]
    return starts, ends


def _strict_extrema(signal: np.ndarray, half_window: np.ndarray) -> List[int]:
    """Midpoints of runs strictly above everything in their neighbourhood."""

    n = signal.size
    found: List[int] = []
    starts, ends = _plateau_runs(signal)
    for left, right in zip(starts, ends):
        if left == 0 or right == n - 1:
            continue
        value = signal[left]
        if not (signal[left - 1] < value and signal[right + 1] < value):
            continue
        mid = int((left + right) // 2)
        half = int(half_window[mid])
        lower = signal[max(0, left - half):left]
        upper = signal[right + 1:min(n, right + 1 + half)]
        if np.all(lower < value) and np.all(upper < value):
            found.append(mid)
    return found


def _unique_within_window(
    indices: List[int], signal: np.ndarray, x: np.ndarray, window_nm: float
) -> List[int]:
    if window_nm <= 0 or len(indices) < 2:
        return indices
    half = window_nm / 2.0
    kept: List[int] = []
    for idx in indices:
        dominated = False
        for other in indices:
            if other == idx or abs(x[other] - x[idx]) >= half:
                continue
            if signal[other] > signal[idx] or (signal[other] == signal[idx] and other < idx):
                dominated = True
                break
        if not dominated:
            kept.append(idx)
    return kept


def _detect_kind(
    x: np.ndarray,
    y: np.ndarray,
    kind: PeakKind,
    config: PeakDipConfig,
    half_window: np.ndarray,
    wlen: Optional[int],
) -> List[PeakDip]:
    signal = y if kind is PeakKind.PEAK else -y
    candidates = _strict_extrema(signal, half_window)
    if not candidates:
        return []
    idx = np.asarray(candidates, dtype=int)
    prominences = peak_prominences(signal, idx, wlen=wlen)[0]
    keep = [int(i) for i, prom in zip(idx, prominences) if prom >= config.min_prominence]
    prominence_by_index = {int(i): float(p) for i, p in zip(idx, prominences)}
    keep = _unique_within_window(keep, signal, x, config.unique_window_nm)
    return [
        PeakDip(
            wavelength_nm=float(x[i]),
            intensity=float(y[i]),
            kind=kind,
            prominence=prominence_by_index[i],
            index=i,
        )
        for i in keep
    ]


def _select_channel(spectrum: Spectrum, channel: str) -> np.ndarray:
    if channel in spectrum.channels:
        return spectrum.channel(channel)
    return spectrum.intensity[-1]


def detect_peaks_dips(spectrum: Spectrum, config: PeakDipConfig | None = None) -> Tuple[PeakDip, ...]:
    """Return peaks and dips of ``spectrum`` ordered by wavelength."""

    config = config or PeakDipConfig()
    if len(spectrum) < 3 or not (config.detect_peaks or config.detect_dips):
        return ()

    x = np.asarray(spectrum.wavelength, dtype=float)
    y = _nan_safe(_select_channel(spectrum, config.channel))
    half_window = _half_window_points(config.window_nm, _local_spacing(x))
    wlen = _horizon_points(config.horizon_nm, x)

    found: List[PeakDip] = []
    if config.detect_peaks:
        found.extend(_detect_kind(x, y, PeakKind.PEAK, config, half_window, wlen))
    if config.detect_dips:
        found.extend(_detect_kind(x, y, PeakKind.DIP, config, half_window, wlen))
    found.sort(key=lambda item: (item.index, item.kind is PeakKind.DIP))
    logger.debug(
        "Detected %d peaks and %d dips",
        sum(1 for item in found if item.kind is PeakKind.PEAK),
        sum(1 for item in found if item.kind is PeakKind.DIP),
    )
    return tuple(found)
