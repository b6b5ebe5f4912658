"""Value types exchanged between the engine and its collaborators."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

import numpy as np

COLOR_CHANNELS: Tuple[str, ...] = ("r", "g", "b")
LUMINANCE_CHANNEL = "luminance"
COMBINED_CHANNEL = "sum"


def channel_names(count: int) -> Tuple[str, ...]:
    """Return channel names for a profile with ``count`` colour planes."""

    if count == 1:
        return (LUMINANCE_CHANNEL,)
    if count == len(COLOR_CHANNELS):
        return COLOR_CHANNELS
    return tuple(f"c{idx}" for idx in range(count))


def _frozen(values: Any, *, ndim: int) -> np.ndarray:
    arr = np.array(values, dtype=float, copy=True)
    if ndim == 2 and arr.ndim == 1:
        arr = arr.reshape(1, -1)
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True, eq=False)
class Spectrum:
    """Calibrated intensity samples ordered by ascending wavelength.

    ``intensity`` has one row per entry in ``channels``. Both arrays are
    copied and made read-only on construction so a published spectrum can be
    shared between threads.
    """

    wavelength: np.ndarray
    intensity: np.ndarray
    channels: Tuple[str, ...]
    calibrated: bool = True
    meta: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        wavelength = _frozen(self.wavelength, ndim=1).ravel()
        intensity = _frozen(self.intensity, ndim=2)
        if intensity.shape[-1] != wavelength.size:
            raise ValueError(
                f"Intensity length {intensity.shape[-1]} does not match wavelength axis {wavelength.size}"
            )
        if intensity.shape[0] != len(self.channels):
            raise ValueError(
                f"Expected {len(self.channels)} channel rows, got {intensity.shape[0]}"
            )
        object.__setattr__(self, "wavelength", wavelength)
        object.__setattr__(self, "intensity", intensity)
        object.__setattr__(self, "channels", tuple(str(name) for name in self.channels))
        object.__setattr__(self, "meta", dict(self.meta or {}))

    def __len__(self) -> int:
        return int(self.wavelength.size)

    @property
    def is_empty(self) -> bool:
        return self.wavelength.size == 0

    def channel_index(self, name: str) -> int:
        try:
            return self.channels.index(name)
        except ValueError:
            raise KeyError(f"Spectrum has no channel '{name}'") from None

    def channel(self, name: str) -> np.ndarray:
        return self.intensity[self.channel_index(name)]

    def copy(self, **changes: Any) -> "Spectrum":
        payload = {
            "wavelength": self.wavelength,
            "intensity": self.intensity,
            "channels": self.channels,
            "calibrated": self.calibrated,
            "meta": dict(self.meta),
        }
        payload.update(changes)
        return Spectrum(**payload)

    def rows(self) -> Iterator[Tuple[float, ...]]:
        """Yield ``(wavelength, *intensities)`` tuples in axis order."""

        for idx, wl in enumerate(self.wavelength):
            yield (float(wl),) + tuple(float(v) for v in self.intensity[:, idx])


class PeakKind(str, Enum):
    PEAK = "peak"
    DIP = "dip"


@dataclass(frozen=True)
class PeakDip:
    wavelength_nm: float
    intensity: float
    kind: PeakKind
    prominence: float
    index: int


@dataclass(frozen=True, eq=False)
class AbsorbanceTrace:
    """Absorbance of one channel; ``undefined`` lists excluded wavelengths."""

    channel: str
    wavelength: np.ndarray
    absorbance: np.ndarray
    undefined: np.ndarray

    def __post_init__(self) -> None:
        object.__setattr__(self, "wavelength", _frozen(self.wavelength, ndim=1).ravel())
        object.__setattr__(self, "absorbance", _frozen(self.absorbance, ndim=1).ravel())
        object.__setattr__(self, "undefined", _frozen(self.undefined, ndim=1).ravel())

    def rows(self) -> List[Tuple[float, float]]:
        return [(float(wl), float(a)) for wl, a in zip(self.wavelength, self.absorbance)]


@dataclass(frozen=True, eq=False)
class AbsorbanceSpectrum:
    traces: Tuple[AbsorbanceTrace, ...]
    reference_kind: str = ""

    @property
    def channels(self) -> Tuple[str, ...]:
        return tuple(trace.channel for trace in self.traces)

    def trace(self, channel: str) -> AbsorbanceTrace:
        for trace in self.traces:
            if trace.channel == channel:
                return trace
        raise KeyError(f"No absorbance trace for channel '{channel}'")

    def undefined_count(self) -> int:
        return int(sum(trace.undefined.size for trace in self.traces))


def sort_by_wavelength(
    wavelength: np.ndarray, intensity: np.ndarray
) -> Tuple[np.ndarray, np.ndarray]:
    """Order samples by wavelength keeping pixel order for ties."""

    wl = np.asarray(wavelength, dtype=float)
    order = np.argsort(wl, kind="stable")
    if np.array_equal(order, np.arange(wl.size)):
        return wl, np.asarray(intensity, dtype=float)
    return wl[order], np.asarray(intensity, dtype=float)[..., order]


def build_spectrum(
    wavelength: Sequence[float] | np.ndarray,
    intensity: Sequence[Sequence[float]] | np.ndarray,
    channels: Optional[Sequence[str]] = None,
    *,
    calibrated: bool = True,
    meta: Optional[Dict[str, Any]] = None,
) -> Spectrum:
    rows = np.asarray(intensity, dtype=float)
    if rows.ndim == 1:
        rows = rows.reshape(1, -1)
    names = tuple(channels) if channels is not None else channel_names(rows.shape[0])
    wl, rows = sort_by_wavelength(np.asarray(wavelength, dtype=float), rows)
    return Spectrum(wavelength=wl, intensity=rows, channels=names, calibrated=calibrated, meta=meta or {})
