"""Reference spectra and absorbance.

The engine keeps at most one reference: a captured live spectrum, a synthetic
tungsten (blackbody) curve or an imported file. Absorbance against it is
``-log10(live / reference)`` per channel; samples where that is undefined are
reported separately and never appear in the absorbance values.
"""

from __future__ import annotations

from enum import Enum
import logging
import math
from typing import List, Optional, Sequence

import numpy as np
from scipy import constants

from spectro_cam.engine.errors import ConfigurationError
from spectro_cam.engine.spectrum import AbsorbanceSpectrum, AbsorbanceTrace, Spectrum

logger = logging.getLogger(__name__)

TUNGSTEN_CHANNEL = "tungsten"

# exp() overflows for larger arguments; radiance there is zero for our purposes.
_MAX_EXPONENT = 700.0


class ReferenceKind(str, Enum):
    ZERO_CAPTURE = "zero_capture"
    TUNGSTEN = "tungsten"
    IMPORTED = "imported"


def planck_radiance(wavelength_nm: np.ndarray | float, temperature_k: float) -> np.ndarray:
    """Spectral radiance of a black body in W·sr⁻¹·m⁻³.

    Non-positive wavelengths yield zero.
    """

    wl_nm = np.atleast_1d(np.asarray(wavelength_nm, dtype=float))
    result = np.zeros_like(wl_nm)
    valid = np.isfinite(wl_nm) & (wl_nm > 0)
    if not np.any(valid):
        return result

    h, c, k = constants.h, constants.c, constants.k
    wl_m = wl_nm[valid] * 1e-9
    exponent = h * c / (wl_m * k * float(temperature_k))
    finite = exponent <= _MAX_EXPONENT
    radiance = np.zeros_like(wl_m)
    radiance[finite] = (2.0 * h * c**2) / (wl_m[finite] ** 5 * np.expm1(exponent[finite]))
    result[valid] = radiance
    return result


def tungsten_reference(
    temperature_k: float,
    wavelengths: Sequence[float] | np.ndarray,
    *,
    peak_value: float = 1.0,
    calibrated: bool = True,
) -> Spectrum:
    """Blackbody curve at ``temperature_k`` normalised to ``peak_value``."""

    temperature_k = float(temperature_k)
    if not (math.isfinite(temperature_k) and temperature_k > 0):
        raise ConfigurationError("Tungsten temperature must be a positive number of kelvin")
    peak_value = float(peak_value)
    if not (math.isfinite(peak_value) and peak_value > 0):
        raise ConfigurationError("Reference peak value must be positive")

    wl = np.asarray(wavelengths, dtype=float).ravel()
    if wl.size == 0:
        raise ConfigurationError("No wavelength axis available for the tungsten reference")
    radiance = planck_radiance(wl, temperature_k)
    maximum = float(np.max(radiance))
    if not maximum > 0:
        raise ConfigurationError(
            f"Blackbody radiance at {temperature_k:g} K is zero over the calibrated axis"
        )
    return Spectrum(
        wavelength=wl,
        intensity=(radiance / maximum * peak_value).reshape(1, -1),
        channels=(TUNGSTEN_CHANNEL,),
        calibrated=calibrated,
        meta={"reference_kind": ReferenceKind.TUNGSTEN.value, "temperature_k": temperature_k},
    )


def _reference_row(reference: Spectrum, channel: str, position: int, live_channels: int) -> Optional[np.ndarray]:
    if reference.intensity.shape[0] == 1:
        return reference.intensity[0]
    if channel in reference.channels:
        return reference.channel(channel)
    if reference.intensity.shape[0] == live_channels:
        return reference.intensity[position]
    return None


class ReferenceEngine:
    def __init__(self, *, peak_value: float = 1.0, scale: float = 1.0) -> None:
        self._reference: Optional[Spectrum] = None
        self._kind: Optional[ReferenceKind] = None
        self._peak_value = 1.0
        self._scale = 1.0
        self.set_peak_value(peak_value)
        self.set_scale(scale)

    @property
    def reference(self) -> Optional[Spectrum]:
        return self._reference

    @property
    def kind(self) -> Optional[ReferenceKind]:
        return self._kind

    @property
    def has_reference(self) -> bool:
        return self._reference is not None

    @property
    def peak_value(self) -> float:
        return self._peak_value

    @property
    def scale(self) -> float:
        return self._scale

    def set_peak_value(self, value: float) -> None:
        value = float(value)
        if not (math.isfinite(value) and value > 0):
            raise ConfigurationError("Reference peak value must be positive")
        self._peak_value = value

    def set_scale(self, value: float) -> None:
        value = float(value)
        if not (math.isfinite(value) and value > 0):
            raise ConfigurationError("Reference scale must be positive")
        self._scale = value

    def capture_zero(self, spectrum: Spectrum) -> Spectrum:
        if spectrum.is_empty:
            raise ConfigurationError("Cannot use an empty spectrum as reference")
        meta = dict(spectrum.meta)
        meta["reference_kind"] = ReferenceKind.ZERO_CAPTURE.value
        # Spectrum copies its arrays, so later live frames cannot alter the reference.
        return self._store(spectrum.copy(meta=meta), ReferenceKind.ZERO_CAPTURE)

    def generate_tungsten(
        self,
        temperature_k: float,
        wavelengths: Sequence[float] | np.ndarray,
        *,
        peak_value: Optional[float] = None,
        calibrated: bool = True,
    ) -> Spectrum:
        if not calibrated:
            logger.warning("Generating a tungsten reference on an uncalibrated (pixel) axis")
        reference = tungsten_reference(
            temperature_k,
            wavelengths,
            peak_value=self._peak_value if peak_value is None else peak_value,
            calibrated=calibrated,
        )
        return self._store(reference, ReferenceKind.TUNGSTEN)

    def set_reference(self, spectrum: Spectrum, kind: ReferenceKind = ReferenceKind.IMPORTED) -> Spectrum:
        if spectrum.is_empty:
            raise ConfigurationError("Reference spectrum has no samples")
        return self._store(spectrum.copy(), kind)

    def clear_reference(self) -> None:
        if self._reference is not None:
            logger.info("Cleared %s reference", self._kind.value if self._kind else "")
        self._reference = None
        self._kind = None

    def _store(self, spectrum: Spectrum, kind: ReferenceKind) -> Spectrum:
        self._reference = spectrum
        self._kind = kind
        logger.info("Stored %s reference with %d samples", kind.value, len(spectrum))
        return spectrum

    def scaled_reference(self) -> Optional[Spectrum]:
        """Reference multiplied by the display scale, for overlays."""

        if self._reference is None:
            return None
        return self._reference.copy(intensity=self._reference.intensity * self._scale)

    def absorbance(self, live: Spectrum) -> Optional[AbsorbanceSpectrum]:
        """Absorbance of ``live``; None when no reference is held."""

        reference = self._reference
        if reference is None:
            return None

        live_wl = np.asarray(live.wavelength, dtype=float)
        same_axis = reference.wavelength.shape == live_wl.shape and np.array_equal(reference.wavelength, live_wl)

        traces: List[AbsorbanceTrace] = []
        for position, channel in enumerate(live.channels):
            ref_row = _reference_row(reference, channel, position, len(live.channels))
            if ref_row is None:
                logger.debug("Reference has no channel matching '%s'", channel)
                continue
            if same_axis:
                ref_values = np.asarray(ref_row, dtype=float)
            else:
                ref_values = np.interp(
                    live_wl,
                    reference.wavelength,
                    ref_row,
                    left=np.nan,
                    right=np.nan,
                )
            live_values = np.asarray(live.intensity[position], dtype=float)
            valid = (
                np.isfinite(ref_values)
                & (ref_values > 0)
                & np.isfinite(live_values)
                & (live_values > 0)
            )
            absorbance = -np.log10(live_values[valid] / ref_values[valid])
            traces.append(
                AbsorbanceTrace(
                    channel=channel,
                    wavelength=live_wl[valid],
                    absorbance=absorbance,
                    undefined=live_wl[~valid],
                )
            )
        return AbsorbanceSpectrum(
            traces=tuple(traces),
            reference_kind=self._kind.value if self._kind else "",
        )
