"""Pixel to wavelength calibration.

A calibration is built from user supplied ``(pixel, wavelength)`` pairs.
Two points give a linear axis, three or more a low order least squares
polynomial. A polynomial that is not strictly increasing over the ROI is never
reported; the model falls back to piecewise linear interpolation between the
points instead.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
import math
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np

from spectro_cam.engine.errors import ConfigurationError

logger = logging.getLogger(__name__)

MAX_POLYNOMIAL_DEGREE = 3


class CalibrationKind(str, Enum):
    FITTED = "fitted"
    PIECEWISE_LINEAR = "piecewise_linear"
    IDENTITY = "identity"


@dataclass(frozen=True, order=True)
class CalibrationPoint:
    pixel_index: int
    wavelength_nm: float

    @classmethod
    def coerce(cls, value: object) -> "CalibrationPoint":
        if isinstance(value, CalibrationPoint):
            return value
        if isinstance(value, dict):
            pixel = value.get("pixel_index", value.get("pixel"))
            wavelength = value.get("wavelength_nm", value.get("wavelength"))
        else:
            try:
                pixel, wavelength = value  # type: ignore[misc]
            except (TypeError, ValueError):
                raise ConfigurationError(f"Invalid calibration point {value!r}") from None
        try:
            pixel_f = float(pixel)
            wavelength_f = float(wavelength)
        except (TypeError, ValueError):
            raise ConfigurationError(f"Invalid calibration point {value!r}") from None
        if not pixel_f.is_integer():
            raise ConfigurationError(f"Calibration pixel index must be an integer, got {pixel!r}")
        return cls(pixel_index=int(pixel_f), wavelength_nm=wavelength_f)


@dataclass(frozen=True, eq=False)
class CalibrationResult:
    """Outcome of fitting a calibration over ``pixel_count`` samples."""

    kind: CalibrationKind
    wavelengths: np.ndarray
    degree: Optional[int] = None
    coefficients: Tuple[float, ...] = ()

    @property
    def calibrated(self) -> bool:
        return self.kind is not CalibrationKind.IDENTITY

    def describe(self) -> str:
        if self.kind is CalibrationKind.FITTED:
            return f"Calibrated (degree {self.degree} polynomial)"
        if self.kind is CalibrationKind.PIECEWISE_LINEAR:
            return "Calibrated (piecewise linear)"
        return "Uncalibrated"


def validate_points(points: Iterable[object]) -> List[CalibrationPoint]:
    """Return points sorted by pixel index or raise ``ConfigurationError``."""

    parsed = sorted(CalibrationPoint.coerce(p) for p in points)
    seen = set()
    for point in parsed:
        if point.pixel_index < 0:
            raise ConfigurationError("Calibration pixel indices must be >= 0")
        if point.pixel_index in seen:
            raise ConfigurationError(f"Duplicate calibration pixel index {point.pixel_index}")
        if not math.isfinite(point.wavelength_nm):
            raise ConfigurationError("Calibration wavelengths must be finite")
        seen.add(point.pixel_index)
    for left, right in zip(parsed, parsed[1:]):
        if right.wavelength_nm <= left.wavelength_nm:
            raise ConfigurationError(
                "Calibration wavelengths must increase with pixel index "
                f"({left.pixel_index}->{left.wavelength_nm} nm, {right.pixel_index}->{right.wavelength_nm} nm)"
            )
    return parsed


def _is_increasing(values: np.ndarray) -> bool:
    return bool(values.size < 2 or np.all(np.diff(values) > 0))


def piecewise_linear_axis(points: Sequence[CalibrationPoint], pixels: np.ndarray) -> np.ndarray:
    """Interpolate between points; outer segments are extended linearly."""

    px = np.array([p.pixel_index for p in points], dtype=float)
    wl = np.array([p.wavelength_nm for p in points], dtype=float)
    axis = np.interp(pixels, px, wl)
    left_slope = (wl[1] - wl[0]) / (px[1] - px[0])
    right_slope = (wl[-1] - wl[-2]) / (px[-1] - px[-2])
    below = pixels < px[0]
    above = pixels > px[-1]
    axis[below] = wl[0] + (pixels[below] - px[0]) * left_slope
    axis[above] = wl[-1] + (pixels[above] - px[-1]) * right_slope
    return axis


class CalibrationModel:
    def __init__(
        self,
        points: Iterable[object] = (),
        *,
        pixel_count: int = 0,
        max_degree: int = MAX_POLYNOMIAL_DEGREE,
    ) -> None:
        self._points: List[CalibrationPoint] = []
        self._pixel_count = 0
        self._max_degree = MAX_POLYNOMIAL_DEGREE
        self._result: Optional[CalibrationResult] = None
        self._polynomial: Optional[np.polynomial.Polynomial] = None
        self.set_max_degree(max_degree)
        self.set_pixel_count(pixel_count)
        self.set_points(points)

    @property
    def points(self) -> Tuple[CalibrationPoint, ...]:
        return tuple(self._points)

    @property
    def pixel_count(self) -> int:
        return self._pixel_count

    @property
    def max_degree(self) -> int:
        return self._max_degree

    def set_points(self, points: Iterable[object]) -> None:
        parsed = validate_points(points)
        self._points = parsed
        self._invalidate()

    def set_pixel_count(self, pixel_count: int) -> None:
        count = int(pixel_count)
        if count < 0:
            raise ConfigurationError("Pixel count must not be negative")
        if count != self._pixel_count:
            self._pixel_count = count
            self._invalidate()

    def set_max_degree(self, degree: int) -> None:
        degree = int(degree)
        if not 1 <= degree <= MAX_POLYNOMIAL_DEGREE:
            raise ConfigurationError(
                f"Calibration polynomial degree must be between 1 and {MAX_POLYNOMIAL_DEGREE}"
            )
        if degree != self._max_degree:
            self._max_degree = degree
            self._invalidate()

    def _invalidate(self) -> None:
        self._result = None
        self._polynomial = None

    def fit(self) -> CalibrationResult:
        if self._result is None:
            self._result = self._fit()
        return self._result

    def _fit(self) -> CalibrationResult:
        pixels = np.arange(self._pixel_count, dtype=float)
        if len(self._points) < 2:
            self._polynomial = None
            return CalibrationResult(CalibrationKind.IDENTITY, pixels.copy())

        px = np.array([p.pixel_index for p in self._points], dtype=float)
        wl = np.array([p.wavelength_nm for p in self._points], dtype=float)
        degree = min(len(self._points) - 1, self._max_degree)
        polynomial = np.polynomial.Polynomial.fit(px, wl, degree)

        # The axis must also be increasing between and around the points.
        span_hi = max(float(px[-1]), float(self._pixel_count - 1))
        check = np.union1d(pixels, np.linspace(0.0, span_hi, 512))
        if _is_increasing(polynomial(check)):
            self._polynomial = polynomial
            coefficients = tuple(float(c) for c in polynomial.convert().coef)
            return CalibrationResult(
                CalibrationKind.FITTED,
                polynomial(pixels),
                degree=degree,
                coefficients=coefficients,
            )

        logger.warning(
            "Degree %d calibration fit is not monotonic over %d pixels; using piecewise linear interpolation",
            degree,
            self._pixel_count,
        )
        self._polynomial = None
        return CalibrationResult(CalibrationKind.PIECEWISE_LINEAR, piecewise_linear_axis(self._points, pixels))

    def axis(self, pixel_count: Optional[int] = None) -> np.ndarray:
        if pixel_count is not None:
            self.set_pixel_count(pixel_count)
        return self.fit().wavelengths.copy()

    def wavelength_for(self, pixel_index: float) -> float:
        result = self.fit()
        if result.kind is CalibrationKind.IDENTITY:
            return float(pixel_index)
        if result.kind is CalibrationKind.FITTED and self._polynomial is not None:
            return float(self._polynomial(float(pixel_index)))
        return float(piecewise_linear_axis(self._points, np.array([float(pixel_index)]))[0])
