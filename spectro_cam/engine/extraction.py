"""Reduce a region of a camera frame to a per-column intensity profile."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

import numpy as np

from spectro_cam.engine.errors import ConfigurationError

AXIS_HORIZONTAL = "horizontal"
AXIS_VERTICAL = "vertical"
REDUCTIONS = ("mean", "max")


@dataclass(frozen=True)
class RegionOfInterest:
    """Rectangle sampled from each frame.

    ``axis`` names the dispersion axis: ``"horizontal"`` when wavelength
    changes from column to column, ``"vertical"`` when it changes per row.
    """

    x: int
    y: int
    width: int
    height: int
    axis: str = AXIS_HORIZONTAL

    def __post_init__(self) -> None:
        for name in ("x", "y", "width", "height"):
            value = getattr(self, name)
            if isinstance(value, bool) or int(value) != value:
                raise ConfigurationError(f"ROI {name} must be an integer")
            object.__setattr__(self, name, int(value))
        if self.x < 0 or self.y < 0:
            raise ConfigurationError("ROI offset must not be negative")
        if self.width <= 0 or self.height <= 0:
            raise ConfigurationError("ROI width and height must be positive")
        if self.axis not in (AXIS_HORIZONTAL, AXIS_VERTICAL):
            raise ConfigurationError(f"Unknown dispersion axis '{self.axis}'")

    @property
    def extent(self) -> int:
        """Number of samples along the dispersion axis."""

        return self.width if self.axis == AXIS_HORIZONTAL else self.height

    def clamped(self, frame_width: int, frame_height: int) -> Tuple[slice, slice]:
        """Row and column slices of this ROI limited to the frame bounds."""

        x0 = min(self.x, frame_width)
        y0 = min(self.y, frame_height)
        x1 = min(self.x + self.width, frame_width)
        y1 = min(self.y + self.height, frame_height)
        return slice(y0, y1), slice(x0, x1)


def _as_channel_last(pixels: np.ndarray) -> np.ndarray:
    arr = np.asarray(pixels)
    if arr.ndim == 2:
        return arr[:, :, np.newaxis]
    if arr.ndim != 3:
        raise ValueError(f"Frame must be 2-D or 3-D, got shape {arr.shape}")
    return arr


def extract_profile(
    pixels: np.ndarray,
    roi: RegionOfInterest,
    *,
    reduction: str = "mean",
    flip: bool = False,
) -> np.ndarray:
    """Return a ``(channels, extent)`` profile for ``roi`` within ``pixels``.

    The ROI is clamped to the frame; an ROI lying completely outside the frame
    gives a profile with zero samples, which callers must treat as a
    configuration problem rather than a dark spectrum.
    """

    if reduction not in REDUCTIONS:
        raise ConfigurationError(f"Unknown reduction '{reduction}'")

    frame = _as_channel_last(pixels)
    height, width, channels = frame.shape
    rows, cols = roi.clamped(width, height)
    region = frame[rows, cols, :]

    reduce_axis = 0 if roi.axis == AXIS_HORIZONTAL else 1

    if region.size == 0:
        return np.zeros((channels, 0), dtype=float)

    data = region.astype(float, copy=False)
    if reduction == "max":
        profile = data.max(axis=reduce_axis)
    else:
        profile = data.mean(axis=reduce_axis)

    # (extent, channels) -> (channels, extent)
    profile = np.ascontiguousarray(profile.T, dtype=float)
    if flip:
        profile = profile[:, ::-1].copy()
    np.clip(profile, 0.0, None, out=profile)
    return profile


def extract_channel(
    pixels: np.ndarray,
    roi: RegionOfInterest,
    channel: int,
    *,
    reduction: str = "mean",
    flip: bool = False,
) -> np.ndarray:
    """Profile for a single colour plane, for data-parallel extraction."""

    frame = _as_channel_last(pixels)
    plane = frame[:, :, channel]
    return extract_profile(plane, roi, reduction=reduction, flip=flip)[0]
