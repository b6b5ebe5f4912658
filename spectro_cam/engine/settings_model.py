from __future__ import annotations

import copy
from dataclasses import dataclass, field
import logging
import math
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from spectro_cam.engine.correction import GAIN_PRESETS, LINEARIZATION_MODES
from spectro_cam.engine.errors import ConfigurationError
from spectro_cam.engine.extraction import AXIS_HORIZONTAL, AXIS_VERTICAL, REDUCTIONS
from spectro_cam.engine.peak_detection import DEFAULT_PEAK_CONFIG

logger = logging.getLogger(__name__)

DEFAULT_PRESET_PATH = Path(__file__).resolve().parents[1] / "config" / "presets" / "default.yaml"

DEFAULT_PARAMS: Dict[str, Any] = {
    "roi": {"x": 0, "y": 0, "width": 640, "height": 20, "axis": AXIS_HORIZONTAL},
    "reduction": "mean",
    "flip": False,
    "calibration": {"points": [], "max_degree": 3},
    "gain": {"preset": "unity"},
    "linearization": {"mode": "off"},
    "averaging": {"capacity": 10},
    "lowpass": {"enabled": False, "cutoff_hz": 2.0, "sample_rate_hz": 30.0},
    "smoothing": {"enabled": False, "cutoff": 0.5},
    "peaks": dict(DEFAULT_PEAK_CONFIG),
    "reference": {"temperature_k": 2800.0, "peak_value": 1.0, "scale": 1.0},
    "workers": 1,
}


def _merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _positive(value: Any) -> bool:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return False
    return math.isfinite(number) and number > 0


def _numeric_pairs(values: Any) -> bool:
    if not isinstance(values, (list, tuple)):
        return False
    for item in values:
        if not isinstance(item, (list, tuple)) or len(item) != 2:
            return False
        try:
            float(item[0]), float(item[1])
        except (TypeError, ValueError):
            return False
    return True


@dataclass
class PipelineSettings:
    params: Dict[str, Any] = field(default_factory=lambda: copy.deepcopy(DEFAULT_PARAMS))
    version: str = "0.1.0"

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "PipelineSettings":
        data = dict(data or {})
        params = data.get("params", data)
        if not isinstance(params, Mapping):
            params = {}
        params = {k: v for k, v in params.items() if k != "version"}
        return cls(params=_merge(DEFAULT_PARAMS, params), version=str(data.get("version", "0.1.0")))

    def to_dict(self) -> Dict[str, Any]:
        return {"version": self.version, "params": copy.deepcopy(self.params)}

    def section(self, name: str) -> Dict[str, Any]:
        value = self.params.get(name)
        return dict(value) if isinstance(value, Mapping) else {}

    def validate(self) -> list[str]:
        errs = []
        roi = self.section("roi")
        for key in ("x", "y"):
            try:
                if int(roi.get(key, 0)) < 0:
                    errs.append(f"ROI {key} must not be negative")
            except (TypeError, ValueError):
                errs.append(f"ROI {key} must be an integer")
        for key in ("width", "height"):
            try:
                if int(roi.get(key, 0)) <= 0:
                    errs.append(f"ROI {key} must be positive")
            except (TypeError, ValueError):
                errs.append(f"ROI {key} must be an integer")
        if roi.get("axis", AXIS_HORIZONTAL) not in (AXIS_HORIZONTAL, AXIS_VERTICAL):
            errs.append("ROI axis must be horizontal or vertical")
        if self.params.get("reduction", "mean") not in REDUCTIONS:
            errs.append("Profile reduction must be mean or max")

        calibration = self.section("calibration")
        try:
            degree = int(calibration.get("max_degree", 3))
            if not 1 <= degree <= 3:
                errs.append("Calibration polynomial degree must be between 1 and 3")
        except (TypeError, ValueError):
            errs.append("Calibration polynomial degree must be an integer")
        points = calibration.get("points") or []
        if not isinstance(points, (list, tuple)):
            errs.append("Calibration points must be a list")

        gain = self.section("gain")
        values = gain.get("values")
        if values:
            try:
                if any(float(v) < 0 for v in values):
                    errs.append("Channel gains must not be negative")
            except (TypeError, ValueError):
                errs.append("Channel gains must be numeric")
        elif str(gain.get("preset", "unity")).lower() not in GAIN_PRESETS:
            errs.append(f"Unknown gain preset '{gain.get('preset')}'")

        lin = self.section("linearization")
        mode = str(lin.get("mode", "off")).lower()
        if mode not in LINEARIZATION_MODES:
            errs.append(f"Unknown linearization mode '{mode}'")
        elif mode == "custom":
            breakpoints = lin.get("breakpoints") or []
            if not _numeric_pairs(breakpoints):
                errs.append("Linearization breakpoints must be numeric (raw, linear) pairs")
            elif len(breakpoints) < 2:
                errs.append("Custom linearization needs at least two breakpoints")

        averaging = self.section("averaging")
        try:
            if int(averaging.get("capacity", 10)) < 1:
                errs.append("Averaging capacity must be at least 1")
        except (TypeError, ValueError):
            errs.append("Averaging capacity must be an integer")

        lowpass = self.section("lowpass")
        if lowpass.get("enabled"):
            cutoff = lowpass.get("cutoff_hz", 2.0)
            rate = lowpass.get("sample_rate_hz", 30.0)
            if not _positive(cutoff):
                errs.append("Low-pass cutoff must be positive")
            if not _positive(rate):
                errs.append("Low-pass sample rate must be positive")
            elif _positive(cutoff) and float(cutoff) >= float(rate) / 2.0:
                errs.append("Low-pass cutoff must be below half the sample rate")

        smoothing = self.section("smoothing")
        if smoothing.get("enabled"):
            try:
                cutoff = float(smoothing.get("cutoff", 0.5))
                if not 0.0 < cutoff < 1.0:
                    errs.append("Spectral smoothing cutoff must lie between 0 and 1")
            except (TypeError, ValueError):
                errs.append("Spectral smoothing cutoff must be numeric")

        peaks = self.section("peaks")
        for key in ("window_nm", "min_prominence", "horizon_nm", "unique_window_nm"):
            value = peaks.get(key)
            if value is None:
                continue
            try:
                if float(value) < 0:
                    errs.append(f"Peak {key} must not be negative")
            except (TypeError, ValueError):
                errs.append(f"Peak {key} must be numeric")

        reference = self.section("reference")
        for key, label in (
            ("temperature_k", "Tungsten temperature"),
            ("peak_value", "Reference peak value"),
            ("scale", "Reference scale"),
        ):
            if key in reference and not _positive(reference[key]):
                errs.append(f"{label} must be positive")

        try:
            if int(self.params.get("workers", 1)) < 1:
                errs.append("Worker count must be at least 1")
        except (TypeError, ValueError):
            errs.append("Worker count must be an integer")
        return errs


def load_preset(path: Optional[str | Path] = None) -> PipelineSettings:
    preset_path = Path(path) if path is not None else DEFAULT_PRESET_PATH
    with preset_path.open("r", encoding="utf-8") as handle:
        try:
            data = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Could not parse {preset_path.name}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"{preset_path.name} does not contain a settings mapping")
    logger.info("Loaded settings preset %s", preset_path)
    return PipelineSettings.from_dict(data)


def save_preset(settings: PipelineSettings, path: str | Path) -> None:
    with Path(path).open("w", encoding="utf-8") as handle:
        yaml.safe_dump(settings.to_dict(), handle, sort_keys=False)
