from __future__ import annotations

import copy
from contextlib import contextmanager

from PyQt6 import QtCore
from PyQt6.QtWidgets import (
    QCheckBox,
    QComboBox,
    QDockWidget,
    QDoubleSpinBox,
    QFormLayout,
    QFrame,
    QGroupBox,
    QHBoxLayout,
    QHeaderView,
    QLabel,
    QPushButton,
    QScrollArea,
    QSpinBox,
    QTableWidget,
    QTableWidgetItem,
    QVBoxLayout,
    QWidget,
)

from spectro_cam.engine.correction import GAIN_PRESETS, LINEARIZATION_MODES
from spectro_cam.engine.settings_model import PipelineSettings


def _double_spin(minimum: float, maximum: float, value: float, decimals: int = 2, step: float = 1.0) -> QDoubleSpinBox:
    spin = QDoubleSpinBox()
    spin.setDecimals(decimals)
    spin.setRange(minimum, maximum)
    spin.setSingleStep(step)
    spin.setValue(value)
    return spin


def _int_spin(minimum: int, maximum: int, value: int) -> QSpinBox:
    spin = QSpinBox()
    spin.setRange(minimum, maximum)
    spin.setValue(value)
    return spin


class SettingsEditorDock(QDockWidget):
    settings_changed = QtCore.pyqtSignal(object)  # PipelineSettings

    def __init__(self, parent=None):
        super().__init__("Processing", parent)
        self.setObjectName("SettingsEditorDock")
        self.settings = PipelineSettings()
        self._updating = False

        container = QWidget()
        layout = QVBoxLayout(container)
        layout.setContentsMargins(8, 8, 8, 8)
        layout.setSpacing(10)

        scroll_area = QScrollArea()
        scroll_area.setWidgetResizable(True)
        scroll_area.setHorizontalScrollBarPolicy(QtCore.Qt.ScrollBarPolicy.ScrollBarAlwaysOff)
        scroll_area.setFrameShape(QFrame.Shape.NoFrame)
        scroll_area.setWidget(container)

        self.validation_label = QLabel()
        self.validation_label.setWordWrap(True)
        self.validation_label.setStyleSheet("color: #0a0;")
        layout.addWidget(self.validation_label)

        # --- Region of interest ---
        roi_group = QGroupBox("Region of interest")
        roi_form = QFormLayout(roi_group)
        self.roi_x = _int_spin(0, 10000, 0)
        self.roi_y = _int_spin(0, 10000, 0)
        self.roi_width = _int_spin(1, 10000, 640)
        self.roi_height = _int_spin(1, 10000, 20)
        self.roi_axis = QComboBox()
        self.roi_axis.addItem("Horizontal", "horizontal")
        self.roi_axis.addItem("Vertical", "vertical")
        self.reduction = QComboBox()
        self.reduction.addItem("Mean", "mean")
        self.reduction.addItem("Maximum", "max")
        self.flip = QCheckBox("Flip dispersion axis")
        roi_form.addRow("X", self.roi_x)
        roi_form.addRow("Y", self.roi_y)
        roi_form.addRow("Width", self.roi_width)
        roi_form.addRow("Height", self.roi_height)
        roi_form.addRow("Dispersion", self.roi_axis)
        roi_form.addRow("Reduction", self.reduction)
        roi_form.addRow(self.flip)
        layout.addWidget(roi_group)

        # --- Calibration ---
        cal_group = QGroupBox("Calibration")
        cal_layout = QVBoxLayout(cal_group)
        self.calibration_table = QTableWidget(0, 2)
        self.calibration_table.setHorizontalHeaderLabels(["Pixel", "Wavelength (nm)"])
        header = self.calibration_table.horizontalHeader()
        header.setSectionResizeMode(0, QHeaderView.ResizeMode.Stretch)
        header.setSectionResizeMode(1, QHeaderView.ResizeMode.Stretch)
        self.calibration_table.verticalHeader().setVisible(False)
        cal_layout.addWidget(self.calibration_table)
        cal_buttons = QHBoxLayout()
        self.calibration_add = QPushButton("Add point")
        self.calibration_remove = QPushButton("Remove point")
        cal_buttons.addWidget(self.calibration_add)
        cal_buttons.addWidget(self.calibration_remove)
        cal_layout.addLayout(cal_buttons)
        cal_form = QFormLayout()
        self.calibration_degree = _int_spin(1, 3, 3)
        self.calibration_degree.setToolTip("Highest polynomial degree used when fitting the points")
        cal_form.addRow("Max degree", self.calibration_degree)
        cal_layout.addLayout(cal_form)
        layout.addWidget(cal_group)

        # --- Channel correction ---
        correction_group = QGroupBox("Channel correction")
        correction_form = QFormLayout(correction_group)
        self.gain_preset = QComboBox()
        for name in GAIN_PRESETS:
            self.gain_preset.addItem(name, name)
        self.linearization = QComboBox()
        for mode in LINEARIZATION_MODES:
            if mode != "custom":
                self.linearization.addItem(mode, mode)
        correction_form.addRow("Gain preset", self.gain_preset)
        correction_form.addRow("Linearize", self.linearization)
        layout.addWidget(correction_group)

        # --- Averaging and filtering ---
        filter_group = QGroupBox("Averaging and filtering")
        filter_form = QFormLayout(filter_group)
        self.averaging_capacity = _int_spin(1, 100, 10)
        self.lowpass_enable = QCheckBox("Temporal low-pass filter")
        self.lowpass_cutoff = _double_spin(0.01, 100.0, 2.0, step=0.1)
        self.lowpass_cutoff.setSuffix(" Hz")
        self.lowpass_rate = _double_spin(0.1, 500.0, 30.0, step=1.0)
        self.lowpass_rate.setSuffix(" Hz")
        self.lowpass_rate.setToolTip("Initial frame rate; the measured rate replaces it while running")
        self.smoothing_enable = QCheckBox("Spectral low-pass filter")
        self.smoothing_cutoff = _double_spin(0.001, 0.999, 0.5, decimals=3, step=0.01)
        filter_form.addRow("Buffer size", self.averaging_capacity)
        filter_form.addRow(self.lowpass_enable)
        filter_form.addRow("Cutoff", self.lowpass_cutoff)
        filter_form.addRow("Frame rate", self.lowpass_rate)
        filter_form.addRow(self.smoothing_enable)
        filter_form.addRow("Spectral cutoff", self.smoothing_cutoff)
        layout.addWidget(filter_group)

        # --- Peaks and dips ---
        peaks_group = QGroupBox("Peaks and dips")
        peaks_form = QFormLayout(peaks_group)
        self.detect_peaks = QCheckBox("Show peaks")
        self.detect_dips = QCheckBox("Show dips")
        self.peak_window = _double_spin(0.0, 500.0, 5.0, step=0.5)
        self.peak_window.setSuffix(" nm")
        self.peak_prominence = _double_spin(0.0, 1e6, 1.0, decimals=3, step=0.1)
        self.peak_horizon = _double_spin(0.0, 2000.0, 50.0, step=5.0)
        self.peak_horizon.setSuffix(" nm")
        self.peak_unique = _double_spin(0.0, 500.0, 0.0, step=1.0)
        self.peak_unique.setSuffix(" nm")
        peaks_form.addRow(self.detect_peaks)
        peaks_form.addRow(self.detect_dips)
        peaks_form.addRow("Find window", self.peak_window)
        peaks_form.addRow("Min prominence", self.peak_prominence)
        peaks_form.addRow("Search horizon", self.peak_horizon)
        peaks_form.addRow("Unique window", self.peak_unique)
        layout.addWidget(peaks_group)

        # --- Reference ---
        reference_group = QGroupBox("Reference")
        reference_form = QFormLayout(reference_group)
        self.temperature = _double_spin(1000.0, 3500.0, 2800.0, decimals=0, step=50.0)
        self.temperature.setSuffix(" K")
        self.peak_value = _double_spin(0.001, 1e6, 1.0, decimals=3, step=0.1)
        self.reference_scale = _double_spin(0.001, 1000.0, 1.0, decimals=3, step=0.1)
        reference_form.addRow("Tungsten temperature", self.temperature)
        reference_form.addRow("Peak value", self.peak_value)
        reference_form.addRow("Reference scale", self.reference_scale)
        layout.addWidget(reference_group)

        layout.addStretch(1)
        self.setWidget(scroll_area)

        for spin in (
            self.roi_x, self.roi_y, self.roi_width, self.roi_height,
            self.calibration_degree, self.averaging_capacity,
            self.lowpass_cutoff, self.lowpass_rate, self.smoothing_cutoff,
            self.peak_window, self.peak_prominence, self.peak_horizon, self.peak_unique,
            self.temperature, self.peak_value, self.reference_scale,
        ):
            spin.valueChanged.connect(self._on_changed)
        for combo in (self.roi_axis, self.reduction, self.gain_preset, self.linearization):
            combo.currentIndexChanged.connect(self._on_changed)
        for box in (self.flip, self.lowpass_enable, self.smoothing_enable, self.detect_peaks, self.detect_dips):
            box.toggled.connect(self._on_changed)
        self.calibration_table.itemChanged.connect(self._on_changed)
        self.calibration_add.clicked.connect(self._on_add_point)
        self.calibration_remove.clicked.connect(self._on_remove_point)

        self._update_ui_from_settings()

    @contextmanager
    def _suspend_updates(self):
        self._updating = True
        try:
            yield
        finally:
            self._updating = False

    def set_settings(self, settings: PipelineSettings | dict):
        if isinstance(settings, dict):
            settings = PipelineSettings.from_dict(settings)
        self.settings = PipelineSettings(params=copy.deepcopy(settings.params), version=settings.version)
        self._update_ui_from_settings()

    def get_settings(self) -> PipelineSettings:
        return self.settings

    @staticmethod
    def _select(combo: QComboBox, value):
        index = combo.findData(value)
        if index >= 0:
            combo.setCurrentIndex(index)

    def _update_ui_from_settings(self):
        s = self.settings
        with self._suspend_updates():
            roi = s.section("roi")
            self.roi_x.setValue(int(roi.get("x", 0)))
            self.roi_y.setValue(int(roi.get("y", 0)))
            self.roi_width.setValue(int(roi.get("width", 640)))
            self.roi_height.setValue(int(roi.get("height", 20)))
            self._select(self.roi_axis, roi.get("axis", "horizontal"))
            self._select(self.reduction, s.params.get("reduction", "mean"))
            self.flip.setChecked(bool(s.params.get("flip", False)))

            calibration = s.section("calibration")
            points = calibration.get("points") or []
            self.calibration_table.setRowCount(0)
            for point in points:
                if isinstance(point, dict):
                    pixel, wavelength = point.get("pixel_index"), point.get("wavelength_nm")
                else:
                    pixel, wavelength = point
                self._append_point_row(pixel, wavelength)
            self.calibration_degree.setValue(int(calibration.get("max_degree", 3)))

            self._select(self.gain_preset, str(s.section("gain").get("preset", "unity")).lower())
            self._select(self.linearization, str(s.section("linearization").get("mode", "off")).lower())

            self.averaging_capacity.setValue(int(s.section("averaging").get("capacity", 10)))
            lowpass = s.section("lowpass")
            self.lowpass_enable.setChecked(bool(lowpass.get("enabled", False)))
            self.lowpass_cutoff.setValue(float(lowpass.get("cutoff_hz", 2.0)))
            self.lowpass_rate.setValue(float(lowpass.get("sample_rate_hz", 30.0)))
            smoothing = s.section("smoothing")
            self.smoothing_enable.setChecked(bool(smoothing.get("enabled", False)))
            self.smoothing_cutoff.setValue(float(smoothing.get("cutoff", 0.5)))

            peaks = s.section("peaks")
            self.detect_peaks.setChecked(bool(peaks.get("detect_peaks", True)))
            self.detect_dips.setChecked(bool(peaks.get("detect_dips", True)))
            self.peak_window.setValue(float(peaks.get("window_nm", 5.0)))
            self.peak_prominence.setValue(float(peaks.get("min_prominence", 1.0)))
            self.peak_horizon.setValue(float(peaks.get("horizon_nm", 50.0)))
            self.peak_unique.setValue(float(peaks.get("unique_window_nm", 0.0)))

            reference = s.section("reference")
            self.temperature.setValue(float(reference.get("temperature_k", 2800.0)))
            self.peak_value.setValue(float(reference.get("peak_value", 1.0)))
            self.reference_scale.setValue(float(reference.get("scale", 1.0)))
        self._show_validation(s.validate())

    def _append_point_row(self, pixel, wavelength):
        row = self.calibration_table.rowCount()
        self.calibration_table.insertRow(row)
        self.calibration_table.setItem(row, 0, QTableWidgetItem("" if pixel is None else str(pixel)))
        self.calibration_table.setItem(row, 1, QTableWidgetItem("" if wavelength is None else str(wavelength)))

    def _calibration_points(self) -> tuple[list[list[float]], list[str]]:
        points, errors = [], []
        for row in range(self.calibration_table.rowCount()):
            texts = []
            for col in (0, 1):
                item = self.calibration_table.item(row, col)
                texts.append(item.text().strip() if item else "")
            if not any(texts):
                continue
            try:
                points.append([int(texts[0]), float(texts[1])])
            except ValueError:
                errors.append(f"Calibration row {row + 1} needs an integer pixel and a wavelength")
        return points, errors

    def _collect_params(self) -> tuple[dict, list[str]]:
        params = copy.deepcopy(self.settings.params)
        params["roi"] = {
            "x": self.roi_x.value(),
            "y": self.roi_y.value(),
            "width": self.roi_width.value(),
            "height": self.roi_height.value(),
            "axis": self.roi_axis.currentData(),
        }
        params["reduction"] = self.reduction.currentData()
        params["flip"] = self.flip.isChecked()
        points, errors = self._calibration_points()
        params["calibration"] = {"points": points, "max_degree": self.calibration_degree.value()}
        params["gain"] = {"preset": self.gain_preset.currentData()}
        params["linearization"] = {"mode": self.linearization.currentData()}
        params["averaging"] = {"capacity": self.averaging_capacity.value()}
        params["lowpass"] = {
            "enabled": self.lowpass_enable.isChecked(),
            "cutoff_hz": self.lowpass_cutoff.value(),
            "sample_rate_hz": self.lowpass_rate.value(),
        }
        params["smoothing"] = {
            "enabled": self.smoothing_enable.isChecked(),
            "cutoff": self.smoothing_cutoff.value(),
        }
        peaks = dict(params.get("peaks") or {})
        peaks.update(
            {
                "detect_peaks": self.detect_peaks.isChecked(),
                "detect_dips": self.detect_dips.isChecked(),
                "window_nm": self.peak_window.value(),
                "min_prominence": self.peak_prominence.value(),
                "horizon_nm": self.peak_horizon.value(),
                "unique_window_nm": self.peak_unique.value(),
            }
        )
        params["peaks"] = peaks
        params["reference"] = {
            "temperature_k": self.temperature.value(),
            "peak_value": self.peak_value.value(),
            "scale": self.reference_scale.value(),
        }
        return params, errors

    def _on_changed(self, *_):
        if self._updating:
            return
        params, errors = self._collect_params()
        candidate = PipelineSettings(params=params, version=self.settings.version)
        errors.extend(candidate.validate())
        self._show_validation(errors)
        if errors:
            return
        self.settings = candidate
        self.settings_changed.emit(candidate)

    def _on_add_point(self):
        with self._suspend_updates():
            self._append_point_row(None, None)

    def _on_remove_point(self):
        row = self.calibration_table.currentRow()
        if row < 0:
            row = self.calibration_table.rowCount() - 1
        if row >= 0:
            self.calibration_table.removeRow(row)
            self._on_changed()

    def show_errors(self, errors: list[str]):
        self._show_validation(errors)

    def _show_validation(self, errors: list[str]):
        if errors:
            self.validation_label.setStyleSheet("color: #b00020;")
            formatted = "\n".join(f"• {err}" for err in errors)
            self.validation_label.setText(f"Configuration errors:\n{formatted}")
        else:
            self.validation_label.setStyleSheet("color: #0a0;")
            self.validation_label.setText("Settings are valid.")
