from __future__ import annotations

from typing import Dict, Optional

import numpy as np
import pyqtgraph as pg
from PyQt6 import QtCore, QtGui, QtWidgets

from spectro_cam.engine.snapshot import PipelineSnapshot
from spectro_cam.engine.spectrum import PeakKind

CHANNEL_COLORS: Dict[str, str] = {
    "r": "#d62728",
    "g": "#2ca02c",
    "b": "#1f77b4",
    "sum": "#444444",
    "luminance": "#444444",
}


class SpectrumView(QtWidgets.QWidget):
    """Live spectrum with reference overlay, peak markers and absorbance."""

    def __init__(self, parent: Optional[QtWidgets.QWidget] = None) -> None:
        super().__init__(parent)
        layout = QtWidgets.QVBoxLayout(self)
        layout.setContentsMargins(0, 0, 0, 0)
        layout.setSpacing(0)

        self.plot = pg.PlotWidget(background="w")
        self.plot.setRenderHint(QtGui.QPainter.RenderHint.Antialiasing, True)
        self.plot.showGrid(x=True, y=True, alpha=0.25)
        self.plot.setLabel("bottom", "Wavelength", units="nm")
        self.plot.setLabel("left", "Intensity")
        self._legend = self.plot.addLegend(offset=(10, 10))

        self.absorbance_plot = pg.PlotWidget(background="w")
        self.absorbance_plot.showGrid(x=True, y=True, alpha=0.25)
        self.absorbance_plot.setLabel("bottom", "Wavelength", units="nm")
        self.absorbance_plot.setLabel("left", "Absorbance")
        self.absorbance_plot.setXLink(self.plot)

        splitter = QtWidgets.QSplitter(QtCore.Qt.Orientation.Vertical)
        splitter.addWidget(self.plot)
        splitter.addWidget(self.absorbance_plot)
        splitter.setStretchFactor(0, 3)
        splitter.setStretchFactor(1, 1)
        layout.addWidget(splitter, stretch=1)

        self.cursor_label = QtWidgets.QLabel("λ: ––– | I: –––")
        self.cursor_label.setContentsMargins(12, 4, 12, 8)
        layout.addWidget(self.cursor_label)

        self._curves: Dict[str, pg.PlotDataItem] = {}
        self._absorbance_curves: Dict[str, pg.PlotDataItem] = {}
        self._reference_curve = self.plot.plot(
            [], [], pen=pg.mkPen(color="#ff7f0e", width=1, style=QtCore.Qt.PenStyle.DashLine), name="reference"
        )
        self._peak_markers = pg.ScatterPlotItem(size=9, symbol="t1", brush=pg.mkBrush("#9467bd"))
        self._dip_markers = pg.ScatterPlotItem(size=9, symbol="t", brush=pg.mkBrush("#8c564b"))
        self.plot.addItem(self._peak_markers)
        self.plot.addItem(self._dip_markers)
        self._last_snapshot: Optional[PipelineSnapshot] = None

        self._mouse_proxy = pg.SignalProxy(
            self.plot.scene().sigMouseMoved, rateLimit=60, slot=self._on_mouse_moved
        )

    def _curve(self, store: Dict[str, pg.PlotDataItem], plot: pg.PlotWidget, channel: str) -> pg.PlotDataItem:
        curve = store.get(channel)
        if curve is None:
            pen = pg.mkPen(color=CHANNEL_COLORS.get(channel, "#17becf"), width=2 if channel == "sum" else 1)
            curve = plot.plot([], [], pen=pen, name=channel)
            store[channel] = curve
        return curve

    def show_snapshot(self, snapshot: Optional[PipelineSnapshot]) -> None:
        if snapshot is None or snapshot.spectrum is None:
            return
        if self._last_snapshot is not None and snapshot is self._last_snapshot:
            return
        self._last_snapshot = snapshot
        spectrum = snapshot.spectrum
        for idx, channel in enumerate(spectrum.channels):
            self._curve(self._curves, self.plot, channel).setData(spectrum.wavelength, spectrum.intensity[idx])
        for channel, curve in self._curves.items():
            if channel not in spectrum.channels:
                curve.setData([], [])

        reference = snapshot.reference
        if reference is not None:
            self._reference_curve.setData(reference.wavelength, reference.intensity[-1])
        else:
            self._reference_curve.setData([], [])

        peaks = [p for p in snapshot.peaks if p.kind is PeakKind.PEAK]
        dips = [p for p in snapshot.peaks if p.kind is PeakKind.DIP]
        self._peak_markers.setData([p.wavelength_nm for p in peaks], [p.intensity for p in peaks])
        self._dip_markers.setData([p.wavelength_nm for p in dips], [p.intensity for p in dips])

        absorbance = snapshot.absorbance
        shown = set()
        if absorbance is not None:
            for trace in absorbance.traces:
                self._curve(self._absorbance_curves, self.absorbance_plot, trace.channel).setData(
                    trace.wavelength, trace.absorbance
                )
                shown.add(trace.channel)
        for channel, curve in self._absorbance_curves.items():
            if channel not in shown:
                curve.setData([], [])

        units = "nm" if spectrum.calibrated else ""
        self.plot.setLabel("bottom", "Wavelength" if spectrum.calibrated else "Pixel", units=units)

    def _on_mouse_moved(self, event) -> None:
        pos = event[0]
        if not self.plot.sceneBoundingRect().contains(pos):
            return
        point = self.plot.plotItem.vb.mapSceneToView(pos)
        snapshot = self._last_snapshot
        if snapshot is None or snapshot.spectrum is None or snapshot.spectrum.is_empty:
            return
        spectrum = snapshot.spectrum
        idx = int(np.clip(np.searchsorted(spectrum.wavelength, point.x()), 0, len(spectrum) - 1))
        values = " ".join(
            f"{name}: {spectrum.intensity[i, idx]:.2f}" for i, name in enumerate(spectrum.channels)
        )
        self.cursor_label.setText(f"λ: {spectrum.wavelength[idx]:.1f} | {values}")
