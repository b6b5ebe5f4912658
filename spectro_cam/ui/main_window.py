import logging
from pathlib import Path
from typing import Optional

from PyQt6 import QtCore, QtGui, QtWidgets

from spectro_cam.capture.camera import CameraCapture
from spectro_cam.engine.errors import ConfigurationError, DataError
from spectro_cam.engine.frame_channel import LatestFrameChannel
from spectro_cam.engine.pipeline import SpectralPipeline
from spectro_cam.engine.run_controller import RunController
from spectro_cam.engine.settings_model import load_preset, save_preset
from spectro_cam.io.spectrum_csv import export_absorbance, export_spectrum, import_reference
from spectro_cam.ui.docks.logger_view import LoggerDock
from spectro_cam.ui.docks.settings_editor import SettingsEditorDock
from spectro_cam.ui.docks.spectrum_view import SpectrumView
from spectro_cam.ui.menus import build_menus

logger = logging.getLogger(__name__)

# Interval at which the plot polls for a new snapshot.
REFRESH_MS = 50
# Time allowed for the camera thread to release the device.
CAPTURE_JOIN_S = 2.0


class MainWindow(QtWidgets.QMainWindow):
    def __init__(self, appctx):
        super().__init__()
        self.appctx = appctx
        self.setWindowTitle("SpectroCam")
        self.resize(1280, 800)
        self._view_menu: Optional[QtWidgets.QMenu] = None
        self._capture: Optional[CameraCapture] = None
        self._channel: Optional[LatestFrameChannel] = None
        self._running = False

        self.pipeline = SpectralPipeline(self.appctx.load_pipeline_settings())

        build_menus(self)
        self._collect_actions()
        self._init_toolbar()
        self._init_docks()
        self._default_layout_state = QtCore.QByteArray(self.saveState())
        self._init_view_menu()
        self._init_status()
        self.restore_state()

        self.runctl = RunController(self)
        self._connect_run_controller()

        self.settingsDock.set_settings(self.pipeline.settings)
        self.settingsDock.settings_changed.connect(self._on_settings_changed)

        self._timer = QtCore.QTimer(self)
        self._timer.setInterval(REFRESH_MS)
        self._timer.timeout.connect(self._refresh)
        self._timer.start()

        self.status.showMessage("Ready")
        self._update_action_states()

    def _init_docks(self):
        self.spectrumView = SpectrumView(self)
        self.setCentralWidget(self.spectrumView)
        self.settingsDock = SettingsEditorDock(self)
        self.addDockWidget(QtCore.Qt.DockWidgetArea.RightDockWidgetArea, self.settingsDock)
        self.loggerDock = LoggerDock(self)
        self.addDockWidget(QtCore.Qt.DockWidgetArea.BottomDockWidgetArea, self.loggerDock)
        self.loggerDock.attach()

    def _init_view_menu(self):
        if not self._view_menu:
            return
        self._view_menu.addAction(self.settingsDock.toggleViewAction())
        self._view_menu.addAction(self.loggerDock.toggleViewAction())
        self._view_menu.addSeparator()
        reset = QtGui.QAction("Reset Layout", self)
        reset.triggered.connect(self.on_reset_layout)
        self._view_menu.addAction(reset)

    def _init_toolbar(self):
        self._toolbar = self.addToolBar("Main")
        self._toolbar.setObjectName("MainToolbar")
        self._toolbar.setMovable(False)
        self._toolbar.addWidget(QtWidgets.QLabel(" Camera "))
        self.camera_index = QtWidgets.QSpinBox()
        self.camera_index.setRange(0, 10)
        self.camera_index.setValue(int(self.appctx.settings.value("camera/index", 0) or 0))
        self._toolbar.addWidget(self.camera_index)
        for action in (self._start_action, self._stop_action):
            if action:
                self._toolbar.addAction(action)
        self._toolbar.addSeparator()
        for action in (self._zero_action, self._tungsten_action, self._clear_reference_action):
            if action:
                self._toolbar.addAction(action)

    def _init_status(self):
        self.status = self.statusBar()
        self.frame_label = QtWidgets.QLabel()
        self.status.addPermanentWidget(self.frame_label)

    def _collect_actions(self):
        actions = {action.text(): action for action in self.findChildren(QtGui.QAction)}
        self._start_action = actions.get("Start")
        self._stop_action = actions.get("Stop")
        self._zero_action = actions.get("Capture Zero")
        self._tungsten_action = actions.get("Tungsten Reference")
        self._clear_reference_action = actions.get("Clear Reference")

    def _update_action_states(self):
        if self._start_action:
            self._start_action.setEnabled(not self._running)
        if self._stop_action:
            self._stop_action.setEnabled(self._running)
        self.camera_index.setEnabled(not self._running)

    # ------------------------------------------------------------------
    # Processing
    def _connect_run_controller(self):
        self.runctl.job_started.connect(self._on_job_started)
        self.runctl.job_finished.connect(self._on_job_finished)
        self.runctl.job_message.connect(self._on_job_message)

    def on_start(self):
        if self._running:
            return
        self._channel = LatestFrameChannel(capacity=1)
        self._capture = CameraCapture(self._channel, self.camera_index.value())
        self._capture.start()
        self.appctx.settings.setValue("camera/index", self.camera_index.value())
        self.runctl.start(self.pipeline, self._channel)

    def on_stop(self):
        self.runctl.stop()
        if self._capture is not None:
            self._capture.stop()
            self._capture.join(CAPTURE_JOIN_S)
            if self._capture.is_alive():
                logger.warning("Camera thread did not stop within %.1f s", CAPTURE_JOIN_S)
            self._capture = None
        if self._channel is not None:
            self._channel.close()

    def _on_job_started(self):
        self._running = True
        self.appctx.set_running(True)
        self.status.showMessage("Capturing...")
        self._update_action_states()

    def _on_job_finished(self, result):
        self._running = False
        self.appctx.set_running(False)
        if isinstance(result, Exception):
            self.status.showMessage(f"Processing failed: {result}", 10000)
        else:
            self.status.showMessage("Stopped", 5000)
        self._update_action_states()

    def _on_job_message(self, message: str):
        self.status.showMessage(message, 5000)

    def _apply_if_idle(self):
        # Without a running worker nothing else drains the request queue.
        if not self._running:
            for error in self.pipeline.apply_pending():
                self.status.showMessage(error, 8000)

    def _refresh(self):
        snapshot = self.pipeline.slot.latest()
        if snapshot is None:
            return
        self.spectrumView.show_snapshot(snapshot)
        parts = []
        rate = self.pipeline.frame_rate
        if rate:
            parts.append(f"{rate:.1f} fps")
        if self._channel is not None:
            parts.append(f"{self._channel.dropped} dropped")
        if snapshot.calibration is not None:
            parts.append(snapshot.calibration.describe())
        if snapshot.dark_subtracted:
            parts.append("dark subtracted")
        if snapshot.stale:
            parts.append("waiting for frames")
        parts.extend(str(issue) for issue in snapshot.issues)
        self.frame_label.setText(" | ".join(parts))

    def _on_settings_changed(self, settings):
        errors = self.pipeline.configure(settings)
        if errors:
            self.settingsDock.show_errors(errors)
            return
        self.appctx.set_dirty(True)
        self._apply_if_idle()

    # ------------------------------------------------------------------
    # Reference actions
    def on_capture_zero(self):
        self.pipeline.request_capture_zero()
        self._apply_if_idle()

    def on_tungsten(self):
        self.pipeline.request_tungsten()
        self._apply_if_idle()

    def on_clear_reference(self):
        self.pipeline.request_clear_reference()
        self._apply_if_idle()

    def on_capture_dark(self):
        self.pipeline.request_capture_dark()
        self._apply_if_idle()

    def on_clear_dark(self):
        self.pipeline.request_clear_dark()
        self._apply_if_idle()

    def on_response_calibration(self):
        self.pipeline.request_response_calibration()
        self._apply_if_idle()

    def on_clear_response(self):
        self.pipeline.request_clear_response()
        self._apply_if_idle()

    def on_import_reference(self):
        path, _ = QtWidgets.QFileDialog.getOpenFileName(
            self, "Import Reference", self._last_dir(), "CSV files (*.csv *.txt);;All files (*)"
        )
        if not path:
            return
        try:
            spectrum = import_reference(path)
        except DataError as exc:
            QtWidgets.QMessageBox.warning(self, "Import Reference", str(exc))
            return
        self._remember_dir(path)
        self.pipeline.request_reference(spectrum)
        self._apply_if_idle()

    # ------------------------------------------------------------------
    # Files
    def _last_dir(self) -> str:
        return str(self.appctx.settings.value("export/defaultDir", "") or "")

    def _remember_dir(self, path):
        self.appctx.settings.setValue("export/defaultDir", str(Path(path).parent))

    def on_export_spectrum(self):
        snapshot = self.pipeline.slot.latest()
        if snapshot is None or snapshot.spectrum is None:
            self.status.showMessage("No spectrum to export", 5000)
            return
        path, _ = QtWidgets.QFileDialog.getSaveFileName(
            self, "Export Spectrum", str(Path(self._last_dir()) / "spectrum.csv"), "CSV files (*.csv)"
        )
        if not path:
            return
        export_spectrum(path, snapshot.spectrum)
        self._remember_dir(path)
        self.status.showMessage(f"Exported {path}", 5000)

    def on_export_absorbance(self):
        snapshot = self.pipeline.slot.latest()
        if snapshot is None or snapshot.absorbance is None:
            self.status.showMessage("Set a reference to export absorbance", 5000)
            return
        path, _ = QtWidgets.QFileDialog.getSaveFileName(
            self, "Export Absorbance", str(Path(self._last_dir()) / "absorbance.csv"), "CSV files (*.csv)"
        )
        if not path:
            return
        export_absorbance(path, snapshot.absorbance)
        self._remember_dir(path)
        self.status.showMessage(f"Exported {path}", 5000)

    def on_load_preset(self):
        path, _ = QtWidgets.QFileDialog.getOpenFileName(
            self, "Load Settings", self._last_dir(), "YAML files (*.yaml *.yml)"
        )
        if not path:
            return
        try:
            settings = load_preset(path)
        except (OSError, ConfigurationError) as exc:
            QtWidgets.QMessageBox.warning(self, "Load Settings", str(exc))
            return
        errors = self.pipeline.configure(settings)
        if errors:
            self.settingsDock.show_errors(errors)
            return
        self.settingsDock.set_settings(settings)
        self._apply_if_idle()

    def on_save_preset(self):
        path, _ = QtWidgets.QFileDialog.getSaveFileName(
            self, "Save Settings", str(Path(self._last_dir()) / "settings.yaml"), "YAML files (*.yaml)"
        )
        if not path:
            return
        save_preset(self.settingsDock.get_settings(), path)
        self.status.showMessage(f"Saved {path}", 5000)

    def on_reset_layout(self):
        self.restoreState(self._default_layout_state)

    def on_about(self):
        QtWidgets.QMessageBox.about(
            self,
            "About SpectroCam",
            "SpectroCam turns webcam images of a diffraction grating into calibrated spectra.",
        )

    # ------------------------------------------------------------------
    def restore_state(self):
        s = self.appctx.settings
        g = s.value("geometry"); w = s.value("windowState")
        if g: self.restoreGeometry(g)
        if w: self.restoreState(w)

    def save_state(self):
        s = self.appctx.settings
        s.setValue("geometry", self.saveGeometry())
        s.setValue("windowState", self.saveState())

    def closeEvent(self, e):
        self._timer.stop()
        if self._running:
            self.on_stop()
            self.runctl.wait(2000)
        self.appctx.save_pipeline_settings(self.pipeline.settings)
        self.save_state()
        self.loggerDock.detach()
        self.pipeline.close()
        super().closeEvent(e)
