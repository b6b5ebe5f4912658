import logging
import sys

from PyQt6.QtWidgets import QApplication

from spectro_cam.app_context import AppContext
from spectro_cam.ui.docks.logger_view import LOG_FORMAT
from spectro_cam.ui.main_window import MainWindow


def main():
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    app = QApplication(sys.argv)
    app.setApplicationName("SpectroCam")
    app.setOrganizationName("SpectroCam")
    ctx = AppContext()
    win = MainWindow(ctx)
    win.show()
    sys.exit(app.exec())

if __name__ == "__main__":
    main()
