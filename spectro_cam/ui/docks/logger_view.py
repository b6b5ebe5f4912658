from __future__ import annotations

import logging
from typing import Iterable

from PyQt6.QtCore import QObject, pyqtSignal
from PyQt6.QtGui import QTextCursor
from PyQt6.QtWidgets import QDockWidget, QTextEdit

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class _LogEmitter(QObject):
    line = pyqtSignal(str)


class QtLogHandler(logging.Handler):
    """Forwards log records to the GUI thread through a queued signal."""

    def __init__(self, level=logging.INFO):
        super().__init__(level)
        self.emitter = _LogEmitter()
        self.setFormatter(logging.Formatter(LOG_FORMAT, "%H:%M:%S"))

    def emit(self, record: logging.LogRecord):
        self.emitter.line.emit(self.format(record))


class LoggerDock(QDockWidget):
    def __init__(self, parent=None):
        super().__init__("Logger", parent)
        self.setObjectName("LoggerDock")
        self.text = QTextEdit(); self.text.setReadOnly(True)
        self.setWidget(self.text)
        self.handler = QtLogHandler()
        self.handler.emitter.line.connect(self.append_line)

    def attach(self, logger: logging.Logger = None):
        (logger or logging.getLogger()).addHandler(self.handler)

    def detach(self, logger: logging.Logger = None):
        (logger or logging.getLogger()).removeHandler(self.handler)

    def clear(self):
        self.text.clear()

    def append_line(self, line: str):
        self.text.append(line)
        self.text.moveCursor(QTextCursor.MoveOperation.End)

    def stream_lines(self, lines: Iterable[str]):
        for line in lines:
            self.append_line(line)
