from PyQt6.QtGui import QAction

def build_menus(window):
    menubar = window.menuBar()

    file_menu = menubar.addMenu("&File")
    file_menu.addAction(_act(window, "Load Settings...", shortcut="Ctrl+O", slot=window.on_load_preset))
    file_menu.addAction(_act(window, "Save Settings As...", shortcut="Ctrl+S", slot=window.on_save_preset))
    file_menu.addSeparator()
    file_menu.addAction(_act(window, "Import Reference...", slot=window.on_import_reference))
    file_menu.addAction(_act(window, "Export Spectrum...", shortcut="Ctrl+E", slot=window.on_export_spectrum))
    file_menu.addAction(_act(window, "Export Absorbance...", slot=window.on_export_absorbance))
    file_menu.addSeparator()
    file_menu.addAction(_act(window, "Exit", shortcut="Ctrl+Q", slot=window.close))

    view_menu = menubar.addMenu("&View")
    view_menu.setObjectName("viewMenu")
    window._view_menu = view_menu

    process_menu = menubar.addMenu("&Process")
    process_menu.addAction(_act(window, "Start", shortcut="F5", slot=window.on_start))
    process_menu.addAction(_act(window, "Stop", shortcut="Esc", slot=window.on_stop))

    reference_menu = menubar.addMenu("&Reference")
    reference_menu.addAction(_act(window, "Capture Zero", shortcut="Ctrl+Z", slot=window.on_capture_zero))
    reference_menu.addAction(_act(window, "Tungsten Reference", shortcut="Ctrl+T", slot=window.on_tungsten))
    reference_menu.addAction(_act(window, "Clear Reference", slot=window.on_clear_reference))
    reference_menu.addSeparator()
    reference_menu.addAction(_act(window, "Capture Dark Frame", shortcut="Ctrl+D", slot=window.on_capture_dark))
    reference_menu.addAction(_act(window, "Clear Dark Frame", slot=window.on_clear_dark))
    reference_menu.addSeparator()
    reference_menu.addAction(_act(window, "Set Reference as Calibration", slot=window.on_response_calibration))
    reference_menu.addAction(_act(window, "Reset Calibration Scaling", slot=window.on_clear_response))

    help_menu = menubar.addMenu("&Help")
    help_menu.addAction(_act(window, "About", slot=window.on_about))

def _act(parent, text, shortcut=None, slot=None):
    a = QAction(text, parent)
    if shortcut:
        a.setShortcut(shortcut)
    if slot:
        a.triggered.connect(slot)
    return a
