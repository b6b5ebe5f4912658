import logging

import yaml
from PyQt6.QtCore import QSettings

from spectro_cam.engine.settings_model import PipelineSettings, load_preset

logger = logging.getLogger(__name__)

SETTINGS_KEY = "pipeline/settings"


class AppContext:
    def __init__(self, settings: QSettings = None):
        # Company/app keys control where QSettings persists per OS
        self.settings = settings if settings is not None else QSettings("SpectroCam", "SpectroCam")
        self._dirty = False
        self._running = False

    def set_dirty(self, dirty: bool):
        self._dirty = dirty

    def is_dirty(self) -> bool:
        return self._dirty

    def set_running(self, running: bool):
        self._running = running

    def is_running(self) -> bool:
        return self._running

    def load_pipeline_settings(self) -> PipelineSettings:
        """Last saved settings, or the default preset when none are stored."""

        raw = self.settings.value(SETTINGS_KEY, "") or ""
        if raw:
            try:
                data = yaml.safe_load(str(raw))
            except yaml.YAMLError:
                logger.warning("Stored settings are not valid YAML; using the default preset")
            else:
                settings = PipelineSettings.from_dict(data)
                errors = settings.validate()
                if not errors:
                    return settings
                logger.warning("Stored settings rejected: %s", "; ".join(errors))
        return load_preset()

    def save_pipeline_settings(self, pipeline_settings: PipelineSettings):
        self.settings.setValue(SETTINGS_KEY, yaml.safe_dump(pipeline_settings.to_dict(), sort_keys=False))
        self.settings.sync()
        self._dirty = False
