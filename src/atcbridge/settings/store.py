"""Settings persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from pydantic import ValidationError

from .schema import BridgeSettings

logger = logging.getLogger(__name__)


class SettingsStore:
    """Load and save :class:`BridgeSettings` to disk."""

    @staticmethod
    def settings_path() -> Path:
        """Return the path to the settings JSON file."""
        home = os.environ.get("ATCBRIDGE_HOME")
        if home:
            base = Path(home).expanduser()
        else:
            base = Path(os.path.expanduser("~/.atcbridge"))
        return base / "settings.json"

    @classmethod
    def ensure_home(cls) -> Path:
        """Ensure the settings directory exists and return it."""
        path = cls.settings_path().parent
        path.mkdir(parents=True, exist_ok=True)
        return path

    @classmethod
    def load(cls) -> BridgeSettings:
        """Load settings from disk, returning defaults on error."""
        path = cls.settings_path()
        if not path.exists():
            return BridgeSettings()
        try:
            data = json.loads(path.read_text())
            return BridgeSettings.model_validate(data)
        except (OSError, ValueError, ValidationError) as e:
            logger.warning("Ignoring unreadable settings %s: %s", path, e)
            return BridgeSettings()

    @classmethod
    def save(cls, settings: BridgeSettings) -> None:
        """Atomically persist *settings* to disk."""
        path = cls.settings_path()
        cls.ensure_home()
        tmp = path.with_suffix(".tmp")
        tmp.write_text(settings.model_dump_json(indent=2))
        os.replace(tmp, path)
