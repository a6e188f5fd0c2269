"""Persisted bridge settings."""

from .schema import BridgeSettings
from .store import SettingsStore

__all__ = ["BridgeSettings", "SettingsStore"]
