"""Service layer helpers (settings persistence)."""

from .settings import CompactionSettings, Settings, SettingsStore

__all__ = ["CompactionSettings", "Settings", "SettingsStore"]
