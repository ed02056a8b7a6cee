"""Settings dataclasses and persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping

__all__ = [
    "Settings",
    "CompactionSettings",
    "SettingsStore",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".colloquy"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_API_KEY_ENV = "COLLOQUY_API_KEY"
_API_KEY_FALLBACK_ENV = "OPENAI_API_KEY"
_ENV_OVERRIDES: Mapping[str, str] = {
    "COLLOQUY_BASE_URL": "base_url",
    "COLLOQUY_MODEL": "model",
    "COLLOQUY_FAST_MODEL": "fast_model",
    "COLLOQUY_ORGANIZATION": "organization",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "COLLOQUY_DEBUG_LOGGING": "debug_logging",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "COLLOQUY_REQUEST_TIMEOUT": "request_timeout",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "COLLOQUY_DISPATCH_CONCURRENCY": "dispatch_concurrency",
}
_CONTEXT_BUDGET_ENV = "COLLOQUY_CONTEXT_BUDGET"
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}


@dataclass(slots=True)
class CompactionSettings:
    """Context-budget compaction knobs."""

    enabled: bool = True
    budget_bytes: int = 400_000
    min_length: int = 512
    target_ratio: float = 0.7
    max_attempts: int = 3
    min_savings_ratio: float = 0.5
    min_summary_tokens: int = 100
    tersify_model: str | None = None
    summary_model: str | None = None
    summary_chunk_tokens: int = 100_000


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between sessions."""

    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    fast_model: str | None = None
    organization: str | None = None
    request_timeout: float = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.2
    retry_max_seconds: float = 2.0
    retry_rate_limits: bool = False
    dispatch_concurrency: int = 8
    tool_timeout: float | None = None
    max_tool_rounds: int | None = None
    context_window_tokens: int | None = None
    stream: bool = True
    temperature: float | None = None
    debug_logging: bool = False
    default_headers: dict[str, str] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    compaction: CompactionSettings = field(default_factory=CompactionSettings)

    @property
    def tersify_model(self) -> str:
        return self.compaction.tersify_model or self.fast_model or self.model

    @property
    def summary_model(self) -> str:
        return self.compaction.summary_model or self.model


class SettingsStore:
    """Persistence adapter for :class:`Settings`."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH

    @property
    def path(self) -> Path:
        """Return the resolved path backing this store."""

        return self._path

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, applying CLI/environment overrides when present."""

        payload = self._read_payload()
        settings = Settings()
        if payload:
            data = _filter_fields(payload)
            compaction_payload = data.get("compaction")
            if isinstance(compaction_payload, Mapping):
                data["compaction"] = _build_compaction(compaction_payload)
            else:
                data.pop("compaction", None)
            try:
                settings = Settings(**data)
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
        LOGGER.debug("Settings loaded from %s", self._path)

        if overrides:
            settings = self._apply_overrides(settings, overrides, source="CLI")

        return self._apply_env_overrides(settings)

    def save(self, settings: Settings) -> Path:
        """Persist settings to disk with atomic file writes. The API key is never written."""

        payload = self._serialize(settings)
        body = json.dumps(payload, indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _serialize(self, settings: Settings) -> Dict[str, Any]:
        data = asdict(settings)
        data.pop("api_key", None)
        data["version"] = _SETTINGS_VERSION
        return data

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            text = self._path.read_text(encoding="utf-8")
            payload = json.loads(text)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        if not isinstance(payload, dict):
            LOGGER.warning("Settings file %s does not contain an object", self._path)
            return {}
        return payload

    def _apply_overrides(
        self,
        settings: Settings,
        overrides: Mapping[str, Any],
        *,
        source: str = "runtime",
    ) -> Settings:
        allowed = {field.name for field in fields(Settings)}
        filtered: Dict[str, Any] = {}
        for key, value in overrides.items():
            if key not in allowed or value is None:
                continue
            filtered[key] = value
        metadata_override = filtered.get("metadata")
        if isinstance(metadata_override, Mapping):
            merged_metadata = dict(settings.metadata or {})
            merged_metadata.update(metadata_override)
            filtered["metadata"] = merged_metadata
        compaction_override = filtered.get("compaction")
        if isinstance(compaction_override, Mapping):
            merged = asdict(settings.compaction)
            merged.update(compaction_override)
            filtered["compaction"] = _build_compaction(merged)
        if filtered:
            LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
            settings = replace(settings, **filtered)
        return settings

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        api_key = os.environ.get(_API_KEY_ENV) or os.environ.get(_API_KEY_FALLBACK_ENV)
        if api_key:
            overrides["api_key"] = api_key
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value
        for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        for env_name, field_name in _INT_ENV_OVERRIDES.items():
            value = _read_int_env(env_name)
            if value is not None:
                overrides[field_name] = value
        for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = float(value)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid float", env_name, value)
        budget = _read_int_env(_CONTEXT_BUDGET_ENV)
        if budget is not None:
            overrides["compaction"] = {"budget_bytes": budget}
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="environment")
        return settings


def _read_int_env(env_name: str) -> int | None:
    value = os.environ.get(env_name)
    if value is None:
        return None
    try:
        return int(value, 10)
    except ValueError:
        LOGGER.warning("Environment override %s=%s is not a valid integer", env_name, value)
        return None


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {field.name for field in fields(Settings)} - {"api_key"}
    result: Dict[str, Any] = {}
    for key, value in payload.items():
        if key not in allowed:
            if key != "version":
                LOGGER.warning("Ignoring unknown settings key: %s", key)
            continue
        result[key] = value
    return result


def _build_compaction(payload: Mapping[str, Any]) -> CompactionSettings:
    allowed = {field.name for field in fields(CompactionSettings)}
    data = {key: value for key, value in payload.items() if key in allowed}
    try:
        return CompactionSettings(**data)
    except TypeError:
        return CompactionSettings()


def redact_secret(value: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"
