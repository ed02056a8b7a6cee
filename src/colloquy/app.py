"""Command-line entry point for one-shot completions."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, TextIO

from .ai.orchestration import (
    CompletionError,
    Message,
    ProgressEvent,
    ProgressKind,
    create_completion_engine,
    describe_error,
    request_from_settings,
)
from .services.settings import Settings, SettingsStore, redact_secret
from .utils import logging as logging_utils

_LOGGER = logging.getLogger(__name__)
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}


def configure_logging(debug: bool = False, *, force: bool = False) -> Path:
    """Configure file logging; the console only carries warnings unless ``debug``."""

    level = logging.DEBUG if debug else logging_utils.resolve_level(None)
    path = logging_utils.setup_logging(level, console=debug, force=force)
    _LOGGER.debug("Logging configured (level=%s, path=%s)", logging.getLevelName(level), path)
    return path


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        settings = active_store.load(overrides=overrides)
    except OSError as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        settings = Settings()
    return settings


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point invoked by the ``colloquy`` console script."""

    args = _parse_cli_args(argv)
    debug = args.debug or _env_flag("COLLOQUY_DEBUG", default=False)
    configure_logging(debug)

    settings_path = args.settings_path or os.environ.get("COLLOQUY_SETTINGS_PATH")
    store = SettingsStore(Path(settings_path).expanduser() if settings_path else None)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        return 2
    settings = load_settings(store=store, overrides=cli_overrides or None)

    if args.dump_settings:
        _dump_settings(settings, store, overrides=cli_overrides)
        return 0

    if settings.debug_logging and not debug:
        configure_logging(True, force=True)

    prompt = " ".join(args.prompt).strip()
    if not prompt:
        prompt = sys.stdin.read().strip()
    if not prompt:
        print("Nothing to send: pass a prompt or pipe one on stdin.", file=sys.stderr)
        return 2

    messages: list[Message] = []
    if args.system:
        messages.append(Message.system(args.system))
    messages.append(Message.user(prompt))
    try:
        text = asyncio.run(_complete(settings, messages, verbose=args.verbose))
    except CompletionError as exc:
        _LOGGER.error("Completion failed: %s", exc)
        print(describe_error(exc), file=sys.stderr)
        return 1
    print(text)
    return 0


async def _complete(settings: Settings, messages: Sequence[Message], *, verbose: bool) -> str:
    engine = create_completion_engine(settings)
    _LOGGER.info(
        "Sending prompt to %s at %s (api key %s)",
        settings.model,
        settings.base_url,
        redact_secret(settings.api_key) or "<unset>",
    )
    result = await engine.run(
        request_from_settings(settings, messages),
        on_progress=_print_progress if verbose else None,
    )
    _LOGGER.info("Run %s finished: %s", result.run_id, engine.ledger.snapshot())
    return result.final_text


def _print_progress(event: ProgressEvent) -> None:
    if event.kind == ProgressKind.CONTENT_DELTA:
        return
    details = ", ".join(f"{key}={value}" for key, value in event.payload.items())
    print(f"[{event.kind}] {details}", file=sys.stderr)


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="colloquy",
        description="Send one prompt through the completion engine or inspect its configuration.",
    )
    parser.add_argument("prompt", nargs="*", help="Prompt text; read from stdin when omitted.")
    parser.add_argument("--system", metavar="TEXT", help="Optional system message sent before the prompt.")
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.colloquy/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override a top-level setting for this run (repeatable; values are parsed as JSON when possible).",
    )
    parser.add_argument("--verbose", action="store_true", help="Print progress events to stderr.")
    parser.add_argument("--debug", action="store_true", help="Log at DEBUG level to the console as well.")
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    fields = Settings.__dataclass_fields__  # type: ignore[attr-defined]
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        if key not in fields:
            raise ValueError(f"Unknown setting '{key}'.")
        raw_value = raw_value.strip()
        try:
            overrides[key] = json.loads(raw_value)
        except json.JSONDecodeError:
            overrides[key] = raw_value
    return overrides


def _env_flag(name: str, *, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    return default


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    payload["api_key"] = redact_secret(settings.api_key)
    metadata = {
        "path": str(store.path),
        "log_path": str(logging_utils.get_log_path() or ""),
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": sorted(name for name in os.environ if name.startswith("COLLOQUY_")),
    }
    json.dump({"settings": payload, "meta": metadata}, destination, indent=2)
    destination.write("\n")
