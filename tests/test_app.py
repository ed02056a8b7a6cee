"""Tests for the command-line entry point."""

from __future__ import annotations

import io
import json
import logging
from pathlib import Path

import pytest

from colloquy import app
from colloquy.ai.orchestration import create_completion_engine
from colloquy.services.settings import redact_secret
from colloquy.utils import logging as logging_utils
from helpers import ScriptedTransport, api_status_error, text_turn


@pytest.fixture(autouse=True)
def _log_to_tmp(_isolate_environment, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("COLLOQUY_LOG_DIR", str(tmp_path / "logs"))
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)
    logging_utils._CONFIGURED = False
    logging_utils._LOG_PATH = None


@pytest.fixture
def settings_path(tmp_path: Path) -> str:
    return str(tmp_path / "settings.json")


@pytest.fixture
def transport(monkeypatch: pytest.MonkeyPatch) -> ScriptedTransport:
    scripted = ScriptedTransport([text_turn("four")])
    monkeypatch.setattr(app, "create_completion_engine", lambda settings: create_completion_engine(settings, client=scripted))
    return scripted


def test_dump_settings_redacts_the_api_key(settings_path, monkeypatch, capsys, tmp_path) -> None:
    monkeypatch.setenv("COLLOQUY_API_KEY", "sk-abcdef123456")

    code = app.main(["--dump-settings", "--settings-path", settings_path, "--set", "model=gpt-test", "--set", "max_retries=5"])

    assert code == 0
    dumped = json.loads(capsys.readouterr().out)
    assert dumped["settings"]["api_key"] == redact_secret("sk-abcdef123456")
    assert "abcdef" not in dumped["settings"]["api_key"]
    assert dumped["settings"]["model"] == "gpt-test"
    assert dumped["settings"]["max_retries"] == 5
    assert dumped["meta"]["cli_overrides"] == ["max_retries", "model"]
    assert dumped["meta"]["log_path"] == str(tmp_path / "logs" / "colloquy.log")


def test_prompt_is_sent_and_answer_printed(settings_path, transport, capsys, tmp_path) -> None:
    code = app.main(["--settings-path", settings_path, "--system", "Be brief.", "what", "is", "2+2?"])

    assert code == 0
    assert capsys.readouterr().out == "four\n"
    (call,) = transport.calls
    assert call.messages == [
        {"role": "system", "content": "Be brief."},
        {"role": "user", "content": "what is 2+2?"},
    ]
    assert "Sending prompt" in (tmp_path / "logs" / "colloquy.log").read_text(encoding="utf-8")


def test_prompt_is_read_from_stdin(settings_path, transport, monkeypatch, capsys) -> None:
    monkeypatch.setattr("sys.stdin", io.StringIO("from a pipe\n"))

    assert app.main(["--settings-path", settings_path]) == 0
    assert transport.calls[0].messages[-1] == {"role": "user", "content": "from a pipe"}


def test_verbose_prints_progress_to_stderr(settings_path, transport, capsys) -> None:
    assert app.main(["--settings-path", settings_path, "--verbose", "hi"]) == 0

    err = capsys.readouterr().err
    assert "[state_changed]" in err
    assert "[content_delta]" not in err


def test_api_failure_is_described(settings_path, monkeypatch, capsys) -> None:
    scripted = ScriptedTransport([api_status_error(401, "invalid api key")])
    monkeypatch.setattr(app, "create_completion_engine", lambda settings: create_completion_engine(settings, client=scripted))

    code = app.main(["--settings-path", settings_path, "hi"])

    assert code == 1
    err = capsys.readouterr().err
    assert "- Kind: fatal_api" in err
    assert "- HTTP Status: 401" in err


def test_empty_prompt_is_rejected(settings_path, monkeypatch, capsys) -> None:
    monkeypatch.setattr("sys.stdin", io.StringIO("   "))

    assert app.main(["--settings-path", settings_path]) == 2
    assert "Nothing to send" in capsys.readouterr().err


@pytest.mark.parametrize("override", ["no-equals-sign", "=value", "unknown_field=1"])
def test_invalid_overrides_are_rejected(settings_path, override, capsys) -> None:
    assert app.main(["--settings-path", settings_path, "--set", override, "hi"]) == 2
    assert "Invalid --set override" in capsys.readouterr().err


def test_log_level_from_environment(monkeypatch) -> None:
    monkeypatch.setenv("COLLOQUY_LOG_LEVEL", "warning")

    app.configure_logging(force=True)

    assert logging.getLogger().level == logging.WARNING
