"""Shared pytest fixtures."""

import os

import pytest


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch):
    """Keep developer environment overrides out of settings and logging tests."""

    for name in list(os.environ):
        if name.startswith("COLLOQUY_") or name == "OPENAI_API_KEY":
            monkeypatch.delenv(name, raising=False)
