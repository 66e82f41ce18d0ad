"""Shared test fixtures."""

import os

import pytest

from tiller.config import Settings

_ENV_VARS = ("ANTHROPIC_API_KEY", "ANTHROPIC_AUTH_TOKEN")


@pytest.fixture
def clean_env(monkeypatch):
    """Remove credentials and TILLER_* variables from the environment."""
    for name in list(os.environ):
        if name.startswith("TILLER_") or name in _ENV_VARS:
            monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def settings(clean_env, tmp_path):
    """Settings isolated from .env files, with a tmp workspace."""
    clean_env.setenv("ANTHROPIC_API_KEY", "sk-ant-test-key")
    return Settings(_env_file=None, workspace_dir=str(tmp_path / "workspace"))
