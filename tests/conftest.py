"""Shared fixtures for the lifecycle manager tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from runner_lifecycle.config import RunnerSettings, get_runner_settings
from runner_lifecycle.observability import clear_secrets

from _helpers import FAKE_CONFIG_SCRIPT, python_command, write_script


_ENV_VARS = [name.upper() for name in RunnerSettings.model_fields]


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch, tmp_path):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    get_runner_settings.cache_clear()
    clear_secrets()
    yield
    get_runner_settings.cache_clear()
    clear_secrets()


@pytest.fixture
def runner_home(tmp_path) -> Path:
    home = tmp_path / "actions-runner"
    home.mkdir()
    write_script(home / "config.sh", FAKE_CONFIG_SCRIPT)
    return home


@pytest.fixture
def make_settings(runner_home):
    def _make(**overrides) -> RunnerSettings:
        values = {
            "github_token": "ghp_durable_secret",
            "github_owner": "acme",
            "runner_name": "runner-1",
            "runner_home": str(runner_home),
            "runner_seed_dir": None,
            "runner_as_root": "true",
            "runner_run_command": python_command("import sys; sys.exit(0)"),
            "github_api_url": "https://api.github.test",
            "http_timeout_seconds": 2.0,
            "configure_timeout_seconds": 10.0,
            "shutdown_grace_seconds": 2.0,
            "shutdown_timeout_seconds": 2.0,
        }
        values.update(overrides)
        return RunnerSettings(_env_file=None, **values)

    return _make
