"""Environment-driven settings and validation for the runner lifecycle manager."""

from __future__ import annotations

import re
import socket
from functools import lru_cache
from pathlib import Path

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from runner_lifecycle.errors import ConfigValidationError
from runner_lifecycle.schemas import OrganizationScope, RepositoryScope, WorkerConfig


DEFAULT_LABELS: frozenset[str] = frozenset({"linux"})
DEFAULT_GROUP = "default"
DEFAULT_WORK_DIR = "_work"

_REPOSITORY_PATTERN = re.compile(r"^[^/\s]+/[^/\s]+$")
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


class RunnerSettings(BaseSettings):
    """Raw settings read from the environment and an optional .env file.

    Values that are user-facing options stay as strings here so that
    ``load_worker_config`` can report every problem in one pass instead of
    failing on the first malformed field.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    github_token: SecretStr | None = None
    github_repository: str | None = None
    github_owner: str | None = None

    runner_name: str | None = None
    runner_labels: str | None = None
    runner_group: str | None = None
    runner_workdir: str | None = None
    runner_as_root: str | None = None
    runner_replace_existing: str | None = None
    runner_ephemeral: str | None = None
    runner_cleanup_existing: str | None = None

    runner_home: str = "/actions-runner"
    runner_seed_dir: str | None = "/opt/actions-runner"
    runner_user: str = "runner"
    runner_config_command: str = "./config.sh"
    runner_run_command: str = "./run.sh"

    github_api_url: str = "https://api.github.com"
    github_url: str = "https://github.com"

    http_timeout_seconds: float = 10.0
    configure_timeout_seconds: float = 300.0
    shutdown_grace_seconds: float = 10.0
    shutdown_timeout_seconds: float = 20.0

    log_level: str = "INFO"


@lru_cache
def get_runner_settings() -> RunnerSettings:
    """Get cached runner settings."""

    return RunnerSettings()


def _blank(value: str | None) -> bool:
    return value is None or not value.strip()


def _parse_flag(env_name: str, raw: str | None, problems: list[str]) -> bool:
    if _blank(raw):
        return False
    normalized = raw.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    problems.append(f"{env_name} must be a boolean (true/false), got {raw!r}")
    return False


def parse_labels(raw: str | None) -> frozenset[str]:
    """Split a comma-separated label list, dropping blanks and duplicates."""
    if _blank(raw):
        return DEFAULT_LABELS
    labels = frozenset(part.strip() for part in raw.split(",") if part.strip())
    return labels or DEFAULT_LABELS


def load_worker_config(settings: RunnerSettings | None = None) -> WorkerConfig:
    """Validate settings and build the immutable ``WorkerConfig``.

    Raises ``ConfigValidationError`` listing every problem found.
    """
    settings = settings or get_runner_settings()
    problems: list[str] = []

    credential = settings.github_token
    if credential is None or not credential.get_secret_value().strip():
        problems.append("GITHUB_TOKEN is required")

    repository = None if _blank(settings.github_repository) else settings.github_repository.strip()
    owner = None if _blank(settings.github_owner) else settings.github_owner.strip()

    scope: RepositoryScope | OrganizationScope | None = None
    if repository and owner:
        problems.append("set exactly one of GITHUB_REPOSITORY or GITHUB_OWNER, not both")
    elif repository:
        if _REPOSITORY_PATTERN.match(repository):
            repo_owner, repo_name = repository.split("/", 1)
            scope = RepositoryScope(owner=repo_owner, name=repo_name)
        else:
            problems.append(f"GITHUB_REPOSITORY must be in format 'owner/repo', got {repository!r}")
    elif owner:
        if "/" in owner or any(ch.isspace() for ch in owner):
            problems.append(f"GITHUB_OWNER must be an organization name, got {owner!r}")
        else:
            scope = OrganizationScope(name=owner)
    else:
        problems.append("GITHUB_REPOSITORY or GITHUB_OWNER is required")

    identity_name = socket.gethostname() if _blank(settings.runner_name) else settings.runner_name.strip()

    run_as_privileged = _parse_flag("RUNNER_AS_ROOT", settings.runner_as_root, problems)
    replace_existing = _parse_flag("RUNNER_REPLACE_EXISTING", settings.runner_replace_existing, problems)
    ephemeral = _parse_flag("RUNNER_EPHEMERAL", settings.runner_ephemeral, problems)
    cleanup_existing = _parse_flag("RUNNER_CLEANUP_EXISTING", settings.runner_cleanup_existing, problems)

    if problems:
        raise ConfigValidationError(problems)

    return WorkerConfig(
        credential=credential,
        scope=scope,
        identity_name=identity_name,
        labels=parse_labels(settings.runner_labels),
        group=DEFAULT_GROUP if _blank(settings.runner_group) else settings.runner_group.strip(),
        work_dir=Path(DEFAULT_WORK_DIR if _blank(settings.runner_workdir) else settings.runner_workdir.strip()),
        runner_home=Path(settings.runner_home),
        run_as_privileged=run_as_privileged,
        replace_existing=replace_existing,
        ephemeral=ephemeral,
        cleanup_existing=cleanup_existing,
    )
