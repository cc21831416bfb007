"""Data model shared by the lifecycle components."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator


class LifecycleState(str, Enum):
    """States of the manager, in the order they are normally visited."""

    unconfigured = "unconfigured"
    configuring = "configuring"
    configured = "configured"
    running = "running"
    shutting_down = "shutting_down"
    terminated = "terminated"


ALLOWED_TRANSITIONS: dict[LifecycleState, frozenset[LifecycleState]] = {
    LifecycleState.unconfigured: frozenset({LifecycleState.configuring, LifecycleState.shutting_down}),
    LifecycleState.configuring: frozenset(
        {LifecycleState.configured, LifecycleState.unconfigured, LifecycleState.shutting_down}
    ),
    LifecycleState.configured: frozenset(
        {LifecycleState.running, LifecycleState.shutting_down, LifecycleState.terminated}
    ),
    LifecycleState.running: frozenset({LifecycleState.shutting_down, LifecycleState.terminated}),
    LifecycleState.shutting_down: frozenset({LifecycleState.terminated}),
    LifecycleState.terminated: frozenset(),
}


class RepositoryScope(BaseModel):
    """Runner registered against a single repository."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["repository"] = "repository"
    owner: str
    name: str

    @property
    def api_path(self) -> str:
        return f"repos/{self.owner}/{self.name}"

    @property
    def html_path(self) -> str:
        return f"{self.owner}/{self.name}"


class OrganizationScope(BaseModel):
    """Runner registered against a whole organization."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["organization"] = "organization"
    name: str

    @property
    def api_path(self) -> str:
        return f"orgs/{self.name}"

    @property
    def html_path(self) -> str:
        return self.name


Scope = Annotated[Union[RepositoryScope, OrganizationScope], Field(discriminator="kind")]


class WorkerConfig(BaseModel):
    """Validated, immutable startup configuration."""

    model_config = ConfigDict(frozen=True)

    credential: SecretStr
    scope: Scope
    identity_name: str
    labels: frozenset[str] = frozenset({"linux"})
    group: str = "default"
    work_dir: Path = Path("_work")
    runner_home: Path = Path("/actions-runner")
    run_as_privileged: bool = False
    replace_existing: bool = False
    ephemeral: bool = False
    cleanup_existing: bool = False

    @property
    def resolved_work_dir(self) -> Path:
        if self.work_dir.is_absolute():
            return self.work_dir
        return self.runner_home / self.work_dir

    @property
    def labels_arg(self) -> str:
        return ",".join(sorted(self.labels))


class RegistrationToken(BaseModel):
    """Short-lived token used once to configure the runner identity."""

    value: str
    expires_at: datetime | None = None

    @field_validator("value")
    @classmethod
    def _not_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("registration token must not be empty")
        return value


class IdentityRecord(BaseModel):
    """Persisted marker that this runner identity is configured."""

    name: str
    labels: list[str] = Field(default_factory=list)
    group: str = "default"
    scope: Scope
    work_dir: str
    runner_id: int | None = None
    configured_at: datetime
