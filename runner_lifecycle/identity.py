"""Local runner identity: the persisted record and the configuration procedure."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shlex
import shutil
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError

from runner_lifecycle.errors import ConfigurationError
from runner_lifecycle.observability import redact
from runner_lifecycle.schemas import IdentityRecord, RegistrationToken, WorkerConfig


logger = logging.getLogger(__name__)

RECORD_FILENAME = ".identity.json"
RUNNER_SETTINGS_FILENAME = ".runner"
CREDENTIAL_FILENAMES = (".runner", ".credentials", ".credentials_rsaparams")


class IdentityStore:
    """Owns the identity record and the credential material beside it."""

    def __init__(self, runner_home: Path) -> None:
        self.runner_home = Path(runner_home)

    @property
    def record_path(self) -> Path:
        return self.runner_home / RECORD_FILENAME

    def exists(self) -> bool:
        return self.record_path.is_file()

    def has_local_state(self) -> bool:
        """True when a record or any credential material is on disk."""
        return self.exists() or any((self.runner_home / name).exists() for name in CREDENTIAL_FILENAMES)

    def load(self) -> IdentityRecord | None:
        if not self.exists():
            return None
        try:
            return IdentityRecord.model_validate_json(self.record_path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as exc:
            logger.warning("identity_record_unreadable", extra={"path": str(self.record_path), "error": str(exc)})
            return None

    def save(self, record: IdentityRecord) -> Path:
        self.runner_home.mkdir(parents=True, exist_ok=True)
        tmp = self.record_path.with_suffix(".tmp")
        tmp.write_text(record.model_dump_json(indent=2), encoding="utf-8")
        tmp.replace(self.record_path)
        return self.record_path

    def purge(self) -> list[Path]:
        """Delete the record and credential material, tolerating missing files."""
        removed: list[Path] = []
        for filename in (RECORD_FILENAME, *CREDENTIAL_FILENAMES):
            path = self.runner_home / filename
            if path.exists():
                path.unlink(missing_ok=True)
                removed.append(path)
        if removed:
            logger.info("identity_state_removed", extra={"files": [p.name for p in removed]})
        return removed

    def _configured_identities(self) -> list[tuple[str, int | None]]:
        identities: list[tuple[str, int | None]] = []
        record = self.load()
        if record is not None:
            identities.append((record.name, record.runner_id))

        settings_path = self.runner_home / RUNNER_SETTINGS_FILENAME
        if settings_path.is_file():
            try:
                # The runner writes this file with a UTF-8 BOM.
                settings = json.loads(settings_path.read_text(encoding="utf-8-sig"))
            except (OSError, ValueError):
                settings = {}
            if isinstance(settings, dict) and isinstance(settings.get("agentName"), str):
                agent_id = settings.get("agentId")
                identities.append((settings["agentName"], agent_id if isinstance(agent_id, int) else None))
        return identities

    def lookup_runner_id(self, name: str) -> int | None:
        """Resolve the server-side id of ``name`` from locally configured identities."""
        for identity_name, runner_id in self._configured_identities():
            if identity_name == name and runner_id is not None:
                return runner_id
        return None


def seed_runner_distribution(runner_home: Path, seed_dir: Path | None, marker: str = "config.sh") -> bool:
    """Copy a pristine runner distribution into an empty ``runner_home``."""
    runner_home = Path(runner_home)
    if (runner_home / marker).exists() or seed_dir is None or not Path(seed_dir).is_dir():
        return False

    logger.info("runner_distribution_seeding", extra={"source": str(seed_dir), "target": str(runner_home)})
    try:
        runner_home.mkdir(parents=True, exist_ok=True)
        shutil.copytree(seed_dir, runner_home, dirs_exist_ok=True, symlinks=True)
        for script in runner_home.glob("*.sh"):
            script.chmod(script.stat().st_mode | 0o111)
    except OSError as exc:
        raise ConfigurationError(f"cannot seed runner distribution into {runner_home}: {exc}") from exc
    return True


class IdentityConfigurator:
    """Runs the local configuration procedure once per runner identity."""

    def __init__(
        self,
        store: IdentityStore,
        command: Sequence[str] = ("./config.sh",),
        github_url: str = "https://github.com",
        timeout: float = 300.0,
    ) -> None:
        self.store = store
        self.command = list(command)
        self.github_url = github_url.rstrip("/")
        self.timeout = timeout

    def build_arguments(self, config: WorkerConfig, token: RegistrationToken) -> list[str]:
        args = [
            *self.command,
            "--unattended",
            "--url",
            f"{self.github_url}/{config.scope.html_path}",
            "--token",
            token.value,
            "--name",
            config.identity_name,
            "--labels",
            config.labels_arg,
            "--runnergroup",
            config.group,
            "--work",
            str(config.work_dir),
        ]
        if config.replace_existing:
            args.append("--replace")
        if config.ephemeral:
            args.append("--ephemeral")
        return args

    async def ensure_configured(
        self,
        config: WorkerConfig,
        fetch_token: Callable[[], Awaitable[RegistrationToken]],
    ) -> IdentityRecord:
        """Configure the identity unless a record already exists.

        ``fetch_token`` is only awaited when configuration is actually
        needed, so a restart with an existing record makes no network call.
        """
        existing = self.store.load()
        if existing is not None:
            logger.info("identity_already_configured", extra={"runner_name": existing.name})
            return existing

        if self.store.has_local_state():
            runner_id = self.store.lookup_runner_id(config.identity_name)
            if runner_id is not None:
                # Configured earlier but the record was never written.
                logger.warning(
                    "identity_adopted", extra={"runner_name": config.identity_name, "runner_id": runner_id}
                )
                return self._save_record(config, runner_id)
            logger.warning("orphaned_identity_state", extra={"runner_name": config.identity_name})
            try:
                self.store.purge()
            except OSError as exc:
                raise ConfigurationError(f"cannot remove stale runner state: {exc}") from exc

        token = await fetch_token()
        try:
            config.resolved_work_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ConfigurationError(f"cannot create work directory {config.resolved_work_dir}: {exc}") from exc
        await self._run_procedure(self.build_arguments(config, token))

        record = self._save_record(config, self.store.lookup_runner_id(config.identity_name))
        logger.info(
            "identity_configured",
            extra={"runner_name": record.name, "labels": config.labels_arg, "runner_id": record.runner_id},
        )
        return record

    def _save_record(self, config: WorkerConfig, runner_id: int | None) -> IdentityRecord:
        record = IdentityRecord(
            name=config.identity_name,
            labels=sorted(config.labels),
            group=config.group,
            scope=config.scope,
            work_dir=str(config.work_dir),
            runner_id=runner_id,
            configured_at=datetime.now(timezone.utc),
        )
        try:
            self.store.save(record)
        except OSError as exc:
            raise ConfigurationError(f"cannot write identity record {self.store.record_path}: {exc}") from exc
        return record

    async def _run_procedure(self, args: list[str]) -> None:
        logger.info("identity_configuration_started", extra={"command": redact(shlex.join(args))})
        env = dict(os.environ)
        if os.geteuid() == 0:
            env["RUNNER_ALLOW_RUNASROOT"] = "1"

        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                cwd=str(self.store.runner_home),
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            raise ConfigurationError(f"cannot run {args[0]!r} in {self.store.runner_home}: {exc}") from exc

        tail: list[str] = []
        try:
            await asyncio.wait_for(self._stream_output(proc, tail), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise ConfigurationError(f"configuration procedure timed out after {self.timeout:g} seconds") from exc
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise

        if proc.returncode != 0:
            detail = tail[-1] if tail else "no output"
            raise ConfigurationError(f"configuration procedure exited with code {proc.returncode}: {detail}")

    async def _stream_output(self, proc: asyncio.subprocess.Process, tail: list[str]) -> None:
        assert proc.stdout is not None
        async for raw in proc.stdout:
            line = redact(raw.decode("utf-8", errors="replace").rstrip())
            if not line:
                continue
            logger.info("config: %s", line)
            tail.append(line)
            del tail[:-20]
        await proc.wait()
