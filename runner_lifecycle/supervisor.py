"""Foreground supervision of the job-execution process."""

from __future__ import annotations

import asyncio
import logging
import os
import pwd
import signal
from collections.abc import Sequence
from pathlib import Path

from runner_lifecycle.errors import SupervisorError


logger = logging.getLogger(__name__)


def resolve_run_user(run_as_privileged: bool, user_name: str) -> str | None:
    """Return the account to drop to, or None to run as ourselves."""
    if run_as_privileged:
        return None
    if os.geteuid() != 0:
        return None
    return user_name


def normalize_exit_code(returncode: int) -> int:
    # asyncio reports death-by-signal as a negative return code.
    if returncode < 0:
        return 128 + (-returncode)
    return returncode


def _chown_tree(root: Path, uid: int, gid: int) -> None:
    for dirpath, dirnames, filenames in os.walk(root):
        for name in (*dirnames, *filenames):
            os.chown(os.path.join(dirpath, name), uid, gid, follow_symlinks=False)
    os.chown(root, uid, gid)


class ProcessSupervisor:
    """Launches the job-execution command and waits for it to finish.

    The child is never restarted: its exit ends the manager's run.
    """

    def __init__(
        self,
        command: Sequence[str],
        cwd: Path,
        run_as_privileged: bool = False,
        user_name: str = "runner",
    ) -> None:
        self.command = list(command)
        self.cwd = Path(cwd)
        self.run_as_privileged = run_as_privileged
        self.user_name = user_name
        self._proc: asyncio.subprocess.Process | None = None

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    def _prepare_user(self, user: str) -> pwd.struct_passwd:
        try:
            account = pwd.getpwnam(user)
        except KeyError as exc:
            raise SupervisorError(f"unprivileged account {user!r} does not exist") from exc

        try:
            _chown_tree(self.cwd, account.pw_uid, account.pw_gid)
        except OSError as exc:
            logger.warning("runner_home_chown_failed", extra={"path": str(self.cwd), "error": str(exc)})
        return account

    async def start(self) -> int:
        """Launch the child inheriting our standard streams; returns its pid."""
        if self._proc is not None:
            raise RuntimeError("job-execution process already started")
        if not self.command:
            raise SupervisorError("no job-execution command configured")

        env = dict(os.environ)
        user = resolve_run_user(self.run_as_privileged, self.user_name)
        kwargs: dict = {}
        if user is not None:
            account = self._prepare_user(user)
            env.update({"HOME": account.pw_dir, "USER": account.pw_name, "LOGNAME": account.pw_name})
            # Drop the supplementary groups too, not only the uid.
            kwargs["user"] = account.pw_uid
            kwargs["group"] = account.pw_gid
            kwargs["extra_groups"] = os.getgrouplist(account.pw_name, account.pw_gid)
            logger.info(
                "job_process_dropping_privileges",
                extra={"user": account.pw_name, "uid": account.pw_uid, "gid": account.pw_gid},
            )
        elif os.geteuid() == 0:
            logger.warning("job_process_running_privileged")

        try:
            self._proc = await asyncio.create_subprocess_exec(
                *self.command,
                cwd=str(self.cwd),
                env=env,
                **kwargs,
            )
        except (OSError, ValueError) as exc:
            raise SupervisorError(f"failed to launch {self.command[0]!r} in {self.cwd}: {exc}") from exc

        logger.info("job_process_started", extra={"pid": self._proc.pid, "command": self.command[0]})
        return self._proc.pid

    async def wait(self) -> int:
        """Wait for the child to exit and return its normalized exit code."""
        if self._proc is None:
            raise RuntimeError("job-execution process not started")
        returncode = await self._proc.wait()
        code = normalize_exit_code(returncode)
        logger.info("job_process_exited", extra={"pid": self._proc.pid, "exit_code": code})
        return code

    async def stop(self, signum: int = signal.SIGTERM, grace: float = 10.0) -> int | None:
        """Forward ``signum`` to the child, killing it if it outlives ``grace``."""
        if self._proc is None:
            return None
        if self._proc.returncode is None:
            logger.info("job_process_signalled", extra={"pid": self._proc.pid, "signal": signal.Signals(signum).name})
            try:
                self._proc.send_signal(signum)
                await asyncio.wait_for(self._proc.wait(), timeout=grace)
            except ProcessLookupError:
                await self._proc.wait()
            except asyncio.TimeoutError:
                logger.warning("job_process_kill", extra={"pid": self._proc.pid, "grace_seconds": grace})
                try:
                    self._proc.kill()
                except ProcessLookupError:
                    pass
                await self._proc.wait()
        return normalize_exit_code(self._proc.returncode)
