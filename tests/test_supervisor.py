from __future__ import annotations

import asyncio
import os
import pwd
import shlex
import shutil
import signal
import tempfile
from pathlib import Path

import pytest

import runner_lifecycle.supervisor as supervisor_module
from runner_lifecycle.errors import SupervisorError
from runner_lifecycle.supervisor import ProcessSupervisor, normalize_exit_code, resolve_run_user

from _helpers import python_command


def _supervisor(tmp_path, code: str, **kwargs) -> ProcessSupervisor:
    return ProcessSupervisor(
        command=shlex.split(python_command(code)),
        cwd=tmp_path,
        run_as_privileged=kwargs.pop("run_as_privileged", True),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_child_exit_code_is_propagated(tmp_path):
    supervisor = _supervisor(tmp_path, "import sys; sys.exit(7)")

    await supervisor.start()

    assert await supervisor.wait() == 7
    assert supervisor.running is False


@pytest.mark.asyncio
async def test_child_runs_in_runner_home(tmp_path):
    supervisor = _supervisor(tmp_path, "import pathlib; pathlib.Path('marker').write_text('ok')")

    await supervisor.start()
    await supervisor.wait()

    assert (tmp_path / "marker").read_text() == "ok"


@pytest.mark.asyncio
async def test_stop_forwards_signal(tmp_path):
    supervisor = _supervisor(tmp_path, "import time; time.sleep(30)")
    await supervisor.start()

    code = await supervisor.stop(signal.SIGTERM, grace=5.0)

    assert code == 128 + signal.SIGTERM
    assert supervisor.running is False


@pytest.mark.asyncio
async def test_stop_kills_child_that_ignores_signal(tmp_path):
    code = (
        "import signal, sys, time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        "time.sleep(30)\n"
    )
    supervisor = _supervisor(tmp_path, code)
    await supervisor.start()
    # Give the child time to install its handler.
    await asyncio.sleep(0.5)

    result = await supervisor.stop(signal.SIGTERM, grace=0.5)

    assert result == 128 + signal.SIGKILL


@pytest.mark.asyncio
async def test_stop_before_start_is_a_no_op(tmp_path):
    assert await _supervisor(tmp_path, "pass").stop() is None


@pytest.mark.asyncio
async def test_missing_command_raises_supervisor_error(tmp_path):
    supervisor = ProcessSupervisor(command=["./run.sh"], cwd=tmp_path, run_as_privileged=True)

    with pytest.raises(SupervisorError):
        await supervisor.start()


@pytest.mark.asyncio
async def test_unknown_unprivileged_account(monkeypatch, tmp_path):
    monkeypatch.setattr(supervisor_module.os, "geteuid", lambda: 0)
    supervisor = _supervisor(tmp_path, "pass", run_as_privileged=False, user_name="no-such-user-xyz")

    with pytest.raises(SupervisorError) as excinfo:
        await supervisor.start()

    assert "no-such-user-xyz" in str(excinfo.value)


@pytest.mark.asyncio
@pytest.mark.skipif(os.geteuid() != 0, reason="dropping privileges needs root")
async def test_unprivileged_child_gets_account_groups():
    account = pwd.getpwnam("nobody")
    # The default tmp_path is only reachable by root.
    home = Path(tempfile.mkdtemp(prefix="runner-home-"))
    try:
        supervisor = ProcessSupervisor(
            command=["/bin/sh", "-c", "id -u > uid.txt; id -g > gid.txt; id -G > groups.txt"],
            cwd=home,
            run_as_privileged=False,
            user_name="nobody",
        )

        await supervisor.start()
        assert await supervisor.wait() == 0

        assert int((home / "uid.txt").read_text()) == account.pw_uid
        assert int((home / "gid.txt").read_text()) == account.pw_gid
        groups = {int(gid) for gid in (home / "groups.txt").read_text().split()}
        assert groups == set(os.getgrouplist(account.pw_name, account.pw_gid))
        assert 0 not in groups
    finally:
        shutil.rmtree(home, ignore_errors=True)


def test_resolve_run_user(monkeypatch):
    monkeypatch.setattr(supervisor_module.os, "geteuid", lambda: 0)
    assert resolve_run_user(False, "runner") == "runner"
    assert resolve_run_user(True, "runner") is None

    monkeypatch.setattr(supervisor_module.os, "geteuid", lambda: 1000)
    assert resolve_run_user(False, "runner") is None


def test_normalize_exit_code():
    assert normalize_exit_code(0) == 0
    assert normalize_exit_code(7) == 7
    assert normalize_exit_code(-signal.SIGTERM) == 143
