"""Entrypoint and state machine for the runner lifecycle manager."""

from __future__ import annotations

import argparse
import asyncio
import logging
import shlex
import signal
import sys
from pathlib import Path

from pydantic import ValidationError

from runner_lifecycle.client import ControlPlaneClient
from runner_lifecycle.config import RunnerSettings, get_runner_settings, load_worker_config
from runner_lifecycle.errors import ConfigValidationError, LifecycleError
from runner_lifecycle.identity import IdentityConfigurator, IdentityStore, seed_runner_distribution
from runner_lifecycle.observability import configure_logging, register_secret
from runner_lifecycle.schemas import ALLOWED_TRANSITIONS, LifecycleState, WorkerConfig
from runner_lifecycle.shutdown import ShutdownCoordinator, ShutdownRequest
from runner_lifecycle.supervisor import ProcessSupervisor


logger = logging.getLogger(__name__)

TERMINATION_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class LifecycleManager:
    """Drives one runner identity from configuration to termination."""

    def __init__(
        self,
        config: WorkerConfig,
        settings: RunnerSettings,
        shutdown: ShutdownRequest | None = None,
        client: ControlPlaneClient | None = None,
    ) -> None:
        self.config = config
        self.settings = settings
        self.shutdown_request = shutdown or ShutdownRequest()
        self.state = LifecycleState.unconfigured

        self.client = client or ControlPlaneClient(
            base_url=settings.github_api_url,
            credential=config.credential,
            scope=config.scope,
            timeout=settings.http_timeout_seconds,
        )
        self.store = IdentityStore(config.runner_home)
        self.configurator = IdentityConfigurator(
            store=self.store,
            command=shlex.split(settings.runner_config_command),
            github_url=settings.github_url,
            timeout=settings.configure_timeout_seconds,
        )
        self.supervisor = ProcessSupervisor(
            command=shlex.split(settings.runner_run_command),
            cwd=config.runner_home,
            run_as_privileged=config.run_as_privileged,
            user_name=settings.runner_user,
        )
        self.coordinator = ShutdownCoordinator(
            client=self.client,
            store=self.store,
            runner_name=config.identity_name,
            timeout=settings.shutdown_timeout_seconds,
        )

    def request_shutdown(self, signum: int = signal.SIGTERM) -> None:
        """Trigger graceful shutdown."""
        self.shutdown_request.request(signum)

    def _transition(self, target: LifecycleState) -> None:
        if target not in ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(f"illegal lifecycle transition {self.state.value} -> {target.value}")
        logger.info("lifecycle_transition", extra={"from_state": self.state.value, "to_state": target.value})
        self.state = target

    async def _configure(self) -> None:
        seed_dir = Path(self.settings.runner_seed_dir) if self.settings.runner_seed_dir else None
        seed_runner_distribution(self.config.runner_home, seed_dir)
        await self.configurator.ensure_configured(self.config, self.client.create_registration_token)

    async def _shut_down(self, signum: int, *, stop_child: bool) -> int:
        self._transition(LifecycleState.shutting_down)
        if stop_child:
            await self.supervisor.stop(signum, grace=self.settings.shutdown_grace_seconds)
        code = await self.coordinator.shutdown()
        self._transition(LifecycleState.terminated)
        return code

    def _fail(self, exc: LifecycleError) -> int:
        logger.error("lifecycle_failed", extra={"stage": exc.stage, "error": str(exc), "exit_code": exc.exit_code})
        return exc.exit_code

    async def run(self) -> int:
        """Run the lifecycle to completion and return the process exit code."""
        logger.info(
            "runner_starting",
            extra={
                "runner_name": self.config.identity_name,
                "scope": self.config.scope.html_path,
                "labels": self.config.labels_arg,
                "group": self.config.group,
                "runner_home": str(self.config.runner_home),
            },
        )
        try:
            return await self._run()
        finally:
            await self.client.close()

    async def _run(self) -> int:
        if self.config.cleanup_existing and self.store.has_local_state() and not self.shutdown_request.is_set():
            # Not cancellable by a signal; the runner is deregistered at most once.
            logger.warning("existing_identity_cleanup", extra={"runner_name": self.config.identity_name})
            await self.coordinator.shutdown()

        if self.shutdown_request.is_set():
            return await self._shut_down(await self.shutdown_request.wait(), stop_child=False)

        self._transition(LifecycleState.configuring)
        configure_task = asyncio.create_task(self._configure())
        shutdown_task = asyncio.create_task(self.shutdown_request.wait())
        try:
            await asyncio.wait({configure_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)

            if not configure_task.done():
                configure_task.cancel()
                await asyncio.gather(configure_task, return_exceptions=True)
                return await self._shut_down(shutdown_task.result(), stop_child=False)

            try:
                configure_task.result()
            except LifecycleError as exc:
                self._transition(LifecycleState.unconfigured)
                return self._fail(exc)
            self._transition(LifecycleState.configured)

            if self.shutdown_request.is_set():
                return await self._shut_down(await self.shutdown_request.wait(), stop_child=False)

            try:
                await self.supervisor.start()
            except LifecycleError as exc:
                self._transition(LifecycleState.terminated)
                return self._fail(exc)
            self._transition(LifecycleState.running)

            child_task = asyncio.create_task(self.supervisor.wait())
            await asyncio.wait({child_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)

            if shutdown_task.done():
                code = await self._shut_down(shutdown_task.result(), stop_child=True)
                await asyncio.gather(child_task, return_exceptions=True)
                return code

            exit_code = child_task.result()
            self._transition(LifecycleState.terminated)
            if self.config.ephemeral:
                # The control plane drops ephemeral runners after their job.
                self.store.purge()
            return exit_code
        finally:
            if not shutdown_task.done():
                shutdown_task.cancel()


async def run_cleanup(config: WorkerConfig, settings: RunnerSettings) -> int:
    """Deregister and purge any existing identity, then exit."""
    manager = LifecycleManager(config, settings)
    try:
        return await manager.coordinator.shutdown()
    finally:
        await manager.client.close()


async def run_manager(settings: RunnerSettings | None = None, *, cleanup: bool = False) -> int:
    """Validate configuration and run the lifecycle until exit."""
    resolved_settings = settings or get_runner_settings()
    shutdown = ShutdownRequest()
    loop = asyncio.get_running_loop()

    installed: list[int] = []
    for sig in TERMINATION_SIGNALS:
        try:
            loop.add_signal_handler(sig, shutdown.request, sig)
            installed.append(sig)
        except NotImplementedError:
            pass

    try:
        try:
            config = load_worker_config(resolved_settings)
        except ConfigValidationError as exc:
            logger.error("configuration_invalid", extra={"stage": exc.stage, "problems": exc.problems})
            return exc.exit_code
        register_secret(config.credential.get_secret_value())

        if cleanup:
            return await run_cleanup(config, resolved_settings)
        return await LifecycleManager(config, resolved_settings, shutdown=shutdown).run()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="runner-lifecycle",
        description=(
            "Register a self-hosted CI runner, supervise its job process and "
            "deregister it on SIGINT/SIGTERM. Configuration is read from the "
            "environment (GITHUB_TOKEN, GITHUB_REPOSITORY or GITHUB_OWNER, "
            "RUNNER_NAME, RUNNER_LABELS, RUNNER_GROUP, RUNNER_WORKDIR, "
            "RUNNER_AS_ROOT, RUNNER_REPLACE_EXISTING, RUNNER_EPHEMERAL)."
        ),
    )
    parser.add_argument(
        "--cleanup",
        action="store_true",
        help="deregister any configured identity, remove its local state and exit",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entrypoint for the lifecycle manager."""
    args = build_parser().parse_args(argv)
    try:
        settings = get_runner_settings()
    except ValidationError as exc:
        configure_logging()
        problems = [f"{'.'.join(str(part) for part in err['loc']).upper()}: {err['msg']}" for err in exc.errors()]
        logger.error("configuration_invalid", extra={"stage": ConfigValidationError.stage, "problems": problems})
        sys.exit(ConfigValidationError.exit_code)
    configure_logging(settings.log_level)
    sys.exit(asyncio.run(run_manager(settings, cleanup=args.cleanup)))


if __name__ == "__main__":
    main()
