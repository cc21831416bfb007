"""Signal-driven shutdown: deregistration and local cleanup."""

from __future__ import annotations

import asyncio
import logging
import signal

from runner_lifecycle.client import ControlPlaneClient
from runner_lifecycle.identity import IdentityStore


logger = logging.getLogger(__name__)


class ShutdownRequest:
    """Single channel from signal handlers to the lifecycle control loop.

    Only the first signal counts; later ones are logged and dropped.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.signum: int | None = None

    def request(self, signum: int = signal.SIGTERM) -> None:
        if self._event.is_set():
            logger.info("shutdown_already_requested", extra={"signal": signal.Signals(signum).name})
            return
        self.signum = signum
        logger.warning("shutdown_requested", extra={"signal": signal.Signals(signum).name})
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> int:
        await self._event.wait()
        return self.signum if self.signum is not None else signal.SIGTERM


class ShutdownCoordinator:
    """Deregisters the runner identity and removes its local state."""

    def __init__(
        self,
        client: ControlPlaneClient,
        store: IdentityStore,
        runner_name: str,
        timeout: float = 20.0,
    ) -> None:
        self.client = client
        self.store = store
        self.runner_name = runner_name
        self.timeout = timeout

    async def _resolve_runner_id(self) -> int | None:
        runner_id = self.store.lookup_runner_id(self.runner_name)
        if runner_id is None:
            runner_id = await self.client.find_runner_id(self.runner_name)
        return runner_id

    async def _deregister(self) -> None:
        runner_id = await self._resolve_runner_id()
        if runner_id is None:
            logger.warning("runner_id_not_found", extra={"runner_name": self.runner_name})
            return
        await self.client.deregister(runner_id)

    async def shutdown(self) -> int:
        """Run the cleanup path; always returns exit code 0."""
        if not self.store.has_local_state():
            logger.info("shutdown_without_identity", extra={"runner_name": self.runner_name})
            return 0

        logger.info("runner_cleanup_started", extra={"runner_name": self.runner_name})
        try:
            await asyncio.wait_for(self._deregister(), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "runner_deregistration_timed_out",
                extra={"runner_name": self.runner_name, "timeout_seconds": self.timeout},
            )
        self.store.purge()
        logger.info("runner_cleanup_completed", extra={"runner_name": self.runner_name})
        return 0
