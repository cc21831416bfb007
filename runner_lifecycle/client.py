"""Control-plane client: registration tokens and runner deregistration."""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import SecretStr, ValidationError

from runner_lifecycle.errors import AuthError, NetworkError
from runner_lifecycle.observability import register_secret
from runner_lifecycle.schemas import OrganizationScope, RegistrationToken, RepositoryScope


logger = logging.getLogger(__name__)

API_VERSION = "2022-11-28"
UNKNOWN_ERROR = "Unknown error"


def extract_error_message(payload: Any) -> str:
    """Pull a human-readable error out of a control-plane response body.

    Error details come back under several shapes, so this walks
    ``message``, ``detail``, ``error`` and ``errors[0].message`` in order.
    """
    if not isinstance(payload, dict):
        return UNKNOWN_ERROR
    for key in ("message", "detail", "error"):
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value
    errors = payload.get("errors")
    if isinstance(errors, list) and errors:
        first = errors[0]
        if isinstance(first, dict) and isinstance(first.get("message"), str) and first["message"].strip():
            return first["message"]
        if isinstance(first, str) and first.strip():
            return first
    return UNKNOWN_ERROR


def _json_or_empty(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return {}


class ControlPlaneClient:
    """Client used by the lifecycle manager to talk to the control plane.

    Every call is bounded by ``timeout`` seconds; nothing is retried.
    """

    def __init__(
        self,
        base_url: str,
        credential: SecretStr,
        scope: RepositoryScope | OrganizationScope,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.scope = scope
        self.timeout = timeout
        self._credential = credential
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={
                    "Accept": "application/vnd.github+json",
                    "Authorization": f"Bearer {self._credential.get_secret_value()}",
                    "X-GitHub-Api-Version": API_VERSION,
                },
            )
        return self._client

    async def close(self) -> None:
        """Close the underlying connection pool."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def _runners_path(self) -> str:
        return f"/{self.scope.api_path}/actions/runners"

    async def create_registration_token(self) -> RegistrationToken:
        """Exchange the durable credential for a fresh registration token."""
        client = await self._get_client()
        path = f"{self._runners_path()}/registration-token"
        logger.info("registration_token_requested", extra={"scope": self.scope.html_path})
        try:
            response = await client.post(path)
        except httpx.HTTPError as exc:
            raise NetworkError(f"POST {path} failed: {exc.__class__.__name__}: {exc}") from exc

        payload = _json_or_empty(response)
        if not response.is_success:
            raise AuthError(response.status_code, extract_error_message(payload))

        raw_token = payload.get("token") if isinstance(payload, dict) else None
        if not isinstance(raw_token, str) or not raw_token.strip():
            message = extract_error_message(payload)
            if message == UNKNOWN_ERROR:
                message = "response did not contain a registration token"
            raise AuthError(response.status_code, message)

        register_secret(raw_token)
        try:
            token = RegistrationToken(value=raw_token, expires_at=payload.get("expires_at"))
        except ValidationError:
            token = RegistrationToken(value=raw_token)
        logger.info(
            "registration_token_issued",
            extra={"scope": self.scope.html_path, "expires_at": token.expires_at},
        )
        return token

    async def deregister(self, runner_id: int) -> bool:
        """Remove a runner registration. Failures are logged, never raised."""
        client = await self._get_client()
        path = f"{self._runners_path()}/{runner_id}"
        try:
            response = await client.delete(path)
        except httpx.HTTPError as exc:
            logger.warning(
                "runner_deregistration_failed",
                extra={"runner_id": runner_id, "error": f"{exc.__class__.__name__}: {exc}"},
            )
            return False

        if response.is_success:
            logger.info("runner_deregistered", extra={"runner_id": runner_id})
            return True

        logger.warning(
            "runner_deregistration_failed",
            extra={
                "runner_id": runner_id,
                "status_code": response.status_code,
                "error": extract_error_message(_json_or_empty(response)),
            },
        )
        return False

    async def find_runner_id(self, name: str) -> int | None:
        """Look up a runner's server-side id by exact name."""
        client = await self._get_client()
        try:
            response = await client.get(self._runners_path(), params={"name": name})
        except httpx.HTTPError as exc:
            logger.warning("runner_lookup_failed", extra={"runner_name": name, "error": str(exc)})
            return None

        payload = _json_or_empty(response)
        if not response.is_success:
            logger.warning(
                "runner_lookup_failed",
                extra={
                    "runner_name": name,
                    "status_code": response.status_code,
                    "error": extract_error_message(payload),
                },
            )
            return None

        runners = payload.get("runners") if isinstance(payload, dict) else None
        for runner in runners or []:
            if isinstance(runner, dict) and runner.get("name") == name and isinstance(runner.get("id"), int):
                return runner["id"]
        return None
