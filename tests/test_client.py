from __future__ import annotations

import httpx
import pytest
from pydantic import SecretStr

from runner_lifecycle.client import ControlPlaneClient, extract_error_message
from runner_lifecycle.errors import AuthError, NetworkError
from runner_lifecycle.observability import redact
from runner_lifecycle.schemas import OrganizationScope, RepositoryScope

from _helpers import FakeControlPlane


def _client(plane: FakeControlPlane, scope=None) -> ControlPlaneClient:
    return ControlPlaneClient(
        base_url="https://api.github.test/",
        credential=SecretStr("ghp_durable_secret"),
        scope=scope or OrganizationScope(name="acme"),
        timeout=2.0,
        transport=plane.transport(),
    )


@pytest.mark.asyncio
async def test_registration_token_for_organization():
    plane = FakeControlPlane()
    client = _client(plane)

    token = await client.create_registration_token()
    await client.close()

    assert token.value == "tok-1"
    assert token.expires_at is not None
    request = plane.requests[0]
    assert request.method == "POST"
    assert request.url.path == "/orgs/acme/actions/runners/registration-token"
    assert request.headers["Authorization"] == "Bearer ghp_durable_secret"
    assert request.headers["X-GitHub-Api-Version"] == "2022-11-28"


@pytest.mark.asyncio
async def test_registration_token_for_repository():
    plane = FakeControlPlane()
    client = _client(plane, scope=RepositoryScope(owner="acme", name="app"))

    await client.create_registration_token()
    await client.close()

    assert plane.requests[0].url.path == "/repos/acme/app/actions/runners/registration-token"


@pytest.mark.asyncio
async def test_issued_token_is_redacted_from_logs():
    plane = FakeControlPlane(token_body={"token": "AABBCCDD"})
    client = _client(plane)

    await client.create_registration_token()
    await client.close()

    assert redact("--token AABBCCDD") == "--token ***"


@pytest.mark.asyncio
async def test_bad_credentials_raise_auth_error():
    plane = FakeControlPlane(token_status=401, token_body={"message": "Bad credentials"})
    client = _client(plane)

    with pytest.raises(AuthError) as excinfo:
        await client.create_registration_token()
    await client.close()

    assert excinfo.value.status_code == 401
    assert excinfo.value.message == "Bad credentials"
    assert "Bad credentials" in str(excinfo.value)


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [{"token": None}, {"token": ""}, {}])
async def test_missing_token_in_success_response_is_auth_error(body):
    plane = FakeControlPlane(token_status=201, token_body=body)
    client = _client(plane)

    with pytest.raises(AuthError) as excinfo:
        await client.create_registration_token()
    await client.close()

    assert excinfo.value.status_code == 201


@pytest.mark.asyncio
async def test_non_json_error_body():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="<html>Bad gateway</html>")

    client = ControlPlaneClient(
        base_url="https://api.github.test",
        credential=SecretStr("x"),
        scope=OrganizationScope(name="acme"),
        transport=httpx.MockTransport(handler),
    )

    with pytest.raises(AuthError) as excinfo:
        await client.create_registration_token()
    await client.close()

    assert excinfo.value.status_code == 502
    assert excinfo.value.message == "Unknown error"


@pytest.mark.asyncio
async def test_transport_failure_is_network_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = ControlPlaneClient(
        base_url="https://api.github.test",
        credential=SecretStr("x"),
        scope=OrganizationScope(name="acme"),
        transport=httpx.MockTransport(handler),
    )

    with pytest.raises(NetworkError) as excinfo:
        await client.create_registration_token()
    await client.close()

    assert not isinstance(excinfo.value, AuthError)
    assert "connection refused" in str(excinfo.value)


@pytest.mark.asyncio
async def test_deregister_success_and_failure():
    ok_plane = FakeControlPlane(delete_status=204)
    ok_client = _client(ok_plane)
    assert await ok_client.deregister(42) is True
    assert ok_plane.requests[0].url.path == "/orgs/acme/actions/runners/42"
    await ok_client.close()

    bad_plane = FakeControlPlane(delete_status=422)
    bad_client = _client(bad_plane)
    assert await bad_client.deregister(42) is False
    await bad_client.close()


@pytest.mark.asyncio
async def test_deregister_transport_failure_does_not_raise():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    client = ControlPlaneClient(
        base_url="https://api.github.test",
        credential=SecretStr("x"),
        scope=OrganizationScope(name="acme"),
        transport=httpx.MockTransport(handler),
    )

    assert await client.deregister(7) is False
    await client.close()


@pytest.mark.asyncio
async def test_find_runner_id_matches_exact_name():
    plane = FakeControlPlane(
        runners=[
            {"id": 1, "name": "runner-10"},
            {"id": 2, "name": "runner-1"},
        ]
    )
    client = _client(plane)

    assert await client.find_runner_id("runner-1") == 2
    assert await client.find_runner_id("missing") is None
    await client.close()

    assert plane.requests[0].url.params["name"] == "runner-1"


@pytest.mark.parametrize(
    ("payload", "expected"),
    [
        ({"message": "Bad credentials", "detail": "ignored"}, "Bad credentials"),
        ({"detail": "Resource not accessible"}, "Resource not accessible"),
        ({"error": "forbidden"}, "forbidden"),
        ({"errors": [{"message": "Validation failed"}]}, "Validation failed"),
        ({"message": ""}, "Unknown error"),
        ({}, "Unknown error"),
        (["not", "a", "dict"], "Unknown error"),
        (None, "Unknown error"),
    ],
)
def test_extract_error_message_fallback_chain(payload, expected):
    assert extract_error_message(payload) == expected
