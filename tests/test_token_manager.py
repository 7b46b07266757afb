from __future__ import annotations

import asyncio
import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from urllib.parse import parse_qsl

import pytest

from pycloudsync._transport import TransportClient
from pycloudsync.auth import TokenManager
from pycloudsync.config import OAuthProfile
from pycloudsync.exceptions import (
    AuthError,
    ConfigError,
    ErrorKind,
    RefreshExpiredError,
    RefreshTransientError,
)
from pycloudsync.models.http import RawResponse
from pycloudsync.session import Session
from pycloudsync.token_store import MemoryTokenStore

TOKEN_URL = "https://auth.test/realms/r/protocol/openid-connect/token"
NOW = 1_800_000_000.0


def _token_body(n: int, *, refresh: bool = True, expires_in: int = 300) -> str:
    payload: dict[str, object] = {"access_token": f"access-{n}", "expires_in": expires_in, "token_type": "Bearer"}
    if refresh:
        payload["refresh_token"] = f"refresh-{n}"
    return json.dumps(payload)


@dataclass
class FakeTokenEndpoint:
    responses: list[RawResponse] = field(default_factory=list)
    delay: float = 0.0
    forms: list[dict[str, str]] = field(default_factory=list)
    issued: int = 0

    async def perform_request(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: str | None,
        timeout: float,
    ) -> RawResponse:
        assert method == "POST"
        assert url == TOKEN_URL
        self.forms.append(dict(parse_qsl(body or "")))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.responses:
            return self.responses.pop(0)
        self.issued += 1
        return RawResponse(status=200, body=_token_body(self.issued))


def _session(access: str = "access-0", *, expires_at: float = NOW + 3600, refresh: str = "refresh-0") -> Session:
    return Session(access_token=access, refresh_token=refresh, expires_at=expires_at)


def _manager(
    endpoint: FakeTokenEndpoint,
    store: MemoryTokenStore,
    *,
    profile: OAuthProfile | None = None,
) -> TokenManager:
    return TokenManager(
        TransportClient(endpoint, timeout=1.0),
        profile or OAuthProfile(token_url=TOKEN_URL),
        store,
        safety_margin=60.0,
        clock=lambda: NOW,
    )


@pytest.mark.asyncio
async def test_valid_session_is_returned_without_refresh() -> None:
    endpoint = FakeTokenEndpoint()
    manager = _manager(endpoint, MemoryTokenStore(_session()))

    session = await manager.acquire_valid_token()

    assert session.access_token == "access-0"
    assert endpoint.forms == []


@pytest.mark.asyncio
async def test_refreshes_inside_safety_margin_and_persists() -> None:
    endpoint = FakeTokenEndpoint()
    store = MemoryTokenStore(_session(expires_at=NOW + 30))
    manager = _manager(endpoint, store)

    session = await manager.acquire_valid_token()

    assert session.access_token == "access-1"
    assert session.expires_at == NOW + 300
    assert endpoint.forms == [{"grant_type": "refresh_token", "client_id": "app-front", "refresh_token": "refresh-0"}]
    assert store.session == session
    assert manager.refresh_count == 1


@pytest.mark.asyncio
async def test_concurrent_acquisitions_share_one_refresh() -> None:
    endpoint = FakeTokenEndpoint(delay=0.02)
    manager = _manager(endpoint, MemoryTokenStore(_session(expires_at=NOW - 1)))

    sessions = await asyncio.gather(*(manager.acquire_valid_token() for _ in range(10)))

    assert len(endpoint.forms) == 1
    assert {s.access_token for s in sessions} == {"access-1"}


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_cancel_shared_refresh() -> None:
    endpoint = FakeTokenEndpoint(delay=0.05)
    manager = _manager(endpoint, MemoryTokenStore(_session(expires_at=NOW - 1)))

    first = asyncio.create_task(manager.acquire_valid_token())
    second = asyncio.create_task(manager.acquire_valid_token())
    await asyncio.sleep(0.01)
    first.cancel()

    session = await second
    assert session.access_token == "access-1"
    assert len(endpoint.forms) == 1


@pytest.mark.asyncio
async def test_invalidate_forces_refresh_and_ignores_stale_tokens() -> None:
    endpoint = FakeTokenEndpoint()
    manager = _manager(endpoint, MemoryTokenStore(_session()))

    rejected = await manager.acquire_valid_token()
    manager.invalidate(rejected)
    fresh = await manager.acquire_valid_token()
    assert fresh.access_token == "access-1"

    # A second request that used the old token reports it late.
    manager.invalidate(rejected)
    again = await manager.acquire_valid_token()
    assert again.access_token == "access-1"
    assert len(endpoint.forms) == 1


@pytest.mark.asyncio
async def test_refresh_token_kept_when_not_rotated() -> None:
    endpoint = FakeTokenEndpoint(responses=[RawResponse(status=200, body=_token_body(7, refresh=False))])
    manager = _manager(endpoint, MemoryTokenStore(_session(expires_at=NOW - 1)))

    session = await manager.acquire_valid_token()

    assert session.access_token == "access-7"
    assert session.refresh_token == "refresh-0"


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [400, 401])
async def test_rejected_refresh_token_clears_session(status: int) -> None:
    endpoint = FakeTokenEndpoint(responses=[RawResponse(status=status, body='{"error": "invalid_grant"}')])
    store = MemoryTokenStore(_session(expires_at=NOW - 1))
    manager = _manager(endpoint, store)

    with pytest.raises(RefreshExpiredError) as excinfo:
        await manager.acquire_valid_token()

    assert excinfo.value.status_code == status
    assert manager.session is None
    assert store.session is None
    assert store.clears == 1

    with pytest.raises(AuthError, match="Not authenticated"):
        await manager.acquire_valid_token()
    assert len(endpoint.forms) == 1


@pytest.mark.asyncio
async def test_transient_refresh_failure_keeps_refresh_token() -> None:
    endpoint = FakeTokenEndpoint(responses=[RawResponse(status=503, body="unavailable")])
    original = _session(expires_at=NOW - 1)
    store = MemoryTokenStore(original)
    manager = _manager(endpoint, store)

    with pytest.raises(RefreshTransientError) as excinfo:
        await manager.acquire_valid_token()

    assert excinfo.value.kind is ErrorKind.HTTP_SERVER_ERROR
    assert store.session == original
    assert store.clears == 0

    session = await manager.acquire_valid_token()
    assert session.access_token == "access-1"
    assert [form["refresh_token"] for form in endpoint.forms] == ["refresh-0", "refresh-0"]


@pytest.mark.asyncio
async def test_missing_refresh_token_is_terminal() -> None:
    endpoint = FakeTokenEndpoint()
    manager = _manager(endpoint, MemoryTokenStore(_session(expires_at=NOW - 1, refresh="")))

    with pytest.raises(RefreshExpiredError):
        await manager.acquire_valid_token()
    assert endpoint.forms == []


@pytest.mark.asyncio
async def test_no_session_raises_auth_error() -> None:
    manager = _manager(FakeTokenEndpoint(), MemoryTokenStore())
    with pytest.raises(AuthError):
        await manager.acquire_valid_token()


@pytest.mark.asyncio
async def test_refresh_without_token_url_is_config_error() -> None:
    manager = _manager(
        FakeTokenEndpoint(),
        MemoryTokenStore(_session(expires_at=NOW - 1)),
        profile=OAuthProfile(token_url=""),
    )
    with pytest.raises(ConfigError):
        await manager.acquire_valid_token()


@pytest.mark.asyncio
async def test_login_with_password_installs_session() -> None:
    endpoint = FakeTokenEndpoint()
    store = MemoryTokenStore()
    profile = OAuthProfile(token_url=TOKEN_URL, client_id="app-front", scope="openid")
    manager = _manager(endpoint, store, profile=profile)

    session = await manager.login_with_password("user@example.com", "hunter2")

    assert session.access_token == "access-1"
    assert store.session == session
    assert endpoint.forms == [
        {
            "grant_type": "password",
            "client_id": "app-front",
            "scope": "openid",
            "username": "user@example.com",
            "password": "hunter2",
        }
    ]
    assert (await manager.acquire_valid_token()) == session


@pytest.mark.asyncio
async def test_login_with_bad_credentials_raises_auth_error() -> None:
    endpoint = FakeTokenEndpoint(responses=[RawResponse(status=401, body='{"error": "invalid_grant"}')])
    store = MemoryTokenStore()
    manager = _manager(endpoint, store)

    with pytest.raises(AuthError, match="Authentication failed"):
        await manager.login_with_password("user@example.com", "wrong")
    assert store.session is None


@pytest.mark.asyncio
async def test_token_response_without_access_token_is_malformed() -> None:
    endpoint = FakeTokenEndpoint(responses=[RawResponse(status=200, body='{"error": "nope"}')])
    manager = _manager(endpoint, MemoryTokenStore(_session(expires_at=NOW - 1)))

    with pytest.raises(RefreshTransientError) as excinfo:
        await manager.acquire_valid_token()
    assert excinfo.value.kind is ErrorKind.MALFORMED_RESPONSE


@pytest.mark.asyncio
async def test_restore_beats_lazy_load() -> None:
    store = MemoryTokenStore(_session("stored"))
    manager = _manager(FakeTokenEndpoint(), store)

    await manager.restore(_session("restored"))

    assert (await manager.acquire_valid_token()).access_token == "restored"
