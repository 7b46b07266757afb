"""OAuth2 token lifecycle.

:class:`TokenManager` is the only owner of the :class:`Session`.  Every
poll cycle and command asks it for a valid token; when the access token
is about to expire it refreshes first.  Refreshes are single-flight:
callers arriving while a refresh is running await the same task.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable

from pycloudsync._api.oauth import (
    build_password_request,
    build_refresh_request,
    is_terminal_grant_failure,
    parse_token_response,
)
from pycloudsync._redact import mask_token
from pycloudsync._transport import TransportClient
from pycloudsync.config import OAuthProfile
from pycloudsync.exceptions import (
    AuthError,
    ConfigError,
    RefreshExpiredError,
    RefreshTransientError,
    TransportError,
)
from pycloudsync.session import Session
from pycloudsync.token_store import TokenStore

_logger = logging.getLogger(__name__)


class TokenManager:
    """Owns the session and hands out valid access tokens.

    Parameters
    ----------
    transport : TransportClient
        Used for token endpoint calls (unauthenticated).
    profile : OAuthProfile
        Token URL and client identity.
    store : TokenStore
        Persistence for the session; read lazily on first use.
    safety_margin : float
        Seconds before expiry at which a token is no longer handed out.
    clock : callable
        Wall-clock source (epoch seconds).
    """

    def __init__(
        self,
        transport: TransportClient,
        profile: OAuthProfile,
        store: TokenStore,
        *,
        safety_margin: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._transport = transport
        self._profile = profile
        self._store = store
        self._safety_margin = safety_margin
        self._clock = clock
        self._session: Session | None = None
        self._loaded = False
        self._refresh_task: asyncio.Task[Session] | None = None
        self.refresh_count = 0

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def refresh_in_progress(self) -> bool:
        return self._refresh_task is not None and not self._refresh_task.done()

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        stored = await self._store.load()
        # restore() may have won the race while the store was read.
        if not self._loaded:
            self._loaded = True
            self._session = stored

    async def acquire_valid_token(self) -> Session:
        """Return a session whose access token is usable right now.

        Raises
        ------
        AuthError
            No session, or the refresh token was rejected.
        RefreshTransientError
            The refresh failed for a transient reason; retryable.
        """
        await self._ensure_loaded()

        if self.refresh_in_progress:
            return await self._join_refresh()

        session = self._session
        if session is None:
            raise AuthError("Not authenticated: no session available")
        if not session.expires_within(self._safety_margin, now=self._clock()):
            return session

        _logger.debug(
            "Access token %s expires within %.0fs; refreshing",
            mask_token(session.access_token),
            self._safety_margin,
        )
        return await self._join_refresh()

    def invalidate(self, session: Session) -> None:
        """Mark *session*'s access token unusable after the API rejected it.

        Ignored when the current session already carries a different
        access token, so concurrent rejections of the same token lead to
        a single refresh.
        """
        current = self._session
        if current is None or current.access_token != session.access_token:
            return
        _logger.info("Access token %s rejected by API; forcing refresh", mask_token(session.access_token))
        self._session = current.expired_copy()

    async def refresh(self) -> Session:
        """Force a refresh now (joins a running one if present)."""
        await self._ensure_loaded()
        return await self._join_refresh()

    async def _join_refresh(self) -> Session:
        task = self._refresh_task
        if task is None or task.done():
            task = asyncio.get_running_loop().create_task(self._run_refresh())
            task.add_done_callback(self._on_refresh_done)
            self._refresh_task = task
        # A caller being cancelled must not cancel the refresh others wait on.
        return await asyncio.shield(task)

    def _on_refresh_done(self, task: asyncio.Task[Session]) -> None:
        if self._refresh_task is task:
            self._refresh_task = None
        if not task.cancelled():
            # Mark the exception retrieved even if every waiter went away.
            task.exception()

    async def _run_refresh(self) -> Session:
        session = self._session
        if session is None or not session.refresh_token:
            await self._drop_session()
            raise RefreshExpiredError("No refresh token available; re-authentication required")

        if not self._profile.token_url:
            raise ConfigError("oauth.token_url is required to refresh tokens")

        request = build_refresh_request(self._profile, session.refresh_token)
        try:
            response = await self._transport.send(request)
            new_session = parse_token_response(
                response,
                now=self._clock(),
                previous_refresh_token=session.refresh_token,
            )
        except TransportError as exc:
            if is_terminal_grant_failure(exc):
                _logger.warning("Refresh token rejected (HTTP %s); session cleared", exc.status_code)
                await self._drop_session()
                raise RefreshExpiredError(
                    f"Refresh token rejected: {exc}",
                    status_code=exc.status_code,
                ) from exc
            _logger.info("Token refresh failed transiently (%s): %s", exc.kind.value, exc)
            raise RefreshTransientError(
                f"Token refresh failed: {exc}",
                kind=exc.kind,
                status_code=exc.status_code,
                url=exc.url,
            ) from exc

        self._session = new_session
        self.refresh_count += 1
        await self._store.save(new_session)
        _logger.debug(
            "Token refreshed; new access token %s valid for %.0fs",
            mask_token(new_session.access_token),
            new_session.expires_at - self._clock(),
        )
        return new_session

    async def login_with_password(self, username: str, password: str) -> Session:
        """Obtain a fresh session with the resource-owner password grant.

        Raises
        ------
        AuthError
            The credentials were rejected.
        TransportError
            Network or server failure; nothing was stored.
        """
        if not self._profile.token_url:
            raise ConfigError("oauth.token_url is required to log in")
        request = build_password_request(self._profile, username, password)
        try:
            response = await self._transport.send(request)
        except TransportError as exc:
            if is_terminal_grant_failure(exc):
                raise AuthError(f"Authentication failed: HTTP {exc.status_code}") from exc
            raise
        session = parse_token_response(response, now=self._clock())
        await self.restore(session)
        _logger.info("Logged in; access token %s", mask_token(session.access_token))
        return session

    async def restore(self, session: Session) -> None:
        """Install a session obtained elsewhere and persist it."""
        self._loaded = True
        self._session = session
        await self._store.save(session)

    async def clear(self) -> None:
        """Forget the session everywhere (forces re-authentication)."""
        await self._drop_session()

    async def _drop_session(self) -> None:
        self._loaded = True
        self._session = None
        await self._store.clear()

    async def close(self) -> None:
        """Cancel a refresh still running at shutdown."""
        task = self._refresh_task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
