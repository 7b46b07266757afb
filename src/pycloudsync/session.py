"""OAuth2 session state for authenticated API calls."""

from __future__ import annotations

import time
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from pycloudsync._constants import DEFAULT_TOKEN_TTL


class Session(BaseModel):
    """Immutable OAuth2 token set.

    Parameters
    ----------
    access_token : str
        Bearer token sent with every API request.
    refresh_token : str
        Token exchanged at the token endpoint for a new access token.
        Empty when the provider issued none.
    expires_at : float
        Absolute expiry of ``access_token`` as epoch seconds.  Wall-clock
        based because sessions are persisted across restarts.
    token_type : str
        Authorization scheme, normally ``Bearer``.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        str_strip_whitespace=True,
    )

    access_token: str = Field(min_length=1)
    refresh_token: str = ""
    expires_at: float
    token_type: str = "Bearer"

    @classmethod
    def from_token_response(
        cls,
        payload: Mapping[str, Any],
        *,
        now: float | None = None,
        previous_refresh_token: str = "",
    ) -> Session:
        """Build a session from a token endpoint JSON body.

        Providers that do not rotate refresh tokens omit ``refresh_token``
        on refresh; the previous one is kept in that case.
        """
        issued_at = time.time() if now is None else now
        expires_in = payload.get("expires_in")
        try:
            lifetime = float(expires_in) if expires_in is not None else DEFAULT_TOKEN_TTL
        except (TypeError, ValueError):
            lifetime = DEFAULT_TOKEN_TTL
        return cls(
            access_token=str(payload.get("access_token") or ""),
            refresh_token=str(payload.get("refresh_token") or previous_refresh_token),
            expires_at=issued_at + lifetime,
            token_type=str(payload.get("token_type") or "Bearer"),
        )

    def expires_within(self, margin: float, *, now: float | None = None) -> bool:
        """Whether the access token expires less than *margin* seconds from *now*."""
        current = time.time() if now is None else now
        return current >= self.expires_at - margin

    @property
    def is_expired(self) -> bool:
        return self.expires_within(0.0)

    @property
    def authorization(self) -> str:
        """Value for the ``Authorization`` header."""
        return f"{self.token_type} {self.access_token}"

    def expired_copy(self) -> Session:
        """Same tokens, but already expired so the next use forces a refresh."""
        return self.model_copy(update={"expires_at": 0.0})
