"""OAuth2 token endpoint.

Grants:
  - ``password`` (initial pairing with user credentials)
  - ``refresh_token`` (session renewal)

Both are form-encoded POSTs to the realm's token URL.
"""

from __future__ import annotations

import logging
from typing import Any

from pycloudsync._redact import redact_for_log
from pycloudsync.config import OAuthProfile
from pycloudsync.exceptions import ErrorKind, TransportError
from pycloudsync.models.http import ApiRequest, ApiResponse, HttpMethod
from pycloudsync.session import Session

_logger = logging.getLogger(__name__)


def _client_fields(profile: OAuthProfile) -> dict[str, str]:
    fields = {"client_id": profile.client_id}
    if profile.client_secret:
        fields["client_secret"] = profile.client_secret
    if profile.scope:
        fields["scope"] = profile.scope
    return fields


def build_password_request(profile: OAuthProfile, username: str, password: str) -> ApiRequest:
    return ApiRequest(
        method=HttpMethod.POST,
        url=profile.token_url,
        form={
            "grant_type": "password",
            **_client_fields(profile),
            "username": username,
            "password": password,
        },
    )


def build_refresh_request(profile: OAuthProfile, refresh_token: str) -> ApiRequest:
    return ApiRequest(
        method=HttpMethod.POST,
        url=profile.token_url,
        form={
            "grant_type": "refresh_token",
            **_client_fields(profile),
            "refresh_token": refresh_token,
        },
    )


def parse_token_response(
    response: ApiResponse,
    *,
    now: float,
    previous_refresh_token: str = "",
) -> Session:
    """Turn a token endpoint body into a :class:`Session`.

    Raises
    ------
    TransportError
        ``malformed_response`` when the body is not a token object.
    """
    data: Any = response.data
    if not isinstance(data, dict) or not data.get("access_token"):
        raise TransportError(
            "Token endpoint returned no access_token",
            kind=ErrorKind.MALFORMED_RESPONSE,
            status_code=response.status_code,
        )
    _logger.debug("Token response parsed=%s", redact_for_log(data))
    return Session.from_token_response(data, now=now, previous_refresh_token=previous_refresh_token)


def is_terminal_grant_failure(exc: TransportError) -> bool:
    """Whether a token endpoint failure means the grant itself is dead.

    Keycloak answers an expired or revoked refresh token with
    ``400 invalid_grant``; some providers use 401.  Any other 4xx is
    terminal as well since repeating the same grant cannot succeed.
    """
    if exc.kind in (ErrorKind.AUTH_REJECTED, ErrorKind.HTTP_CLIENT_ERROR):
        return True
    return False
