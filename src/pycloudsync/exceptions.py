"""Custom exception hierarchy for pycloudsync."""

from __future__ import annotations

import enum


class ErrorKind(enum.StrEnum):
    """Classification attached to every :class:`TransportError`."""

    TIMEOUT = "timeout"
    CONNECTION_FAILURE = "connection_failure"
    HTTP_CLIENT_ERROR = "http_client_error"
    HTTP_SERVER_ERROR = "http_server_error"
    AUTH_REJECTED = "auth_rejected"
    MALFORMED_RESPONSE = "malformed_response"


class CloudSyncError(Exception):
    """Base exception for all pycloudsync errors."""


class ConfigError(CloudSyncError):
    """Invalid or missing configuration."""


class AuthError(CloudSyncError):
    """The session cannot be used and the user must re-authenticate.

    Never retried.  The engine reports it through ``on_auth_error`` and
    pauses polling until a valid session is restored.
    """


class RefreshExpiredError(AuthError):
    """The refresh token itself was rejected by the token endpoint."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class TransportError(CloudSyncError):
    """HTTP-level failure (network, timeout, non-2xx, undecodable body)."""

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind,
        status_code: int | None = None,
        url: str = "",
    ) -> None:
        self.kind = kind
        self.status_code = status_code
        self.url = url
        super().__init__(message)


class RefreshTransientError(TransportError):
    """Token refresh failed for a transient reason.

    The stored refresh token stays valid; the surrounding cycle may retry.
    """


class CommandValidationError(CloudSyncError):
    """A command was rejected locally before any network call."""


class UnknownDeviceError(CommandValidationError):
    """The device id is not registered with the engine."""

    def __init__(self, device_id: str) -> None:
        self.device_id = device_id
        super().__init__(f"Unknown device: {device_id}")
