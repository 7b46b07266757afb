"""Engine configuration for pycloudsync."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from pycloudsync._constants import (
    DEFAULT_BASE_BACKOFF_MS,
    DEFAULT_INITIAL_POLL_JITTER,
    DEFAULT_MAX_BACKOFF_MS,
    DEFAULT_MAX_RETRY_ATTEMPTS,
    DEFAULT_MAX_RETRY_ELAPSED,
    DEFAULT_NORMAL_POLL_INTERVAL,
    DEFAULT_QUICK_POLL_DECAY_COUNT,
    DEFAULT_QUICK_POLL_INTERVAL,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_TOKEN_REFRESH_SAFETY_MARGIN,
)
from pycloudsync.exceptions import ConfigError


@dataclasses.dataclass(frozen=True)
class OAuthProfile:
    """OAuth2 client identity used against the token endpoint.

    Keycloak-hosted radiator clouds (e.g. CleverTouch) use a public
    client (``app-front``) and no secret.
    """

    token_url: str = ""
    client_id: str = "app-front"
    client_secret: str = ""
    scope: str = ""

    @classmethod
    def for_keycloak(cls, host: str, realm: str, *, client_id: str = "app-front") -> OAuthProfile:
        """Build a profile for a Keycloak realm hosted at ``auth.<host>``."""
        return cls(
            token_url=f"https://auth.{host}/realms/{realm}/protocol/openid-connect/token",
            client_id=client_id,
        )


@dataclasses.dataclass(frozen=True)
class SyncConfig:
    """Engine configuration.

    Parameters
    ----------
    api_base_url : str
        Base URL of the device REST API (no trailing slash needed).
    oauth : OAuthProfile
        Token endpoint and client identity.
    normal_poll_interval : float
        Seconds between polls while a device is stable.
    quick_poll_interval : float
        Seconds between polls right after a state change or command.
    quick_poll_decay_count : int
        Consecutive unchanged quick polls before returning to normal cadence.
    request_timeout : float
        Hard upper bound in seconds for a single HTTP attempt.
    max_retry_attempts : int
        Maximum attempts (first try included) for one poll or command.
    max_retry_elapsed : float
        Seconds after the first attempt past which no retry is scheduled.
    base_backoff_ms : int
        Backoff before the first retry, before jitter.
    max_backoff_ms : int
        Upper bound for any single backoff, before jitter.
    token_refresh_safety_margin : float
        Refresh the access token when it expires within this many seconds.
    initial_poll_jitter : float
        First poll of a newly registered device is delayed by a random
        amount in ``[0, initial_poll_jitter]`` seconds.
    """

    api_base_url: str = ""
    oauth: OAuthProfile = dataclasses.field(default_factory=OAuthProfile)
    normal_poll_interval: float = DEFAULT_NORMAL_POLL_INTERVAL
    quick_poll_interval: float = DEFAULT_QUICK_POLL_INTERVAL
    quick_poll_decay_count: int = DEFAULT_QUICK_POLL_DECAY_COUNT
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    max_retry_attempts: int = DEFAULT_MAX_RETRY_ATTEMPTS
    max_retry_elapsed: float = DEFAULT_MAX_RETRY_ELAPSED
    base_backoff_ms: int = DEFAULT_BASE_BACKOFF_MS
    max_backoff_ms: int = DEFAULT_MAX_BACKOFF_MS
    token_refresh_safety_margin: float = DEFAULT_TOKEN_REFRESH_SAFETY_MARGIN
    initial_poll_jitter: float = DEFAULT_INITIAL_POLL_JITTER

    def __post_init__(self) -> None:
        for name in ("normal_poll_interval", "quick_poll_interval", "request_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive, got {getattr(self, name)!r}")
        if self.quick_poll_decay_count < 1:
            raise ConfigError(f"quick_poll_decay_count must be >= 1, got {self.quick_poll_decay_count!r}")
        if self.max_retry_attempts < 1:
            raise ConfigError(f"max_retry_attempts must be >= 1, got {self.max_retry_attempts!r}")
        if self.max_retry_elapsed < 0:
            raise ConfigError(f"max_retry_elapsed must be >= 0, got {self.max_retry_elapsed!r}")
        if self.base_backoff_ms < 0 or self.max_backoff_ms < self.base_backoff_ms:
            raise ConfigError(
                f"backoff bounds invalid: base={self.base_backoff_ms!r}ms max={self.max_backoff_ms!r}ms"
            )
        if self.token_refresh_safety_margin < 0:
            raise ConfigError("token_refresh_safety_margin must be >= 0")
        if self.initial_poll_jitter < 0:
            raise ConfigError("initial_poll_jitter must be >= 0")

    @property
    def base_backoff(self) -> float:
        """Base backoff in seconds."""
        return self.base_backoff_ms / 1000.0

    @property
    def max_backoff(self) -> float:
        """Maximum backoff in seconds."""
        return self.max_backoff_ms / 1000.0

    def require_urls(self) -> None:
        """Raise :class:`ConfigError` unless both API and token URLs are set."""
        if not self.api_base_url:
            raise ConfigError("api_base_url is required")
        if not self.oauth.token_url:
            raise ConfigError("oauth.token_url is required")

    @classmethod
    def from_env(cls, **overrides: Any) -> SyncConfig:
        """Create configuration from ``CLOUDSYNC_*`` environment variables.

        Explicit keyword arguments override environment values.  The
        ``oauth`` override may be an :class:`OAuthProfile` or a dict of
        its fields.
        """
        env = os.environ

        oauth_kwargs: dict[str, str] = {}
        _ENV_OAUTH_MAP = {
            "CLOUDSYNC_TOKEN_URL": "token_url",
            "CLOUDSYNC_CLIENT_ID": "client_id",
            "CLOUDSYNC_CLIENT_SECRET": "client_secret",
            "CLOUDSYNC_SCOPE": "scope",
        }
        for env_key, field_name in _ENV_OAUTH_MAP.items():
            val = env.get(env_key)
            if val is not None:
                oauth_kwargs[field_name] = val

        oauth_overrides = overrides.pop("oauth", None)
        if isinstance(oauth_overrides, dict):
            oauth_kwargs.update(oauth_overrides)
        elif isinstance(oauth_overrides, OAuthProfile):
            oauth_kwargs = dataclasses.asdict(oauth_overrides)

        config_kwargs: dict[str, Any] = {"oauth": OAuthProfile(**oauth_kwargs)}

        base_url = env.get("CLOUDSYNC_API_BASE_URL")
        if base_url is not None:
            config_kwargs["api_base_url"] = base_url

        _ENV_NUMERIC_MAP: dict[str, tuple[str, type]] = {
            "CLOUDSYNC_NORMAL_POLL_INTERVAL": ("normal_poll_interval", float),
            "CLOUDSYNC_QUICK_POLL_INTERVAL": ("quick_poll_interval", float),
            "CLOUDSYNC_QUICK_POLL_DECAY_COUNT": ("quick_poll_decay_count", int),
            "CLOUDSYNC_REQUEST_TIMEOUT": ("request_timeout", float),
            "CLOUDSYNC_MAX_RETRY_ATTEMPTS": ("max_retry_attempts", int),
            "CLOUDSYNC_MAX_RETRY_ELAPSED": ("max_retry_elapsed", float),
            "CLOUDSYNC_BASE_BACKOFF_MS": ("base_backoff_ms", int),
            "CLOUDSYNC_MAX_BACKOFF_MS": ("max_backoff_ms", int),
            "CLOUDSYNC_TOKEN_REFRESH_SAFETY_MARGIN": ("token_refresh_safety_margin", float),
            "CLOUDSYNC_INITIAL_POLL_JITTER": ("initial_poll_jitter", float),
        }
        for env_key, (field_name, cast) in _ENV_NUMERIC_MAP.items():
            raw = env.get(env_key)
            if raw is None or field_name in overrides:
                continue
            try:
                config_kwargs[field_name] = cast(raw)
            except ValueError as exc:
                raise ConfigError(f"{env_key}={raw!r} is not a valid {cast.__name__}") from exc

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
