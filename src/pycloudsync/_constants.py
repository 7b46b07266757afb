"""Internal constants shared across the library."""

USER_AGENT = "pycloudsync/1 (+aiohttp)"

DEFAULT_NORMAL_POLL_INTERVAL: float = 180.0
DEFAULT_QUICK_POLL_INTERVAL: float = 15.0
DEFAULT_QUICK_POLL_DECAY_COUNT: int = 3
DEFAULT_REQUEST_TIMEOUT: float = 10.0
DEFAULT_MAX_RETRY_ATTEMPTS: int = 5
DEFAULT_MAX_RETRY_ELAPSED: float = 120.0
DEFAULT_BASE_BACKOFF_MS: int = 500
DEFAULT_MAX_BACKOFF_MS: int = 30_000
DEFAULT_TOKEN_REFRESH_SAFETY_MARGIN: float = 60.0
DEFAULT_INITIAL_POLL_JITTER: float = 30.0

#: Token lifetime assumed when the token endpoint omits ``expires_in``.
DEFAULT_TOKEN_TTL: float = 15 * 60

AUTH_REJECTED_STATUSES: frozenset[int] = frozenset({401, 403})
