"""pycloudsync - Async sync engine keeping local device state in step with a cloud API."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pycloudsync")
except PackageNotFoundError:
    __version__ = "0+local"
from pycloudsync._api.devices import DeviceApi, RestDeviceApi
from pycloudsync._transport import AiohttpTransport, HttpTransport, TransportClient, classify_status
from pycloudsync.auth import TokenManager
from pycloudsync.config import OAuthProfile, SyncConfig
from pycloudsync.engine import SyncEngine
from pycloudsync.exceptions import (
    AuthError,
    CloudSyncError,
    CommandValidationError,
    ConfigError,
    ErrorKind,
    RefreshExpiredError,
    RefreshTransientError,
    TransportError,
    UnknownDeviceError,
)
from pycloudsync.models import (
    ApiRequest,
    ApiResponse,
    CommandResult,
    DeviceCommand,
    HttpMethod,
    RawResponse,
)
from pycloudsync.retry import Attempt, RetryDecision, RetryPolicy
from pycloudsync.scheduler import PollScheduler, PollState
from pycloudsync.session import Session
from pycloudsync.state import (
    Cadence,
    DeviceRecord,
    DeviceStateStore,
    EventSource,
    PollFailureEvent,
    StateChangeEvent,
)
from pycloudsync.token_store import MemoryTokenStore, TokenStore

__all__ = [
    "__version__",
    "AiohttpTransport",
    "ApiRequest",
    "ApiResponse",
    "Attempt",
    "AuthError",
    "Cadence",
    "CloudSyncError",
    "CommandResult",
    "CommandValidationError",
    "ConfigError",
    "DeviceApi",
    "DeviceCommand",
    "DeviceRecord",
    "DeviceStateStore",
    "ErrorKind",
    "EventSource",
    "HttpMethod",
    "HttpTransport",
    "MemoryTokenStore",
    "OAuthProfile",
    "PollFailureEvent",
    "PollScheduler",
    "PollState",
    "RawResponse",
    "RefreshExpiredError",
    "RefreshTransientError",
    "RestDeviceApi",
    "RetryDecision",
    "RetryPolicy",
    "Session",
    "StateChangeEvent",
    "SyncConfig",
    "SyncEngine",
    "TokenManager",
    "TokenStore",
    "TransportClient",
    "TransportError",
    "UnknownDeviceError",
    "classify_status",
]
