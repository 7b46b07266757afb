"""Request, response and command models."""

from pycloudsync.models.command import CommandResult, DeviceCommand
from pycloudsync.models.http import ApiRequest, ApiResponse, HttpMethod, RawResponse

__all__ = [
    "ApiRequest",
    "ApiResponse",
    "CommandResult",
    "DeviceCommand",
    "HttpMethod",
    "RawResponse",
]
