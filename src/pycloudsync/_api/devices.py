"""Device read/command endpoints.

The engine only speaks :class:`DeviceApi`; a vendor adapter decides URLs,
payload shapes and how a response becomes a state mapping.
:class:`RestDeviceApi` covers the common JSON REST layout:

  - ``GET  {base}/devices/{id}``           read state
  - ``POST {base}/devices/{id}/commands``  submit ``{"command", "params"}``
"""

from __future__ import annotations

from typing import Any, Protocol
from urllib.parse import quote

from pycloudsync.exceptions import CommandValidationError, ConfigError, ErrorKind, TransportError
from pycloudsync.models.command import DeviceCommand
from pycloudsync.models.http import ApiRequest, ApiResponse, HttpMethod


class DeviceApi(Protocol):
    """Provider adapter consumed by :class:`~pycloudsync.engine.SyncEngine`."""

    def build_read_request(self, device_id: str) -> ApiRequest:
        ...

    def parse_state(self, device_id: str, response: ApiResponse) -> dict[str, Any]:
        ...

    def validate_command(self, device_id: str, command: DeviceCommand) -> None:
        ...

    def build_command_request(self, device_id: str, command: DeviceCommand) -> ApiRequest:
        ...

    def parse_command_response(self, device_id: str, response: ApiResponse) -> dict[str, Any] | None:
        ...


def _unwrap(data: Any, envelope_key: str | None) -> Any:
    if envelope_key and isinstance(data, dict) and envelope_key in data:
        return data[envelope_key]
    return data


class RestDeviceApi:
    """Generic JSON REST adapter.

    Parameters
    ----------
    base_url : str
        API root, e.g. ``https://e3.lvi.eu/api/v0.1``.
    envelope_key : str or None
        Key the provider wraps payloads in (``"data"`` by default); the
        body is used as-is when the key is absent.
    allowed_commands : iterable of str or None
        When given, any other command name is rejected locally.
    """

    def __init__(
        self,
        base_url: str,
        *,
        envelope_key: str | None = "data",
        allowed_commands: frozenset[str] | set[str] | None = None,
    ) -> None:
        if not base_url:
            raise ConfigError("api_base_url is required for RestDeviceApi")
        self._base_url = base_url.rstrip("/")
        self._envelope_key = envelope_key
        self._allowed = frozenset(allowed_commands) if allowed_commands is not None else None

    def _device_url(self, device_id: str) -> str:
        return f"{self._base_url}/devices/{quote(device_id, safe='')}"

    def build_read_request(self, device_id: str) -> ApiRequest:
        return ApiRequest(method=HttpMethod.GET, url=self._device_url(device_id))

    def parse_state(self, device_id: str, response: ApiResponse) -> dict[str, Any]:
        state = _unwrap(response.data, self._envelope_key)
        if not isinstance(state, dict):
            raise TransportError(
                f"Device {device_id} state is not an object: {type(state).__name__}",
                kind=ErrorKind.MALFORMED_RESPONSE,
                status_code=response.status_code,
            )
        return state

    def validate_command(self, device_id: str, command: DeviceCommand) -> None:
        if self._allowed is not None and command.name not in self._allowed:
            raise CommandValidationError(f"Command {command.name!r} not supported for device {device_id}")

    def build_command_request(self, device_id: str, command: DeviceCommand) -> ApiRequest:
        return ApiRequest(
            method=HttpMethod.POST,
            url=f"{self._device_url(device_id)}/commands",
            json_body={"command": command.name, "params": command.params},
        )

    def parse_command_response(self, device_id: str, response: ApiResponse) -> dict[str, Any] | None:
        """State echoed back by the command, if the provider sends one."""
        payload = _unwrap(response.data, self._envelope_key)
        if isinstance(payload, dict) and isinstance(payload.get("state"), dict):
            return payload["state"]
        return None
