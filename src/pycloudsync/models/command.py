"""Command submission models."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class DeviceCommand(BaseModel):
    """A user-initiated change for one device.

    ``name`` identifies the action (e.g. ``set_mode``); ``params`` is the
    provider-specific argument mapping.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    params: dict[str, Any] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: str) -> str:
        name = value.strip()
        if not name:
            raise ValueError("command name must be non-empty")
        return name


class CommandResult(BaseModel):
    """Outcome of a successful :meth:`SyncEngine.submit_command`."""

    model_config = ConfigDict(frozen=True)

    device_id: str
    command: DeviceCommand
    status_code: int
    response: Any = None
    state_changed: bool = False
    completed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
