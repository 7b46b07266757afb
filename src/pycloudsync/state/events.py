"""Events emitted to the host.

The engine reports every observed change and every exhausted poll
through these models; hosts subscribe with plain callbacks.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from pycloudsync.exceptions import ErrorKind


class Cadence(StrEnum):
    QUICK = "quick"
    NORMAL = "normal"


class EventSource(StrEnum):
    POLL = "poll"
    COMMAND = "command"


class StateChangeEvent(BaseModel):
    """A device's remote state differs from what was stored."""

    model_config = ConfigDict(frozen=True)

    device_id: str
    previous_state: dict[str, Any] | None = Field(
        default=None,
        description="Last-known state; None when nothing was known yet.",
    )
    new_state: dict[str, Any]
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    source: EventSource = EventSource.POLL

    @field_validator("device_id")
    @classmethod
    def _normalize_device_id(cls, value: str) -> str:
        device_id = value.strip()
        if not device_id:
            raise ValueError("device_id must be non-empty")
        return device_id


class PollFailureEvent(BaseModel):
    """A poll cycle exhausted its retries; the stored state is now stale."""

    model_config = ConfigDict(frozen=True)

    device_id: str
    error_kind: ErrorKind
    consecutive_failures: int = Field(ge=1)
    message: str = ""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
