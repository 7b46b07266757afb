"""In-memory device state store.

Holds one :class:`DeviceRecord` per registered device.  Records are only
mutated by the engine inside :meth:`DeviceStateStore.exclusive`; unrelated
devices never contend.
"""

from __future__ import annotations

import asyncio
import contextlib
import copy
from collections.abc import AsyncIterator, Callable, Iterator, Mapping
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from pycloudsync.exceptions import ErrorKind, UnknownDeviceError
from pycloudsync.state.events import Cadence
from pycloudsync.state.policy import CadencePlan


def _utcnow() -> datetime:
    return datetime.now(UTC)


class DeviceRecord(BaseModel):
    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    device_id: str
    state: dict[str, Any] | None = None
    last_synced_at: datetime | None = None
    consecutive_failures: int = Field(default=0, ge=0)
    cadence: Cadence = Cadence.NORMAL
    quick_polls_remaining: int = Field(default=0, ge=0)
    last_error_kind: ErrorKind | None = None
    registered_at: datetime = Field(default_factory=_utcnow)
    generation: int = 0

    @property
    def is_stale(self) -> bool:
        """Last poll failed; ``state`` is last-known, not recently confirmed."""
        return self.consecutive_failures > 0

    @property
    def cadence_plan(self) -> CadencePlan:
        return CadencePlan(self.cadence, self.quick_polls_remaining)


class DeviceStateStore:
    """Per-device records plus the per-device exclusion locks."""

    def __init__(self, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock
        self._devices: dict[str, DeviceRecord] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        # Holders plus waiters per lock; a lock is dropped only at zero.
        self._lock_users: dict[str, int] = {}
        self._generation = 0

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._devices

    def __len__(self) -> int:
        return len(self._devices)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._devices))

    def add(self, device_id: str, initial_state: Mapping[str, Any] | None = None) -> DeviceRecord:
        """Create (or replace) the record for *device_id*."""
        record = DeviceRecord(
            device_id=device_id,
            state=copy.deepcopy(dict(initial_state)) if initial_state is not None else None,
            registered_at=self._clock(),
            generation=self._next_generation(),
        )
        self._devices[device_id] = record
        self._locks.setdefault(device_id, asyncio.Lock())
        return record.model_copy(deep=True)

    def _next_generation(self) -> int:
        self._generation += 1
        return self._generation

    def remove(self, device_id: str) -> bool:
        if not self._lock_users.get(device_id):
            self._locks.pop(device_id, None)
        return self._devices.pop(device_id, None) is not None

    @contextlib.asynccontextmanager
    async def exclusive(self, device_id: str) -> AsyncIterator[None]:
        """Run one cycle for *device_id* under its exclusion lock.

        The lock outlives a removal while anyone holds or waits on it, so a
        device that is removed and registered again still serialises with
        cycles queued against the old registration.
        """
        if device_id not in self._devices:
            raise UnknownDeviceError(device_id)
        lock = self._locks.setdefault(device_id, asyncio.Lock())
        self._lock_users[device_id] = self._lock_users.get(device_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users[device_id] - 1
            if remaining:
                self._lock_users[device_id] = remaining
            else:
                del self._lock_users[device_id]
                if device_id not in self._devices:
                    self._locks.pop(device_id, None)

    def busy(self, device_id: str) -> bool:
        """Whether a cycle for *device_id* is running or queued."""
        return self._lock_users.get(device_id, 0) > 0

    def _record(self, device_id: str) -> DeviceRecord:
        record = self._devices.get(device_id)
        if record is None:
            raise UnknownDeviceError(device_id)
        return record

    def get(self, device_id: str) -> DeviceRecord:
        """Detached copy of the record; mutating it has no effect."""
        return self._record(device_id).model_copy(deep=True)

    def generation(self, device_id: str) -> int | None:
        record = self._devices.get(device_id)
        return record.generation if record is not None else None

    def get_state(self, device_id: str) -> dict[str, Any] | None:
        state = self._record(device_id).state
        return copy.deepcopy(state) if state is not None else None

    def record_success(
        self,
        device_id: str,
        new_state: Mapping[str, Any],
        plan: CadencePlan,
    ) -> None:
        record = self._record(device_id)
        record.state = copy.deepcopy(dict(new_state))
        record.last_synced_at = self._clock()
        record.consecutive_failures = 0
        record.last_error_kind = None
        record.cadence = plan.cadence
        record.quick_polls_remaining = plan.quick_polls_remaining

    def record_failure(self, device_id: str, kind: ErrorKind, plan: CadencePlan) -> int:
        """Count a failed cycle; ``state`` is deliberately left alone."""
        record = self._record(device_id)
        record.consecutive_failures += 1
        record.last_error_kind = kind
        record.cadence = plan.cadence
        record.quick_polls_remaining = plan.quick_polls_remaining
        return record.consecutive_failures

    def set_cadence(self, device_id: str, plan: CadencePlan) -> None:
        record = self._record(device_id)
        record.cadence = plan.cadence
        record.quick_polls_remaining = plan.quick_polls_remaining

    def snapshot(self) -> dict[str, DeviceRecord]:
        return {device_id: record.model_copy(deep=True) for device_id, record in self._devices.items()}
