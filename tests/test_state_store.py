from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import pytest

from pycloudsync.exceptions import ErrorKind, UnknownDeviceError
from pycloudsync.state.events import Cadence
from pycloudsync.state.policy import CadencePlan
from pycloudsync.state.store import DeviceStateStore


def _dt() -> datetime:
    return datetime(2026, 1, 1, tzinfo=UTC)


def test_add_creates_fresh_record() -> None:
    store = DeviceStateStore(clock=_dt)
    record = store.add("rad-1", {"temp": 19.5})

    assert "rad-1" in store
    assert len(store) == 1
    assert record.state == {"temp": 19.5}
    assert record.last_synced_at is None
    assert record.consecutive_failures == 0
    assert record.cadence is Cadence.NORMAL
    assert record.registered_at == _dt()


def test_get_returns_detached_copy() -> None:
    store = DeviceStateStore()
    store.add("rad-1", {"nested": {"temp": 19}})

    record = store.get("rad-1")
    assert record.state is not None
    record.state["nested"]["temp"] = 99

    assert store.get_state("rad-1") == {"nested": {"temp": 19}}


def test_failure_keeps_state_and_counts_by_one() -> None:
    store = DeviceStateStore()
    store.add("rad-1", {"temp": 19})

    assert store.record_failure("rad-1", ErrorKind.TIMEOUT, CadencePlan(Cadence.NORMAL, 0)) == 1
    assert store.record_failure("rad-1", ErrorKind.HTTP_SERVER_ERROR, CadencePlan(Cadence.NORMAL, 0)) == 2

    record = store.get("rad-1")
    assert record.state == {"temp": 19}
    assert record.is_stale
    assert record.last_error_kind is ErrorKind.HTTP_SERVER_ERROR


def test_success_resets_failures() -> None:
    store = DeviceStateStore(clock=_dt)
    store.add("rad-1")
    store.record_failure("rad-1", ErrorKind.TIMEOUT, CadencePlan(Cadence.NORMAL, 0))

    store.record_success("rad-1", {"temp": 21}, CadencePlan(Cadence.QUICK, 3))

    record = store.get("rad-1")
    assert record.state == {"temp": 21}
    assert record.consecutive_failures == 0
    assert record.last_error_kind is None
    assert record.last_synced_at == _dt()
    assert record.cadence_plan == CadencePlan(Cadence.QUICK, 3)


def test_readding_bumps_generation() -> None:
    store = DeviceStateStore()
    first = store.add("rad-1", {"temp": 1})
    second = store.add("rad-1")

    assert second.generation > first.generation
    assert store.generation("rad-1") == second.generation
    assert store.get_state("rad-1") is None


@pytest.mark.asyncio
async def test_unknown_device_raises() -> None:
    store = DeviceStateStore()
    with pytest.raises(UnknownDeviceError):
        store.get("nope")
    with pytest.raises(UnknownDeviceError):
        async with store.exclusive("nope"):
            pass
    assert store.generation("nope") is None
    assert store.remove("nope") is False
    assert not store.busy("nope")


@pytest.mark.asyncio
async def test_exclusive_serialises_one_device() -> None:
    store = DeviceStateStore()
    store.add("rad-1")
    order: list[str] = []

    async def cycle(tag: str) -> None:
        async with store.exclusive("rad-1"):
            order.append(f"{tag}:in")
            await asyncio.sleep(0.01)
            order.append(f"{tag}:out")

    await asyncio.gather(cycle("a"), cycle("b"))

    assert order == ["a:in", "a:out", "b:in", "b:out"]
    assert not store.busy("rad-1")


@pytest.mark.asyncio
async def test_locks_are_per_device() -> None:
    store = DeviceStateStore()
    store.add("rad-1")
    store.add("rad-2")

    async with store.exclusive("rad-1"):
        async with asyncio.timeout(0.1):
            async with store.exclusive("rad-2"):
                assert store.busy("rad-1")
                assert store.busy("rad-2")


@pytest.mark.asyncio
async def test_readded_device_waits_for_cycle_woken_before_removal() -> None:
    store = DeviceStateStore()
    store.add("rad-1")
    order: list[str] = []
    holder_in = asyncio.Event()
    release = asyncio.Event()
    tasks: list[asyncio.Task[None]] = []

    async def cycle(tag: str) -> None:
        async with store.exclusive("rad-1"):
            order.append(f"{tag}:in")
            await asyncio.sleep(0.01)
            order.append(f"{tag}:out")

    async def holder() -> None:
        async with store.exclusive("rad-1"):
            holder_in.set()
            await release.wait()
        # The queued cycle has been woken but has not taken the lock yet.
        assert store.busy("rad-1")
        store.remove("rad-1")
        store.add("rad-1")
        tasks.append(asyncio.create_task(cycle("new")))

    holder_task = asyncio.create_task(holder())
    await holder_in.wait()
    queued = asyncio.create_task(cycle("old"))
    await asyncio.sleep(0)
    release.set()
    await holder_task
    await asyncio.gather(queued, *tasks)

    assert order == ["old:in", "old:out", "new:in", "new:out"]


@pytest.mark.asyncio
async def test_lock_of_removed_device_is_dropped_after_last_cycle() -> None:
    store = DeviceStateStore()
    store.add("rad-1")

    async with store.exclusive("rad-1"):
        assert store.remove("rad-1") is True
        assert store.busy("rad-1")

    assert not store.busy("rad-1")
    assert "rad-1" not in store._locks
    with pytest.raises(UnknownDeviceError):
        async with store.exclusive("rad-1"):
            pass


def test_snapshot_covers_all_devices() -> None:
    store = DeviceStateStore()
    store.add("a", {"x": 1})
    store.add("b")
    snap = store.snapshot()
    assert set(snap) == {"a", "b"}
    assert snap["a"].state == {"x": 1}
