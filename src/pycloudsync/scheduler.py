"""Per-device poll scheduling.

Each device has a slot that is Idle, Scheduled (a timer is armed) or
InFlight (a cycle task is running).  A timer can only fire into a slot
that is Scheduled, and a slot has no timer while InFlight, so two cycles
for the same device never overlap.  Re-arm requests that arrive during a
cycle are coalesced and applied when it completes, measured from the
completion time.

Slots only track timer-driven cycles.  Manual refreshes and commands run
outside the scheduler and serialise with it on the store's device lock.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum

_logger = logging.getLogger(__name__)

CycleRunner = Callable[[str], Awaitable[float]]


class PollState(StrEnum):
    IDLE = "idle"
    SCHEDULED = "scheduled"
    IN_FLIGHT = "in_flight"


@dataclass(slots=True)
class _Slot:
    device_id: str
    state: PollState = PollState.IDLE
    timer: asyncio.TimerHandle | None = None
    due_at: float | None = None
    task: asyncio.Task[float] | None = None
    pending_delay: float | None = None

    def clear_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
        self.timer = None
        self.due_at = None

    def coalesce(self, delay: float) -> None:
        self.pending_delay = delay if self.pending_delay is None else min(self.pending_delay, delay)


class PollScheduler:
    """Timer loop that drives one cycle at a time per device.

    Parameters
    ----------
    run_cycle : callable
        ``await run_cycle(device_id)`` performs one cycle and returns the
        delay in seconds before the next one.
    fallback_delay : float
        Delay used when ``run_cycle`` raises unexpectedly.
    shutdown_grace : float
        How long :meth:`close` lets in-flight cycles finish before
        cancelling them.
    """

    def __init__(
        self,
        run_cycle: CycleRunner,
        *,
        fallback_delay: float,
        shutdown_grace: float,
    ) -> None:
        self._run_cycle = run_cycle
        self._fallback_delay = fallback_delay
        self._shutdown_grace = shutdown_grace
        self._slots: dict[str, _Slot] = {}
        # Cycles of removed devices: still awaited by close(), results ignored.
        self._detached: set[asyncio.Task[float]] = set()
        self._paused = False
        self._closed = False

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def closed(self) -> bool:
        return self._closed

    def state(self, device_id: str) -> PollState:
        slot = self._slots.get(device_id)
        return slot.state if slot is not None else PollState.IDLE

    def due_in(self, device_id: str) -> float | None:
        """Seconds until the armed timer fires, or ``None`` if not Scheduled."""
        slot = self._slots.get(device_id)
        if slot is None or slot.due_at is None:
            return None
        return max(0.0, slot.due_at - asyncio.get_running_loop().time())

    def arm(self, device_id: str, delay: float) -> None:
        """Schedule the next cycle for *device_id* in *delay* seconds.

        Replaces an armed timer.  While a cycle is in flight the request
        is remembered and the shorter of it and the cycle's own choice is
        used once the cycle completes.
        """
        if self._closed:
            _logger.debug("Scheduler closed; ignoring arm for %s", device_id)
            return
        delay = max(0.0, delay)
        slot = self._slots.get(device_id)
        if slot is None:
            slot = _Slot(device_id)
            self._slots[device_id] = slot

        if slot.state is PollState.IN_FLIGHT:
            slot.coalesce(delay)
            return

        slot.clear_timer()
        if self._paused:
            slot.state = PollState.IDLE
            slot.coalesce(delay)
            return

        loop = asyncio.get_running_loop()
        slot.timer = loop.call_later(delay, self._fire, device_id)
        slot.due_at = loop.time() + delay
        slot.state = PollState.SCHEDULED
        _logger.debug("Poll for %s armed in %.1fs", device_id, delay)

    def cancel(self, device_id: str) -> None:
        """Stop polling *device_id*.  A running cycle finishes unobserved."""
        slot = self._slots.pop(device_id, None)
        if slot is None:
            return
        slot.clear_timer()
        if slot.task is not None and not slot.task.done():
            self._detached.add(slot.task)
            slot.task.add_done_callback(self._detached.discard)
        _logger.debug("Polling cancelled for %s (was %s)", device_id, slot.state.value)

    def pause(self) -> None:
        """Disarm every timer; in-flight cycles complete but do not re-arm."""
        self._paused = True
        for slot in self._slots.values():
            if slot.state is PollState.SCHEDULED:
                slot.clear_timer()
                slot.state = PollState.IDLE
        _logger.info("Polling paused for %d device(s)", len(self._slots))

    def resume(self, delay: float = 0.0) -> None:
        """Re-arm every idle device after *delay* seconds."""
        if not self._paused:
            return
        self._paused = False
        for device_id, slot in list(self._slots.items()):
            if slot.state is PollState.IN_FLIGHT:
                continue
            slot.pending_delay = None
            self.arm(device_id, delay)
        _logger.info("Polling resumed for %d device(s)", len(self._slots))

    def _fire(self, device_id: str) -> None:
        slot = self._slots.get(device_id)
        if slot is None or slot.state is not PollState.SCHEDULED or self._closed:
            return
        slot.timer = None
        slot.due_at = None
        slot.state = PollState.IN_FLIGHT
        slot.task = asyncio.get_running_loop().create_task(self._run(slot), name=f"poll:{device_id}")

    async def _run(self, slot: _Slot) -> float:
        device_id = slot.device_id
        try:
            next_delay = await self._run_cycle(device_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            _logger.exception("Poll cycle for %s crashed; retrying in %.0fs", device_id, self._fallback_delay)
            next_delay = self._fallback_delay

        slot.task = None
        if self._slots.get(device_id) is not slot:
            _logger.debug("Discarding cycle result for removed device %s", device_id)
            return next_delay

        slot.state = PollState.IDLE
        if slot.pending_delay is not None:
            next_delay = min(next_delay, slot.pending_delay)
            slot.pending_delay = None
        self.arm(device_id, next_delay)
        return next_delay

    async def close(self) -> None:
        """Cancel all timers and wait for (or cancel) running cycles."""
        if self._closed:
            return
        self._closed = True
        tasks: set[asyncio.Task[float]] = set(self._detached)
        for slot in self._slots.values():
            slot.clear_timer()
            if slot.task is not None and not slot.task.done():
                tasks.add(slot.task)
        self._slots.clear()

        if not tasks:
            return
        _done, pending = await asyncio.wait(tasks, timeout=self._shutdown_grace)
        for task in pending:
            task.cancel()
        for task in pending:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        _logger.debug("Scheduler closed; %d cycle(s) cancelled", len(pending))
