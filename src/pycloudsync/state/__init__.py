"""State/store layer.

Single source of truth for the last-known state of every registered
device, plus the pure cadence rules that decide how often it is polled.
"""

from pycloudsync.state.events import Cadence, EventSource, PollFailureEvent, StateChangeEvent
from pycloudsync.state.store import DeviceRecord, DeviceStateStore

__all__ = [
    "Cadence",
    "DeviceRecord",
    "DeviceStateStore",
    "EventSource",
    "PollFailureEvent",
    "StateChangeEvent",
]
