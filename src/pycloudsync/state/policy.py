"""Pure decisions about device state and poll cadence.

Nothing here touches the network or the clock; the engine feeds in
what it observed and applies the answer.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, NamedTuple

from pycloudsync.config import SyncConfig
from pycloudsync.state.events import Cadence


class CadencePlan(NamedTuple):
    cadence: Cadence
    quick_polls_remaining: int


def states_differ(previous: Mapping[str, Any] | None, new: Mapping[str, Any]) -> bool:
    """Equality on the opaque payload; an unknown previous state always differs."""
    if previous is None:
        return True
    return dict(previous) != dict(new)


def after_poll(current: CadencePlan, *, changed: bool, decay_count: int) -> CadencePlan:
    """Cadence following a successful poll.

    A change (re)starts the quick window.  Each unchanged quick poll uses
    up one slot; when none are left the device returns to normal cadence.
    """
    if changed:
        return CadencePlan(Cadence.QUICK, decay_count)
    if current.cadence is Cadence.NORMAL:
        return CadencePlan(Cadence.NORMAL, 0)
    remaining = current.quick_polls_remaining - 1
    if remaining <= 0:
        return CadencePlan(Cadence.NORMAL, 0)
    return CadencePlan(Cadence.QUICK, remaining)


def after_command(decay_count: int) -> CadencePlan:
    return CadencePlan(Cadence.QUICK, decay_count)


def after_failure() -> CadencePlan:
    return CadencePlan(Cadence.NORMAL, 0)


def interval_for(cadence: Cadence, config: SyncConfig) -> float:
    if cadence is Cadence.QUICK:
        return config.quick_poll_interval
    return config.normal_poll_interval
