"""Retry decisions: exponential backoff with full jitter.

:class:`RetryPolicy` is a pure decision function.  It never sleeps and
never calls the network; the engine's bounded loop acts on its answer.
"""

from __future__ import annotations

import dataclasses
import random

from pycloudsync.config import SyncConfig
from pycloudsync.exceptions import ErrorKind

RETRYABLE_KINDS: frozenset[ErrorKind] = frozenset(
    {
        ErrorKind.TIMEOUT,
        ErrorKind.CONNECTION_FAILURE,
        ErrorKind.HTTP_SERVER_ERROR,
    }
)


@dataclasses.dataclass(frozen=True, slots=True)
class Attempt:
    """One failed try within a poll cycle or command.

    ``number`` starts at 1; ``elapsed`` is measured from the start of the
    first attempt.
    """

    number: int
    error_kind: ErrorKind
    elapsed: float = 0.0


@dataclasses.dataclass(frozen=True, slots=True)
class RetryDecision:
    retry: bool
    delay: float = 0.0
    give_up: bool = False

    @classmethod
    def stop(cls) -> RetryDecision:
        return cls(retry=False, delay=0.0, give_up=True)


@dataclasses.dataclass(frozen=True)
class RetryPolicy:
    """Decide whether a failed attempt is followed by another one.

    Parameters
    ----------
    max_attempts : int
        Total attempts allowed, the first one included.
    max_elapsed : float
        No retry is scheduled once this many seconds have passed since the
        first attempt.
    base_delay, max_delay : float
        Backoff ceiling for attempt *n* is
        ``min(max_delay, base_delay * 2 ** (n - 1))`` seconds.
    rng : random.Random
        Source for the jitter draw; inject a seeded one in tests.
    """

    max_attempts: int = 5
    max_elapsed: float = 120.0
    base_delay: float = 0.5
    max_delay: float = 30.0
    rng: random.Random = dataclasses.field(default_factory=random.Random, compare=False, repr=False)

    @classmethod
    def from_config(cls, config: SyncConfig, *, rng: random.Random | None = None) -> RetryPolicy:
        return cls(
            max_attempts=config.max_retry_attempts,
            max_elapsed=config.max_retry_elapsed,
            base_delay=config.base_backoff,
            max_delay=config.max_backoff,
            rng=rng or random.Random(),
        )

    @staticmethod
    def is_retryable(kind: ErrorKind) -> bool:
        return kind in RETRYABLE_KINDS

    def backoff_ceiling(self, attempt: int) -> float:
        """Backoff before jitter after failed attempt number *attempt*."""
        exponent = max(attempt, 1) - 1
        # Cap the exponent so huge attempt numbers cannot overflow a float.
        return min(self.max_delay, self.base_delay * (2 ** min(exponent, 62)))

    def jittered_delay(self, attempt: int) -> float:
        """Full jitter: uniform in ``[0, backoff_ceiling(attempt)]``."""
        return self.rng.uniform(0.0, self.backoff_ceiling(attempt))

    def next_action(self, attempt: Attempt) -> RetryDecision:
        """Decide what follows *attempt*."""
        if not self.is_retryable(attempt.error_kind):
            return RetryDecision.stop()
        if attempt.number >= self.max_attempts:
            return RetryDecision.stop()
        if attempt.elapsed >= self.max_elapsed:
            return RetryDecision.stop()
        return RetryDecision(retry=True, delay=self.jittered_delay(attempt.number))
