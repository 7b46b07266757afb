"""Token persistence capability consumed by the token manager."""

from __future__ import annotations

from typing import Protocol

from pycloudsync.session import Session


class TokenStore(Protocol):
    """Structural interface for session persistence.

    Hosts plug in their own settings/keyring backend; the library only
    ships :class:`MemoryTokenStore`.
    """

    async def load(self) -> Session | None:
        ...

    async def save(self, session: Session) -> None:
        ...

    async def clear(self) -> None:
        ...


class MemoryTokenStore:
    """Process-local token store, mostly for tests and scripts."""

    def __init__(self, session: Session | None = None) -> None:
        self._session = session
        self.saves = 0
        self.clears = 0

    @property
    def session(self) -> Session | None:
        return self._session

    async def load(self) -> Session | None:
        return self._session

    async def save(self, session: Session) -> None:
        self._session = session
        self.saves += 1

    async def clear(self) -> None:
        self._session = None
        self.clears += 1
