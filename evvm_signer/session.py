"""
Per-user session state and the store that owns it.

A session holds the connected signer, the selected network, the target
contract and at most one in-flight operation. The store is an explicit
object owned by the engine. ``InMemorySessionStore`` is the default;
anything satisfying ``SessionStore`` (e.g. a shared cache) can replace it
without touching state-machine logic.

Idle sessions are evicted by ``sweep()``. ``run_eviction_loop()`` calls it
periodically. Eviction may remove a session mid-flow, in which case the
user simply restarts the operation.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from evvm_signer.config import DEFAULT_NETWORK, SESSION_MAX_IDLE_SECONDS

if TYPE_CHECKING:
    from evvm_signer.operations import Operation

logger = logging.getLogger(__name__)

HOUR_SECONDS = 60 * 60
DAY_SECONDS = 24 * HOUR_SECONDS


@dataclass(frozen=True)
class SignerIdentity:
    """Connected wallet. The key is excluded from repr."""

    address: str
    private_key: str = field(repr=False)


@dataclass
class Session:
    """Mutable per-user state.

    ``operation`` is set exactly while the user is mid-flow. Clearing it
    is the only way a flow ends, whether by cancel or by signing.
    """

    session_id: str
    created_at: float
    last_activity: float
    network: str = DEFAULT_NETWORK
    signer: SignerIdentity | None = None
    contract_address: str | None = None
    operation: Operation | None = None

    def touch(self, now: float) -> None:
        self.last_activity = now

    def clear_operation(self) -> None:
        self.operation = None


@dataclass(frozen=True)
class SessionStats:
    """Point-in-time totals across all sessions."""

    total: int
    with_wallet: int
    active_last_hour: int
    active_last_day: int
    current_operations: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "with_wallet": self.with_wallet,
            "active_last_hour": self.active_last_hour,
            "active_last_day": self.active_last_day,
            "current_operations": self.current_operations,
        }


@runtime_checkable
class SessionStore(Protocol):
    """Key-value store of sessions keyed by user identity."""

    def get(self, session_id: str) -> Session | None:
        ...

    def get_or_create(self, session_id: str) -> Session:
        ...

    def save(self, session: Session) -> None:
        ...

    def delete(self, session_id: str) -> bool:
        ...

    def sweep(self, now: float | None = None) -> int:
        ...

    def stats(self, now: float | None = None) -> SessionStats:
        ...


class InMemorySessionStore:
    """Process-local SessionStore.

    Args:
        default_network: Network assigned to new sessions.
        max_idle: Seconds of inactivity after which sweep() evicts.
        clock: Returns the current time in seconds. Injectable for tests.
    """

    def __init__(
        self,
        default_network: str = DEFAULT_NETWORK,
        max_idle: float = SESSION_MAX_IDLE_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._sessions: dict[str, Session] = {}
        self._default_network = default_network
        self._max_idle = max_idle
        self._clock = clock

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def get_or_create(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            now = self._clock()
            session = Session(
                session_id=session_id,
                created_at=now,
                last_activity=now,
                network=self._default_network,
            )
            self._sessions[session_id] = session
            logger.debug("created session %s", session_id)
        return session

    def save(self, session: Session) -> None:
        self._sessions[session.session_id] = session

    def delete(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None

    def sweep(self, now: float | None = None) -> int:
        """Evict sessions idle longer than max_idle. Returns the count."""
        if now is None:
            now = self._clock()
        stale = [
            sid for sid, s in self._sessions.items() if now - s.last_activity > self._max_idle
        ]
        for sid in stale:
            del self._sessions[sid]
        if stale:
            logger.info("evicted %d idle session(s)", len(stale))
        return len(stale)

    def stats(self, now: float | None = None) -> SessionStats:
        if now is None:
            now = self._clock()
        sessions = list(self._sessions.values())
        return SessionStats(
            total=len(sessions),
            with_wallet=sum(1 for s in sessions if s.signer is not None),
            active_last_hour=sum(1 for s in sessions if now - s.last_activity < HOUR_SECONDS),
            active_last_day=sum(1 for s in sessions if now - s.last_activity < DAY_SECONDS),
            current_operations=sum(1 for s in sessions if s.operation is not None),
        )


async def run_eviction_loop(
    store: SessionStore,
    interval: float,
    stop: asyncio.Event | None = None,
) -> None:
    """Sweep ``store`` every ``interval`` seconds until ``stop`` is set.

    Without a stop event the loop runs until its task is cancelled.
    """
    if stop is None:
        stop = asyncio.Event()
    while not stop.is_set():
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval)
        except TimeoutError:
            store.sweep()
