"""State storage for circuit breakers.

Storage is decoupled from breaker logic. Custom backends (for example a
shared cache) can implement the interface when several processes must
observe one breaker.
"""

from abc import ABC, abstractmethod

from talentflow_connect.circuit_breaker.state import BreakerSnapshot


class AbstractBreakerStorage(ABC):
    """Abstract breaker storage interface."""

    @abstractmethod
    async def get_state(self, name: str) -> BreakerSnapshot:
        """Return the current breaker snapshot for ``name``."""

    @abstractmethod
    async def record_success(self, name: str) -> BreakerSnapshot:
        """Record a successful call and return the updated snapshot."""

    @abstractmethod
    async def record_failure(self, name: str, now: float) -> BreakerSnapshot:
        """Record a failed call and return the updated snapshot."""

    @abstractmethod
    async def force_open(self, name: str, open_until: float) -> BreakerSnapshot:
        """Open breaker ``name`` until clock reading ``open_until``."""

    @abstractmethod
    async def reset(self, name: str) -> BreakerSnapshot:
        """Reset breaker ``name`` to a healthy default snapshot."""


def _default_snapshot(name: str) -> BreakerSnapshot:
    return BreakerSnapshot(
        name=name,
        consecutive_failures=0,
        last_failure_at=None,
        open_until=None,
    )


class InMemoryBreakerStorage(AbstractBreakerStorage):
    """In-memory storage for breakers owned by one event loop.

    Every mutation completes without suspending, so the event loop
    serializes them and no locking is required.
    """

    def __init__(self) -> None:
        """Initialize the in-memory snapshot registry."""
        self._snapshots: dict[str, BreakerSnapshot] = {}

    async def get_state(self, name: str) -> BreakerSnapshot:
        """Return the current snapshot, creating a default one if missing."""
        snapshot = self._snapshots.get(name)
        if snapshot is None:
            snapshot = _default_snapshot(name)
            self._snapshots[name] = snapshot
        return snapshot

    async def record_success(self, name: str) -> BreakerSnapshot:
        """Record a successful call.

        Already-healthy snapshots are returned as-is to avoid hot-path writes.
        """
        snapshot = self._snapshots.get(name, _default_snapshot(name))
        if (
            snapshot.consecutive_failures == 0
            and snapshot.last_failure_at is None
            and snapshot.open_until is None
        ):
            self._snapshots[name] = snapshot
            return snapshot
        updated = _default_snapshot(name)
        self._snapshots[name] = updated
        return updated

    async def record_failure(self, name: str, now: float) -> BreakerSnapshot:
        """Increment the consecutive failure counter."""
        snapshot = self._snapshots.get(name, _default_snapshot(name))
        updated = BreakerSnapshot(
            name=name,
            consecutive_failures=snapshot.consecutive_failures + 1,
            last_failure_at=now,
            open_until=snapshot.open_until,
        )
        self._snapshots[name] = updated
        return updated

    async def force_open(self, name: str, open_until: float) -> BreakerSnapshot:
        """Open the circuit and restart the cooldown window."""
        snapshot = self._snapshots.get(name, _default_snapshot(name))
        updated = BreakerSnapshot(
            name=name,
            consecutive_failures=snapshot.consecutive_failures,
            last_failure_at=snapshot.last_failure_at,
            open_until=open_until,
        )
        self._snapshots[name] = updated
        return updated

    async def reset(self, name: str) -> BreakerSnapshot:
        """Reset breaker state and counters to a healthy default snapshot."""
        updated = _default_snapshot(name)
        self._snapshots[name] = updated
        return updated
