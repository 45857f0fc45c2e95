"""Consecutive-failure circuit breaker."""

import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from talentflow_connect.circuit_breaker.exceptions import CircuitOpenError
from talentflow_connect.circuit_breaker.metrics import BreakerListener
from talentflow_connect.circuit_breaker.state import BreakerSnapshot, CircuitState
from talentflow_connect.circuit_breaker.storage import (
    AbstractBreakerStorage,
    InMemoryBreakerStorage,
)
from talentflow_connect.logging import AnyLogger, get_logger, log_exception


@dataclass(slots=True)
class CircuitBreakerConfig:
    """Circuit breaker configuration values.

    Attributes:
        failure_threshold: Consecutive failures required before opening.
        cooldown_seconds: Seconds the breaker stays open once tripped.
    """

    failure_threshold: int = 3
    cooldown_seconds: float = 30.0

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.cooldown_seconds < 0:
            raise ValueError("cooldown_seconds must be >= 0")


class CircuitBreaker:
    """Track consecutive outcomes of a guarded operation and gate new attempts.

    The breaker does not wrap the operation itself. Callers ask
    ``ensure_closed`` before attempting, then report the outcome with
    ``record_success`` or ``record_failure``. Once ``failure_threshold``
    consecutive failures accumulate the breaker opens for
    ``cooldown_seconds``; after that window the next attempt is let through,
    and a further failure reopens it immediately.
    """

    def __init__(
        self,
        name: str,
        *,
        config: CircuitBreakerConfig | None = None,
        storage: AbstractBreakerStorage | None = None,
        listeners: Sequence[BreakerListener] | None = None,
        now_fn: Callable[[], float] = time.monotonic,
        logger: AnyLogger | None = None,
    ) -> None:
        """Build a circuit breaker with optional custom dependencies.

        Args:
            name: Unique breaker name used for storage and logging.
            config: Breaker behavior configuration. Defaults to
                ``CircuitBreakerConfig()``.
            storage: State storage backend. Defaults to in-memory storage.
            listeners: Optional listener hooks for breaker events.
            now_fn: Monotonic clock used for cooldown arithmetic.
            logger: Logger used to report failing listeners.
        """
        self.name = name
        self.config = CircuitBreakerConfig() if config is None else config
        self._storage = InMemoryBreakerStorage() if storage is None else storage
        self._listeners = tuple(listeners) if listeners is not None else ()
        self._now = now_fn
        self._logger = get_logger(__name__) if logger is None else logger

    def _emit_state_change(
        self, old: CircuitState, new: CircuitState, failures: int
    ) -> None:
        for listener in self._listeners:
            try:
                listener.on_state_change(self.name, old, new, failures)
            except Exception:
                log_exception(
                    self._logger, "breaker_listener_failed", breaker=self.name
                )

    def _emit_call_rejected(self, retry_after: float) -> None:
        for listener in self._listeners:
            try:
                listener.on_call_rejected(self.name, retry_after)
            except Exception:
                log_exception(
                    self._logger, "breaker_listener_failed", breaker=self.name
                )

    async def snapshot(self) -> BreakerSnapshot:
        """Return the persisted breaker snapshot."""
        return await self._storage.get_state(self.name)

    async def state(self) -> CircuitState:
        """Return the effective state at the current clock reading."""
        snapshot = await self._storage.get_state(self.name)
        return snapshot.state_at(self._now())

    async def retry_after(self) -> float:
        """Return seconds until the breaker admits attempts again."""
        snapshot = await self._storage.get_state(self.name)
        return snapshot.retry_after(self._now())

    async def ensure_closed(self) -> None:
        """Reject the caller while the cooldown window is running.

        Raises:
            CircuitOpenError: When the breaker is open.
        """
        snapshot = await self._storage.get_state(self.name)
        retry_after = snapshot.retry_after(self._now())
        if retry_after > 0:
            self._emit_call_rejected(retry_after)
            raise CircuitOpenError(self.name, retry_after=retry_after)

    async def record_success(self) -> BreakerSnapshot:
        """Reset the consecutive failure count after a successful attempt."""
        previous = await self._storage.get_state(self.name)
        updated = await self._storage.record_success(self.name)
        if previous.open_until is not None:
            self._emit_state_change(CircuitState.OPEN, CircuitState.CLOSED, 0)
        return updated

    async def record_failure(self) -> BreakerSnapshot:
        """Count a failed attempt, opening the breaker at the threshold."""
        now = self._now()
        snapshot = await self._storage.record_failure(self.name, now)
        if snapshot.consecutive_failures < self.config.failure_threshold:
            return snapshot

        previous_state = snapshot.state_at(now)
        snapshot = await self._storage.force_open(
            self.name, now + self.config.cooldown_seconds
        )
        self._emit_state_change(
            previous_state, CircuitState.OPEN, snapshot.consecutive_failures
        )
        return snapshot

    async def reset(self) -> BreakerSnapshot:
        """Forget all recorded failures and close the breaker."""
        return await self._storage.reset(self.name)
