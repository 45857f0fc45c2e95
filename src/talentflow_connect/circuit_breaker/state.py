"""Circuit breaker state primitives."""

from dataclasses import dataclass
from enum import StrEnum


class CircuitState(StrEnum):
    """Circuit breaker state values."""

    CLOSED = "closed"
    OPEN = "open"


@dataclass(frozen=True)
class BreakerSnapshot:
    """Point-in-time view of breaker internals useful for metrics/logging.

    Attributes:
        name: Breaker name.
        consecutive_failures: Failures recorded since the last success.
        last_failure_at: Clock reading of the last counted failure, if any.
        open_until: Clock reading until which the breaker rejects calls, if
            it has been opened.
    """

    name: str
    consecutive_failures: int
    last_failure_at: float | None
    open_until: float | None

    def state_at(self, now: float) -> CircuitState:
        """Return the effective state for clock reading ``now``."""
        if self.open_until is not None and now < self.open_until:
            return CircuitState.OPEN
        return CircuitState.CLOSED

    def retry_after(self, now: float) -> float:
        """Return seconds left in the cooldown window, ``0.0`` when closed."""
        if self.open_until is None:
            return 0.0
        return max(self.open_until - now, 0.0)
