"""Consecutive-failure circuit breaker.

Key behavior notes:
  - The breaker counts consecutive failures reported by its owner. Any
    success resets the count to zero.
  - Reaching ``failure_threshold`` sets ``open_until = now + cooldown``.
    While open, ``ensure_closed`` raises ``CircuitOpenError`` carrying the
    remaining seconds, and no attempt should be made.
  - After the cooldown elapses the next attempt is admitted. Because the
    count is still at or above the threshold, one more failure reopens the
    breaker straight away.
"""

from talentflow_connect.circuit_breaker.breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
)
from talentflow_connect.circuit_breaker.exceptions import (
    CircuitBreakerError,
    CircuitOpenError,
)
from talentflow_connect.circuit_breaker.metrics import (
    BreakerListener,
    LoggingBreakerListener,
)
from talentflow_connect.circuit_breaker.state import BreakerSnapshot, CircuitState
from talentflow_connect.circuit_breaker.storage import (
    AbstractBreakerStorage,
    InMemoryBreakerStorage,
)

__all__ = [
    "AbstractBreakerStorage",
    "BreakerListener",
    "BreakerSnapshot",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerError",
    "CircuitOpenError",
    "CircuitState",
    "InMemoryBreakerStorage",
    "LoggingBreakerListener",
]
