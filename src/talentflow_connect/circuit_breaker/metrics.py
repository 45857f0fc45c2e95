"""Observability hooks for circuit breakers."""

from typing import Protocol

from talentflow_connect.circuit_breaker.state import CircuitState
from talentflow_connect.logging import AnyLogger, get_logger, log_info, log_warning


class BreakerListener(Protocol):
    """Listener protocol for circuit breaker events."""

    def on_state_change(
        self, name: str, old: CircuitState, new: CircuitState, failures: int
    ) -> None:
        """Handle circuit state transitions."""

    def on_call_rejected(self, name: str, retry_after: float) -> None:
        """Handle call rejection while the circuit is open."""


class LoggingBreakerListener:
    """Report breaker transitions and rejections as structured log events."""

    def __init__(self, logger: AnyLogger | None = None) -> None:
        self._logger = get_logger(__name__) if logger is None else logger

    def on_state_change(
        self, name: str, old: CircuitState, new: CircuitState, failures: int
    ) -> None:
        if new == CircuitState.OPEN:
            log_warning(
                self._logger,
                "circuit_opened",
                breaker=name,
                previous_state=str(old),
                consecutive_failures=failures,
            )
            return
        log_info(
            self._logger,
            "circuit_closed",
            breaker=name,
            previous_state=str(old),
        )

    def on_call_rejected(self, name: str, retry_after: float) -> None:
        log_info(
            self._logger,
            "circuit_call_rejected",
            breaker=name,
            retry_after=round(retry_after, 3),
        )
