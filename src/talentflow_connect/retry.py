from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass, field

from tenacity import RetryCallState, Retrying, stop_after_attempt, wait_exponential


@dataclass(frozen=True)
class RetryBackoffPolicy:
    """Configuration for retry attempt count and capped exponential backoff.

    ``delay_for(n)`` returns ``min(min_seconds * 2**n, max_seconds)``, so the
    first retry (``n=1``) waits twice the base delay. Both the delay and the
    attempt budget are answered by the policy's tenacity ``Retrying``.
    """

    attempts: int
    min_seconds: float
    max_seconds: float
    _retrying: Retrying = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.attempts < 0:
            raise ValueError("attempts must be >= 0")
        if self.min_seconds < 0:
            raise ValueError("min_seconds must be >= 0")
        if self.max_seconds < 0:
            raise ValueError("max_seconds must be >= 0")
        if self.max_seconds < self.min_seconds:
            raise ValueError("max_seconds must be >= min_seconds")
        object.__setattr__(self, "_retrying", build_exponential_retrying(self))

    def exhausted(self, attempt: int) -> bool:
        """Return true when ``attempt`` retries have used up the budget."""
        return bool(self._retrying.stop(self._call_state(attempt)))

    def delay_for(self, attempt: int) -> float:
        """Return the backoff delay in seconds before retry number ``attempt``."""
        if attempt < 1:
            raise ValueError("attempt must be >= 1")
        # tenacity waits multiplier * 2 ** (attempt_number - 1).
        return float(self._retrying.wait(self._call_state(attempt + 1)))

    def _call_state(self, attempt_number: int) -> RetryCallState:
        state = RetryCallState(self._retrying, fn=None, args=(), kwargs={})
        state.attempt_number = attempt_number
        return state


def build_exponential_retrying(policy: RetryBackoffPolicy) -> Retrying:
    """Build a ``Retrying`` with the policy's capped exponential backoff."""
    return Retrying(
        wait=wait_exponential(multiplier=policy.min_seconds, max=policy.max_seconds),
        stop=stop_after_attempt(policy.attempts),
        reraise=True,
    )


def build_interruptible_sleep(
    stop_event: asyncio.Event,
) -> Callable[[float], Awaitable[None]]:
    """Build an async sleep that exits early when shutdown is requested."""

    async def _interruptible_sleep(delay: float) -> None:
        if stop_event.is_set():
            return

        bounded_delay = max(delay, 0.0)
        with suppress(TimeoutError):
            await asyncio.wait_for(stop_event.wait(), timeout=bounded_delay)

    return _interruptible_sleep
