"""Shared error types for talentflow_connect."""

from enum import StrEnum


class ErrorKind(StrEnum):
    """Failure categories surfaced by the connectivity layer."""

    CONFIG_INVALID = "config_invalid"
    CREDENTIAL_EXPIRED = "credential_expired"
    UNREACHABLE = "unreachable"
    REJECTED = "rejected"
    TIMEOUT = "timeout"
    CIRCUIT_OPEN = "circuit_open"
    IN_PROGRESS = "in_progress"
    CHANNEL_ABANDONED = "channel_abandoned"


class TransientError(RuntimeError):
    """Generic retry-safe transient dependency failure."""


class BackendUnreachableError(TransientError):
    """Raised when the backend host produced no HTTP response at all."""


class BackendTimeoutError(TransientError, TimeoutError):
    """Raised when a backend request exceeded its timeout."""


class ChannelTransportUnavailable(RuntimeError):
    """Raised when a client has no push transport to open channels with."""


class ChannelAbandonedError(RuntimeError):
    """Terminal channel failure after exhausting reconnect attempts.

    Attributes:
        key: Dedup key of the abandoned channel registration.
        attempts: Reconnect attempts made in the failed episode.
    """

    def __init__(self, key: str, attempts: int) -> None:
        self.key = key
        self.attempts = attempts
        super().__init__(
            f"channel_abandoned: {key} after {attempts} reconnect attempts"
        )
