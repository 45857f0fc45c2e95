"""Cached, breaker-guarded backend reachability checks."""

from __future__ import annotations

import asyncio
import math
import time
from collections.abc import Callable
from dataclasses import dataclass

from talentflow_connect.circuit_breaker import (
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
)
from talentflow_connect.client import BackendClient
from talentflow_connect.config_resolver import ConfigResolver
from talentflow_connect.constants import (
    AUTH_FAILED_MESSAGE,
    AUTH_FAILURE_STATUSES,
    CANNOT_REACH_MESSAGE,
    CIRCUIT_OPEN_MESSAGE,
    CLIENT_NOT_INITIALIZED_MESSAGE,
    CREDENTIAL_EXPIRED_MESSAGE,
    IN_PROGRESS_MESSAGE,
    NOT_FOUND_STATUS,
    OFFLINE_MESSAGE,
    PLACEHOLDER_CREDENTIALS_MESSAGE,
    TIMEOUT_MESSAGE,
)
from talentflow_connect.errors import BackendUnreachableError, ErrorKind
from talentflow_connect.logging import (
    AnyLogger,
    get_logger,
    log_exception,
    log_info,
    log_warning,
)
from talentflow_connect.settings import ConnectionSettings
from talentflow_connect.tokens import is_credential_expired

HealthListener = Callable[["HealthCheckResult"], None]


@dataclass(frozen=True)
class HealthCheckResult:
    """Outcome of one health check.

    Attributes:
        healthy: Whether the backend was reachable with valid credentials.
        error: User-facing message when unhealthy.
        is_expired_credential: Whether the remediation is a new credential.
        kind: Failure category when unhealthy.
        retry_after: Seconds until the breaker admits probes again, for
            ``CIRCUIT_OPEN`` results.
    """

    healthy: bool
    error: str | None = None
    is_expired_credential: bool = False
    kind: ErrorKind | None = None
    retry_after: float | None = None

    @classmethod
    def ok(cls) -> HealthCheckResult:
        return cls(healthy=True)

    @classmethod
    def failure(
        cls,
        kind: ErrorKind,
        error: str,
        *,
        retry_after: float | None = None,
    ) -> HealthCheckResult:
        return cls(
            healthy=False,
            error=error,
            is_expired_credential=kind == ErrorKind.CREDENTIAL_EXPIRED,
            kind=kind,
            retry_after=retry_after,
        )


@dataclass(frozen=True)
class _CachedResult:
    result: HealthCheckResult
    checked_at: float


class HealthMonitor:
    """Answer whether the backend is reachable without hammering it.

    A check is answered, in order, from the result cache, by the circuit
    breaker while it is open, or by an "already in progress" rejection while
    another probe is running. Only then is a fresh evaluation made: missing
    client, expired credential, and finally one timed reachability request.
    Every freshly evaluated result is cached and reported to the breaker.
    No path raises.
    """

    def __init__(
        self,
        *,
        resolver: ConfigResolver,
        settings: ConnectionSettings,
        breaker: CircuitBreaker,
        now_fn: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        listeners: list[HealthListener] | None = None,
        logger: AnyLogger | None = None,
    ) -> None:
        """Create a health monitor.

        Args:
            resolver: Source of the active client and config.
            settings: Cache TTL, timeout, probe path and expiry policy.
            breaker: Breaker gating network probes.
            now_fn: Monotonic clock for cache ages.
            wall_clock: Epoch clock for credential expiry comparisons.
            listeners: Callbacks receiving every freshly computed result.
            logger: Structured logger.
        """
        self._resolver = resolver
        self._settings = settings
        self._breaker = breaker
        self._now = now_fn
        self._wall_clock = wall_clock
        self._listeners = list(listeners or ())
        self._logger = get_logger(__name__) if logger is None else logger
        self._cache: _CachedResult | None = None
        self._in_flight = False
        self._generation = 0

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def last_result(self) -> HealthCheckResult | None:
        """Return the cached result regardless of its age."""
        return None if self._cache is None else self._cache.result

    def add_listener(self, listener: HealthListener) -> None:
        self._listeners.append(listener)

    async def invalidate(self, *, reset_breaker: bool = True) -> None:
        """Forget the cached result, and optionally the failure history.

        A check still in flight when this is called returns its result to
        its own caller but neither caches it nor reports it to the breaker.
        """
        self._generation += 1
        self._cache = None
        if reset_breaker:
            await self._breaker.reset()

    async def check_health(self, timeout: float | None = None) -> HealthCheckResult:
        """Return the backend health, probing the network only when needed.

        Args:
            timeout: Probe timeout in seconds. Defaults to
                ``settings.health_timeout_seconds``.
        """
        cached = self._cache
        if (
            cached is not None
            and self._now() - cached.checked_at < self._settings.health_cache_ttl_seconds
        ):
            return cached.result

        try:
            await self._breaker.ensure_closed()
        except CircuitOpenError as exc:
            seconds = math.ceil(exc.retry_after)
            return HealthCheckResult.failure(
                ErrorKind.CIRCUIT_OPEN,
                CIRCUIT_OPEN_MESSAGE.format(seconds=seconds),
                retry_after=exc.retry_after,
            )

        if self._in_flight:
            return HealthCheckResult.failure(ErrorKind.IN_PROGRESS, IN_PROGRESS_MESSAGE)

        generation = self._generation
        self._in_flight = True
        try:
            result = await self._evaluate(self._timeout(timeout))
        finally:
            self._in_flight = False

        if generation != self._generation:
            log_info(
                self._logger,
                "health_result_discarded",
                healthy=result.healthy,
                kind=None if result.kind is None else str(result.kind),
            )
            return result
        await self._record(result)
        return result

    async def check_client(
        self, client: BackendClient, timeout: float | None = None
    ) -> HealthCheckResult:
        """Evaluate ``client`` directly, bypassing the cache and breaker.

        Used to validate candidate connection parameters before they become
        active. The result is not cached and not reported to the breaker.
        """
        return await self._evaluate_client(client, self._timeout(timeout))

    def _timeout(self, timeout: float | None) -> float:
        return self._settings.health_timeout_seconds if timeout is None else timeout

    async def _record(self, result: HealthCheckResult) -> None:
        self._cache = _CachedResult(result=result, checked_at=self._now())
        if result.healthy:
            await self._breaker.record_success()
        else:
            snapshot = await self._breaker.record_failure()
            if snapshot.state_at(self._now()) == CircuitState.OPEN:
                log_warning(
                    self._logger,
                    "health_circuit_opened",
                    consecutive_failures=snapshot.consecutive_failures,
                    cooldown_seconds=self._breaker.config.cooldown_seconds,
                    kind=str(result.kind),
                )
        self._notify(result)

    def _notify(self, result: HealthCheckResult) -> None:
        for listener in tuple(self._listeners):
            try:
                listener(result)
            except Exception:
                log_exception(self._logger, "health_listener_failed")

    async def _evaluate(self, timeout: float) -> HealthCheckResult:
        client = self._resolver.client
        if client is None:
            return self._missing_client_result()
        return await self._evaluate_client(client, timeout)

    async def _evaluate_client(
        self, client: BackendClient, timeout: float
    ) -> HealthCheckResult:
        if is_credential_expired(
            client.credential,
            now=self._wall_clock(),
            buffer_seconds=self._settings.credential_expiry_buffer_seconds,
            missing_expiry_is_expired=self._settings.missing_expiry_is_expired,
        ):
            log_warning(self._logger, "health_credential_expired")
            return HealthCheckResult.failure(
                ErrorKind.CREDENTIAL_EXPIRED, CREDENTIAL_EXPIRED_MESSAGE
            )

        return await self._probe(client, timeout)

    def _missing_client_result(self) -> HealthCheckResult:
        config = self._resolver.active_config
        if config is None:
            message = CLIENT_NOT_INITIALIZED_MESSAGE
        elif config.offline:
            message = OFFLINE_MESSAGE
        elif self._resolver.is_placeholder(
            config.endpoint
        ) or self._resolver.is_placeholder(config.credential):
            message = PLACEHOLDER_CREDENTIALS_MESSAGE
        else:
            message = CLIENT_NOT_INITIALIZED_MESSAGE
        return HealthCheckResult.failure(ErrorKind.CONFIG_INVALID, message)

    async def _probe(self, client: BackendClient, timeout: float) -> HealthCheckResult:
        started = self._now()
        try:
            response = await asyncio.wait_for(
                client.probe(
                    self._settings.health_probe_path,
                    method="HEAD",
                    timeout=timeout,
                ),
                timeout=timeout,
            )
        except TimeoutError:
            return HealthCheckResult.failure(ErrorKind.TIMEOUT, TIMEOUT_MESSAGE)
        except BackendUnreachableError as exc:
            log_warning(self._logger, "health_probe_unreachable", error=str(exc))
            return HealthCheckResult.failure(ErrorKind.UNREACHABLE, CANNOT_REACH_MESSAGE)
        except Exception as exc:
            log_exception(self._logger, "health_probe_failed")
            return HealthCheckResult.failure(
                ErrorKind.UNREACHABLE,
                f"Cannot reach the backend REST API: {exc.__class__.__name__}: {exc}",
            )

        elapsed = max(self._now() - started, 0.0)
        status = response.status_code
        if status in AUTH_FAILURE_STATUSES:
            return HealthCheckResult.failure(
                ErrorKind.CREDENTIAL_EXPIRED, AUTH_FAILED_MESSAGE
            )
        if not response.is_success and status != NOT_FOUND_STATUS:
            return HealthCheckResult.failure(
                ErrorKind.REJECTED,
                f"Backend REST API rejected the probe (HTTP {status}).",
            )

        log_info(
            self._logger,
            "health_probe_succeeded",
            status=status,
            elapsed_seconds=round(elapsed, 3),
        )
        return HealthCheckResult.ok()
