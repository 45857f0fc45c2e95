"""Owner object wiring the connectivity components with an explicit lifecycle."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Coroutine
from contextlib import suppress
from types import TracebackType
from typing import Any

import httpx

from talentflow_connect.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    LoggingBreakerListener,
)
from talentflow_connect.client import (
    BackendClient,
    ChannelTransport,
    ClientFactory,
    build_http_client_factory,
)
from talentflow_connect.config_resolver import (
    ConfigChangeEvent,
    ConfigResolver,
    ConnectionConfig,
)
from talentflow_connect.diagnostics import ConnectionDiagnostics, diagnose_connection
from talentflow_connect.health import HealthMonitor
from talentflow_connect.logging import (
    AnyLogger,
    configure_structlog,
    get_logger,
    log_info,
)
from talentflow_connect.override_store import (
    InMemoryOverrideStore,
    JsonFileOverrideStore,
    OverrideStore,
)
from talentflow_connect.realtime import SubscriptionManager
from talentflow_connect.retry import RetryBackoffPolicy
from talentflow_connect.settings import ConnectionSettings

HEALTH_BREAKER_NAME = "backend-health"


def build_override_store(settings: ConnectionSettings) -> OverrideStore:
    """Return the file-backed store when a path is configured, else in-memory."""
    if settings.override_store_path:
        return JsonFileOverrideStore(settings.override_store_path)
    return InMemoryOverrideStore()


class ConnectivityRuntime:
    """Construct once at startup, close once at shutdown.

    Holds the resolver, the health monitor with its breaker and cache, and
    the subscription manager, so independent instances never share state.
    When a new configuration is published the health cache and breaker are
    reset. Tracked channels are rebuilt when the new config is valid and
    suspended when it is not.
    """

    def __init__(
        self,
        *,
        settings: ConnectionSettings | None = None,
        store: OverrideStore | None = None,
        http: httpx.AsyncClient | None = None,
        transport: ChannelTransport | None = None,
        client_factory: ClientFactory | None = None,
        now_fn: Callable[[], float] = time.monotonic,
        logger: AnyLogger | None = None,
    ) -> None:
        """Wire the components.

        Args:
            settings: Connection settings; read from the environment when
                omitted.
            store: Override store; derived from settings when omitted.
            http: Shared HTTP client. One is created and owned when omitted.
            transport: Push transport handed to HTTP backend clients.
            client_factory: Replaces the default ``HttpBackendClient`` factory.
            now_fn: Monotonic clock shared by the breaker and health cache.
            logger: Structured logger shared by all components.
        """
        self.settings = ConnectionSettings() if settings is None else settings
        self._logger = get_logger(__name__) if logger is None else logger
        self._owns_http = http is None
        self._http = (
            httpx.AsyncClient(timeout=self.settings.health_timeout_seconds)
            if http is None
            else http
        )
        factory = (
            build_http_client_factory(self._http, transport=transport)
            if client_factory is None
            else client_factory
        )

        self._client_factory = factory
        self.resolver = ConfigResolver(
            settings=self.settings,
            store=build_override_store(self.settings) if store is None else store,
            client_factory=factory,
            logger=self._logger,
        )
        self.breaker = CircuitBreaker(
            HEALTH_BREAKER_NAME,
            config=CircuitBreakerConfig(
                failure_threshold=self.settings.breaker_failure_threshold,
                cooldown_seconds=self.settings.breaker_cooldown_seconds,
            ),
            listeners=[LoggingBreakerListener(self._logger)],
            now_fn=now_fn,
            logger=self._logger,
        )
        self.health = HealthMonitor(
            resolver=self.resolver,
            settings=self.settings,
            breaker=self.breaker,
            now_fn=now_fn,
            logger=self._logger,
        )
        self.subscriptions = SubscriptionManager(
            client_provider=lambda: self.resolver.client,
            policy=RetryBackoffPolicy(
                attempts=self.settings.reconnect_max_attempts,
                min_seconds=self.settings.reconnect_base_seconds,
                max_seconds=self.settings.reconnect_max_seconds,
            ),
            connectivity_probe_path=self.settings.connectivity_probe_path,
            probe_timeout_seconds=self.settings.health_timeout_seconds,
            stagger_seconds=self.settings.reconnect_all_stagger_seconds,
            logger=self._logger,
        )
        self._tasks: set[asyncio.Task[Any]] = set()
        self._remove_listener: Callable[[], None] | None = None
        self._config_lock = asyncio.Lock()
        self._started = False

    @classmethod
    def from_env(
        cls,
        *,
        transport: ChannelTransport | None = None,
        configure_logging: bool = True,
    ) -> ConnectivityRuntime:
        """Build a runtime from ``TALENTFLOW_*`` environment variables."""
        settings = ConnectionSettings()
        logger: AnyLogger | None = None
        if configure_logging:
            logger = configure_structlog(log_level=settings.log_level)
        return cls(settings=settings, transport=transport, logger=logger)

    @property
    def client(self) -> BackendClient | None:
        return self.resolver.client

    async def diagnose(
        self, config: ConnectionConfig | None = None
    ) -> ConnectionDiagnostics:
        """Diagnose ``config``, or the active configuration when omitted."""
        if config is None:
            config = self.resolver.active_config or self.resolver.resolve()
        return await diagnose_connection(config, self.health, self._client_factory)

    async def start(self) -> BackendClient | None:
        """Resolve configuration and publish it to listeners."""
        if self._remove_listener is None:
            self._remove_listener = self.resolver.add_listener(self._on_config_change)
        self._started = True
        client = self.resolver.reinitialize(force=True)
        log_info(self._logger, "runtime_started", client_ready=client is not None)
        return client

    async def aclose(self) -> None:
        """Close channels, cancel background work and release the HTTP client."""
        if self._remove_listener is not None:
            self._remove_listener()
            self._remove_listener = None
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task
        await self.subscriptions.aclose()
        if self._owns_http:
            await self._http.aclose()
        if self._started:
            log_info(self._logger, "runtime_stopped")
        self._started = False

    async def __aenter__(self) -> ConnectivityRuntime:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        await self.aclose()

    def _on_config_change(self, event: ConfigChangeEvent) -> None:
        self._spawn(self._apply_config_change(event), name="runtime-config-change")

    async def _apply_config_change(self, event: ConfigChangeEvent) -> None:
        # Changes are applied one at a time in publication order.
        async with self._config_lock:
            await self.health.invalidate()
            if not event.valid:
                await self.subscriptions.suspend_all()
            elif self.subscriptions.keys() or self.subscriptions.suspended:
                await self.subscriptions.reconnect_all()

    def _spawn(
        self, coro: Coroutine[Any, Any, None], *, name: str
    ) -> asyncio.Task[None]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
