"""Self-healing push-subscription channels keyed by topic and filter."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine, Mapping
from contextlib import suppress
from dataclasses import dataclass
from enum import StrEnum
from types import MappingProxyType
from typing import Any

from talentflow_connect.client import (
    BackendClient,
    Channel,
    ChannelEventSpec,
    TransportStatus,
)
from talentflow_connect.errors import ChannelAbandonedError
from talentflow_connect.logging import (
    AnyLogger,
    get_logger,
    log_error,
    log_exception,
    log_info,
    log_warning,
)
from talentflow_connect.retry import RetryBackoffPolicy, build_interruptible_sleep

ClientProvider = Callable[[], BackendClient | None]

ALL_ROWS_FILTER = "all"


class ChannelStatus(StrEnum):
    """Lifecycle of one channel registration."""

    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    ERROR = "error"
    TIMED_OUT = "timed_out"
    CLOSED = "closed"
    ABANDONED = "abandoned"
    SUSPENDED = "suspended"


_TRANSPORT_STATUSES: dict[str, ChannelStatus] = {
    TransportStatus.SUBSCRIBED: ChannelStatus.SUBSCRIBED,
    TransportStatus.CHANNEL_ERROR: ChannelStatus.ERROR,
    TransportStatus.TIMED_OUT: ChannelStatus.TIMED_OUT,
    TransportStatus.CLOSED: ChannelStatus.CLOSED,
}


@dataclass(frozen=True)
class ChangeEvent:
    """One row change delivered on a channel."""

    event_type: str
    new: Mapping[str, object] | None
    old: Mapping[str, object] | None

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> ChangeEvent:
        new = payload.get("new")
        old = payload.get("old")
        return cls(
            event_type=str(payload.get("eventType", "")),
            new=new if isinstance(new, Mapping) else None,
            old=old if isinstance(old, Mapping) else None,
        )


ChangeHandler = Callable[[ChangeEvent], None]
ErrorCallback = Callable[[Exception], None]


def normalize_filter(filter: str | None) -> str | None:
    """Map the blank and ``"all"`` filters onto ``None`` (the whole topic)."""
    if filter is None:
        return None
    if not filter.strip() or filter == ALL_ROWS_FILTER:
        return None
    return filter


def channel_key(topic: str, filter: str | None = None) -> str:
    """Return the dedup key for a topic and optional filter expression.

    ``"all"`` names the unfiltered channel, so ``channel_key(topic, "all")``
    and ``channel_key(topic)`` are the same key by construction.
    """
    return f"{topic}_{normalize_filter(filter) or ALL_ROWS_FILTER}"


@dataclass(eq=False)
class ChannelRegistration:
    """State for the single live channel behind one dedup key."""

    key: str
    topic: str
    filter: str | None
    handler: ChangeHandler
    on_error: ErrorCallback | None
    max_reconnect_attempts: int
    channel: Channel | None = None
    client: BackendClient | None = None
    status: ChannelStatus = ChannelStatus.CONNECTING
    reconnect_attempts: int = 0
    reconnect_timer: asyncio.TimerHandle | None = None
    reconnect_task: asyncio.Task[None] | None = None

    @property
    def name(self) -> str:
        return self.key

    @property
    def reconnect_pending(self) -> bool:
        return self.reconnect_timer is not None or self.reconnect_task is not None


class SubscriptionManager:
    """Own every channel registration and keep each one alive.

    Failed channels (error, timeout, unexpected close) are reopened after a
    capped exponential backoff scheduled with ``loop.call_later``. The
    attempt counter resets on every successful subscribe. After
    ``policy.attempts`` failed reconnects the registration is abandoned and
    the subscriber's error callback receives a ``ChannelAbandonedError``;
    subscribing to the same key again starts a fresh registration.

    All methods must be called from the event loop that owns the manager.
    """

    def __init__(
        self,
        *,
        client_provider: ClientProvider,
        policy: RetryBackoffPolicy,
        connectivity_probe_path: str,
        probe_timeout_seconds: float = 10.0,
        stagger_seconds: float = 0.1,
        logger: AnyLogger | None = None,
    ) -> None:
        """Create a subscription manager.

        Args:
            client_provider: Returns the active backend client, if any.
            policy: Reconnect attempt budget and backoff bounds.
            connectivity_probe_path: Data read used by ``reconnect_all``.
            probe_timeout_seconds: Timeout for that connectivity read.
            stagger_seconds: Delay between channels in ``reconnect_all``.
            logger: Structured logger.
        """
        self._client_provider = client_provider
        self._policy = policy
        self._connectivity_probe_path = connectivity_probe_path
        self._probe_timeout_seconds = probe_timeout_seconds
        self._stagger_seconds = stagger_seconds
        self._logger = get_logger(__name__) if logger is None else logger
        self._registrations: dict[str, ChannelRegistration] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._reconnecting_all = False
        self._suspended = False
        self._epoch = 0
        self._stop_event = asyncio.Event()
        self._sleep = build_interruptible_sleep(self._stop_event)

    @property
    def registrations(self) -> Mapping[str, ChannelRegistration]:
        return MappingProxyType(self._registrations)

    @property
    def reconnecting_all(self) -> bool:
        return self._reconnecting_all

    @property
    def suspended(self) -> bool:
        return self._suspended

    def get(self, key: str) -> ChannelRegistration | None:
        return self._registrations.get(key)

    def keys(self) -> tuple[str, ...]:
        return tuple(self._registrations)

    def subscribe(
        self,
        topic: str,
        handler: ChangeHandler,
        filter: str | None = None,
        *,
        on_error: ErrorCallback | None = None,
    ) -> ChannelRegistration:
        """Return the registration for ``(topic, filter)``, opening it if new.

        An existing live registration is returned unchanged, even when the
        caller passes a different handler. While channels are suspended the
        registration is recorded but not opened until ``reconnect_all``.
        """
        filter = normalize_filter(filter)
        key = channel_key(topic, filter)
        existing = self._registrations.get(key)
        if existing is not None and existing.status != ChannelStatus.ABANDONED:
            return existing
        if existing is not None:
            self._cancel_pending(existing)
            self._teardown_later(existing)

        registration = ChannelRegistration(
            key=key,
            topic=topic,
            filter=filter,
            handler=handler,
            on_error=on_error,
            max_reconnect_attempts=self._policy.attempts,
        )
        self._registrations[key] = registration
        log_info(self._logger, "channel_subscribe", key=key, topic=topic)
        if self._suspended:
            registration.status = ChannelStatus.SUSPENDED
        else:
            self._open(registration)
        return registration

    async def unsubscribe(self, key: str) -> bool:
        """Close the channel for ``key`` and cancel any scheduled reconnect."""
        registration = self._registrations.pop(key, None)
        if registration is None:
            return False
        await self._retire(registration)
        log_info(self._logger, "channel_unsubscribed", key=key)
        return True

    async def unsubscribe_all(self) -> None:
        """Close every channel and cancel every scheduled reconnect."""
        registrations = list(self._registrations.values())
        self._registrations.clear()
        for registration in registrations:
            await self._retire(registration)
        if registrations:
            log_info(self._logger, "channels_unsubscribed", count=len(registrations))

    async def reconnect_all(self) -> bool:
        """Recreate every tracked channel after confirming connectivity.

        Returns ``False`` without touching any channel when another bulk
        reconnect is running or the connectivity read fails.
        """
        if self._reconnecting_all:
            log_info(self._logger, "reconnect_all_skipped", reason="in_progress")
            return False

        epoch = self._epoch
        self._reconnecting_all = True
        try:
            if not await self._connectivity_ok() or epoch != self._epoch:
                log_warning(self._logger, "reconnect_all_aborted")
                return False

            self._suspended = False
            snapshot = list(self._registrations.items())
            log_info(self._logger, "reconnect_all_started", count=len(snapshot))
            for index, (key, registration) in enumerate(snapshot):
                if epoch != self._epoch:
                    log_warning(self._logger, "reconnect_all_interrupted", key=key)
                    return False
                if self._registrations.get(key) is not registration:
                    continue
                self._cancel_pending(registration)
                registration.reconnect_attempts = 0
                registration.status = ChannelStatus.CONNECTING
                await self._teardown(registration)
                if (
                    epoch != self._epoch
                    or self._registrations.get(key) is not registration
                ):
                    continue
                self._open(registration)
                if index < len(snapshot) - 1:
                    await self._sleep(self._stagger_seconds)
            return True
        finally:
            self._reconnecting_all = False

    async def suspend_all(self) -> int:
        """Close every channel but keep its registration for ``reconnect_all``.

        Scheduled reconnects are cancelled and a bulk reconnect in progress
        stops before opening further channels. Registrations stay
        ``SUSPENDED`` until the next successful ``reconnect_all``; new
        subscriptions made meanwhile wait in the same state.

        Returns:
            The number of registrations suspended.
        """
        self._suspended = True
        self._epoch += 1
        registrations = list(self._registrations.values())
        for registration in registrations:
            self._cancel_pending(registration)
            registration.status = ChannelStatus.SUSPENDED
            await self._teardown(registration)
        log_info(self._logger, "channels_suspended", count=len(registrations))
        return len(registrations)

    async def aclose(self) -> None:
        """Stop background work and close every channel."""
        self._stop_event.set()
        await self.unsubscribe_all()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task

    async def _connectivity_ok(self) -> bool:
        client = self._client_provider()
        if client is None:
            return False
        timeout = self._probe_timeout_seconds
        try:
            response = await asyncio.wait_for(
                client.probe(
                    self._connectivity_probe_path,
                    method="GET",
                    timeout=timeout,
                ),
                timeout=timeout,
            )
        except Exception as exc:
            log_warning(
                self._logger,
                "connectivity_probe_failed",
                error=f"{exc.__class__.__name__}: {exc}",
            )
            return False
        return response.is_success

    def _is_current(self, registration: ChannelRegistration, channel: Channel) -> bool:
        return (
            self._registrations.get(registration.key) is registration
            and registration.channel is channel
        )

    def _open(self, registration: ChannelRegistration) -> None:
        registration.status = ChannelStatus.CONNECTING
        client = self._client_provider()
        if client is None:
            log_warning(self._logger, "channel_open_skipped", key=registration.key)
            self._handle_failure(registration, ChannelStatus.ERROR)
            return
        try:
            channel = client.open_channel(registration.key)
            registration.channel = channel
            registration.client = client
            spec = ChannelEventSpec(table=registration.topic, filter=registration.filter)
            channel.on(spec, self._change_callback(registration, channel))
            channel.subscribe(self._status_callback(registration, channel))
        except Exception:
            log_exception(self._logger, "channel_open_failed", key=registration.key)
            self._handle_failure(registration, ChannelStatus.ERROR)

    def _change_callback(
        self, registration: ChannelRegistration, channel: Channel
    ) -> Callable[[Mapping[str, object]], None]:
        def _deliver(payload: Mapping[str, object]) -> None:
            if not self._is_current(registration, channel):
                return
            try:
                registration.handler(ChangeEvent.from_payload(payload))
            except Exception:
                log_exception(
                    self._logger, "channel_handler_failed", key=registration.key
                )

        return _deliver

    def _status_callback(
        self, registration: ChannelRegistration, channel: Channel
    ) -> Callable[[str, Exception | None], None]:
        def _on_status(status: str, error: Exception | None = None) -> None:
            if not self._is_current(registration, channel):
                return
            mapped = _TRANSPORT_STATUSES.get(status)
            if mapped is None:
                log_warning(
                    self._logger,
                    "channel_status_unknown",
                    key=registration.key,
                    status=status,
                )
                return
            if mapped == ChannelStatus.SUBSCRIBED:
                registration.status = ChannelStatus.SUBSCRIBED
                registration.reconnect_attempts = 0
                log_info(self._logger, "channel_subscribed", key=registration.key)
                return
            if error is not None:
                log_warning(
                    self._logger,
                    "channel_failed",
                    key=registration.key,
                    status=str(mapped),
                    error=str(error),
                )
            self._handle_failure(registration, mapped)

        return _on_status

    def _handle_failure(
        self, registration: ChannelRegistration, status: ChannelStatus
    ) -> None:
        if registration.status == ChannelStatus.ABANDONED or registration.reconnect_pending:
            return
        registration.status = status

        if self._policy.exhausted(registration.reconnect_attempts):
            registration.status = ChannelStatus.ABANDONED
            log_error(
                self._logger,
                "channel_abandoned",
                key=registration.key,
                attempts=registration.reconnect_attempts,
            )
            self._teardown_later(registration)
            self._report(
                registration,
                ChannelAbandonedError(registration.key, registration.reconnect_attempts),
            )
            return

        registration.reconnect_attempts += 1
        delay = self._policy.delay_for(registration.reconnect_attempts)
        loop = asyncio.get_running_loop()
        registration.reconnect_timer = loop.call_later(
            delay, self._fire_reconnect, registration
        )
        log_warning(
            self._logger,
            "channel_reconnect_scheduled",
            key=registration.key,
            status=str(status),
            attempt=registration.reconnect_attempts,
            delay_seconds=delay,
        )

    def _fire_reconnect(self, registration: ChannelRegistration) -> None:
        registration.reconnect_timer = None
        if self._registrations.get(registration.key) is not registration:
            return
        registration.reconnect_task = self._spawn(
            self._reconnect(registration),
            name=f"channel-reconnect:{registration.key}",
        )

    async def _reconnect(self, registration: ChannelRegistration) -> None:
        await self._teardown(registration)
        registration.reconnect_task = None
        if self._registrations.get(registration.key) is not registration:
            return
        log_info(
            self._logger,
            "channel_reconnecting",
            key=registration.key,
            attempt=registration.reconnect_attempts,
        )
        self._open(registration)

    def _detach(
        self, registration: ChannelRegistration
    ) -> tuple[BackendClient, Channel] | None:
        channel = registration.channel
        client = registration.client
        registration.channel = None
        registration.client = None
        if channel is None or client is None:
            return None
        return client, channel

    async def _close(self, key: str, client: BackendClient, channel: Channel) -> None:
        try:
            await client.close_channel(channel)
        except Exception:
            log_exception(self._logger, "channel_close_failed", key=key)

    async def _teardown(self, registration: ChannelRegistration) -> None:
        detached = self._detach(registration)
        if detached is not None:
            await self._close(registration.key, *detached)

    def _teardown_later(self, registration: ChannelRegistration) -> None:
        detached = self._detach(registration)
        if detached is not None:
            self._spawn(
                self._close(registration.key, *detached),
                name=f"channel-teardown:{registration.key}",
            )

    def _cancel_pending(self, registration: ChannelRegistration) -> None:
        if registration.reconnect_timer is not None:
            registration.reconnect_timer.cancel()
            registration.reconnect_timer = None
        task = registration.reconnect_task
        registration.reconnect_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _retire(self, registration: ChannelRegistration) -> None:
        self._cancel_pending(registration)
        registration.status = ChannelStatus.CLOSED
        await self._teardown(registration)

    def _report(self, registration: ChannelRegistration, error: Exception) -> None:
        if registration.on_error is None:
            return
        try:
            registration.on_error(error)
        except Exception:
            log_exception(
                self._logger, "channel_error_callback_failed", key=registration.key
            )

    def _spawn(
        self, coro: Coroutine[Any, Any, None], *, name: str
    ) -> asyncio.Task[None]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
