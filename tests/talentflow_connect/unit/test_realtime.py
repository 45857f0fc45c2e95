from __future__ import annotations

import asyncio

import pytest

from talentflow_connect.client import ChannelEventSpec, ProbeResponse
from talentflow_connect.errors import BackendUnreachableError, ChannelAbandonedError
from talentflow_connect.realtime import (
    ChangeEvent,
    ChannelStatus,
    SubscriptionManager,
    channel_key,
)
from talentflow_connect.retry import RetryBackoffPolicy
from tests.talentflow_connect.support.fakes import (
    FakeBackendClient,
    FakeLogger,
    settle,
)

pytestmark = pytest.mark.asyncio

_CONNECTIVITY_PATH = "/rest/v1/profiles?select=id&limit=1"


def _build_manager(
    client: FakeBackendClient | None,
    logger: FakeLogger,
    *,
    attempts: int = 5,
    base_seconds: float = 0.0,
    max_seconds: float = 0.0,
) -> SubscriptionManager:
    return SubscriptionManager(
        client_provider=lambda: client,
        policy=RetryBackoffPolicy(
            attempts=attempts, min_seconds=base_seconds, max_seconds=max_seconds
        ),
        connectivity_probe_path=_CONNECTIVITY_PATH,
        probe_timeout_seconds=1.0,
        stagger_seconds=0.0,
        logger=logger,
    )


def _ignore(event: ChangeEvent) -> None:
    return None


async def test_channel_key_defaults_filter_to_all() -> None:
    assert channel_key("profiles") == "profiles_all"
    assert channel_key("profiles", "id=eq.7") == "profiles_id=eq.7"


async def test_subscribe_opens_one_channel_per_key(
    fake_client: FakeBackendClient, fake_logger: FakeLogger
) -> None:
    manager = _build_manager(fake_client, fake_logger)

    first = manager.subscribe("profiles", _ignore)
    second = manager.subscribe("profiles", lambda event: None)

    assert second is first
    assert first.key == "profiles_all"
    assert first.status == ChannelStatus.SUBSCRIBED
    assert len(fake_client.channels) == 1
    assert fake_client.channels[0].name == "profiles_all"
    assert fake_client.channels[0].specs == [ChannelEventSpec(table="profiles")]
    assert manager.keys() == ("profiles_all",)
    await manager.aclose()


async def test_different_filters_get_separate_channels(
    fake_client: FakeBackendClient, fake_logger: FakeLogger
) -> None:
    manager = _build_manager(fake_client, fake_logger)

    unfiltered = manager.subscribe("applications", _ignore)
    filtered = manager.subscribe("applications", _ignore, "job_id=eq.42")

    assert unfiltered is not filtered
    assert set(manager.registrations) == {
        "applications_all",
        "applications_job_id=eq.42",
    }
    assert fake_client.channels[1].specs == [
        ChannelEventSpec(table="applications", filter="job_id=eq.42")
    ]
    await manager.aclose()


async def test_change_events_are_delivered_in_order(
    fake_client: FakeBackendClient, fake_logger: FakeLogger
) -> None:
    manager = _build_manager(fake_client, fake_logger)
    received: list[ChangeEvent] = []
    manager.subscribe("jobs", received.append)
    channel = fake_client.channels[0]

    channel.emit_change({"eventType": "INSERT", "new": {"id": 1}, "old": {}})
    channel.emit_change({"eventType": "UPDATE", "new": {"id": 1, "title": "x"}})
    channel.emit_change({"eventType": "DELETE", "new": None, "old": {"id": 1}})

    assert [event.event_type for event in received] == ["INSERT", "UPDATE", "DELETE"]
    assert received[1].new == {"id": 1, "title": "x"}
    assert received[1].old is None
    assert received[2].old == {"id": 1}
    await manager.aclose()


async def test_handler_failure_is_logged_and_delivery_continues(
    fake_client: FakeBackendClient, fake_logger: FakeLogger
) -> None:
    manager = _build_manager(fake_client, fake_logger)
    calls: list[str] = []

    def _flaky(event: ChangeEvent) -> None:
        calls.append(event.event_type)
        if event.event_type == "INSERT":
            raise RuntimeError("boom")

    manager.subscribe("jobs", _flaky)
    channel = fake_client.channels[0]
    channel.emit_change({"eventType": "INSERT"})
    channel.emit_change({"eventType": "UPDATE"})

    assert calls == ["INSERT", "UPDATE"]
    assert fake_logger.fields_for("channel_handler_failed") == [{"key": "jobs_all"}]
    await manager.aclose()


async def test_failure_schedules_backoff_reconnect(fake_logger: FakeLogger) -> None:
    client = FakeBackendClient(channel_statuses=["CHANNEL_ERROR"])
    manager = _build_manager(client, fake_logger, base_seconds=1.0, max_seconds=30.0)
    loop = asyncio.get_running_loop()

    registration = manager.subscribe("profiles", _ignore)

    assert registration.status == ChannelStatus.ERROR
    assert registration.reconnect_attempts == 1
    assert registration.reconnect_timer is not None
    assert 1.5 < registration.reconnect_timer.when() - loop.time() <= 2.0
    assert fake_logger.fields_for("channel_reconnect_scheduled") == [
        {"key": "profiles_all", "status": "error", "attempt": 1, "delay_seconds": 2.0}
    ]
    await manager.aclose()
    assert registration.reconnect_timer is None


async def test_reconnect_resets_attempts_after_subscribe(
    fake_logger: FakeLogger,
) -> None:
    client = FakeBackendClient(channel_statuses=["TIMED_OUT", "CHANNEL_ERROR"])
    manager = _build_manager(client, fake_logger)

    registration = manager.subscribe("profiles", _ignore)
    await settle()

    assert registration.status == ChannelStatus.SUBSCRIBED
    assert registration.reconnect_attempts == 0
    assert registration.reconnect_pending is False
    assert len(client.channels) == 3
    assert client.closed_channels == client.channels[:2]
    assert [
        fields["attempt"]
        for fields in fake_logger.fields_for("channel_reconnect_scheduled")
    ] == [1, 2]
    await manager.aclose()


async def test_unexpected_close_triggers_reconnect(
    fake_client: FakeBackendClient, fake_logger: FakeLogger
) -> None:
    manager = _build_manager(fake_client, fake_logger)
    registration = manager.subscribe("profiles", _ignore)

    fake_client.channels[0].emit_status("CLOSED")
    await settle()

    assert registration.status == ChannelStatus.SUBSCRIBED
    assert len(fake_client.channels) == 2
    assert fake_client.channels[0].closed is True
    await manager.aclose()


async def test_channel_is_abandoned_after_max_reconnects(
    fake_logger: FakeLogger,
) -> None:
    client = FakeBackendClient(default_status="CHANNEL_ERROR")
    manager = _build_manager(client, fake_logger, attempts=5)
    errors: list[Exception] = []

    registration = manager.subscribe("profiles", _ignore, on_error=errors.append)
    await settle(60)

    assert registration.status == ChannelStatus.ABANDONED
    assert registration.reconnect_attempts == 5
    assert registration.reconnect_pending is False
    assert len(client.channels) == 6
    assert len(errors) == 1
    assert isinstance(errors[0], ChannelAbandonedError)
    assert errors[0].key == "profiles_all"
    assert errors[0].attempts == 5
    assert all(channel.closed for channel in client.channels)
    assert fake_logger.fields_for("channel_abandoned") == [
        {"key": "profiles_all", "attempts": 5}
    ]

    await settle(20)
    assert len(client.channels) == 6
    assert len(errors) == 1
    await manager.aclose()


async def test_late_status_on_abandoned_channel_is_ignored(
    fake_logger: FakeLogger,
) -> None:
    client = FakeBackendClient(default_status="CHANNEL_ERROR")
    manager = _build_manager(client, fake_logger, attempts=0)
    errors: list[Exception] = []

    registration = manager.subscribe("profiles", _ignore, on_error=errors.append)
    await settle()
    client.channels[0].emit_status("CHANNEL_ERROR")
    await settle()

    assert registration.status == ChannelStatus.ABANDONED
    assert len(client.channels) == 1
    assert len(errors) == 1
    await manager.aclose()


async def test_subscribe_after_abandon_starts_fresh_registration(
    fake_logger: FakeLogger,
) -> None:
    client = FakeBackendClient(channel_statuses=["CHANNEL_ERROR"])
    manager = _build_manager(client, fake_logger, attempts=0)
    abandoned = manager.subscribe("profiles", _ignore)
    await settle()

    revived = manager.subscribe("profiles", _ignore)

    assert abandoned.status == ChannelStatus.ABANDONED
    assert revived is not abandoned
    assert revived.status == ChannelStatus.SUBSCRIBED
    assert manager.get("profiles_all") is revived
    await manager.aclose()


async def test_missing_client_is_treated_as_channel_failure(
    fake_logger: FakeLogger,
) -> None:
    manager = _build_manager(None, fake_logger, base_seconds=1.0, max_seconds=30.0)

    registration = manager.subscribe("profiles", _ignore)

    assert registration.status == ChannelStatus.ERROR
    assert registration.reconnect_pending is True
    assert "channel_open_skipped" in fake_logger.events
    await manager.aclose()


async def test_unsubscribe_cancels_pending_reconnect(fake_logger: FakeLogger) -> None:
    client = FakeBackendClient(channel_statuses=["CHANNEL_ERROR"])
    manager = _build_manager(client, fake_logger, base_seconds=0.01, max_seconds=0.02)
    received: list[ChangeEvent] = []
    registration = manager.subscribe("profiles", received.append)
    assert registration.reconnect_pending is True

    assert await manager.unsubscribe("profiles_all") is True
    await asyncio.sleep(0.05)

    assert registration.reconnect_pending is False
    assert registration.status == ChannelStatus.CLOSED
    assert len(client.channels) == 1
    assert client.channels[0].closed is True
    client.channels[0].emit_change({"eventType": "INSERT"})
    assert received == []
    assert await manager.unsubscribe("profiles_all") is False


async def test_resubscribe_after_unsubscribe_does_not_resurrect_old_timer(
    fake_logger: FakeLogger,
) -> None:
    client = FakeBackendClient(channel_statuses=["CHANNEL_ERROR"])
    manager = _build_manager(client, fake_logger, base_seconds=0.01, max_seconds=0.02)
    old = manager.subscribe("profiles", _ignore)
    await manager.unsubscribe("profiles_all")

    new = manager.subscribe("profiles", _ignore)
    await asyncio.sleep(0.05)

    assert new is not old
    assert new.status == ChannelStatus.SUBSCRIBED
    assert len(client.channels) == 2
    assert manager.get("profiles_all") is new
    await manager.aclose()


async def test_unsubscribe_all_closes_every_channel(
    fake_client: FakeBackendClient, fake_logger: FakeLogger
) -> None:
    manager = _build_manager(fake_client, fake_logger)
    manager.subscribe("profiles", _ignore)
    manager.subscribe("jobs", _ignore)

    await manager.unsubscribe_all()

    assert manager.keys() == ()
    assert all(channel.closed for channel in fake_client.channels)
    assert fake_logger.fields_for("channels_unsubscribed") == [{"count": 2}]


async def test_reconnect_all_recreates_every_channel(
    fake_client: FakeBackendClient, fake_logger: FakeLogger
) -> None:
    manager = _build_manager(fake_client, fake_logger)
    profiles = manager.subscribe("profiles", _ignore)
    jobs = manager.subscribe("jobs", _ignore)
    original = list(fake_client.channels)

    assert await manager.reconnect_all() is True

    assert fake_client.probe_calls == [
        {"path": _CONNECTIVITY_PATH, "method": "GET", "headers": None, "timeout": 1.0}
    ]
    assert all(channel.closed for channel in original)
    assert len(fake_client.channels) == 4
    assert profiles.status == ChannelStatus.SUBSCRIBED
    assert jobs.status == ChannelStatus.SUBSCRIBED
    assert manager.reconnecting_all is False
    await manager.aclose()


async def test_reconnect_all_revives_abandoned_channels(
    fake_logger: FakeLogger,
) -> None:
    client = FakeBackendClient(channel_statuses=["CHANNEL_ERROR"])
    manager = _build_manager(client, fake_logger, attempts=0)
    registration = manager.subscribe("profiles", _ignore)
    await settle()
    assert registration.status == ChannelStatus.ABANDONED

    assert await manager.reconnect_all() is True

    assert registration.status == ChannelStatus.SUBSCRIBED
    assert registration.reconnect_attempts == 0
    await manager.aclose()


@pytest.mark.parametrize(
    "outcome",
    [BackendUnreachableError("offline"), ProbeResponse(status_code=500)],
)
async def test_reconnect_all_aborts_when_connectivity_fails(
    fake_logger: FakeLogger, outcome: ProbeResponse | Exception
) -> None:
    client = FakeBackendClient(probe_results=[outcome])
    manager = _build_manager(client, fake_logger)
    registration = manager.subscribe("profiles", _ignore)

    assert await manager.reconnect_all() is False

    assert len(client.channels) == 1
    assert client.channels[0].closed is False
    assert registration.status == ChannelStatus.SUBSCRIBED
    assert "reconnect_all_aborted" in fake_logger.events
    await manager.aclose()


async def test_reconnect_all_without_client_aborts(fake_logger: FakeLogger) -> None:
    manager = _build_manager(None, fake_logger)

    assert await manager.reconnect_all() is False


async def test_reconnect_all_is_single_flight(fake_logger: FakeLogger) -> None:
    gate = asyncio.Event()
    client = FakeBackendClient(probe_results=[gate])
    manager = _build_manager(client, fake_logger)
    manager.subscribe("profiles", _ignore)

    first = asyncio.create_task(manager.reconnect_all())
    await settle()
    assert manager.reconnecting_all is True

    assert await manager.reconnect_all() is False
    gate.set()
    assert await first is True

    assert len(client.probe_calls) == 1
    assert fake_logger.fields_for("reconnect_all_skipped") == [{"reason": "in_progress"}]
    await manager.aclose()


async def test_stale_status_from_replaced_channel_is_ignored(
    fake_client: FakeBackendClient, fake_logger: FakeLogger
) -> None:
    manager = _build_manager(fake_client, fake_logger)
    registration = manager.subscribe("profiles", _ignore)
    stale = fake_client.channels[0]
    await manager.reconnect_all()

    stale.emit_status("CHANNEL_ERROR")

    assert registration.status == ChannelStatus.SUBSCRIBED
    assert registration.reconnect_pending is False
    await manager.aclose()


async def test_aclose_stops_everything(fake_logger: FakeLogger) -> None:
    client = FakeBackendClient(channel_statuses=["CHANNEL_ERROR"])
    manager = _build_manager(client, fake_logger, base_seconds=0.01, max_seconds=0.02)
    registration = manager.subscribe("profiles", _ignore)

    await manager.aclose()
    await asyncio.sleep(0.05)

    assert manager.keys() == ()
    assert registration.reconnect_pending is False
    assert len(client.channels) == 1


@pytest.mark.parametrize("filter", ["all", "", "   "])
async def test_all_and_blank_filters_name_the_unfiltered_channel(
    fake_client: FakeBackendClient, fake_logger: FakeLogger, filter: str
) -> None:
    manager = _build_manager(fake_client, fake_logger)

    unfiltered = manager.subscribe("tasks", _ignore)
    aliased = manager.subscribe("tasks", _ignore, filter)

    assert aliased is unfiltered
    assert unfiltered.filter is None
    assert channel_key("tasks", filter) == channel_key("tasks") == "tasks_all"
    assert len(fake_client.channels) == 1
    assert fake_client.channels[0].specs == [ChannelEventSpec(table="tasks")]
    await manager.aclose()


async def test_all_filter_alone_opens_unfiltered_channel(
    fake_client: FakeBackendClient, fake_logger: FakeLogger
) -> None:
    manager = _build_manager(fake_client, fake_logger)

    registration = manager.subscribe("tasks", _ignore, "all")

    assert registration.key == "tasks_all"
    assert registration.filter is None
    assert fake_client.channels[0].specs == [ChannelEventSpec(table="tasks")]
    await manager.aclose()


async def test_suspend_all_closes_channels_and_cancels_timers(
    fake_logger: FakeLogger,
) -> None:
    client = FakeBackendClient(channel_statuses=["SUBSCRIBED", "CHANNEL_ERROR"])
    manager = _build_manager(client, fake_logger, base_seconds=0.01, max_seconds=0.02)
    received: list[ChangeEvent] = []
    healthy = manager.subscribe("profiles", received.append)
    failing = manager.subscribe("jobs", _ignore)
    assert failing.reconnect_pending is True

    assert await manager.suspend_all() == 2
    await asyncio.sleep(0.05)

    assert manager.suspended is True
    assert healthy.status == ChannelStatus.SUSPENDED
    assert failing.status == ChannelStatus.SUSPENDED
    assert failing.reconnect_pending is False
    assert len(client.channels) == 2
    assert all(channel.closed for channel in client.channels)
    assert manager.keys() == ("profiles_all", "jobs_all")
    client.channels[0].emit_change({"eventType": "INSERT"})
    client.channels[1].emit_status("CHANNEL_ERROR")
    assert received == []
    assert failing.reconnect_pending is False
    assert fake_logger.fields_for("channels_suspended") == [{"count": 2}]
    await manager.aclose()


async def test_subscribe_while_suspended_waits_for_reconnect_all(
    fake_client: FakeBackendClient, fake_logger: FakeLogger
) -> None:
    manager = _build_manager(fake_client, fake_logger)
    await manager.suspend_all()

    registration = manager.subscribe("profiles", _ignore)

    assert registration.status == ChannelStatus.SUSPENDED
    assert fake_client.channels == []

    assert await manager.reconnect_all() is True

    assert manager.suspended is False
    assert registration.status == ChannelStatus.SUBSCRIBED
    assert len(fake_client.channels) == 1
    await manager.aclose()


async def test_reconnect_all_resumes_suspended_channels(
    fake_client: FakeBackendClient, fake_logger: FakeLogger
) -> None:
    manager = _build_manager(fake_client, fake_logger)
    profiles = manager.subscribe("profiles", _ignore)
    await manager.suspend_all()

    assert await manager.reconnect_all() is True

    assert profiles.status == ChannelStatus.SUBSCRIBED
    assert profiles.channel is fake_client.channels[-1]
    assert len(fake_client.channels) == 2
    await manager.aclose()


async def test_suspend_all_interrupts_reconnect_all_in_progress(
    fake_logger: FakeLogger,
) -> None:
    gate = asyncio.Event()
    client = FakeBackendClient(probe_results=[gate])
    manager = _build_manager(client, fake_logger)
    profiles = manager.subscribe("profiles", _ignore)

    bulk = asyncio.create_task(manager.reconnect_all())
    await settle()
    await manager.suspend_all()
    gate.set()

    assert await bulk is False
    assert profiles.status == ChannelStatus.SUSPENDED
    assert len(client.channels) == 1
    assert manager.suspended is True
    await manager.aclose()
