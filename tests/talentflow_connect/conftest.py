from __future__ import annotations

import pytest

from talentflow_connect.settings import ConnectionSettings
from tests.talentflow_connect.support.fakes import (
    CREDENTIAL,
    ENDPOINT,
    FakeBackendClient,
    FakeClock,
    FakeLogger,
)


@pytest.fixture
def fake_logger() -> FakeLogger:
    """Provide a fresh structured logger test double per test."""
    return FakeLogger()


@pytest.fixture
def fake_clock() -> FakeClock:
    """Provide a manually advanced monotonic clock per test."""
    return FakeClock()


@pytest.fixture
def fake_client() -> FakeBackendClient:
    """Provide a scripted backend client bound to the test endpoint."""
    return FakeBackendClient()


@pytest.fixture
def settings(monkeypatch: pytest.MonkeyPatch) -> ConnectionSettings:
    """Provide settings with real-looking env defaults, isolated from the host."""
    monkeypatch.delenv("TALENTFLOW_OVERRIDE_STORE_PATH", raising=False)
    return ConnectionSettings(backend_url=ENDPOINT, backend_key=CREDENTIAL)
