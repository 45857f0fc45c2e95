"""Backend client contract consumed by the connectivity layer.

The REST and push wire protocols live outside this package. ``BackendClient``
is the seam: the resolver constructs clients through a ``ClientFactory``,
the health monitor probes through ``probe`` and the subscription manager
opens channels through ``open_channel``. ``HttpBackendClient`` implements the
REST half on ``httpx`` and delegates channels to a ``ChannelTransport``.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol

import httpx

from talentflow_connect.constants import CLIENT_INFO_HEADER
from talentflow_connect.errors import (
    BackendTimeoutError,
    BackendUnreachableError,
    ChannelTransportUnavailable,
)

ChangeCallback = Callable[[Mapping[str, object]], None]
StatusCallback = Callable[[str, Exception | None], None]


class TransportStatus(StrEnum):
    """Status values a push transport reports to subscribe callbacks."""

    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"
    CLOSED = "CLOSED"


@dataclass(frozen=True)
class ChannelEventSpec:
    """Server-side selection of change events delivered on a channel."""

    table: str
    filter: str | None = None
    event: str = "*"
    schema: str = "public"


@dataclass(frozen=True)
class ProbeResponse:
    """Minimal response surface needed to classify a reachability probe."""

    status_code: int
    reason: str = ""

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300


class Channel(Protocol):
    """Push-subscription channel created by a transport."""

    @property
    def name(self) -> str:
        """Return the channel name."""

    def on(self, spec: ChannelEventSpec, callback: ChangeCallback) -> Channel:
        """Register a change callback and return the channel."""

    def subscribe(self, status_callback: StatusCallback) -> Channel:
        """Start the subscription; status changes arrive via callback."""


class ChannelTransport(Protocol):
    """Push transport able to open and close named channels."""

    def open_channel(self, name: str) -> Channel:
        """Create an unsubscribed channel."""

    async def close_channel(self, channel: Channel) -> None:
        """Unsubscribe and discard a channel."""


class BackendClient(Protocol):
    """Client bound to one endpoint/credential pair."""

    @property
    def endpoint(self) -> str:
        """Return the backend endpoint URL."""

    @property
    def credential(self) -> str:
        """Return the credential used for requests."""

    async def probe(
        self,
        path: str,
        *,
        method: str = "HEAD",
        headers: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> ProbeResponse:
        """Issue one lightweight request against ``path``."""

    def open_channel(self, name: str) -> Channel:
        """Create an unsubscribed channel."""

    async def close_channel(self, channel: Channel) -> None:
        """Unsubscribe and discard a channel."""


ClientFactory = Callable[[str, str], BackendClient]


class HttpBackendClient:
    """``BackendClient`` over a shared ``httpx.AsyncClient``."""

    def __init__(
        self,
        *,
        http: httpx.AsyncClient,
        endpoint: str,
        credential: str,
        transport: ChannelTransport | None = None,
    ) -> None:
        """Bind a client to one endpoint and credential.

        Args:
            http: Shared async HTTP client; its lifecycle belongs to the caller.
            endpoint: Backend base URL.
            credential: API key sent as ``apikey`` and bearer token.
            transport: Push transport used for channels, if any.
        """
        self._http = http
        self._endpoint = endpoint.rstrip("/")
        self._credential = credential
        self._transport = transport

    @property
    def endpoint(self) -> str:
        return self._endpoint

    @property
    def credential(self) -> str:
        return self._credential

    def auth_headers(self) -> dict[str, str]:
        """Return the headers every backend request carries."""
        return {
            "apikey": self._credential,
            "Authorization": f"Bearer {self._credential}",
            "X-Client-Info": CLIENT_INFO_HEADER,
        }

    async def probe(
        self,
        path: str,
        *,
        method: str = "HEAD",
        headers: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> ProbeResponse:
        """Send one request and return its status.

        Raises:
            BackendTimeoutError: When the request timed out.
            BackendUnreachableError: When no HTTP response was received.
        """
        request_headers = self.auth_headers()
        if headers:
            request_headers.update(headers)
        url = f"{self._endpoint}{path}"
        request_timeout = httpx.USE_CLIENT_DEFAULT if timeout is None else timeout
        try:
            response = await self._http.request(
                method,
                url,
                headers=request_headers,
                timeout=request_timeout,
            )
        except httpx.TimeoutException as exc:
            raise BackendTimeoutError(str(exc) or "request timed out") from exc
        except httpx.RequestError as exc:
            raise BackendUnreachableError(str(exc) or exc.__class__.__name__) from exc
        return ProbeResponse(
            status_code=response.status_code,
            reason=response.reason_phrase,
        )

    def open_channel(self, name: str) -> Channel:
        if self._transport is None:
            raise ChannelTransportUnavailable(
                "No push transport configured for this client."
            )
        return self._transport.open_channel(name)

    async def close_channel(self, channel: Channel) -> None:
        if self._transport is None:
            return
        await self._transport.close_channel(channel)


def build_http_client_factory(
    http: httpx.AsyncClient,
    *,
    transport: ChannelTransport | None = None,
) -> ClientFactory:
    """Build a factory producing ``HttpBackendClient`` on a shared HTTP client."""

    def _factory(endpoint: str, credential: str) -> BackendClient:
        return HttpBackendClient(
            http=http,
            endpoint=endpoint,
            credential=credential,
            transport=transport,
        )

    return _factory
