"""Resolution of the active backend connection parameters."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import StrEnum

from talentflow_connect.client import BackendClient, ClientFactory
from talentflow_connect.constants import DEFAULT_PLACEHOLDER_MARKERS
from talentflow_connect.logging import (
    AnyLogger,
    get_logger,
    log_exception,
    log_info,
    log_warning,
)
from talentflow_connect.override_store import OverrideStore, UserOverride
from talentflow_connect.settings import ConnectionSettings

ConfigListener = Callable[["ConfigChangeEvent"], None]


class ConfigSource(StrEnum):
    """Where the active connection parameters came from."""

    ENV_PROVIDED = "env"
    USER_OVERRIDE = "user_override"
    DISABLED = "disabled"


def is_placeholder(
    value: str | None,
    markers: Iterable[str] = DEFAULT_PLACEHOLDER_MARKERS,
) -> bool:
    """Return true for empty values or values containing a template marker."""
    if not value or not value.strip():
        return True
    normalized = value.lower()
    return any(marker.lower() in normalized for marker in markers)


@dataclass(frozen=True)
class ConnectionConfig:
    """Immutable snapshot of the connection parameters in effect."""

    endpoint: str | None
    credential: str | None
    source: ConfigSource
    offline: bool = False

    def __post_init__(self) -> None:
        if self.offline and (self.endpoint is not None or self.credential is not None):
            raise ValueError("offline config must not carry endpoint or credential")

    @classmethod
    def disabled(cls) -> ConnectionConfig:
        return cls(
            endpoint=None,
            credential=None,
            source=ConfigSource.DISABLED,
            offline=True,
        )

    def is_valid(self, markers: Iterable[str] = DEFAULT_PLACEHOLDER_MARKERS) -> bool:
        """Return true when both values are present, real and not offline."""
        if self.offline:
            return False
        return not is_placeholder(self.endpoint, markers) and not is_placeholder(
            self.credential, markers
        )


@dataclass(frozen=True)
class ConfigChangeEvent:
    """Notification published after every (re)initialization decision."""

    endpoint: str | None
    credential: str | None
    source: ConfigSource
    offline: bool
    valid: bool

    @classmethod
    def from_config(
        cls,
        config: ConnectionConfig,
        markers: Iterable[str] = DEFAULT_PLACEHOLDER_MARKERS,
    ) -> ConfigChangeEvent:
        return cls(
            endpoint=config.endpoint,
            credential=config.credential,
            source=config.source,
            offline=config.offline,
            valid=config.is_valid(markers),
        )


class ConfigResolver:
    """Pick the active connection parameters and own the backend client.

    Sources are consulted in priority order: the offline flag, then a user
    override, then environment defaults. ``reinitialize`` rebuilds the
    client only when the resolved config actually changed (or when forced)
    and notifies listeners with a ``ConfigChangeEvent``. Nothing here raises;
    unusable configuration yields a ``None`` client and ``valid=False``.
    """

    def __init__(
        self,
        *,
        settings: ConnectionSettings,
        store: OverrideStore,
        client_factory: ClientFactory,
        logger: AnyLogger | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._client_factory = client_factory
        self._markers = settings.placeholder_markers
        self._logger = get_logger(__name__) if logger is None else logger
        self._active_config: ConnectionConfig | None = None
        self._client: BackendClient | None = None
        self._listeners: list[ConfigListener] = []

    @property
    def client(self) -> BackendClient | None:
        """Return the active client, ``None`` when config is unusable."""
        return self._client

    @property
    def active_config(self) -> ConnectionConfig | None:
        """Return the config decided by the last ``reinitialize`` call."""
        return self._active_config

    def is_placeholder(self, value: str | None) -> bool:
        return is_placeholder(value, self._markers)

    def resolve(self) -> ConnectionConfig:
        """Read the sources in priority order and return the first applicable."""
        if self._store.is_offline():
            return ConnectionConfig.disabled()

        override = self._store.get_override()
        if (
            override is not None
            and not self.is_placeholder(override.endpoint)
            and not self.is_placeholder(override.credential)
        ):
            return ConnectionConfig(
                endpoint=override.endpoint.rstrip("/"),
                credential=override.credential,
                source=ConfigSource.USER_OVERRIDE,
            )

        return ConnectionConfig(
            endpoint=self._settings.backend_url,
            credential=self._settings.backend_key,
            source=ConfigSource.ENV_PROVIDED,
        )

    def reinitialize(self, force: bool = False) -> BackendClient | None:
        """Resolve config and rebuild the client when it changed.

        Repeated calls with unchanged sources return the same client
        instance without notifying listeners unless ``force`` is set.
        """
        config = self.resolve()
        if (
            not force
            and self._client is not None
            and config == self._active_config
        ):
            return self._client

        self._active_config = config
        if config.is_valid(self._markers):
            self._client = self._build_client(config)
        else:
            self._client = None
            log_warning(
                self._logger,
                "config_invalid",
                source=str(config.source),
                offline=config.offline,
                endpoint=config.endpoint,
                has_credential=bool(config.credential),
            )

        event = ConfigChangeEvent.from_config(config, self._markers)
        log_info(
            self._logger,
            "config_resolved",
            source=str(config.source),
            offline=config.offline,
            valid=event.valid,
            forced=force,
        )
        self._emit(event)
        return self._client

    def _build_client(self, config: ConnectionConfig) -> BackendClient | None:
        endpoint, credential = config.endpoint, config.credential
        if endpoint is None or credential is None:
            return None
        try:
            return self._client_factory(endpoint, credential)
        except Exception:
            log_exception(
                self._logger,
                "client_construction_failed",
                endpoint=config.endpoint,
            )
            return None

    def add_listener(self, listener: ConfigListener) -> Callable[[], None]:
        """Register a change listener and return a function removing it."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _emit(self, event: ConfigChangeEvent) -> None:
        for listener in tuple(self._listeners):
            try:
                listener(event)
            except Exception:
                listener_name = getattr(
                    listener, "__name__", listener.__class__.__name__
                )
                log_exception(
                    self._logger,
                    "config_listener_failed",
                    listener=listener_name,
                )

    def set_override(self, endpoint: str, credential: str) -> BackendClient | None:
        """Store a user override and apply it."""
        self._store.set_override(
            UserOverride(endpoint=endpoint.strip(), credential=credential.strip())
        )
        return self.reinitialize()

    def clear_override(self) -> BackendClient | None:
        """Drop the user override and fall back to environment defaults."""
        self._store.clear_override()
        return self.reinitialize()

    def set_offline(self, offline: bool) -> BackendClient | None:
        """Toggle offline mode and apply it."""
        self._store.set_offline(offline)
        return self.reinitialize()
