from __future__ import annotations

from typing import Annotated

from pydantic import ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from talentflow_connect.constants import DEFAULT_PLACEHOLDER_MARKERS
from talentflow_connect.logging import get_log_level_value

ENV_PREFIX = "TALENTFLOW_"


def prefixed_settings_config(prefix: str) -> SettingsConfigDict:
    """Build standard Pydantic settings config for prefixed environments."""
    return SettingsConfigDict(env_prefix=prefix, case_sensitive=False)


class ConnectionSettings(BaseSettings):
    """Environment-provided backend connection defaults and resilience tunables."""

    model_config = prefixed_settings_config(ENV_PREFIX)

    backend_url: str | None = None
    backend_key: str | None = None
    placeholder_markers: Annotated[tuple[str, ...], NoDecode] = (
        DEFAULT_PLACEHOLDER_MARKERS
    )

    health_cache_ttl_seconds: float = 60.0
    health_timeout_seconds: float = 10.0
    health_probe_path: str = "/rest/v1/"
    breaker_failure_threshold: int = 3
    breaker_cooldown_seconds: float = 30.0
    credential_expiry_buffer_seconds: float = 300.0
    missing_expiry_is_expired: bool = False

    reconnect_max_attempts: int = 5
    reconnect_base_seconds: float = 1.0
    reconnect_max_seconds: float = 30.0
    reconnect_all_stagger_seconds: float = 0.1
    connectivity_probe_path: str = "/rest/v1/profiles?select=id&limit=1"

    override_store_path: str | None = None
    log_level: str = "INFO"

    @field_validator("backend_url", "backend_key", "override_store_path", mode="before")
    @classmethod
    def _blank_to_none(cls, value: object) -> object:
        if isinstance(value, str):
            normalized = value.strip()
            return normalized or None
        return value

    @field_validator("backend_url", mode="after")
    @classmethod
    def _strip_trailing_slash(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.rstrip("/")

    @field_validator("placeholder_markers", mode="before")
    @classmethod
    def _split_markers(cls, value: object) -> object:
        if isinstance(value, str):
            return tuple(
                marker.strip().lower() for marker in value.split(",") if marker.strip()
            )
        return value

    @field_validator("health_probe_path", "connectivity_probe_path", mode="before")
    @classmethod
    def _validate_path(cls, value: object, info: ValidationInfo) -> object:
        if not isinstance(value, str):
            return value
        normalized = value.strip()
        if not normalized.startswith("/"):
            raise ValueError(f"{info.field_name} must start with '/'")
        return normalized

    @field_validator("log_level", mode="after")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        get_log_level_value(value)
        return value.strip().upper()

    @model_validator(mode="after")
    def _validate_connection_settings(self) -> ConnectionSettings:
        if self.health_cache_ttl_seconds < 0:
            raise ValueError("health_cache_ttl_seconds must be >= 0")
        if self.health_timeout_seconds <= 0:
            raise ValueError("health_timeout_seconds must be > 0")
        if self.breaker_failure_threshold < 1:
            raise ValueError("breaker_failure_threshold must be >= 1")
        if self.breaker_cooldown_seconds < 0:
            raise ValueError("breaker_cooldown_seconds must be >= 0")
        if self.credential_expiry_buffer_seconds < 0:
            raise ValueError("credential_expiry_buffer_seconds must be >= 0")
        if self.reconnect_max_attempts < 0:
            raise ValueError("reconnect_max_attempts must be >= 0")
        if self.reconnect_base_seconds < 0:
            raise ValueError("reconnect_base_seconds must be >= 0")
        if self.reconnect_max_seconds < self.reconnect_base_seconds:
            raise ValueError("reconnect_max_seconds must be >= reconnect_base_seconds")
        if self.reconnect_all_stagger_seconds < 0:
            raise ValueError("reconnect_all_stagger_seconds must be >= 0")
        return self
