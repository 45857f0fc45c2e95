"""Persistence for the user-supplied connection override and offline flag."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol


@dataclass(frozen=True)
class UserOverride:
    """Endpoint/credential pair entered by the user."""

    endpoint: str
    credential: str


class OverrideStore(Protocol):
    """Device-local storage for connection preferences."""

    def get_override(self) -> UserOverride | None:
        """Return the stored override, if any."""

    def set_override(self, override: UserOverride) -> None:
        """Persist an override, replacing any previous one."""

    def clear_override(self) -> None:
        """Remove the stored override."""

    def is_offline(self) -> bool:
        """Return whether offline mode is enabled."""

    def set_offline(self, offline: bool) -> None:
        """Enable or disable offline mode."""


class InMemoryOverrideStore:
    """Override store kept in process memory."""

    def __init__(
        self,
        *,
        override: UserOverride | None = None,
        offline: bool = False,
    ) -> None:
        self._override = override
        self._offline = offline

    def get_override(self) -> UserOverride | None:
        return self._override

    def set_override(self, override: UserOverride) -> None:
        self._override = override

    def clear_override(self) -> None:
        self._override = None

    def is_offline(self) -> bool:
        return self._offline

    def set_offline(self, offline: bool) -> None:
        self._offline = offline


class JsonFileOverrideStore:
    """Override store persisted as a small JSON document.

    The file is read on every access so edits made by another process are
    picked up on the next resolution. A missing or unreadable file reads as
    "no override, online".
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, object]:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            data = json.loads(raw)
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data: dict[str, object]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(data, sort_keys=True), encoding="utf-8")
        tmp_path.replace(self._path)

    def get_override(self) -> UserOverride | None:
        data = self._load()
        endpoint = data.get("endpoint")
        credential = data.get("credential")
        if isinstance(endpoint, str) and isinstance(credential, str):
            return UserOverride(endpoint=endpoint, credential=credential)
        return None

    def set_override(self, override: UserOverride) -> None:
        data = self._load()
        data["endpoint"] = override.endpoint
        data["credential"] = override.credential
        self._save(data)

    def clear_override(self) -> None:
        data = self._load()
        data.pop("endpoint", None)
        data.pop("credential", None)
        self._save(data)

    def is_offline(self) -> bool:
        return self._load().get("offline") is True

    def set_offline(self, offline: bool) -> None:
        data = self._load()
        data["offline"] = offline
        self._save(data)
