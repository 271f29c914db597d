"""Contracts for the collaborators the engine talks to, plus simple implementations."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

_LOGGER = logging.getLogger(__name__)


@dataclass
class HistoryPage:
    """One page of line-oriented history."""

    records: list[Any] = field(default_factory=list)
    has_more: bool | None = None  # None: the source does not paginate
    total: int | None = None

    @classmethod
    def from_response(cls, data: dict) -> "HistoryPage":
        records = data.get("messages") or data.get("records") or []
        return cls(records=list(records), has_more=data.get("hasMore"), total=data.get("total"))


@runtime_checkable
class EventChannel(Protocol):
    """The outbound half of the bidirectional event channel."""

    def send(self, command: dict) -> None:
        """Send a command (``claude-command``, ``cursor-command``, ``abort-session``)."""
        ...


@runtime_checkable
class HistorySource(Protocol):
    """Read-only access to previously recorded sessions."""

    async def fetch_page(self, session_key: str, limit: int, offset: int) -> HistoryPage:
        """Fetch a page of line-oriented history, newest page at offset 0."""
        ...

    async def fetch_all(self, session_key: str) -> list[dict]:
        """Fetch the full ordered blob set of an embedded-database session."""
        ...


@runtime_checkable
class SessionProtection(Protocol):
    """Keeps the host from refreshing a session while a turn is running."""

    def mark_active(self, session_key: str) -> None: ...

    def mark_inactive(self, session_key: str) -> None: ...

    def replace_temporary_id(self, real_id: str) -> None: ...

    def session_switched(self, new_session_id: str, previous_session_id: str | None) -> None:
        """The backend now reports a different session; the host decides what to do."""
        ...


@runtime_checkable
class KeyValueStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class NullChannel:
    """Channel that records commands instead of sending them."""

    def __init__(self) -> None:
        self.sent: list[dict] = []

    def send(self, command: dict) -> None:
        self.sent.append(command)


class NoProtection:
    """Session protection that does nothing."""

    def mark_active(self, session_key: str) -> None:
        pass

    def mark_inactive(self, session_key: str) -> None:
        pass

    def replace_temporary_id(self, real_id: str) -> None:
        pass

    def session_switched(self, new_session_id: str, previous_session_id: str | None) -> None:
        pass


class JsonFileStore:
    """Key-value store backed by a single JSON file."""

    def __init__(self, path: Path) -> None:
        self._path = path

    def _load(self) -> dict:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text())
        except ValueError as exc:
            _LOGGER.warning("Treating unreadable state file %s as empty: %s", self._path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data: dict) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(data, indent=2) + "\n")

    def get(self, key: str) -> str | None:
        return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self._save(data)

    def delete(self, key: str) -> None:
        data = self._load()
        if data.pop(key, None) is not None:
            self._save(data)

    def keys(self) -> list[str]:
        return sorted(self._load())
