"""The authoritative in-memory transcript and its persisted snapshot."""

from __future__ import annotations

import json
import logging
from collections import deque
from typing import Iterator

from .backends import KeyValueStore
from .transcripts import NormalizedMessage

_LOGGER = logging.getLogger(__name__)


class TranscriptStore:
    """Arena of messages plus the ordered sequence of their ids.

    Messages are patched in place (streaming appends, late tool results), so
    the order holds arena indices rather than copies. Only the orderer adds
    messages; nothing is removed except by ``clear()``.
    """

    def __init__(self, kv: KeyValueStore | None = None, project: str | None = None) -> None:
        self._arena: list[NormalizedMessage] = []
        self._order: deque[int] = deque()
        self._kv = kv
        self._project = project or "default"

    def __len__(self) -> int:
        return len(self._order)

    def __iter__(self) -> Iterator[NormalizedMessage]:
        return (self._arena[i] for i in self._order)

    @property
    def messages(self) -> tuple[NormalizedMessage, ...]:
        """Read-only ordered view for the UI layer."""
        return tuple(self)

    def get(self, message_id: int) -> NormalizedMessage:
        return self._arena[message_id]

    def tail(self) -> NormalizedMessage | None:
        return self._arena[self._order[-1]] if self._order else None

    def open_stream(self) -> NormalizedMessage | None:
        """The message streamed fragments append to, if the tail accepts them."""
        last = self.tail()
        return last if last is not None and last.is_open_stream else None

    def _admit(self, message: NormalizedMessage) -> int:
        if message.message_id is not None:
            raise ValueError(f"message {message.message_id} is already in the transcript")
        message.message_id = len(self._arena)
        self._arena.append(message)
        return message.message_id

    def push_tail(self, batch: list[NormalizedMessage]) -> None:
        ids = [self._admit(m) for m in batch]
        self._order.extend(ids)

    def push_head(self, batch: list[NormalizedMessage]) -> None:
        ids = [self._admit(m) for m in batch]
        self._order.extendleft(reversed(ids))

    def clear(self) -> None:
        self._arena.clear()
        self._order.clear()

    # --- snapshot / draft boundary ---

    @property
    def snapshot_key(self) -> str:
        return f"chat_messages_{self._project}"

    @property
    def draft_key(self) -> str:
        return f"draft_input_{self._project}"

    def persist(self) -> bool:
        """Write the transcript to the key-value store.

        Persistence is advisory: on failure (typically a storage quota) the
        stale snapshot is evicted and the in-memory transcript is untouched.
        """
        if self._kv is None or not self._order:
            return False
        payload = json.dumps([m.to_dict() for m in self], default=str)
        try:
            self._kv.set(self.snapshot_key, payload)
        except (OSError, ValueError) as exc:
            _LOGGER.warning("Could not persist transcript snapshot: %s", exc)
            self.discard_snapshot()
            return False
        return True

    def load_snapshot(self) -> list[NormalizedMessage]:
        if self._kv is None:
            return []
        try:
            raw = self._kv.get(self.snapshot_key)
            if not raw:
                return []
            data = json.loads(raw)
            return [NormalizedMessage.from_dict(item) for item in data if isinstance(item, dict)]
        except (OSError, ValueError, TypeError) as exc:
            _LOGGER.warning("Ignoring unreadable transcript snapshot: %s", exc)
            return []

    def discard_snapshot(self) -> None:
        if self._kv is None:
            return
        try:
            self._kv.delete(self.snapshot_key)
        except (OSError, ValueError) as exc:
            _LOGGER.warning("Could not discard transcript snapshot: %s", exc)

    def save_draft(self, text: str) -> None:
        if self._kv is None:
            return
        try:
            if text:
                self._kv.set(self.draft_key, text)
            else:
                self._kv.delete(self.draft_key)
        except (OSError, ValueError) as exc:
            _LOGGER.warning("Could not save draft input: %s", exc)

    def load_draft(self) -> str:
        if self._kv is None:
            return ""
        try:
            return self._kv.get(self.draft_key) or ""
        except (OSError, ValueError) as exc:
            _LOGGER.warning("Could not load draft input: %s", exc)
            return ""
