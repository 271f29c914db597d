"""Coalesce streamed text fragments into a single growing assistant message."""

from __future__ import annotations

import asyncio
from typing import Callable

from .order import TranscriptOrderer
from .store import TranscriptStore
from .transcripts import NormalizedMessage, Role, now_iso

DEFAULT_DEBOUNCE = 0.1  # seconds


def _join(existing: str, separator: str, chunk: str) -> str:
    return f"{existing}{separator}{chunk}" if existing else chunk


class StreamAccumulator:
    """Buffer fragments and flush them at most once per debounce window.

    A flush appends to the open streaming message (the transcript tail, if it
    is a non-tool assistant message still streaming) or starts a new one.
    Without a running event loop, or with a zero window, every push flushes
    immediately.
    """

    def __init__(
        self,
        store: TranscriptStore,
        orderer: TranscriptOrderer,
        debounce: float = DEFAULT_DEBOUNCE,
        on_change: Callable[[], None] | None = None,
    ) -> None:
        self._store = store
        self._orderer = orderer
        self._debounce = debounce
        self._on_change = on_change
        self._buffer = ""
        self._separator = ""
        self._timer: asyncio.TimerHandle | None = None

    @property
    def pending(self) -> str:
        return self._buffer

    @property
    def scheduled(self) -> bool:
        return self._timer is not None

    def push(self, text: str, separator: str = "") -> None:
        if not text:
            return
        if self._buffer:
            self._buffer += separator + text
        else:
            self._buffer = text
            self._separator = separator
        self._schedule()

    def _schedule(self) -> None:
        if self._timer is not None:
            return
        if self._debounce <= 0:
            self.flush()
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.flush()
            return
        self._timer = loop.call_later(self._debounce, self.flush)

    def _take(self) -> tuple[str, str]:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        chunk, separator = self._buffer, self._separator
        self._buffer = ""
        self._separator = ""
        return chunk, separator

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()

    def flush(self) -> NormalizedMessage | None:
        chunk, separator = self._take()
        if not chunk:
            return None

        message = self._store.open_stream()
        if message is not None:
            message.content = _join(message.content, separator, chunk)
        else:
            message = NormalizedMessage(
                role=Role.ASSISTANT,
                content=chunk,
                timestamp=now_iso(),
                source="live",
                is_streaming=True,
            )
            self._orderer.merge_append([message])
        self._changed()
        return message

    def stop(self) -> NormalizedMessage | None:
        """Flush what is buffered and close the open stream."""
        self.flush()
        message = self._store.open_stream()
        if message is not None:
            message.is_streaming = False
            self._changed()
        return message

    def finish(self, final_text: str | None, is_error: bool = False) -> NormalizedMessage | None:
        """Close the stream with the backend's authoritative text.

        The final text replaces whatever the deltas built up, so partial and
        final content are never concatenated.
        """
        chunk, separator = self._take()
        authoritative = final_text if final_text and final_text.strip() else None

        message = self._store.open_stream()
        if message is not None:
            message.content = authoritative or _join(message.content, separator, chunk)
            message.is_streaming = False
        elif authoritative or chunk:
            message = NormalizedMessage(
                role=Role.ERROR if is_error and authoritative else Role.ASSISTANT,
                content=authoritative or chunk,
                timestamp=now_iso(),
                source="live",
            )
            self._orderer.merge_append([message])
        else:
            return None
        self._changed()
        return message

    def abort(self, notice: str = "Session interrupted by user.") -> NormalizedMessage:
        """Keep flushed content, close the stream and append an interruption notice."""
        self.stop()
        message = NormalizedMessage(
            role=Role.ASSISTANT,
            content=notice,
            timestamp=now_iso(),
            source="live",
        )
        self._orderer.merge_append([message])
        self._changed()
        return message

    def cancel(self) -> None:
        """Drop buffered text without touching the transcript."""
        self._take()
