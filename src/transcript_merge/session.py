"""Chat session: routes live events and history pages through the transcript engine."""

from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable, Iterable, Sequence

from .backends import EventChannel, HistorySource, KeyValueStore, NoProtection, NullChannel, SessionProtection
from .config import Config
from .correlate import ToolCorrelator
from .order import TranscriptOrderer
from .paginate import PaginationController
from .store import TranscriptStore
from .stream import StreamAccumulator
from .transcripts import (
    AbortStream,
    AppendText,
    AttachToolResult,
    Delta,
    FinalizeStream,
    NewMessage,
    NormalizedMessage,
    Role,
    SessionCreated,
    SessionSwitch,
    Skip,
    StatusUpdate,
    TurnEnded,
    now_iso,
)
from .transcripts import claude as claude_history
from .transcripts import cursor as cursor_history
from .transcripts.live import LiveProtocolAdapter

_LOGGER = logging.getLogger(__name__)

Uploader = Callable[[list[Any]], Awaitable[Iterable[Any]]]


class ChatSession:
    """One chat view's transcript and turn state.

    All methods run on a single event loop. Live events are applied strictly
    in arrival order; history pages are merged in one synchronous step when
    their fetch completes, so live processing never waits on history.
    """

    def __init__(
        self,
        config: Config | None = None,
        channel: EventChannel | None = None,
        history: HistorySource | None = None,
        protection: SessionProtection | None = None,
        kv: KeyValueStore | None = None,
    ) -> None:
        if config is None:
            config = Config()
        self.config = config
        self.channel = channel if channel is not None else NullChannel()
        self.history = history
        self.protection = protection if protection is not None else NoProtection()

        self.store = TranscriptStore(kv, config.project_name)
        self.orderer = TranscriptOrderer(self.store)
        self.correlator = ToolCorrelator()
        self.accumulator = StreamAccumulator(
            self.store, self.orderer, config.stream_debounce, on_change=self._on_stream_change
        )
        self.adapter = LiveProtocolAdapter()
        self.pagination = PaginationController(
            history,
            self._merge_history_page,
            page_size=config.page_size,
            threshold=config.load_more_threshold,
        ) if history is not None else None

        self.pending_session_id: str | None = None
        self.system_session_change = False
        self.is_loading = False
        self.can_abort = False
        self.status: StatusUpdate | None = None
        self.history_error: str | None = None
        self._temporary_id: str | None = None
        self._dirty = False
        self._discard_snapshot = False
        self._load_generation = 0

    # --- read-only view ---

    @property
    def messages(self) -> tuple[NormalizedMessage, ...]:
        return self.store.messages

    @property
    def session_id(self) -> str | None:
        return self.adapter.session_id

    @session_id.setter
    def session_id(self, value: str | None) -> None:
        self.adapter.session_id = value

    @property
    def provider(self) -> str:
        return self.config.provider

    @property
    def error_banner(self) -> str | None:
        """Transient history-loading error, if the last fetch failed."""
        if self.pagination is not None and self.pagination.error:
            return self.pagination.error
        return self.history_error

    # --- live events ---

    def handle_event(self, event: Any) -> list[Delta]:
        """Apply one channel event and return the deltas it produced."""
        deltas = self.adapter.translate(event)
        self.apply(deltas)
        if self._dirty:
            self._dirty = False
            self.store.persist()
        if self._discard_snapshot:
            self._discard_snapshot = False
            self.store.discard_snapshot()
        return deltas

    def apply(self, deltas: Iterable[Delta]) -> None:
        for delta in deltas:
            if isinstance(delta, NewMessage):
                # A new unit ends the current stream so fragments cannot land after it
                self.accumulator.stop()
                self._append([delta.message])
            elif isinstance(delta, AppendText):
                self.accumulator.push(delta.text, delta.separator)
            elif isinstance(delta, AttachToolResult):
                standalone = self.correlator.resolve(delta.tool_id, delta.result, delta.tool_name)
                if standalone is not None:
                    self.accumulator.stop()
                    self._append([standalone])
                self._dirty = True
            elif isinstance(delta, FinalizeStream):
                if delta.final_text is None:
                    self.accumulator.stop()
                else:
                    self.accumulator.finish(delta.final_text, delta.is_error)
            elif isinstance(delta, AbortStream):
                self.accumulator.abort(delta.notice)
            elif isinstance(delta, SessionCreated):
                self._on_session_created(delta.session_id)
            elif isinstance(delta, SessionSwitch):
                self._on_session_switch(delta)
            elif isinstance(delta, TurnEnded):
                self._end_turn(delta)
            elif isinstance(delta, StatusUpdate):
                self.status = delta
                self.is_loading = True
                self.can_abort = delta.can_interrupt
            elif isinstance(delta, Skip):
                _LOGGER.debug("Skipped: %s", delta.reason)

    def _append(self, messages: list[NormalizedMessage]) -> None:
        for message in messages:
            self.correlator.register(message)
        self.orderer.merge_append(messages)
        self._dirty = True

    def _on_stream_change(self) -> None:
        self._dirty = True

    def _on_session_created(self, session_id: str) -> None:
        self.pending_session_id = session_id
        self._temporary_id = None
        self.protection.replace_temporary_id(session_id)

    def _on_session_switch(self, delta: SessionSwitch) -> None:
        # The host navigates; keep the transcript when it reopens this session
        self.system_session_change = True
        if self._temporary_id is not None:
            # A new session reported by init alone still replaces the placeholder id
            self._temporary_id = None
            self.protection.replace_temporary_id(delta.new_session_id)
        self.protection.session_switched(delta.new_session_id, delta.previous_session_id)

    def _end_turn(self, delta: TurnEnded) -> None:
        self.is_loading = False
        self.can_abort = False
        self.status = None

        active = self.session_id or self.pending_session_id or self._temporary_id
        if active:
            self.protection.mark_inactive(active)
        self._temporary_id = None

        succeeded = delta.outcome == "result" or (delta.outcome == "complete" and delta.exit_code == 0)
        if succeeded and self.pending_session_id:
            if not self.session_id:
                self.session_id = self.pending_session_id
            if self.session_id == self.pending_session_id:
                self.pending_session_id = None
        if delta.outcome == "complete" and delta.exit_code == 0:
            self._discard_snapshot = True

    # --- turns ---

    async def submit_turn(
        self,
        text: str,
        attachments: Sequence[Any] = (),
        upload: Uploader | None = None,
    ) -> bool:
        """Append the user turn and send it to the backend.

        Returns False when nothing was sent (blank text, a turn already
        running, or a failed attachment upload).
        """
        if not text.strip() or self.is_loading:
            return False

        images: list[Any] = []
        if attachments:
            if upload is None:
                raise ValueError("attachments given without an upload function")
            try:
                images = list(await upload(list(attachments)))
            except Exception as exc:
                _LOGGER.warning("Attachment upload failed: %s", exc)
                self._append([self._error_message(f"Failed to upload images: {exc}")])
                self.store.persist()
                return False

        self.accumulator.stop()
        self._append([NormalizedMessage(
            role=Role.USER,
            content=text,
            timestamp=now_iso(),
            source="live",
            images=images,
        )])
        self.is_loading = True
        self.can_abort = True
        self.status = StatusUpdate(text="Processing")

        session_id = self.session_id
        if session_id is None:
            self._temporary_id = f"new-session-{int(time.time() * 1000)}"
        self.protection.mark_active(session_id or self._temporary_id)

        try:
            self.channel.send(self._build_command(text, session_id, images))
        except Exception as exc:
            _LOGGER.warning("Failed to send turn: %s", exc)
            self._append([self._error_message(f"Error: {exc}")])
            self._end_turn(TurnEnded("error"))
            self.store.persist()
            return False

        self.store.save_draft("")
        self.store.persist()
        self._dirty = False
        return True

    def _build_command(self, text: str, session_id: str | None, images: list[Any]) -> dict:
        config = self.config
        if config.provider == "cursor":
            return {
                "type": "cursor-command",
                "command": text,
                "sessionId": session_id,
                "options": {
                    "cwd": config.project_path,
                    "projectPath": config.project_path,
                    "sessionId": session_id,
                    "resume": bool(session_id),
                    "model": config.cursor_model,
                    "skipPermissions": bool(config.tools_settings.get("skipPermissions")),
                    "toolsSettings": config.tools_settings,
                },
            }
        return {
            "type": "claude-command",
            "command": text,
            "sessionId": session_id,
            "options": {
                "projectPath": config.project_path,
                "cwd": config.project_path,
                "sessionId": session_id,
                "resume": bool(session_id),
                "toolsSettings": config.tools_settings,
                "permissionMode": config.permission_mode,
                "images": images,
            },
        }

    def abort_turn(self) -> bool:
        """Ask the backend to stop the running turn."""
        if not (self.session_id and self.can_abort):
            return False
        self.channel.send({
            "type": "abort-session",
            "sessionId": self.session_id,
            "provider": self.config.provider,
        })
        return True

    def _error_message(self, content: str) -> NormalizedMessage:
        return NormalizedMessage(role=Role.ERROR, content=content, timestamp=now_iso(), source="live")

    # --- history ---

    def _collect(
        self,
        deltas: Iterable[Delta],
        source: str,
        complete: bool,
    ) -> list[NormalizedMessage]:
        batch: list[NormalizedMessage] = []
        unmatched: list[tuple[int, NormalizedMessage]] = []
        for delta in deltas:
            if isinstance(delta, NewMessage):
                self.correlator.register(delta.message)
                batch.append(delta.message)
            elif isinstance(delta, AttachToolResult):
                standalone = self.correlator.resolve(
                    delta.tool_id,
                    delta.result,
                    delta.tool_name,
                    timestamp=delta.result.timestamp or None,
                    source=source,
                )
                if standalone is not None:
                    # The call may sit on an older page that is not loaded yet
                    self.correlator.hold(standalone)
                    unmatched.append((len(batch), standalone))
        if not complete:
            return batch

        released = {id(m): m for m in self.correlator.release()}
        for index, standalone in reversed(unmatched):
            if released.pop(id(standalone), None) is not None:
                _inherit_order_hints(standalone, batch, index)
                batch.insert(index, standalone)
        # Results from newer pages whose call never turned up
        for standalone in released.values():
            _inherit_order_hints(standalone, batch, len(batch))
            batch.append(standalone)
        return batch

    def _merge_history_page(self, records: list[Any], initial: bool) -> None:
        self.merge_history(records, "claude", complete=not self.pagination.has_more)

    def merge_history(
        self,
        records: list[Any],
        source: str = "claude",
        complete: bool = True,
    ) -> list[NormalizedMessage]:
        """Translate a history page and prepend it as one block.

        ``complete`` says no older page will follow. Until then, results whose
        call has not been seen are held back rather than shown on their own.
        """
        if source == "cursor":
            deltas = cursor_history.translate_blobs(records, project_path=self.config.project_path)
        elif source == "claude":
            deltas = claude_history.translate_records(records)
        else:
            raise ValueError(f"Unknown history source: {source!r}")
        batch = self._collect(deltas, source, complete)
        self.orderer.merge_prepend(batch)
        self._dirty = True
        return batch

    def _reset_transcript(self) -> None:
        self._load_generation += 1
        self.accumulator.cancel()
        self.orderer.reset()
        self.correlator.clear()

    async def open_session(self, session_key: str) -> int:
        """Load a session's history into a fresh transcript.

        A session opened because the backend switched sessions keeps the
        transcript already on screen and loads nothing.
        """
        if self.system_session_change:
            self.system_session_change = False
            self.session_id = session_key
            return 0

        self._reset_transcript()
        self.session_id = session_key
        self.pending_session_id = None
        self.history_error = None

        if self.history is None:
            return 0
        if self.config.provider == "cursor":
            if self.pagination is not None:
                self.pagination.reset()
            return await self._load_cursor_session(session_key)
        return await self.pagination.load_initial(session_key)

    async def _load_cursor_session(self, session_key: str) -> int:
        generation = self._load_generation
        try:
            blobs = await self.history.fetch_all(session_key)
        except Exception as exc:
            _LOGGER.warning("Failed to load Cursor session %s: %s", session_key, exc)
            if generation == self._load_generation:
                self.history_error = f"Failed to load session messages: {exc}"
            return 0
        if generation != self._load_generation:
            _LOGGER.debug("Discarding stale blobs for %s", session_key)
            return 0
        return len(self.merge_history(blobs, "cursor"))

    async def load_older(self, scroll_top: float = 0) -> int:
        """Backfill the next older page when the viewport is near the top."""
        if self.pagination is None or self.config.provider == "cursor":
            return 0
        before = len(self.store)
        await self.pagination.load_more(scroll_top)
        return len(self.store) - before

    def new_session(self) -> None:
        self._reset_transcript()
        self.session_id = None
        self.pending_session_id = None
        self.system_session_change = False
        self.is_loading = False
        self.can_abort = False
        self.status = None
        self._temporary_id = None
        if self.pagination is not None:
            self.pagination.reset()
        self.store.save_draft("")

    # --- persisted state ---

    def restore_snapshot(self) -> int:
        """Reload the persisted transcript into an empty session."""
        if len(self.store):
            return 0
        messages = self.store.load_snapshot()
        for message in messages:
            self.correlator.register(message)
        self.orderer.merge_append(messages)
        return len(messages)

    @property
    def draft(self) -> str:
        return self.store.load_draft()

    @draft.setter
    def draft(self, text: str) -> None:
        self.store.save_draft(text)


def _inherit_order_hints(message: NormalizedMessage, batch: list[NormalizedMessage], index: int) -> None:
    neighbour = batch[index - 1] if index > 0 else (batch[0] if batch else None)
    if neighbour is not None:
        message.sequence = neighbour.sequence
        message.rowid = neighbour.rowid
