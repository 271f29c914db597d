"""Translate live channel events from the Claude and Cursor backends into deltas."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any

from . import (
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
    ToolResult,
    TurnEnded,
    now_iso,
)

_LOGGER = logging.getLogger(__name__)

_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")
_CONTROL_RE = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F]")
_USAGE_LIMIT_RE = re.compile(r"Claude AI usage limit reached\|(\d{10,13})")


def clean_output(raw: Any) -> str:
    """Strip ANSI escapes and control characters from raw terminal output."""
    text = "" if raw is None else str(raw)
    return _CONTROL_RE.sub("", _ANSI_RE.sub("", text)).strip()


def format_usage_limit(text: str) -> str:
    """Rewrite ``Claude AI usage limit reached|<epoch>`` with a readable reset time."""

    def _replace(match: re.Match) -> str:
        stamp = int(match.group(1))
        if stamp >= 1e12:
            stamp //= 1000
        reset = datetime.fromtimestamp(stamp, tz=timezone.utc)
        return f"Claude usage limit reached. Your limit will reset at {reset:%H:%M} UTC ({reset:%Y-%m-%d})"

    return _USAGE_LIMIT_RE.sub(_replace, text)


class LiveProtocolAdapter:
    """Translate one channel event at a time.

    The only state kept is the tracked session id, which is needed to tell a
    session switch apart from the init event of the session already open.
    """

    def __init__(self, session_id: str | None = None) -> None:
        self.session_id = session_id

    def translate(self, event: Any) -> list[Delta]:
        if not isinstance(event, dict) or not isinstance(event.get("type"), str):
            _LOGGER.warning("Skipping malformed channel event: %r", event)
            return [Skip("malformed event")]

        kind = event["type"]
        handler = getattr(self, "_on_" + kind.replace("-", "_"), None)
        if handler is None:
            return [Skip(f"unhandled event {kind!r}")]
        try:
            return handler(event)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            _LOGGER.warning("Skipping malformed %s event: %s", kind, exc)
            return [Skip(f"malformed {kind}")]

    # --- session lifecycle ---

    def _on_session_created(self, event: dict) -> list[Delta]:
        session_id = event.get("sessionId")
        if session_id and not self.session_id:
            return [SessionCreated(session_id)]
        return [Skip("session already tracked")]

    def _session_init(self, data: Any) -> list[Delta] | None:
        if not (isinstance(data, dict) and data.get("type") == "system" and data.get("subtype") == "init"):
            return None
        new_id = data.get("session_id")
        if not new_id:
            return None
        if new_id == self.session_id:
            return [Skip("init for current session")]
        previous, self.session_id = self.session_id, new_id
        _LOGGER.info("Session switch detected: %s -> %s", previous, new_id)
        return [SessionSwitch(new_session_id=new_id, previous_session_id=previous)]

    def _on_cursor_system(self, event: dict) -> list[Delta]:
        return self._session_init(event.get("data")) or [Skip("cursor system event")]

    def _on_session_aborted(self, event: dict) -> list[Delta]:
        return [AbortStream(), TurnEnded("aborted")]

    def _on_claude_complete(self, event: dict) -> list[Delta]:
        exit_code = event.get("exitCode")
        return [FinalizeStream(), TurnEnded("complete", exit_code if isinstance(exit_code, int) else None)]

    def _on_cursor_result(self, event: dict) -> list[Delta]:
        data = event.get("data") or {}
        result = data.get("result") if isinstance(data, dict) else None
        is_error = bool(data.get("is_error")) if isinstance(data, dict) else False
        return [
            FinalizeStream(final_text=result if isinstance(result, str) else "", is_error=is_error),
            TurnEnded("result"),
        ]

    def _error(self, content: str) -> list[Delta]:
        return [
            FinalizeStream(),
            NewMessage(NormalizedMessage(role=Role.ERROR, content=content, timestamp=now_iso(), source="live")),
            TurnEnded("error"),
        ]

    def _on_claude_error(self, event: dict) -> list[Delta]:
        return self._error(f"Error: {event.get('error')}")

    def _on_cursor_error(self, event: dict) -> list[Delta]:
        return self._error(f"Cursor error: {event.get('error') or 'Unknown error'}")

    def _on_claude_status(self, event: dict) -> list[Delta]:
        data = event.get("data")
        if not data:
            return [Skip("empty status")]
        text = "Working..."
        tokens = 0
        can_interrupt = True
        if isinstance(data, str):
            text = data
        elif isinstance(data, dict):
            text = data.get("message") or data.get("status") or text
            tokens = data.get("tokens") or data.get("token_count") or 0
            if data.get("can_interrupt") is not None:
                can_interrupt = bool(data["can_interrupt"])
        return [StatusUpdate(text=text, tokens=int(tokens), can_interrupt=can_interrupt)]

    # --- turn content ---

    def _on_claude_output(self, event: dict) -> list[Delta]:
        cleaned = clean_output(event.get("data"))
        return [AppendText(cleaned, separator="\n")] if cleaned else [Skip("blank output")]

    _on_cursor_output = _on_claude_output

    def _on_cursor_user(self, event: dict) -> list[Delta]:
        return [Skip("user echo")]

    def _on_claude_interactive_prompt(self, event: dict) -> list[Delta]:
        return [NewMessage(NormalizedMessage(
            role=Role.INTERACTIVE_PROMPT,
            content=str(event.get("data") or ""),
            timestamp=now_iso(),
            source="live",
        ))]

    def _on_cursor_tool_use(self, event: dict) -> list[Delta]:
        tool = event.get("tool")
        inp = event.get("input")
        return [NewMessage(NormalizedMessage(
            role=Role.ASSISTANT,
            content=f"Using tool: {tool} with {inp}" if inp else f"Using tool: {tool}",
            timestamp=now_iso(),
            source="live",
            is_tool_use=True,
            tool_name=tool,
            tool_input=inp,
        ))]

    def _on_claude_response(self, event: dict) -> list[Delta]:
        data = event["data"]
        message = data.get("message") or data

        if isinstance(message, dict):
            kind = message.get("type")
            if kind == "content_block_delta":
                text = (message.get("delta") or {}).get("text")
                return [AppendText(text)] if text else [Skip("empty delta")]
            if kind == "content_block_stop":
                return [FinalizeStream()]

        init = self._session_init(data)
        if init is not None:
            return init

        content = message.get("content")
        if message.get("role") == "user":
            return self._tool_results(content)

        deltas: list[Delta] = []
        if isinstance(content, list):
            for part in content:
                if not isinstance(part, dict):
                    continue
                if part.get("type") == "tool_use":
                    deltas.append(NewMessage(NormalizedMessage(
                        role=Role.ASSISTANT,
                        timestamp=now_iso(),
                        source="live",
                        source_id=message.get("id"),
                        is_tool_use=True,
                        tool_name=part.get("name"),
                        tool_id=part.get("id"),
                        tool_input=part.get("input"),
                    )))
                elif part.get("type") == "text" and (part.get("text") or "").strip():
                    deltas.append(NewMessage(NormalizedMessage(
                        role=Role.ASSISTANT,
                        content=format_usage_limit(part["text"]),
                        timestamp=now_iso(),
                        source="live",
                        source_id=message.get("id"),
                    )))
        elif isinstance(content, str) and content.strip():
            deltas.append(NewMessage(NormalizedMessage(
                role=Role.ASSISTANT,
                content=format_usage_limit(content),
                timestamp=now_iso(),
                source="live",
                source_id=message.get("id"),
            )))

        return deltas or [Skip("response without transcript content")]

    def _tool_results(self, content: Any) -> list[Delta]:
        # Tool results arrive separately, inside user-role messages
        deltas: list[Delta] = []
        if isinstance(content, list):
            for part in content:
                if isinstance(part, dict) and part.get("type") == "tool_result" and part.get("tool_use_id"):
                    deltas.append(AttachToolResult(
                        tool_id=str(part["tool_use_id"]),
                        result=ToolResult(
                            content=part.get("content"),
                            is_error=bool(part.get("is_error")),
                            timestamp=now_iso(),
                        ),
                    ))
        return deltas or [Skip("user message without tool results")]
