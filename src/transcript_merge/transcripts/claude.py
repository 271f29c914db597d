"""Translate Claude-style paginated history records into transcript deltas."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Iterable

from . import (
    AttachToolResult,
    Delta,
    NewMessage,
    NormalizedMessage,
    Role,
    Skip,
    ToolResult,
    now_iso,
)

_LOGGER = logging.getLogger(__name__)

# User records that are CLI bookkeeping rather than something the user typed.
_HIDDEN_USER_PREFIXES = ("<command-name>", "[Request interrupted")


def translate_records(records: Iterable[Any]) -> list[Delta]:
    """Translate one page of request/response records into deltas.

    Tool results are emitted as ``AttachToolResult`` where they occur, so the
    correlator can resolve them against tool calls from this page or from any
    page loaded earlier in the session.
    """
    deltas: list[Delta] = []

    for record in records:
        if not isinstance(record, dict):
            _LOGGER.warning("Skipping malformed history record: %r", record)
            deltas.append(Skip("malformed record"))
            continue

        msg = record.get("message")
        if not isinstance(msg, dict) or not msg.get("content"):
            deltas.append(Skip("no message content"))
            continue

        role = msg.get("role")
        timestamp = record.get("timestamp") or now_iso()
        uuid = record.get("uuid")

        if role == "user":
            deltas.extend(_user_deltas(msg["content"], timestamp, uuid))
        elif role == "assistant":
            deltas.extend(_assistant_deltas(msg["content"], timestamp, uuid))
        else:
            # System records (and anything else) never reach the transcript
            deltas.append(Skip(f"role {role!r}"))

    return deltas


def _user_deltas(content: Any, timestamp: str, uuid: str | None) -> list[Delta]:
    deltas: list[Delta] = []

    if isinstance(content, list):
        text_parts = []
        for part in content:
            if not isinstance(part, dict):
                continue
            part_type = part.get("type")
            if part_type == "text":
                text_parts.append(part.get("text") or "")
            elif part_type == "tool_result" and part.get("tool_use_id"):
                deltas.append(AttachToolResult(
                    tool_id=str(part["tool_use_id"]),
                    result=ToolResult(
                        content=part.get("content"),
                        is_error=bool(part.get("is_error")),
                        timestamp=timestamp,
                    ),
                ))
        text = "\n".join(text_parts)
    elif isinstance(content, str):
        text = content
    else:
        text = str(content)

    if text and not text.startswith(_HIDDEN_USER_PREFIXES):
        # The user turn precedes the results it carried
        deltas.insert(0, NewMessage(NormalizedMessage(
            role=Role.USER,
            content=text,
            timestamp=timestamp,
            source="claude",
            source_id=uuid,
        )))
    return deltas


def _assistant_deltas(content: Any, timestamp: str, uuid: str | None) -> list[Delta]:
    if isinstance(content, str):
        return [NewMessage(NormalizedMessage(
            role=Role.ASSISTANT,
            content=content,
            timestamp=timestamp,
            source="claude",
            source_id=uuid,
        ))]

    deltas: list[Delta] = []
    if not isinstance(content, list):
        return deltas

    for part in content:
        if not isinstance(part, dict):
            continue
        part_type = part.get("type")
        if part_type == "text" and part.get("text"):
            deltas.append(NewMessage(NormalizedMessage(
                role=Role.ASSISTANT,
                content=part["text"],
                timestamp=timestamp,
                source="claude",
                source_id=uuid,
            )))
        elif part_type == "tool_use":
            deltas.append(NewMessage(NormalizedMessage(
                role=Role.ASSISTANT,
                timestamp=timestamp,
                source="claude",
                source_id=uuid,
                is_tool_use=True,
                tool_name=part.get("name"),
                tool_id=part.get("id"),
                tool_input=part.get("input"),
            )))
        elif part_type == "thinking" and part.get("thinking"):
            deltas.append(NewMessage(NormalizedMessage(
                role=Role.ASSISTANT,
                timestamp=timestamp,
                source="claude",
                source_id=uuid,
                reasoning=part["thinking"],
            )))
    return deltas


def load_records(path: Path) -> list[Any]:
    """Read a history dump: a JSON list, a ``{"messages": [...]}`` page or JSONL."""
    raw = path.read_text()
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        payload = None
    else:
        if isinstance(payload, dict) and isinstance(payload.get("messages"), list):
            return payload["messages"]
        if isinstance(payload, list):
            return payload

    records = []
    for line in raw.splitlines():
        if not line.strip():
            continue
        try:
            records.append(json.loads(line))
        except json.JSONDecodeError as exc:
            _LOGGER.warning("Skipping malformed JSON line in %s: %s", path, exc)
    return records


def summarize_tool_use(tool: str | None, inp: Any) -> str:
    """Create a one-line summary of a tool call."""
    tool = tool or "unknown"
    if not isinstance(inp, dict):
        return f"[{tool}]"
    if tool == "Bash":
        cmd = inp.get("command", "")
        desc = inp.get("description", "")
        return f"[Bash: {desc or cmd[:100]}]"
    elif tool in ("Read", "Write", "Edit"):
        return f"[{tool}: {inp.get('file_path', '?')}]"
    elif tool in ("Glob", "Grep"):
        return f"[{tool}: {inp.get('pattern', '?')}]"
    elif tool == "WebSearch":
        return f"[WebSearch: {inp.get('query', '?')}]"
    elif tool == "WebFetch":
        return f"[WebFetch: {inp.get('url', '?')}]"
    elif tool == "Task":
        return f"[Task: {inp.get('description', '?')}]"
    else:
        return f"[{tool}]"
