"""Decode Cursor session blobs and translate them into transcript deltas.

A Cursor session store is an ordered set of opaque blobs. Some decode to JSON
messages, some are hex-encoded JSON, some are binary with a JSON object
embedded somewhere inside, and the rest are internal state that never reaches
the transcript.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

from . import (
    AttachToolResult,
    Delta,
    NewMessage,
    NormalizedMessage,
    Role,
    Skip,
    ToolResult,
)

_LOGGER = logging.getLogger(__name__)

_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")
_NON_PRINTABLE_RE = re.compile(r"[^\x09\x0A\x0D\x20-\x7E]")

PREVIEW_CHARS = 100


def _as_text(data: Any) -> str:
    if isinstance(data, (bytes, bytearray, memoryview)):
        return bytes(data).decode("utf-8", errors="replace")
    return str(data)


def _decode_hex_json(text: str) -> Any:
    if len(text) % 2 or not _HEX_RE.match(text):
        return None
    try:
        return json.loads(bytes.fromhex(text).decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return None


def decode_blob(data: Any) -> dict | None:
    """Return the structured content of a blob, or None if it has none.

    Tries direct JSON, then hex-encoded JSON, then the span between the first
    ``{`` and the last ``}`` once non-printable bytes are stripped. The last
    step is a heuristic: a blob holding two unrelated objects, or prose with
    stray braces, will not parse and is dropped.
    """
    if data is None:
        return None
    if isinstance(data, dict):
        return data

    raw = _as_text(data)
    stripped = raw.strip()

    try:
        parsed = json.loads(stripped)
    except ValueError:
        parsed = _decode_hex_json(stripped)
        if parsed is None:
            cleaned = _NON_PRINTABLE_RE.sub("", raw)
            start = cleaned.find("{")
            end = cleaned.rfind("}")
            if start == -1 or end <= start:
                return None
            try:
                parsed = json.loads(cleaned[start : end + 1])
            except ValueError:
                return None

    return parsed if isinstance(parsed, dict) else None


def _map_tool_name(name: str | None) -> str:
    name = name or "Unknown Tool"
    return "Edit" if name == "ApplyPatch" else name


def _absolute(path: str | None, project_path: str | None) -> str | None:
    if path and project_path and not path.startswith("/"):
        return f"{project_path}/{path}"
    return path


def _parse_patch(patch: str) -> tuple[str, str]:
    old_lines: list[str] = []
    new_lines: list[str] = []
    in_hunk = False
    for line in patch.split("\n"):
        if line.startswith("@@"):
            in_hunk = True
        elif in_hunk:
            if line.startswith("-"):
                old_lines.append(line[1:])
            elif line.startswith("+"):
                new_lines.append(line[1:])
            elif line.startswith(" "):
                old_lines.append(line[1:])
                new_lines.append(line[1:])
    return "\n".join(old_lines), "\n".join(new_lines)


def map_tool_input(tool_name: str, args: Any, project_path: str | None = None) -> Any:
    """Map Cursor tool arguments onto the Claude tool input shapes."""
    if not isinstance(args, dict):
        return args
    if tool_name == "Edit":
        patch = args.get("patch")
        if not patch:
            return args
        old, new = _parse_patch(patch)
        return {
            "file_path": _absolute(args.get("file_path"), project_path),
            "old_string": old or patch,
            "new_string": new or patch,
        }
    if tool_name == "Read":
        return {"file_path": _absolute(args.get("path") or args.get("file_path"), project_path)}
    if tool_name == "Write":
        return {
            "file_path": _absolute(args.get("path") or args.get("file_path"), project_path),
            "content": args.get("contents") or args.get("content"),
        }
    return args


class _BlobTranslator:
    """Translate one blob's content into deltas, carrying the blob's order hints."""

    def __init__(self, blob: dict, index: int, base_time: datetime, project_path: str | None) -> None:
        self.blob_id = blob.get("id")
        self.sequence = blob.get("sequence")
        self.rowid = blob.get("rowid")
        self.index = index
        # Blobs carry no wall-clock time; spread them one second apart.
        self.timestamp = (base_time + timedelta(seconds=index)).isoformat()
        self.project_path = project_path

    def message(self, role: Role, **kwargs: Any) -> NormalizedMessage:
        return NormalizedMessage(
            role=role,
            timestamp=self.timestamp,
            source="cursor",
            source_id=self.blob_id,
            sequence=self.sequence,
            rowid=self.rowid,
            **kwargs,
        )

    def translate(self, content: dict) -> list[Delta]:
        if content.get("role") and content.get("content"):
            return self._direct(content)
        nested = content.get("message")
        if isinstance(nested, dict) and nested.get("role") and nested.get("content"):
            return self._nested(nested)
        return [Skip("blob without message content")]

    def _direct(self, content: dict) -> list[Delta]:
        role = content["role"]
        if role == "system":
            return [Skip("system blob")]
        if role == "tool":
            return self._tool_results(content)

        role = Role.USER if role == "user" else Role.ASSISTANT
        body = content["content"]
        if isinstance(body, str):
            return [NewMessage(self.message(role, content=body))] if body.strip() else []
        if not isinstance(body, list):
            return [Skip("unsupported content shape")]

        deltas: list[Delta] = []
        text_parts: list[str] = []
        reasoning: str | None = None

        def flush_text() -> None:
            nonlocal reasoning
            if text_parts or reasoning:
                deltas.append(NewMessage(self.message(
                    role, content="\n".join(text_parts), reasoning=reasoning
                )))
                text_parts.clear()
                reasoning = None

        for part in body:
            if isinstance(part, str):
                text_parts.append(part)
                continue
            if not isinstance(part, dict):
                continue
            part_type = part.get("type")
            if part_type == "text" and part.get("text"):
                text_parts.append(part["text"])
            elif part_type == "reasoning" and part.get("text"):
                reasoning = part["text"]
            elif part_type == "tool-call":
                flush_text()
                tool_name = _map_tool_name(part.get("toolName"))
                deltas.append(NewMessage(self.message(
                    Role.ASSISTANT,
                    is_tool_use=True,
                    tool_name=tool_name,
                    tool_id=part.get("toolCallId") or f"tool_{self.index}",
                    tool_input=map_tool_input(tool_name, part.get("args"), self.project_path),
                )))
            elif part_type == "tool_use":
                flush_text()
                deltas.append(NewMessage(self.message(
                    Role.ASSISTANT,
                    is_tool_use=True,
                    tool_name=part.get("name") or "Unknown Tool",
                    tool_id=part.get("id") or f"tool_{self.index}",
                    tool_input=part.get("input"),
                )))

        if any(p.strip() for p in text_parts) or reasoning:
            flush_text()
        return deltas

    def _tool_results(self, content: dict) -> list[Delta]:
        body = content.get("content")
        if not isinstance(body, list):
            return [Skip("tool blob without results")]
        deltas: list[Delta] = []
        for item in body:
            if not isinstance(item, dict) or item.get("type") != "tool-result":
                continue
            deltas.append(AttachToolResult(
                tool_id=item.get("toolCallId") or content.get("id") or f"tool_{self.index}",
                result=ToolResult(content=item.get("result") or "", is_error=False, timestamp=self.timestamp),
                tool_name=_map_tool_name(item.get("toolName")),
            ))
        return deltas

    def _nested(self, nested: dict) -> list[Delta]:
        if nested["role"] == "system":
            return [Skip("system blob")]
        role = Role.USER if nested["role"] == "user" else Role.ASSISTANT
        body = nested["content"]
        if isinstance(body, list):
            text = "\n".join(
                p if isinstance(p, str) else (p.get("text") or "")
                for p in body
                if isinstance(p, (str, dict)) and (isinstance(p, str) or p.get("text"))
            )
        else:
            text = str(body)
        if not text.strip():
            return []
        return [NewMessage(self.message(role, content=text))]


def translate_blobs(
    blobs: Iterable[dict],
    project_path: str | None = None,
    base_time: datetime | None = None,
) -> list[Delta]:
    """Translate a full, ordered blob set into deltas.

    Each blob is ``{"id", "sequence", "rowid", "data"}`` where ``data`` is the
    raw payload, or ``{"id", "sequence", "rowid", "content"}`` where the
    payload was already decoded upstream.
    """
    if base_time is None:
        base_time = datetime.now(timezone.utc)

    deltas: list[Delta] = []
    for index, blob in enumerate(blobs):
        if not isinstance(blob, dict):
            _LOGGER.warning("Skipping malformed blob entry at index %d", index)
            deltas.append(Skip("malformed blob"))
            continue

        content = decode_blob(blob["content"] if "content" in blob else blob.get("data"))
        if content is None:
            deltas.append(Skip("non-JSON blob"))
            continue

        try:
            deltas.extend(_BlobTranslator(blob, index, base_time, project_path).translate(content))
        except (AttributeError, KeyError, TypeError) as exc:
            _LOGGER.warning("Skipping blob %s: %s", blob.get("id"), exc)
            deltas.append(Skip("unparseable blob"))

    return deltas


def decode_meta(rows: Iterable[tuple[str, Any]]) -> dict:
    """Decode session meta rows; hex values hold JSON, others are kept raw."""
    meta: dict = {}
    for key, value in rows:
        if value is None:
            continue
        text = _as_text(value)
        decoded = _decode_hex_json(text)
        meta[key] = decoded if decoded is not None else text
    return meta


def _normalize_created_at(value: Any) -> str | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            try:
                return datetime.fromisoformat(value.replace("Z", "+00:00")).isoformat()
            except ValueError:
                return None
    if isinstance(value, (int, float)):
        return _from_epoch(value if value < 1e12 else value / 1000)
    return None


def _from_epoch(seconds: float) -> str | None:
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc).isoformat()
    except (OverflowError, OSError, ValueError):
        return None


def _preview(content: dict | None, raw: Any) -> str:
    if content is not None:
        body = content.get("content")
        if isinstance(body, list):
            return next(
                (p["text"] for p in body if isinstance(p, dict) and p.get("type") == "text" and p.get("text")),
                "",
            )
        if isinstance(body, str):
            return body
        return ""
    return _NON_PRINTABLE_RE.sub("", _as_text(raw)) if raw is not None else ""


def summarize_session(
    session_id: str,
    meta_rows: Iterable[tuple[str, Any]],
    blobs: list[dict],
    fallback_mtime: float | None = None,
) -> dict:
    """Build a session list entry from its meta rows and blobs."""
    meta = decode_meta(meta_rows)
    summary = {
        "id": session_id,
        "name": "Untitled Session",
        "createdAt": None,
        "mode": None,
        "lastMessage": None,
        "messageCount": len(blobs),
    }

    agent = meta.get("agent")
    if isinstance(agent, dict):
        summary["name"] = agent.get("name") or summary["name"]
        summary["createdAt"] = _normalize_created_at(agent.get("createdAt"))
        summary["mode"] = agent.get("mode")
    elif isinstance(meta.get("name"), str):
        summary["name"] = meta["name"]

    if summary["createdAt"] is None and fallback_mtime is not None:
        summary["createdAt"] = _from_epoch(fallback_mtime)

    if blobs:
        raw = blobs[-1].get("data", blobs[-1].get("content"))
        preview = _preview(decode_blob(raw), raw)
        if preview:
            suffix = "..." if len(preview) > PREVIEW_CHARS else ""
            summary["lastMessage"] = preview[:PREVIEW_CHARS] + suffix

    return summary
