"""Normalized transcript records shared by the live and history adapters."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    ERROR = "error"
    INTERACTIVE_PROMPT = "interactive-prompt"


@dataclass(frozen=True, order=True)
class OrderKey:
    """Total-order key assigned by the orderer.

    Only ``position`` takes part in comparisons. The native hints are kept for
    inspection; live and historical sources number their records differently so
    they are never compared across sources.
    """

    position: int
    sequence: int | None = field(default=None, compare=False)
    rowid: int | None = field(default=None, compare=False)
    timestamp: str = field(default="", compare=False)


@dataclass
class ToolResult:
    content: Any
    is_error: bool = False
    timestamp: str = ""


@dataclass
class NormalizedMessage:
    """Normalized message from any transcript source."""

    role: Role
    content: str = ""  # may be empty for tool-use messages
    timestamp: str = ""  # ISO 8601, best effort
    source: str = ""  # "claude", "cursor" or "live"
    source_id: str | None = None  # blob id, record uuid or protocol event id
    sequence: int | None = None
    rowid: int | None = None
    is_tool_use: bool = False
    tool_name: str | None = None
    tool_id: str | None = None
    tool_input: Any = None
    tool_result: ToolResult | None = None
    is_streaming: bool = False
    reasoning: str | None = None
    images: list = field(default_factory=list)
    order_key: OrderKey | None = None
    message_id: int | None = None

    @property
    def is_open_stream(self) -> bool:
        """True if streamed fragments may still be appended to this message."""
        return self.role == Role.ASSISTANT and not self.is_tool_use and self.is_streaming

    def to_dict(self) -> dict:
        data = {
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp,
            "source": self.source,
            "isStreaming": self.is_streaming,
        }
        if self.source_id is not None:
            data["sourceId"] = self.source_id
        if self.is_tool_use:
            data["isToolUse"] = True
            data["toolName"] = self.tool_name
            data["toolId"] = self.tool_id
            data["toolInput"] = self.tool_input
        if self.tool_result is not None:
            data["toolResult"] = {
                "content": self.tool_result.content,
                "isError": self.tool_result.is_error,
                "timestamp": self.tool_result.timestamp,
            }
        if self.reasoning:
            data["reasoning"] = self.reasoning
        if self.images:
            data["images"] = list(self.images)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "NormalizedMessage":
        result = data.get("toolResult")
        return cls(
            role=Role(data.get("role", "assistant")),
            content=data.get("content") or "",
            timestamp=data.get("timestamp") or "",
            source=data.get("source") or "",
            source_id=data.get("sourceId"),
            is_tool_use=bool(data.get("isToolUse")),
            tool_name=data.get("toolName"),
            tool_id=data.get("toolId"),
            tool_input=data.get("toolInput"),
            tool_result=ToolResult(
                content=result.get("content"),
                is_error=bool(result.get("isError")),
                timestamp=result.get("timestamp") or "",
            ) if isinstance(result, dict) else None,
            # A restored snapshot never resumes a stream.
            is_streaming=False,
            reasoning=data.get("reasoning"),
            images=list(data.get("images") or []),
        )


# --- Deltas produced by the adapters ---


@dataclass(frozen=True)
class NewMessage:
    message: NormalizedMessage


@dataclass(frozen=True)
class AppendText:
    text: str
    separator: str = ""  # inserted between consecutive fragments


@dataclass(frozen=True)
class AttachToolResult:
    tool_id: str
    result: ToolResult
    tool_name: str | None = None


@dataclass(frozen=True)
class FinalizeStream:
    final_text: str | None = None  # authoritative full text, if the backend sent one
    is_error: bool = False


@dataclass(frozen=True)
class Skip:
    reason: str


# --- Live-only control deltas ---


@dataclass(frozen=True)
class SessionCreated:
    session_id: str


@dataclass(frozen=True)
class SessionSwitch:
    new_session_id: str
    previous_session_id: str | None


@dataclass(frozen=True)
class AbortStream:
    notice: str = "Session interrupted by user."


@dataclass(frozen=True)
class TurnEnded:
    outcome: str  # "complete", "result", "aborted" or "error"
    exit_code: int | None = None


@dataclass(frozen=True)
class StatusUpdate:
    text: str
    tokens: int = 0
    can_interrupt: bool = True


Delta = Union[
    NewMessage,
    AppendText,
    AttachToolResult,
    FinalizeStream,
    Skip,
    SessionCreated,
    SessionSwitch,
    AbortStream,
    TurnEnded,
    StatusUpdate,
]


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
