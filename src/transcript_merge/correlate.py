"""Pair tool invocations with their results across live and historical sources."""

from __future__ import annotations

import logging

from .transcripts import NormalizedMessage, Role, ToolResult, now_iso

_LOGGER = logging.getLogger(__name__)


class ToolCorrelator:
    """Rolling ``tool_id`` -> tool-use message map for the active session.

    The map outlives a single history page so a result on a later page can
    still find its call. Duplicate registrations follow "last one wins": the
    earlier message keeps ``tool_result = None`` unless a later result is
    routed to it some other way.

    History is loaded newest page first, so a result can arrive before its
    call. Such results are held until ``register`` sees the call, or until
    ``release`` gives up on them once no older page remains.
    """

    def __init__(self) -> None:
        self._calls: dict[str, NormalizedMessage] = {}
        self._held: dict[str, NormalizedMessage] = {}

    def __len__(self) -> int:
        return len(self._calls)

    def register(self, message: NormalizedMessage) -> None:
        if not message.is_tool_use or not message.tool_id:
            return
        if message.tool_id in self._calls:
            _LOGGER.debug("Duplicate tool id %s; latest registration wins", message.tool_id)
        self._calls[message.tool_id] = message

        held = self._held.pop(message.tool_id, None)
        if held is not None and message.tool_result is None:
            message.tool_result = held.tool_result

    def resolve(
        self,
        tool_id: str,
        result: ToolResult,
        tool_name: str | None = None,
        timestamp: str | None = None,
        source: str = "live",
    ) -> NormalizedMessage | None:
        """Attach ``result`` to the registered call, in place.

        Returns None when the call was found. On a miss, returns a standalone
        message carrying the result; the caller either merges it into the
        transcript or passes it to ``hold``.
        """
        call = self._calls.get(tool_id)
        if call is not None:
            call.tool_result = result
            return None

        _LOGGER.debug("No tool call registered for %s", tool_id)
        return NormalizedMessage(
            role=Role.ASSISTANT,
            timestamp=timestamp or now_iso(),
            source=source,
            is_tool_use=True,
            tool_name=tool_name,
            tool_id=tool_id,
            tool_input=None,
            tool_result=result,
        )

    def hold(self, standalone: NormalizedMessage) -> None:
        """Keep an unmatched result until its call is registered."""
        self._held[standalone.tool_id] = standalone

    def release(self) -> list[NormalizedMessage]:
        """Give up waiting: return the held results as standalone messages."""
        released = list(self._held.values())
        self._held.clear()
        return released

    def pending(self) -> list[str]:
        """Tool ids whose call has no result attached yet."""
        return [tool_id for tool_id, call in self._calls.items() if call.tool_result is None]

    def forget(self, tool_id: str) -> None:
        """Stop waiting for ``tool_id``; its call stays without a result."""
        self._calls.pop(tool_id, None)
        self._held.pop(tool_id, None)

    def clear(self) -> None:
        self._calls.clear()
        self._held.clear()
