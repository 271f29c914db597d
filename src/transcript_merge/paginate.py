"""Drive backfill of older history pages."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable

from .backends import HistorySource

_LOGGER = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
DEFAULT_THRESHOLD = 100  # px from the top of the viewport


class PaginationState(Enum):
    IDLE = "idle"
    LOADING_INITIAL = "loading-initial"
    LOADING_MORE = "loading-more"


class PaginationController:
    """Track the history cursor and fetch older pages on demand.

    Pages are handed to ``on_page(records, initial)`` in one synchronous call,
    so a page is never interleaved with live appends. A failed fetch leaves the
    offset where it was, so the next attempt asks for the same page.
    """

    def __init__(
        self,
        history: HistorySource,
        on_page: Callable[[list[Any], bool], None],
        page_size: int = DEFAULT_PAGE_SIZE,
        threshold: int = DEFAULT_THRESHOLD,
    ) -> None:
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self._history = history
        self._on_page = on_page
        self.page_size = page_size
        self.threshold = threshold
        self.session_key: str | None = None
        self.state = PaginationState.IDLE
        self.offset = 0
        self.has_more = False
        self.total = 0
        self.error: str | None = None
        self._generation = 0

    @property
    def is_loading(self) -> bool:
        return self.state is not PaginationState.IDLE

    def reset(self, session_key: str | None = None) -> None:
        """Forget all pagination state; any page still in flight is discarded."""
        self._generation += 1
        self.session_key = session_key
        self.state = PaginationState.IDLE
        self.offset = 0
        self.has_more = False
        self.total = 0
        self.error = None

    def should_load_more(self, scroll_top: float = 0) -> bool:
        return (
            self.session_key is not None
            and self.has_more
            and not self.is_loading
            and scroll_top < self.threshold
        )

    async def load_initial(self, session_key: str) -> int:
        self.reset(session_key)
        self.state = PaginationState.LOADING_INITIAL
        return await self._fetch(initial=True)

    async def load_more(self, scroll_top: float = 0) -> int:
        if not self.should_load_more(scroll_top):
            return 0
        self.state = PaginationState.LOADING_MORE
        return await self._fetch(initial=False)

    async def _fetch(self, initial: bool) -> int:
        generation = self._generation
        session_key = self.session_key
        offset = 0 if initial else self.offset

        try:
            page = await self._history.fetch_page(session_key, self.page_size, offset)
        except Exception as exc:
            _LOGGER.warning("Failed to load history for %s at offset %d: %s", session_key, offset, exc)
            if generation == self._generation:
                self.error = f"Failed to load session messages: {exc}"
                self.state = PaginationState.IDLE
            return 0

        if generation != self._generation:
            _LOGGER.debug("Discarding stale history page for %s", session_key)
            return 0

        records = list(page.records)
        if page.has_more is None:
            # Source without pagination: this was everything
            self.has_more = False
            self.total = len(records)
        else:
            self.has_more = bool(page.has_more)
            self.total = page.total if page.total is not None else offset + len(records)
        self.offset = offset + len(records)
        self.error = None
        self.state = PaginationState.IDLE

        if records:
            self._on_page(records, initial)
        return len(records)
