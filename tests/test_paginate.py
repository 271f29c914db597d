"""Tests for history pagination."""

import asyncio

import pytest

from transcript_merge.backends import HistoryPage
from transcript_merge.paginate import PaginationController, PaginationState


class FakeHistory:
    """Serves ``total`` numbered records, newest page first."""

    def __init__(self, total=45, paginate=True):
        self.records = [{"n": i} for i in range(total)]
        self.paginate = paginate
        self.calls = []
        self.fail = False

    async def fetch_page(self, session_key, limit, offset):
        self.calls.append((session_key, limit, offset))
        if self.fail:
            raise ConnectionError("backend unreachable")
        if not self.paginate:
            return HistoryPage(records=list(self.records))
        end = len(self.records) - offset
        page = self.records[max(0, end - limit):max(0, end)]
        return HistoryPage(records=page, has_more=end - limit > 0, total=len(self.records))

    async def fetch_all(self, session_key):
        return []


def _controller(history, page_size=20):
    pages = []
    controller = PaginationController(history, lambda records, initial: pages.append((records, initial)), page_size)
    return controller, pages


class TestPagination:
    @pytest.mark.asyncio
    async def test_initial_load(self):
        history = FakeHistory()
        controller, pages = _controller(history)
        assert await controller.load_initial("s1") == 20
        assert controller.offset == 20
        assert controller.has_more is True
        assert controller.total == 45
        assert controller.state is PaginationState.IDLE
        assert pages[0][1] is True
        assert pages[0][0][0] == {"n": 25}

    @pytest.mark.asyncio
    async def test_load_more_until_exhausted(self):
        history = FakeHistory()
        controller, pages = _controller(history)
        await controller.load_initial("s1")
        assert await controller.load_more() == 20
        assert await controller.load_more() == 5
        assert controller.has_more is False
        assert await controller.load_more() == 0
        assert [offset for _, _, offset in history.calls] == [0, 20, 40]
        assert [initial for _, initial in pages] == [True, False, False]

    @pytest.mark.asyncio
    async def test_load_more_needs_scroll_near_top(self):
        controller, _ = _controller(FakeHistory())
        await controller.load_initial("s1")
        assert controller.should_load_more(500) is False
        assert await controller.load_more(scroll_top=500) == 0
        assert controller.should_load_more(10) is True

    @pytest.mark.asyncio
    async def test_failure_keeps_offset(self):
        history = FakeHistory()
        controller, pages = _controller(history)
        await controller.load_initial("s1")
        history.fail = True
        assert await controller.load_more() == 0
        assert controller.offset == 20
        assert controller.state is PaginationState.IDLE
        assert "Failed to load session messages" in controller.error

        history.fail = False
        assert await controller.load_more() == 20
        assert history.calls[-1][2] == 20
        assert controller.error is None
        assert len(pages) == 2

    @pytest.mark.asyncio
    async def test_stale_page_discarded(self):
        gate = asyncio.Event()

        class SlowHistory(FakeHistory):
            async def fetch_page(self, session_key, limit, offset):
                await gate.wait()
                return await super().fetch_page(session_key, limit, offset)

        controller, pages = _controller(SlowHistory())
        task = asyncio.ensure_future(controller.load_initial("old"))
        await asyncio.sleep(0)
        assert controller.is_loading
        controller.reset("new")
        gate.set()
        assert await task == 0
        assert pages == []
        assert controller.session_key == "new"
        assert controller.offset == 0

    @pytest.mark.asyncio
    async def test_unpaginated_source(self):
        controller, pages = _controller(FakeHistory(total=7, paginate=False))
        assert await controller.load_initial("s1") == 7
        assert controller.has_more is False
        assert controller.total == 7

    @pytest.mark.asyncio
    async def test_empty_page_not_delivered(self):
        controller, pages = _controller(FakeHistory(total=0))
        assert await controller.load_initial("s1") == 0
        assert pages == []

    def test_page_size_must_be_positive(self):
        with pytest.raises(ValueError):
            PaginationController(FakeHistory(), lambda records, initial: None, page_size=0)

    def test_history_page_from_response(self):
        page = HistoryPage.from_response({"messages": [{"a": 1}], "hasMore": True, "total": 9})
        assert page.records == [{"a": 1}]
        assert page.has_more is True
        assert page.total == 9
