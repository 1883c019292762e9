import pytest

from xerosync.services.pagination import paginate
from xerosync.services.xero_client import PageResult


def _pages(*pages: list, trailing_has_more: bool = False):
    """fetch_page over fixed pages; `requested` logs the page numbers asked for."""
    requested: list[int] = []

    async def fetch_page(number: int) -> PageResult:
        requested.append(number)
        if number > len(pages):
            return PageResult(items=[], has_more=False)
        is_last = number == len(pages)
        return PageResult(items=pages[number - 1], has_more=trailing_has_more or not is_last)

    return fetch_page, requested


async def _collect(iterator) -> list:
    return [page async for page in iterator]


class TestPaginate:
    @pytest.mark.asyncio
    async def test_yields_every_page_in_order(self):
        fetch, requested = _pages([{"id": 1}, {"id": 2}], [{"id": 3}], [{"id": 4}])
        pages = await _collect(paginate(fetch))

        assert [p.number for p in pages] == [1, 2, 3]
        assert [item["id"] for p in pages for item in p.items] == [1, 2, 3, 4]
        assert requested == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_empty_first_page_terminates(self):
        fetch, requested = _pages([])
        assert await _collect(paginate(fetch)) == []
        assert requested == [1]

    @pytest.mark.asyncio
    async def test_empty_page_stops_even_if_more_claimed(self):
        fetch, requested = _pages([{"id": 1}], trailing_has_more=True)
        pages = await _collect(paginate(fetch))

        assert [p.number for p in pages] == [1]
        assert requested == [1, 2]

    @pytest.mark.asyncio
    async def test_start_page_resumes_mid_stream(self):
        fetch, requested = _pages([{"id": 1}], [{"id": 2}], [{"id": 3}])
        pages = await _collect(paginate(fetch, start_page=3))

        assert [p.number for p in pages] == [3]
        assert requested == [3]

    @pytest.mark.asyncio
    async def test_consumer_stopping_stops_fetching(self):
        fetch, requested = _pages([{"id": 1}], [{"id": 2}], [{"id": 3}])
        async for page in paginate(fetch):
            if page.number == 2:
                break

        assert requested == [1, 2]
