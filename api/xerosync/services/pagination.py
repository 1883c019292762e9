import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from xerosync.services.xero_client import PageResult


@dataclass
class Page:
    number: int
    items: list[dict[str, Any]]


async def paginate(
    fetch_page: Callable[[int], Awaitable[PageResult]],
    start_page: int = 1,
    delay: float = 0.0,
) -> AsyncIterator[Page]:
    """Yield pages from `start_page` until one is empty or reports no more.

    Pages are fetched lazily: nothing is requested until the consumer asks for
    the next page, so breaking out of the loop stops fetching.
    """
    page = start_page
    while True:
        result = await fetch_page(page)
        if not result.items:
            return
        yield Page(number=page, items=result.items)
        if not result.has_more:
            return
        page += 1
        if delay:
            await asyncio.sleep(delay)
