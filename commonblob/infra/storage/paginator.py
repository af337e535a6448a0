"""Cursor over paginated listing results."""

from __future__ import annotations

import enum
from collections import deque
from typing import Callable

from commonblob.common.context import Context, ensure_context
from commonblob.infra.storage.client import ListItem, Page

PageFetcher = Callable[[Context, "str | None"], Page]


class PaginatorState(enum.Enum):
    HAS_MORE = "has_more"
    EXHAUSTED = "exhausted"


class Paginator:
    """Pull-based cursor over listing results.

    ``next()`` returns one :class:`ListItem` at a time, fetching the next
    page from the backend when the buffered one is used up. The end of the
    sequence is signalled with ``StopIteration``; once exhausted the
    paginator never fetches again. A fetch error propagates from ``next()``
    without changing the state, so the call can be retried.

    Not safe for concurrent use. Start a new enumeration with a new
    ``list`` call.
    """

    def __init__(self, fetch_page: PageFetcher, ctx: Context | None = None) -> None:
        self._fetch_page = fetch_page
        self._ctx = ensure_context(ctx)
        self._buffer: deque[ListItem] = deque()
        self._next_token: str | None = None
        self._fetched = False
        self._state = PaginatorState.HAS_MORE

    @property
    def state(self) -> PaginatorState:
        return self._state

    def next(self, ctx: Context | None = None) -> ListItem:
        """Return the next item.

        Raises:
            StopIteration: When every item has been returned.
            StorageError: If fetching the next page fails.
        """
        if self._state is PaginatorState.EXHAUSTED:
            raise StopIteration
        ctx = ctx if ctx is not None else self._ctx
        while not self._buffer:
            if self._fetched and self._next_token is None:
                self._state = PaginatorState.EXHAUSTED
                raise StopIteration
            ctx.check()
            page = self._fetch_page(ctx, self._next_token)
            self._buffer.extend(page.items)
            self._next_token = page.next_token or None
            self._fetched = True
        return self._buffer.popleft()

    def __iter__(self) -> "Paginator":
        return self

    def __next__(self) -> ListItem:
        return self.next()
