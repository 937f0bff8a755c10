"""Page tracking for the engine result set.

:class:`PageState` owns the page pointer, fetches pages from a
:class:`PageSource`, and fences responses by sequence number so that a slow
response for a page the user already left is dropped instead of rendered.
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, Sequence

from .config import DEFAULT_PAGE_SIZE
from .errors import FETCH_FAILURE, INVALID_PAGE_REQUEST, LOST_RACE
from .logging import get_logger
from .metrics import record_discard, record_error, record_operation
from .models import PageInfo

LOGGER = get_logger(__name__)

DEFAULT_PAGE_CHANGE_DELAY_SECONDS = 2.0

PageMatrix = Sequence[Sequence[Any]]


class PageSource(Protocol):
    """Anything able to deliver a window of engine rows."""

    async def fetch_page(self, offset: int, limit: int) -> PageMatrix: ...


class PageStatus(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class PageLoad:
    page: int
    sequence: int
    matrix: PageMatrix
    page_info: PageInfo


def compute_page_info(total_rows: int, page_size: int, current_page: int) -> PageInfo:
    total_rows = max(int(total_rows), 0)
    page_size = max(int(page_size), 1)
    total_pages = max(1, math.ceil(total_rows / page_size))
    return PageInfo(
        page_size=page_size,
        total_rows=total_rows,
        current_page=current_page,
        total_pages=total_pages,
        first_row=min((current_page - 1) * page_size + 1, total_rows),
        last_row=min(current_page * page_size, total_rows),
    )


class NavigationGuard:
    """Short-lived flag raised by explicit page changes.

    While active, dataset refreshes do not snap the grid back to page 1. The
    flag drops by itself after ``delay`` seconds unless re-armed.
    """

    __slots__ = ("_delay", "_active", "_handle")

    def __init__(self, delay: float = DEFAULT_PAGE_CHANGE_DELAY_SECONDS) -> None:
        self._delay = max(float(delay), 0.0)
        self._active = False
        self._handle: asyncio.TimerHandle | None = None

    @property
    def active(self) -> bool:
        return self._active

    def arm(self) -> None:
        """Raise the flag and restart the expiry timer (requires a running loop)."""

        self._cancel_timer()
        self._active = True
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self._delay, self._expire)

    def clear(self) -> None:
        self._cancel_timer()
        self._active = False

    def close(self) -> None:
        self.clear()

    def _expire(self) -> None:
        self._handle = None
        self._active = False
        LOGGER.debug("page.guard.expired")

    def _cancel_timer(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


class PageState:
    """Page pointer, fetch sequencing and reset policy for one grid."""

    def __init__(
        self,
        source: PageSource,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
        page_change_delay: float = DEFAULT_PAGE_CHANGE_DELAY_SECONDS,
    ) -> None:
        self._source = source
        self._default_page_size = max(int(page_size), 1)
        self._guard = NavigationGuard(page_change_delay)
        self._status = PageStatus.IDLE
        self._sequence = 0
        self._current_page = 1
        self._last_good_page = 1
        self._page_info = compute_page_info(0, self._default_page_size, 1)

    @property
    def page_info(self) -> PageInfo:
        return self._page_info

    @property
    def current_page(self) -> int:
        return self._current_page

    @property
    def status(self) -> PageStatus:
        return self._status

    @property
    def sequence(self) -> int:
        return self._sequence

    @property
    def total_rows(self) -> int:
        return self._page_info.total_rows

    @property
    def guard(self) -> NavigationGuard:
        return self._guard

    @property
    def user_changed_page(self) -> bool:
        return self._guard.active

    def initialize(self, total_rows: int, page_size: int | None = None) -> PageInfo:
        """Recompute paging for a new row count; the pointer is clamped into range."""

        size = self._default_page_size if page_size is None else max(int(page_size), 1)
        info = compute_page_info(total_rows, size, self._current_page)
        if self._current_page > info.total_pages:
            self._current_page = info.total_pages
            self._last_good_page = min(self._last_good_page, info.total_pages)
            info = compute_page_info(total_rows, size, self._current_page)
        self._page_info = info
        return info

    def should_reset_to_page_one(
        self,
        dataset_changed: bool,
        selection_in_progress: bool,
        total_rows: int | None = None,
    ) -> bool:
        """Decide whether a refreshed dataset should snap back to page 1.

        Call before :meth:`initialize` so ``total_rows`` is compared with the
        previously tracked row count.
        """

        if self._guard.active or selection_in_progress:
            return False
        rows_changed = total_rows is not None and int(total_rows) != self._page_info.total_rows
        return bool(dataset_changed or rows_changed)

    def on_selection_cancelled(self) -> None:
        self._guard.arm()

    async def request_page(self, page: int, *, user_initiated: bool = True) -> PageLoad | None:
        """Fetch ``page`` and return it, or ``None`` when invalid, superseded or failed.

        ``user_initiated`` arms the navigation guard; refetches driven by a
        layout refresh pass ``False``.
        """

        info = self._page_info
        if page < 1 or page > info.total_pages:
            LOGGER.warning(
                "page.request.invalid",
                extra={"context": {"page": page, "total_pages": info.total_pages}},
            )
            record_error(INVALID_PAGE_REQUEST)
            return None

        if user_initiated:
            self._guard.arm()
        self._current_page = page
        self._status = PageStatus.FETCHING
        self._sequence += 1
        sequence = self._sequence
        offset = (page - 1) * info.page_size
        context = {"page": page, "sequence": sequence, "offset": offset, "limit": info.page_size}

        try:
            matrix = await self._source.fetch_page(offset, info.page_size)
        except Exception as exc:
            if sequence != self._sequence:
                self._discard(context)
                return None
            self._status = PageStatus.ERROR
            self._current_page = self._last_good_page
            self._page_info = compute_page_info(info.total_rows, info.page_size, self._current_page)
            record_error(FETCH_FAILURE)
            LOGGER.warning(
                "page.fetch.failed",
                extra={"context": {**context, "error": str(exc), "rolled_back_to": self._current_page}},
            )
            return None

        if sequence != self._sequence:
            self._discard(context)
            return None

        self._status = PageStatus.IDLE
        self._last_good_page = page
        self._page_info = compute_page_info(self._page_info.total_rows, self._page_info.page_size, page)
        record_operation("page_fetch")
        LOGGER.debug("page.fetch.completed", extra={"context": {**context, "rows": len(matrix)}})
        return PageLoad(page=page, sequence=sequence, matrix=matrix, page_info=self._page_info)

    async def next_page(self) -> PageLoad | None:
        if self._current_page >= self._page_info.total_pages:
            return None
        return await self.request_page(self._current_page + 1)

    async def previous_page(self) -> PageLoad | None:
        if self._current_page <= 1:
            return None
        return await self.request_page(self._current_page - 1)

    async def first_page(self) -> PageLoad | None:
        return await self.request_page(1)

    async def last_page(self) -> PageLoad | None:
        return await self.request_page(self._page_info.total_pages)

    def reset(self) -> PageInfo:
        """Go back to page 1, drop the guard and invalidate in-flight fetches."""

        self._guard.clear()
        self._sequence += 1
        self._status = PageStatus.IDLE
        self._current_page = 1
        self._last_good_page = 1
        self._page_info = compute_page_info(self._page_info.total_rows, self._page_info.page_size, 1)
        return self._page_info

    def close(self) -> None:
        self._guard.close()

    def _discard(self, context: dict[str, Any]) -> None:
        record_discard("page")
        LOGGER.debug(
            "page.fetch.superseded",
            extra={"context": {**context, "code": LOST_RACE, "latest": self._sequence}},
        )
