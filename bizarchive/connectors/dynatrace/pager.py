"""BizArchive - Window Pager.

Turns the count/fetch queries into a forward cursor over one window:

    count [cursor, end) -> 0 ends
    fetch page          -> empty ends
    cursor = last timestamp + 1ms, no timestamp ends
"""

from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

from bizarchive.core.errors import QueryFailed
from bizarchive.core.logging import get_logger
from bizarchive.core.timeutil import CURSOR_INCREMENT, format_timestamp
from bizarchive.models.integration import Integration
from bizarchive.models.window import Window

logger = get_logger("dynatrace.pager")


class Pager:
    """Single-use async iterator over event batches of one window."""

    def __init__(
        self,
        client,
        integration: Integration,
        window: Window,
        page_size: int,
        first_count: Optional[int] = None,
    ):
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self.client = client
        self.integration = integration
        self.window = window
        self.page_size = page_size
        self.cursor: datetime = window.start
        self.pages = 0
        self.records = 0
        self._first_count = first_count
        self._started = False

    def __aiter__(self) -> AsyncIterator[List[Dict[str, Any]]]:
        if self._started:
            raise RuntimeError("Pager is not restartable")
        self._started = True
        return self._batches()

    async def _remaining(self) -> int:
        if self._first_count is not None:
            remaining, self._first_count = self._first_count, None
            return remaining
        return await self.client.count(self.integration, self.window, self.cursor)

    async def _batches(self) -> AsyncIterator[List[Dict[str, Any]]]:
        ctx = {"integration_id": self.integration.id}
        while self.cursor < self.window.end:
            remaining = await self._remaining()
            if remaining == 0:
                break

            page = await self.client.fetch(
                self.integration, self.window, self.cursor, self.page_size
            )
            if not page.events:
                logger.warning(
                    f"[{self.integration.id}] Count reported {remaining} events at "
                    f"{format_timestamp(self.cursor)} but fetch returned none",
                    extra=ctx,
                )
                break

            self.pages += 1
            self.records += len(page.events)
            yield page.events

            if page.next_cursor is None:
                break
            advanced = page.next_cursor + CURSOR_INCREMENT
            if advanced <= self.cursor:
                raise QueryFailed(
                    f"Pagination cursor did not advance past {format_timestamp(self.cursor)}"
                )
            self.cursor = advanced
