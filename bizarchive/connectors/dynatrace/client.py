"""BizArchive - Dynatrace Query Client.

Handles the asynchronous submit/poll protocol of the Grail query API and the
two queries the exporter needs: counting and paging events.
"""

import asyncio
from datetime import datetime
from typing import Any, Dict, Optional, Protocol

import httpx

from bizarchive.config import settings
from bizarchive.connectors.dynatrace.queries import build_count_query, build_page_query
from bizarchive.core.errors import QueryFailed, QueryTransportError
from bizarchive.core.logging import get_logger
from bizarchive.core.timeutil import parse_timestamp
from bizarchive.models.integration import Integration
from bizarchive.models.query import QueryPage, QueryResult
from bizarchive.models.window import Window

logger = get_logger("dynatrace.client")

APP_URL = "https://{tenant}.apps.dynatrace.com"
EXECUTE_PATH = "/platform/storage/query/v1/query:execute"
POLL_PATH = "/platform/storage/query/v1/query:poll"
MAX_RESULT_BYTES = 100_000_000
MAX_RESULT_RECORDS = 100_000


class TokenProvider(Protocol):
    async def get_token(self) -> str: ...


class QueryClient:
    """Async HTTP client for the Grail query:execute / query:poll endpoints."""

    def __init__(
        self,
        token_provider: TokenProvider,
        tenant_name: str | None = None,
        max_polls: int | None = None,
        poll_interval: float | None = None,
        request_timeout: float | None = None,
        base_url: str | None = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.token_provider = token_provider
        self.base_url = base_url or APP_URL.format(tenant=tenant_name or settings.tenant_name)
        self.max_polls = settings.max_polls if max_polls is None else max_polls
        self.poll_interval = (
            settings.poll_interval_seconds if poll_interval is None else poll_interval
        )
        self.request_timeout = request_timeout or settings.request_timeout_seconds
        self._client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.request_timeout)
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    # ── Core Request Method ──

    async def _request(
        self,
        method: str,
        path: str,
        token: str,
        json: Dict[str, Any] | None = None,
        params: Dict[str, Any] | None = None,
    ) -> QueryResult:
        """Send one request; any non-2xx or unreadable response is a transport error."""
        client = await self._get_client()
        headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
        try:
            resp = await client.request(
                method,
                f"{self.base_url}{path}",
                json=json,
                params=params,
                headers=headers,
                timeout=self.request_timeout,
            )
        except httpx.RequestError as e:
            raise QueryTransportError(f"{method} {path} failed: {e}") from e

        if resp.status_code >= 300:
            logger.error(
                f"{method} {path} failed with status {resp.status_code}: {resp.text}",
                extra={"status_code": resp.status_code},
            )
            raise QueryTransportError(
                f"{method} {path} failed. Status={resp.status_code}, body={resp.text}",
                resp.status_code,
            )

        try:
            return QueryResult.model_validate(resp.json())
        except ValueError as e:
            raise QueryTransportError(
                f"{method} {path} returned an unreadable body", resp.status_code
            ) from e

    # ── Submit / Poll ──

    async def execute(self, dql: str) -> QueryResult:
        """Submit a DQL query and poll until it reaches a terminal state."""
        token = await self.token_provider.get_token()
        body = {
            "query": dql,
            "maxResultBytes": MAX_RESULT_BYTES,
            "maxResultRecords": MAX_RESULT_RECORDS,
        }
        last = await self._request("POST", EXECUTE_PATH, token, json=body)

        # Immediate success
        if last.succeeded:
            return self._checked(last)

        request_token = last.request_token
        if not request_token:
            raise QueryFailed(
                f"Query did not succeed immediately and no requestToken was returned. State={last.state}",
                last.state,
            )

        polls = 0
        while last.pending and polls < self.max_polls:
            if polls:
                await asyncio.sleep(self.poll_interval)
            polls += 1
            logger.debug(f"Polling query (attempt {polls}/{self.max_polls})")
            last = await self._request(
                "GET", POLL_PATH, token, params={"request-token": request_token}
            )

        if not last.succeeded:
            raise QueryFailed(
                f"Query did not succeed after {polls} poll(s). Final state={last.state}",
                last.state,
            )
        return self._checked(last)

    @staticmethod
    def _checked(result: QueryResult) -> QueryResult:
        if result.result is None:
            raise QueryFailed("Query SUCCEEDED but result was missing", result.state)
        return result

    # ── Count / Page ──

    async def count(
        self,
        integration: Integration,
        window: Window,
        cursor: Optional[datetime] = None,
    ) -> int:
        """Number of events in ``[cursor or window.start, window.end)``."""
        start = cursor or window.start
        result = await self.execute(build_count_query(integration, start, window.end))
        records = result.records
        if not records:
            return 0
        try:
            return int(records[0].get("count") or 0)
        except (TypeError, ValueError) as e:
            raise QueryFailed(
                f"Count query returned a non-numeric count: {records[0]!r}", result.state
            ) from e

    async def fetch(
        self,
        integration: Integration,
        window: Window,
        cursor: datetime,
        page_size: int,
    ) -> QueryPage:
        """One page of events from ``[cursor, window.end)`` in timestamp order.

        ``next_cursor`` is the last record's timestamp; callers advance it by
        CURSOR_INCREMENT before asking for the next page.
        """
        result = await self.execute(build_page_query(integration, cursor, window.end, page_size))
        events = result.records
        next_cursor = parse_timestamp(events[-1].get("timestamp")) if events else None
        logger.debug(
            f"Fetched {len(events)} events for {integration.id}",
            extra={"integration_id": integration.id, "record_count": len(events)},
        )
        return QueryPage(events=events, next_cursor=next_cursor)
