"""BizArchive - DQL Query Builders.

Both queries scope the sox bizevents bucket to one integration's lowercased
source/destination pair over ``[from, to)``.
"""

from datetime import datetime

from bizarchive.core.logging import get_logger
from bizarchive.core.timeutil import format_timestamp
from bizarchive.models.integration import Integration

logger = get_logger("dynatrace.queries")

EVENT_BUCKET = "sox_bizevents"


def _scoped_fetch(integration: Integration, start: datetime, end: datetime) -> str:
    return (
        f'fetch bizevents, bucket:{{"{EVENT_BUCKET}"}}, '
        f'from: toTimestamp("{format_timestamp(start)}"), '
        f'to: toTimestamp("{format_timestamp(end)}") '
        f'| filter source == "{integration.source_filter}" '
        f'AND destination == "{integration.destination_filter}"'
    )


def build_count_query(integration: Integration, start: datetime, end: datetime) -> str:
    dql = f"{_scoped_fetch(integration, start, end)} | summarize count = count()"
    logger.debug(f"Built DQL: {dql}")
    return dql


def build_page_query(
    integration: Integration, start: datetime, end: datetime, page_size: int
) -> str:
    dql = (
        f"{_scoped_fetch(integration, start, end)} "
        f"| limit {page_size} | sort timestamp asc"
    )
    logger.debug(f"Built DQL: {dql}")
    return dql
