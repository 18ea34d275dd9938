"""BizArchive - Query Protocol Models."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class QueryState(str, Enum):
    """States reported by query:execute / query:poll."""

    NOT_STARTED = "NOT_STARTED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    RESULT_GONE = "RESULT_GONE"


PENDING_STATES = {QueryState.NOT_STARTED.value, QueryState.RUNNING.value}


class QueryRecords(BaseModel):
    model_config = ConfigDict(extra="ignore")

    records: List[Dict[str, Any]] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class QueryResult(BaseModel):
    """Response body shared by submit and poll.

    ``state`` is kept as the raw string so unknown terminal states survive
    into error messages.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    state: str = ""
    request_token: Optional[str] = Field(default=None, alias="requestToken")
    result: Optional[QueryRecords] = None

    @property
    def succeeded(self) -> bool:
        return self.state == QueryState.SUCCEEDED.value

    @property
    def pending(self) -> bool:
        return self.state in PENDING_STATES

    @property
    def records(self) -> List[Dict[str, Any]]:
        return self.result.records if self.result else []


class QueryPage(BaseModel):
    """One page of events plus the timestamp of its last record."""

    events: List[Dict[str, Any]] = Field(default_factory=list)
    next_cursor: Optional[datetime] = None

    def __len__(self) -> int:
        return len(self.events)
