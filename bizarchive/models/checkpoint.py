"""BizArchive - Checkpoint Model.

Wire format (one JSON object per integration)::

    {"integrationId": "...", "lastProcessedTimestamp": "...", "updatedAt": "..."}
"""

from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from bizarchive.core.timeutil import EPOCH, ensure_utc, floor_hour, utcnow


class Checkpoint(BaseModel):
    """Last fully archived window boundary for one integration."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    integration_id: str = Field(alias="integrationId")
    last_processed_timestamp: datetime = Field(alias="lastProcessedTimestamp")
    updated_at: datetime = Field(default_factory=utcnow, alias="updatedAt")

    @field_validator("last_processed_timestamp", "updated_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    def stamped(self, now: Optional[datetime] = None) -> "Checkpoint":
        """Copy with ``updated_at`` set to now."""
        return self.model_copy(update={"updated_at": ensure_utc(now or utcnow())})

    def to_json(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")

    @classmethod
    def from_json(cls, payload: bytes) -> "Checkpoint":
        return cls.model_validate_json(payload)


def initial_checkpoint(
    integration_id: str,
    lookback_hours: int = 24,
    from_epoch: bool = False,
    now: Optional[datetime] = None,
) -> Checkpoint:
    """Default checkpoint for an integration that has never been exported."""
    now = ensure_utc(now or utcnow())
    start = EPOCH if from_epoch else floor_hour(now - timedelta(hours=lookback_hours))
    return Checkpoint(
        integration_id=integration_id,
        last_processed_timestamp=start,
        updated_at=now,
    )
