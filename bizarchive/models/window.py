"""BizArchive - Export Window."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from bizarchive.core.timeutil import (
    WINDOW_GRANULARITY,
    ensure_utc,
    floor_hour,
    format_timestamp,
)


class Window(BaseModel):
    """Half-open time range ``[start, end)`` exported as one unit."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _check_order(self) -> "Window":
        if self.start >= self.end:
            raise ValueError(f"Window start {self.start} must be before end {self.end}")
        return self

    @classmethod
    def starting_at(cls, start: datetime) -> "Window":
        """The hour window containing ``start``."""
        aligned = floor_hour(start)
        return cls(start=aligned, end=aligned + WINDOW_GRANULARITY)

    def next(self) -> "Window":
        return Window(start=self.end, end=self.end + WINDOW_GRANULARITY)

    def __str__(self) -> str:
        return f"{format_timestamp(self.start)} -> {format_timestamp(self.end)}"
