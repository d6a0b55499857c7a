"""Event models for family calendars.

An `Event` is the locally stored copy of a calendar entry. Events imported
from an external calendar carry their provenance (`source`,
`external_calendar_id`, `external_event_id`), which is the natural key used
during reconciliation: at most one event exists per
(family, external calendar, external event).

## Timing

Events are either all-day or timed, never both:

- All-day: `start_date` / `end_date` (end exclusive, strictly after start)
- Timed: `start_time` / `end_time` as UTC datetimes (end >= start)
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from family_sync.models.connection import CalendarProviderKind, ensure_utc, utc_now


class RecurrencePattern(str, Enum):
    """Recurrence frequency supported by the family calendar."""

    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class RecurrenceRule(BaseModel):
    """Structured recurrence of an event.

    `days_of_week` uses 0 = Sunday through 6 = Saturday. When both
    `end_date` and `max_occurrences` are set, whichever ends the series
    first applies.
    """

    pattern: RecurrencePattern = RecurrencePattern.NONE
    interval: int = Field(default=1, ge=1)
    days_of_week: list[int] = Field(default_factory=list)
    day_of_month: int | None = Field(default=None, ge=-31, le=31)
    end_date: date | None = None
    max_occurrences: int | None = Field(default=None, ge=1)

    @field_validator("days_of_week")
    @classmethod
    def _normalize_days(cls, v: list[int]) -> list[int]:
        for day in v:
            if not 0 <= day <= 6:
                raise ValueError(f"Day of week out of range: {day}")
        return sorted(set(v))

    @property
    def is_recurring(self) -> bool:
        return self.pattern is not RecurrencePattern.NONE


# Fields a sync pass is allowed to overwrite on an existing event
SYNCED_FIELDS = frozenset(
    {
        "title",
        "description",
        "location",
        "is_all_day",
        "start_date",
        "end_date",
        "start_time",
        "end_time",
        "recurrence",
        "recurring_event_id",
        "reminders",
        "color",
        "is_cancelled",
    }
)


class Event(BaseModel):
    """A calendar event stored for a family."""

    # Identity
    id: str = Field(default_factory=lambda: uuid4().hex)
    family_id: str = Field(..., min_length=1)

    # Basic event info
    title: str = Field(default="", description="Event title")
    description: str | None = None
    location: str | None = Field(default=None, description="Free-text location")

    # Time
    is_all_day: bool = False
    start_date: date | None = None
    end_date: date | None = Field(default=None, description="Exclusive end date")
    start_time: datetime | None = None
    end_time: datetime | None = None

    # Provenance; source is None for events created inside the app
    source: CalendarProviderKind | None = None
    external_calendar_id: str | None = None
    external_event_id: str | None = None
    recurring_event_id: str | None = Field(
        default=None, description="External id of the series master"
    )

    recurrence: RecurrenceRule = Field(default_factory=RecurrenceRule)
    reminders: list[int] = Field(
        default_factory=list, description="Minutes before start"
    )
    color: str | None = None
    assignee_ids: list[str] = Field(default_factory=list)
    is_cancelled: bool = False

    created_at: datetime = Field(default_factory=utc_now)
    modified_at: datetime = Field(default_factory=utc_now)

    @field_validator("start_time", "end_time", "created_at", "modified_at")
    @classmethod
    def _as_utc(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v) if v is not None else None

    @model_validator(mode="after")
    def _check_timing(self) -> Event:
        if self.is_all_day:
            if self.start_date is None or self.end_date is None:
                raise ValueError("All-day events require start_date and end_date")
            if self.start_time is not None or self.end_time is not None:
                raise ValueError("All-day events cannot carry start/end times")
            if self.end_date <= self.start_date:
                raise ValueError("All-day end_date must be after start_date")
        else:
            if self.start_time is None or self.end_time is None:
                raise ValueError("Timed events require start_time and end_time")
            if self.start_date is not None or self.end_date is not None:
                raise ValueError("Timed events cannot carry start/end dates")
            if self.end_time < self.start_time:
                raise ValueError("end_time cannot be before start_time")
        return self

    @property
    def is_external(self) -> bool:
        return self.external_event_id is not None

    def synced_content(self) -> dict:
        """The provider-owned part of the event, for change detection."""
        return self.model_dump(include=set(SYNCED_FIELDS))
