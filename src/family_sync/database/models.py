"""Database models for family calendar synchronization.

## Security Notes

- OAuth tokens are encrypted at rest using Fernet symmetric encryption
- The encryption key is derived from the application secret
- PostgreSQL should be configured with SSL and disk encryption

## Schema Overview

```
calendar_connections
└── events (N, keyed by family + external calendar + external event)
```

Events are linked to a connection through `external_calendar_id` (the
provider calendar id, or the connection id for ICS subscriptions) rather
than a foreign key: events may also be created inside the app.

All timestamps are stored timezone-aware and read back as UTC.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that always round-trips as UTC.

    SQLite drops the offset, so values read back without one are taken to
    be UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all database models."""

    type_annotation_map = {
        dict[str, Any]: JSONType,
    }


class CalendarConnectionRecord(Base):
    """A family's link to an external calendar.

    Tokens are encrypted in the repository layer, not at the database level,
    to allow for key rotation.
    """

    __tablename__ = "calendar_connections"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    family_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    provider: Mapped[str] = mapped_column(String(32), nullable=False)  # google, microsoft, ics
    status: Mapped[str] = mapped_column(String(32), nullable=False)

    # Tokens (encrypted)
    access_token_encrypted: Mapped[str | None] = mapped_column(Text)
    refresh_token_encrypted: Mapped[str | None] = mapped_column(Text)
    token_type: Mapped[str | None] = mapped_column(String(32))
    token_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    token_scope: Mapped[str | None] = mapped_column(Text)

    # Source
    ics_url: Mapped[str | None] = mapped_column(Text)
    external_calendar_id: Mapped[str | None] = mapped_column(String(512))
    external_account_id: Mapped[str | None] = mapped_column(String(255))
    sync_cursor: Mapped[str | None] = mapped_column(Text)  # Sync token / delta link / validator

    # Policy and defaults for imported events
    sync_policy: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    color: Mapped[str | None] = mapped_column(String(32))
    assigned_member_ids: Mapped[list[Any]] = mapped_column(JSONType, nullable=False)

    # Health
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    next_sync_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    last_sync_error: Mapped[str | None] = mapped_column(Text)
    consecutive_failures: Mapped[int] = mapped_column(Integer, default=0)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    modified_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    __table_args__ = (
        Index("ix_calendar_connections_family", "family_id"),
        Index("ix_calendar_connections_due", "is_enabled", "status", "next_sync_at"),
    )

    def __repr__(self) -> str:
        return f"<CalendarConnection {self.id} provider={self.provider}>"


class EventRecord(Base):
    """A stored family event."""

    __tablename__ = "events"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    family_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # Event data
    title: Mapped[str] = mapped_column(String(1024), nullable=False, default="")
    description: Mapped[str | None] = mapped_column(Text)
    location: Mapped[str | None] = mapped_column(String(1024))

    # Time
    is_all_day: Mapped[bool] = mapped_column(Boolean, default=False)
    start_date: Mapped[date | None] = mapped_column(Date)
    end_date: Mapped[date | None] = mapped_column(Date)
    start_time: Mapped[datetime | None] = mapped_column(UTCDateTime())
    end_time: Mapped[datetime | None] = mapped_column(UTCDateTime())

    # Provenance
    source: Mapped[str | None] = mapped_column(String(32))
    external_calendar_id: Mapped[str | None] = mapped_column(String(512))
    external_event_id: Mapped[str | None] = mapped_column(String(1024))
    recurring_event_id: Mapped[str | None] = mapped_column(String(1024))

    recurrence: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    reminders: Mapped[list[Any]] = mapped_column(JSONType, nullable=False)
    color: Mapped[str | None] = mapped_column(String(32))
    assignee_ids: Mapped[list[Any]] = mapped_column(JSONType, nullable=False)
    is_cancelled: Mapped[bool] = mapped_column(Boolean, default=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    modified_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "family_id",
            "external_calendar_id",
            "external_event_id",
            name="uq_event_external_key",
        ),
        Index("ix_events_family_calendar", "family_id", "external_calendar_id"),
        Index("ix_events_time", "start_time", "end_time"),
    )

    def __repr__(self) -> str:
        return f"<Event {self.title[:30]}>"
