"""Domain models for family calendar synchronization."""

from family_sync.models.connection import (
    CalendarConnection,
    CalendarProviderKind,
    ConnectionStatus,
    InvalidIcsUrlError,
    OAuthTokens,
    SyncPolicy,
)
from family_sync.models.event import (
    Event,
    RecurrencePattern,
    RecurrenceRule,
)

__all__ = [
    # Connection
    "CalendarConnection",
    "CalendarProviderKind",
    "ConnectionStatus",
    "InvalidIcsUrlError",
    "OAuthTokens",
    "SyncPolicy",
    # Event
    "Event",
    "RecurrencePattern",
    "RecurrenceRule",
]
