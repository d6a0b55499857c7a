"""Calendar synchronization engine.

Keeps a family's stored events in step with external calendars.

## Components

- `CalendarSyncService`: one sync pass for one connection (refresh,
  fetch, reconcile, record outcome)
- `SyncScheduler`: bounded, concurrent passes over due connections
- `ConnectionService`: OAuth flow, ICS validation, manual sync and the
  connection lifecycle
- `translate_recurrence`: provider RRULE -> `RecurrenceRule`

## Providers

- Google Calendar (OAuth, sync tokens)
- Microsoft Graph (OAuth, delta links)
- ICS subscriptions (HTTP validators, full snapshots)
"""

from family_sync.calendar.connections import (
    ConnectionService,
    IcsValidationResult,
    build_oauth_state,
    parse_oauth_state,
)
from family_sync.calendar.exceptions import (
    ConnectionNotFound,
    InvalidOAuthState,
    NoCalendarsAvailable,
)
from family_sync.calendar.recurrence import (
    MalformedRecurrenceError,
    parse_rrule,
    translate_recurrence,
)
from family_sync.calendar.scheduler import SyncScheduler
from family_sync.calendar.sync import (
    CalendarSyncService,
    SyncSummary,
    is_authentication_failure,
)

__all__ = [
    "ConnectionService",
    "IcsValidationResult",
    "build_oauth_state",
    "parse_oauth_state",
    "ConnectionNotFound",
    "InvalidOAuthState",
    "NoCalendarsAvailable",
    "MalformedRecurrenceError",
    "parse_rrule",
    "translate_recurrence",
    "SyncScheduler",
    "CalendarSyncService",
    "SyncSummary",
    "is_authentication_failure",
]
