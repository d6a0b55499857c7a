"""Calendar synchronization service.

Reconciles a family's stored events against one external calendar.

## Sync Process

1. Refresh OAuth tokens that expire within the refresh margin
2. Compute the window `[now - past days, now + future days]`
3. Fetch changes since the stored cursor (or the whole window)
4. Reconcile by (family, external calendar, external event):
   a. Deleted and cancelled events are removed
   b. Events filtered out by the connection policy are removed/skipped
   c. New events are created, existing ones overwritten in place
   d. For full snapshots, stored events missing upstream are removed; after
      a stale-cursor resync the same applies inside the window
5. Store the new cursor and schedule the next pass

## Failure Handling

`sync_connection` never raises: every failure is classified, recorded on the
connection and reported in the returned `SyncSummary`.

- Authentication failures -> AuthError; the scheduler skips the connection
  until the user re-links it
- Anything else -> SyncError; retried one interval later

Cancellation of the calling task is the one exception that propagates.

Connections that are Paused, PendingAuth or Disconnected are not synced: the
summary reports the status and neither the provider nor the store is touched.

## Idempotence

An existing event is only written (and counted as updated) when a
provider-owned field actually changed, so applying the same provider state
twice leaves the store untouched.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Awaitable, Callable, TypeVar

import httpx
from googleapiclient.errors import HttpError

from family_sync.calendar.exceptions import ConnectionNotFound
from family_sync.calendar.recurrence import translate_recurrence
from family_sync.calendar.store import ConnectionRepository, EventRepository
from family_sync.config import Settings, get_settings
from family_sync.models.connection import (
    CalendarConnection,
    ConnectionStatus,
    ensure_utc,
    record_successful_sync,
    record_sync_failure,
    update_tokens,
    utc_now,
)
from family_sync.models.event import Event
from family_sync.providers.base import (
    AuthenticationError,
    ExternalCalendarEvent,
    ProviderError,
    SyncResult,
    TransientSyncError,
)
from family_sync.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_EVENT_DURATION = timedelta(hours=1)

_AUTH_MESSAGE_MARKERS = ("invalid_grant", "unauthorized", "unauthenticated")

# Statuses a pass may run in; Paused, PendingAuth and Disconnected are left alone
_SYNCABLE_STATUSES = frozenset(
    {ConnectionStatus.ACTIVE, ConnectionStatus.SYNC_ERROR, ConnectionStatus.AUTH_ERROR}
)


@dataclass
class SyncSummary:
    """Outcome of one sync pass for one connection."""

    connection_id: str
    family_id: str
    success: bool = False
    events_added: int = 0
    events_updated: int = 0
    events_deleted: int = 0
    duration: timedelta = field(default_factory=timedelta)
    error_message: str | None = None
    is_auth_error: bool = False
    started_at: datetime = field(default_factory=utc_now)

    @property
    def total_changes(self) -> int:
        return self.events_added + self.events_updated + self.events_deleted


def is_authentication_failure(error: BaseException) -> bool:
    """Classify a sync failure as an authentication problem.

    Authentication failures need the user to re-link the calendar; all
    other failures are retried on a later pass.
    """
    if isinstance(error, AuthenticationError):
        return True
    if isinstance(error, TransientSyncError):
        return False

    status = None
    if isinstance(error, ProviderError):
        status = error.status_code
    elif isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
    elif isinstance(error, HttpError):
        status = int(error.resp.status)
    if status == 401:
        return True

    message = str(error).lower()
    if any(marker in message for marker in _AUTH_MESSAGE_MARKERS):
        return True
    return "token" in message and "expired" in message


def _is_transient(error: BaseException) -> bool:
    return isinstance(
        error, (TransientSyncError, asyncio.TimeoutError, httpx.TransportError)
    )


class CalendarSyncService:
    """Runs sync passes for calendar connections.

    Example:
        ```python
        service = CalendarSyncService(connections, events, providers)

        summary = await service.sync_connection(connection)
        if not summary.success:
            print(summary.error_message)
        ```
    """

    def __init__(
        self,
        connections: ConnectionRepository,
        events: EventRepository,
        providers: ProviderRegistry,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize the sync service.

        Args:
            connections: Connection store
            events: Event store
            providers: Adapters by provider kind
            settings: Timeout and refresh margin source
            clock: Source of the current UTC time
        """
        settings = settings or get_settings()
        self._connections = connections
        self._events = events
        self._providers = providers
        self._clock = clock
        self._timeout = settings.provider_timeout_seconds
        self._refresh_margin = timedelta(minutes=settings.token_refresh_margin_minutes)

    async def sync_connection_by_id(self, connection_id: str) -> SyncSummary:
        """Load a connection and sync it.

        Raises:
            ConnectionNotFound: If the connection does not exist
        """
        connection = await self._connections.get(connection_id)
        if connection is None:
            raise ConnectionNotFound(connection_id)
        return await self.sync_connection(connection)

    async def sync_connection(self, connection: CalendarConnection) -> SyncSummary:
        """Run one sync pass for a connection.

        Args:
            connection: The connection as currently stored

        Returns:
            SyncSummary with change counts or the failure
        """
        started_at = self._clock()
        started = time.monotonic()
        summary = SyncSummary(
            connection_id=connection.id,
            family_id=connection.family_id,
            started_at=started_at,
        )

        if connection.status not in _SYNCABLE_STATUSES:
            logger.info(
                f"Skipping sync for connection {connection.id}: "
                f"status is {connection.status.value}"
            )
            summary.error_message = f"Connection is {connection.status.value}"
            summary.duration = timedelta(seconds=time.monotonic() - started)
            return summary

        try:
            provider = self._providers.get(connection.provider)
        except ProviderError as e:
            return await self._fail(connection, summary, started, e, is_auth_error=False)

        if connection.requires_oauth:
            if connection.tokens.expires_within(self._refresh_margin, started_at):
                logger.debug(f"Refreshing tokens for connection {connection.id}")
                try:
                    tokens = await self._call_provider(
                        provider.refresh_tokens(connection.tokens)
                    )
                except Exception as e:
                    return await self._fail(
                        connection, summary, started, e, is_auth_error=not _is_transient(e)
                    )

                try:
                    connection = await self._connections.update(
                        update_tokens(connection, tokens, now=self._clock())
                    )
                except Exception as e:
                    logger.exception(f"Could not store refreshed tokens for {connection.id}")
                    return await self._fail(connection, summary, started, e, is_auth_error=False)

        window_start, window_end = connection.policy.window(started_at)

        try:
            result = await self._call_provider(
                self._fetch(provider, connection, window_start, window_end)
            )
        except Exception as e:
            return await self._fail(connection, summary, started, e)

        try:
            await self._reconcile(connection, result, summary, window_start, window_end)
        except Exception as e:
            logger.exception(f"Error reconciling events for connection {connection.id}")
            return await self._fail(connection, summary, started, e, is_auth_error=False)

        cursor = result.cursor
        if cursor is None and not result.full_resync:
            cursor = connection.sync_cursor

        try:
            await self._connections.update(
                record_successful_sync(connection, now=self._clock(), cursor=cursor)
            )
        except Exception as e:
            logger.exception(f"Could not store sync state for connection {connection.id}")
            summary.error_message = f"Could not store sync state: {e}"
            summary.duration = timedelta(seconds=time.monotonic() - started)
            return summary

        summary.success = True
        summary.duration = timedelta(seconds=time.monotonic() - started)

        logger.info(
            f"Synced connection {connection.id} ({connection.provider.value}): "
            f"{summary.events_added} added, "
            f"{summary.events_updated} updated, "
            f"{summary.events_deleted} deleted"
        )
        return summary

    async def _call_provider(self, call: Awaitable[T]) -> T:
        return await asyncio.wait_for(call, timeout=self._timeout)

    async def _fetch(
        self,
        provider: Any,
        connection: CalendarConnection,
        window_start: datetime,
        window_end: datetime,
    ) -> SyncResult:
        if provider.requires_oauth:
            return await provider.fetch_changes(
                connection.tokens,
                connection.external_calendar_id,
                window_start,
                window_end,
                connection.sync_cursor,
            )
        return await provider.fetch_changes(
            connection.ics_url,
            window_start,
            window_end,
            connection.sync_cursor,
        )

    async def _fail(
        self,
        connection: CalendarConnection,
        summary: SyncSummary,
        started: float,
        error: BaseException,
        is_auth_error: bool | None = None,
    ) -> SyncSummary:
        """Record a failed pass on the connection and finish the summary."""
        if is_auth_error is None:
            is_auth_error = is_authentication_failure(error)
        if isinstance(error, asyncio.TimeoutError):
            message = f"Provider call timed out after {self._timeout:g}s"
        else:
            message = str(error) or type(error).__name__

        logger.warning(
            f"Sync failed for connection {connection.id} "
            f"({'auth' if is_auth_error else 'transient'}): {message}"
        )

        try:
            await self._connections.update(
                record_sync_failure(
                    connection,
                    now=self._clock(),
                    error=message,
                    is_auth_error=is_auth_error,
                )
            )
        except Exception:
            logger.exception(f"Could not record sync failure for connection {connection.id}")

        summary.success = False
        summary.error_message = message
        summary.is_auth_error = is_auth_error
        summary.duration = timedelta(seconds=time.monotonic() - started)
        return summary

    async def _reconcile(
        self,
        connection: CalendarConnection,
        result: SyncResult,
        summary: SyncSummary,
        window_start: datetime,
        window_end: datetime,
    ) -> None:
        family_id = connection.family_id
        calendar_key = connection.external_calendar_key

        for external_id in result.deleted_ids:
            existing = await self._events.get_by_external_id(family_id, calendar_key, external_id)
            if existing is not None:
                await self._events.delete(existing.id)
                summary.events_deleted += 1

        seen: set[str] = set()
        for external in result.events:
            seen.add(external.external_id)
            existing = await self._events.get_by_external_id(
                family_id, calendar_key, external.external_id
            )

            if external.is_cancelled or not self._should_import(connection, external):
                if existing is not None:
                    await self._events.delete(existing.id)
                    summary.events_deleted += 1
                continue

            try:
                candidate = self._build_event(connection, external, existing)
            except ValueError as e:
                logger.warning(
                    f"Skipping event {external.external_id} from connection "
                    f"{connection.id}: {e}"
                )
                continue

            if existing is None:
                await self._events.add(candidate)
                summary.events_added += 1
            elif candidate.synced_content() != existing.synced_content():
                await self._events.update(candidate)
                summary.events_updated += 1

        if result.full_snapshot or result.full_resync:
            for stored in await self._events.list_for_calendar(family_id, calendar_key):
                if stored.external_event_id in seen:
                    continue
                # A resync only covers the window; older and later events stay
                if result.full_snapshot or _starts_within(stored, window_start, window_end):
                    await self._events.delete(stored.id)
                    summary.events_deleted += 1

    def _should_import(
        self,
        connection: CalendarConnection,
        external: ExternalCalendarEvent,
    ) -> bool:
        """Check an event against the connection's import policy."""
        policy = connection.policy
        if external.is_all_day and not policy.import_all_day_events:
            return False
        if external.is_declined and not policy.import_declined_events:
            return False
        return True

    def _build_event(
        self,
        connection: CalendarConnection,
        external: ExternalCalendarEvent,
        existing: Event | None,
    ) -> Event:
        """Create a new Event, or the updated version of `existing`."""
        policy = connection.policy
        now = self._clock()

        content: dict[str, Any] = _timing(external)
        content.update(
            title=external.title,
            recurrence=translate_recurrence(external.recurrence_rule),
            recurring_event_id=external.recurring_event_id,
            is_cancelled=False,
        )

        if policy.sync_descriptions:
            content["description"] = external.description
        if policy.sync_locations:
            content["location"] = external.location
        if policy.sync_reminders:
            content["reminders"] = sorted(set(external.reminders))

        if existing is None:
            return Event(
                family_id=connection.family_id,
                source=connection.provider,
                external_calendar_id=connection.external_calendar_key,
                external_event_id=external.external_id,
                color=external.color or connection.color,
                assignee_ids=list(connection.assigned_member_ids),
                created_at=now,
                modified_at=now,
                **content,
            )

        content["color"] = external.color or existing.color
        data = existing.model_dump()
        data.update(content)
        data["modified_at"] = now
        return Event.model_validate(data)


def _timing(external: ExternalCalendarEvent) -> dict[str, Any]:
    """Normalized start/end fields for an external event.

    All-day events without a usable end last one day; timed events without
    an end last one hour.
    """
    if external.is_all_day:
        start_date = _as_date(external.start_date)
        if start_date is None:
            raise ValueError("All-day event has no start date")
        end_date = _as_date(external.end_date)
        if end_date is None or end_date <= start_date:
            end_date = start_date + timedelta(days=1)
        return {
            "is_all_day": True,
            "start_date": start_date,
            "end_date": end_date,
            "start_time": None,
            "end_time": None,
        }

    if external.start is None:
        raise ValueError("Timed event has no start time")
    start = ensure_utc(external.start)
    end = ensure_utc(external.end) if external.end is not None else start + DEFAULT_EVENT_DURATION
    if end < start:
        end = start
    return {
        "is_all_day": False,
        "start_date": None,
        "end_date": None,
        "start_time": start,
        "end_time": end,
    }


def _starts_within(event: Event, window_start: datetime, window_end: datetime) -> bool:
    if event.is_all_day:
        return window_start.date() <= event.start_date <= window_end.date()
    return window_start <= ensure_utc(event.start_time) <= window_end


def _as_date(value: date | None) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    return value
