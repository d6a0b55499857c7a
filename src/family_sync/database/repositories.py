"""SQLAlchemy implementations of the sync engine's stores.

Each operation runs in its own short session and transaction. OAuth tokens
are encrypted on the way in and decrypted on the way out; the rest of the
application only sees domain models.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from family_sync.calendar.exceptions import ConnectionNotFound
from family_sync.database.encryption import decrypt_token, encrypt_token
from family_sync.database.models import CalendarConnectionRecord, EventRecord
from family_sync.models.connection import (
    SCHEDULABLE_STATUSES,
    CalendarConnection,
    CalendarProviderKind,
    ConnectionStatus,
    OAuthTokens,
    SyncPolicy,
)
from family_sync.models.event import Event, RecurrenceRule

logger = logging.getLogger(__name__)

_ERROR_STATUSES = (ConnectionStatus.AUTH_ERROR.value, ConnectionStatus.SYNC_ERROR.value)


def _apply_connection(
    record: CalendarConnectionRecord, connection: CalendarConnection
) -> CalendarConnectionRecord:
    record.family_id = connection.family_id
    record.name = connection.name
    record.provider = connection.provider.value
    record.status = connection.status.value

    tokens = connection.tokens
    record.access_token_encrypted = encrypt_token(tokens.access_token) if tokens else None
    record.refresh_token_encrypted = encrypt_token(tokens.refresh_token) if tokens else None
    record.token_type = tokens.token_type if tokens else None
    record.token_expires_at = tokens.expires_at if tokens else None
    record.token_scope = tokens.scope if tokens else None

    record.ics_url = connection.ics_url
    record.external_calendar_id = connection.external_calendar_id
    record.external_account_id = connection.external_account_id
    record.sync_cursor = connection.sync_cursor

    record.sync_policy = connection.policy.model_dump(mode="json")
    record.color = connection.color
    record.assigned_member_ids = list(connection.assigned_member_ids)

    record.is_enabled = connection.is_enabled
    record.last_synced_at = connection.last_synced_at
    record.next_sync_at = connection.next_sync_at
    record.last_sync_error = connection.last_sync_error
    record.consecutive_failures = connection.consecutive_failures

    record.created_at = connection.created_at
    record.modified_at = connection.modified_at
    return record


def _connection_from_record(record: CalendarConnectionRecord) -> CalendarConnection:
    tokens = None
    if record.access_token_encrypted:
        tokens = OAuthTokens(
            access_token=decrypt_token(record.access_token_encrypted),
            refresh_token=decrypt_token(record.refresh_token_encrypted),
            token_type=record.token_type or "Bearer",
            expires_at=record.token_expires_at,
            scope=record.token_scope,
        )

    return CalendarConnection(
        id=record.id,
        family_id=record.family_id,
        name=record.name,
        provider=CalendarProviderKind(record.provider),
        status=ConnectionStatus(record.status),
        tokens=tokens,
        ics_url=record.ics_url,
        external_calendar_id=record.external_calendar_id,
        external_account_id=record.external_account_id,
        sync_cursor=record.sync_cursor,
        policy=SyncPolicy.model_validate(record.sync_policy or {}),
        color=record.color,
        assigned_member_ids=list(record.assigned_member_ids or []),
        is_enabled=record.is_enabled,
        last_synced_at=record.last_synced_at,
        next_sync_at=record.next_sync_at,
        last_sync_error=record.last_sync_error,
        consecutive_failures=record.consecutive_failures or 0,
        created_at=record.created_at,
        modified_at=record.modified_at,
    )


def _apply_event(record: EventRecord, event: Event) -> EventRecord:
    record.family_id = event.family_id
    record.title = event.title
    record.description = event.description
    record.location = event.location
    record.is_all_day = event.is_all_day
    record.start_date = event.start_date
    record.end_date = event.end_date
    record.start_time = event.start_time
    record.end_time = event.end_time
    record.source = event.source.value if event.source else None
    record.external_calendar_id = event.external_calendar_id
    record.external_event_id = event.external_event_id
    record.recurring_event_id = event.recurring_event_id
    record.recurrence = event.recurrence.model_dump(mode="json")
    record.reminders = list(event.reminders)
    record.color = event.color
    record.assignee_ids = list(event.assignee_ids)
    record.is_cancelled = event.is_cancelled
    record.created_at = event.created_at
    record.modified_at = event.modified_at
    return record


def _event_from_record(record: EventRecord) -> Event:
    return Event(
        id=record.id,
        family_id=record.family_id,
        title=record.title,
        description=record.description,
        location=record.location,
        is_all_day=record.is_all_day,
        start_date=record.start_date,
        end_date=record.end_date,
        start_time=record.start_time,
        end_time=record.end_time,
        source=CalendarProviderKind(record.source) if record.source else None,
        external_calendar_id=record.external_calendar_id,
        external_event_id=record.external_event_id,
        recurring_event_id=record.recurring_event_id,
        recurrence=RecurrenceRule.model_validate(record.recurrence or {}),
        reminders=list(record.reminders or []),
        color=record.color,
        assignee_ids=list(record.assignee_ids or []),
        is_cancelled=record.is_cancelled,
        created_at=record.created_at,
        modified_at=record.modified_at,
    )


class SqlConnectionRepository:
    """Connection store backed by the `calendar_connections` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, connection_id: str) -> CalendarConnection | None:
        async with self._session_factory() as session:
            record = await session.get(CalendarConnectionRecord, connection_id)
            return _connection_from_record(record) if record else None

    async def add(self, connection: CalendarConnection) -> CalendarConnection:
        async with self._session_factory() as session, session.begin():
            session.add(_apply_connection(CalendarConnectionRecord(id=connection.id), connection))
        return connection

    async def update(self, connection: CalendarConnection) -> CalendarConnection:
        """Replace the stored record.

        Raises:
            ConnectionNotFound: If the connection was deleted meanwhile
        """
        async with self._session_factory() as session, session.begin():
            record = await session.get(CalendarConnectionRecord, connection.id)
            if record is None:
                raise ConnectionNotFound(connection.id)
            _apply_connection(record, connection)
        return connection

    async def list_for_family(self, family_id: str) -> list[CalendarConnection]:
        stmt = (
            select(CalendarConnectionRecord)
            .where(CalendarConnectionRecord.family_id == family_id)
            .order_by(CalendarConnectionRecord.created_at.asc())
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_connection_from_record(record) for record in result.scalars().all()]

    async def get_due_for_sync(self, now: datetime, limit: int) -> list[CalendarConnection]:
        stmt = (
            select(CalendarConnectionRecord)
            .where(
                CalendarConnectionRecord.is_enabled.is_(True),
                CalendarConnectionRecord.status.in_([s.value for s in SCHEDULABLE_STATUSES]),
                CalendarConnectionRecord.next_sync_at.is_not(None),
                CalendarConnectionRecord.next_sync_at <= now,
            )
            .order_by(CalendarConnectionRecord.next_sync_at.asc())
            .limit(limit)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_connection_from_record(record) for record in result.scalars().all()]

    async def get_in_error_state(self) -> list[CalendarConnection]:
        stmt = (
            select(CalendarConnectionRecord)
            .where(CalendarConnectionRecord.status.in_(_ERROR_STATUSES))
            .order_by(CalendarConnectionRecord.modified_at.desc())
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_connection_from_record(record) for record in result.scalars().all()]


class SqlEventRepository:
    """Event store backed by the `events` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, event_id: str) -> Event | None:
        async with self._session_factory() as session:
            record = await session.get(EventRecord, event_id)
            return _event_from_record(record) if record else None

    async def get_by_external_id(
        self,
        family_id: str,
        external_calendar_id: str,
        external_event_id: str,
    ) -> Event | None:
        stmt = select(EventRecord).where(
            EventRecord.family_id == family_id,
            EventRecord.external_calendar_id == external_calendar_id,
            EventRecord.external_event_id == external_event_id,
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            record = result.scalar_one_or_none()
            return _event_from_record(record) if record else None

    async def list_for_calendar(
        self, family_id: str, external_calendar_id: str
    ) -> list[Event]:
        stmt = select(EventRecord).where(
            EventRecord.family_id == family_id,
            EventRecord.external_calendar_id == external_calendar_id,
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_event_from_record(record) for record in result.scalars().all()]

    async def add(self, event: Event) -> Event:
        async with self._session_factory() as session, session.begin():
            session.add(_apply_event(EventRecord(id=event.id), event))
        return event

    async def update(self, event: Event) -> Event:
        async with self._session_factory() as session, session.begin():
            record = await session.get(EventRecord, event.id)
            if record is None:
                logger.warning(f"Event {event.id} vanished before update, re-adding")
                record = EventRecord(id=event.id)
                session.add(record)
            _apply_event(record, event)
        return event

    async def delete(self, event_id: str) -> None:
        async with self._session_factory() as session, session.begin():
            await session.execute(delete(EventRecord).where(EventRecord.id == event_id))
