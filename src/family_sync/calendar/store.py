"""Persistence contracts used by the sync engine.

The engine only depends on these protocols. `family_sync.database` provides
the SQLAlchemy implementation; tests use in-memory versions.

Updates replace the whole record (last writer wins). Event writes are not
grouped with the connection write in one transaction, so a pass interrupted
midway may leave some events applied; reconciliation is idempotent and the
next pass converges.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol, runtime_checkable

from family_sync.models.connection import CalendarConnection
from family_sync.models.event import Event


@runtime_checkable
class ConnectionRepository(Protocol):
    """Storage for calendar connections."""

    async def get(self, connection_id: str) -> CalendarConnection | None: ...

    async def add(self, connection: CalendarConnection) -> CalendarConnection: ...

    async def update(self, connection: CalendarConnection) -> CalendarConnection: ...

    async def list_for_family(self, family_id: str) -> list[CalendarConnection]:
        """All connections of a family, oldest first."""
        ...

    async def get_due_for_sync(
        self, now: datetime, limit: int
    ) -> list[CalendarConnection]:
        """Enabled Active/SyncError connections with `next_sync_at <= now`.

        Most overdue first, at most `limit` records.
        """
        ...

    async def get_in_error_state(self) -> list[CalendarConnection]:
        """Connections in AuthError or SyncError, most recently changed first."""
        ...


@runtime_checkable
class EventRepository(Protocol):
    """Storage for family events."""

    async def get_by_external_id(
        self,
        family_id: str,
        external_calendar_id: str,
        external_event_id: str,
    ) -> Event | None: ...

    async def list_for_calendar(
        self, family_id: str, external_calendar_id: str
    ) -> list[Event]: ...

    async def add(self, event: Event) -> Event: ...

    async def update(self, event: Event) -> Event: ...

    async def delete(self, event_id: str) -> None: ...
