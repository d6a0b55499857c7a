"""Sync scheduler.

Runs one bounded pass over the connections that are due: at most
`limit` connections, at most `max_concurrency` of them in flight at once.
The cadence of passes is external (a cron job calling `family-sync run-due`,
or the internal API trigger).

## Guarantees

- A failing connection never affects the others; each is isolated by the
  orchestrator, which reports failures as data
- A connection already being synced by this scheduler is not started twice
- When the cancel event is set, connections that have not started are
  skipped and stay due for the next pass; started ones run to completion
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable

from family_sync.calendar.store import ConnectionRepository
from family_sync.calendar.sync import CalendarSyncService, SyncSummary
from family_sync.models.connection import CalendarConnection, utc_now

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Syncs due connections concurrently.

    Example:
        ```python
        scheduler = SyncScheduler(connections, sync_service, max_concurrency=5)
        summaries = await scheduler.run_due_syncs(limit=50)
        ```
    """

    def __init__(
        self,
        connections: ConnectionRepository,
        sync_service: CalendarSyncService,
        max_concurrency: int = 5,
        clock: Callable[[], datetime] = utc_now,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self._connections = connections
        self._sync_service = sync_service
        self._max_concurrency = max_concurrency
        self._clock = clock
        self._in_flight: set[str] = set()

    @property
    def in_flight(self) -> frozenset[str]:
        return frozenset(self._in_flight)

    async def run_due_syncs(
        self,
        limit: int = 50,
        cancel_event: asyncio.Event | None = None,
    ) -> list[SyncSummary]:
        """Sync every due connection, up to `limit`.

        Args:
            limit: Maximum number of connections in this pass
            cancel_event: When set, no further connections are started

        Returns:
            Summaries for the connections that ran, in due order
        """
        due = await self._connections.get_due_for_sync(self._clock(), limit)
        if not due:
            logger.debug("No calendar connections due for sync")
            return []

        logger.info(f"Syncing {len(due)} due calendar connections")

        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def run_one(connection: CalendarConnection) -> SyncSummary | None:
            async with semaphore:
                if cancel_event is not None and cancel_event.is_set():
                    return None
                if connection.id in self._in_flight:
                    logger.debug(f"Connection {connection.id} already syncing, skipping")
                    return None
                self._in_flight.add(connection.id)
                try:
                    return await self._sync_service.sync_connection(connection)
                finally:
                    self._in_flight.discard(connection.id)

        results = await asyncio.gather(*(run_one(connection) for connection in due))
        summaries = [summary for summary in results if summary is not None]

        succeeded = sum(1 for summary in summaries if summary.success)
        failed = len(summaries) - succeeded
        skipped = len(due) - len(summaries)
        logger.info(
            f"Calendar sync pass complete: {succeeded} succeeded, "
            f"{failed} failed, {skipped} skipped"
        )
        return summaries
