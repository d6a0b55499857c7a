"""Operational routes.

Triggered by an external cron (or a platform scheduler) rather than by
users. They should not be exposed publicly.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from family_sync.api.dependencies import get_connection_service, get_scheduler
from family_sync.api.routes.connections import ConnectionResponse, SyncSummaryResponse
from family_sync.calendar.connections import ConnectionService
from family_sync.calendar.scheduler import SyncScheduler
from family_sync.config import get_settings

router = APIRouter()


class RunDueRequest(BaseModel):
    limit: int | None = Field(default=None, ge=1, le=1000)


class RunDueResponse(BaseModel):
    """Outcome of one scheduler pass."""

    attempted: int
    succeeded: int
    failed: int
    summaries: list[SyncSummaryResponse]


@router.post("/sync/run-due", response_model=RunDueResponse)
async def run_due(
    data: RunDueRequest | None = None,
    scheduler: SyncScheduler = Depends(get_scheduler),
) -> RunDueResponse:
    """Run one bounded pass over due connections."""
    limit = (data.limit if data else None) or get_settings().sync_batch_limit
    summaries = await scheduler.run_due_syncs(limit=limit)
    succeeded = sum(1 for s in summaries if s.success)

    return RunDueResponse(
        attempted=len(summaries),
        succeeded=succeeded,
        failed=len(summaries) - succeeded,
        summaries=[SyncSummaryResponse.from_summary(s) for s in summaries],
    )


@router.get("/sync/errors", response_model=list[ConnectionResponse])
async def connections_in_error(
    service: ConnectionService = Depends(get_connection_service),
) -> list[ConnectionResponse]:
    """Connections whose last pass failed, most recently changed first."""
    connections = await service.connections_in_error()
    return [ConnectionResponse.from_connection(c) for c in connections]
