"""FastAPI dependencies for the sync services.

The provider registry and the scheduler live on `app.state` for the lifetime
of the application (the scheduler's in-flight set must survive between
requests). Repositories and services are cheap and built per request on top
of the shared session factory.

## Usage

```python
from fastapi import Depends
from family_sync.api.dependencies import get_connection_service

@router.post("/{connection_id}/sync")
async def sync(connection_id: str, service: ConnectionService = Depends(get_connection_service)):
    return await service.sync_now(connection_id)
```
"""

from __future__ import annotations

from fastapi import Depends, Request

from family_sync.calendar.connections import ConnectionService
from family_sync.calendar.scheduler import SyncScheduler
from family_sync.calendar.sync import CalendarSyncService
from family_sync.database.connection import get_session_factory
from family_sync.database.repositories import SqlConnectionRepository, SqlEventRepository
from family_sync.providers.registry import ProviderRegistry


def get_provider_registry(request: Request) -> ProviderRegistry:
    return request.app.state.providers


def get_sync_service(
    providers: ProviderRegistry = Depends(get_provider_registry),
) -> CalendarSyncService:
    session_factory = get_session_factory()
    return CalendarSyncService(
        SqlConnectionRepository(session_factory),
        SqlEventRepository(session_factory),
        providers,
    )


def get_connection_service(
    providers: ProviderRegistry = Depends(get_provider_registry),
    sync_service: CalendarSyncService = Depends(get_sync_service),
) -> ConnectionService:
    return ConnectionService(
        SqlConnectionRepository(get_session_factory()),
        providers,
        sync_service,
    )


def get_scheduler(request: Request) -> SyncScheduler:
    return request.app.state.scheduler
