"""Calendar connection routes.

Family-scoped management of external calendar connections: subscribing to
ICS feeds, the OAuth flow for Google and Microsoft, manual sync, and the
pause / resume / disconnect lifecycle. Listing and settings updates are
family-scoped like everything else.
"""

from __future__ import annotations

import asyncio
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from family_sync.api.dependencies import get_connection_service
from family_sync.calendar.connections import ConnectionService
from family_sync.calendar.exceptions import ConnectionNotFound, NoCalendarsAvailable
from family_sync.calendar.sync import SyncSummary
from family_sync.models.connection import (
    CalendarConnection,
    CalendarProviderKind,
    InvalidIcsUrlError,
    SyncPolicy,
)
from family_sync.providers.base import AuthExchangeError, ProviderError, ProviderNotConfiguredError

router = APIRouter()


class ConnectionResponse(BaseModel):
    """Calendar connection, without credentials."""

    id: str
    family_id: str
    name: str
    provider: CalendarProviderKind
    status: str
    ics_url: str | None
    external_calendar_id: str | None
    color: str | None
    assigned_member_ids: list[str]
    policy: SyncPolicy
    is_enabled: bool
    last_synced_at: datetime | None
    next_sync_at: datetime | None
    last_sync_error: str | None
    consecutive_failures: int

    @classmethod
    def from_connection(cls, connection: CalendarConnection) -> ConnectionResponse:
        return cls(
            id=connection.id,
            family_id=connection.family_id,
            name=connection.name,
            provider=connection.provider,
            status=connection.status.value,
            ics_url=connection.ics_url,
            external_calendar_id=connection.external_calendar_id,
            color=connection.color,
            assigned_member_ids=connection.assigned_member_ids,
            policy=connection.policy,
            is_enabled=connection.is_enabled,
            last_synced_at=connection.last_synced_at,
            next_sync_at=connection.next_sync_at,
            last_sync_error=connection.last_sync_error,
            consecutive_failures=connection.consecutive_failures,
        )


class OAuthConnectionCreate(BaseModel):
    """Start linking a Google or Microsoft calendar."""

    provider: CalendarProviderKind
    name: str = Field(min_length=1, max_length=255)
    color: str | None = None
    assigned_member_ids: list[str] = Field(default_factory=list)


class IcsConnectionCreate(BaseModel):
    """Subscribe to an ICS feed."""

    name: str = Field(min_length=1, max_length=255)
    url: str
    color: str | None = None
    assigned_member_ids: list[str] = Field(default_factory=list)


class IcsValidateRequest(BaseModel):
    url: str


class IcsValidateResponse(BaseModel):
    is_valid: bool
    calendar_name: str | None
    event_count: int
    error: str | None


class ConnectionUpdate(BaseModel):
    """Update connection settings request. Omitted fields are unchanged."""

    name: str | None = Field(default=None, min_length=1, max_length=100)
    color: str | None = Field(default=None, pattern="^#[0-9A-Fa-f]{6}$")
    assigned_member_ids: list[str] | None = None
    is_enabled: bool | None = None
    policy: SyncPolicy | None = None


class AuthorizeResponse(BaseModel):
    authorization_url: str


class OAuthCompleteRequest(BaseModel):
    """Authorization code returned to the redirect URI."""

    code: str = Field(min_length=1)
    state: str = Field(min_length=1)
    redirect_uri: str | None = None


class SyncSummaryResponse(BaseModel):
    """Sync result response."""

    connection_id: str
    success: bool
    events_added: int
    events_updated: int
    events_deleted: int
    duration_seconds: float
    error_message: str | None
    is_auth_error: bool
    started_at: datetime

    @classmethod
    def from_summary(cls, summary: SyncSummary) -> SyncSummaryResponse:
        return cls(
            connection_id=summary.connection_id,
            success=summary.success,
            events_added=summary.events_added,
            events_updated=summary.events_updated,
            events_deleted=summary.events_deleted,
            duration_seconds=summary.duration.total_seconds(),
            error_message=summary.error_message,
            is_auth_error=summary.is_auth_error,
            started_at=summary.started_at,
        )


async def _load_for_family(
    service: ConnectionService, family_id: str, connection_id: str
) -> CalendarConnection:
    """Load a connection, hiding other families' connections as missing."""
    try:
        connection = await service.get_connection(connection_id)
    except ConnectionNotFound:
        connection = None

    if connection is None or connection.family_id != family_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Calendar connection not found",
        )
    return connection


@router.get("/", response_model=list[ConnectionResponse])
async def list_connections(
    family_id: str,
    service: ConnectionService = Depends(get_connection_service),
) -> list[ConnectionResponse]:
    """All of the family's calendar connections."""
    connections = await service.list_for_family(family_id)
    return [ConnectionResponse.from_connection(c) for c in connections]


@router.post("/oauth", response_model=ConnectionResponse, status_code=status.HTTP_201_CREATED)
async def create_oauth_connection(
    family_id: str,
    data: OAuthConnectionCreate,
    service: ConnectionService = Depends(get_connection_service),
) -> ConnectionResponse:
    """Create a connection awaiting authorization."""
    if not data.provider.requires_oauth:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Use the ICS endpoint for calendar subscriptions",
        )

    connection = await service.create_oauth_connection(
        family_id,
        data.provider,
        data.name,
        color=data.color,
        assigned_member_ids=data.assigned_member_ids,
    )
    return ConnectionResponse.from_connection(connection)


@router.post("/ics", response_model=ConnectionResponse, status_code=status.HTTP_201_CREATED)
async def create_ics_connection(
    family_id: str,
    data: IcsConnectionCreate,
    service: ConnectionService = Depends(get_connection_service),
) -> ConnectionResponse:
    """Subscribe to an ICS feed. It is synced on the next scheduler pass."""
    try:
        connection = await service.create_ics_connection(
            family_id,
            data.name,
            data.url,
            color=data.color,
            assigned_member_ids=data.assigned_member_ids,
        )
    except InvalidIcsUrlError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return ConnectionResponse.from_connection(connection)


@router.post("/ics/validate", response_model=IcsValidateResponse)
async def validate_ics(
    family_id: str,
    data: IcsValidateRequest,
    service: ConnectionService = Depends(get_connection_service),
) -> IcsValidateResponse:
    """Check that a URL serves a readable calendar. Nothing is stored."""
    result = await service.validate_ics_url(data.url)
    return IcsValidateResponse(
        is_valid=result.is_valid,
        calendar_name=result.calendar_name,
        event_count=result.event_count,
        error=result.error,
    )


@router.get("/{connection_id}", response_model=ConnectionResponse)
async def get_connection(
    family_id: str,
    connection_id: str,
    service: ConnectionService = Depends(get_connection_service),
) -> ConnectionResponse:
    connection = await _load_for_family(service, family_id, connection_id)
    return ConnectionResponse.from_connection(connection)


@router.put("/{connection_id}", response_model=ConnectionResponse)
async def update_connection(
    family_id: str,
    connection_id: str,
    data: ConnectionUpdate,
    service: ConnectionService = Depends(get_connection_service),
) -> ConnectionResponse:
    """Rename, recolour, reassign, enable/disable or change sync settings."""
    await _load_for_family(service, family_id, connection_id)

    try:
        connection = await service.update(
            connection_id,
            name=data.name,
            color=data.color,
            assigned_member_ids=data.assigned_member_ids,
            is_enabled=data.is_enabled,
            policy=data.policy,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    return ConnectionResponse.from_connection(connection)


@router.get("/{connection_id}/oauth/authorize", response_model=AuthorizeResponse)
async def authorize(
    family_id: str,
    connection_id: str,
    redirect_uri: str | None = None,
    service: ConnectionService = Depends(get_connection_service),
) -> AuthorizeResponse:
    """Consent URL to send the user to."""
    await _load_for_family(service, family_id, connection_id)

    try:
        url = await service.authorization_url_for(connection_id, redirect_uri)
    except ProviderNotConfiguredError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return AuthorizeResponse(authorization_url=url)


@router.post("/{connection_id}/oauth/complete", response_model=ConnectionResponse)
async def complete_oauth(
    family_id: str,
    connection_id: str,
    data: OAuthCompleteRequest,
    service: ConnectionService = Depends(get_connection_service),
) -> ConnectionResponse:
    """Exchange the authorization code and bind the account's calendar."""
    await _load_for_family(service, family_id, connection_id)

    try:
        connection = await service.complete_oauth(
            connection_id, data.code, data.state, data.redirect_uri
        )
    except AuthExchangeError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except NoCalendarsAvailable as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    except ProviderNotConfiguredError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    except ProviderError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Calendar provider error: {e}",
        )
    except asyncio.TimeoutError:
        raise HTTPException(
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            detail="Calendar provider did not respond in time",
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return ConnectionResponse.from_connection(connection)


@router.post("/{connection_id}/sync", response_model=SyncSummaryResponse)
async def sync_now(
    family_id: str,
    connection_id: str,
    service: ConnectionService = Depends(get_connection_service),
) -> SyncSummaryResponse:
    """Manually trigger a sync. Failures are reported in the summary."""
    await _load_for_family(service, family_id, connection_id)
    summary = await service.sync_now(connection_id)
    return SyncSummaryResponse.from_summary(summary)


@router.post("/{connection_id}/pause", response_model=ConnectionResponse)
async def pause(
    family_id: str,
    connection_id: str,
    service: ConnectionService = Depends(get_connection_service),
) -> ConnectionResponse:
    await _load_for_family(service, family_id, connection_id)
    try:
        connection = await service.pause(connection_id)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return ConnectionResponse.from_connection(connection)


@router.post("/{connection_id}/resume", response_model=ConnectionResponse)
async def resume(
    family_id: str,
    connection_id: str,
    service: ConnectionService = Depends(get_connection_service),
) -> ConnectionResponse:
    await _load_for_family(service, family_id, connection_id)
    try:
        connection = await service.resume(connection_id)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return ConnectionResponse.from_connection(connection)


@router.delete("/{connection_id}", status_code=status.HTTP_204_NO_CONTENT)
async def disconnect(
    family_id: str,
    connection_id: str,
    service: ConnectionService = Depends(get_connection_service),
) -> None:
    """Disconnect the calendar and revoke its credentials."""
    await _load_for_family(service, family_id, connection_id)
    await service.disconnect(connection_id)
