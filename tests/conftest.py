"""Pytest fixtures for family calendar sync tests.

This module provides test fixtures that ensure:
1. No external API calls are made (Google, Microsoft Graph, ICS hosts)
2. No real database connections in unit tests
3. Isolated test environment with controlled configuration and a fixed clock
"""

import os
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

# Set test environment BEFORE importing application modules
# This ensures no real services are contacted during test collection
os.environ.setdefault("SECRET_KEY", "test-secret-key-at-least-32-characters-long")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-client-id")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("MICROSOFT_CLIENT_ID", "test-ms-client-id")
os.environ.setdefault("MICROSOFT_CLIENT_SECRET", "test-ms-client-secret")
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("DEBUG", "true")

from family_sync.calendar.exceptions import ConnectionNotFound
from family_sync.calendar.sync import CalendarSyncService
from family_sync.models.connection import (
    CalendarConnection,
    CalendarProviderKind,
    ConnectionStatus,
    OAuthTokens,
    SyncPolicy,
    new_ics_connection,
)
from family_sync.models.event import Event
from family_sync.providers.base import SyncResult
from family_sync.providers.registry import ProviderRegistry

NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)
FAMILY_ID = "family-1"


# =============================================================================
# Test Isolation Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def reset_settings_cache():
    """Reset settings cache before each test to ensure clean state."""
    from family_sync.config import get_settings
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class InMemoryConnectionRepository:
    """Connection store backed by a dict."""

    def __init__(self):
        self.items: dict[str, CalendarConnection] = {}
        self.update_count = 0

    async def get(self, connection_id):
        return self.items.get(connection_id)

    async def add(self, connection):
        self.items[connection.id] = connection
        return connection

    async def update(self, connection):
        if connection.id not in self.items:
            raise ConnectionNotFound(connection.id)
        self.items[connection.id] = connection
        self.update_count += 1
        return connection

    async def list_for_family(self, family_id):
        owned = [c for c in self.items.values() if c.family_id == family_id]
        return sorted(owned, key=lambda c: c.created_at)

    async def get_due_for_sync(self, now, limit):
        due = [c for c in self.items.values() if c.is_due(now)]
        due.sort(key=lambda c: c.next_sync_at)
        return due[:limit]

    async def get_in_error_state(self):
        errored = [
            c
            for c in self.items.values()
            if c.status in (ConnectionStatus.AUTH_ERROR, ConnectionStatus.SYNC_ERROR)
        ]
        return sorted(errored, key=lambda c: c.modified_at, reverse=True)


class InMemoryEventRepository:
    """Event store backed by a dict."""

    def __init__(self):
        self.items: dict[str, Event] = {}

    async def get_by_external_id(self, family_id, external_calendar_id, external_event_id):
        for event in self.items.values():
            if (
                event.family_id == family_id
                and event.external_calendar_id == external_calendar_id
                and event.external_event_id == external_event_id
            ):
                return event
        return None

    async def list_for_calendar(self, family_id, external_calendar_id):
        return [
            e
            for e in self.items.values()
            if e.family_id == family_id and e.external_calendar_id == external_calendar_id
        ]

    async def add(self, event):
        self.items[event.id] = event
        return event

    async def update(self, event):
        self.items[event.id] = event
        return event

    async def delete(self, event_id):
        self.items.pop(event_id, None)

    def by_external_id(self, external_event_id):
        for event in self.items.values():
            if event.external_event_id == external_event_id:
                return event
        return None


def make_oauth_provider(name: str = "google") -> MagicMock:
    """Mock OAuth adapter with async methods."""
    provider = MagicMock()
    provider.name = name
    provider.requires_oauth = True
    provider.fetch_changes = AsyncMock(return_value=SyncResult())
    provider.refresh_tokens = AsyncMock()
    provider.exchange_authorization_code = AsyncMock()
    provider.list_calendars = AsyncMock(return_value=[])
    provider.revoke_tokens = AsyncMock()
    provider.get_authorization_url = MagicMock(
        return_value="https://accounts.example.com/auth?state=test"
    )
    return provider


def make_ics_provider() -> MagicMock:
    """Mock ICS adapter."""
    provider = MagicMock()
    provider.name = "ics"
    provider.requires_oauth = False
    provider.fetch_changes = AsyncMock(return_value=SyncResult())
    provider.fetch_feed = AsyncMock(return_value=None)
    return provider


def make_tokens(expires_in: timedelta = timedelta(hours=1), **kwargs) -> OAuthTokens:
    values = {
        "access_token": "access-token",
        "refresh_token": "refresh-token",
        "expires_at": NOW + expires_in,
    }
    values.update(kwargs)
    return OAuthTokens(**values)


def make_oauth_connection(**kwargs) -> CalendarConnection:
    """Active Google connection, due now."""
    values = {
        "family_id": FAMILY_ID,
        "name": "Parent calendar",
        "provider": CalendarProviderKind.GOOGLE,
        "status": ConnectionStatus.ACTIVE,
        "tokens": make_tokens(),
        "external_calendar_id": "primary",
        "next_sync_at": NOW,
        "created_at": NOW - timedelta(days=1),
        "modified_at": NOW - timedelta(days=1),
    }
    values.update(kwargs)
    return CalendarConnection(**values)


def make_ics_connection(url: str = "https://example.com/school.ics", **kwargs) -> CalendarConnection:
    return new_ics_connection(
        FAMILY_ID,
        kwargs.pop("name", "School"),
        url,
        policy=kwargs.pop("policy", SyncPolicy.for_ics_subscription()),
        now=kwargs.pop("now", NOW),
        **kwargs,
    )


def make_stored_event(
    connection: CalendarConnection,
    external_event_id: str,
    title: str = "Stored event",
    start: datetime = NOW + timedelta(days=1),
    **kwargs,
) -> Event:
    values = {
        "family_id": connection.family_id,
        "title": title,
        "start_time": start,
        "end_time": start + timedelta(hours=1),
        "source": connection.provider,
        "external_calendar_id": connection.external_calendar_key,
        "external_event_id": external_event_id,
    }
    values.update(kwargs)
    return Event(**values)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def connection_repo() -> InMemoryConnectionRepository:
    return InMemoryConnectionRepository()


@pytest.fixture
def event_repo() -> InMemoryEventRepository:
    return InMemoryEventRepository()


@pytest.fixture
def google_provider() -> MagicMock:
    return make_oauth_provider("google")


@pytest.fixture
def ics_provider() -> MagicMock:
    return make_ics_provider()


@pytest.fixture
def registry(google_provider, ics_provider) -> ProviderRegistry:
    return ProviderRegistry(
        {
            CalendarProviderKind.GOOGLE: google_provider,
            CalendarProviderKind.ICS: ics_provider,
        }
    )


@pytest.fixture
def sync_service(connection_repo, event_repo, registry, clock) -> CalendarSyncService:
    return CalendarSyncService(connection_repo, event_repo, registry, clock=clock)
