"""Connection lifecycle operations.

Entry points used by the API and CLI around the sync engine:

- Creating OAuth connections and ICS subscriptions
- The OAuth flow: authorization URL, then code exchange and calendar binding
- Validating an ICS URL before subscribing (nothing is persisted)
- Manual "sync now"
- Listing a family's connections and changing their settings
- Pause / resume / disconnect
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, TypeVar

import httpx

from family_sync.calendar.exceptions import (
    ConnectionNotFound,
    InvalidOAuthState,
    NoCalendarsAvailable,
)
from family_sync.calendar.store import ConnectionRepository
from family_sync.calendar.sync import CalendarSyncService, SyncSummary
from family_sync.config import Settings, get_settings
from family_sync.models import connection as transitions
from family_sync.models.connection import (
    CalendarConnection,
    CalendarProviderKind,
    InvalidIcsUrlError,
    SyncPolicy,
    normalize_ics_url,
    utc_now,
)
from family_sync.providers.base import OAuthCalendarProvider, ProviderError
from family_sync.providers.ics import IcsCalendarProvider
from family_sync.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")

_STATE_SEPARATOR = ":"


@dataclass
class IcsValidationResult:
    """Outcome of probing an ICS URL."""

    is_valid: bool
    calendar_name: str | None = None
    event_count: int = 0
    error: str | None = None


def build_oauth_state(connection_id: str, family_id: str) -> str:
    """State parameter carried through the OAuth redirect."""
    return f"{connection_id}{_STATE_SEPARATOR}{family_id}"


def parse_oauth_state(state: str) -> tuple[str, str]:
    """Split an OAuth state into (connection id, family id).

    Raises:
        InvalidOAuthState: If the state is not in the expected form
    """
    connection_id, sep, family_id = (state or "").partition(_STATE_SEPARATOR)
    if not sep or not connection_id or not family_id:
        raise InvalidOAuthState(f"Invalid OAuth state: {state!r}")
    return connection_id, family_id


class ConnectionService:
    """Operations on calendar connections.

    Example:
        ```python
        service = ConnectionService(connections, providers, sync_service)

        connection = await service.create_oauth_connection(
            family_id, CalendarProviderKind.GOOGLE, "Mum's calendar"
        )
        url = await service.authorization_url_for(connection.id)
        # ... user consents, provider redirects back with ?code=...&state=...
        connection = await service.complete_oauth(connection.id, code, state)
        ```
    """

    def __init__(
        self,
        connections: ConnectionRepository,
        providers: ProviderRegistry,
        sync_service: CalendarSyncService,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._connections = connections
        self._providers = providers
        self._sync_service = sync_service
        self._settings = settings or get_settings()
        self._clock = clock

    async def _call_provider(self, call: Awaitable[T]) -> T:
        return await asyncio.wait_for(call, timeout=self._settings.provider_timeout_seconds)

    def default_policy(self, provider: CalendarProviderKind) -> SyncPolicy:
        """Sync policy for new connections, from settings."""
        settings = self._settings
        if provider is CalendarProviderKind.ICS:
            return SyncPolicy.for_ics_subscription(
                sync_interval_minutes=settings.ics_sync_interval_minutes,
                sync_past_days=settings.default_sync_past_days,
                sync_future_days=settings.ics_sync_future_days,
            )
        return SyncPolicy(
            sync_interval_minutes=settings.default_sync_interval_minutes,
            sync_past_days=settings.default_sync_past_days,
            sync_future_days=settings.default_sync_future_days,
        )

    async def get_connection(self, connection_id: str) -> CalendarConnection:
        """Load a connection.

        Raises:
            ConnectionNotFound: If the connection does not exist
        """
        connection = await self._connections.get(connection_id)
        if connection is None:
            raise ConnectionNotFound(connection_id)
        return connection

    async def list_for_family(self, family_id: str) -> list[CalendarConnection]:
        return await self._connections.list_for_family(family_id)

    async def create_oauth_connection(
        self,
        family_id: str,
        provider: CalendarProviderKind,
        name: str,
        *,
        color: str | None = None,
        assigned_member_ids: list[str] | None = None,
    ) -> CalendarConnection:
        connection = transitions.new_oauth_connection(
            family_id,
            provider,
            name,
            policy=self.default_policy(provider),
            color=color,
            assigned_member_ids=assigned_member_ids,
            now=self._clock(),
        )
        return await self._connections.add(connection)

    async def create_ics_connection(
        self,
        family_id: str,
        name: str,
        url: str,
        *,
        color: str | None = None,
        assigned_member_ids: list[str] | None = None,
    ) -> CalendarConnection:
        """Subscribe to an ICS feed.

        Raises:
            InvalidIcsUrlError: If the URL is not an http(s)/webcal URL
        """
        connection = transitions.new_ics_connection(
            family_id,
            name,
            url,
            policy=self.default_policy(CalendarProviderKind.ICS),
            color=color,
            assigned_member_ids=assigned_member_ids,
            now=self._clock(),
        )
        return await self._connections.add(connection)

    def _oauth_provider(self, kind: CalendarProviderKind) -> OAuthCalendarProvider:
        if not kind.requires_oauth:
            raise ValueError(f"Provider {kind.value} does not use OAuth")
        return self._providers.get(kind)

    def get_authorization_url(
        self,
        provider: CalendarProviderKind,
        state: str,
        redirect_uri: str | None = None,
    ) -> str:
        """Consent URL for a provider.

        Raises:
            ProviderNotConfiguredError: If the provider has no client credentials
        """
        return self._oauth_provider(provider).get_authorization_url(
            state, redirect_uri or self._settings.oauth_redirect_uri
        )

    async def authorization_url_for(
        self, connection_id: str, redirect_uri: str | None = None
    ) -> str:
        """Consent URL for a stored connection, with the state filled in."""
        connection = await self.get_connection(connection_id)
        return self.get_authorization_url(
            connection.provider,
            build_oauth_state(connection.id, connection.family_id),
            redirect_uri,
        )

    async def complete_oauth(
        self,
        connection_id: str,
        code: str,
        state: str,
        redirect_uri: str | None = None,
    ) -> CalendarConnection:
        """Finish the OAuth flow for a connection.

        Checks the state returned with the code, exchanges the code, binds
        the account's primary calendar (or the first one listed) and makes
        the connection due immediately.

        Raises:
            ConnectionNotFound: If the connection does not exist
            InvalidOAuthState: If the state was not issued for this connection
            asyncio.TimeoutError: If the provider does not answer in time
            AuthExchangeError: If the code is rejected
            NoCalendarsAvailable: If the account has no calendars; the
                connection stays in PendingAuth
        """
        connection = await self.get_connection(connection_id)
        if parse_oauth_state(state) != (connection.id, connection.family_id):
            raise InvalidOAuthState("OAuth state does not match the connection")
        provider = self._oauth_provider(connection.provider)

        tokens = await self._call_provider(
            provider.exchange_authorization_code(
                code, redirect_uri or self._settings.oauth_redirect_uri
            )
        )
        calendars = await self._call_provider(provider.list_calendars(tokens))
        if not calendars:
            raise NoCalendarsAvailable(provider.name)

        calendar = next((c for c in calendars if c.is_primary), calendars[0])
        connection = transitions.complete_oauth(
            connection,
            tokens,
            calendar.id,
            calendar_name=calendar.name,
            calendar_color=calendar.color,
            now=self._clock(),
        )
        connection = await self._connections.update(connection)

        logger.info(
            f"Connected {connection.provider.value} calendar {calendar.id} "
            f"for family {connection.family_id}"
        )
        return connection

    async def validate_ics_url(self, url: str) -> IcsValidationResult:
        """Fetch and parse a feed without subscribing to it."""
        try:
            url = normalize_ics_url(url)
        except InvalidIcsUrlError as e:
            return IcsValidationResult(is_valid=False, error=str(e))

        provider: IcsCalendarProvider = self._providers.get(CalendarProviderKind.ICS)
        try:
            feed = await self._call_provider(provider.fetch_feed(url))
        except ProviderError as e:
            if e.status_code is not None and e.status_code >= 400:
                return IcsValidationResult(
                    is_valid=False,
                    error=f"Failed to fetch calendar: HTTP {e.status_code}",
                )
            return IcsValidationResult(is_valid=False, error=str(e))
        except asyncio.TimeoutError:
            return IcsValidationResult(is_valid=False, error="Network error: timed out")
        except httpx.HTTPError as e:
            return IcsValidationResult(is_valid=False, error=f"Network error: {e}")

        if feed is None:
            return IcsValidationResult(is_valid=False, error="Calendar returned no content")

        name = feed.calendar_name or _organizer_name(feed.events)
        return IcsValidationResult(
            is_valid=True,
            calendar_name=name,
            event_count=len(feed.events),
        )

    async def sync_now(self, connection_id: str) -> SyncSummary:
        """Run a sync pass immediately.

        Raises:
            ConnectionNotFound: If the connection does not exist
        """
        return await self._sync_service.sync_connection_by_id(connection_id)

    async def update(
        self,
        connection_id: str,
        *,
        name: str | None = None,
        color: str | None = None,
        assigned_member_ids: list[str] | None = None,
        is_enabled: bool | None = None,
        policy: SyncPolicy | None = None,
    ) -> CalendarConnection:
        """Change a connection's settings.

        `is_enabled=False` pauses the connection and `True` resumes a paused
        one. Omitted values are left unchanged.

        Raises:
            ConnectionNotFound: If the connection does not exist
            ValueError: If the connection is disconnected, or cannot be
                resumed because it was never authorized
        """
        connection = await self.get_connection(connection_id)
        now = self._clock()

        connection = transitions.update_settings(
            connection,
            name=name,
            color=color,
            assigned_member_ids=assigned_member_ids,
            policy=policy,
            now=now,
        )
        if is_enabled is False and connection.is_enabled:
            connection = transitions.pause(connection, now)
        elif is_enabled is True and not connection.is_enabled:
            connection = transitions.resume(connection, now)

        return await self._connections.update(connection)

    async def pause(self, connection_id: str) -> CalendarConnection:
        connection = await self.get_connection(connection_id)
        return await self._connections.update(transitions.pause(connection, self._clock()))

    async def resume(self, connection_id: str) -> CalendarConnection:
        connection = await self.get_connection(connection_id)
        return await self._connections.update(transitions.resume(connection, self._clock()))

    async def disconnect(self, connection_id: str) -> CalendarConnection:
        """Disconnect for good, revoking OAuth tokens where possible."""
        connection = await self.get_connection(connection_id)

        if connection.tokens is not None and connection.provider in self._providers:
            provider = self._providers.get(connection.provider)
            try:
                await provider.revoke_tokens(connection.tokens)
            except (ProviderError, httpx.HTTPError) as e:
                logger.warning(f"Token revocation failed for {connection.id}: {e}")

        connection = await self._connections.update(
            transitions.disconnect(connection, self._clock())
        )
        logger.info(f"Disconnected calendar connection {connection.id}")
        return connection

    async def connections_in_error(self) -> list[CalendarConnection]:
        return await self._connections.get_in_error_state()


def _organizer_name(events: list[Any]) -> str | None:
    for event in events:
        email = getattr(event, "organizer_email", None)
        if email:
            return email.split("@", 1)[0]
    return None
