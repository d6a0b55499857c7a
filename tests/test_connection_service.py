"""Tests for connection lifecycle operations."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import httpx
import pytest

from conftest import FAMILY_ID, NOW, make_ics_connection, make_oauth_connection, make_tokens
from family_sync.calendar.connections import (
    ConnectionService,
    build_oauth_state,
    parse_oauth_state,
)
from family_sync.calendar.exceptions import (
    ConnectionNotFound,
    InvalidOAuthState,
    NoCalendarsAvailable,
)
from family_sync.config import get_settings
from family_sync.models.connection import (
    CalendarProviderKind,
    ConnectionStatus,
    InvalidIcsUrlError,
    SyncPolicy,
)
from family_sync.providers.base import (
    AuthExchangeError,
    CalendarSummary,
    SyncResult,
    TransientSyncError,
)
from family_sync.providers.ics import IcsCalendarProvider
from family_sync.providers.registry import ProviderRegistry

FEED = "\r\n".join(
    [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//Example//EN",
        "BEGIN:VEVENT",
        "UID:a@example.com",
        "DTSTART:20240615T090000Z",
        "SUMMARY:Training",
        "ORGANIZER:mailto:fixtures@club.example.com",
        "END:VEVENT",
        "BEGIN:VEVENT",
        "UID:b@example.com",
        "DTSTART:20240622T090000Z",
        "SUMMARY:Match",
        "END:VEVENT",
        "END:VCALENDAR",
        "",
    ]
).encode("utf-8")


@pytest.fixture
def service(connection_repo, registry, sync_service, clock) -> ConnectionService:
    return ConnectionService(connection_repo, registry, sync_service, clock=clock)


def state_for(connection) -> str:
    return build_oauth_state(connection.id, connection.family_id)


def service_with_feed(handler, connection_repo, sync_service) -> ConnectionService:
    """Connection service whose ICS adapter talks to a mock transport."""
    ics = IcsCalendarProvider(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    registry = ProviderRegistry({CalendarProviderKind.ICS: ics})
    return ConnectionService(connection_repo, registry, sync_service)


class TestOAuthState:
    def test_round_trip(self):
        state = build_oauth_state("conn-1", FAMILY_ID)
        assert parse_oauth_state(state) == ("conn-1", FAMILY_ID)

    @pytest.mark.parametrize("state", ["", "conn-1", ":family-1", "conn-1:"])
    def test_invalid(self, state):
        with pytest.raises(InvalidOAuthState):
            parse_oauth_state(state)


class TestCreate:
    """Tests for creating connections."""

    async def test_oauth_connection_pending(self, service, connection_repo):
        connection = await service.create_oauth_connection(
            FAMILY_ID, CalendarProviderKind.GOOGLE, "Mum", color="#00ff00"
        )

        assert connection.status is ConnectionStatus.PENDING_AUTH
        assert connection.next_sync_at is None
        assert connection.color == "#00ff00"
        assert connection.policy.sync_interval_minutes == 15
        assert connection_repo.items[connection.id] == connection

    async def test_ics_connection_normalised_and_due(self, service):
        """Test webcal URLs are rewritten and the feed is due at once."""
        connection = await service.create_ics_connection(
            FAMILY_ID, "School", "webcal://school.example.com/cal.ics", assigned_member_ids=["kid-1"]
        )

        assert connection.status is ConnectionStatus.ACTIVE
        assert connection.ics_url == "https://school.example.com/cal.ics"
        assert connection.next_sync_at == NOW
        assert connection.assigned_member_ids == ["kid-1"]
        assert connection.policy.sync_interval_minutes == 60
        assert connection.policy.sync_future_days == 180

    async def test_ics_connection_invalid_url(self, service, connection_repo):
        with pytest.raises(InvalidIcsUrlError):
            await service.create_ics_connection(FAMILY_ID, "Bad", "ftp://example.com/cal.ics")
        assert connection_repo.items == {}

    async def test_ics_is_not_oauth(self, service):
        with pytest.raises(ValueError):
            await service.create_oauth_connection(FAMILY_ID, CalendarProviderKind.ICS, "Feed")


class TestOAuthFlow:
    """Tests for the authorization URL and code exchange."""

    async def test_authorization_url_default_redirect(self, service, google_provider, connection_repo):
        connection = await service.create_oauth_connection(FAMILY_ID, CalendarProviderKind.GOOGLE, "Mum")

        url = await service.authorization_url_for(connection.id)

        assert url == "https://accounts.example.com/auth?state=test"
        google_provider.get_authorization_url.assert_called_once_with(
            f"{connection.id}:{FAMILY_ID}", "http://localhost:8000/oauth/callback"
        )

    async def test_complete_binds_primary_calendar(self, service, google_provider, connection_repo):
        """Test the primary calendar is chosen and the connection is due now."""
        connection = await service.create_oauth_connection(FAMILY_ID, CalendarProviderKind.GOOGLE, "Mum")
        tokens = make_tokens()
        google_provider.exchange_authorization_code.return_value = tokens
        google_provider.list_calendars.return_value = [
            CalendarSummary(id="holidays", name="Holidays", is_read_only=True),
            CalendarSummary(id="mum@example.com", name="Mum's calendar", color="#9fe1e7", is_primary=True),
        ]

        completed = await service.complete_oauth(
            connection.id, "auth-code", state_for(connection), "https://app.example.com/cb"
        )

        google_provider.exchange_authorization_code.assert_awaited_once_with(
            "auth-code", "https://app.example.com/cb"
        )
        assert completed.status is ConnectionStatus.ACTIVE
        assert completed.external_calendar_id == "mum@example.com"
        assert completed.name == "Mum's calendar"
        assert completed.color == "#9fe1e7"
        assert completed.tokens == tokens
        assert completed.next_sync_at == NOW
        assert connection_repo.items[connection.id].status is ConnectionStatus.ACTIVE

    async def test_complete_falls_back_to_first_calendar(self, service, google_provider):
        connection = await service.create_oauth_connection(FAMILY_ID, CalendarProviderKind.GOOGLE, "Mum")
        google_provider.exchange_authorization_code.return_value = make_tokens()
        google_provider.list_calendars.return_value = [CalendarSummary(id="only", name="Only")]

        completed = await service.complete_oauth(connection.id, "code", state_for(connection))

        assert completed.external_calendar_id == "only"

    async def test_no_calendars_leaves_pending(self, service, google_provider, connection_repo):
        connection = await service.create_oauth_connection(FAMILY_ID, CalendarProviderKind.GOOGLE, "Mum")
        google_provider.exchange_authorization_code.return_value = make_tokens()
        google_provider.list_calendars.return_value = []

        with pytest.raises(NoCalendarsAvailable):
            await service.complete_oauth(connection.id, "code", state_for(connection))

        assert connection_repo.items[connection.id].status is ConnectionStatus.PENDING_AUTH
        assert connection_repo.items[connection.id].tokens is None

    async def test_rejected_code_propagates(self, service, google_provider, connection_repo):
        connection = await service.create_oauth_connection(FAMILY_ID, CalendarProviderKind.GOOGLE, "Mum")
        google_provider.exchange_authorization_code.side_effect = AuthExchangeError(
            "google token request rejected: HTTP 400", provider="google", status_code=400
        )

        with pytest.raises(AuthExchangeError):
            await service.complete_oauth(connection.id, "bad-code", state_for(connection))

        assert connection_repo.items[connection.id].status is ConnectionStatus.PENDING_AUTH

    @pytest.mark.parametrize(
        "state",
        ["other-connection:family-1", "{id}:family-2", "garbage"],
        ids=["other-connection", "other-family", "malformed"],
    )
    async def test_state_must_match_connection(
        self, state, service, google_provider, connection_repo
    ):
        """Test a callback carrying another connection's state is refused."""
        connection = await service.create_oauth_connection(FAMILY_ID, CalendarProviderKind.GOOGLE, "Mum")

        with pytest.raises(InvalidOAuthState):
            await service.complete_oauth(connection.id, "code", state.format(id=connection.id))

        google_provider.exchange_authorization_code.assert_not_awaited()
        assert connection_repo.items[connection.id].status is ConnectionStatus.PENDING_AUTH

    async def test_slow_provider_times_out(
        self, connection_repo, registry, sync_service, google_provider, clock
    ):
        """Test the code exchange is bounded by the provider timeout."""
        settings = get_settings().model_copy(update={"provider_timeout_seconds": 0.05})
        service = ConnectionService(connection_repo, registry, sync_service, settings, clock=clock)
        connection = await service.create_oauth_connection(FAMILY_ID, CalendarProviderKind.GOOGLE, "Mum")

        async def never_answers(*args):
            await asyncio.sleep(10)

        google_provider.exchange_authorization_code = AsyncMock(side_effect=never_answers)

        with pytest.raises(asyncio.TimeoutError):
            await service.complete_oauth(connection.id, "code", state_for(connection))

        assert connection_repo.items[connection.id].status is ConnectionStatus.PENDING_AUTH

    async def test_slow_calendar_list_times_out(
        self, connection_repo, registry, sync_service, google_provider, clock
    ):
        settings = get_settings().model_copy(update={"provider_timeout_seconds": 0.05})
        service = ConnectionService(connection_repo, registry, sync_service, settings, clock=clock)
        connection = await service.create_oauth_connection(FAMILY_ID, CalendarProviderKind.GOOGLE, "Mum")
        google_provider.exchange_authorization_code.return_value = make_tokens()

        async def never_answers(*args):
            await asyncio.sleep(10)

        google_provider.list_calendars = AsyncMock(side_effect=never_answers)

        with pytest.raises(asyncio.TimeoutError):
            await service.complete_oauth(connection.id, "code", state_for(connection))

    async def test_unknown_connection(self, service):
        with pytest.raises(ConnectionNotFound):
            await service.complete_oauth("missing", "code", "missing:family-1")


class TestValidateIcsUrl:
    """Tests for probing a feed before subscribing."""

    async def test_valid_feed_named_after_organizer(self, connection_repo, sync_service):
        """Test a feed without a calendar name falls back to the organizer."""
        service = service_with_feed(
            lambda request: httpx.Response(200, content=FEED), connection_repo, sync_service
        )

        result = await service.validate_ics_url("webcal://club.example.com/fixtures.ics")

        assert result.is_valid is True
        assert result.calendar_name == "fixtures"
        assert result.event_count == 2
        assert result.error is None
        assert connection_repo.items == {}

    async def test_http_error(self, connection_repo, sync_service):
        service = service_with_feed(
            lambda request: httpx.Response(404, text="Not found"), connection_repo, sync_service
        )

        result = await service.validate_ics_url("https://club.example.com/missing.ics")

        assert result.is_valid is False
        assert result.error == "Failed to fetch calendar: HTTP 404"

    async def test_not_a_calendar(self, connection_repo, sync_service):
        service = service_with_feed(
            lambda request: httpx.Response(200, content=b"<html>login</html>"),
            connection_repo,
            sync_service,
        )

        result = await service.validate_ics_url("https://club.example.com/page")

        assert result.is_valid is False
        assert "Failed to parse calendar" in result.error

    async def test_invalid_url_not_fetched(self, connection_repo, sync_service):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, content=FEED)

        service = service_with_feed(handler, connection_repo, sync_service)

        result = await service.validate_ics_url("mailto:someone@example.com")

        assert result.is_valid is False
        assert "Invalid calendar URL" in result.error
        assert requests == []


class TestLifecycle:
    """Tests for sync now, pause, resume and disconnect."""

    async def test_sync_now(self, service, connection_repo, ics_provider):
        connection = await connection_repo.add(make_ics_connection())
        ics_provider.fetch_changes.return_value = SyncResult(cursor='"v1"', full_snapshot=True)

        summary = await service.sync_now(connection.id)

        assert summary.success is True
        assert connection_repo.items[connection.id].sync_cursor == '"v1"'

    async def test_sync_now_unknown(self, service):
        with pytest.raises(ConnectionNotFound):
            await service.sync_now("missing")

    async def test_pause_and_resume(self, service, connection_repo, clock):
        """Test a paused connection is not due and resumes due at once."""
        connection = await connection_repo.add(
            make_oauth_connection(next_sync_at=NOW + timedelta(minutes=10))
        )

        paused = await service.pause(connection.id)
        assert paused.status is ConnectionStatus.PAUSED
        assert paused.is_enabled is False
        assert paused.is_due(NOW + timedelta(hours=1)) is False

        clock.advance(minutes=30)
        resumed = await service.resume(connection.id)
        assert resumed.status is ConnectionStatus.ACTIVE
        assert resumed.next_sync_at == clock()
        assert resumed.is_due(clock()) is True

    async def test_disconnect_revokes_tokens(self, service, connection_repo, google_provider):
        connection = await connection_repo.add(make_oauth_connection(sync_cursor="sync-1"))

        disconnected = await service.disconnect(connection.id)

        google_provider.revoke_tokens.assert_awaited_once_with(connection.tokens)
        assert disconnected.status is ConnectionStatus.DISCONNECTED
        assert disconnected.tokens is None
        assert disconnected.sync_cursor is None
        assert disconnected.is_enabled is False

    async def test_disconnect_despite_revoke_failure(self, service, connection_repo, google_provider):
        connection = await connection_repo.add(make_oauth_connection())
        google_provider.revoke_tokens = AsyncMock(
            side_effect=TransientSyncError("revoke failed", provider="google", status_code=503)
        )

        disconnected = await service.disconnect(connection.id)

        assert disconnected.status is ConnectionStatus.DISCONNECTED
        assert connection_repo.items[connection.id].status is ConnectionStatus.DISCONNECTED

    async def test_disconnected_cannot_resume(self, service, connection_repo):
        connection = await connection_repo.add(make_ics_connection())
        await service.disconnect(connection.id)

        with pytest.raises(ValueError):
            await service.resume(connection.id)

    async def test_connections_in_error(self, service, connection_repo):
        broken = await connection_repo.add(
            make_oauth_connection(status=ConnectionStatus.AUTH_ERROR, last_sync_error="invalid_grant")
        )
        await connection_repo.add(make_oauth_connection())

        errored = await service.connections_in_error()

        assert [c.id for c in errored] == [broken.id]

    async def test_sync_now_leaves_paused_connection(self, service, connection_repo, google_provider):
        """Test a manual sync does not resume a paused connection."""
        connection = await connection_repo.add(make_oauth_connection())
        await service.pause(connection.id)

        summary = await service.sync_now(connection.id)

        assert summary.success is False
        assert summary.error_message == "Connection is paused"
        google_provider.fetch_changes.assert_not_awaited()
        assert connection_repo.items[connection.id].status is ConnectionStatus.PAUSED


class TestSettings:
    """Tests for listing connections and changing their settings."""

    async def test_list_for_family(self, service, connection_repo):
        feed = await connection_repo.add(make_ics_connection())
        google = await connection_repo.add(make_oauth_connection(created_at=NOW - timedelta(days=2)))
        await connection_repo.add(make_oauth_connection(family_id="family-2"))

        listed = await service.list_for_family(FAMILY_ID)

        assert [c.id for c in listed] == [google.id, feed.id]

    async def test_update_fields(self, service, connection_repo, clock):
        connection = await connection_repo.add(make_oauth_connection(color="#111111"))
        clock.advance(minutes=5)

        updated = await service.update(
            connection.id,
            name="Work",
            color="#00FF00",
            assigned_member_ids=["kid-1"],
            policy=SyncPolicy(sync_interval_minutes=60, import_declined_events=True),
        )

        assert updated.name == "Work"
        assert updated.color == "#00FF00"
        assert updated.assigned_member_ids == ["kid-1"]
        assert updated.policy.sync_interval_minutes == 60
        assert updated.policy.import_declined_events is True
        assert updated.modified_at == clock()
        assert connection_repo.items[connection.id] == updated

    async def test_disable_pauses_and_enable_resumes(self, service, connection_repo):
        connection = await connection_repo.add(make_oauth_connection())

        disabled = await service.update(connection.id, is_enabled=False)
        assert disabled.status is ConnectionStatus.PAUSED
        assert disabled.is_enabled is False

        enabled = await service.update(connection.id, is_enabled=True)
        assert enabled.status is ConnectionStatus.ACTIVE
        assert enabled.is_enabled is True
        assert enabled.is_due(NOW) is True

    async def test_enable_keeps_error_status(self, service, connection_repo):
        """Test enabling an already enabled connection changes nothing else."""
        connection = await connection_repo.add(make_oauth_connection(status=ConnectionStatus.SYNC_ERROR))

        updated = await service.update(connection.id, is_enabled=True)

        assert updated.status is ConnectionStatus.SYNC_ERROR

    async def test_update_disconnected(self, service, connection_repo):
        connection = await connection_repo.add(make_ics_connection())
        await service.disconnect(connection.id)

        with pytest.raises(ValueError):
            await service.update(connection.id, name="Again")

    async def test_update_unknown(self, service):
        with pytest.raises(ConnectionNotFound):
            await service.update("missing", name="Nope")
