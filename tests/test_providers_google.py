"""Tests for the Google Calendar adapter."""

from datetime import date, datetime, timedelta, timezone
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qs, parse_qsl, urlsplit

import httplib2
import httpx
import pytest
from googleapiclient.errors import HttpError

from conftest import NOW, make_tokens
from family_sync.providers.base import (
    AuthenticationError,
    AuthExchangeError,
    AuthRefreshError,
    ProviderNotConfiguredError,
    RateLimitError,
    TransientSyncError,
)
from family_sync.providers.google import (
    GOOGLE_REVOKE_URL,
    GOOGLE_TOKEN_URL,
    GoogleCalendarProvider,
)

WINDOW_START = NOW - timedelta(days=7)
WINDOW_END = NOW + timedelta(days=90)


def http_error(status: int, body: bytes = b"error") -> HttpError:
    return HttpError(httplib2.Response({"status": status}), body)


def provider_for(handler=None) -> GoogleCalendarProvider:
    transport = httpx.MockTransport(handler or (lambda request: httpx.Response(500)))
    return GoogleCalendarProvider(
        client_id="client-id",
        client_secret="client-secret",
        client=httpx.AsyncClient(transport=transport),
    )


@pytest.fixture
def google_api():
    """Patch the discovery client so no Google API is contacted."""
    with patch("family_sync.providers.google.build") as build:
        service = MagicMock()
        build.return_value = service
        yield service


def events_list(service: MagicMock) -> MagicMock:
    return service.events.return_value.list


class TestAuthorization:
    """Tests for the OAuth endpoints."""

    def test_authorization_url(self):
        url = provider_for().get_authorization_url("conn:family", "https://app.example.com/cb")
        query = parse_qs(urlsplit(url).query)

        assert url.startswith("https://accounts.google.com/o/oauth2/v2/auth?")
        assert query["state"] == ["conn:family"]
        assert query["redirect_uri"] == ["https://app.example.com/cb"]
        assert query["access_type"] == ["offline"]
        assert query["scope"] == ["https://www.googleapis.com/auth/calendar.readonly"]

    def test_not_configured(self):
        provider = GoogleCalendarProvider(client_id=None, client_secret=None)
        with pytest.raises(ProviderNotConfiguredError):
            provider.get_authorization_url("state", "https://app.example.com/cb")

    async def test_exchange_code(self):
        """Test code exchange posts the grant and builds tokens."""
        forms = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert str(request.url) == GOOGLE_TOKEN_URL
            forms.append(dict(parse_qsl(request.content.decode())))
            return httpx.Response(
                200,
                json={
                    "access_token": "ya29.access",
                    "refresh_token": "1//refresh",
                    "expires_in": 3599,
                    "token_type": "Bearer",
                    "scope": "https://www.googleapis.com/auth/calendar.readonly",
                },
            )

        tokens = await provider_for(handler).exchange_authorization_code(
            "auth-code", "https://app.example.com/cb"
        )

        assert forms[0]["grant_type"] == "authorization_code"
        assert forms[0]["code"] == "auth-code"
        assert tokens.access_token == "ya29.access"
        assert tokens.refresh_token == "1//refresh"
        assert tokens.expires_at > datetime.now(timezone.utc)

    async def test_exchange_rejected(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": "invalid_grant"})

        with pytest.raises(AuthExchangeError) as exc_info:
            await provider_for(handler).exchange_authorization_code("bad", "https://app.example.com/cb")

        assert exc_info.value.status_code == 400

    async def test_refresh_keeps_refresh_token(self):
        """Test Google omitting the refresh token on refresh."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"access_token": "new-access", "expires_in": 3600})

        tokens = await provider_for(handler).refresh_tokens(make_tokens())

        assert tokens.access_token == "new-access"
        assert tokens.refresh_token == "refresh-token"

    async def test_refresh_revoked(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": "invalid_grant"})

        with pytest.raises(AuthRefreshError):
            await provider_for(handler).refresh_tokens(make_tokens())

    async def test_refresh_without_refresh_token(self):
        with pytest.raises(AuthRefreshError):
            await provider_for().refresh_tokens(make_tokens(refresh_token=None))

    async def test_refresh_server_error_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="backend error")

        with pytest.raises(TransientSyncError):
            await provider_for(handler).refresh_tokens(make_tokens())

    async def test_revoke(self):
        revoked = []

        def handler(request: httpx.Request) -> httpx.Response:
            revoked.append((str(request.url).split("?")[0], request.url.params.get("token")))
            return httpx.Response(200)

        await provider_for(handler).revoke_tokens(make_tokens())

        assert revoked == [(GOOGLE_REVOKE_URL, "refresh-token")]


class TestListCalendars:
    """Tests for list_calendars."""

    async def test_pages_and_roles(self, google_api):
        calendar_list = google_api.calendarList.return_value.list.return_value
        calendar_list.execute.side_effect = [
            {
                "items": [
                    {
                        "id": "primary-id",
                        "summary": "parent@example.com",
                        "summaryOverride": "Parent",
                        "backgroundColor": "#9fe1e7",
                        "accessRole": "owner",
                        "primary": True,
                        "timeZone": "Europe/London",
                    }
                ],
                "nextPageToken": "page-2",
            },
            {"items": [{"id": "holidays", "summary": "Holidays", "accessRole": "reader"}]},
        ]

        calendars = await provider_for().list_calendars(make_tokens())

        assert [c.id for c in calendars] == ["primary-id", "holidays"]
        assert calendars[0].name == "Parent"
        assert calendars[0].is_primary is True
        assert calendars[0].is_read_only is False
        assert calendars[1].is_read_only is True
        assert google_api.calendarList.return_value.list.call_args_list[1].kwargs["pageToken"] == "page-2"

    async def test_api_client_uses_provider_timeout(self):
        """Test Calendar API calls go over an authorized connection with a timeout."""
        provider = GoogleCalendarProvider(
            client_id="client-id",
            client_secret="client-secret",
            timeout=7.5,
            client=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500))),
        )

        with patch("family_sync.providers.google.build") as build:
            calendar_list = build.return_value.calendarList.return_value.list.return_value
            calendar_list.execute.return_value = {"items": []}
            await provider.list_calendars(make_tokens())

        kwargs = build.call_args.kwargs
        assert "credentials" not in kwargs
        assert kwargs["http"].http.timeout == 7.5
        assert kwargs["http"].credentials.token == "access-token"


class TestFetchChanges:
    """Tests for fetch_changes."""

    async def test_initial_fetch_uses_window(self, google_api):
        events_list(google_api).return_value.execute.return_value = {
            "items": [],
            "nextSyncToken": "sync-1",
        }

        result = await provider_for().fetch_changes(make_tokens(), "primary", WINDOW_START, WINDOW_END)

        params = events_list(google_api).call_args.kwargs
        assert params["calendarId"] == "primary"
        assert params["timeMin"] == WINDOW_START.isoformat()
        assert params["timeMax"] == WINDOW_END.isoformat()
        assert params["singleEvents"] is False
        assert "syncToken" not in params
        assert result.cursor == "sync-1"
        assert result.full_resync is False

    async def test_incremental_fetch_uses_sync_token(self, google_api):
        """Test paging with a sync token and cancelled items."""
        events_list(google_api).return_value.execute.side_effect = [
            {
                "items": [
                    {
                        "id": "evt-1",
                        "status": "confirmed",
                        "summary": "Parents evening",
                        "start": {"dateTime": "2024-06-18T18:00:00+01:00"},
                        "end": {"dateTime": "2024-06-18T19:00:00+01:00"},
                    },
                    {"id": "evt-2", "status": "cancelled"},
                ],
                "nextPageToken": "p2",
            },
            {
                "items": [
                    {
                        "id": "evt-3",
                        "summary": "Half term",
                        "start": {"date": "2024-05-27"},
                        "end": {"date": "2024-06-01"},
                    }
                ],
                "nextSyncToken": "sync-2",
            },
        ]

        result = await provider_for().fetch_changes(
            make_tokens(), "primary", WINDOW_START, WINDOW_END, cursor="sync-1"
        )

        first_call, second_call = events_list(google_api).call_args_list
        assert first_call.kwargs["syncToken"] == "sync-1"
        assert "timeMin" not in first_call.kwargs
        assert second_call.kwargs["pageToken"] == "p2"

        assert result.deleted_ids == ["evt-2"]
        assert [e.external_id for e in result.events] == ["evt-1", "evt-3"]
        assert result.events[0].start == datetime(2024, 6, 18, 17, 0, tzinfo=timezone.utc)
        assert result.events[1].is_all_day is True
        assert result.events[1].start_date == date(2024, 5, 27)
        assert result.events[1].end_date == date(2024, 6, 1)
        assert result.cursor == "sync-2"

    async def test_expired_sync_token_triggers_full_sync(self, google_api):
        """Test HTTP 410 falls back to a windowed fetch."""
        events_list(google_api).return_value.execute.side_effect = [
            http_error(410, b"Gone"),
            {"items": [], "nextSyncToken": "fresh"},
        ]

        result = await provider_for().fetch_changes(
            make_tokens(), "primary", WINDOW_START, WINDOW_END, cursor="stale"
        )

        retry_params = events_list(google_api).call_args_list[-1].kwargs
        assert "syncToken" not in retry_params
        assert retry_params["timeMin"] == WINDOW_START.isoformat()
        assert result.full_resync is True
        assert result.cursor == "fresh"

    async def test_unauthorized(self, google_api):
        events_list(google_api).return_value.execute.side_effect = http_error(401, b"Invalid Credentials")

        with pytest.raises(AuthenticationError) as exc_info:
            await provider_for().fetch_changes(make_tokens(), "primary", WINDOW_START, WINDOW_END)

        assert exc_info.value.status_code == 401

    async def test_rate_limited(self, google_api):
        events_list(google_api).return_value.execute.side_effect = http_error(
            403, b'{"error": {"message": "Rate Limit Exceeded", "errors": [{"reason": "rateLimitExceeded"}]}}'
        )

        with pytest.raises(RateLimitError):
            await provider_for().fetch_changes(make_tokens(), "primary", WINDOW_START, WINDOW_END)

    async def test_server_error(self, google_api):
        events_list(google_api).return_value.execute.side_effect = http_error(500)

        with pytest.raises(TransientSyncError):
            await provider_for().fetch_changes(make_tokens(), "primary", WINDOW_START, WINDOW_END)


class TestTranslateEvent:
    """Tests for Google event translation."""

    def test_full_event(self):
        event = provider_for()._translate_event(
            {
                "id": "evt",
                "summary": "Swimming",
                "description": "Bring towel",
                "location": "Pool",
                "colorId": "11",
                "start": {"dateTime": "2024-06-18T09:00:00Z"},
                "end": {"dateTime": "2024-06-18T10:00:00Z"},
                "recurrence": ["EXDATE:20240625T090000Z", "RRULE:FREQ=WEEKLY;BYDAY=TU"],
                "reminders": {
                    "useDefault": False,
                    "overrides": [
                        {"method": "email", "minutes": 1440},
                        {"method": "popup", "minutes": 30},
                    ],
                },
                "organizer": {"email": "coach@example.com"},
                "attendees": [{"email": "parent@example.com", "self": True, "responseStatus": "accepted"}],
                "updated": "2024-06-01T10:00:00.000Z",
            }
        )

        assert event.title == "Swimming"
        assert event.color == "#D50000"
        assert event.recurrence_rule == "RRULE:FREQ=WEEKLY;BYDAY=TU"
        assert event.reminders == [30]
        assert event.is_declined is False
        assert event.organizer_email == "coach@example.com"
        assert event.updated_at == datetime(2024, 6, 1, 10, 0, tzinfo=timezone.utc)

    def test_declined_by_self(self):
        event = provider_for()._translate_event(
            {
                "id": "evt",
                "start": {"dateTime": "2024-06-18T09:00:00Z"},
                "end": {"dateTime": "2024-06-18T10:00:00Z"},
                "attendees": [
                    {"email": "other@example.com", "responseStatus": "declined"},
                    {"email": "parent@example.com", "self": True, "responseStatus": "declined"},
                ],
            }
        )
        assert event.is_declined is True

    def test_instance_of_series(self):
        event = provider_for()._translate_event(
            {
                "id": "series_20240618T090000Z",
                "recurringEventId": "series",
                "start": {"dateTime": "2024-06-18T09:00:00Z"},
            }
        )
        assert event.recurring_event_id == "series"
        assert event.end is None

    def test_without_start_skipped(self):
        assert provider_for()._translate_event({"id": "evt", "start": {}}) is None
