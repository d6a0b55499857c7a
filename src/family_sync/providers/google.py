"""Google Calendar provider.

OAuth 2.0 authorization code flow plus incremental event sync against the
Google Calendar API v3.

## OAuth Endpoints

- Authorization: https://accounts.google.com/o/oauth2/v2/auth
- Token: https://oauth2.googleapis.com/token
- Revoke: https://oauth2.googleapis.com/revoke

Token requests go through httpx. Calendar data is read with
google-api-python-client, whose blocking calls are run in a worker thread
over an httplib2 connection bounded by the provider timeout.

## Incremental Sync

The first fetch lists events in the sync window and stores the
`nextSyncToken`. Later fetches pass only the sync token and receive changed
and cancelled events. When Google answers HTTP 410 the token has expired;
the adapter falls back to a full window fetch and reports `full_resync`.

Recurring events are fetched as series (`singleEvents=false`), so the
series master carries its RRULE.

## Rate Limits

- 1,000,000 queries per day (default)
- 500 queries per 100 seconds per user
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime
from typing import Any, Callable
from urllib.parse import urlencode

import httplib2
import httpx
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from family_sync.models.connection import CalendarProviderKind, OAuthTokens, ensure_utc
from family_sync.providers.base import (
    AuthenticationError,
    AuthExchangeError,
    AuthRefreshError,
    CalendarSummary,
    ExternalCalendarEvent,
    OAuthCalendarProvider,
    ProviderError,
    RateLimitError,
    SyncResult,
    TransientSyncError,
)

logger = logging.getLogger(__name__)

# Google OAuth endpoints
GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"

DEFAULT_SCOPES = ["https://www.googleapis.com/auth/calendar.readonly"]

# Event colorId -> hex, from the Calendar API colors endpoint
GOOGLE_EVENT_COLORS = {
    "1": "#7986CB",  # Lavender
    "2": "#33B679",  # Sage
    "3": "#8E24AA",  # Grape
    "4": "#E67C73",  # Flamingo
    "5": "#F6BF26",  # Banana
    "6": "#F4511E",  # Tangerine
    "7": "#039BE5",  # Peacock
    "8": "#616161",  # Graphite
    "9": "#3F51B5",  # Blueberry
    "10": "#0B8043",  # Basil
    "11": "#D50000",  # Tomato
}

_READ_ONLY_ROLES = frozenset({"reader", "freeBusyReader"})


class GoogleCalendarProvider(OAuthCalendarProvider):
    """Google Calendar adapter.

    Example:
        ```python
        provider = GoogleCalendarProvider(client_id, client_secret)

        url = provider.get_authorization_url(state, redirect_uri)
        tokens = await provider.exchange_authorization_code(code, redirect_uri)
        result = await provider.fetch_changes(
            tokens, "primary", window_start, window_end, cursor=stored_token
        )
        ```
    """

    name = "google"
    kind = CalendarProviderKind.GOOGLE

    page_size = 250

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        scopes: list[str] | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(
            client_id=client_id,
            client_secret=client_secret,
            scopes=scopes or DEFAULT_SCOPES,
            timeout=timeout,
            client=client,
        )

    def get_authorization_url(self, state: str, redirect_uri: str) -> str:
        self._require_configured()

        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "state": state,
            "access_type": "offline",  # Needed for a refresh token
            "prompt": "consent",
        }
        return f"{GOOGLE_AUTHORIZE_URL}?{urlencode(params)}"

    async def exchange_authorization_code(
        self, code: str, redirect_uri: str
    ) -> OAuthTokens:
        self._require_configured()

        data = await self._token_request(
            GOOGLE_TOKEN_URL,
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": redirect_uri,
            },
            AuthExchangeError,
        )
        return self._tokens_from_response(data)

    async def refresh_tokens(self, tokens: OAuthTokens) -> OAuthTokens:
        self._require_configured()
        if not tokens.can_refresh:
            raise AuthRefreshError("No refresh token available", provider=self.name)

        data = await self._token_request(
            GOOGLE_TOKEN_URL,
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": tokens.refresh_token,
                "grant_type": "refresh_token",
            },
            AuthRefreshError,
        )
        return self._tokens_from_response(data, tokens.refresh_token)

    async def revoke_tokens(self, tokens: OAuthTokens) -> None:
        token = tokens.refresh_token or tokens.access_token
        try:
            await self._request("POST", GOOGLE_REVOKE_URL, params={"token": token})
        except ProviderError as e:
            logger.warning(f"Google token revocation failed: {e}")

    async def list_calendars(self, tokens: OAuthTokens) -> list[CalendarSummary]:
        return await self._call_api(self._list_calendars, tokens)

    async def fetch_changes(
        self,
        tokens: OAuthTokens,
        calendar_id: str,
        window_start: datetime,
        window_end: datetime,
        cursor: str | None = None,
    ) -> SyncResult:
        return await self._call_api(
            self._fetch_changes, tokens, calendar_id, window_start, window_end, cursor
        )

    async def _call_api(self, func: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking API call off the event loop, mapping HTTP errors."""
        try:
            return await asyncio.to_thread(func, *args)
        except HttpError as e:
            raise self._translate_http_error(e) from e

    def _translate_http_error(self, error: HttpError) -> ProviderError:
        status = int(error.resp.status)
        content = error.content
        body = content.decode("utf-8", errors="replace") if isinstance(content, bytes) else str(content)

        if status == 429 or (status == 403 and "ateLimitExceeded" in body):
            return RateLimitError(self.name, status_code=status)
        if status in (401, 403):
            return AuthenticationError(
                f"Google Calendar rejected credentials: HTTP {status}",
                provider=self.name,
                status_code=status,
                response_body=body,
            )
        return TransientSyncError(
            f"Google Calendar request failed: HTTP {status}",
            provider=self.name,
            status_code=status,
            response_body=body,
        )

    def _build_service(self, tokens: OAuthTokens) -> Any:
        credentials = Credentials(token=tokens.access_token)
        # Socket timeout for the blocking discovery client
        http = AuthorizedHttp(credentials, http=httplib2.Http(timeout=self.timeout))
        return build("calendar", "v3", http=http, cache_discovery=False)

    def _list_calendars(self, tokens: OAuthTokens) -> list[CalendarSummary]:
        service = self._build_service(tokens)
        calendars = []
        page_token = None

        while True:
            result = service.calendarList().list(pageToken=page_token).execute()

            for item in result.get("items", []):
                calendars.append(
                    CalendarSummary(
                        id=item["id"],
                        name=item.get("summaryOverride") or item.get("summary", ""),
                        description=item.get("description"),
                        color=item.get("backgroundColor"),
                        is_read_only=item.get("accessRole", "reader") in _READ_ONLY_ROLES,
                        is_primary=item.get("primary", False),
                        time_zone=item.get("timeZone"),
                    )
                )

            page_token = result.get("nextPageToken")
            if not page_token:
                break

        return calendars

    def _fetch_changes(
        self,
        tokens: OAuthTokens,
        calendar_id: str,
        window_start: datetime,
        window_end: datetime,
        cursor: str | None,
    ) -> SyncResult:
        service = self._build_service(tokens)

        if cursor:
            try:
                return self._list_events(service, calendar_id, window_start, window_end, cursor)
            except HttpError as e:
                if int(e.resp.status) != 410:
                    raise
                logger.warning(
                    f"Sync token expired for calendar {calendar_id}, performing full sync"
                )

            result = self._list_events(service, calendar_id, window_start, window_end, None)
            result.full_resync = True
            return result

        return self._list_events(service, calendar_id, window_start, window_end, None)

    def _list_events(
        self,
        service: Any,
        calendar_id: str,
        window_start: datetime,
        window_end: datetime,
        sync_token: str | None,
    ) -> SyncResult:
        params: dict[str, Any] = {
            "calendarId": calendar_id,
            "maxResults": self.page_size,
            "singleEvents": False,  # Keep series masters with their RRULE
        }

        # Google rejects time bounds combined with a sync token
        if sync_token:
            params["syncToken"] = sync_token
        else:
            params["timeMin"] = ensure_utc(window_start).isoformat()
            params["timeMax"] = ensure_utc(window_end).isoformat()

        result = SyncResult()
        page_token = None

        while True:
            if page_token:
                params["pageToken"] = page_token

            response = service.events().list(**params).execute()

            for item in response.get("items", []):
                if item.get("status") == "cancelled":
                    result.deleted_ids.append(item["id"])
                    continue
                event = self._translate_event(item)
                if event is not None:
                    result.events.append(event)

            page_token = response.get("nextPageToken")
            if not page_token:
                result.cursor = response.get("nextSyncToken")
                break

        return result

    def _translate_event(self, item: dict[str, Any]) -> ExternalCalendarEvent | None:
        """Translate a Calendar API event resource."""
        start_data = item.get("start", {})
        end_data = item.get("end", {})

        event = ExternalCalendarEvent(
            external_id=item["id"],
            title=item.get("summary", ""),
            description=item.get("description"),
            location=item.get("location"),
            recurring_event_id=item.get("recurringEventId"),
            color=GOOGLE_EVENT_COLORS.get(item.get("colorId", "")),
            reminders=_popup_reminders(item.get("reminders", {})),
            is_declined=any(
                attendee.get("self") and attendee.get("responseStatus") == "declined"
                for attendee in item.get("attendees", [])
            ),
            organizer_email=item.get("organizer", {}).get("email"),
        )

        if "date" in start_data:
            event.is_all_day = True
            event.start_date = date.fromisoformat(start_data["date"])
            if end_data.get("date"):
                event.end_date = date.fromisoformat(end_data["date"])
        elif "dateTime" in start_data:
            event.start = _parse_datetime(start_data["dateTime"])
            if end_data.get("dateTime"):
                event.end = _parse_datetime(end_data["dateTime"])
        else:
            logger.debug(f"Skipping Google event {item['id']} without a start")
            return None

        for line in item.get("recurrence", []):
            if line.upper().startswith("RRULE:"):
                event.recurrence_rule = line
                break

        if item.get("updated"):
            event.updated_at = _parse_datetime(item["updated"])

        return event


def _parse_datetime(value: str) -> datetime:
    return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


def _popup_reminders(reminders: dict[str, Any]) -> list[int]:
    return [
        int(override["minutes"])
        for override in reminders.get("overrides", [])
        if override.get("method") == "popup" and "minutes" in override
    ]
