"""Microsoft (Outlook / Microsoft 365) calendar provider.

Uses the Microsoft identity platform v2.0 endpoints for OAuth and the
Microsoft Graph `calendarView/delta` query for incremental sync.

## Endpoints

- Authorization: https://login.microsoftonline.com/{tenant}/oauth2/v2.0/authorize
- Token: https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token
- Graph: https://graph.microsoft.com/v1.0

## Incremental Sync

The first delta round lists the sync window and ends with an
`@odata.deltaLink`, which is stored as the cursor. Later fetches GET the
delta link and receive changes only; removed events arrive as
`{"id": ..., "@removed": {...}}`. Graph answers HTTP 410 when the delta
state has expired; the adapter restarts from the window.

All times are requested in UTC with `Prefer: outlook.timezone="UTC"`.
Graph recurrence patterns are rendered as RRULE expressions so that the
same translator handles every provider.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime
from typing import Any
from urllib.parse import urlencode

import httpx

from family_sync.models.connection import CalendarProviderKind, OAuthTokens, ensure_utc
from family_sync.providers.base import (
    AuthExchangeError,
    AuthRefreshError,
    CalendarSummary,
    CursorExpiredError,
    ExternalCalendarEvent,
    OAuthCalendarProvider,
    SyncResult,
)

logger = logging.getLogger(__name__)

MICROSOFT_LOGIN_URL = "https://login.microsoftonline.com"
GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"

DEFAULT_SCOPES = ["offline_access", "Calendars.Read", "User.Read"]

_PATTERN_FREQUENCIES = {
    "daily": "DAILY",
    "weekly": "WEEKLY",
    "absoluteMonthly": "MONTHLY",
    "relativeMonthly": "MONTHLY",
    "absoluteYearly": "YEARLY",
    "relativeYearly": "YEARLY",
}

_DAY_CODES = {
    "sunday": "SU",
    "monday": "MO",
    "tuesday": "TU",
    "wednesday": "WE",
    "thursday": "TH",
    "friday": "FR",
    "saturday": "SA",
}

_WEEK_INDEX = {"first": 1, "second": 2, "third": 3, "fourth": 4, "last": -1}

# Graph emits seven fractional digits, more than datetime accepts everywhere
_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


class MicrosoftCalendarProvider(OAuthCalendarProvider):
    """Microsoft Graph calendar adapter."""

    name = "microsoft"
    kind = CalendarProviderKind.MICROSOFT

    page_size = 100

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        tenant_id: str = "common",
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
        self.tenant_id = tenant_id

    @property
    def authorize_url(self) -> str:
        return f"{MICROSOFT_LOGIN_URL}/{self.tenant_id}/oauth2/v2.0/authorize"

    @property
    def token_url(self) -> str:
        return f"{MICROSOFT_LOGIN_URL}/{self.tenant_id}/oauth2/v2.0/token"

    def get_authorization_url(self, state: str, redirect_uri: str) -> str:
        self._require_configured()

        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "redirect_uri": redirect_uri,
            "response_mode": "query",
            "scope": " ".join(self.scopes),
            "state": state,
            "prompt": "consent",
        }
        return f"{self.authorize_url}?{urlencode(params)}"

    async def exchange_authorization_code(
        self, code: str, redirect_uri: str
    ) -> OAuthTokens:
        self._require_configured()

        data = await self._token_request(
            self.token_url,
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code": code,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
                "scope": " ".join(self.scopes),
            },
            AuthExchangeError,
        )
        return self._tokens_from_response(data)

    async def refresh_tokens(self, tokens: OAuthTokens) -> OAuthTokens:
        self._require_configured()
        if not tokens.can_refresh:
            raise AuthRefreshError("No refresh token available", provider=self.name)

        data = await self._token_request(
            self.token_url,
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": tokens.refresh_token,
                "grant_type": "refresh_token",
                "scope": " ".join(self.scopes),
            },
            AuthRefreshError,
        )
        return self._tokens_from_response(data, tokens.refresh_token)

    async def revoke_tokens(self, tokens: OAuthTokens) -> None:
        # The v2.0 endpoint has no token revocation; consent is removed by the user
        logger.debug("Microsoft tokens cannot be revoked, dropping locally")

    def _auth_headers(self, tokens: OAuthTokens) -> dict[str, str]:
        return {"Authorization": f"{tokens.token_type} {tokens.access_token}"}

    async def list_calendars(self, tokens: OAuthTokens) -> list[CalendarSummary]:
        calendars = []
        url: str | None = f"{GRAPH_BASE_URL}/me/calendars"

        while url:
            response = await self._request("GET", url, headers=self._auth_headers(tokens))
            data = response.json()

            for item in data.get("value", []):
                color = item.get("hexColor") or None
                calendars.append(
                    CalendarSummary(
                        id=item["id"],
                        name=item.get("name", ""),
                        color=color,
                        is_read_only=not item.get("canEdit", False),
                        is_primary=item.get("isDefaultCalendar", False),
                    )
                )

            url = data.get("@odata.nextLink")

        return calendars

    async def fetch_changes(
        self,
        tokens: OAuthTokens,
        calendar_id: str,
        window_start: datetime,
        window_end: datetime,
        cursor: str | None = None,
    ) -> SyncResult:
        if cursor:
            try:
                return await self._run_delta(tokens, cursor)
            except CursorExpiredError:
                logger.warning(
                    f"Delta link expired for calendar {calendar_id}, performing full sync"
                )
            result = await self._run_delta(
                tokens, self._initial_delta_url(calendar_id, window_start, window_end)
            )
            result.full_resync = True
            return result

        return await self._run_delta(
            tokens, self._initial_delta_url(calendar_id, window_start, window_end)
        )

    def _initial_delta_url(
        self, calendar_id: str, window_start: datetime, window_end: datetime
    ) -> str:
        params = {
            "startDateTime": _format_graph_datetime(window_start),
            "endDateTime": _format_graph_datetime(window_end),
        }
        return f"{GRAPH_BASE_URL}/me/calendars/{calendar_id}/calendarView/delta?{urlencode(params)}"

    async def _run_delta(self, tokens: OAuthTokens, url: str) -> SyncResult:
        """Follow next links until the round ends with a delta link."""
        headers = self._auth_headers(tokens)
        headers["Prefer"] = (
            f'outlook.timezone="UTC", odata.maxpagesize={self.page_size}'
        )

        result = SyncResult()
        next_url: str | None = url

        while next_url:
            response = await self._request("GET", next_url, headers=headers)
            data = response.json()

            for item in data.get("value", []):
                if "@removed" in item or item.get("isCancelled"):
                    result.deleted_ids.append(item["id"])
                    continue
                event = self._translate_event(item)
                if event is not None:
                    result.events.append(event)

            next_url = data.get("@odata.nextLink")
            if not next_url:
                result.cursor = data.get("@odata.deltaLink")

        return result

    def _translate_event(self, item: dict[str, Any]) -> ExternalCalendarEvent | None:
        """Translate a Graph event resource."""
        start_data = item.get("start") or {}
        end_data = item.get("end") or {}
        if not start_data.get("dateTime"):
            logger.debug(f"Skipping Graph event {item.get('id')} without a start")
            return None

        location = (item.get("location") or {}).get("displayName") or None
        organizer = ((item.get("organizer") or {}).get("emailAddress") or {}).get("address")
        response_status = (item.get("responseStatus") or {}).get("response")

        event = ExternalCalendarEvent(
            external_id=item["id"],
            title=item.get("subject") or "",
            description=item.get("bodyPreview") or None,
            location=location,
            is_declined=response_status == "declined",
            recurrence_rule=build_rrule_from_pattern(item.get("recurrence")),
            recurring_event_id=item.get("seriesMasterId"),
            organizer_email=organizer,
        )

        start = _parse_graph_datetime(start_data["dateTime"])
        end = _parse_graph_datetime(end_data["dateTime"]) if end_data.get("dateTime") else None

        if item.get("isAllDay"):
            event.is_all_day = True
            event.start_date = start.date()
            event.end_date = end.date() if end else None
        else:
            event.start = start
            event.end = end

        if item.get("isReminderOn") and item.get("reminderMinutesBeforeStart") is not None:
            event.reminders = [int(item["reminderMinutesBeforeStart"])]

        if item.get("lastModifiedDateTime"):
            event.updated_at = _parse_graph_datetime(item["lastModifiedDateTime"])

        return event


def build_rrule_from_pattern(recurrence: dict[str, Any] | None) -> str | None:
    """Render a Graph `patternedRecurrence` as an RRULE expression.

    Returns None for patterns with no RRULE equivalent.
    """
    if not recurrence:
        return None

    pattern = recurrence.get("pattern") or {}
    frequency = _PATTERN_FREQUENCIES.get(pattern.get("type", ""))
    if frequency is None:
        return None

    parts = [f"FREQ={frequency}"]

    interval = int(pattern.get("interval") or 1)
    if interval > 1:
        parts.append(f"INTERVAL={interval}")

    days = [_DAY_CODES[d.lower()] for d in pattern.get("daysOfWeek") or [] if d.lower() in _DAY_CODES]
    if days:
        ordinal = ""
        if pattern.get("type", "").startswith("relative"):
            ordinal = str(_WEEK_INDEX.get(pattern.get("index", "first"), 1))
        parts.append("BYDAY=" + ",".join(f"{ordinal}{day}" for day in days))

    if frequency == "YEARLY" and pattern.get("month"):
        parts.append(f"BYMONTH={int(pattern['month'])}")

    if pattern.get("type", "").startswith("absolute") and pattern.get("dayOfMonth"):
        parts.append(f"BYMONTHDAY={int(pattern['dayOfMonth'])}")

    range_data = recurrence.get("range") or {}
    if range_data.get("type") == "endDate" and range_data.get("endDate"):
        end = date.fromisoformat(range_data["endDate"])
        parts.append(f"UNTIL={end.strftime('%Y%m%d')}")
    elif range_data.get("type") == "numbered" and range_data.get("numberOfOccurrences"):
        parts.append(f"COUNT={int(range_data['numberOfOccurrences'])}")

    return "RRULE:" + ";".join(parts)


def _parse_graph_datetime(value: str) -> datetime:
    value = _FRACTION_RE.sub(r"\1", value.replace("Z", "+00:00"))
    return ensure_utc(datetime.fromisoformat(value))


def _format_graph_datetime(value: datetime) -> str:
    return ensure_utc(value).strftime("%Y-%m-%dT%H:%M:%SZ")
