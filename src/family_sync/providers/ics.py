"""ICS (iCalendar feed) subscription provider.

Fetches a whole `.ics` document over HTTP and parses it with `icalendar`.
ICS feeds have no change feed, so every fetch is a full snapshot of the
feed; the sync engine removes stored events that disappeared from it.

## Change Detection

The cursor for an ICS connection is a caching validator:

1. The stored validator is sent as `If-None-Match`; HTTP 304 means nothing
   changed.
2. Otherwise the new validator is the response `ETag`, or a hash of the
   body when the server sends none.
3. A validator equal to the stored one also means nothing changed.

## Limits

- Request timeout: configurable, 30s by default
- Maximum feed size: configurable, 5 MB by default
- `webcal://` URLs are fetched over https
"""

from __future__ import annotations

import base64
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

import httpx
from icalendar import Calendar

from family_sync.models.connection import CalendarProviderKind, ensure_utc, normalize_ics_url
from family_sync.providers.base import (
    ExternalCalendarEvent,
    HttpCalendarProvider,
    SyncResult,
    TransientSyncError,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 5 * 1024 * 1024
MAX_REMINDER_MINUTES = 7 * 24 * 60
DEFAULT_EVENT_DURATION = timedelta(hours=1)


@dataclass
class IcsFeed:
    """A parsed ICS document."""

    validator: str
    calendar_name: str | None = None
    events: list[ExternalCalendarEvent] = field(default_factory=list)


def content_validator(content: bytes) -> str:
    """Quoted validator derived from the body, for servers without ETags."""
    digest = base64.b64encode(hashlib.sha256(content).digest()).decode("ascii")
    return f'"{digest[:16]}"'


class IcsCalendarProvider(HttpCalendarProvider):
    """Adapter for ICS subscription URLs.

    Example:
        ```python
        async with IcsCalendarProvider() as provider:
            result = await provider.fetch_changes(
                url, window_start, window_end, validator=stored_validator
            )
        ```
    """

    name = "ics"
    kind = CalendarProviderKind.ICS
    requires_oauth = False

    def __init__(
        self,
        user_agent: str | None = None,
        timeout: float = 30.0,
        max_bytes: int = DEFAULT_MAX_BYTES,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(timeout=timeout, user_agent=user_agent, client=client)
        self.max_bytes = max_bytes

    def _get_default_headers(self) -> dict[str, str]:
        return {
            "User-Agent": self.user_agent,
            "Accept": "text/calendar, */*;q=0.8",
        }

    async def fetch_feed(self, url: str, validator: str | None = None) -> IcsFeed | None:
        """Download and parse a feed.

        Args:
            url: Feed URL (`webcal://` accepted)
            validator: Validator from the previous fetch

        Returns:
            The parsed feed, or None when it has not changed since `validator`

        Raises:
            InvalidIcsUrlError: If the URL is not an http(s)/webcal URL
            TransientSyncError: On HTTP failures, oversized or unparseable feeds
        """
        url = normalize_ics_url(url)
        headers = {"If-None-Match": validator} if validator else None

        response = await self._request("GET", url, headers=headers)
        if response.status_code == 304:
            logger.debug(f"ICS feed not modified: {url}")
            return None

        content = response.content
        if len(content) > self.max_bytes:
            raise TransientSyncError(
                f"Calendar feed exceeds {self.max_bytes} bytes",
                provider=self.name,
                status_code=response.status_code,
            )

        new_validator = response.headers.get("ETag") or content_validator(content)
        if validator and new_validator == validator:
            logger.debug(f"ICS feed unchanged: {url}")
            return None

        calendar_name, events = parse_calendar(content)
        return IcsFeed(validator=new_validator, calendar_name=calendar_name, events=events)

    async def fetch_changes(
        self,
        url: str,
        window_start: datetime,
        window_end: datetime,
        validator: str | None = None,
    ) -> SyncResult:
        """Fetch a feed as a full snapshot limited to the sync window.

        Recurring events are always kept, since an occurrence may fall into
        the window even when the first instance does not.
        """
        feed = await self.fetch_feed(url, validator)
        if feed is None:
            return SyncResult(cursor=validator)

        events = [
            event
            for event in feed.events
            if event.recurrence_rule or _overlaps(event, window_start, window_end)
        ]
        return SyncResult(events=events, cursor=feed.validator, full_snapshot=True)


def parse_calendar(content: bytes | str) -> tuple[str | None, list[ExternalCalendarEvent]]:
    """Parse an iCalendar document into canonical events.

    Events that cannot be translated are logged and skipped. When an event
    id appears more than once, the last occurrence wins.

    Returns:
        Tuple of (calendar name, events)

    Raises:
        TransientSyncError: If the document itself cannot be parsed
    """
    try:
        calendar = Calendar.from_ical(content)
    except Exception as e:
        raise TransientSyncError(f"Failed to parse calendar: {e}", provider="ics") from e

    if calendar.name != "VCALENDAR":
        raise TransientSyncError(
            f"Failed to parse calendar: unexpected {calendar.name} component",
            provider="ics",
        )

    name = calendar.get("X-WR-CALNAME") or calendar.get("NAME")
    events: dict[str, ExternalCalendarEvent] = {}

    for component in calendar.walk("VEVENT"):
        try:
            event = _translate_component(component)
        except Exception as e:
            logger.warning(f"Skipping unparseable ICS event {component.get('UID')}: {e}")
            continue
        if event is None:
            continue
        if event.external_id in events:
            logger.debug(f"Duplicate ICS event {event.external_id}, keeping the later copy")
        events[event.external_id] = event

    return (str(name) if name else None), list(events.values())


def _translate_component(component: Any) -> ExternalCalendarEvent | None:
    if "DTSTART" not in component:
        return None

    start = component.decoded("DTSTART")
    end = component.decoded("DTEND", None)
    duration = component.decoded("DURATION", None)
    if end is None and isinstance(duration, timedelta):
        end = start + duration

    title = _text(component.get("SUMMARY")) or ""
    uid = _text(component.get("UID"))
    if not uid:
        seed = f"{title}|{start.isoformat()}".encode("utf-8")
        uid = "ics-" + hashlib.sha256(seed).hexdigest()[:32]

    external_id = uid
    recurring_event_id = None
    recurrence_id = component.get("RECURRENCE-ID")
    if recurrence_id is not None:
        # Overridden occurrence of a series
        external_id = f"{uid}/{_stamp(recurrence_id.dt)}"
        recurring_event_id = uid

    event = ExternalCalendarEvent(
        external_id=external_id,
        title=title,
        description=_text(component.get("DESCRIPTION")),
        location=_text(component.get("LOCATION")),
        is_cancelled=(_text(component.get("STATUS")) or "").upper() == "CANCELLED",
        recurrence_rule=_rrule(component.get("RRULE")),
        recurring_event_id=recurring_event_id,
        color=_text(component.get("COLOR")),
        reminders=_alarm_minutes(component),
        organizer_email=_organizer_email(component.get("ORGANIZER")),
    )

    if isinstance(start, datetime):
        event.start = ensure_utc(start)
        event.end = ensure_utc(end) if isinstance(end, datetime) else event.start + DEFAULT_EVENT_DURATION
    else:
        event.is_all_day = True
        event.start_date = start
        if isinstance(end, datetime):
            event.end_date = end.date()
        elif isinstance(end, date):
            event.end_date = end

    last_modified = component.decoded("LAST-MODIFIED", None)
    if isinstance(last_modified, datetime):
        event.updated_at = ensure_utc(last_modified)

    return event


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _stamp(value: date) -> str:
    if isinstance(value, datetime):
        return ensure_utc(value).strftime("%Y%m%dT%H%M%SZ")
    return value.strftime("%Y%m%d")


def _rrule(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, list):
        if not value:
            return None
        value = value[0]
    return "RRULE:" + value.to_ical().decode("utf-8")


def _alarm_minutes(component: Any) -> list[int]:
    minutes = set()
    for alarm in component.walk("VALARM"):
        trigger = alarm.get("TRIGGER")
        if trigger is None:
            continue
        offset = trigger.dt
        # Absolute-time triggers have no fixed lead time
        if not isinstance(offset, timedelta):
            continue
        lead = int(abs(offset.total_seconds()) // 60)
        if 0 < lead <= MAX_REMINDER_MINUTES:
            minutes.add(lead)
    return sorted(minutes)


def _organizer_email(value: Any) -> str | None:
    text = _text(value)
    if not text:
        return None
    if text.lower().startswith("mailto:"):
        text = text[len("mailto:") :]
    return text or None


def _overlaps(event: ExternalCalendarEvent, window_start: datetime, window_end: datetime) -> bool:
    if event.is_all_day:
        if event.start_date is None:
            return False
        start = datetime.combine(event.start_date, time.min, tzinfo=timezone.utc)
        end_date = event.end_date or event.start_date + timedelta(days=1)
        end = datetime.combine(end_date, time.min, tzinfo=timezone.utc)
    else:
        if event.start is None:
            return False
        start = event.start
        end = event.end or event.start
    return start < ensure_utc(window_end) and end >= ensure_utc(window_start)
