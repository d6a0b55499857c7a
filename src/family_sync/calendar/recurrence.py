"""Recurrence rule translation.

Providers describe recurring events with iCalendar RRULE expressions
(RFC 5545), e.g. `RRULE:FREQ=WEEKLY;INTERVAL=2;BYDAY=MO,WE;UNTIL=20240630`.
The family calendar stores a smaller structured model, `RecurrenceRule`.

## Supported Subset

| Part        | Mapping                                             |
|-------------|-----------------------------------------------------|
| FREQ        | DAILY, WEEKLY, MONTHLY, YEARLY (required)           |
| INTERVAL    | interval, default 1                                 |
| BYDAY       | days_of_week (0 = Sunday); ordinals like -1FR drop  |
|             | the ordinal and keep the weekday                    |
| BYMONTHDAY  | day_of_month (first value only)                     |
| UNTIL       | end_date (date part of a date or date-time)         |
| COUNT       | max_occurrences                                     |

Other parts (BYSETPOS, WKST, BYMONTH, ...) are ignored. Expressions using
another frequency (SECONDLY, MINUTELY, HOURLY) are not representable.

`parse_rrule` is strict and raises `MalformedRecurrenceError`.
`translate_recurrence` is what the sync engine uses: it never raises and
degrades any problem to a non-recurring rule, so one odd event cannot fail a
whole sync pass.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime

from pydantic import ValidationError

from family_sync.models.event import RecurrencePattern, RecurrenceRule

logger = logging.getLogger(__name__)

_PREFIX = "RRULE:"

_FREQUENCIES = {
    "DAILY": RecurrencePattern.DAILY,
    "WEEKLY": RecurrencePattern.WEEKLY,
    "MONTHLY": RecurrencePattern.MONTHLY,
    "YEARLY": RecurrencePattern.YEARLY,
}

WEEKDAY_CODES = {"SU": 0, "MO": 1, "TU": 2, "WE": 3, "TH": 4, "FR": 5, "SA": 6}

_BYDAY_RE = re.compile(r"^([+-]?\d{1,2})?([A-Z]{2})$")
_UNTIL_RE = re.compile(r"^(\d{8})(?:T(\d{6})Z?)?$")


class MalformedRecurrenceError(ValueError):
    """Raised when a recurrence expression cannot be parsed."""


def parse_rrule(expression: str) -> RecurrenceRule:
    """Parse an RRULE expression into a `RecurrenceRule`.

    The `RRULE:` prefix is optional and case-insensitive.

    Args:
        expression: RRULE text

    Returns:
        Structured recurrence rule

    Raises:
        MalformedRecurrenceError: On a missing or unsupported FREQ, a part
            without `=`, a repeated key, or an unparseable value
    """
    text = (expression or "").strip()
    if text[: len(_PREFIX)].upper() == _PREFIX:
        text = text[len(_PREFIX) :]
    if not text:
        raise MalformedRecurrenceError("Empty recurrence rule")

    parts: dict[str, str] = {}
    for part in text.split(";"):
        if not part.strip():
            continue
        key, sep, value = part.partition("=")
        key = key.strip().upper()
        if not sep or not key:
            raise MalformedRecurrenceError(f"Invalid rule part {part!r}")
        if key in parts:
            raise MalformedRecurrenceError(f"Duplicate rule part {key}")
        parts[key] = value.strip()

    freq = parts.get("FREQ")
    if not freq:
        raise MalformedRecurrenceError("Recurrence rule has no FREQ")
    pattern = _FREQUENCIES.get(freq.upper())
    if pattern is None:
        raise MalformedRecurrenceError(f"Unsupported frequency {freq!r}")

    try:
        return RecurrenceRule(
            pattern=pattern,
            interval=_parse_positive_int(parts, "INTERVAL") or 1,
            days_of_week=_parse_byday(parts.get("BYDAY")),
            day_of_month=_parse_bymonthday(parts.get("BYMONTHDAY")),
            end_date=_parse_until(parts.get("UNTIL")),
            max_occurrences=_parse_positive_int(parts, "COUNT"),
        )
    except ValidationError as e:
        raise MalformedRecurrenceError(str(e)) from e


def translate_recurrence(expression: str | None) -> RecurrenceRule:
    """Translate a provider recurrence expression, never raising.

    Absent, unsupported or malformed expressions yield a rule with
    `pattern=NONE`.
    """
    if not expression or not expression.strip():
        return RecurrenceRule()
    try:
        return parse_rrule(expression)
    except MalformedRecurrenceError as e:
        logger.warning(f"Ignoring recurrence rule {expression!r}: {e}")
        return RecurrenceRule()


def _parse_positive_int(parts: dict[str, str], key: str) -> int | None:
    raw = parts.get(key)
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError:
        raise MalformedRecurrenceError(f"{key} is not an integer: {raw!r}") from None
    if value < 1:
        raise MalformedRecurrenceError(f"{key} must be positive: {raw!r}")
    return value


def _parse_byday(raw: str | None) -> list[int]:
    if not raw:
        return []
    days: list[int] = []
    for token in raw.split(","):
        match = _BYDAY_RE.match(token.strip().upper())
        if not match or match.group(2) not in WEEKDAY_CODES:
            raise MalformedRecurrenceError(f"Invalid BYDAY value {token!r}")
        days.append(WEEKDAY_CODES[match.group(2)])
    return sorted(set(days))


def _parse_bymonthday(raw: str | None) -> int | None:
    if not raw:
        return None
    first = raw.split(",")[0].strip()
    try:
        day = int(first)
    except ValueError:
        raise MalformedRecurrenceError(f"Invalid BYMONTHDAY value {raw!r}") from None
    if day == 0 or not -31 <= day <= 31:
        raise MalformedRecurrenceError(f"BYMONTHDAY out of range: {raw!r}")
    return day


def _parse_until(raw: str | None) -> date | None:
    if not raw:
        return None
    match = _UNTIL_RE.match(raw.strip().upper())
    if not match:
        raise MalformedRecurrenceError(f"Invalid UNTIL value {raw!r}")
    try:
        if match.group(2):
            return datetime.strptime(match.group(1) + match.group(2), "%Y%m%d%H%M%S").date()
        return datetime.strptime(match.group(1), "%Y%m%d").date()
    except ValueError:
        raise MalformedRecurrenceError(f"Invalid UNTIL value {raw!r}") from None
