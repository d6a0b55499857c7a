"""Calendar connection models.

A connection binds one family to one external calendar: an OAuth-backed
provider calendar (Google, Microsoft) or a read-only ICS subscription.

## Lifecycle

```
PendingAuth --complete_oauth--> Active <--> SyncError
                                  |  \\
                                  |   +--> AuthError --complete_oauth/update_tokens--> Active
                                  v
                  Paused <--pause/resume--> Active
  any --disconnect--> Disconnected (terminal)
```

Paused connections are also disabled: neither the scheduler nor a manual
sync runs them until they are resumed.

ICS subscriptions start out Active because they need no authorization.

State changes are pure functions that return a new `CalendarConnection`;
callers persist the returned record. Every returned record is re-validated,
so the invariants below hold for any value produced by this module:

- ICS connections never hold tokens and always hold an ICS URL
- OAuth connections never hold an ICS URL
- An OAuth connection that is Active, SyncError or AuthError holds tokens
- `external_calendar_id` is only set once OAuth has been completed
- `next_sync_at` is never before `last_synced_at`
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any
from urllib.parse import urlsplit
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

MAX_ERROR_LENGTH = 1000


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Normalize a datetime to UTC. Naive values are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class CalendarProviderKind(str, Enum):
    """Kind of external calendar a connection points at."""

    GOOGLE = "google"
    MICROSOFT = "microsoft"
    ICS = "ics"

    @property
    def requires_oauth(self) -> bool:
        return self is not CalendarProviderKind.ICS


class ConnectionStatus(str, Enum):
    """Health/lifecycle state of a connection."""

    PENDING_AUTH = "pending_auth"  # OAuth flow not completed yet
    ACTIVE = "active"
    PAUSED = "paused"  # Paused by the user
    AUTH_ERROR = "auth_error"  # Credentials rejected, user must re-link
    SYNC_ERROR = "sync_error"  # Transient failure, retried next pass
    DISCONNECTED = "disconnected"


# Statuses the scheduler picks up when the connection is due
SCHEDULABLE_STATUSES = frozenset({ConnectionStatus.ACTIVE, ConnectionStatus.SYNC_ERROR})

# Statuses in which an OAuth connection must hold tokens
_TOKEN_BEARING_STATUSES = frozenset(
    {ConnectionStatus.ACTIVE, ConnectionStatus.SYNC_ERROR, ConnectionStatus.AUTH_ERROR}
)


class OAuthTokens(BaseModel):
    """OAuth credentials for a provider account."""

    access_token: str = Field(..., min_length=1)
    refresh_token: str | None = None
    token_type: str = "Bearer"
    expires_at: datetime | None = Field(
        default=None, description="Access token expiry (UTC)"
    )
    scope: str | None = None

    @field_validator("expires_at")
    @classmethod
    def _expiry_as_utc(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v) if v is not None else None

    @property
    def can_refresh(self) -> bool:
        return bool(self.refresh_token)

    def expires_within(self, margin: timedelta, now: datetime | None = None) -> bool:
        """Check whether the access token expires within `margin` of `now`.

        Tokens with an unknown expiry are treated as valid.
        """
        if self.expires_at is None:
            return False
        now = ensure_utc(now) if now is not None else utc_now()
        return self.expires_at <= now + margin


class SyncPolicy(BaseModel):
    """Per-connection synchronization preferences."""

    sync_interval_minutes: int = Field(default=15, ge=1, le=1440)
    sync_past_days: int = Field(default=7, ge=0)
    sync_future_days: int = Field(default=90, ge=1)
    import_all_day_events: bool = True
    import_declined_events: bool = False
    sync_descriptions: bool = True
    sync_locations: bool = True
    sync_reminders: bool = True
    two_way: bool = Field(
        default=False, description="Push local edits to the provider (not acted on)"
    )

    @classmethod
    def for_ics_subscription(cls, **overrides: Any) -> SyncPolicy:
        """Defaults for ICS feeds, which change less often and are fetched whole."""
        values: dict[str, Any] = {"sync_interval_minutes": 60, "sync_future_days": 180}
        values.update(overrides)
        return cls(**values)

    @property
    def interval(self) -> timedelta:
        return timedelta(minutes=self.sync_interval_minutes)

    def window(self, now: datetime) -> tuple[datetime, datetime]:
        """Time window `[now - past, now + future]` to fetch events for."""
        return (
            now - timedelta(days=self.sync_past_days),
            now + timedelta(days=self.sync_future_days),
        )


class CalendarConnection(BaseModel):
    """A family's link to one external calendar."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    family_id: str = Field(..., min_length=1)
    name: str = Field(..., description="Display name of the connection")
    provider: CalendarProviderKind
    status: ConnectionStatus = ConnectionStatus.PENDING_AUTH

    # Credentials / source
    tokens: OAuthTokens | None = None
    ics_url: str | None = None
    external_calendar_id: str | None = None
    external_account_id: str | None = None

    # Incremental sync token (OAuth) or caching validator (ICS)
    sync_cursor: str | None = None

    policy: SyncPolicy = Field(default_factory=SyncPolicy)

    # Defaults applied to imported events
    color: str | None = None
    assigned_member_ids: list[str] = Field(default_factory=list)

    # Health
    is_enabled: bool = True
    last_synced_at: datetime | None = None
    next_sync_at: datetime | None = None
    last_sync_error: str | None = None
    consecutive_failures: int = Field(default=0, ge=0)

    created_at: datetime = Field(default_factory=utc_now)
    modified_at: datetime = Field(default_factory=utc_now)

    @field_validator("last_synced_at", "next_sync_at", "created_at", "modified_at")
    @classmethod
    def _timestamps_as_utc(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v) if v is not None else None

    @model_validator(mode="after")
    def _check_invariants(self) -> CalendarConnection:
        if self.provider.requires_oauth:
            if self.ics_url is not None:
                raise ValueError("OAuth connections cannot carry an ICS URL")
            if self.tokens is None and self.status in _TOKEN_BEARING_STATUSES:
                raise ValueError(
                    f"OAuth connection in status {self.status.value} requires tokens"
                )
            if (
                self.external_calendar_id is not None
                and self.status is ConnectionStatus.PENDING_AUTH
            ):
                raise ValueError("External calendar is bound only after OAuth")
        else:
            if self.tokens is not None:
                raise ValueError("ICS connections cannot carry OAuth tokens")
            if not self.ics_url:
                raise ValueError("ICS connections require an ICS URL")
            if self.external_calendar_id is not None:
                raise ValueError("ICS connections have no external calendar id")

        if (
            self.last_synced_at is not None
            and self.next_sync_at is not None
            and self.next_sync_at < self.last_synced_at
        ):
            raise ValueError("next_sync_at cannot be before last_synced_at")
        return self

    @property
    def requires_oauth(self) -> bool:
        return self.provider.requires_oauth

    @property
    def external_calendar_key(self) -> str:
        """Calendar id stamped on imported events.

        ICS feeds have no provider-side calendar id, so the connection id
        stands in for it.
        """
        return self.external_calendar_id or self.id

    def is_due(self, now: datetime) -> bool:
        return (
            self.is_enabled
            and self.status in SCHEDULABLE_STATUSES
            and self.next_sync_at is not None
            and self.next_sync_at <= ensure_utc(now)
        )


class InvalidIcsUrlError(ValueError):
    """Raised when an ICS subscription URL is not usable."""


def normalize_ics_url(url: str) -> str:
    """Normalize an ICS subscription URL.

    `webcal://` is rewritten to `https://`; only http(s) URLs with a host
    are accepted.

    Raises:
        InvalidIcsUrlError: If the URL is empty or uses another scheme
    """
    url = (url or "").strip()
    if url.lower().startswith("webcal://"):
        url = "https://" + url[len("webcal://") :]

    parts = urlsplit(url)
    if parts.scheme.lower() not in ("http", "https") or not parts.netloc:
        raise InvalidIcsUrlError(f"Invalid calendar URL: {url!r}")
    return url


def _evolve(connection: CalendarConnection, now: datetime, **changes: Any) -> CalendarConnection:
    data = connection.model_dump()
    data.update(changes)
    data["modified_at"] = now
    return CalendarConnection.model_validate(data)


def _require_connected(connection: CalendarConnection) -> None:
    if connection.status is ConnectionStatus.DISCONNECTED:
        raise ValueError("Disconnected connections cannot record sync results")


def _truncate(message: str) -> str:
    if len(message) <= MAX_ERROR_LENGTH:
        return message
    return message[: MAX_ERROR_LENGTH - 3] + "..."


def new_oauth_connection(
    family_id: str,
    provider: CalendarProviderKind,
    name: str,
    *,
    policy: SyncPolicy | None = None,
    color: str | None = None,
    assigned_member_ids: list[str] | None = None,
    now: datetime | None = None,
) -> CalendarConnection:
    """Create a connection awaiting the OAuth flow."""
    if not provider.requires_oauth:
        raise ValueError(f"Provider {provider.value} does not use OAuth")
    now = now or utc_now()
    return CalendarConnection(
        family_id=family_id,
        name=name,
        provider=provider,
        status=ConnectionStatus.PENDING_AUTH,
        policy=policy or SyncPolicy(),
        color=color,
        assigned_member_ids=list(assigned_member_ids or []),
        created_at=now,
        modified_at=now,
    )


def new_ics_connection(
    family_id: str,
    name: str,
    url: str,
    *,
    policy: SyncPolicy | None = None,
    color: str | None = None,
    assigned_member_ids: list[str] | None = None,
    now: datetime | None = None,
) -> CalendarConnection:
    """Create an ICS subscription, due for its first sync immediately."""
    now = now or utc_now()
    return CalendarConnection(
        family_id=family_id,
        name=name,
        provider=CalendarProviderKind.ICS,
        status=ConnectionStatus.ACTIVE,
        ics_url=normalize_ics_url(url),
        policy=policy or SyncPolicy.for_ics_subscription(),
        color=color,
        assigned_member_ids=list(assigned_member_ids or []),
        next_sync_at=now,
        created_at=now,
        modified_at=now,
    )


def complete_oauth(
    connection: CalendarConnection,
    tokens: OAuthTokens,
    external_calendar_id: str,
    *,
    calendar_name: str | None = None,
    calendar_color: str | None = None,
    now: datetime | None = None,
) -> CalendarConnection:
    """Bind tokens and a provider calendar; the connection becomes due now."""
    if not connection.requires_oauth:
        raise ValueError("ICS connections do not use OAuth")
    if connection.status is ConnectionStatus.DISCONNECTED:
        raise ValueError("Disconnected connections cannot be re-authorized")
    now = now or utc_now()
    return _evolve(
        connection,
        now,
        status=ConnectionStatus.ACTIVE,
        tokens=tokens,
        external_calendar_id=external_calendar_id,
        name=calendar_name or connection.name,
        color=calendar_color or connection.color,
        sync_cursor=None,
        last_sync_error=None,
        consecutive_failures=0,
        is_enabled=True,
        last_synced_at=None,
        next_sync_at=now,
    )


def update_tokens(
    connection: CalendarConnection,
    tokens: OAuthTokens,
    now: datetime | None = None,
) -> CalendarConnection:
    """Store refreshed tokens. An AuthError connection returns to Active."""
    now = now or utc_now()
    status = connection.status
    if status is ConnectionStatus.AUTH_ERROR:
        status = ConnectionStatus.ACTIVE
    return _evolve(connection, now, tokens=tokens, status=status)


def record_successful_sync(
    connection: CalendarConnection,
    *,
    now: datetime,
    cursor: str | None,
) -> CalendarConnection:
    """Mark a completed pass: failures reset, next pass one interval out."""
    _require_connected(connection)
    return _evolve(
        connection,
        now,
        status=ConnectionStatus.ACTIVE,
        sync_cursor=cursor,
        last_synced_at=now,
        next_sync_at=now + connection.policy.interval,
        last_sync_error=None,
        consecutive_failures=0,
    )


def record_sync_failure(
    connection: CalendarConnection,
    *,
    now: datetime,
    error: str,
    is_auth_error: bool,
) -> CalendarConnection:
    """Record a failed pass.

    Auth failures park the connection in AuthError, which the scheduler
    skips until the user re-links. Transient failures are retried after one
    normal interval.
    """
    _require_connected(connection)
    status = ConnectionStatus.AUTH_ERROR if is_auth_error else ConnectionStatus.SYNC_ERROR
    return _evolve(
        connection,
        now,
        status=status,
        last_sync_error=_truncate(error),
        consecutive_failures=connection.consecutive_failures + 1,
        next_sync_at=now + connection.policy.interval,
    )


def update_settings(
    connection: CalendarConnection,
    *,
    name: str | None = None,
    color: str | None = None,
    assigned_member_ids: list[str] | None = None,
    policy: SyncPolicy | None = None,
    now: datetime | None = None,
) -> CalendarConnection:
    """Change the user-editable settings of a connection.

    Omitted values are left as they are. The policy is validated again as
    part of the returned record; an interval change applies from the next
    completed pass.
    """
    if connection.status is ConnectionStatus.DISCONNECTED:
        raise ValueError("Disconnected connections cannot be changed")

    changes: dict[str, Any] = {}
    if name:
        changes["name"] = name
    if color:
        changes["color"] = color
    if assigned_member_ids is not None:
        changes["assigned_member_ids"] = list(assigned_member_ids)
    if policy is not None:
        changes["policy"] = policy.model_dump()
    return _evolve(connection, now or utc_now(), **changes)


def pause(connection: CalendarConnection, now: datetime | None = None) -> CalendarConnection:
    """Disable a connection; neither the scheduler nor a manual sync runs it."""
    if connection.status is ConnectionStatus.DISCONNECTED:
        raise ValueError("Disconnected connections cannot be paused")
    return _evolve(
        connection,
        now or utc_now(),
        status=ConnectionStatus.PAUSED,
        is_enabled=False,
        next_sync_at=None,
    )


def resume(connection: CalendarConnection, now: datetime | None = None) -> CalendarConnection:
    """Re-enable a paused connection; it becomes due immediately."""
    if connection.status is ConnectionStatus.DISCONNECTED:
        raise ValueError("Disconnected connections cannot be resumed")
    if connection.requires_oauth and connection.tokens is None:
        raise ValueError("Connection has not completed authorization")
    now = now or utc_now()
    return _evolve(
        connection,
        now,
        status=ConnectionStatus.ACTIVE,
        is_enabled=True,
        next_sync_at=max(now, connection.last_synced_at or now),
    )


def disconnect(connection: CalendarConnection, now: datetime | None = None) -> CalendarConnection:
    """Terminal state: credentials and sync cursor are dropped."""
    return _evolve(
        connection,
        now or utc_now(),
        status=ConnectionStatus.DISCONNECTED,
        tokens=None,
        sync_cursor=None,
        is_enabled=False,
    )
