"""Base calendar provider abstraction.

This module defines the interface for external calendar providers and the
canonical format that all providers must translate their data into.

## Canonical Data Format

Every provider translates its API payloads into `ExternalCalendarEvent`
records collected in a `SyncResult`. The sync engine never sees
provider-specific JSON or iCalendar components.

### Canonical Conventions
- Timed events: aware UTC datetimes in `start` / `end`
- All-day events: `start_date` / `end_date` (end exclusive)
- Recurrence: the raw `RRULE:` expression, translated later
- Reminders: minutes before start
- Colors: `#RRGGBB` hex strings

## Capability Variants

- `OAuthCalendarProvider`: account-based calendars behind OAuth 2.0
  (authorization URL, code exchange, refresh, calendar listing, incremental
  change feeds with an opaque cursor)
- `IcsCalendarProvider` (see `family_sync.providers.ics`): public or secret
  ICS feed URLs, fetched whole with HTTP caching validators as the cursor

## Errors

```
ProviderError
├── TransientSyncError        retried on the next pass
│   └── RateLimitError
├── AuthenticationError       credentials rejected, user must re-link
│   ├── AuthExchangeError
│   └── AuthRefreshError
├── CursorExpiredError        handled inside adapters (full resync)
└── ProviderNotConfiguredError
```
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any

import httpx
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

from family_sync.models.connection import CalendarProviderKind, OAuthTokens, utc_now

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Base exception for calendar provider errors."""

    def __init__(
        self,
        message: str,
        provider: str,
        status_code: int | None = None,
        response_body: str | None = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.response_body = response_body


class TransientSyncError(ProviderError):
    """Raised for failures expected to clear up on a later attempt."""

    pass


class RateLimitError(TransientSyncError):
    """Raised when provider rate limit is exceeded."""

    def __init__(
        self,
        provider: str,
        retry_after: int | None = None,
        status_code: int | None = None,
    ):
        super().__init__(
            f"Rate limit exceeded for {provider}",
            provider=provider,
            status_code=status_code,
        )
        self.retry_after = retry_after


class AuthenticationError(ProviderError):
    """Raised when the provider rejects the credentials."""

    pass


class AuthExchangeError(AuthenticationError):
    """Raised when an authorization code cannot be exchanged for tokens."""

    pass


class AuthRefreshError(AuthenticationError):
    """Raised when a refresh token is missing, expired or revoked."""

    pass


class CursorExpiredError(ProviderError):
    """Raised when the provider no longer accepts an incremental sync cursor."""

    pass


class ProviderNotConfiguredError(ProviderError):
    """Raised when a provider is used without client credentials."""

    pass


@dataclass
class ExternalCalendarEvent:
    """An event as reported by an external calendar."""

    external_id: str
    title: str = ""
    description: str | None = None
    location: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    start_date: date | None = None  # For all-day events
    end_date: date | None = None  # Exclusive
    is_all_day: bool = False
    is_cancelled: bool = False
    is_declined: bool = False
    recurrence_rule: str | None = None  # "RRULE:..." expression
    recurring_event_id: str | None = None
    color: str | None = None
    reminders: list[int] = field(default_factory=list)
    updated_at: datetime | None = None
    organizer_email: str | None = None


@dataclass
class CalendarSummary:
    """A calendar available in a provider account."""

    id: str
    name: str
    description: str | None = None
    color: str | None = None
    is_read_only: bool = False
    is_primary: bool = False
    time_zone: str | None = None


@dataclass
class SyncResult:
    """Outcome of one provider fetch.

    Attributes:
        events: Changed (or, for full fetches, all) events
        deleted_ids: External ids removed since the previous cursor
        cursor: Cursor to store for the next fetch
        full_resync: The stored cursor was rejected and a full window
            fetch was performed instead
        full_snapshot: `events` is everything the source holds in the
            window, so stored events missing from it are gone upstream
    """

    events: list[ExternalCalendarEvent] = field(default_factory=list)
    deleted_ids: list[str] = field(default_factory=list)
    cursor: str | None = None
    full_resync: bool = False
    full_snapshot: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.events and not self.deleted_ids


class HttpCalendarProvider:
    """HTTP plumbing shared by all providers.

    Holds one lazily created `httpx.AsyncClient`. A client can be injected,
    which tests use to plug in `httpx.MockTransport`.
    """

    name: str
    kind: CalendarProviderKind
    requires_oauth: bool = False

    def __init__(
        self,
        timeout: float = 30.0,
        user_agent: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize the provider.

        Args:
            timeout: Request timeout in seconds
            user_agent: User-Agent string for requests
            client: Pre-configured HTTP client (optional)
        """
        self.timeout = timeout
        self.user_agent = user_agent or "family-calendar-sync/0.1.0"
        self._client = client

    async def __aenter__(self) -> HttpCalendarProvider:
        """Enter async context manager."""
        self._get_client()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Exit async context manager."""
        await self.aclose()

    async def aclose(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, follow_redirects=True)
        return self._client

    def _get_default_headers(self) -> dict[str, str]:
        """Get default headers for requests."""
        return {
            "User-Agent": self.user_agent,
            "Accept": "application/json",
        }

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError)),
        reraise=True,
    )
    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Send a request with retry logic.

        Network errors and timeouts are retried. 304 responses are returned
        to the caller; the other error statuses are mapped onto the provider
        error hierarchy.

        Raises:
            RateLimitError: On HTTP 429
            AuthenticationError: On HTTP 401
            CursorExpiredError: On HTTP 410
            TransientSyncError: On any other status >= 400
        """
        client = self._get_client()
        request_headers = self._get_default_headers()
        if headers:
            request_headers.update(headers)

        response = await client.request(
            method, url, params=params, data=data, headers=request_headers
        )

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitError(
                self.name,
                retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
                status_code=429,
            )

        if response.status_code < 400:
            return response

        error_class: type[ProviderError] = TransientSyncError
        if response.status_code == 401:
            error_class = AuthenticationError
        elif response.status_code == 410:
            error_class = CursorExpiredError

        raise error_class(
            f"{self.name} request failed: HTTP {response.status_code}",
            provider=self.name,
            status_code=response.status_code,
            response_body=response.text,
        )


class OAuthCalendarProvider(HttpCalendarProvider, ABC):
    """Abstract base class for OAuth-backed calendar providers.

    Example:
        ```python
        async with GoogleCalendarProvider(client_id, client_secret) as provider:
            url = provider.get_authorization_url(state, redirect_uri)
            tokens = await provider.exchange_authorization_code(code, redirect_uri)
            calendars = await provider.list_calendars(tokens)
            result = await provider.fetch_changes(
                tokens, calendars[0].id, window_start, window_end, cursor=None
            )
        ```
    """

    requires_oauth = True

    def __init__(
        self,
        client_id: str | None,
        client_secret: str | None,
        scopes: list[str],
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(timeout=timeout, client=client)
        self.client_id = client_id
        self.client_secret = client_secret
        self.scopes = scopes

    @property
    def is_configured(self) -> bool:
        """Check if OAuth client credentials are present."""
        return bool(self.client_id and self.client_secret)

    def _require_configured(self) -> None:
        if not self.is_configured:
            raise ProviderNotConfiguredError(
                f"{self.name} OAuth client is not configured", provider=self.name
            )

    async def _token_request(
        self,
        url: str,
        data: dict[str, Any],
        error_class: type[AuthenticationError],
    ) -> dict[str, Any]:
        """POST to a token endpoint.

        Client errors (invalid_grant, bad code, revoked consent) surface as
        `error_class`; server errors and rate limiting stay transient.
        """
        try:
            response = await self._request("POST", url, data=data)
        except RateLimitError:
            raise
        except (TransientSyncError, AuthenticationError) as e:
            if e.status_code is not None and e.status_code >= 500:
                raise
            logger.error(f"{self.name} token request rejected: {e.response_body}")
            raise error_class(
                f"{self.name} token request rejected: HTTP {e.status_code}",
                provider=self.name,
                status_code=e.status_code,
                response_body=e.response_body,
            ) from e
        return response.json()

    @staticmethod
    def _tokens_from_response(
        data: dict[str, Any],
        previous_refresh_token: str | None = None,
    ) -> OAuthTokens:
        expires_at = None
        if "expires_in" in data:
            expires_at = utc_now().replace(microsecond=0) + timedelta(
                seconds=int(data["expires_in"])
            )

        return OAuthTokens(
            access_token=data["access_token"],
            # Providers may not return a new refresh token
            refresh_token=data.get("refresh_token") or previous_refresh_token,
            token_type=data.get("token_type", "Bearer"),
            expires_at=expires_at,
            scope=data.get("scope"),
        )

    @abstractmethod
    def get_authorization_url(self, state: str, redirect_uri: str) -> str:
        """Build the consent URL the user is redirected to.

        Args:
            state: Opaque state echoed back on the callback
            redirect_uri: OAuth callback URL

        Returns:
            Authorization URL requesting offline access
        """
        pass

    @abstractmethod
    async def exchange_authorization_code(
        self, code: str, redirect_uri: str
    ) -> OAuthTokens:
        """Exchange an authorization code for tokens.

        Raises:
            AuthExchangeError: If the code is invalid or expired
        """
        pass

    @abstractmethod
    async def refresh_tokens(self, tokens: OAuthTokens) -> OAuthTokens:
        """Obtain a fresh access token.

        Raises:
            AuthRefreshError: If the refresh token is missing or rejected
        """
        pass

    async def revoke_tokens(self, tokens: OAuthTokens) -> None:
        """Revoke tokens at the provider, if supported."""
        return None

    @abstractmethod
    async def list_calendars(self, tokens: OAuthTokens) -> list[CalendarSummary]:
        """List calendars in the authorized account."""
        pass

    @abstractmethod
    async def fetch_changes(
        self,
        tokens: OAuthTokens,
        calendar_id: str,
        window_start: datetime,
        window_end: datetime,
        cursor: str | None = None,
    ) -> SyncResult:
        """Fetch events changed since `cursor`, or all events in the window.

        A cursor the provider no longer accepts triggers a full window fetch
        with `full_resync=True`; it is never raised to the caller.

        Raises:
            AuthenticationError: If the access token is rejected
            TransientSyncError: On other provider failures
        """
        pass
