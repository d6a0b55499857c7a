"""External calendar providers."""

from family_sync.providers.base import (
    AuthenticationError,
    AuthExchangeError,
    AuthRefreshError,
    CalendarSummary,
    ExternalCalendarEvent,
    OAuthCalendarProvider,
    ProviderError,
    ProviderNotConfiguredError,
    RateLimitError,
    SyncResult,
    TransientSyncError,
)
from family_sync.providers.google import GoogleCalendarProvider
from family_sync.providers.ics import IcsCalendarProvider, IcsFeed
from family_sync.providers.microsoft import MicrosoftCalendarProvider
from family_sync.providers.registry import ProviderRegistry, build_provider_registry

__all__ = [
    "AuthenticationError",
    "AuthExchangeError",
    "AuthRefreshError",
    "CalendarSummary",
    "ExternalCalendarEvent",
    "OAuthCalendarProvider",
    "ProviderError",
    "ProviderNotConfiguredError",
    "RateLimitError",
    "SyncResult",
    "TransientSyncError",
    "GoogleCalendarProvider",
    "IcsCalendarProvider",
    "IcsFeed",
    "MicrosoftCalendarProvider",
    "ProviderRegistry",
    "build_provider_registry",
]
