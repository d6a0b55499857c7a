"""Provider lookup by connection kind."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from family_sync.config import Settings, get_settings
from family_sync.models.connection import CalendarProviderKind
from family_sync.providers.base import ProviderNotConfiguredError
from family_sync.providers.google import GoogleCalendarProvider
from family_sync.providers.ics import IcsCalendarProvider
from family_sync.providers.microsoft import MicrosoftCalendarProvider

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Maps each `CalendarProviderKind` to its adapter instance."""

    def __init__(self, providers: dict[CalendarProviderKind, Any] | None = None):
        self._providers: dict[CalendarProviderKind, Any] = dict(providers or {})

    def register(self, kind: CalendarProviderKind, provider: Any) -> None:
        self._providers[kind] = provider

    def get(self, kind: CalendarProviderKind) -> Any:
        """Get the adapter for a provider kind.

        Raises:
            ProviderNotConfiguredError: If no adapter is registered
        """
        try:
            return self._providers[kind]
        except KeyError:
            raise ProviderNotConfiguredError(
                f"No provider configured for {kind.value}", provider=kind.value
            ) from None

    def __contains__(self, kind: object) -> bool:
        return kind in self._providers

    async def aclose(self) -> None:
        """Close the HTTP clients held by the adapters."""
        for provider in self._providers.values():
            close = getattr(provider, "aclose", None)
            if close is not None:
                await close()


def build_provider_registry(
    settings: Settings | None = None,
    client: httpx.AsyncClient | None = None,
) -> ProviderRegistry:
    """Create adapters for every provider the settings enable.

    ICS is always available; OAuth providers need client credentials.
    """
    settings = settings or get_settings()
    timeout = settings.provider_timeout_seconds
    registry = ProviderRegistry()

    registry.register(
        CalendarProviderKind.ICS,
        IcsCalendarProvider(
            user_agent=settings.ics_user_agent,
            timeout=timeout,
            max_bytes=settings.ics_max_bytes,
            client=client,
        ),
    )

    if settings.google_oauth_configured:
        registry.register(
            CalendarProviderKind.GOOGLE,
            GoogleCalendarProvider(
                client_id=settings.google_client_id,
                client_secret=settings.google_client_secret,
                scopes=settings.google_calendar_scopes,
                timeout=timeout,
                client=client,
            ),
        )
    else:
        logger.warning(
            "Google Calendar not configured. Set GOOGLE_CLIENT_ID and "
            "GOOGLE_CLIENT_SECRET environment variables."
        )

    if settings.microsoft_oauth_configured:
        registry.register(
            CalendarProviderKind.MICROSOFT,
            MicrosoftCalendarProvider(
                client_id=settings.microsoft_client_id,
                client_secret=settings.microsoft_client_secret,
                tenant_id=settings.microsoft_tenant_id,
                scopes=settings.microsoft_scopes,
                timeout=timeout,
                client=client,
            ),
        )
    else:
        logger.warning(
            "Microsoft Calendar not configured. Set MICROSOFT_CLIENT_ID and "
            "MICROSOFT_CLIENT_SECRET environment variables."
        )

    return registry
