"""Errors raised by the connection and sync services."""

from __future__ import annotations


class ConnectionNotFound(LookupError):
    """Raised when a connection id does not exist."""

    def __init__(self, connection_id: str):
        super().__init__(f"Calendar connection {connection_id} not found")
        self.connection_id = connection_id


class NoCalendarsAvailable(Exception):
    """Raised when an authorized account exposes no calendars."""

    def __init__(self, provider: str):
        super().__init__(f"No calendars available in the {provider} account")
        self.provider = provider


class InvalidOAuthState(ValueError):
    """Raised when an OAuth callback state cannot be decoded."""
