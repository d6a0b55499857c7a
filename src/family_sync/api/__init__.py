"""FastAPI application and routes.

This module provides the REST API for the calendar sync service.

## API Structure

- /api/families/{family_id}/calendar-connections - Connections of a family:
  listing and settings updates, ICS subscriptions, the OAuth flow, manual
  sync, pause/resume/disconnect
- /internal/sync - Scheduler trigger and error diagnostics
- /health - Liveness

## Security

- All communication should be over HTTPS in production
- /internal routes are meant for the platform scheduler only and must not
  be exposed publicly
- Family membership is checked by the gateway in front of this service
"""

from family_sync.api.app import create_app

__all__ = ["create_app"]
