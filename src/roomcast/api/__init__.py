"""FastAPI application and routes.

This module provides the HTTP surface of the sync service.

## API Structure

- /api/display/{token}/events - Server-Sent Events stream for a display
- /api/displays - Display configuration push
- /api/calendars - Trigger sync, read cache, test and discover credentials
- /api/health - Cache and connection status
- /api/sync/cron - Scheduler hook for hosted cron

## Authentication

Displays authenticate with their access token in the URL. Admin routes are
expected to sit behind the admin surface's own authentication; the cron
hook requires the `CRON_SECRET` bearer token.
"""

from roomcast.api.app import create_app

__all__ = ["create_app"]
