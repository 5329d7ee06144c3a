"""Calendar cache synchronization.

## Components

- `SyncReconciler`: one sync cycle for one calendar (fetch, diff, write,
  notify)
- `SyncDispatcher`: picks due calendars on every scheduler tick and runs
  them concurrently
- `queries`: trigger-sync, cached event reads and display configuration
  for the HTTP surface

## Sync Triggers

1. **Worker**: `PeriodicTask` calling `SyncDispatcher.dispatch`
2. **Cron**: the `/api/sync/cron` endpoint runs one dispatch
3. **Manual**: trigger-sync makes a calendar due immediately
"""

from roomcast.calendar.dispatcher import SyncDispatcher
from roomcast.calendar.sync import (
    SyncOutcome,
    SyncPlan,
    SyncReconciler,
    SyncResult,
    compute_backoff,
    diff_events,
)

__all__ = [
    "SyncDispatcher",
    "SyncOutcome",
    "SyncPlan",
    "SyncReconciler",
    "SyncResult",
    "compute_backoff",
    "diff_events",
]
