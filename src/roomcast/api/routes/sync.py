"""Scheduler hook.

Hosted cron services call `/api/sync/cron` with the configured bearer
secret; each call runs one dispatch tick. The endpoint refuses every call
while `CRON_SECRET` is unset.
"""

from __future__ import annotations

import logging
import secrets
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, status

from roomcast.api.dependencies import get_dispatcher
from roomcast.calendar.dispatcher import SyncDispatcher
from roomcast.config import get_settings

logger = logging.getLogger(__name__)

router = APIRouter()


def require_cron_secret(authorization: str | None = Header(default=None)) -> None:
    """Reject calls without the cron bearer token."""
    expected = get_settings().cron_secret
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Cron endpoint is not configured",
        )

    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not secrets.compare_digest(token.encode(), expected.encode()):
        logger.warning("Rejected cron call with missing or invalid token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid cron token",
            headers={"WWW-Authenticate": "Bearer"},
        )


@router.api_route("/cron", methods=["GET", "POST"], dependencies=[Depends(require_cron_secret)])
async def run_cron_dispatch(
    dispatcher: SyncDispatcher = Depends(get_dispatcher),
) -> dict[str, Any]:
    """Run one dispatch tick and report every calendar it synced."""
    results = await dispatcher.dispatch()
    return {
        "dispatched": len(results),
        "succeeded": sum(1 for r in results if r.success),
        "results": [r.to_dict() for r in results],
    }
