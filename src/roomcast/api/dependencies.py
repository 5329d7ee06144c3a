"""FastAPI dependencies for the long-lived services built in the lifespan."""

from __future__ import annotations

from typing import Any

from fastapi import Request

from roomcast.calendar.dispatcher import SyncDispatcher
from roomcast.calendar.sync import SyncReconciler
from roomcast.sse.registry import ConnectionRegistry


def get_registry(request: Request) -> ConnectionRegistry:
    return request.app.state.registry


def get_reconciler(request: Request) -> SyncReconciler:
    return request.app.state.reconciler


def get_dispatcher(request: Request) -> SyncDispatcher:
    return request.app.state.dispatcher


def get_adapter_options(request: Request) -> dict[str, Any]:
    """Keyword arguments for adapters created by request handlers."""
    return request.app.state.adapter_options
