"""Command-line interface for the calendar sync service."""

from __future__ import annotations

import argparse
import asyncio
import base64
import json
import logging
import sys
import uuid
from pathlib import Path

import uvicorn
from pydantic import ValidationError

from roomcast.api.app import create_app
from roomcast.calendar.dispatcher import SyncDispatcher
from roomcast.calendar.sync import SyncReconciler
from roomcast.config import Settings, configure_logging, get_settings
from roomcast.database.connection import close_db, get_session_factory, init_db
from roomcast.database.encryption import get_codec
from roomcast.providers.credentials import dump_credentials, parse_credentials
from roomcast.tasks import PeriodicTask

logger = logging.getLogger(__name__)


def _build_dispatcher(settings: Settings) -> SyncDispatcher:
    reconciler = SyncReconciler(
        get_session_factory(),
        adapter_options={
            "timeout": settings.http_timeout_seconds,
            "user_agent": settings.http_user_agent,
        },
    )
    return SyncDispatcher(
        get_session_factory(),
        reconciler,
        batch_size=settings.sync_dispatch_batch_size,
        stale_after_seconds=settings.sync_stale_after_seconds,
    )


async def run_worker(settings: Settings) -> int:
    """Dispatch on a fixed interval until cancelled."""
    await init_db()
    worker = PeriodicTask(
        "sync-worker",
        _build_dispatcher(settings).dispatch,
        settings.sync_dispatch_interval_seconds,
    )
    worker.start()
    try:
        await worker.wait()
    finally:
        await close_db()
    return 0


async def run_dispatch(settings: Settings) -> int:
    """Run one dispatch tick and print its results."""
    await init_db()
    try:
        results = await _build_dispatcher(settings).dispatch()
    finally:
        await close_db()

    print(json.dumps([r.to_dict() for r in results], indent=2))
    return 0 if all(r.success for r in results) else 1


async def run_sync(settings: Settings, calendar_id: uuid.UUID) -> int:
    """Sync one calendar now and print the result."""
    await init_db()
    try:
        result = await _build_dispatcher(settings).reconciler.run(calendar_id)
    finally:
        await close_db()

    print(json.dumps(result.to_dict(), indent=2))
    return 0 if result.success else 1


def run_serve(settings: Settings, host: str | None, port: int | None) -> int:
    """Run the HTTP API until interrupted."""
    uvicorn.run(
        create_app(),
        host=host or settings.host,
        port=port or settings.port,
        log_level=settings.log_level.lower(),
    )
    return 0


def encrypt_credentials_file(path: Path) -> int:
    """Validate a JSON credential file and print the encrypted blob as base64."""
    try:
        credentials = parse_credentials(json.loads(path.read_text(encoding="utf-8")))
    except (OSError, json.JSONDecodeError, ValidationError) as e:
        print(f"Invalid credentials file {path}: {e}", file=sys.stderr)
        return 2

    blob = get_codec().encrypt(dump_credentials(credentials))
    print(base64.b64encode(blob).decode("ascii"))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="roomcast",
        description="RoomCast Sync - Cache external calendars and push them to displays",
    )
    parser.add_argument(
        "--version",
        action="version",
        version="%(prog)s 0.1.0",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Override LOG_LEVEL for this run",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API and display streams")
    serve_parser.add_argument("--host", default=None, help="Bind address (default: HOST setting)")
    serve_parser.add_argument("--port", type=int, default=None, help="Port (default: PORT setting)")

    subparsers.add_parser("worker", help="Run the sync dispatch loop until interrupted")
    subparsers.add_parser("dispatch", help="Run one dispatch tick")

    sync_parser = subparsers.add_parser("sync", help="Sync one calendar now")
    sync_parser.add_argument("calendar_id", type=uuid.UUID, help="Calendar UUID")

    encrypt_parser = subparsers.add_parser(
        "encrypt-credentials", help="Encrypt a JSON credential file for seeding"
    )
    encrypt_parser.add_argument("file", type=Path, help="Path to the credential JSON file")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    settings = get_settings()
    configure_logging((args.log_level or settings.log_level).upper())

    if args.command == "serve":
        return run_serve(settings, args.host, args.port)
    if args.command == "encrypt-credentials":
        return encrypt_credentials_file(args.file)

    try:
        if args.command == "worker":
            return asyncio.run(run_worker(settings))
        if args.command == "dispatch":
            return asyncio.run(run_dispatch(settings))
        return asyncio.run(run_sync(settings, args.calendar_id))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
