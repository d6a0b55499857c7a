"""Command-line interface for family calendar sync."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from family_sync.calendar.connections import ConnectionService
from family_sync.calendar.exceptions import ConnectionNotFound
from family_sync.calendar.scheduler import SyncScheduler
from family_sync.calendar.sync import CalendarSyncService, SyncSummary
from family_sync.config import get_settings
from family_sync.database.connection import close_db, create_tables, get_session_factory, init_db
from family_sync.database.repositories import SqlConnectionRepository, SqlEventRepository
from family_sync.providers.registry import ProviderRegistry, build_provider_registry

logger = logging.getLogger(__name__)


def _print_summary(summary: SyncSummary) -> None:
    if summary.success:
        print(
            f"{summary.connection_id}: ok "
            f"(+{summary.events_added} ~{summary.events_updated} -{summary.events_deleted}, "
            f"{summary.duration.total_seconds():.1f}s)"
        )
    else:
        kind = "auth error" if summary.is_auth_error else "error"
        print(f"{summary.connection_id}: {kind}: {summary.error_message}")


def _build_services(
    providers: ProviderRegistry,
) -> tuple[ConnectionService, SyncScheduler]:
    settings = get_settings()
    session_factory = get_session_factory()
    connections = SqlConnectionRepository(session_factory)
    sync_service = CalendarSyncService(
        connections, SqlEventRepository(session_factory), providers, settings
    )
    service = ConnectionService(connections, providers, sync_service, settings)
    scheduler = SyncScheduler(
        connections, sync_service, max_concurrency=settings.sync_max_concurrency
    )
    return service, scheduler


async def _run(args: argparse.Namespace) -> int:
    await init_db()
    providers = build_provider_registry()
    try:
        service, scheduler = _build_services(providers)

        if args.command == "init-db":
            await create_tables()
            print("Database tables created")
            return 0

        if args.command == "run-due":
            limit = args.limit or get_settings().sync_batch_limit
            summaries = await scheduler.run_due_syncs(limit=limit)
            for summary in summaries:
                _print_summary(summary)
            if not summaries:
                print("No connections due")
            return 0 if all(s.success for s in summaries) else 1

        if args.command == "sync":
            try:
                summary = await service.sync_now(args.connection_id)
            except ConnectionNotFound:
                print(f"Connection {args.connection_id} not found", file=sys.stderr)
                return 2
            _print_summary(summary)
            return 0 if summary.success else 1

        if args.command == "validate-ics":
            result = await service.validate_ics_url(args.url)
            if not result.is_valid:
                print(f"Invalid: {result.error}")
                return 1
            print(f"Valid: {result.calendar_name or '(unnamed)'}, {result.event_count} events")
            return 0

        if args.command == "errors":
            connections = await service.connections_in_error()
            for connection in connections:
                print(
                    f"{connection.id}\t{connection.provider.value}\t{connection.status.value}\t"
                    f"failures={connection.consecutive_failures}\t{connection.last_sync_error}"
                )
            if not connections:
                print("No connections in error")
            return 0

        return 0
    finally:
        await providers.aclose()
        await close_db()


def main() -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        description="Family Calendar Sync - Keep family calendars in step with Google, Outlook and ICS feeds"
    )
    parser.add_argument(
        "--version",
        action="version",
        version="%(prog)s 0.1.0",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Run-due command
    run_due_parser = subparsers.add_parser(
        "run-due", help="Sync every connection that is due"
    )
    run_due_parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Maximum number of connections in this pass",
    )

    # Sync command
    sync_parser = subparsers.add_parser("sync", help="Sync one connection now")
    sync_parser.add_argument("connection_id", help="Calendar connection id")

    # Validate command
    validate_parser = subparsers.add_parser(
        "validate-ics", help="Check that a URL serves a readable calendar"
    )
    validate_parser.add_argument("url", help="ICS or webcal URL")

    subparsers.add_parser("errors", help="List connections whose last sync failed")
    subparsers.add_parser("init-db", help="Create database tables (development only)")
    subparsers.add_parser("serve", help="Run the HTTP API")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        return 0

    logging.basicConfig(
        level=get_settings().log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "serve":
        import uvicorn

        settings = get_settings()
        uvicorn.run(
            "family_sync.api:create_app",
            factory=True,
            host=settings.host,
            port=settings.port,
            log_level=settings.log_level.lower(),
        )
        return 0

    return asyncio.run(_run(args))


if __name__ == "__main__":
    sys.exit(main())
