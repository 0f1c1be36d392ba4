from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable

from records_sync.bootstrap.container import AppContainer, build_container
from records_sync.bootstrap.logging import configure_logging, install_exception_hook
from records_sync.bootstrap.settings import resolve_log_dir
from records_sync.core.errors import BusinessError
from records_sync.infrastructure.db import get_connection
from records_sync.infrastructure.local_config import SyncSettings, SyncSettingsStore
from records_sync.infrastructure.migrations import run_migration_command

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_SYNC_FAILURES = 1
EXIT_USAGE_ERROR = 2

ContainerFactory = Callable[[SyncSettings], AppContainer]


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="records_sync", description="Offline synchronization queue")
    parser.add_argument("--db", help="Path to the SQLite database (overrides configuration)")
    parser.add_argument("--config", help="Path to config.json (defaults to the app data dir)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    queue_parser = subparsers.add_parser("queue", help="Enqueue one change")
    queue_parser.add_argument("--entity-type", required=True)
    queue_parser.add_argument("--entity-id", required=True)
    queue_parser.add_argument("--operation", required=True, choices=["create", "update", "delete"])
    queue_parser.add_argument("--payload", default="{}", help="JSON object with the record fields")

    sync_parser = subparsers.add_parser("sync", help="Drain pending entries (or retry failed ones)")
    sync_parser.add_argument("--limit", type=int)
    sync_parser.add_argument("--retry-failed", action="store_true")
    sync_parser.add_argument("--max-attempts", type=int)

    subparsers.add_parser("stats", help="Show pending/failed counts and last sync time")

    cleanup_parser = subparsers.add_parser("cleanup", help="Delete old completed entries")
    cleanup_parser.add_argument("--older-than-days", type=int)

    history_parser = subparsers.add_parser("history", help="List queue entries of one record")
    history_parser.add_argument("--entity-type", required=True)
    history_parser.add_argument("--entity-id", required=True)

    subparsers.add_parser("maintenance", help="Release stale claims, clean up and evaluate alerts")

    report_parser = subparsers.add_parser("quarantine-report", help="Export quarantined entries as PDF")
    report_parser.add_argument("--output", required=True)
    report_parser.add_argument("--max-attempts", type=int)

    migrate_parser = subparsers.add_parser("migrate", help="Manage the database schema")
    migrate_parser.add_argument("migrate_command", choices=["up", "down", "status"])
    migrate_parser.add_argument("--steps", type=int, default=1)
    return parser


def _load_settings(args: argparse.Namespace) -> SyncSettings:
    store = SyncSettingsStore(config_path=Path(args.config) if args.config else None)
    settings = store.load()
    if args.db:
        settings = replace(settings, db_path=Path(args.db))
    return settings


def _write_json(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, ensure_ascii=False, indent=2) + "\n")


def _run_queue(container: AppContainer, args: argparse.Namespace) -> int:
    try:
        payload = json.loads(args.payload)
    except json.JSONDecodeError as exc:
        sys.stderr.write(f"Invalid --payload JSON: {exc}\n")
        return EXIT_USAGE_ERROR
    entry = container.sync_service.queue_change(args.entity_type, args.entity_id, args.operation, payload)
    _write_json(entry.to_dict())
    return EXIT_OK


def _run_sync(container: AppContainer, args: argparse.Namespace) -> int:
    if args.retry_failed:
        result = container.sync_service.retry_failed_sync(args.max_attempts, args.limit)
    else:
        result = container.sync_service.process_pending_sync(args.limit)
    _write_json(result.to_dict())
    return EXIT_SYNC_FAILURES if result.failed > 0 else EXIT_OK


def _run_stats(container: AppContainer, _args: argparse.Namespace) -> int:
    _write_json(container.sync_service.get_sync_stats().to_dict())
    return EXIT_OK


def _run_cleanup(container: AppContainer, args: argparse.Namespace) -> int:
    days = args.older_than_days if args.older_than_days is not None else container.settings.cleanup_older_than_days
    _write_json({"deleted": container.sync_service.cleanup_old_entries(days)})
    return EXIT_OK


def _run_history(container: AppContainer, args: argparse.Namespace) -> int:
    entries = container.sync_service.get_entries_by_entity(args.entity_type, args.entity_id)
    _write_json([entry.to_dict() for entry in entries])
    return EXIT_OK


def _run_maintenance(container: AppContainer, _args: argparse.Namespace) -> int:
    _write_json(container.maintenance_task.run().to_dict())
    return EXIT_OK


def _run_quarantine_report(container: AppContainer, args: argparse.Namespace) -> int:
    max_attempts = args.max_attempts if args.max_attempts is not None else container.settings.max_attempts
    path = container.quarantine_report_service.export_pdf(Path(args.output), max_attempts)
    _write_json({"path": str(path)})
    return EXIT_OK


_COMMANDS: dict[str, Callable[[AppContainer, argparse.Namespace], int]] = {
    "queue": _run_queue,
    "sync": _run_sync,
    "stats": _run_stats,
    "cleanup": _run_cleanup,
    "history": _run_history,
    "maintenance": _run_maintenance,
    "quarantine-report": _run_quarantine_report,
}


def _run_migrate(settings: SyncSettings, args: argparse.Namespace) -> int:
    connection = get_connection(settings.db_path)
    try:
        for line in run_migration_command(connection, args.migrate_command, args.steps):
            sys.stdout.write(line + "\n")
    finally:
        connection.close()
    return EXIT_OK


def main(argv: list[str] | None = None, *, container_factory: ContainerFactory = build_container) -> int:
    args = _build_parser().parse_args(argv)

    log_dir = resolve_log_dir()
    configure_logging(log_dir)
    install_exception_hook(log_dir)
    logger.info("cli_command_started command=%s log_dir=%s", args.command, log_dir)

    settings = _load_settings(args)
    if args.command == "migrate":
        return _run_migrate(settings, args)

    container = container_factory(settings)
    try:
        return _COMMANDS[args.command](container, args)
    except (BusinessError, ValueError) as exc:
        logger.warning("cli_command_rejected command=%s error=%s", args.command, exc)
        sys.stderr.write(f"{exc}\n")
        return EXIT_USAGE_ERROR
    finally:
        container.close()


if __name__ == "__main__":
    raise SystemExit(main())
