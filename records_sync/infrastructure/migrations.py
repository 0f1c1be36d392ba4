from __future__ import annotations

import argparse
import hashlib
import importlib.util
import logging
import sqlite3
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from types import ModuleType
from typing import Callable

from records_sync.infrastructure.db import default_db_path

MigrationHook = Callable[[sqlite3.Connection], None]


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MigrationDefinition:
    version: int
    name: str
    up_sql: Path
    down_sql: Path
    up_hook: Path | None = None
    down_hook: Path | None = None


def default_migrations_dir() -> Path:
    return Path(__file__).resolve().parents[2] / "migrations"


class MigrationRunner:
    def __init__(self, connection: sqlite3.Connection, migrations_dir: Path | None = None) -> None:
        self.connection = connection
        self.connection.row_factory = sqlite3.Row
        self.migrations_dir = migrations_dir or default_migrations_dir()
        self.migrations = self._discover_migrations()

    def apply_all(self) -> list[int]:
        self._ensure_history_table()
        applied_versions = self._applied_versions()
        applied: list[int] = []
        for migration in self.migrations:
            if migration.version in applied_versions:
                continue
            self._apply_migration(migration)
            applied.append(migration.version)
        return applied

    def rollback(self, steps: int = 1) -> list[int]:
        self._ensure_history_table()
        cursor = self.connection.cursor()
        cursor.execute("SELECT version FROM schema_migrations ORDER BY version DESC LIMIT ?", (steps,))
        versions_to_rollback = [row["version"] for row in cursor.fetchall()]
        version_map = {migration.version: migration for migration in self.migrations}
        rolled_back: list[int] = []
        for version in versions_to_rollback:
            migration = version_map[version]
            self._rollback_migration(migration)
            rolled_back.append(version)
        return rolled_back

    def status(self) -> list[dict[str, object]]:
        self._ensure_history_table()
        applied_versions = self._applied_versions()
        return [
            {
                "version": migration.version,
                "name": migration.name,
                "applied": migration.version in applied_versions,
            }
            for migration in self.migrations
        ]

    def _ensure_history_table(self) -> None:
        cursor = self.connection.cursor()
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                checksum TEXT NOT NULL,
                applied_at TEXT NOT NULL
            )
            """
        )
        self.connection.commit()

    def _applied_versions(self) -> set[int]:
        cursor = self.connection.cursor()
        cursor.execute("SELECT version FROM schema_migrations")
        return {row["version"] for row in cursor.fetchall()}

    def _apply_migration(self, migration: MigrationDefinition) -> None:
        sql_script = migration.up_sql.read_text(encoding="utf-8")
        checksum = hashlib.sha256(sql_script.encode("utf-8")).hexdigest()
        with self.connection:
            if sql_script.strip():
                self.connection.executescript(sql_script)
            if migration.up_hook is not None:
                hook = self._load_hook(migration.up_hook, "run")
                hook(self.connection)
            self.connection.execute(
                """
                INSERT INTO schema_migrations (version, name, checksum, applied_at)
                VALUES (?, ?, ?, ?)
                """,
                (
                    migration.version,
                    migration.name,
                    checksum,
                    datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
                ),
            )
            self.connection.execute(f"PRAGMA user_version = {migration.version}")
        logger.info("migration_applied version=%s name=%s", migration.version, migration.name)

    def _rollback_migration(self, migration: MigrationDefinition) -> None:
        sql_script = migration.down_sql.read_text(encoding="utf-8")
        with self.connection:
            if migration.down_hook is not None:
                hook = self._load_hook(migration.down_hook, "run")
                hook(self.connection)
            if sql_script.strip():
                self.connection.executescript(sql_script)
            self.connection.execute("DELETE FROM schema_migrations WHERE version = ?", (migration.version,))
            previous = self.connection.execute(
                "SELECT COALESCE(MAX(version), 0) AS version FROM schema_migrations"
            ).fetchone()["version"]
            self.connection.execute(f"PRAGMA user_version = {previous}")
        logger.info("migration_rolled_back version=%s name=%s", migration.version, migration.name)

    def _discover_migrations(self) -> list[MigrationDefinition]:
        definitions: list[MigrationDefinition] = []
        for up_file in sorted(self.migrations_dir.glob("*.up.sql")):
            stem = up_file.name[:-7]
            version_text, name = stem.split("_", maxsplit=1)
            version = int(version_text)
            down_file = self.migrations_dir / f"{stem}.down.sql"
            if not down_file.exists():
                raise FileNotFoundError(f"Missing down migration for {up_file.name}: {down_file}")
            up_hook = self.migrations_dir / f"{stem}.up.py"
            down_hook = self.migrations_dir / f"{stem}.down.py"
            definitions.append(
                MigrationDefinition(
                    version=version,
                    name=name,
                    up_sql=up_file,
                    down_sql=down_file,
                    up_hook=up_hook if up_hook.exists() else None,
                    down_hook=down_hook if down_hook.exists() else None,
                )
            )
        return definitions

    def _load_hook(self, file_path: Path, function_name: str) -> MigrationHook:
        spec = importlib.util.spec_from_file_location(f"migration_hook_{file_path.stem}", file_path)
        if spec is None or spec.loader is None:
            raise ImportError(f"Cannot import migration hook: {file_path}")
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
        if not isinstance(module, ModuleType) or not hasattr(module, function_name):
            raise AttributeError(f"Hook {file_path} must define {function_name}(connection)")
        hook = getattr(module, function_name)
        return hook


def run_migrations(connection: sqlite3.Connection) -> None:
    MigrationRunner(connection).apply_all()


def run_migration_command(connection: sqlite3.Connection, command: str, steps: int = 1) -> list[str]:
    """Executes ``up``/``down``/``status`` and returns printable lines."""
    runner = MigrationRunner(connection)
    if command == "up":
        applied = runner.apply_all()
        return [f"applied {version:04d}" for version in applied] or ["up to date"]
    if command == "down":
        return [f"rolled back {version:04d}" for version in runner.rollback(steps)]
    lines: list[str] = []
    for item in runner.status():
        marker = "[x]" if item["applied"] else "[ ]"
        lines.append(f"{marker} {int(item['version']):04d} {item['name']}")
    return lines


def build_cli() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Manage the sync queue SQLite schema")
    parser.add_argument("command", choices=["up", "down", "status"], help="Operation to run")
    parser.add_argument("--db", default=str(default_db_path()), help="Path to the SQLite file")
    parser.add_argument("--steps", type=int, default=1, help="Number of migrations to roll back")
    return parser


def main(argv: list[str] | None = None) -> int:
    from records_sync.bootstrap.logging import configure_logging
    from records_sync.bootstrap.settings import resolve_log_dir

    configure_logging(resolve_log_dir())
    args = build_cli().parse_args(argv)

    db_path = Path(args.db)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    connection = sqlite3.connect(db_path)
    try:
        for line in run_migration_command(connection, args.command, args.steps):
            sys.stdout.write(line + "\n")
    finally:
        connection.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
