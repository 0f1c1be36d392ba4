from __future__ import annotations

import json
import logging
import math
import os
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any, Callable, Mapping

from records_sync.domain.sync_models import DEFAULT_CLEANUP_DAYS, DEFAULT_MAX_ATTEMPTS
from records_sync.infrastructure.db import default_db_path

logger = logging.getLogger(__name__)

APP_DIR_NAME = "RecordsSync"
CONFIG_FILENAME = "config.json"


def resolve_appdata_dir() -> Path:
    env_dir = os.environ.get("LOCALAPPDATA")
    if env_dir:
        base_dir = Path(env_dir)
    else:
        base_dir = Path.home() / ".local" / "share"
    return base_dir / APP_DIR_NAME


@dataclass(frozen=True)
class SyncSettings:
    db_path: Path
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    batch_limit: int | None = None
    commit_timeout_seconds: float = 30.0
    cleanup_older_than_days: int = DEFAULT_CLEANUP_DAYS
    stale_claim_minutes: int = 15
    backlog_warning_threshold: int = 50

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["db_path"] = str(self.db_path)
        return payload


def _positive_int(value: Any) -> int:
    parsed = int(value)
    if parsed < 1:
        raise ValueError(f"expected a positive integer, got {value!r}")
    return parsed


def _optional_positive_int(value: Any) -> int | None:
    if value is None or str(value).strip().lower() in {"", "none", "null"}:
        return None
    return _positive_int(value)


def _positive_float(value: Any) -> float:
    parsed = float(value)
    if not math.isfinite(parsed) or parsed <= 0:
        raise ValueError(f"expected a positive number, got {value!r}")
    return parsed


def _path(value: Any) -> Path:
    text = str(value).strip()
    if not text:
        raise ValueError("empty path")
    return Path(text).expanduser()


_FIELD_PARSERS: dict[str, Callable[[Any], Any]] = {
    "db_path": _path,
    "max_attempts": _positive_int,
    "batch_limit": _optional_positive_int,
    "commit_timeout_seconds": _positive_float,
    "cleanup_older_than_days": _positive_int,
    "stale_claim_minutes": _positive_int,
    "backlog_warning_threshold": _positive_int,
}

ENV_OVERRIDES: dict[str, str] = {
    "RECORDS_SYNC_DB_PATH": "db_path",
    "RECORDS_SYNC_MAX_ATTEMPTS": "max_attempts",
    "RECORDS_SYNC_BATCH_LIMIT": "batch_limit",
    "RECORDS_SYNC_COMMIT_TIMEOUT": "commit_timeout_seconds",
    "RECORDS_SYNC_CLEANUP_DAYS": "cleanup_older_than_days",
    "RECORDS_SYNC_STALE_CLAIM_MINUTES": "stale_claim_minutes",
}


class SyncSettingsStore:
    """Reads ``config.json`` from the app data dir; environment variables win over the file."""

    def __init__(
        self,
        base_dir: Path | None = None,
        *,
        config_path: Path | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self._base_dir = base_dir or resolve_appdata_dir()
        self._config_path = config_path or self._base_dir / CONFIG_FILENAME
        self._environ = os.environ if environ is None else environ

    @property
    def config_path(self) -> Path:
        return self._config_path

    def load(self) -> SyncSettings:
        settings = SyncSettings(db_path=default_db_path())
        settings = self._apply(settings, self._read_file(), source=str(self._config_path))
        env_values = {
            field_name: self._environ[env_name]
            for env_name, field_name in ENV_OVERRIDES.items()
            if env_name in self._environ
        }
        return self._apply(settings, env_values, source="environment")

    def save(self, settings: SyncSettings) -> SyncSettings:
        self._config_path.parent.mkdir(parents=True, exist_ok=True)
        self._config_path.write_text(
            json.dumps(settings.to_dict(), indent=2, ensure_ascii=False),
            encoding="utf-8",
        )
        return settings

    def _read_file(self) -> dict[str, Any]:
        if not self._config_path.exists():
            return {}
        try:
            payload = json.loads(self._config_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.exception("Could not read %s: %s", self._config_path, exc)
            return {}
        if not isinstance(payload, dict):
            logger.warning("Ignoring %s: expected a JSON object", self._config_path)
            return {}
        return payload

    @staticmethod
    def _apply(settings: SyncSettings, values: Mapping[str, Any], *, source: str) -> SyncSettings:
        changes: dict[str, Any] = {}
        for field_name, raw_value in values.items():
            parser = _FIELD_PARSERS.get(field_name)
            if parser is None:
                logger.warning("Unknown setting %s in %s ignored", field_name, source)
                continue
            try:
                changes[field_name] = parser(raw_value)
            except (TypeError, ValueError) as exc:
                logger.warning(
                    "Invalid value for %s in %s (%s); keeping %r",
                    field_name,
                    source,
                    exc,
                    getattr(settings, field_name),
                )
        return replace(settings, **changes) if changes else settings
