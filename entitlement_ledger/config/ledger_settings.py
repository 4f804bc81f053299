"""
Service ledger configuration loader.

Loads operational defaults from config/service_ledger.yml. Environment
variables override file values so cron deployments can tune jobs without a
new build.

Keys:
  archive.default_archive_after_days   (env ARCHIVE_AFTER_DAYS)
  archive.default_delete_after_archive (env DELETE_AFTER_ARCHIVE)
  holds.sweep_batch_size               (env HOLD_SWEEP_BATCH_SIZE)
  holds.long_unreleased_hours          (env LONG_UNRELEASED_HOLD_HOURS)
  events.outbox_batch_size             (env EVENT_OUTBOX_BATCH_SIZE)
  events.max_retries                   (env EVENT_OUTBOX_MAX_RETRIES)
  events.retention_days                (env EVENT_RETENTION_DAYS)
  database.pool_size                   (env DB_POOL_SIZE)
  database.max_overflow                (env DB_MAX_OVERFLOW)
  database.pool_recycle_seconds        (env DB_POOL_RECYCLE_SECONDS)

Usage:
    from entitlement_ledger.config.ledger_settings import get_ledger_settings

    settings = get_ledger_settings()
    days = settings.default_archive_after_days
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

_FALLBACKS: Dict[str, Dict[str, Any]] = {
    "archive": {
        "default_archive_after_days": 90,
        "default_delete_after_archive": False,
    },
    "holds": {
        "sweep_batch_size": 100,
        "long_unreleased_hours": 24,
    },
    "events": {
        "outbox_batch_size": 100,
        "max_retries": 5,
        "retention_days": 7,
    },
    "database": {
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle_seconds": 1800,
    },
}

_ENV_OVERRIDES = {
    ("archive", "default_archive_after_days"): ("ARCHIVE_AFTER_DAYS", int),
    ("archive", "default_delete_after_archive"): ("DELETE_AFTER_ARCHIVE", "bool"),
    ("holds", "sweep_batch_size"): ("HOLD_SWEEP_BATCH_SIZE", int),
    ("holds", "long_unreleased_hours"): ("LONG_UNRELEASED_HOLD_HOURS", int),
    ("events", "outbox_batch_size"): ("EVENT_OUTBOX_BATCH_SIZE", int),
    ("events", "max_retries"): ("EVENT_OUTBOX_MAX_RETRIES", int),
    ("events", "retention_days"): ("EVENT_RETENTION_DAYS", int),
    ("database", "pool_size"): ("DB_POOL_SIZE", int),
    ("database", "max_overflow"): ("DB_MAX_OVERFLOW", int),
    ("database", "pool_recycle_seconds"): ("DB_POOL_RECYCLE_SECONDS", int),
}


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return _parse_bool(value)
    return bool(value)


@dataclass(frozen=True)
class LedgerSettings:
    """Resolved ledger settings."""
    default_archive_after_days: int
    default_delete_after_archive: bool
    hold_sweep_batch_size: int
    long_unreleased_hours: int
    outbox_batch_size: int
    event_max_retries: int
    event_retention_days: int = 7
    db_pool_size: int = 5
    db_max_overflow: int = 10
    db_pool_recycle_seconds: int = 1800


class LedgerConfigLoader:
    """Thread-safe singleton loader for config/service_ledger.yml."""

    _instance: Optional["LedgerConfigLoader"] = None
    _lock = Lock()

    def __new__(cls, config_path: Optional[str] = None):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, config_path: Optional[str] = None):
        if self._initialized:
            return

        self._config_path = config_path
        self._raw: Dict[str, Any] = {}
        self._load_lock = Lock()

        self._load()
        self._initialized = True

    def _resolve_path(self) -> Optional[Path]:
        if self._config_path:
            return Path(self._config_path)

        env_path = os.getenv("SERVICE_LEDGER_CONFIG")
        candidates = [
            Path(env_path) if env_path else None,
            Path(__file__).resolve().parent.parent.parent / "config" / "service_ledger.yml",
            Path(os.getcwd()) / "config" / "service_ledger.yml",
        ]
        for candidate in candidates:
            if candidate is not None and candidate.exists():
                return candidate
        return None

    def _load(self) -> None:
        with self._load_lock:
            path = self._resolve_path()
            if path is None:
                logger.info("No service ledger config file found, using built-in defaults")
                self._raw = {}
                return

            try:
                with open(path) as f:
                    self._raw = yaml.safe_load(f) or {}
                logger.info("Loaded service ledger config", extra={"path": str(path)})
            except (OSError, yaml.YAMLError) as e:
                logger.error(
                    "Failed to load service ledger config, using built-in defaults",
                    extra={"path": str(path), "error": str(e)},
                )
                self._raw = {}

    def reload(self) -> None:
        """Re-read the config file (used by tests and SIGHUP handlers)."""
        self._load()

    def get(self, section: str, key: str) -> Any:
        """Resolve one value: environment, then file, then fallback."""
        override = _ENV_OVERRIDES.get((section, key))
        if override:
            env_name, caster = override
            raw = os.getenv(env_name)
            if raw is not None and raw != "":
                try:
                    return _parse_bool(raw) if caster == "bool" else caster(raw)
                except ValueError:
                    logger.warning(
                        "Ignoring invalid config override",
                        extra={"env": env_name, "value": raw},
                    )

        section_values = self._raw.get(section) or {}
        if key in section_values:
            return section_values[key]
        return _FALLBACKS[section][key]

    def settings(self) -> LedgerSettings:
        return LedgerSettings(
            default_archive_after_days=int(self.get("archive", "default_archive_after_days")),
            default_delete_after_archive=_as_bool(self.get("archive", "default_delete_after_archive")),
            hold_sweep_batch_size=int(self.get("holds", "sweep_batch_size")),
            long_unreleased_hours=int(self.get("holds", "long_unreleased_hours")),
            outbox_batch_size=int(self.get("events", "outbox_batch_size")),
            event_max_retries=int(self.get("events", "max_retries")),
            event_retention_days=int(self.get("events", "retention_days")),
            db_pool_size=int(self.get("database", "pool_size")),
            db_max_overflow=int(self.get("database", "max_overflow")),
            db_pool_recycle_seconds=int(self.get("database", "pool_recycle_seconds")),
        )

    @classmethod
    def reset_instance(cls) -> None:
        """Drop the cached singleton so the next access reloads."""
        with cls._lock:
            cls._instance = None


def get_ledger_settings() -> LedgerSettings:
    """Module-level accessor for resolved settings."""
    return LedgerConfigLoader().settings()
