# fieldflow/config.py
import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

import redis

from fieldflow.common.exceptions import ConfigurationError
from fieldflow.server.locks import LocalLockManager, LockManager, RedisLockManager
from fieldflow.storage.base import JobStorage
from fieldflow.storage.memory_storage import MemoryStorage
from fieldflow.storage.sql_storage import SqlStorage

logger = logging.getLogger(__name__)

STORAGE_BACKENDS = ("memory", "sql")


def boolean(raw: str) -> bool:
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise ValueError(raw)


def _env(environ: Mapping[str, str], name: str, default, cast):
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name}={raw!r} is not a valid {cast.__name__}") from e


@dataclass
class Settings:
    """Process settings. Built explicitly and handed to FieldFlowClient; nothing is global."""

    storage: str = "memory"
    database_url: Optional[str] = None
    redis_url: Optional[str] = None
    lock_timeout: float = 5.0
    action_timeout: float = 30.0
    bus_partitions: int = 4
    lookahead_days: int = 60
    materialize_days: int = 7
    max_occurrences: int = 180
    recurrence_interval: float = 3600.0
    downgrade_scope: str = "client"
    table_path: Optional[str] = None
    data_guards: bool = False
    log_level: str = "INFO"

    def __post_init__(self):
        if self.storage not in STORAGE_BACKENDS:
            raise ConfigurationError(
                f"Unknown storage backend '{self.storage}' (expected one of {', '.join(STORAGE_BACKENDS)})"
            )
        if self.storage == "sql" and not self.database_url:
            raise ConfigurationError("SQL storage requires FIELDFLOW_DATABASE_URL")
        if self.lock_timeout <= 0:
            raise ConfigurationError("lock_timeout must be positive")
        if self.bus_partitions < 0:
            raise ConfigurationError("bus_partitions must not be negative")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        environ = os.environ if environ is None else environ
        return cls(
            storage=_env(environ, "FIELDFLOW_STORAGE", "memory", str).lower(),
            database_url=_env(environ, "FIELDFLOW_DATABASE_URL", None, str),
            redis_url=_env(environ, "FIELDFLOW_REDIS_URL", None, str),
            lock_timeout=_env(environ, "FIELDFLOW_LOCK_TIMEOUT", 5.0, float),
            action_timeout=_env(environ, "FIELDFLOW_ACTION_TIMEOUT", 30.0, float),
            bus_partitions=_env(environ, "FIELDFLOW_BUS_PARTITIONS", 4, int),
            lookahead_days=_env(environ, "FIELDFLOW_LOOKAHEAD_DAYS", 60, int),
            materialize_days=_env(environ, "FIELDFLOW_MATERIALIZE_DAYS", 7, int),
            max_occurrences=_env(environ, "FIELDFLOW_MAX_OCCURRENCES", 180, int),
            recurrence_interval=_env(environ, "FIELDFLOW_RECURRENCE_INTERVAL", 3600.0, float),
            downgrade_scope=_env(environ, "FIELDFLOW_DOWNGRADE_SCOPE", "client", str),
            table_path=_env(environ, "FIELDFLOW_TRANSITION_TABLE", None, str),
            data_guards=_env(environ, "FIELDFLOW_DATA_GUARDS", False, boolean),
            log_level=_env(environ, "FIELDFLOW_LOG_LEVEL", "INFO", str).upper(),
        )

    def create_storage(self) -> JobStorage:
        if self.storage == "sql":
            return SqlStorage(connection_url=self.database_url)
        return MemoryStorage()

    def create_lock_manager(self) -> LockManager:
        if self.redis_url:
            logger.info("Using Redis locks at %s", self.redis_url)
            return RedisLockManager(redis.Redis.from_url(self.redis_url))
        return LocalLockManager()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
