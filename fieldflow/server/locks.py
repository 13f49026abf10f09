# fieldflow/server/locks.py
"""
Per-job mutual exclusion.

``LocalLockManager`` covers a single process. ``RedisLockManager`` is for
deployments where several processes share one storage backend; its leases
expire, so a crashed holder cannot wedge a job forever.
"""
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from redis.exceptions import LockError

logger = logging.getLogger(__name__)


class LockManager(ABC):
    @abstractmethod
    def acquire(self, key: str, timeout: Optional[float]) -> Any:
        """Block up to ``timeout`` seconds. Returns a release token, or None on timeout."""

    @abstractmethod
    def release(self, key: str, token: Any) -> None: ...

    @contextmanager
    def hold(self, key: str, timeout: Optional[float]) -> Iterator[bool]:
        """Yield True while holding ``key``, or False if it could not be acquired."""
        token = self.acquire(key, timeout)
        if token is None:
            yield False
            return
        try:
            yield True
        finally:
            self.release(key, token)


class _LockEntry:
    __slots__ = ("lock", "refs")

    def __init__(self):
        self.lock = threading.Lock()
        self.refs = 0


class LocalLockManager(LockManager):
    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, _LockEntry] = {}

    def acquire(self, key: str, timeout: Optional[float]) -> Any:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _LockEntry()
            entry.refs += 1

        acquired = entry.lock.acquire(timeout=-1 if timeout is None else max(timeout, 0))
        if not acquired:
            self._forget(key, entry)
            return None
        return entry

    def release(self, key: str, token: Any) -> None:
        token.lock.release()
        self._forget(key, token)

    def _forget(self, key: str, entry: _LockEntry) -> None:
        with self._guard:
            entry.refs -= 1
            if entry.refs == 0 and self._locks.get(key) is entry:
                del self._locks[key]


class RedisLockManager(LockManager):
    def __init__(
        self,
        redis_client,
        prefix: str = "fieldflow:lock:",
        lease_seconds: float = 30.0,
    ):
        self.redis_client = redis_client
        self.prefix = prefix
        self.lease_seconds = lease_seconds

    def acquire(self, key: str, timeout: Optional[float]) -> Any:
        lock = self.redis_client.lock(
            f"{self.prefix}{key}",
            timeout=self.lease_seconds,
            blocking_timeout=timeout,
        )
        if not lock.acquire(blocking=True):
            return None
        return lock

    def release(self, key: str, token: Any) -> None:
        try:
            token.release()
        except LockError:
            logger.warning(
                "Lock for %s expired before release; lease of %ss is too short",
                key,
                self.lease_seconds,
            )
