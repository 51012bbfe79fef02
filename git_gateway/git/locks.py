"""
Per-repository read/write locks.

Readers share, writers are exclusive and preferred over new readers.
Different repositories never contend. Locks are not reentrant: a thread that
holds one must not request another for the same repository.
"""

import threading
import time
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

import structlog

from ..config import get_settings
from ..errors import RepositoryBusyError

logger = structlog.get_logger()


class ReadWriteLock:
    """Writer-preferring read/write lock with acquisition deadlines."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    def _wait(self, deadline: float) -> bool:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        self._cond.wait(remaining)
        return True

    def acquire_read(self, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        with self._cond:
            while self._writer or self._waiting_writers:
                if not self._wait(deadline):
                    return False
            self._readers += 1
            return True

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        with self._cond:
            self._waiting_writers += 1
            try:
                while self._writer or self._readers:
                    if not self._wait(deadline):
                        return False
                self._writer = True
                return True
            finally:
                self._waiting_writers -= 1
                # readers blocked on this writer may proceed if it gave up
                self._cond.notify_all()

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @property
    def readers(self) -> int:
        return self._readers

    @property
    def locked_for_write(self) -> bool:
        return self._writer


class RepositoryLockManager:
    """Hands out one ReadWriteLock per repository id."""

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout
        self._locks: Dict[str, ReadWriteLock] = {}
        self._guard = threading.Lock()

    def _timeout(self, timeout: Optional[float]) -> float:
        if timeout is not None:
            return timeout
        if self.timeout is not None:
            return self.timeout
        return get_settings().repository_lock_timeout

    def lock_for(self, repository_id: str) -> ReadWriteLock:
        key = str(repository_id)
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = ReadWriteLock()
            return lock

    @contextmanager
    def read(self, repository_id: str, timeout: Optional[float] = None) -> Iterator[None]:
        lock = self.lock_for(repository_id)
        wait = self._timeout(timeout)
        if not lock.acquire_read(wait):
            logger.warning("repository read lock timed out", repository_id=str(repository_id))
            raise RepositoryBusyError(str(repository_id), wait)
        try:
            yield
        finally:
            lock.release_read()

    @contextmanager
    def write(self, repository_id: str, timeout: Optional[float] = None) -> Iterator[None]:
        lock = self.lock_for(repository_id)
        wait = self._timeout(timeout)
        if not lock.acquire_write(wait):
            logger.warning("repository write lock timed out", repository_id=str(repository_id))
            raise RepositoryBusyError(str(repository_id), wait)
        try:
            yield
        finally:
            lock.release_write()


_lock_manager: Optional[RepositoryLockManager] = None


def get_lock_manager() -> RepositoryLockManager:
    """Process-wide lock manager."""
    global _lock_manager
    if _lock_manager is None:
        _lock_manager = RepositoryLockManager()
    return _lock_manager
