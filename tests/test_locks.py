"""Tests for per-repository read/write locks."""

import threading
import time

import pytest

from git_gateway.errors import RepositoryBusyError
from git_gateway.git.locks import ReadWriteLock, RepositoryLockManager


class TestReadWriteLock:
    def test_readers_share(self):
        lock = ReadWriteLock()
        assert lock.acquire_read(0.1)
        assert lock.acquire_read(0.1)
        assert lock.readers == 2
        lock.release_read()
        lock.release_read()
        assert lock.readers == 0

    def test_writer_excludes_readers(self):
        lock = ReadWriteLock()
        assert lock.acquire_write(0.1)
        assert lock.locked_for_write
        assert not lock.acquire_read(0.05)
        lock.release_write()
        assert lock.acquire_read(0.1)
        lock.release_read()

    def test_writer_waits_for_readers(self):
        lock = ReadWriteLock()
        assert lock.acquire_read(0.1)
        assert not lock.acquire_write(0.05)
        lock.release_read()
        assert lock.acquire_write(0.1)
        lock.release_write()

    def test_waiting_writer_blocks_new_readers(self):
        lock = ReadWriteLock()
        assert lock.acquire_read(0.1)
        acquired = []

        def writer():
            acquired.append(lock.acquire_write(2))
            lock.release_write()

        thread = threading.Thread(target=writer)
        thread.start()
        time.sleep(0.1)
        # a writer is queued, so a new reader must not jump ahead of it
        assert not lock.acquire_read(0.05)
        lock.release_read()
        thread.join(timeout=5)
        assert acquired == [True]

    def test_abandoned_writer_releases_readers(self):
        lock = ReadWriteLock()
        assert lock.acquire_read(0.1)
        assert not lock.acquire_write(0.05)
        # the timed-out writer no longer counts as waiting
        assert lock.acquire_read(0.05)
        lock.release_read()
        lock.release_read()


class TestRepositoryLockManager:
    def test_same_lock_per_repository(self):
        manager = RepositoryLockManager(timeout=1)
        assert manager.lock_for("repo-1") is manager.lock_for("repo-1")
        assert manager.lock_for("repo-1") is not manager.lock_for("repo-2")

    def test_write_timeout_raises_busy(self):
        manager = RepositoryLockManager(timeout=0.05)
        with manager.read("repo-1"):
            with pytest.raises(RepositoryBusyError) as exc_info:
                with manager.write("repo-1"):
                    pass
        assert exc_info.value.status_code == 503

    def test_repositories_do_not_contend(self):
        manager = RepositoryLockManager(timeout=0.05)
        with manager.write("repo-1"):
            with manager.write("repo-2"):
                assert manager.lock_for("repo-2").locked_for_write

    def test_lock_released_on_error(self):
        manager = RepositoryLockManager(timeout=0.05)
        with pytest.raises(RuntimeError):
            with manager.write("repo-1"):
                raise RuntimeError("boom")
        with manager.write("repo-1"):
            pass
