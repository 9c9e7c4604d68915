"""Tests for per-object lock services."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Iterator

import pytest

from objectfs.base import ConfigurationError, LockTimeoutError
from objectfs.locking import (
    DatabaseLockService,
    FileLockService,
    InMemoryLockService,
    LockHandle,
    LockService,
    get_lock_service,
)
from objectfs.models import create_db_engine
from tests.helpers import sha1

KEY = sha1(b"locked object")


@pytest.fixture(params=["memory", "file", "database"])
def any_locks(request: pytest.FixtureRequest, tmp_path: Path) -> Iterator[LockService]:
    if request.param == "memory":
        yield InMemoryLockService()
    elif request.param == "file":
        yield FileLockService(tmp_path / "locks")
    else:
        engine = create_db_engine("sqlite://")
        yield DatabaseLockService(engine)
        engine.dispose()


class TestLockContract:
    """Tests every lock service must pass."""

    def test_acquire_and_release(self, any_locks: LockService) -> None:
        """Test a released lock can be taken again."""
        handle = any_locks.try_acquire(KEY)

        assert isinstance(handle, LockHandle)
        assert any_locks.is_locked(KEY)

        any_locks.release(handle)

        assert not any_locks.is_locked(KEY)
        second = any_locks.try_acquire(KEY)
        assert second is not None
        any_locks.release(second)

    def test_held_lock_not_reentrant(self, any_locks: LockService) -> None:
        """Test a second zero-wait attempt on a held key fails."""
        handle = any_locks.try_acquire(KEY)
        try:
            assert any_locks.try_acquire(KEY, timeout=0) is None
        finally:
            any_locks.release(handle)

    def test_bounded_wait_times_out(self, any_locks: LockService) -> None:
        """Test waiting gives up after the timeout."""
        handle = any_locks.try_acquire(KEY)
        try:
            assert any_locks.try_acquire(KEY, timeout=0.1) is None
        finally:
            any_locks.release(handle)

    def test_independent_keys(self, any_locks: LockService) -> None:
        """Test locks on different keys don't interfere."""
        first = any_locks.try_acquire(KEY)
        second = any_locks.try_acquire(sha1(b"other"))

        assert first is not None
        assert second is not None
        any_locks.release(first)
        any_locks.release(second)

    def test_context_manager_releases(self, any_locks: LockService) -> None:
        """Test the lock is released when the block raises."""
        with pytest.raises(RuntimeError):
            with any_locks.lock(KEY) as handle:
                assert handle is not None
                raise RuntimeError("boom")

        assert not any_locks.is_locked(KEY)

    def test_context_manager_yields_none_when_held(self, any_locks: LockService) -> None:
        """Test contention yields None instead of raising."""
        held = any_locks.try_acquire(KEY)
        try:
            with any_locks.lock(KEY) as handle:
                assert handle is None
        finally:
            any_locks.release(held)

    def test_acquire_raises_on_timeout(self, any_locks: LockService) -> None:
        """Test acquire() turns contention into LockTimeoutError."""
        held = any_locks.acquire(KEY)
        try:
            with pytest.raises(LockTimeoutError):
                any_locks.acquire(KEY, timeout=0)
        finally:
            any_locks.release(held)


class TestInMemoryLockService:
    """Tests specific to the in-memory service."""

    def test_release_unknown_handle(self) -> None:
        """Test releasing a lock that isn't held raises ValueError."""
        with pytest.raises(ValueError):
            InMemoryLockService().release(LockHandle(key=KEY))

    def test_waiter_wakes_on_release(self) -> None:
        """Test a bounded wait succeeds once the holder releases."""
        locks = InMemoryLockService()
        held = locks.try_acquire(KEY)
        results: list[LockHandle | None] = []

        waiter = threading.Thread(target=lambda: results.append(locks.try_acquire(KEY, 5)))
        waiter.start()
        locks.release(held)
        waiter.join(timeout=5)

        assert results and results[0] is not None
        assert locks.held_count == 1


class TestFileLockService:
    """Tests specific to file locks."""

    def test_lock_files_sharded(self, tmp_path: Path) -> None:
        """Test lock files are grouped by hash prefix."""
        locks = FileLockService(tmp_path)
        handle = locks.try_acquire(KEY)
        locks.release(handle)

        assert (tmp_path / KEY[0:2] / f"{KEY}.lock").exists()


class TestDatabaseLockService:
    """Tests specific to database leases."""

    def test_expired_lease_taken_over(self) -> None:
        """Test a crashed holder's lease expires."""
        engine = create_db_engine("sqlite://")
        locks = DatabaseLockService(engine, ttl=-1)

        first = locks.try_acquire(KEY)
        second = locks.try_acquire(KEY)

        assert first is not None
        assert second is not None
        assert first.token != second.token
        engine.dispose()


class TestGetLockService:
    """Tests for the lock service factory."""

    def test_kinds(self, tmp_path: Path) -> None:
        assert isinstance(get_lock_service("memory"), InMemoryLockService)
        assert isinstance(get_lock_service("file", lock_dir=tmp_path), FileLockService)

    def test_unknown_kind(self) -> None:
        with pytest.raises(ConfigurationError):
            get_lock_service("redis")

    def test_missing_options(self) -> None:
        """Test a file lock service without a directory is a configuration error."""
        with pytest.raises(ConfigurationError, match="Invalid options"):
            get_lock_service("file")
