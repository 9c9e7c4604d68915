"""Per-object lock services.

Manipulators take a lock keyed by content hash before touching an object,
so two workers (or two overlapping runs) never transition the same object
at once. The lock service is an explicit abstraction with three
implementations:

- InMemoryLockService: threading based, for single-process deployments and tests
- FileLockService: lock files via the filelock library, for hosts sharing a disk
- DatabaseLockService: lease rows in the objectfs database, for clusters

All services support a zero-wait attempt (``timeout=0``) and a bounded wait.
A lock that cannot be acquired in time is not an error for the caller: the
object is skipped for this pass.

Example:
    >>> locks = InMemoryLockService()
    >>> with locks.lock(contenthash, timeout=0) as handle:
    ...     if handle is None:
    ...         pass  # someone else is working on it
"""

from __future__ import annotations

import logging
import os
import threading
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Iterator

import filelock
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from objectfs.base import (
    ConfigurationError,
    LockTimeoutError,
    RegistryConnectionError,
)
from objectfs.models import LockModel

logger = logging.getLogger(__name__)

# Default lease for database locks. A crashed worker's lock expires after this.
DEFAULT_LOCK_TTL = 60 * 60

DEFAULT_POLL_INTERVAL = 0.05


@dataclass(frozen=True)
class LockHandle:
    """Handle representing an acquired lock.

    This is an opaque handle that must be passed to release the lock.

    Attributes:
        key: Locked resource key, normally a content hash.
        token: Unique token identifying this acquisition.
        wait_time: Seconds spent waiting for the lock.
        timestamp: When the lock was acquired.
        thread_id: ID of the thread that acquired the lock.
        process_id: ID of the process that acquired the lock.
    """

    key: str
    token: str = field(default_factory=lambda: uuid.uuid4().hex)
    wait_time: float = 0.0
    timestamp: float = field(default_factory=time.time)
    thread_id: int = field(default_factory=threading.get_ident)
    process_id: int = field(default_factory=os.getpid)

    def __str__(self) -> str:
        return f"LockHandle({self.key}, pid={self.process_id})"


class LockService(ABC):
    """Abstract base class for lock services.

    Implementations must be thread-safe. Locks are not reentrant: a second
    acquisition of a held key fails even from the same thread.
    """

    @abstractmethod
    def try_acquire(self, key: str, timeout: float = 0) -> LockHandle | None:
        """Try to acquire a lock.

        Args:
            key: Resource key to lock.
            timeout: Seconds to wait. 0 makes a single non-blocking attempt.

        Returns:
            LockHandle if the lock was acquired, None otherwise.
        """
        pass

    @abstractmethod
    def release(self, handle: LockHandle) -> None:
        """Release a previously acquired lock.

        Raises:
            ValueError: If the handle is not held.
        """
        pass

    @abstractmethod
    def is_locked(self, key: str) -> bool:
        """Check if a key is currently locked."""
        pass

    def acquire(self, key: str, timeout: float = 0) -> LockHandle:
        """Acquire a lock or raise.

        Raises:
            LockTimeoutError: If the lock is not acquired within ``timeout``.
        """
        handle = self.try_acquire(key, timeout)
        if handle is None:
            raise LockTimeoutError(key, timeout)
        return handle

    @contextmanager
    def lock(self, key: str, timeout: float = 0) -> Iterator[LockHandle | None]:
        """Context manager for lock acquisition.

        Yields the handle, or None if the lock could not be acquired. The
        lock is released on every exit path.
        """
        handle = self.try_acquire(key, timeout)
        try:
            yield handle
        finally:
            if handle is not None:
                self.release(handle)


# =============================================================================
# In-memory
# =============================================================================


class InMemoryLockService(LockService):
    """Threading based lock service for a single process."""

    def __init__(self) -> None:
        self._held: dict[str, str] = {}
        self._condition = threading.Condition()

    def try_acquire(self, key: str, timeout: float = 0) -> LockHandle | None:
        start = time.monotonic()
        deadline = start + max(timeout, 0)

        with self._condition:
            while key in self._held:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._condition.wait(remaining)

            handle = LockHandle(key=key, wait_time=time.monotonic() - start)
            self._held[key] = handle.token
            return handle

    def release(self, handle: LockHandle) -> None:
        with self._condition:
            if self._held.get(handle.key) != handle.token:
                raise ValueError(f"Lock not held: {handle.key}")
            del self._held[handle.key]
            self._condition.notify_all()

    def is_locked(self, key: str) -> bool:
        with self._condition:
            return key in self._held

    @property
    def held_count(self) -> int:
        with self._condition:
            return len(self._held)


# =============================================================================
# File locks
# =============================================================================


class FileLockService(LockService):
    """Cross-process locking using the filelock library.

    Each key maps to a lock file under ``lock_dir``. Works across processes
    and across hosts when the directory is on a shared filesystem that
    supports advisory locks.

    Args:
        lock_dir: Directory holding the lock files.
    """

    def __init__(self, lock_dir: str | Path) -> None:
        self._lock_dir = Path(lock_dir)
        self._locks: dict[str, tuple[str, filelock.BaseFileLock]] = {}
        self._lock = threading.RLock()

    def _get_lock_path(self, key: str) -> Path:
        return self._lock_dir / key[0:2] / f"{key}.lock"

    def try_acquire(self, key: str, timeout: float = 0) -> LockHandle | None:
        lock_path = self._get_lock_path(key)
        lock_path.parent.mkdir(parents=True, exist_ok=True)

        start = time.monotonic()
        file_lock = filelock.FileLock(str(lock_path), timeout=max(timeout, 0))
        try:
            file_lock.acquire(timeout=max(timeout, 0), poll_interval=DEFAULT_POLL_INTERVAL)
        except filelock.Timeout:
            return None

        handle = LockHandle(key=key, wait_time=time.monotonic() - start)
        with self._lock:
            self._locks[key] = (handle.token, file_lock)
        return handle

    def release(self, handle: LockHandle) -> None:
        with self._lock:
            token, file_lock = self._locks.get(handle.key, (None, None))
            if token != handle.token or file_lock is None:
                raise ValueError(f"Lock not held: {handle.key}")
            del self._locks[handle.key]

        file_lock.release()

    def is_locked(self, key: str) -> bool:
        with self._lock:
            if key in self._locks:
                return True

        lock_path = self._get_lock_path(key)
        if not lock_path.exists():
            return False

        file_lock = filelock.FileLock(str(lock_path))
        try:
            file_lock.acquire(timeout=0)
        except filelock.Timeout:
            return True
        file_lock.release()
        return False


# =============================================================================
# Database leases
# =============================================================================


class DatabaseLockService(LockService):
    """Lease based locking using a row per held key.

    A row insert either succeeds (lock acquired) or violates the primary key
    (lock held elsewhere). Rows carry an expiry so that a crashed worker
    cannot hold an object forever.

    Args:
        engine: SQLAlchemy engine. The lock table must exist.
        ttl: Lease length in seconds.
        poll_interval: Seconds between attempts while waiting.
    """

    def __init__(
        self,
        engine: Engine,
        ttl: float = DEFAULT_LOCK_TTL,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self._engine = engine
        self._session_factory = sessionmaker(bind=engine)
        self._ttl = ttl
        self._poll_interval = poll_interval

    def _attempt(self, key: str, token: str) -> bool:
        now = datetime.now()
        try:
            with self._session_factory() as session:
                session.query(LockModel).filter(
                    LockModel.key == key,
                    LockModel.expires_at < now,
                ).delete()
                session.add(
                    LockModel(
                        key=key,
                        token=token,
                        expires_at=now + timedelta(seconds=self._ttl),
                    )
                )
                session.commit()
                return True
        except IntegrityError:
            return False
        except SQLAlchemyError as e:
            raise RegistryConnectionError(str(e)) from e

    def try_acquire(self, key: str, timeout: float = 0) -> LockHandle | None:
        start = time.monotonic()
        deadline = start + max(timeout, 0)
        token = uuid.uuid4().hex

        while True:
            if self._attempt(key, token):
                return LockHandle(
                    key=key, token=token, wait_time=time.monotonic() - start
                )
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            time.sleep(min(self._poll_interval, remaining))

    def release(self, handle: LockHandle) -> None:
        try:
            with self._session_factory() as session:
                deleted = (
                    session.query(LockModel)
                    .filter(
                        LockModel.key == handle.key,
                        LockModel.token == handle.token,
                    )
                    .delete()
                )
                session.commit()
        except SQLAlchemyError as e:
            raise RegistryConnectionError(str(e)) from e

        if not deleted:
            logger.warning(f"Lock on {handle.key} expired before it was released")

    def is_locked(self, key: str) -> bool:
        with self._session_factory() as session:
            count = (
                session.query(LockModel)
                .filter(
                    LockModel.key == key,
                    LockModel.expires_at >= datetime.now(),
                )
                .count()
            )
            return count > 0


def get_lock_service(kind: str = "memory", **kwargs: Any) -> LockService:
    """Create a lock service by name: "memory", "file" or "database"."""
    kind = kind.lower().strip()
    if kind == "memory":
        return InMemoryLockService()

    services: dict[str, type[LockService]] = {
        "file": FileLockService,
        "database": DatabaseLockService,
    }
    if kind not in services:
        raise ConfigurationError(f"Unknown lock service: {kind}")
    try:
        return services[kind](**kwargs)
    except TypeError as e:
        raise ConfigurationError(f"Invalid options for {kind} lock service: {e}") from e
