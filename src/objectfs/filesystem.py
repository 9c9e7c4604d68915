"""Tiered file system: one hash-addressed store over a local and a remote tier.

The local tier is a directory tree (``filedir``); the remote tier is any
``ObjectClient``. Both use the sharded ``ab/cd/abcdef...`` layout.

Every transition follows copy, then verify, then report. A location is
never reported as changed before the copy it depends on has been verified,
so a failure at any point leaves the previous location valid. Operations
probe the tiers for ground truth themselves; the registry is updated by
the caller from the location they return.

Example:
    >>> fs = TieredFileSystem("/var/appdata/filedir", S3Client(bucket="objects"))
    >>> with fs.acquire_object_lock(contenthash, timeout=0) as handle:
    ...     if handle is not None:
    ...         location = fs.copy_local_to_remote(contenthash, size)
"""

from __future__ import annotations

import hashlib
import io
import logging
import os
import shutil
import tempfile
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO, Callable, Iterator

from objectfs.base import (
    EMPTY_CONTENTHASH,
    ConcurrentUpdateError,
    ObjectLocation,
    ObjectNotFoundError,
    ObjectRecord,
    RemoteIOError,
    VerificationError,
    validate_contenthash,
)
from objectfs.clients.base import CHUNK_SIZE, ObjectClient, sha1_of_stream, shard_path
from objectfs.locking import InMemoryLockService, LockHandle, LockService
from objectfs.log import NullLogger, ObjectLogger

if TYPE_CHECKING:
    from objectfs.registry import ObjectRegistry

logger = logging.getLogger(__name__)

DEFAULT_DIR_PERMISSIONS = 0o2777
DEFAULT_FILE_PERMISSIONS = 0o666

# Stale temporary files older than this are removed by delete_empty_dirs.
TEMP_FILE_MAX_AGE = 24 * 60 * 60


def hash_from_path(path: str | Path) -> str:
    """SHA-1 hex digest of a file's content."""
    with open(path, "rb") as f:
        digest, _ = sha1_of_stream(f)
    return digest


class TieredFileSystem:
    """Dual-tier object store.

    Args:
        filedir: Root directory of the local tier.
        client: Remote tier client.
        locks: Lock service for per-object locks. Defaults to an in-process one.
        logger: Receives read, move and lock events.
        registry: If given, objects added through ``add_object_*`` are
            recorded in it.
        prefer_remote: Serve duplicated objects from the remote tier.
        delete_remote_enabled: Allow ``delete_remote`` to remove remote copies.
        clock: Source of the current time for registry timestamps.
    """

    def __init__(
        self,
        filedir: str | Path,
        client: ObjectClient,
        locks: LockService | None = None,
        logger: ObjectLogger | None = None,
        registry: "ObjectRegistry | None" = None,
        prefer_remote: bool = False,
        delete_remote_enabled: bool = False,
        dir_permissions: int = DEFAULT_DIR_PERMISSIONS,
        file_permissions: int = DEFAULT_FILE_PERMISSIONS,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._filedir = Path(filedir)
        self._client = client
        self._locks = locks or InMemoryLockService()
        self._logger = logger or NullLogger()
        self._registry = registry
        self._prefer_remote = prefer_remote
        self._delete_remote_enabled = delete_remote_enabled
        self._dir_permissions = dir_permissions
        self._file_permissions = file_permissions
        self._clock = clock

    @property
    def filedir(self) -> Path:
        return self._filedir

    @property
    def client(self) -> ObjectClient:
        return self._client

    @property
    def locks(self) -> LockService:
        return self._locks

    @property
    def logger(self) -> ObjectLogger:
        return self._logger

    # -------------------------------------------------------------------------
    # Paths
    # -------------------------------------------------------------------------

    def resolve_local_path(self, contenthash: str) -> Path:
        """Local tier path of an object."""
        return self._filedir / shard_path(contenthash)

    def resolve_remote_path(self, contenthash: str) -> str:
        """Remote tier location of an object, for diagnostics."""
        validate_contenthash(contenthash)
        return self._client.get_fullpath_from_hash(contenthash)

    # -------------------------------------------------------------------------
    # Ground truth
    # -------------------------------------------------------------------------

    def is_readable_locally(self, contenthash: str) -> bool:
        # Empty content is handled virtually on both tiers.
        if contenthash == EMPTY_CONTENTHASH:
            return True
        path = self.resolve_local_path(contenthash)
        return path.is_file() and os.access(path, os.R_OK)

    def is_readable_remotely(self, contenthash: str) -> bool:
        if contenthash == EMPTY_CONTENTHASH:
            return True
        return self._client.exists(contenthash)

    def get_actual_location(self, contenthash: str) -> ObjectLocation:
        """Probe both tiers, bypassing the registry.

        Returns ERROR when neither tier holds the object.

        Raises:
            RemoteIOError: If the remote tier cannot be probed.
        """
        local = self.is_readable_locally(contenthash)
        remote = self.is_readable_remotely(contenthash)

        if local and remote:
            return ObjectLocation.DUPLICATED
        if local:
            return ObjectLocation.LOCAL
        if remote:
            return ObjectLocation.EXTERNAL
        return ObjectLocation.ERROR

    def get_verified_location(self, contenthash: str) -> ObjectLocation:
        """Probe both tiers, counting a remote copy only once it verifies.

        A remote copy that fails verification is ignored, so a duplicated
        object falls back to LOCAL and an external one to ERROR.

        Raises:
            RemoteIOError: If the remote tier cannot be probed.
        """
        location = self.get_actual_location(contenthash)
        if location in (ObjectLocation.DUPLICATED, ObjectLocation.EXTERNAL):
            if not self.verify_remote(contenthash):
                logger.warning(f"Remote copy of {contenthash} does not verify, ignoring it")
                if location is ObjectLocation.DUPLICATED:
                    return ObjectLocation.LOCAL
                return ObjectLocation.ERROR
        return location

    def verify_remote(self, contenthash: str) -> bool:
        """Check the remote copy exists and its content matches the hash."""
        return self._client.exists_and_verified(contenthash, contenthash)

    def verify_local(self, contenthash: str) -> bool:
        """Check the local copy exists and its content matches the hash."""
        if contenthash == EMPTY_CONTENTHASH:
            return True
        try:
            return hash_from_path(self.resolve_local_path(contenthash)) == contenthash
        except FileNotFoundError:
            return False

    # -------------------------------------------------------------------------
    # Locking
    # -------------------------------------------------------------------------

    @contextmanager
    def acquire_object_lock(
        self, contenthash: str, timeout: float = 0
    ) -> Iterator[LockHandle | None]:
        """Lock an object for the duration of a transition.

        Yields the lock handle, or None if the lock was not acquired within
        ``timeout`` seconds. The lock is released on every exit path.
        """
        start = time.monotonic()
        handle = self._locks.try_acquire(contenthash, timeout)
        self._logger.log_lock_timing(contenthash, handle, time.monotonic() - start)
        try:
            yield handle
        finally:
            if handle is not None:
                self._locks.release(handle)

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def copy_local_to_remote(self, contenthash: str, size: int | None = 0) -> ObjectLocation:
        """Copy a local object to the remote tier and verify it.

        Only acts when verified ground truth is LOCAL. A remote copy left
        behind by an earlier failed push doesn't verify, so it is uploaded
        again. Any other location is returned unchanged.

        Returns:
            DUPLICATED on success. ERROR if neither tier holds a verifiable
            copy.

        Raises:
            RemoteIOError: If the upload fails.
            VerificationError: If the uploaded copy doesn't verify.
        """
        start = time.monotonic()
        initial = self.get_verified_location(contenthash)
        final = initial

        try:
            if initial is ObjectLocation.LOCAL:
                final = self._upload(contenthash, size)
        finally:
            self._logger.log_object_move(
                "copy_local_to_remote",
                initial,
                final,
                contenthash,
                size,
                time.monotonic() - start,
            )
        return final

    def _upload(self, contenthash: str, size: int | None) -> ObjectLocation:
        path = self.resolve_local_path(contenthash)
        try:
            with open(path, "rb") as f:
                self._client.put(contenthash, f, size or None)
        except FileNotFoundError:
            # Source vanished mid-copy. Whatever is left decides the location.
            if self.is_readable_remotely(contenthash) and self.verify_remote(contenthash):
                return ObjectLocation.EXTERNAL
            logger.warning(f"Local source of {contenthash} vanished during upload")
            return ObjectLocation.ERROR
        except OSError as e:
            raise RemoteIOError(self._client.backend_name, "put", str(e)) from e

        if not self.verify_remote(contenthash):
            raise VerificationError(contenthash, "remote copy does not match")
        return ObjectLocation.DUPLICATED

    def copy_remote_to_local(self, contenthash: str, size: int | None = 0) -> ObjectLocation:
        """Copy a remote object back to the local tier.

        Only acts when ground truth is EXTERNAL. The download is written to a
        temporary file and renamed into place once its SHA-1 matches.

        Returns:
            DUPLICATED on success, otherwise the unchanged location.

        Raises:
            RemoteIOError: If the download fails.
            VerificationError: If the downloaded content doesn't match.
        """
        start = time.monotonic()
        initial = self.get_actual_location(contenthash)
        final = initial

        try:
            if initial is ObjectLocation.EXTERNAL:
                self._download(contenthash)
                final = ObjectLocation.DUPLICATED
        finally:
            self._logger.log_object_move(
                "copy_remote_to_local",
                initial,
                final,
                contenthash,
                size,
                time.monotonic() - start,
            )
        return final

    def _download(self, contenthash: str) -> None:
        path = self.resolve_local_path(contenthash)
        self._make_dirs(path.parent)

        fd, temp_name = tempfile.mkstemp(
            dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
        )
        temp_path = Path(temp_name)
        committed = False
        try:
            digest = hashlib.sha1()
            with os.fdopen(fd, "wb") as f:
                stream = self._client.get(contenthash)
                try:
                    while True:
                        chunk = stream.read(CHUNK_SIZE)
                        if not chunk:
                            break
                        digest.update(chunk)
                        f.write(chunk)
                finally:
                    stream.close()

            if digest.hexdigest() != contenthash:
                raise VerificationError(contenthash, "downloaded copy does not match")

            os.chmod(temp_path, self._file_permissions)
            temp_path.replace(path)
            committed = True
        except OSError as e:
            raise RemoteIOError(self._client.backend_name, "get", str(e)) from e
        finally:
            if not committed:
                temp_path.unlink(missing_ok=True)

    def delete_local(self, contenthash: str, size: int | None = 0) -> ObjectLocation:
        """Delete the local copy of a duplicated object.

        Only acts when ground truth is DUPLICATED, and only after the remote
        copy re-verifies.

        Returns:
            EXTERNAL on success, otherwise the unchanged location.

        Raises:
            VerificationError: If the remote copy doesn't verify.
        """
        start = time.monotonic()
        initial = self.get_actual_location(contenthash)
        final = initial

        try:
            if initial is ObjectLocation.DUPLICATED:
                if not self.verify_remote(contenthash):
                    raise VerificationError(
                        contenthash, "remote copy does not match, keeping local copy"
                    )
                if contenthash != EMPTY_CONTENTHASH:
                    self.resolve_local_path(contenthash).unlink(missing_ok=True)
                final = ObjectLocation.EXTERNAL
        finally:
            self._logger.log_object_move(
                "delete_local",
                initial,
                final,
                contenthash,
                size,
                time.monotonic() - start,
            )
        return final

    def delete_remote(self, contenthash: str, size: int | None = 0) -> ObjectLocation:
        """Delete the remote copy of a duplicated object.

        Only acts when remote deletion is enabled, ground truth is
        DUPLICATED and the local copy verifies, so the last copy of an
        object is never removed.

        Returns:
            LOCAL on success, otherwise the unchanged location.

        Raises:
            VerificationError: If the local copy doesn't verify.
            RemoteIOError: If the remote delete fails.
        """
        start = time.monotonic()
        initial = self.get_actual_location(contenthash)
        final = initial

        try:
            if self._delete_remote_enabled and initial is ObjectLocation.DUPLICATED:
                if not self.verify_local(contenthash):
                    raise VerificationError(
                        contenthash, "local copy does not match, keeping remote copy"
                    )
                if contenthash != EMPTY_CONTENTHASH:
                    self._client.delete(contenthash)
                final = ObjectLocation.LOCAL
        finally:
            self._logger.log_object_move(
                "delete_remote",
                initial,
                final,
                contenthash,
                size,
                time.monotonic() - start,
            )
        return final

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def read_object(self, contenthash: str) -> BinaryIO:
        """Open an object for reading from whichever tier should serve it.

        Local reads are preferred unless ``prefer_remote`` is set and the
        object is duplicated. If the preferred tier fails, the other is
        tried.

        Raises:
            ObjectNotFoundError: If neither tier can serve the object.
        """
        validate_contenthash(contenthash)
        if contenthash == EMPTY_CONTENTHASH:
            return io.BytesIO(b"")

        start = time.monotonic()
        local = self.is_readable_locally(contenthash)
        remote_first = self._prefer_remote and local and self.is_readable_remotely(
            contenthash
        )

        readers = [self._read_remote, self._read_local]
        if not remote_first:
            readers.reverse()

        for reader in readers:
            try:
                stream, path, size = reader(contenthash)
            except (ObjectNotFoundError, RemoteIOError, OSError) as e:
                logger.debug(f"Read of {contenthash} fell through: {e}")
                continue
            self._logger.log_object_read(
                reader.__name__.lstrip("_"), path, size, time.monotonic() - start
            )
            return stream

        raise ObjectNotFoundError(contenthash, "any")

    def _read_local(self, contenthash: str) -> tuple[BinaryIO, str, int]:
        path = self.resolve_local_path(contenthash)
        try:
            stream = open(path, "rb")
        except FileNotFoundError:
            raise ObjectNotFoundError(contenthash, "local")
        return stream, str(path), os.fstat(stream.fileno()).st_size

    def _read_remote(self, contenthash: str) -> tuple[BinaryIO, str, int]:
        stream = self._client.get(contenthash)
        size = 0
        if stream.seekable():
            size = stream.seek(0, os.SEEK_END)
            stream.seek(0)
        return stream, self.resolve_remote_path(contenthash), size

    def read_bytes(self, contenthash: str) -> bytes:
        with self.read_object(contenthash) as stream:
            return stream.read()

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def add_object_from_bytes(self, content: bytes) -> str:
        """Store content on the local tier. Returns its content hash."""
        contenthash, _ = self.add_object_from_path_like(io.BytesIO(content))
        return contenthash

    def add_object_from_path(self, pathname: str | Path) -> tuple[str, int]:
        """Store a file's content on the local tier.

        Returns:
            Tuple of (content hash, size in bytes).
        """
        with open(pathname, "rb") as f:
            return self.add_object_from_path_like(f)

    def add_object_from_path_like(self, stream: BinaryIO) -> tuple[str, int]:
        """Store a stream's content on the local tier.

        The content is written to a temporary file while being hashed, then
        renamed into its sharded location. Existing identical content is
        left untouched.
        """
        self._make_dirs(self._filedir)
        fd, temp_name = tempfile.mkstemp(dir=self._filedir, prefix=".add.", suffix=".tmp")
        temp_path = Path(temp_name)
        try:
            digest = hashlib.sha1()
            size = 0
            with os.fdopen(fd, "wb") as f:
                while True:
                    chunk = stream.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    digest.update(chunk)
                    f.write(chunk)
                    size += len(chunk)

            contenthash = digest.hexdigest()
            if contenthash != EMPTY_CONTENTHASH:
                path = self.resolve_local_path(contenthash)
                if path.is_file():
                    temp_path.unlink()
                else:
                    self._make_dirs(path.parent)
                    os.chmod(temp_path, self._file_permissions)
                    temp_path.replace(path)
        finally:
            temp_path.unlink(missing_ok=True)

        if self._registry is not None and size > 0:
            self._record_added(contenthash, size)
        return contenthash, size

    def _record_added(self, contenthash: str, size: int) -> None:
        location = self.get_verified_location(contenthash)
        record = self._registry.get(contenthash)
        if record is None:
            now = self._clock()
            try:
                self._registry.create(
                    ObjectRecord(
                        contenthash=contenthash,
                        location=location,
                        filesize=size,
                        timecreated=now,
                    ),
                    now=now,
                )
                return
            except ConcurrentUpdateError:
                record = self._registry.get(contenthash)
        if record is not None and record.location != location:
            self._registry.update_location(contenthash, location, now=self._clock())

    # -------------------------------------------------------------------------
    # Housekeeping
    # -------------------------------------------------------------------------

    def delete_empty_dirs(self, root: str | Path | None = None) -> int:
        """Remove empty shard directories and stale temporary files.

        The filedir itself is never removed. Temporary files are removed
        only once they are older than a day, so in-flight writes survive.

        Returns:
            Number of directories removed.
        """
        root = Path(root) if root is not None else self._filedir
        if not root.is_dir():
            return 0

        removed = 0
        cutoff = time.time() - TEMP_FILE_MAX_AGE
        for dirpath, dirnames, filenames in os.walk(root, topdown=False):
            current = Path(dirpath)
            for filename in filenames:
                if not filename.endswith(".tmp"):
                    continue
                temp_path = current / filename
                try:
                    if temp_path.stat().st_mtime <= cutoff:
                        temp_path.unlink()
                except FileNotFoundError:
                    continue

            if current == self._filedir or current == root:
                continue
            try:
                current.rmdir()
            except OSError:
                # Not empty.
                continue
            removed += 1

        return removed

    def is_available(self) -> bool:
        """Whether the remote tier can be reached."""
        return self._client.is_available()

    @property
    def maximum_upload_size(self) -> int:
        """Largest object the remote tier accepts, in bytes."""
        return self._client.max_object_size()

    def _make_dirs(self, path: Path) -> None:
        if path.is_dir():
            return
        path.mkdir(parents=True, exist_ok=True)
        try:
            os.chmod(path, self._dir_permissions)
        except PermissionError:
            logger.debug(f"Could not set permissions on {path}")

    def copy_to_path(self, contenthash: str, destination: str | Path) -> None:
        """Copy an object's content to an arbitrary path."""
        with self.read_object(contenthash) as stream, open(destination, "wb") as f:
            shutil.copyfileobj(stream, f, CHUNK_SIZE)
