"""Remote client capability interface.

Every remote backend implements ``ObjectClient``. The tiered file system
depends only on this interface, never on a concrete backend, so any
backend that implements it can be plugged in without touching the core.
"""

from __future__ import annotations

import hashlib
import shutil
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, BinaryIO, Generic, TypeVar

from objectfs.base import EMPTY_CONTENTHASH, ClientError, validate_contenthash

BYTES_IN_TERABYTE = 1024**4

# Object metadata key holding the SHA-1 digest written on upload.
DIGEST_METADATA_KEY = "sha1"

CHUNK_SIZE = 1024 * 1024

# Downloads larger than this spill from memory to a temporary file.
SPOOL_MAX_SIZE = 8 * 1024 * 1024


class BackendKind(Enum):
    """Closed set of remote backends known to the client factory."""

    MEMORY = "memory"
    FILESYSTEM = "filesystem"
    S3 = "s3"
    AZURE_BLOB = "azure_blob"
    GCS = "gcs"


def shard_path(contenthash: str) -> str:
    """Sharded relative path for a content hash.

    The first two and next two hex characters become nested directories so
    that file counts per directory stay bounded. Both tiers use this layout.

    Example:
        >>> shard_path("a94a8fe5ccb19ba61c4c0873d391e987982fbbd3")
        'a9/4a/a94a8fe5ccb19ba61c4c0873d391e987982fbbd3'
    """
    validate_contenthash(contenthash)
    return f"{contenthash[0:2]}/{contenthash[2:4]}/{contenthash}"


def sha1_of_stream(stream: BinaryIO) -> tuple[str, int]:
    """Return the SHA-1 hex digest and size of a stream's content."""
    digest = hashlib.sha1()
    size = 0
    while True:
        chunk = stream.read(CHUNK_SIZE)
        if not chunk:
            break
        digest.update(chunk)
        size += len(chunk)
    return digest.hexdigest(), size


def spooled_buffer() -> BinaryIO:
    """Temporary buffer for downloads, kept in memory while small."""
    return tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_SIZE)  # type: ignore[return-value]


def prepare_upload(stream: BinaryIO) -> tuple[BinaryIO, str, int]:
    """Hash an upload stream and rewind it.

    Non-seekable streams are first copied into a spooled buffer.

    Returns:
        Tuple of (stream positioned at the start, SHA-1 digest, size).
    """
    if not stream.seekable():
        buffer = spooled_buffer()
        shutil.copyfileobj(stream, buffer, CHUNK_SIZE)
        buffer.seek(0)
        stream = buffer

    start = stream.tell()
    digest, size = sha1_of_stream(stream)
    stream.seek(start)
    return stream, digest, size


@dataclass
class ObjectMetadata:
    """Remote object metadata returned by a head/stat call.

    Attributes:
        contenthash: The object's content hash.
        size: Size in bytes as reported by the backend.
        digest: SHA-1 digest recorded at upload, if the backend kept it.
        etag: Backend entity tag, if any.
    """

    contenthash: str
    size: int
    digest: str | None = None
    etag: str | None = None


@dataclass
class ClientConfig:
    """Base configuration for remote clients.

    Attributes:
        prefix: Key prefix for all stored objects.
        max_upload_size: Override of the backend's maximum object size.
    """

    prefix: str = ""
    max_upload_size: int | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    def get_full_prefix(self) -> str:
        """Get the key prefix with exactly one trailing slash, or ""."""
        prefix = self.prefix.strip("/")
        return f"{prefix}/" if prefix else ""


ConfigT = TypeVar("ConfigT", bound=ClientConfig)


class ObjectClient(ABC, Generic[ConfigT]):
    """Abstract base class for remote object store clients.

    Implementations raise ``RemoteIOError`` for backend failures,
    ``ObjectNotFoundError`` when reading a missing object and
    ``ClientUnavailableError`` when the backend cannot be reached.

    Example:
        >>> class MyClient(ObjectClient[ClientConfig]):
        ...     backend_name = "my-store"
        ...     def put(self, contenthash, stream, size=None): ...
    """

    backend_name: str = "remote"
    default_max_upload_size: int = 5 * BYTES_IN_TERABYTE

    def __init__(self, config: ConfigT | None = None) -> None:
        self._config = config or self._default_config()
        self._initialized = False

    @classmethod
    def _default_config(cls) -> ConfigT:
        return ClientConfig()  # type: ignore[return-value]

    @property
    def config(self) -> ConfigT:
        return self._config

    def initialize(self) -> None:
        """Initialize the client. Called lazily before first use."""
        if self._initialized:
            return
        self._do_initialize()
        self._initialized = True

    def _do_initialize(self) -> None:
        """Backend specific initialization."""
        pass

    def close(self) -> None:
        """Release any resources held by the client."""
        pass

    def __enter__(self) -> "ObjectClient[ConfigT]":
        self.initialize()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    # -------------------------------------------------------------------------
    # Paths
    # -------------------------------------------------------------------------

    def get_key(self, contenthash: str) -> str:
        """Backend key for an object."""
        return f"{self._config.get_full_prefix()}{shard_path(contenthash)}"

    def get_fullpath_from_hash(self, contenthash: str) -> str:
        """Fully qualified location string, used for logging and diagnostics."""
        return f"{self.backend_name}://{self.get_key(contenthash)}"

    # -------------------------------------------------------------------------
    # Capability interface
    # -------------------------------------------------------------------------

    @abstractmethod
    def put(self, contenthash: str, stream: BinaryIO, size: int | None = None) -> None:
        """Upload an object.

        Args:
            contenthash: Content hash of the object.
            stream: Readable binary stream positioned at the start.
            size: Size in bytes if known.

        Raises:
            RemoteIOError: If the upload fails.
        """
        pass

    @abstractmethod
    def get(self, contenthash: str) -> BinaryIO:
        """Open an object for reading.

        Raises:
            ObjectNotFoundError: If the object doesn't exist.
            RemoteIOError: If the download fails.
        """
        pass

    @abstractmethod
    def delete(self, contenthash: str) -> bool:
        """Delete an object.

        Returns:
            True if the object was deleted, False if it didn't exist.

        Raises:
            RemoteIOError: If deletion fails.
        """
        pass

    @abstractmethod
    def get_metadata(self, contenthash: str) -> ObjectMetadata | None:
        """Head the object. Returns None if it doesn't exist."""
        pass

    def exists(self, contenthash: str) -> bool:
        """Check if an object exists remotely."""
        if contenthash == EMPTY_CONTENTHASH:
            return True
        return self.get_metadata(contenthash) is not None

    def exists_and_verified(self, contenthash: str, expected_digest: str) -> bool:
        """Check that the remote object exists and matches the expected digest.

        The default implementation compares the digest recorded at upload
        time. Backends that lost it fall back to downloading the content.
        """
        if contenthash == EMPTY_CONTENTHASH:
            return True

        metadata = self.get_metadata(contenthash)
        if metadata is None:
            return False
        if metadata.digest is not None:
            return metadata.digest == expected_digest

        stream = self.get(contenthash)
        try:
            digest, _ = sha1_of_stream(stream)
        finally:
            stream.close()
        return digest == expected_digest

    def max_object_size(self) -> int:
        """Maximum object size accepted by the backend, in bytes."""
        if self._config.max_upload_size is not None:
            return self._config.max_upload_size
        return self.default_max_upload_size

    def is_available(self) -> bool:
        """Check whether the backend can be reached."""
        try:
            self.initialize()
        except ClientError:
            return False
        return True
