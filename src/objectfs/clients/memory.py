"""In-memory remote client.

Keeps objects in a dictionary. Useful for testing and single-process
development setups. Data is not persisted between sessions.
"""

from __future__ import annotations

import hashlib
import io
import threading
from dataclasses import dataclass
from typing import Any, BinaryIO

from objectfs.base import ObjectNotFoundError
from objectfs.clients.base import ClientConfig, ObjectClient, ObjectMetadata


@dataclass
class MemoryClientConfig(ClientConfig):
    """Configuration for the in-memory client.

    Attributes:
        available: Reported backend availability.
    """

    available: bool = True


class MemoryClient(ObjectClient[MemoryClientConfig]):
    """In-memory remote client.

    Example:
        >>> client = MemoryClient()
        >>> client.put(contenthash, io.BytesIO(b"data"))
        >>> client.exists_and_verified(contenthash, contenthash)
        True
    """

    backend_name = "memory"

    def __init__(
        self,
        prefix: str = "",
        max_upload_size: int | None = None,
        available: bool = True,
        **kwargs: Any,
    ) -> None:
        config = MemoryClientConfig(
            prefix=prefix,
            max_upload_size=max_upload_size,
            available=available,
        )
        super().__init__(config)
        self._objects: dict[str, bytes] = {}
        self._digests: dict[str, str] = {}
        self._lock = threading.RLock()

    @classmethod
    def _default_config(cls) -> MemoryClientConfig:
        return MemoryClientConfig()

    def put(self, contenthash: str, stream: BinaryIO, size: int | None = None) -> None:
        data = stream.read()
        key = self.get_key(contenthash)
        with self._lock:
            self._objects[key] = data
            self._digests[key] = hashlib.sha1(data).hexdigest()

    def get(self, contenthash: str) -> BinaryIO:
        key = self.get_key(contenthash)
        with self._lock:
            if key not in self._objects:
                raise ObjectNotFoundError(contenthash, "remote")
            return io.BytesIO(self._objects[key])

    def delete(self, contenthash: str) -> bool:
        key = self.get_key(contenthash)
        with self._lock:
            if key not in self._objects:
                return False
            del self._objects[key]
            del self._digests[key]
            return True

    def get_metadata(self, contenthash: str) -> ObjectMetadata | None:
        key = self.get_key(contenthash)
        with self._lock:
            if key not in self._objects:
                return None
            return ObjectMetadata(
                contenthash=contenthash,
                size=len(self._objects[key]),
                digest=self._digests[key],
            )

    def is_available(self) -> bool:
        return self._config.available

    def corrupt(self, contenthash: str, data: bytes = b"corrupted") -> None:
        """Overwrite an object's bytes so they no longer match its hash."""
        key = self.get_key(contenthash)
        with self._lock:
            self._objects[key] = data
            self._digests[key] = hashlib.sha1(data).hexdigest()

    def clear(self) -> int:
        """Delete every object. Returns the number deleted."""
        with self._lock:
            count = len(self._objects)
            self._objects.clear()
            self._digests.clear()
            return count

    @property
    def object_count(self) -> int:
        with self._lock:
            return len(self._objects)
