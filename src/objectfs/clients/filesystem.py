"""Filesystem remote client.

Stores remote objects under a mounted directory (NFS, SMB, a second disk)
using the same sharded layout as the local tier. Writes go through a
temporary file in the destination directory followed by an atomic rename,
so readers never observe a partially written object.
"""

from __future__ import annotations

import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO

from objectfs.base import ClientUnavailableError, ObjectNotFoundError, RemoteIOError
from objectfs.clients.base import ClientConfig, ObjectClient, ObjectMetadata


@dataclass
class FileSystemClientConfig(ClientConfig):
    """Configuration for the filesystem client.

    Attributes:
        base_path: Root directory of the remote tier.
        create_dirs: Whether to create the root directory if missing.
        fsync: Whether to fsync uploads before renaming them into place.
    """

    base_path: str = "./.objectfs-remote"
    create_dirs: bool = True
    fsync: bool = True


class FileSystemClient(ObjectClient[FileSystemClientConfig]):
    """Remote client backed by a directory.

    Content verification hashes the stored file, since there is no
    separate metadata store to record the upload digest in.

    Example:
        >>> client = FileSystemClient(base_path="/mnt/objects")
        >>> client.put(contenthash, open(local_path, "rb"))
    """

    backend_name = "filesystem"

    def __init__(
        self,
        base_path: str = "./.objectfs-remote",
        prefix: str = "",
        create_dirs: bool = True,
        fsync: bool = True,
        max_upload_size: int | None = None,
        **kwargs: Any,
    ) -> None:
        config = FileSystemClientConfig(
            base_path=base_path,
            prefix=prefix,
            create_dirs=create_dirs,
            fsync=fsync,
            max_upload_size=max_upload_size,
        )
        super().__init__(config)

    @classmethod
    def _default_config(cls) -> FileSystemClientConfig:
        return FileSystemClientConfig()

    def _do_initialize(self) -> None:
        base_path = Path(self._config.base_path)
        if self._config.create_dirs:
            try:
                base_path.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise ClientUnavailableError(self.backend_name, str(e)) from e
        if not base_path.is_dir():
            raise ClientUnavailableError(
                self.backend_name, f"Directory not found: {base_path}"
            )

    def _get_path(self, contenthash: str) -> Path:
        return Path(self._config.base_path) / self.get_key(contenthash)

    def get_fullpath_from_hash(self, contenthash: str) -> str:
        return str(self._get_path(contenthash))

    def put(self, contenthash: str, stream: BinaryIO, size: int | None = None) -> None:
        self.initialize()
        path = self._get_path(contenthash)

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, temp_name = tempfile.mkstemp(
                dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
            )
        except OSError as e:
            raise RemoteIOError(self.backend_name, "put", str(e)) from e

        temp_path = Path(temp_name)
        try:
            with os.fdopen(fd, "wb") as f:
                shutil.copyfileobj(stream, f)
                if self._config.fsync:
                    f.flush()
                    os.fsync(f.fileno())
            temp_path.replace(path)
        except OSError as e:
            temp_path.unlink(missing_ok=True)
            raise RemoteIOError(self.backend_name, "put", str(e)) from e

    def get(self, contenthash: str) -> BinaryIO:
        self.initialize()
        path = self._get_path(contenthash)
        try:
            return open(path, "rb")
        except FileNotFoundError:
            raise ObjectNotFoundError(contenthash, "remote")
        except OSError as e:
            raise RemoteIOError(self.backend_name, "get", str(e)) from e

    def delete(self, contenthash: str) -> bool:
        self.initialize()
        path = self._get_path(contenthash)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise RemoteIOError(self.backend_name, "delete", str(e)) from e
        return True

    def get_metadata(self, contenthash: str) -> ObjectMetadata | None:
        self.initialize()
        path = self._get_path(contenthash)
        try:
            stat = path.stat()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise RemoteIOError(self.backend_name, "stat", str(e)) from e
        return ObjectMetadata(contenthash=contenthash, size=stat.st_size)
