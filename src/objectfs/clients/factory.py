"""Factory functions for creating remote clients.

Each ``BackendKind`` maps to one client constructor. Backend modules that
need an optional cloud SDK are imported lazily, so a deployment only needs
the SDK of the backend it actually uses.
"""

from __future__ import annotations

from typing import Any, Callable

from objectfs.base import ConfigurationError
from objectfs.clients.base import BackendKind, ObjectClient

# Type for client constructor functions
ClientConstructor = Callable[..., ObjectClient[Any]]


def _memory(**kwargs: Any) -> ObjectClient[Any]:
    from objectfs.clients.memory import MemoryClient

    return MemoryClient(**kwargs)


def _filesystem(**kwargs: Any) -> ObjectClient[Any]:
    from objectfs.clients.filesystem import FileSystemClient

    return FileSystemClient(**kwargs)


def _s3(**kwargs: Any) -> ObjectClient[Any]:
    from objectfs.clients.s3 import HAS_BOTO3, S3Client

    if not HAS_BOTO3 and "client" not in kwargs:
        raise ConfigurationError(
            "S3 backend requires boto3. Install with: pip install objectfs[s3]"
        )
    return S3Client(**kwargs)


def _azure_blob(**kwargs: Any) -> ObjectClient[Any]:
    from objectfs.clients.azure_blob import HAS_AZURE, AzureBlobClient

    if not HAS_AZURE and "container_client" not in kwargs:
        raise ConfigurationError(
            "Azure Blob backend requires azure-storage-blob. "
            "Install with: pip install objectfs[azure]"
        )
    return AzureBlobClient(**kwargs)


def _gcs(**kwargs: Any) -> ObjectClient[Any]:
    from objectfs.clients.gcs import HAS_GCS, GCSClient

    if not HAS_GCS and "client" not in kwargs:
        raise ConfigurationError(
            "GCS backend requires google-cloud-storage. "
            "Install with: pip install objectfs[gcs]"
        )
    return GCSClient(**kwargs)


_CONSTRUCTORS: dict[BackendKind, ClientConstructor] = {
    BackendKind.MEMORY: _memory,
    BackendKind.FILESYSTEM: _filesystem,
    BackendKind.S3: _s3,
    BackendKind.AZURE_BLOB: _azure_blob,
    BackendKind.GCS: _gcs,
}


def get_client(backend: BackendKind | str, **kwargs: Any) -> ObjectClient[Any]:
    """Create a remote client for the specified backend.

    Args:
        backend: Backend kind, or its string value.
        **kwargs: Backend-specific configuration options.

    Returns:
        Configured, not yet initialized, client instance.

    Raises:
        ConfigurationError: If the backend is unknown, its SDK is missing,
            or required options are absent.

    Example:
        >>> client = get_client(BackendKind.S3, bucket="objects")
        >>> client = get_client("memory")
    """
    if isinstance(backend, str):
        try:
            backend = BackendKind(backend.lower().strip())
        except ValueError:
            available = ", ".join(kind.value for kind in BackendKind)
            raise ConfigurationError(
                f"Unknown remote backend: {backend}. Available backends: {available}"
            )

    try:
        return _CONSTRUCTORS[backend](**kwargs)
    except TypeError as e:
        raise ConfigurationError(
            f"Invalid options for {backend.value} backend: {e}"
        ) from e


def list_available_backends() -> list[str]:
    """List the backends whose dependencies are installed."""
    backends = [BackendKind.MEMORY.value, BackendKind.FILESYSTEM.value]

    from objectfs.clients.azure_blob import HAS_AZURE
    from objectfs.clients.gcs import HAS_GCS
    from objectfs.clients.s3 import HAS_BOTO3

    if HAS_BOTO3:
        backends.append(BackendKind.S3.value)
    if HAS_AZURE:
        backends.append(BackendKind.AZURE_BLOB.value)
    if HAS_GCS:
        backends.append(BackendKind.GCS.value)

    return backends
