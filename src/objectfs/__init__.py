"""objectfs - tiered lifecycle management for content-addressed objects.

Objects live on a fast local tier, a durable remote object store, or both.
Time-boxed manipulators push objects to the remote tier, delete local
copies once they are safely duplicated, pull small objects back, recover
objects whose location became inconsistent and retire orphans.

Example:
    >>> from objectfs import ManipulatorRunner, ManipulatorKind, ObjectFSConfig
    >>>
    >>> config = ObjectFSConfig.from_file("objectfs.yaml")
    >>> runner = ManipulatorRunner.from_config(config)
    >>> summary = runner.run_now(ManipulatorKind.PUSHER)
"""

from objectfs.base import (
    EMPTY_CONTENTHASH,
    Candidate,
    ClientError,
    ClientUnavailableError,
    ConcurrentUpdateError,
    ConfigurationError,
    InvalidContentHashError,
    LockTimeoutError,
    ObjectFSError,
    ObjectLocation,
    ObjectNotFoundError,
    ObjectRecord,
    RecordNotFoundError,
    RegistryConnectionError,
    RegistryError,
    RemoteIOError,
    StructuralError,
    UnknownManipulatorError,
    VerificationError,
)
from objectfs.clients import BackendKind, ObjectClient, get_client
from objectfs.config import ObjectFSConfig
from objectfs.filesystem import TieredFileSystem
from objectfs.locking import LockService, get_lock_service
from objectfs.log import AggregateLogger, ObjectLogger, RunSummary, get_logger
from objectfs.metadata import FileMetadataSource
from objectfs.registry import ObjectRegistry, get_registry
from objectfs.runner import ManipulatorKind, ManipulatorRunner

__version__ = "0.1.0"

__all__ = [
    # Types
    "EMPTY_CONTENTHASH",
    "Candidate",
    "ObjectLocation",
    "ObjectRecord",
    # Errors
    "ObjectFSError",
    "ConfigurationError",
    "UnknownManipulatorError",
    "InvalidContentHashError",
    "ClientError",
    "RemoteIOError",
    "ClientUnavailableError",
    "ObjectNotFoundError",
    "VerificationError",
    "StructuralError",
    "LockTimeoutError",
    "RegistryError",
    "RegistryConnectionError",
    "RecordNotFoundError",
    "ConcurrentUpdateError",
    # Components
    "BackendKind",
    "ObjectClient",
    "get_client",
    "ObjectFSConfig",
    "TieredFileSystem",
    "LockService",
    "get_lock_service",
    "ObjectLogger",
    "AggregateLogger",
    "RunSummary",
    "get_logger",
    "FileMetadataSource",
    "ObjectRegistry",
    "get_registry",
    "ManipulatorKind",
    "ManipulatorRunner",
]
