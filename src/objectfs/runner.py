"""Manipulator runner.

Resolves a ``ManipulatorKind`` to its selector and manipulator, checks that
tasks are enabled and the remote tier is reachable, and runs one batch.
Scheduling is left to the host: each kind is meant to run as its own
periodic job.

Example:
    >>> runner = ManipulatorRunner.from_config(ObjectFSConfig.from_file("objectfs.yaml"))
    >>> summary = runner.run_now(ManipulatorKind.PUSHER)
    >>> summaries = runner.run_all()
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from objectfs.base import (
    ConfigurationError,
    ObjectLocation,
    UnknownManipulatorError,
    location_to_string,
)
from objectfs.candidates import (
    CandidateSelector,
    CheckCandidates,
    DeleteCandidates,
    OrphanCandidates,
    OrphanCleanupCandidates,
    PullCandidates,
    PushCandidates,
    RecoverCandidates,
)
from objectfs.clients.factory import get_client
from objectfs.config import ObjectFSConfig
from objectfs.filesystem import TieredFileSystem
from objectfs.locking import LockService, get_lock_service
from objectfs.log import ObjectLogger, RunSummary, get_logger
from objectfs.manipulators import (
    Checker,
    Deleter,
    Manipulator,
    OrphanCleaner,
    Orphaner,
    Puller,
    Pusher,
    Recoverer,
)
from objectfs.metadata import (
    DatabaseFileMetadataSource,
    FileMetadataSource,
    InMemoryFileMetadataSource,
)
from objectfs.registry import DatabaseObjectRegistry, InMemoryObjectRegistry, ObjectRegistry

logger = logging.getLogger(__name__)


class ManipulatorKind(Enum):
    """Closed set of manipulator kinds."""

    CHECKER = "checker"
    PUSHER = "pusher"
    PULLER = "puller"
    DELETER = "deleter"
    RECOVERER = "recoverer"
    ORPHANER = "orphaner"
    ORPHAN_CLEANER = "orphan_cleaner"

    @classmethod
    def parse(cls, value: "ManipulatorKind | str") -> "ManipulatorKind":
        """Resolve a kind from its name.

        Raises:
            UnknownManipulatorError: If the name isn't a known kind.
        """
        if isinstance(value, ManipulatorKind):
            return value
        try:
            return cls(str(value).lower().replace("-", "_"))
        except ValueError:
            raise UnknownManipulatorError(value)


# Order used by run_all.
RUN_ALL_ORDER = (
    ManipulatorKind.DELETER,
    ManipulatorKind.PULLER,
    ManipulatorKind.PUSHER,
    ManipulatorKind.RECOVERER,
    ManipulatorKind.CHECKER,
    ManipulatorKind.ORPHANER,
    ManipulatorKind.ORPHAN_CLEANER,
)

_MANIPULATORS: dict[ManipulatorKind, tuple[type[Manipulator], type[CandidateSelector]]] = {
    ManipulatorKind.CHECKER: (Checker, CheckCandidates),
    ManipulatorKind.PUSHER: (Pusher, PushCandidates),
    ManipulatorKind.PULLER: (Puller, PullCandidates),
    ManipulatorKind.DELETER: (Deleter, DeleteCandidates),
    ManipulatorKind.RECOVERER: (Recoverer, RecoverCandidates),
    ManipulatorKind.ORPHANER: (Orphaner, OrphanCandidates),
    ManipulatorKind.ORPHAN_CLEANER: (OrphanCleaner, OrphanCleanupCandidates),
}

# Kinds whose selector and manipulator read the file metadata.
_USES_METADATA = frozenset(
    {
        ManipulatorKind.CHECKER,
        ManipulatorKind.ORPHANER,
        ManipulatorKind.ORPHAN_CLEANER,
    }
)


def _build_lock_service(config: ObjectFSConfig, engine: Any) -> LockService:
    kind = config.lock_backend or ("database" if engine is not None else "memory")
    if kind == "database":
        if engine is None:
            raise ConfigurationError("Database locks need a database backed registry")
        return get_lock_service(kind, engine=engine, **config.lock_options)
    return get_lock_service(kind, **config.lock_options)


class ManipulatorRunner:
    """Builds and runs manipulators against one set of collaborators.

    Args:
        config: Configuration snapshot.
        filesystem: Tiered file system.
        registry: Object registry.
        metadata: Host file metadata.
        logger: Object logger. Defaults to the file system's logger.
        clock: Source of the current time.
    """

    def __init__(
        self,
        config: ObjectFSConfig,
        filesystem: TieredFileSystem,
        registry: ObjectRegistry,
        metadata: FileMetadataSource,
        logger: ObjectLogger | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._config = config
        self._fs = filesystem
        self._registry = registry
        self._metadata = metadata
        self._logger = logger or filesystem.logger
        self._clock = clock

    @classmethod
    def from_config(
        cls,
        config: ObjectFSConfig,
        registry: ObjectRegistry | None = None,
        metadata: FileMetadataSource | None = None,
        locks: LockService | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> "ManipulatorRunner":
        """Build a runner and its collaborators from configuration.

        With ``config.database_url`` set, the registry, the file metadata
        and the object locks all use that database unless given explicitly.
        ``config.lock_backend`` selects another lock service.

        Raises:
            ConfigurationError: If the backend, lock service or logging mode
                is invalid.
        """
        engine = None
        if config.database_url is not None:
            if registry is None:
                registry = DatabaseObjectRegistry(config.database_url)
            engine = getattr(registry, "engine", None)
            if engine is not None:
                metadata = metadata or DatabaseFileMetadataSource(engine)

        registry = registry or InMemoryObjectRegistry()
        metadata = metadata or InMemoryFileMetadataSource(clock=clock)
        locks = locks or _build_lock_service(config, engine)

        object_logger = get_logger(config.logging_mode)
        client = get_client(config.backend, **config.backend_options)
        filesystem = TieredFileSystem(
            Path(config.filedir),
            client,
            locks=locks,
            logger=object_logger,
            registry=registry,
            prefer_remote=config.prefer_remote,
            delete_remote_enabled=config.delete_remote,
            clock=clock,
        )
        return cls(config, filesystem, registry, metadata, object_logger, clock)

    @property
    def config(self) -> ObjectFSConfig:
        return self._config

    @property
    def filesystem(self) -> TieredFileSystem:
        return self._fs

    @property
    def registry(self) -> ObjectRegistry:
        return self._registry

    @property
    def metadata(self) -> FileMetadataSource:
        return self._metadata

    def build_selector(self, kind: ManipulatorKind | str) -> CandidateSelector:
        kind = ManipulatorKind.parse(kind)
        _, selector_cls = _MANIPULATORS[kind]

        kwargs: dict[str, Any] = {"logger": self._logger, "clock": self._clock}
        if kind in _USES_METADATA and kind is not ManipulatorKind.ORPHAN_CLEANER:
            kwargs["metadata"] = self._metadata
        if kind is ManipulatorKind.PUSHER:
            kwargs["max_upload_size"] = self._fs.maximum_upload_size
        return selector_cls(self._config, self._registry, **kwargs)

    def build(self, kind: ManipulatorKind | str) -> Manipulator:
        """Create the manipulator for a kind, with its selector.

        Raises:
            UnknownManipulatorError: If the kind is unknown.
        """
        kind = ManipulatorKind.parse(kind)
        manipulator_cls, _ = _MANIPULATORS[kind]

        kwargs: dict[str, Any] = {"logger": self._logger, "clock": self._clock}
        if kind in _USES_METADATA and kind is not ManipulatorKind.ORPHANER:
            kwargs["metadata"] = self._metadata
        return manipulator_cls(
            self._fs, self._registry, self._config, self.build_selector(kind), **kwargs
        )

    def run_now(self, kind: ManipulatorKind | str) -> RunSummary | None:
        """Run one batch of a manipulator.

        Returns:
            The run summary, or None if tasks are disabled or the remote
            tier is unavailable.

        Raises:
            UnknownManipulatorError: If the kind is unknown.
            RegistryConnectionError: If the registry can't be reached.
        """
        kind = ManipulatorKind.parse(kind)
        if not self._config.enable_tasks:
            logger.info(f"Tasks are not enabled, skipping {kind.value}")
            return None
        if not self._fs.is_available():
            logger.warning(f"Remote client is not available, skipping {kind.value}")
            return None

        manipulator = self.build(kind)
        logger.info(f"Executing objectfs {kind.value}")
        return manipulator.run()

    def run_all(self) -> dict[ManipulatorKind, RunSummary | None]:
        """Run every manipulator once, in dependency order."""
        return {kind: self.run_now(kind) for kind in RUN_ALL_ORDER}

    def status(self) -> dict[str, Any]:
        """Object counts per location and runner readiness."""
        counts = self._registry.count_by_location()
        locations = {location_to_string(None): counts.get(None, 0)}
        for location in ObjectLocation:
            locations[location_to_string(location)] = counts.get(location, 0)

        return {
            "enable_tasks": self._config.enable_tasks,
            "backend": self._config.backend.value,
            "remote_available": self._fs.is_available(),
            "total": sum(counts.values()),
            "locations": locations,
        }
