"""Shared fixtures for objectfs tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from objectfs.base import ObjectLocation, ObjectRecord
from objectfs.clients.memory import MemoryClient
from objectfs.config import ObjectFSConfig
from objectfs.filesystem import TieredFileSystem
from objectfs.locking import InMemoryLockService
from objectfs.log import AggregateLogger
from objectfs.metadata import InMemoryFileMetadataSource
from objectfs.registry import InMemoryObjectRegistry
from objectfs.runner import ManipulatorRunner
from tests.helpers import FakeClock, sha1


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def filedir(tmp_path: Path) -> Path:
    path = tmp_path / "filedir"
    path.mkdir()
    return path


@pytest.fixture
def client() -> MemoryClient:
    return MemoryClient()


@pytest.fixture
def registry() -> InMemoryObjectRegistry:
    return InMemoryObjectRegistry()


@pytest.fixture
def metadata(clock: FakeClock) -> InMemoryFileMetadataSource:
    return InMemoryFileMetadataSource(clock=clock)


@pytest.fixture
def locks() -> InMemoryLockService:
    return InMemoryLockService()


@pytest.fixture
def object_logger() -> AggregateLogger:
    return AggregateLogger()


@pytest.fixture
def config() -> ObjectFSConfig:
    """Tasks enabled, 100 byte threshold, no minimum age."""
    return ObjectFSConfig(
        enable_tasks=True,
        size_threshold=100,
        minimum_age=0,
        consistency_delay=600,
        delete_local=True,
        max_task_runtime=60,
        batch_size=100,
    )


@pytest.fixture
def fs(
    filedir: Path,
    client: MemoryClient,
    locks: InMemoryLockService,
    object_logger: AggregateLogger,
    registry: InMemoryObjectRegistry,
    config: ObjectFSConfig,
    clock: FakeClock,
) -> TieredFileSystem:
    return TieredFileSystem(
        filedir,
        client,
        locks=locks,
        logger=object_logger,
        registry=registry,
        delete_remote_enabled=config.delete_remote,
        clock=clock,
    )


@pytest.fixture
def runner(
    config: ObjectFSConfig,
    fs: TieredFileSystem,
    registry: InMemoryObjectRegistry,
    metadata: InMemoryFileMetadataSource,
    clock: FakeClock,
) -> ManipulatorRunner:
    return ManipulatorRunner(config, fs, registry, metadata, clock=clock)


@pytest.fixture
def store_local(fs: TieredFileSystem, registry: InMemoryObjectRegistry, clock: FakeClock):
    """Write content to the local tier and register it as LOCAL."""

    def _store(content: bytes, location: ObjectLocation | None = ObjectLocation.LOCAL) -> str:
        contenthash = sha1(content)
        path = fs.resolve_local_path(contenthash)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        if registry.get(contenthash) is None:
            registry.create(
                ObjectRecord(
                    contenthash=contenthash,
                    location=location,
                    filesize=len(content),
                    timecreated=clock(),
                )
            )
        return contenthash

    return _store
