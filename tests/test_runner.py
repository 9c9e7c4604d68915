"""Tests for the manipulator runner."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest

from objectfs.base import ConfigurationError, ObjectLocation, UnknownManipulatorError
from objectfs.clients.filesystem import FileSystemClient
from objectfs.clients.memory import MemoryClient
from objectfs.config import ObjectFSConfig
from objectfs.filesystem import TieredFileSystem
from objectfs.locking import DatabaseLockService, FileLockService, InMemoryLockService
from objectfs.log import RealTimeLogger
from objectfs.manipulators import Checker, Deleter, Orphaner, Pusher
from objectfs.metadata import DatabaseFileMetadataSource, InMemoryFileMetadataSource
from objectfs.registry import DatabaseObjectRegistry, InMemoryObjectRegistry
from objectfs.runner import RUN_ALL_ORDER, ManipulatorKind, ManipulatorRunner
from tests.helpers import FakeClock, make_content


class TestManipulatorKind:
    """Tests for kind parsing."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("pusher", ManipulatorKind.PUSHER),
            ("ORPHAN_CLEANER", ManipulatorKind.ORPHAN_CLEANER),
            ("orphan-cleaner", ManipulatorKind.ORPHAN_CLEANER),
            (ManipulatorKind.CHECKER, ManipulatorKind.CHECKER),
        ],
    )
    def test_parse(self, value, expected: ManipulatorKind) -> None:
        assert ManipulatorKind.parse(value) is expected

    def test_unknown(self) -> None:
        with pytest.raises(UnknownManipulatorError, match="archiver"):
            ManipulatorKind.parse("archiver")


class TestBuild:
    """Tests for building manipulators."""

    @pytest.mark.parametrize(
        "kind,cls",
        [("checker", Checker), ("pusher", Pusher), ("deleter", Deleter), ("orphaner", Orphaner)],
    )
    def test_build(self, runner: ManipulatorRunner, kind: str, cls: type) -> None:
        assert isinstance(runner.build(kind), cls)

    def test_push_selector_respects_upload_limit(
        self,
        config: ObjectFSConfig,
        filedir: Path,
        registry: InMemoryObjectRegistry,
        metadata: InMemoryFileMetadataSource,
        store_local,
    ) -> None:
        """Test the pusher never selects objects the remote can't take."""
        fs = TieredFileSystem(filedir, MemoryClient(max_upload_size=300), registry=registry)
        runner = ManipulatorRunner(config, fs, registry, metadata)
        store_local(make_content(500))

        assert runner.build_selector("pusher").get() == []

    def test_unknown_kind(self, runner: ManipulatorRunner) -> None:
        with pytest.raises(UnknownManipulatorError):
            runner.run_now("archiver")


class TestRunNow:
    """Tests for running manipulators."""

    def test_runs_batch(self, runner: ManipulatorRunner, store_local) -> None:
        store_local(make_content(500))

        summary = runner.run_now(ManipulatorKind.PUSHER)

        assert summary.name == "pusher"
        assert summary.succeeded == 1

    def test_tasks_disabled(
        self,
        config: ObjectFSConfig,
        fs: TieredFileSystem,
        registry: InMemoryObjectRegistry,
        metadata: InMemoryFileMetadataSource,
        store_local,
    ) -> None:
        """Test nothing runs while tasks are disabled."""
        disabled = config.with_overrides(enable_tasks=False)
        runner = ManipulatorRunner(disabled, fs, registry, metadata)
        contenthash = store_local(make_content(500))

        assert runner.run_now("pusher") is None
        assert registry.get(contenthash).location is ObjectLocation.LOCAL

    def test_client_unavailable(
        self,
        config: ObjectFSConfig,
        filedir: Path,
        registry: InMemoryObjectRegistry,
        metadata: InMemoryFileMetadataSource,
    ) -> None:
        """Test nothing runs while the remote tier is unreachable."""
        fs = TieredFileSystem(filedir, MemoryClient(available=False))
        runner = ManipulatorRunner(config, fs, registry, metadata)

        assert runner.run_now("pusher") is None

    def test_run_all_order(self, runner: ManipulatorRunner) -> None:
        """Test every kind runs once, in dependency order."""
        calls: list[ManipulatorKind] = []
        original = runner.run_now

        def record(kind):
            calls.append(ManipulatorKind.parse(kind))
            return original(kind)

        with patch.object(runner, "run_now", side_effect=record):
            summaries = runner.run_all()

        assert calls == list(RUN_ALL_ORDER)
        assert list(summaries) == list(RUN_ALL_ORDER)
        assert calls[:3] == [
            ManipulatorKind.DELETER,
            ManipulatorKind.PULLER,
            ManipulatorKind.PUSHER,
        ]

    def test_run_all_full_cycle(
        self,
        runner: ManipulatorRunner,
        filedir: Path,
        fs: TieredFileSystem,
        registry: InMemoryObjectRegistry,
        metadata: InMemoryFileMetadataSource,
        clock: FakeClock,
    ) -> None:
        """Test repeated full runs register, push and finally externalize content."""
        contenthash = fs.add_object_from_bytes(make_content(500))
        metadata.add_file(contenthash, 500)
        registry.delete(contenthash)

        runner.run_all()
        assert registry.get(contenthash).location is ObjectLocation.LOCAL

        runner.run_all()
        assert registry.get(contenthash).location is ObjectLocation.DUPLICATED

        clock.advance(601)
        runner.run_all()
        assert registry.get(contenthash).location is ObjectLocation.EXTERNAL


class TestStatus:
    """Tests for the status report."""

    def test_status(self, runner: ManipulatorRunner, store_local) -> None:
        store_local(make_content(500, seed=1))
        store_local(make_content(500, seed=2), location=ObjectLocation.ERROR)
        store_local(make_content(500, seed=3), location=None)

        status = runner.status()

        assert status["enable_tasks"] is True
        assert status["backend"] == "memory"
        assert status["remote_available"] is True
        assert status["total"] == 3
        assert status["locations"] == {
            "none": 1,
            "local": 1,
            "duplicated": 0,
            "remote": 0,
            "error": 1,
            "orphaned": 0,
        }


class TestFromConfig:
    """Tests for building a runner from configuration."""

    def test_defaults_in_memory(self, tmp_path: Path) -> None:
        config = ObjectFSConfig(filedir=str(tmp_path / "filedir"), logging_mode="realtime")

        runner = ManipulatorRunner.from_config(config)

        assert isinstance(runner.registry, InMemoryObjectRegistry)
        assert isinstance(runner.metadata, InMemoryFileMetadataSource)
        assert isinstance(runner.filesystem.client, MemoryClient)
        assert isinstance(runner.filesystem.logger, RealTimeLogger)
        assert runner.filesystem.filedir == tmp_path / "filedir"

    def test_database_url(self, tmp_path: Path) -> None:
        """Test a database URL wires the registry, metadata and locks to it."""
        config = ObjectFSConfig(
            filedir=str(tmp_path / "filedir"),
            backend="filesystem",
            backend_options={"base_path": str(tmp_path / "remote")},
            database_url=f"sqlite:///{tmp_path / 'objectfs.db'}",
        )

        runner = ManipulatorRunner.from_config(config)

        assert isinstance(runner.registry, DatabaseObjectRegistry)
        assert isinstance(runner.metadata, DatabaseFileMetadataSource)
        assert isinstance(runner.filesystem.locks, DatabaseLockService)
        assert isinstance(runner.filesystem.client, FileSystemClient)
        runner.registry.close()

    def test_injected_registry(self, tmp_path: Path) -> None:
        """Test explicit collaborators win over configuration."""
        registry = InMemoryObjectRegistry()
        config = ObjectFSConfig(filedir=str(tmp_path))

        assert ManipulatorRunner.from_config(config, registry=registry).registry is registry

    def test_file_lock_backend(self, tmp_path: Path) -> None:
        """Test file locks are selected by configuration."""
        config = ObjectFSConfig(
            filedir=str(tmp_path / "filedir"),
            lock_backend="file",
            lock_options={"lock_dir": str(tmp_path / "locks")},
        )

        runner = ManipulatorRunner.from_config(config)

        assert isinstance(runner.filesystem.locks, FileLockService)

    def test_lock_backend_overrides_database(self, tmp_path: Path) -> None:
        """Test an explicit lock backend wins over the database default."""
        config = ObjectFSConfig(
            filedir=str(tmp_path / "filedir"),
            database_url=f"sqlite:///{tmp_path / 'objectfs.db'}",
            lock_backend="memory",
        )

        runner = ManipulatorRunner.from_config(config)

        assert isinstance(runner.filesystem.locks, InMemoryLockService)
        runner.registry.close()

    def test_file_lock_backend_requires_directory(self, tmp_path: Path) -> None:
        config = ObjectFSConfig(filedir=str(tmp_path), lock_backend="file")

        with pytest.raises(ConfigurationError):
            ManipulatorRunner.from_config(config)
