"""Tests for the objectfs CLI."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from objectfs.base import ObjectLocation, ObjectRecord
from objectfs.cli import app
from objectfs.registry import DatabaseObjectRegistry
from tests.helpers import START, make_content, sha1

cli = CliRunner()

CONTENT = make_content(500)
CONTENTHASH = sha1(CONTENT)


@pytest.fixture
def workspace(tmp_path: Path) -> dict[str, Path]:
    return {
        "filedir": tmp_path / "filedir",
        "remote": tmp_path / "remote",
        "database": tmp_path / "objectfs.db",
        "config": tmp_path / "objectfs.yaml",
    }


@pytest.fixture
def config_file(workspace: dict[str, Path]) -> Path:
    """YAML configuration with a filesystem remote and a SQLite registry."""
    workspace["config"].write_text(
        yaml.safe_dump(
            {
                "objectfs": {
                    "enable_tasks": True,
                    "size_threshold": 100,
                    "minimum_age": 0,
                    "delete_local": True,
                    "consistency_delay": 0,
                    "filedir": str(workspace["filedir"]),
                    "backend": "filesystem",
                    "backend_options": {"base_path": str(workspace["remote"])},
                    "database_url": f"sqlite:///{workspace['database']}",
                }
            }
        )
    )
    return workspace["config"]


@pytest.fixture
def stored(workspace: dict[str, Path], config_file: Path) -> str:
    """One local object registered as LOCAL."""
    path = workspace["filedir"] / CONTENTHASH[0:2] / CONTENTHASH[2:4] / CONTENTHASH
    path.parent.mkdir(parents=True)
    path.write_bytes(CONTENT)

    registry = DatabaseObjectRegistry(f"sqlite:///{workspace['database']}")
    registry.create(
        ObjectRecord(CONTENTHASH, ObjectLocation.LOCAL, len(CONTENT), timecreated=START)
    )
    registry.close()
    return CONTENTHASH


class TestRunCommand:
    """Tests for the run command."""

    def test_run_pusher(
        self, config_file: Path, stored: str, workspace: dict[str, Path]
    ) -> None:
        result = cli.invoke(app, ["run", "pusher", "--config", str(config_file)])

        assert result.exit_code == 0
        assert "pusher" in result.stdout
        assert "1 succeeded" in result.stdout
        remote = workspace["remote"] / stored[0:2] / stored[2:4] / stored
        assert remote.read_bytes() == CONTENT

    def test_run_json(self, config_file: Path, stored: str) -> None:
        result = cli.invoke(app, ["run", "pusher", "-c", str(config_file), "--json"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["name"] == "pusher"
        assert data["succeeded"] == 1
        assert data["transitions"]["local -> duplicated"]["count"] == 1

    def test_unknown_kind(self, config_file: Path) -> None:
        result = cli.invoke(app, ["run", "archiver", "--config", str(config_file)])

        assert result.exit_code == 1
        assert "Unknown manipulator kind" in result.output

    def test_failures_exit_code(
        self, config_file: Path, stored: str, workspace: dict[str, Path]
    ) -> None:
        """Test a run with failed objects exits with status 2."""
        local = workspace["filedir"] / stored[0:2] / stored[2:4] / stored
        local.unlink()

        result = cli.invoke(app, ["run", "pusher", "--config", str(config_file)])

        assert result.exit_code == 2
        assert stored in result.stdout

    def test_missing_config(self, tmp_path: Path) -> None:
        result = cli.invoke(app, ["run", "pusher", "--config", str(tmp_path / "missing.yaml")])

        assert result.exit_code == 1
        assert "not found" in result.output


class TestRunAllCommand:
    """Tests for the run-all command."""

    def test_run_all(self, config_file: Path, stored: str) -> None:
        result = cli.invoke(app, ["run-all", "--config", str(config_file), "--json"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert list(data) == [
            "deleter",
            "puller",
            "pusher",
            "recoverer",
            "checker",
            "orphaner",
            "orphan_cleaner",
        ]
        assert data["pusher"]["succeeded"] == 1


class TestLocationsCommand:
    """Tests for the locations command."""

    def test_locations_json(self, config_file: Path, stored: str) -> None:
        result = cli.invoke(app, ["locations", "--config", str(config_file), "--json"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["total"] == 1
        assert data["locations"]["local"] == 1
        assert data["backend"] == "filesystem"

    def test_locations_table(self, config_file: Path, stored: str) -> None:
        result = cli.invoke(app, ["locations", "--config", str(config_file)])

        assert result.exit_code == 0
        assert "Object Locations" in result.stdout
        assert "duplicated" in result.stdout


class TestMaintenanceCommands:
    """Tests for populate-filesizes and delete-empty-dirs."""

    def test_populate_filesizes(self, config_file: Path, workspace: dict[str, Path]) -> None:
        registry = DatabaseObjectRegistry(f"sqlite:///{workspace['database']}")
        registry.create(ObjectRecord(CONTENTHASH, ObjectLocation.LOCAL))
        registry.close()

        result = cli.invoke(app, ["populate-filesizes", "--config", str(config_file)])

        assert result.exit_code == 0
        assert "Updated filesize of 0 objects" in result.stdout

    def test_delete_empty_dirs(self, config_file: Path, workspace: dict[str, Path]) -> None:
        (workspace["filedir"] / "ab" / "cd").mkdir(parents=True)

        result = cli.invoke(app, ["delete-empty-dirs", "--config", str(config_file)])

        assert result.exit_code == 0
        assert "Removed 2 empty directories" in result.stdout
        assert workspace["filedir"].is_dir()
