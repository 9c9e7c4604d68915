"""Configuration for objectfs manipulators and the tiered file system.

A single ``ObjectFSConfig`` value object is built once per run and passed
into every selector and manipulator. It is immutable, so thresholds and
delays stay consistent for the whole pass even if the stored settings
change while the run is in progress.

Configuration can be loaded from a dictionary, a YAML or JSON file, or from
``OBJECTFS_*`` environment variables:

    OBJECTFS_SIZE_THRESHOLD=20480
    OBJECTFS_DELETE_LOCAL=true
    OBJECTFS_BACKEND=s3
    OBJECTFS_BACKEND_OPTIONS={"bucket": "objects"}

Example:
    >>> config = ObjectFSConfig.from_file("objectfs.yaml")
    >>> config = config.with_overrides(batch_size=500)
"""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping

import yaml

from objectfs.base import ConfigurationError
from objectfs.clients.base import BackendKind

MINSECS = 60
DAYSECS = 24 * 60 * MINSECS

LOGGING_MODES = ("aggregate", "realtime", "null")
LOCK_BACKENDS = ("memory", "file", "database")


@dataclass(frozen=True)
class ObjectFSConfig:
    """Configuration snapshot for one manipulator run.

    Attributes:
        enable_tasks: Master switch. Runs are skipped while False.
        size_threshold: Objects strictly larger than this are pushed
            (and later deleted locally). Bytes.
        pull_threshold: Remote objects at or below this are pulled back.
            Defaults to ``size_threshold``. Bytes.
        minimum_age: Seconds a local object must exist before it is pushed.
        delete_local: Whether local copies are deleted once duplicated.
        delete_remote: Whether remote copies may be removed when an object
            is demoted back to the local tier.
        consistency_delay: Seconds an object must stay duplicated before
            its local copy may be deleted.
        max_task_runtime: Seconds a single manipulator run may take.
        batch_size: Maximum number of candidates per run.
        checker_batch_multiplier: Checker batches are this much larger.
        orphan_grace_delay: Seconds an orphaned record is kept before it is
            deleted. 0 disables orphan cleanup.
        prefer_remote: Serve duplicated objects from the remote tier.
        lock_timeout: Seconds to wait for an object lock. 0 = don't wait.
        max_workers: Worker threads per run. 1 = sequential.
        logging_mode: One of "aggregate", "realtime", "null".
        filedir: Root directory of the local tier.
        backend: Remote backend kind.
        backend_options: Keyword arguments for the remote client.
        database_url: SQLAlchemy URL of the database holding the registry,
            the host file table and the object locks. None keeps all three
            in memory.
        lock_backend: Object lock service, one of "memory", "file",
            "database". None picks "database" when ``database_url`` is set
            and "memory" otherwise.
        lock_options: Keyword arguments for the lock service, such as
            ``lock_dir`` for file locks.
    """

    enable_tasks: bool = False
    size_threshold: int = 10 * 1024
    pull_threshold: int | None = None
    minimum_age: int = 7 * DAYSECS
    delete_local: bool = False
    delete_remote: bool = False
    consistency_delay: int = 10 * MINSECS
    max_task_runtime: int = MINSECS
    batch_size: int = 10000
    checker_batch_multiplier: int = 10
    orphan_grace_delay: int = 0
    prefer_remote: bool = False
    lock_timeout: float = 0
    max_workers: int = 1
    logging_mode: str = "aggregate"
    filedir: str = "filedir"
    backend: BackendKind = BackendKind.MEMORY
    backend_options: dict[str, Any] = field(default_factory=dict)
    database_url: str | None = None
    lock_backend: str | None = None
    lock_options: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if isinstance(self.backend, str):
            try:
                object.__setattr__(self, "backend", BackendKind(self.backend.lower()))
            except ValueError:
                raise ConfigurationError(f"Unknown backend: {self.backend}")
        self.validate()

    def validate(self) -> None:
        """Validate the configuration.

        Raises:
            ConfigurationError: If any value is out of range.
        """
        errors: list[str] = []

        if self.batch_size < 1:
            errors.append("batch_size must be >= 1")
        if self.checker_batch_multiplier < 1:
            errors.append("checker_batch_multiplier must be >= 1")
        if self.size_threshold < 0:
            errors.append("size_threshold must be >= 0")
        if self.pull_threshold is not None and self.pull_threshold < 0:
            errors.append("pull_threshold must be >= 0")
        for name in (
            "minimum_age",
            "consistency_delay",
            "max_task_runtime",
            "orphan_grace_delay",
        ):
            if getattr(self, name) < 0:
                errors.append(f"{name} must be >= 0")
        if self.lock_timeout < 0:
            errors.append("lock_timeout must be >= 0")
        if self.max_workers < 1:
            errors.append("max_workers must be >= 1")
        if self.logging_mode not in LOGGING_MODES:
            errors.append(
                f"logging_mode must be one of {', '.join(LOGGING_MODES)}"
            )
        if self.lock_backend is not None and self.lock_backend not in LOCK_BACKENDS:
            errors.append(
                f"lock_backend must be one of {', '.join(LOCK_BACKENDS)}"
            )
        if self.lock_backend == "database" and self.database_url is None:
            errors.append("lock_backend database requires database_url")

        if errors:
            raise ConfigurationError(
                "Invalid objectfs configuration: " + "; ".join(errors)
            )

    @property
    def effective_pull_threshold(self) -> int:
        """Pull size limit. Never above the push threshold, so push wins."""
        if self.pull_threshold is None:
            return self.size_threshold
        return min(self.pull_threshold, self.size_threshold)

    @property
    def checker_batch_size(self) -> int:
        """Batch size used when looking for unregistered objects."""
        return self.batch_size * self.checker_batch_multiplier

    @property
    def orphan_cleanup_enabled(self) -> bool:
        return self.orphan_grace_delay > 0

    def with_overrides(self, **changes: Any) -> "ObjectFSConfig":
        """Return a copy with the given values replaced."""
        unknown = set(changes) - _field_names()
        if unknown:
            raise ConfigurationError(
                f"Unknown configuration keys: {', '.join(sorted(unknown))}"
            )
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        data = asdict(self)
        data["backend"] = self.backend.value
        return data

    # -------------------------------------------------------------------------
    # Loaders
    # -------------------------------------------------------------------------

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ObjectFSConfig":
        """Create from a dictionary, rejecting unknown keys."""
        unknown = set(data) - _field_names()
        if unknown:
            raise ConfigurationError(
                f"Unknown configuration keys: {', '.join(sorted(unknown))}"
            )
        try:
            return cls(**dict(data))
        except TypeError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

    @classmethod
    def from_file(cls, path: str | Path) -> "ObjectFSConfig":
        """Load configuration from a YAML or JSON file.

        Args:
            path: Path to the configuration file.

        Raises:
            ConfigurationError: If the file is missing or malformed.
        """
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Configuration file not found: {path}")

        content = path.read_text(encoding="utf-8")
        suffix = path.suffix.lower()

        try:
            if suffix in (".yaml", ".yml"):
                data = yaml.safe_load(content) or {}
            elif suffix == ".json":
                data = json.loads(content)
            else:
                raise ConfigurationError(f"Unsupported file format: {suffix}")
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Failed to parse {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration in {path} must be a mapping")

        # Allow the settings to live under a top-level "objectfs" key.
        if set(data) == {"objectfs"}:
            data = data["objectfs"]

        return cls.from_dict(data)

    @classmethod
    def from_env(
        cls,
        prefix: str = "OBJECTFS",
        environ: Mapping[str, str] | None = None,
    ) -> "ObjectFSConfig":
        """Load configuration from environment variables.

        Args:
            prefix: Variable prefix, joined to field names with "_".
            environ: Environment mapping (defaults to ``os.environ``).
        """
        environ = os.environ if environ is None else environ
        names = _field_names()
        start = f"{prefix}_"
        data: dict[str, Any] = {}

        for key, value in environ.items():
            if not key.startswith(start):
                continue
            name = key[len(start) :].lower()
            if name in names:
                data[name] = _parse_env_value(value)

        return cls.from_dict(data)


def _field_names() -> set[str]:
    return {f.name for f in fields(ObjectFSConfig)}


def _parse_env_value(value: str) -> Any:
    """Parse string value to appropriate type."""
    lowered = value.lower()
    if lowered in ("true", "yes", "on"):
        return True
    if lowered in ("false", "no", "off"):
        return False
    if lowered in ("null", "none", ""):
        return None

    try:
        if "." in value:
            return float(value)
        return int(value)
    except ValueError:
        pass

    if value.startswith(("[", "{")):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            pass

    return value
