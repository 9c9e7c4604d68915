"""Base types and exceptions shared by every objectfs component.

This module defines the object location enum, the registry record and
candidate data structures, and the exception hierarchy used across the
tiered file system, the registry and the manipulators.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any

# SHA-1 of the empty string. Zero-length objects are handled virtually.
EMPTY_CONTENTHASH = hashlib.sha1(b"").hexdigest()

_CONTENTHASH_RE = re.compile(r"^[0-9a-f]{40}$")


# =============================================================================
# Exceptions
# =============================================================================


class ObjectFSError(Exception):
    """Base exception for all objectfs errors."""

    pass


class ConfigurationError(ObjectFSError):
    """Raised when configuration is invalid. Fails fast at startup."""

    pass


class UnknownManipulatorError(ConfigurationError):
    """Raised when an unknown manipulator kind is requested."""

    def __init__(self, kind: Any) -> None:
        self.kind = kind
        super().__init__(f"Unknown manipulator kind: {kind}")


class InvalidContentHashError(ObjectFSError, ValueError):
    """Raised when a content hash is not a 40 character hex digest."""

    def __init__(self, contenthash: str) -> None:
        self.contenthash = contenthash
        super().__init__(f"Invalid content hash: {contenthash!r}")


class ClientError(ObjectFSError):
    """Base exception for remote client failures."""

    pass


class RemoteIOError(ClientError):
    """Raised when a remote backend call fails. Retryable on the next pass."""

    def __init__(self, backend: str, operation: str, message: str) -> None:
        self.backend = backend
        self.operation = operation
        super().__init__(f"{backend} {operation} failed: {message}")


class ClientUnavailableError(ClientError):
    """Raised when the remote backend cannot be reached at all."""

    def __init__(self, backend: str, message: str) -> None:
        self.backend = backend
        super().__init__(f"Failed to connect to {backend}: {message}")


class ObjectNotFoundError(ObjectFSError):
    """Raised when an object is not present on the requested tier."""

    def __init__(self, contenthash: str, tier: str) -> None:
        self.contenthash = contenthash
        self.tier = tier
        super().__init__(f"Object {contenthash} not found on {tier} tier")


class VerificationError(ObjectFSError):
    """Raised when a copied object fails its integrity check."""

    def __init__(self, contenthash: str, message: str) -> None:
        self.contenthash = contenthash
        super().__init__(f"Verification failed for {contenthash}: {message}")


class StructuralError(ObjectFSError):
    """Raised when neither tier holds a verifiable copy of an object."""

    def __init__(self, contenthash: str, message: str) -> None:
        self.contenthash = contenthash
        super().__init__(f"Structural inconsistency for {contenthash}: {message}")


class LockTimeoutError(ObjectFSError):
    """Raised when an object lock cannot be acquired in time."""

    def __init__(self, key: str, timeout: float) -> None:
        self.key = key
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout}s waiting for lock on {key}")


class RegistryError(ObjectFSError):
    """Base exception for object registry failures."""

    pass


class RegistryConnectionError(RegistryError):
    """Raised when the registry backend cannot be reached. Aborts the run."""

    def __init__(self, message: str) -> None:
        super().__init__(f"Failed to connect to object registry: {message}")


class RecordNotFoundError(RegistryError):
    """Raised when updating a content hash that has no registry record."""

    def __init__(self, contenthash: str) -> None:
        self.contenthash = contenthash
        super().__init__(f"No registry record for {contenthash}")


class ConcurrentUpdateError(RegistryError):
    """Raised when a compare-and-set location update loses a race."""

    def __init__(
        self,
        contenthash: str,
        expected: "ObjectLocation | None",
        actual: "ObjectLocation | None",
    ) -> None:
        self.contenthash = contenthash
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Location of {contenthash} changed concurrently: "
            f"expected {_location_name(expected)}, found {_location_name(actual)}"
        )


# =============================================================================
# Enums
# =============================================================================


class ObjectLocation(Enum):
    """Where the bytes of an object currently live."""

    LOCAL = "local"  # Local tier only
    DUPLICATED = "duplicated"  # Verified on both tiers
    EXTERNAL = "external"  # Verified remote only, local deleted
    ERROR = "error"  # Neither tier confirms a valid copy
    ORPHANED = "orphaned"  # No logical file references the object

    @classmethod
    def parse(cls, value: "ObjectLocation | str | None") -> "ObjectLocation | None":
        """Convert a stored value back to a location."""
        if value is None or isinstance(value, ObjectLocation):
            return value
        return cls(value)


def _location_name(location: ObjectLocation | None) -> str:
    return location.value if location is not None else "none"


def location_to_string(location: ObjectLocation | None) -> str:
    """Human readable name of a location, used in log summaries."""
    if location is ObjectLocation.EXTERNAL:
        return "remote"
    return _location_name(location)


def validate_contenthash(contenthash: str) -> str:
    """Return the hash unchanged if it is a valid SHA-1 hex digest."""
    if not isinstance(contenthash, str) or not _CONTENTHASH_RE.match(contenthash):
        raise InvalidContentHashError(contenthash)
    return contenthash


# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class ObjectRecord:
    """Registry entry for one content hash.

    Attributes:
        contenthash: SHA-1 hex digest of the object content.
        location: Current location, None when never classified.
        filesize: Size in bytes, None until first measured.
        timecreated: When the object was first observed.
        timeduplicated: When the object last entered DUPLICATED.
        timeorphaned: When the object was first detected as orphaned.
    """

    contenthash: str
    location: ObjectLocation | None = None
    filesize: int | None = None
    timecreated: datetime | None = None
    timeduplicated: datetime | None = None
    timeorphaned: datetime | None = None

    @property
    def effective_location(self) -> ObjectLocation:
        """Location used for selection. Unclassified records count as local."""
        return self.location if self.location is not None else ObjectLocation.LOCAL

    def copy(self, **changes: Any) -> "ObjectRecord":
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "contenthash": self.contenthash,
            "location": self.location.value if self.location else None,
            "filesize": self.filesize,
            "timecreated": self.timecreated.isoformat() if self.timecreated else None,
            "timeduplicated": (
                self.timeduplicated.isoformat() if self.timeduplicated else None
            ),
            "timeorphaned": (
                self.timeorphaned.isoformat() if self.timeorphaned else None
            ),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ObjectRecord":
        """Create from dictionary."""

        def _dt(key: str) -> datetime | None:
            value = data.get(key)
            return datetime.fromisoformat(value) if value else None

        return cls(
            contenthash=data["contenthash"],
            location=ObjectLocation.parse(data.get("location")),
            filesize=data.get("filesize"),
            timecreated=_dt("timecreated"),
            timeduplicated=_dt("timeduplicated"),
            timeorphaned=_dt("timeorphaned"),
        )


@dataclass(frozen=True)
class Candidate:
    """An object selected as eligible for one transition in one batch."""

    contenthash: str
    filesize: int | None = None
