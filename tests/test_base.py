"""Tests for shared types and errors."""

from __future__ import annotations

from datetime import datetime

import pytest

from objectfs.base import (
    EMPTY_CONTENTHASH,
    ConcurrentUpdateError,
    InvalidContentHashError,
    ObjectFSError,
    ObjectLocation,
    ObjectRecord,
    RemoteIOError,
    location_to_string,
    validate_contenthash,
)
from objectfs.clients.base import shard_path


class TestContentHash:
    """Tests for content hash validation and layout."""

    def test_empty_contenthash(self) -> None:
        """Test the empty content hash constant."""
        assert EMPTY_CONTENTHASH == "da39a3ee5e6b4b0d3255bfef95601890afd80709"

    def test_valid_hash_passes(self) -> None:
        """Test a 40 character lowercase hex digest is accepted."""
        value = "a94a8fe5ccb19ba61c4c0873d391e987982fbbd3"
        assert validate_contenthash(value) == value

    @pytest.mark.parametrize(
        "value",
        [
            "",
            "abc",
            "A94A8FE5CCB19BA61C4C0873D391E987982FBBD3",
            "../../etc/passwd/../../../../../../../../",
            "a94a8fe5ccb19ba61c4c0873d391e987982fbbd3a",
        ],
    )
    def test_invalid_hash_rejected(self, value: str) -> None:
        """Test malformed hashes are rejected before touching a path."""
        with pytest.raises(InvalidContentHashError):
            validate_contenthash(value)

    def test_invalid_hash_is_value_error(self) -> None:
        """Test callers can catch invalid hashes as ValueError."""
        with pytest.raises(ValueError):
            shard_path("not-a-hash")

    def test_shard_path(self) -> None:
        """Test the two-level sharded layout."""
        assert (
            shard_path("a94a8fe5ccb19ba61c4c0873d391e987982fbbd3")
            == "a9/4a/a94a8fe5ccb19ba61c4c0873d391e987982fbbd3"
        )


class TestObjectLocation:
    """Tests for the location enum."""

    def test_parse(self) -> None:
        """Test stored values convert back to locations."""
        assert ObjectLocation.parse("duplicated") is ObjectLocation.DUPLICATED
        assert ObjectLocation.parse(ObjectLocation.LOCAL) is ObjectLocation.LOCAL
        assert ObjectLocation.parse(None) is None

    def test_parse_unknown(self) -> None:
        """Test unknown values are rejected."""
        with pytest.raises(ValueError):
            ObjectLocation.parse("archived")

    def test_location_to_string(self) -> None:
        """Test summary names for locations."""
        assert location_to_string(ObjectLocation.EXTERNAL) == "remote"
        assert location_to_string(ObjectLocation.LOCAL) == "local"
        assert location_to_string(None) == "none"


class TestObjectRecord:
    """Tests for registry records."""

    def test_unclassified_counts_as_local(self) -> None:
        """Test a record without a location is treated as LOCAL."""
        record = ObjectRecord(contenthash=EMPTY_CONTENTHASH)
        assert record.effective_location is ObjectLocation.LOCAL

    def test_copy_is_independent(self) -> None:
        """Test copy() returns a changed copy."""
        record = ObjectRecord(EMPTY_CONTENTHASH, ObjectLocation.LOCAL, 10)
        changed = record.copy(location=ObjectLocation.DUPLICATED)

        assert record.location is ObjectLocation.LOCAL
        assert changed.location is ObjectLocation.DUPLICATED
        assert changed.filesize == 10

    def test_dict_roundtrip(self) -> None:
        """Test to_dict and from_dict preserve every field."""
        record = ObjectRecord(
            contenthash=EMPTY_CONTENTHASH,
            location=ObjectLocation.EXTERNAL,
            filesize=2048,
            timecreated=datetime(2024, 1, 1, 8, 0),
            timeduplicated=datetime(2024, 1, 2, 8, 0),
        )

        data = record.to_dict()

        assert data["location"] == "external"
        assert data["timeorphaned"] is None
        assert ObjectRecord.from_dict(data) == record


class TestErrors:
    """Tests for the exception hierarchy."""

    def test_all_errors_share_root(self) -> None:
        """Test domain errors derive from ObjectFSError."""
        assert issubclass(RemoteIOError, ObjectFSError)
        assert issubclass(ConcurrentUpdateError, ObjectFSError)

    def test_remote_io_error_message(self) -> None:
        """Test the backend and operation appear in the message."""
        error = RemoteIOError("S3", "put", "timeout")
        assert str(error) == "S3 put failed: timeout"
        assert error.operation == "put"

    def test_concurrent_update_error_message(self) -> None:
        """Test the expected and actual locations appear in the message."""
        error = ConcurrentUpdateError(
            EMPTY_CONTENTHASH, ObjectLocation.LOCAL, ObjectLocation.DUPLICATED
        )
        assert "expected local" in str(error)
        assert "found duplicated" in str(error)
