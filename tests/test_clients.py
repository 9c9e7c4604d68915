"""Tests for remote clients.

Every backend is run through the same capability contract. Cloud backends
use the in-memory SDK mocks from ``tests.mocks``.
"""

from __future__ import annotations

import io
from contextlib import ExitStack
from pathlib import Path
from typing import Iterator
from unittest.mock import patch

import pytest

from objectfs.base import (
    EMPTY_CONTENTHASH,
    ClientUnavailableError,
    ConfigurationError,
    ObjectNotFoundError,
    RemoteIOError,
)
from objectfs.clients import BackendKind, get_client, list_available_backends
from objectfs.clients.azure_blob import AzureBlobClient
from objectfs.clients.base import ObjectClient, prepare_upload
from objectfs.clients.filesystem import FileSystemClient
from objectfs.clients.gcs import GCSClient
from objectfs.clients.memory import MemoryClient
from objectfs.clients.s3 import S3Client
from tests.helpers import make_content, sha1
from tests.mocks.cloud_mocks import (
    MockAzureError,
    MockAzureResourceNotFoundError,
    MockGCSAPIError,
    MockGCSNotFound,
    MockS3ClientError,
    create_mock_azure_container,
    create_mock_gcs_client,
    create_mock_s3_client,
)

CONTENT = make_content(4096)
CONTENTHASH = sha1(CONTENT)


@pytest.fixture
def cloud_errors() -> Iterator[None]:
    """Make the client modules catch the mock SDK exceptions."""
    with ExitStack() as stack:
        stack.enter_context(patch("objectfs.clients.s3.ClientError", MockS3ClientError))
        stack.enter_context(
            patch("objectfs.clients.azure_blob.AzureError", MockAzureError)
        )
        stack.enter_context(
            patch(
                "objectfs.clients.azure_blob.ResourceNotFoundError",
                MockAzureResourceNotFoundError,
            )
        )
        stack.enter_context(patch("objectfs.clients.azure_blob.ContentSettings", None))
        stack.enter_context(patch("objectfs.clients.gcs.GoogleAPIError", MockGCSAPIError))
        stack.enter_context(patch("objectfs.clients.gcs.NotFound", MockGCSNotFound))
        yield


@pytest.fixture(params=["memory", "filesystem", "s3", "azure_blob", "gcs"])
def any_client(request: pytest.FixtureRequest, tmp_path: Path, cloud_errors: None) -> ObjectClient:
    """One client per backend, ready to use."""
    if request.param == "memory":
        return MemoryClient()
    if request.param == "filesystem":
        return FileSystemClient(base_path=str(tmp_path / "remote"))
    if request.param == "s3":
        return S3Client(bucket="objects", client=create_mock_s3_client(with_bucket="objects"))
    if request.param == "azure_blob":
        return AzureBlobClient(container="objects", container_client=create_mock_azure_container())
    return GCSClient(bucket="objects", client=create_mock_gcs_client(with_bucket="objects"))


# =============================================================================
# Capability Contract
# =============================================================================


class TestClientContract:
    """Tests every backend must pass."""

    def test_put_then_get(self, any_client: ObjectClient) -> None:
        """Test uploaded content reads back unchanged."""
        any_client.put(CONTENTHASH, io.BytesIO(CONTENT))

        with any_client.get(CONTENTHASH) as stream:
            assert stream.read() == CONTENT

    def test_exists(self, any_client: ObjectClient) -> None:
        """Test existence before and after upload."""
        assert not any_client.exists(CONTENTHASH)
        any_client.put(CONTENTHASH, io.BytesIO(CONTENT))
        assert any_client.exists(CONTENTHASH)

    def test_exists_and_verified(self, any_client: ObjectClient) -> None:
        """Test verification against the expected digest."""
        any_client.put(CONTENTHASH, io.BytesIO(CONTENT))

        assert any_client.exists_and_verified(CONTENTHASH, CONTENTHASH)
        assert not any_client.exists_and_verified(CONTENTHASH, sha1(b"other"))

    def test_missing_object_not_verified(self, any_client: ObjectClient) -> None:
        """Test a missing object never verifies."""
        assert not any_client.exists_and_verified(CONTENTHASH, CONTENTHASH)

    def test_get_missing_raises(self, any_client: ObjectClient) -> None:
        """Test reading a missing object raises ObjectNotFoundError."""
        with pytest.raises(ObjectNotFoundError):
            any_client.get(CONTENTHASH)

    def test_delete(self, any_client: ObjectClient) -> None:
        """Test delete reports whether something was removed."""
        any_client.put(CONTENTHASH, io.BytesIO(CONTENT))

        assert any_client.delete(CONTENTHASH) is True
        assert not any_client.exists(CONTENTHASH)
        assert any_client.delete(CONTENTHASH) is False

    def test_metadata_size(self, any_client: ObjectClient) -> None:
        """Test the reported size matches the content."""
        any_client.put(CONTENTHASH, io.BytesIO(CONTENT))

        metadata = any_client.get_metadata(CONTENTHASH)

        assert metadata is not None
        assert metadata.size == len(CONTENT)
        assert any_client.get_metadata(sha1(b"missing")) is None

    def test_empty_content_is_virtual(self, any_client: ObjectClient) -> None:
        """Test the empty hash always exists and verifies."""
        assert any_client.exists(EMPTY_CONTENTHASH)
        assert any_client.exists_and_verified(EMPTY_CONTENTHASH, EMPTY_CONTENTHASH)

    def test_is_available(self, any_client: ObjectClient) -> None:
        """Test a reachable backend reports itself available."""
        assert any_client.is_available()

    def test_fullpath_contains_sharded_key(self, any_client: ObjectClient) -> None:
        """Test diagnostics paths use the sharded layout."""
        path = any_client.get_fullpath_from_hash(CONTENTHASH)
        assert path.endswith(f"{CONTENTHASH[:2]}/{CONTENTHASH[2:4]}/{CONTENTHASH}")


class TestClientBase:
    """Tests for shared client behavior."""

    def test_prefix_in_key(self) -> None:
        """Test the key prefix gets exactly one slash."""
        client = MemoryClient(prefix="/app/")
        assert client.get_key(CONTENTHASH).startswith("app/")
        assert "//" not in client.get_key(CONTENTHASH)

    def test_max_object_size_override(self) -> None:
        """Test max_upload_size overrides the backend limit."""
        assert MemoryClient(max_upload_size=1000).max_object_size() == 1000
        assert MemoryClient().max_object_size() == 5 * 1024**4

    def test_prepare_upload_spools_unseekable_streams(self) -> None:
        """Test unseekable uploads are buffered so they can be hashed."""

        class Unseekable(io.RawIOBase):
            def __init__(self, data: bytes) -> None:
                self._inner = io.BytesIO(data)

            def readable(self) -> bool:
                return True

            def seekable(self) -> bool:
                return False

            def readinto(self, buffer) -> int:
                data = self._inner.read(len(buffer))
                buffer[: len(data)] = data
                return len(data)

        stream, digest, size = prepare_upload(Unseekable(CONTENT))

        assert digest == CONTENTHASH
        assert size == len(CONTENT)
        assert stream.read() == CONTENT

    def test_corrupted_object_fails_verification(self) -> None:
        """Test a mismatched remote copy is detected."""
        client = MemoryClient()
        client.put(CONTENTHASH, io.BytesIO(CONTENT))
        client.corrupt(CONTENTHASH)

        assert client.exists(CONTENTHASH)
        assert not client.exists_and_verified(CONTENTHASH, CONTENTHASH)


# =============================================================================
# Backend Specifics
# =============================================================================


class TestFileSystemClient:
    """Tests for FileSystemClient."""

    def test_verification_hashes_content(self, tmp_path: Path) -> None:
        """Test verification reads the file since no digest is stored."""
        client = FileSystemClient(base_path=str(tmp_path))
        client.put(CONTENTHASH, io.BytesIO(CONTENT))
        Path(client.get_fullpath_from_hash(CONTENTHASH)).write_bytes(b"tampered")

        assert client.get_metadata(CONTENTHASH).digest is None
        assert not client.exists_and_verified(CONTENTHASH, CONTENTHASH)

    def test_no_temp_files_left(self, tmp_path: Path) -> None:
        """Test uploads are renamed into place."""
        client = FileSystemClient(base_path=str(tmp_path))
        client.put(CONTENTHASH, io.BytesIO(CONTENT))

        assert [p.name for p in tmp_path.rglob("*") if p.is_file()] == [CONTENTHASH]

    def test_unavailable_when_directory_missing(self, tmp_path: Path) -> None:
        """Test a missing root without create_dirs is unavailable."""
        client = FileSystemClient(base_path=str(tmp_path / "missing"), create_dirs=False)

        assert not client.is_available()
        with pytest.raises(ClientUnavailableError):
            client.initialize()


class TestS3Client:
    """Tests for S3Client using mocks."""

    def test_digest_stored_in_metadata(self, cloud_errors: None) -> None:
        """Test the upload digest goes into the object metadata."""
        mock_client = create_mock_s3_client(with_bucket="objects")
        client = S3Client(bucket="objects", prefix="filedir", client=mock_client)

        client.put(CONTENTHASH, io.BytesIO(CONTENT))

        stored = mock_client.get_stored("objects", client.get_key(CONTENTHASH))
        assert stored.metadata == {"sha1": CONTENTHASH}
        assert client.get_metadata(CONTENTHASH).digest == CONTENTHASH

    def test_fullpath(self, cloud_errors: None) -> None:
        """Test the s3:// diagnostics path."""
        client = S3Client(bucket="objects", client=create_mock_s3_client(with_bucket="objects"))
        assert client.get_fullpath_from_hash(CONTENTHASH).startswith("s3://objects/")

    def test_missing_bucket_unavailable(self, cloud_errors: None) -> None:
        """Test a missing bucket makes the client unavailable."""
        client = S3Client(bucket="missing", client=create_mock_s3_client())

        assert not client.is_available()
        with pytest.raises(ClientUnavailableError, match="Bucket not found"):
            client.initialize()

    def test_backend_failure_is_remote_io_error(self, cloud_errors: None) -> None:
        """Test SDK errors are translated at the client boundary."""
        mock_client = create_mock_s3_client(with_bucket="objects")
        mock_client.fail_on.add("put_object")
        client = S3Client(bucket="objects", client=mock_client)

        with pytest.raises(RemoteIOError, match="S3 put failed"):
            client.put(CONTENTHASH, io.BytesIO(CONTENT))

    def test_head_failure_is_remote_io_error(self, cloud_errors: None) -> None:
        """Test a failing HEAD is not mistaken for a missing object."""
        mock_client = create_mock_s3_client(with_bucket="objects")
        mock_client.fail_on.add("head_object")
        client = S3Client(bucket="objects", client=mock_client)

        with pytest.raises(RemoteIOError):
            client.exists(CONTENTHASH)


class TestAzureBlobClient:
    """Tests for AzureBlobClient using mocks."""

    def test_missing_container_unavailable(self, cloud_errors: None) -> None:
        """Test a missing container makes the client unavailable."""
        client = AzureBlobClient(
            container="objects",
            container_client=create_mock_azure_container(exists=False),
        )

        with pytest.raises(ClientUnavailableError, match="Container not found"):
            client.initialize()

    def test_no_credentials(self, cloud_errors: None) -> None:
        """Test building without credentials fails clearly."""
        client = AzureBlobClient(container="objects")
        with patch("objectfs.clients.azure_blob.HAS_AZURE", True):
            with pytest.raises(ClientUnavailableError, match="No connection credentials"):
                client.initialize()

    def test_download_failure(self, cloud_errors: None) -> None:
        """Test SDK errors on download are translated."""
        container = create_mock_azure_container()
        client = AzureBlobClient(container="objects", container_client=container)
        client.put(CONTENTHASH, io.BytesIO(CONTENT))
        container.fail_on.add("download_blob")

        with pytest.raises(RemoteIOError, match="Azure Blob get failed"):
            client.get(CONTENTHASH)

    def test_lost_digest_falls_back_to_download(self, cloud_errors: None) -> None:
        """Test verification hashes the blob when its metadata was lost."""
        container = create_mock_azure_container()
        client = AzureBlobClient(container="objects", container_client=container)
        client.put(CONTENTHASH, io.BytesIO(CONTENT))
        container.set_metadata(client.get_key(CONTENTHASH), {})

        assert client.exists_and_verified(CONTENTHASH, CONTENTHASH)


class TestGCSClient:
    """Tests for GCSClient using mocks."""

    def test_missing_bucket_unavailable(self, cloud_errors: None) -> None:
        """Test a missing bucket makes the client unavailable."""
        client = GCSClient(bucket="missing", client=create_mock_gcs_client())

        with pytest.raises(ClientUnavailableError, match="Bucket not found"):
            client.initialize()

    def test_fullpath(self, cloud_errors: None) -> None:
        """Test the gs:// diagnostics path."""
        client = GCSClient(bucket="objects", client=create_mock_gcs_client(with_bucket="objects"))
        assert client.get_fullpath_from_hash(CONTENTHASH).startswith("gs://objects/")

    def test_upload_failure(self, cloud_errors: None) -> None:
        """Test SDK errors on upload are translated."""
        mock_client = create_mock_gcs_client(with_bucket="objects")
        mock_client.bucket("objects").fail_on.add("upload_from_file")
        client = GCSClient(bucket="objects", client=mock_client)

        with pytest.raises(RemoteIOError, match="GCS put failed"):
            client.put(CONTENTHASH, io.BytesIO(CONTENT))


# =============================================================================
# Factory
# =============================================================================


class TestFactory:
    """Tests for get_client."""

    def test_memory_by_name(self) -> None:
        """Test string backend names resolve."""
        assert isinstance(get_client("memory"), MemoryClient)
        assert isinstance(get_client(BackendKind.MEMORY), MemoryClient)

    def test_filesystem_options(self, tmp_path: Path) -> None:
        """Test backend options are passed to the client."""
        client = get_client("filesystem", base_path=str(tmp_path))
        assert isinstance(client, FileSystemClient)
        assert client.config.base_path == str(tmp_path)

    def test_injected_sdk_client(self, cloud_errors: None) -> None:
        """Test a pre-built SDK client bypasses the SDK requirement."""
        sdk = create_mock_s3_client(with_bucket="objects")
        client = get_client("s3", bucket="objects", client=sdk)
        assert isinstance(client, S3Client)
        assert client.is_available()

    def test_unknown_backend(self) -> None:
        """Test unknown backends fail fast."""
        with pytest.raises(ConfigurationError, match="Unknown remote backend"):
            get_client("swift")

    def test_missing_required_option(self) -> None:
        """Test missing constructor arguments become ConfigurationError."""
        with patch("objectfs.clients.s3.HAS_BOTO3", True):
            with pytest.raises(ConfigurationError, match="Invalid options"):
                get_client("s3")

    def test_list_available_backends(self) -> None:
        """Test dependency-free backends are always listed."""
        backends = list_available_backends()
        assert "memory" in backends
        assert "filesystem" in backends
