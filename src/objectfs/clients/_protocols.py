"""Protocol definitions for optional dependency clients.

This module defines structural typing protocols for the cloud SDK clients
used by the remote backends, allowing type-safe code without requiring the
SDKs (or their type stubs) to be installed.

These protocols define only the methods actually used by objectfs.
"""

from __future__ import annotations

from typing import Any, BinaryIO, Protocol, runtime_checkable


# =============================================================================
# S3 Client Protocol (boto3)
# =============================================================================


class S3ResponseBody(Protocol):
    """Protocol for S3 response body stream."""

    def read(self, amt: int | None = None) -> bytes:
        """Read bytes from the response body."""
        ...


@runtime_checkable
class S3ClientProtocol(Protocol):
    """Protocol for boto3 S3 client.

    Defines the minimal interface used by S3Client.
    """

    def head_bucket(self, *, Bucket: str) -> dict[str, Any]:
        """Check if a bucket exists and is accessible."""
        ...

    def get_object(self, *, Bucket: str, Key: str) -> dict[str, Any]:
        """Retrieve an object from S3."""
        ...

    def put_object(
        self,
        *,
        Bucket: str,
        Key: str,
        Body: BinaryIO | bytes,
        ContentLength: int = ...,
        Metadata: dict[str, str] = ...,
        StorageClass: str = ...,
    ) -> dict[str, Any]:
        """Upload an object to S3."""
        ...

    def head_object(self, *, Bucket: str, Key: str) -> dict[str, Any]:
        """Fetch object metadata."""
        ...

    def delete_object(self, *, Bucket: str, Key: str) -> dict[str, Any]:
        """Delete an object from S3."""
        ...


# =============================================================================
# Azure Blob Storage Protocol (azure-storage-blob)
# =============================================================================


class AzureBlobPropertiesProtocol(Protocol):
    """Protocol for Azure Blob Properties."""

    size: int
    etag: str | None
    metadata: dict[str, str]


class AzureStorageStreamDownloaderProtocol(Protocol):
    """Protocol for Azure Storage Stream Downloader."""

    def readinto(self, stream: BinaryIO) -> int:
        """Download the blob into a stream."""
        ...


@runtime_checkable
class AzureBlobClientProtocol(Protocol):
    """Protocol for Azure Blob Client."""

    def upload_blob(
        self,
        data: BinaryIO | bytes,
        *,
        overwrite: bool = False,
        length: int | None = None,
        metadata: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> dict[str, Any]:
        """Upload data to the blob."""
        ...

    def download_blob(self) -> AzureStorageStreamDownloaderProtocol:
        """Download the blob content."""
        ...

    def delete_blob(self) -> None:
        """Delete the blob."""
        ...

    def get_blob_properties(self) -> AzureBlobPropertiesProtocol:
        """Get blob properties."""
        ...


@runtime_checkable
class AzureContainerClientProtocol(Protocol):
    """Protocol for Azure Container Client."""

    def get_blob_client(self, blob: str) -> AzureBlobClientProtocol:
        """Get a blob client."""
        ...

    def exists(self) -> bool:
        """Check if the container exists."""
        ...


# =============================================================================
# GCS Client Protocol (google-cloud-storage)
# =============================================================================


@runtime_checkable
class GCSBlobProtocol(Protocol):
    """Protocol for GCS Blob object."""

    size: int | None
    etag: str | None
    metadata: dict[str, str] | None

    def upload_from_file(self, file_obj: BinaryIO, size: int | None = ...) -> None:
        """Upload a stream to the blob."""
        ...

    def download_to_file(self, file_obj: BinaryIO) -> None:
        """Download the blob into a stream."""
        ...

    def delete(self) -> None:
        """Delete the blob."""
        ...


@runtime_checkable
class GCSBucketProtocol(Protocol):
    """Protocol for GCS Bucket object."""

    def blob(self, blob_name: str) -> GCSBlobProtocol:
        """Get a blob reference."""
        ...

    def get_blob(self, blob_name: str) -> GCSBlobProtocol | None:
        """Fetch a blob with its metadata, or None if missing."""
        ...

    def exists(self) -> bool:
        """Check if the bucket exists."""
        ...


@runtime_checkable
class GCSClientProtocol(Protocol):
    """Protocol for GCS Client."""

    def bucket(self, bucket_name: str) -> GCSBucketProtocol:
        """Get a bucket reference."""
        ...
