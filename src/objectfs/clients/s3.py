"""AWS S3 remote client.

This module provides a remote client that stores objects in an S3 bucket or
any S3-compatible service (MinIO, Ceph RGW, LocalStack).
Requires the boto3 package.

Install with: pip install objectfs[s3]
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, BinaryIO

# Lazy import to avoid ImportError when boto3 is not installed
try:
    import boto3
    from botocore.exceptions import ClientError

    HAS_BOTO3 = True
except ImportError:
    HAS_BOTO3 = False
    boto3 = None  # type: ignore
    ClientError = Exception  # type: ignore

if TYPE_CHECKING:
    from objectfs.clients._protocols import S3ClientProtocol

from objectfs.base import ClientUnavailableError, ObjectNotFoundError, RemoteIOError
from objectfs.clients.base import (
    BYTES_IN_TERABYTE,
    CHUNK_SIZE,
    DIGEST_METADATA_KEY,
    ClientConfig,
    ObjectClient,
    ObjectMetadata,
    prepare_upload,
    spooled_buffer,
)

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = ("404", "NoSuchKey", "NotFound")


def _require_boto3() -> None:
    """Check if boto3 is available."""
    if not HAS_BOTO3:
        raise ImportError(
            "boto3 is required for S3Client. "
            "Install with: pip install objectfs[s3]"
        )


def _error_code(error: Exception) -> str:
    response = getattr(error, "response", None) or {}
    return str(response.get("Error", {}).get("Code", "Unknown"))


@dataclass
class S3ClientConfig(ClientConfig):
    """Configuration for the S3 client.

    Attributes:
        bucket: S3 bucket name.
        region: AWS region name.
        endpoint_url: Custom endpoint URL (for S3-compatible services).
        storage_class: S3 storage class for uploaded objects.
    """

    bucket: str = ""
    region: str | None = None
    endpoint_url: str | None = None
    storage_class: str = "STANDARD"


class S3Client(ObjectClient[S3ClientConfig]):
    """AWS S3 remote client.

    The SHA-1 of every upload is written to the object's user metadata, so
    verification is a single HEAD request instead of a download.

    Example:
        >>> client = S3Client(bucket="app-objects", region="eu-west-1")
        >>> client.put(contenthash, open(path, "rb"))
        >>> client.exists_and_verified(contenthash, contenthash)
        True
    """

    backend_name = "s3"
    default_max_upload_size = 5 * BYTES_IN_TERABYTE

    def __init__(
        self,
        bucket: str,
        prefix: str = "",
        region: str | None = None,
        endpoint_url: str | None = None,
        max_upload_size: int | None = None,
        client: "S3ClientProtocol | None" = None,
        **kwargs: Any,
    ) -> None:
        """Initialize the S3 client.

        Args:
            bucket: S3 bucket name.
            prefix: Key prefix for stored objects.
            region: AWS region name.
            endpoint_url: Custom endpoint URL (for MinIO, LocalStack, etc.).
            max_upload_size: Override of the 5 TB object size limit.
            client: Pre-built boto3 S3 client. Built on first use if omitted.
            **kwargs: Additional configuration options.
        """
        config = S3ClientConfig(
            bucket=bucket,
            prefix=prefix,
            region=region,
            endpoint_url=endpoint_url,
            max_upload_size=max_upload_size,
            **{k: v for k, v in kwargs.items() if hasattr(S3ClientConfig, k)},
        )
        super().__init__(config)
        self._client = client

    @classmethod
    def _default_config(cls) -> S3ClientConfig:
        return S3ClientConfig()

    def _do_initialize(self) -> None:
        """Create the boto3 client and check the bucket is reachable."""
        if self._client is None:
            _require_boto3()
            session_kwargs: dict[str, Any] = {}
            if self._config.region:
                session_kwargs["region_name"] = self._config.region
            client_kwargs: dict[str, Any] = {}
            if self._config.endpoint_url:
                client_kwargs["endpoint_url"] = self._config.endpoint_url
            self._client = boto3.client("s3", **session_kwargs, **client_kwargs)

        try:
            self._client.head_bucket(Bucket=self._config.bucket)
        except ClientError as e:
            error_code = _error_code(e)
            if error_code in ("404", "NoSuchBucket"):
                raise ClientUnavailableError(
                    "S3", f"Bucket not found: {self._config.bucket}"
                )
            elif error_code in ("403", "AccessDenied"):
                raise ClientUnavailableError(
                    "S3", f"Access denied to bucket: {self._config.bucket}"
                )
            else:
                raise ClientUnavailableError("S3", str(e))

    def get_fullpath_from_hash(self, contenthash: str) -> str:
        return f"s3://{self._config.bucket}/{self.get_key(contenthash)}"

    def put(self, contenthash: str, stream: BinaryIO, size: int | None = None) -> None:
        self.initialize()
        stream, digest, length = prepare_upload(stream)

        try:
            self._client.put_object(
                Bucket=self._config.bucket,
                Key=self.get_key(contenthash),
                Body=stream,
                ContentLength=length,
                Metadata={DIGEST_METADATA_KEY: digest, **self._config.metadata},
                StorageClass=self._config.storage_class,
            )
        except ClientError as e:
            raise RemoteIOError("S3", "put", str(e)) from e

        logger.debug(f"Uploaded {contenthash} ({length} bytes) to S3")

    def get(self, contenthash: str) -> BinaryIO:
        self.initialize()
        try:
            response = self._client.get_object(
                Bucket=self._config.bucket,
                Key=self.get_key(contenthash),
            )
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                raise ObjectNotFoundError(contenthash, "remote")
            raise RemoteIOError("S3", "get", str(e)) from e

        buffer = spooled_buffer()
        body = response["Body"]
        try:
            shutil.copyfileobj(body, buffer, CHUNK_SIZE)
        except ClientError as e:
            buffer.close()
            raise RemoteIOError("S3", "get", str(e)) from e
        finally:
            close = getattr(body, "close", None)
            if close is not None:
                close()
        buffer.seek(0)
        return buffer

    def delete(self, contenthash: str) -> bool:
        self.initialize()
        if self.get_metadata(contenthash) is None:
            return False

        try:
            self._client.delete_object(
                Bucket=self._config.bucket,
                Key=self.get_key(contenthash),
            )
        except ClientError as e:
            raise RemoteIOError("S3", "delete", str(e)) from e
        return True

    def get_metadata(self, contenthash: str) -> ObjectMetadata | None:
        self.initialize()
        try:
            response = self._client.head_object(
                Bucket=self._config.bucket,
                Key=self.get_key(contenthash),
            )
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                return None
            raise RemoteIOError("S3", "head", str(e)) from e

        metadata = response.get("Metadata") or {}
        etag = response.get("ETag")
        return ObjectMetadata(
            contenthash=contenthash,
            size=int(response.get("ContentLength", 0)),
            digest=metadata.get(DIGEST_METADATA_KEY),
            etag=etag.strip('"') if etag else None,
        )
