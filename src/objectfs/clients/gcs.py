"""Google Cloud Storage remote client.

This module provides a remote client that stores objects in a GCS bucket.
Requires the google-cloud-storage package.

Install with: pip install objectfs[gcs]
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, BinaryIO

# Lazy import to avoid ImportError when google-cloud-storage is not installed
try:
    from google.api_core.exceptions import GoogleAPIError
    from google.cloud import storage
    from google.cloud.exceptions import NotFound

    HAS_GCS = True
except ImportError:
    HAS_GCS = False
    storage = None  # type: ignore
    NotFound = Exception  # type: ignore
    GoogleAPIError = Exception  # type: ignore

if TYPE_CHECKING:
    from objectfs.clients._protocols import GCSBucketProtocol, GCSClientProtocol

from objectfs.base import ClientUnavailableError, ObjectNotFoundError, RemoteIOError
from objectfs.clients.base import (
    BYTES_IN_TERABYTE,
    DIGEST_METADATA_KEY,
    ClientConfig,
    ObjectClient,
    ObjectMetadata,
    prepare_upload,
    spooled_buffer,
)

logger = logging.getLogger(__name__)


def _require_gcs() -> None:
    """Check if google-cloud-storage is available."""
    if not HAS_GCS:
        raise ImportError(
            "google-cloud-storage is required for GCSClient. "
            "Install with: pip install objectfs[gcs]"
        )


@dataclass
class GCSClientConfig(ClientConfig):
    """Configuration for the GCS client.

    Attributes:
        bucket: GCS bucket name.
        project: Google Cloud project ID.
        credentials_path: Path to service account credentials JSON.
    """

    bucket: str = ""
    project: str | None = None
    credentials_path: str | None = None


class GCSClient(ObjectClient[GCSClientConfig]):
    """Google Cloud Storage remote client.

    Example:
        >>> client = GCSClient(bucket="objects", project="my-gcp-project")
        >>> client.put(contenthash, open(path, "rb"))
    """

    backend_name = "gcs"
    default_max_upload_size = 5 * BYTES_IN_TERABYTE

    def __init__(
        self,
        bucket: str,
        prefix: str = "",
        project: str | None = None,
        credentials_path: str | None = None,
        max_upload_size: int | None = None,
        client: "GCSClientProtocol | None" = None,
        **kwargs: Any,
    ) -> None:
        """Initialize the GCS client.

        Args:
            bucket: GCS bucket name.
            prefix: Object name prefix for stored objects.
            project: Google Cloud project ID.
            credentials_path: Path to service account credentials JSON.
            max_upload_size: Override of the 5 TB object size limit.
            client: Pre-built storage client. Built on first use if omitted.
            **kwargs: Additional configuration options.
        """
        config = GCSClientConfig(
            bucket=bucket,
            prefix=prefix,
            project=project,
            credentials_path=credentials_path,
            max_upload_size=max_upload_size,
            **{k: v for k, v in kwargs.items() if hasattr(GCSClientConfig, k)},
        )
        super().__init__(config)
        self._client = client
        self._bucket: GCSBucketProtocol | None = None

    @classmethod
    def _default_config(cls) -> GCSClientConfig:
        return GCSClientConfig()

    def _do_initialize(self) -> None:
        """Create the storage client and check the bucket exists."""
        if self._client is None:
            _require_gcs()
            client_kwargs: dict[str, Any] = {}
            if self._config.project:
                client_kwargs["project"] = self._config.project

            if self._config.credentials_path:
                self._client = storage.Client.from_service_account_json(
                    self._config.credentials_path,
                    **client_kwargs,
                )
            else:
                self._client = storage.Client(**client_kwargs)

        try:
            self._bucket = self._client.bucket(self._config.bucket)
            exists = self._bucket.exists()
        except GoogleAPIError as e:
            raise ClientUnavailableError("GCS", str(e))

        if not exists:
            raise ClientUnavailableError("GCS", f"Bucket not found: {self._config.bucket}")

    def get_fullpath_from_hash(self, contenthash: str) -> str:
        return f"gs://{self._config.bucket}/{self.get_key(contenthash)}"

    def put(self, contenthash: str, stream: BinaryIO, size: int | None = None) -> None:
        self.initialize()
        stream, digest, length = prepare_upload(stream)

        blob = self._bucket.blob(self.get_key(contenthash))
        blob.metadata = {DIGEST_METADATA_KEY: digest, **self._config.metadata}
        try:
            blob.upload_from_file(stream, size=length)
        except GoogleAPIError as e:
            raise RemoteIOError("GCS", "put", str(e)) from e

        logger.debug(f"Uploaded {contenthash} ({length} bytes) to GCS")

    def get(self, contenthash: str) -> BinaryIO:
        self.initialize()
        blob = self._bucket.blob(self.get_key(contenthash))
        buffer = spooled_buffer()
        try:
            blob.download_to_file(buffer)
        except NotFound:
            buffer.close()
            raise ObjectNotFoundError(contenthash, "remote")
        except GoogleAPIError as e:
            buffer.close()
            raise RemoteIOError("GCS", "get", str(e)) from e
        buffer.seek(0)
        return buffer

    def delete(self, contenthash: str) -> bool:
        self.initialize()
        blob = self._bucket.blob(self.get_key(contenthash))
        try:
            blob.delete()
        except NotFound:
            return False
        except GoogleAPIError as e:
            raise RemoteIOError("GCS", "delete", str(e)) from e
        return True

    def get_metadata(self, contenthash: str) -> ObjectMetadata | None:
        self.initialize()
        try:
            blob = self._bucket.get_blob(self.get_key(contenthash))
        except GoogleAPIError as e:
            raise RemoteIOError("GCS", "head", str(e)) from e

        if blob is None:
            return None

        metadata = blob.metadata or {}
        return ObjectMetadata(
            contenthash=contenthash,
            size=int(blob.size or 0),
            digest=metadata.get(DIGEST_METADATA_KEY),
            etag=blob.etag,
        )
