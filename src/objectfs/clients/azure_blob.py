"""Azure Blob Storage remote client.

This module provides a remote client that stores objects as block blobs in
an Azure Storage container.
Requires the azure-storage-blob package.

Install with: pip install objectfs[azure]
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, BinaryIO

# Lazy import to avoid ImportError when azure-storage-blob is not installed
try:
    from azure.storage.blob import BlobServiceClient, ContentSettings
    from azure.core.exceptions import ResourceNotFoundError, AzureError

    HAS_AZURE = True
except ImportError:
    HAS_AZURE = False
    BlobServiceClient = None  # type: ignore
    ContentSettings = None  # type: ignore
    ResourceNotFoundError = Exception  # type: ignore
    AzureError = Exception  # type: ignore

if TYPE_CHECKING:
    from objectfs.clients._protocols import AzureContainerClientProtocol

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


def _require_azure() -> None:
    """Check if azure-storage-blob is available."""
    if not HAS_AZURE:
        raise ImportError(
            "azure-storage-blob is required for AzureBlobClient. "
            "Install with: pip install objectfs[azure]"
        )


@dataclass
class AzureBlobClientConfig(ClientConfig):
    """Configuration for the Azure Blob client.

    Attributes:
        container: Azure Blob container name.
        connection_string: Azure Storage connection string.
        account_url: Azure Storage account URL (alternative to connection_string).
        account_name: Azure Storage account name.
        account_key: Azure Storage account key.
        sas_token: SAS token for authentication.
        content_type: Content type for stored blobs.
    """

    container: str = ""
    connection_string: str | None = None
    account_url: str | None = None
    account_name: str | None = None
    account_key: str | None = None
    sas_token: str | None = None
    content_type: str = "application/octet-stream"


class AzureBlobClient(ObjectClient[AzureBlobClientConfig]):
    """Azure Blob Storage remote client.

    Example:
        >>> client = AzureBlobClient(
        ...     container="objects",
        ...     connection_string="DefaultEndpointsProtocol=https;...",
        ... )
        >>> client.put(contenthash, open(path, "rb"))

    Authentication Methods:
        1. Connection string:
            AzureBlobClient(container="...", connection_string="...")

        2. Account URL with SAS token:
            AzureBlobClient(container="...", account_url="https://...", sas_token="...")

        3. Account name and key:
            AzureBlobClient(container="...", account_name="...", account_key="...")
    """

    backend_name = "azure_blob"
    # 50,000 blocks of 100 MiB each.
    default_max_upload_size = int(4.75 * BYTES_IN_TERABYTE)

    def __init__(
        self,
        container: str,
        prefix: str = "",
        connection_string: str | None = None,
        account_url: str | None = None,
        account_name: str | None = None,
        account_key: str | None = None,
        sas_token: str | None = None,
        max_upload_size: int | None = None,
        container_client: "AzureContainerClientProtocol | None" = None,
        **kwargs: Any,
    ) -> None:
        """Initialize the Azure Blob client.

        Args:
            container: Azure Blob container name.
            prefix: Blob name prefix for stored objects.
            connection_string: Azure Storage connection string.
            account_url: Azure Storage account URL.
            account_name: Azure Storage account name.
            account_key: Azure Storage account key.
            sas_token: SAS token for authentication.
            max_upload_size: Override of the maximum blob size.
            container_client: Pre-built container client. Built on first
                use if omitted.
            **kwargs: Additional configuration options.
        """
        config = AzureBlobClientConfig(
            container=container,
            prefix=prefix,
            connection_string=connection_string,
            account_url=account_url,
            account_name=account_name,
            account_key=account_key,
            sas_token=sas_token,
            max_upload_size=max_upload_size,
            **{k: v for k, v in kwargs.items() if hasattr(AzureBlobClientConfig, k)},
        )
        super().__init__(config)
        self._container_client = container_client

    @classmethod
    def _default_config(cls) -> AzureBlobClientConfig:
        return AzureBlobClientConfig()

    def _do_initialize(self) -> None:
        """Create the service client and check the container exists."""
        if self._container_client is None:
            _require_azure()
            service_client = self._create_service_client()
            self._container_client = service_client.get_container_client(
                self._config.container
            )

        try:
            exists = self._container_client.exists()
        except AzureError as e:
            raise ClientUnavailableError("Azure Blob", str(e))

        if not exists:
            raise ClientUnavailableError(
                "Azure Blob",
                f"Container not found: {self._config.container}",
            )

    def _create_service_client(self) -> Any:
        if self._config.connection_string:
            return BlobServiceClient.from_connection_string(
                self._config.connection_string
            )
        if self._config.account_url:
            return BlobServiceClient(
                account_url=self._config.account_url,
                credential=self._config.sas_token or self._config.account_key,
            )
        if self._config.account_name:
            account_url = f"https://{self._config.account_name}.blob.core.windows.net"
            return BlobServiceClient(
                account_url=account_url,
                credential=self._config.account_key,
            )
        raise ClientUnavailableError(
            "Azure Blob",
            "No connection credentials provided. Provide connection_string, "
            "account_url, or account_name.",
        )

    def get_fullpath_from_hash(self, contenthash: str) -> str:
        return f"azure://{self._config.container}/{self.get_key(contenthash)}"

    def _blob_client(self, contenthash: str) -> Any:
        self.initialize()
        return self._container_client.get_blob_client(self.get_key(contenthash))

    def put(self, contenthash: str, stream: BinaryIO, size: int | None = None) -> None:
        blob_client = self._blob_client(contenthash)
        stream, digest, length = prepare_upload(stream)

        upload_kwargs: dict[str, Any] = {
            "overwrite": True,
            "length": length,
            "metadata": {DIGEST_METADATA_KEY: digest, **self._config.metadata},
        }
        if ContentSettings is not None:
            upload_kwargs["content_settings"] = ContentSettings(
                content_type=self._config.content_type
            )

        try:
            blob_client.upload_blob(stream, **upload_kwargs)
        except AzureError as e:
            raise RemoteIOError("Azure Blob", "put", str(e)) from e

        logger.debug(f"Uploaded {contenthash} ({length} bytes) to Azure Blob")

    def get(self, contenthash: str) -> BinaryIO:
        blob_client = self._blob_client(contenthash)
        buffer = spooled_buffer()
        try:
            blob_client.download_blob().readinto(buffer)
        except ResourceNotFoundError:
            buffer.close()
            raise ObjectNotFoundError(contenthash, "remote")
        except AzureError as e:
            buffer.close()
            raise RemoteIOError("Azure Blob", "get", str(e)) from e
        buffer.seek(0)
        return buffer

    def delete(self, contenthash: str) -> bool:
        blob_client = self._blob_client(contenthash)
        try:
            blob_client.delete_blob()
        except ResourceNotFoundError:
            return False
        except AzureError as e:
            raise RemoteIOError("Azure Blob", "delete", str(e)) from e
        return True

    def get_metadata(self, contenthash: str) -> ObjectMetadata | None:
        blob_client = self._blob_client(contenthash)
        try:
            properties = blob_client.get_blob_properties()
        except ResourceNotFoundError:
            return None
        except AzureError as e:
            raise RemoteIOError("Azure Blob", "head", str(e)) from e

        metadata = properties.metadata or {}
        return ObjectMetadata(
            contenthash=contenthash,
            size=int(properties.size),
            digest=metadata.get(DIGEST_METADATA_KEY),
            etag=properties.etag,
        )
