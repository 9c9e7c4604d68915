"""Remote clients for the external object tier.

This package contains implementations of the ``ObjectClient`` capability
interface for various storage backends:

- memory: In-memory storage (for testing, no dependencies)
- filesystem: Mounted directory storage (no dependencies)
- s3: AWS S3 and S3-compatible storage (requires boto3)
- azure_blob: Azure Blob Storage (requires azure-storage-blob)
- gcs: Google Cloud Storage (requires google-cloud-storage)

Use the get_client() factory function to create client instances:

    >>> from objectfs.clients import get_client
    >>> client = get_client("s3", bucket="objects", region="eu-west-1")
"""

# Cloud backends are imported lazily by the factory to avoid import errors
# when optional dependencies are not installed.
from objectfs.clients.base import BackendKind, ObjectClient, ObjectMetadata, shard_path
from objectfs.clients.factory import get_client, list_available_backends
from objectfs.clients.memory import MemoryClient

__all__ = [
    "BackendKind",
    "ObjectClient",
    "ObjectMetadata",
    "shard_path",
    "get_client",
    "list_available_backends",
    "MemoryClient",
]
