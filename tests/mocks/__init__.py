"""Mock implementations for optional dependency testing.

This module provides realistic mock implementations that match the Protocol
definitions, allowing tests to run without actual cloud dependencies.
"""

from tests.mocks.cloud_mocks import (
    MockAzureContainerClient,
    MockAzureError,
    MockAzureResourceNotFoundError,
    MockGCSAPIError,
    MockGCSBucket,
    MockGCSBlob,
    MockGCSClient,
    MockGCSNotFound,
    MockS3Client,
    MockS3ClientError,
    create_mock_azure_container,
    create_mock_gcs_client,
    create_mock_s3_client,
)

__all__ = [
    # S3
    "MockS3Client",
    "MockS3ClientError",
    "create_mock_s3_client",
    # Azure Blob
    "MockAzureContainerClient",
    "MockAzureError",
    "MockAzureResourceNotFoundError",
    "create_mock_azure_container",
    # GCS
    "MockGCSClient",
    "MockGCSBucket",
    "MockGCSBlob",
    "MockGCSAPIError",
    "MockGCSNotFound",
    "create_mock_gcs_client",
]
