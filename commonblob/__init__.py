"""Provider-agnostic blob storage client for Amazon S3 and Google Cloud Storage."""

from commonblob.common.context import Context
from commonblob.infra.storage.client import (
    Attributes,
    ListItem,
    SignedURLOptions,
    WriteOptions,
)
from commonblob.infra.storage.errors import (
    AlreadyExistsError,
    BackendFailureError,
    CanceledError,
    ConfigurationError,
    InvalidArgumentError,
    NotFoundError,
    PermissionDeniedError,
    StorageError,
    TransientError,
)
from commonblob.infra.storage.paginator import Paginator
from commonblob.infra.storage.streams import BlobReader, BlobWriter
from commonblob.services.cloud_storage import CloudStorage, new_cloud_storage

__all__ = [
    "AlreadyExistsError",
    "Attributes",
    "BackendFailureError",
    "BlobReader",
    "BlobWriter",
    "CanceledError",
    "CloudStorage",
    "ConfigurationError",
    "Context",
    "InvalidArgumentError",
    "ListItem",
    "NotFoundError",
    "Paginator",
    "PermissionDeniedError",
    "SignedURLOptions",
    "StorageError",
    "TransientError",
    "WriteOptions",
    "new_cloud_storage",
]
