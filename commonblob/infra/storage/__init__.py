"""Object storage abstraction layer.

This package provides a protocol-based abstraction for object storage
backends, with adapters for Amazon S3 and Google Cloud Storage.
"""

from .client import (
    Attributes,
    ListItem,
    Page,
    SignedURLOptions,
    StorageClient,
    WriteOptions,
)
from .errors import StorageError

__all__ = [
    "Attributes",
    "ListItem",
    "Page",
    "SignedURLOptions",
    "StorageClient",
    "StorageError",
    "WriteOptions",
]
