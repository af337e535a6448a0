"""Error taxonomy shared by every storage backend.

Adapters translate provider-native failures into these classes at the
boundary; callers match on the class, never on provider error codes.
"""

from __future__ import annotations


class StorageError(RuntimeError):
    """Base class for object storage failures.

    The provider exception (if any) is chained as ``__cause__`` and kept on
    ``cause`` for diagnostics.
    """

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class NotFoundError(StorageError):
    """Raised when the object or bucket does not exist."""


class AlreadyExistsError(StorageError):
    """Raised when a bucket already exists."""


class InvalidArgumentError(StorageError):
    """Raised when a request is malformed or internally inconsistent."""


class ConfigurationError(InvalidArgumentError):
    """Raised when the storage client cannot be built from its settings."""


class PermissionDeniedError(StorageError):
    """Raised when the credentials are rejected or lack access."""


class TransientError(StorageError):
    """Raised for network and throttling failures that may succeed on retry."""


class CanceledError(StorageError):
    """Raised when the operation context was cancelled or timed out."""


class BackendFailureError(StorageError):
    """Raised for any other provider failure."""
