"""Storage client protocol and data types.

This module defines the interface every object storage backend implements,
plus the plain data types that flow through it: object attributes, listing
entries, write options and signed URL options.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Mapping, Protocol, Sequence

from commonblob.infra.storage.errors import InvalidArgumentError

if TYPE_CHECKING:
    from commonblob.common.context import Context
    from commonblob.infra.storage.paginator import Paginator
    from commonblob.infra.storage.streams import BlobReader, BlobWriter

# SigV4 and GCS V4 signing both cap URL lifetime at seven days.
MAX_SIGNED_URL_EXPIRY = timedelta(days=7)

SIGNED_URL_METHODS: tuple[str, ...] = ("GET", "PUT", "DELETE")


@dataclass(frozen=True, slots=True)
class Attributes:
    """Object metadata read from the backend at query time."""

    size: int
    mod_time: datetime
    content_type: str | None = None
    etag: str | None = None
    metadata: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ListItem:
    """A single listing entry."""

    key: str
    size: int | None = None
    mod_time: datetime | None = None


@dataclass(frozen=True, slots=True)
class Page:
    """One page of listing results and the token for the next one."""

    items: Sequence[ListItem]
    next_token: str | None = None


@dataclass(frozen=True, slots=True)
class WriteOptions:
    """Optional metadata hints attached to an object at write time."""

    content_type: str | None = None
    content_disposition: str | None = None
    cache_control: str | None = None
    metadata: Mapping[str, str] | None = None


@dataclass(frozen=True, slots=True)
class SignedURLOptions:
    """How to construct a time-limited access URL.

    ``enforce_absent_content_type`` requests a PUT URL that rejects any
    Content-Type header; it cannot be combined with ``content_type``.
    """

    expiry: timedelta = timedelta(hours=1)
    method: str = "GET"
    content_type: str = ""
    enforce_absent_content_type: bool = False

    def normalized_method(self) -> str:
        return (self.method or "GET").strip().upper()

    def validate(self) -> str:
        """Check internal consistency and return the normalized method.

        Raises:
            InvalidArgumentError: If the options are inconsistent.
        """
        method = self.normalized_method()
        if method not in SIGNED_URL_METHODS:
            raise InvalidArgumentError(
                f"Unsupported signed URL method: {self.method!r}"
            )
        if self.enforce_absent_content_type and self.content_type:
            raise InvalidArgumentError(
                "content_type must be empty when enforce_absent_content_type is set"
            )
        if method != "PUT" and (self.content_type or self.enforce_absent_content_type):
            raise InvalidArgumentError(
                "content_type options are only valid for PUT signed URLs"
            )
        if self.expiry <= timedelta(0):
            raise InvalidArgumentError("Signed URL expiry must be positive")
        if self.expiry > MAX_SIGNED_URL_EXPIRY:
            raise InvalidArgumentError("Signed URL expiry must not exceed 7 days")
        return method


def require_key(key: str) -> str:
    if not key:
        raise InvalidArgumentError("Object key must not be empty")
    return key


def require_offset(offset: int) -> None:
    if offset < 0:
        raise InvalidArgumentError(f"Range offset must not be negative: {offset}")


class StorageClient(Protocol):
    """Protocol defining the interface for object storage backends.

    Implementations are bound to one bucket at construction. Every method
    takes the caller's :class:`~commonblob.common.context.Context` and raises
    :class:`~commonblob.infra.storage.errors.StorageError` subclasses only.
    """

    provider: str
    bucket: str

    def create_bucket(self, ctx: "Context") -> None:
        """Create the bound bucket.

        Raises:
            AlreadyExistsError: If the bucket already exists.
            StorageError: If the operation fails.
        """
        ...

    def write(
        self,
        ctx: "Context",
        key: str,
        body: bytes,
        options: WriteOptions | None = None,
    ) -> None:
        """Store ``body`` at ``key`` in one request, replacing any object."""
        ...

    def get(self, ctx: "Context", key: str) -> bytes:
        """Return the whole object body.

        Raises:
            NotFoundError: If the object does not exist.
        """
        ...

    def new_writer(
        self,
        ctx: "Context",
        key: str,
        options: WriteOptions | None = None,
    ) -> "BlobWriter":
        """Open a scoped writer; the object is committed when it is closed."""
        ...

    def new_range_reader(
        self,
        ctx: "Context",
        key: str,
        offset: int = 0,
        length: int = -1,
    ) -> "BlobReader":
        """Open a scoped reader over ``length`` bytes starting at ``offset``.

        A negative ``length`` reads to the end of the object.

        Raises:
            NotFoundError: If the object does not exist.
            InvalidArgumentError: If ``offset`` is past the end of the object.
        """
        ...

    def list(self, ctx: "Context", prefix: str) -> "Paginator":
        """Return a paginator over every key starting with ``prefix``."""
        ...

    def attributes(self, ctx: "Context", key: str) -> Attributes:
        """Return current object attributes.

        Raises:
            NotFoundError: If the object does not exist.
        """
        ...

    def delete(self, ctx: "Context", key: str) -> None:
        """Delete an object.

        Raises:
            NotFoundError: If the object does not exist.
        """
        ...

    def signed_url(self, ctx: "Context", key: str, options: SignedURLOptions) -> str:
        """Generate a time-limited URL for ``key``.

        Raises:
            InvalidArgumentError: If the options are inconsistent or the
                backend cannot express them.
        """
        ...

    def close(self) -> None:
        """Release the underlying SDK client."""
        ...
