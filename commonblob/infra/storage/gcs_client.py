"""Google Cloud Storage client implementation.

Dependencies:
    - google-cloud-storage
    - google-auth
    - google-api-core
"""

from __future__ import annotations

import io
import tempfile
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Iterator
from urllib.parse import quote

import requests
from google.api_core import exceptions as api_exceptions
from google.auth import exceptions as auth_exceptions
from google.auth.credentials import AnonymousCredentials
from google.cloud import storage
from google.oauth2 import service_account

from commonblob.common.context import Context
from commonblob.infra.storage.client import (
    Attributes,
    ListItem,
    Page,
    SignedURLOptions,
    WriteOptions,
    require_key,
    require_offset,
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
from commonblob.infra.storage.streams import BlobReader, BlobWriter, EmptyBlobReader

if TYPE_CHECKING:
    from commonblob.common.config import StorageSettings

PUBLIC_ENDPOINT = "https://storage.googleapis.com"


def _translate(exc: Exception, action: str) -> StorageError:
    message = f"Failed to {action}: {exc}"
    if isinstance(exc, api_exceptions.NotFound):
        return NotFoundError(message, cause=exc)
    if isinstance(
        exc,
        (
            api_exceptions.Forbidden,
            api_exceptions.Unauthorized,
            auth_exceptions.RefreshError,
            auth_exceptions.DefaultCredentialsError,
        ),
    ):
        return PermissionDeniedError(message, cause=exc)
    if isinstance(exc, api_exceptions.Conflict):
        return AlreadyExistsError(message, cause=exc)
    if isinstance(
        exc,
        (
            api_exceptions.TooManyRequests,
            api_exceptions.ServerError,
            auth_exceptions.TransportError,
            requests.exceptions.ConnectionError,
            requests.exceptions.Timeout,
        ),
    ):
        return TransientError(message, cause=exc)
    if isinstance(
        exc, (api_exceptions.BadRequest, api_exceptions.RequestRangeNotSatisfiable)
    ):
        return InvalidArgumentError(message, cause=exc)
    return BackendFailureError(message, cause=exc)


@contextmanager
def _translate_errors(action: str, ctx: Context | None = None) -> Iterator[None]:
    """Map SDK errors to storage errors.

    With a context, a failure after the context is done is a cancellation,
    and so is a call that only returned after it was done.
    """
    try:
        yield
    except StorageError:
        raise
    except Exception as exc:
        error = ctx.error() if ctx is not None else None
        if error is not None:
            raise CanceledError(f"Failed to {action}: {error}", cause=exc) from exc
        raise _translate(exc, action) from exc
    if ctx is not None:
        ctx.check()


def _emulator_endpoint(host: str) -> str:
    host = host.strip().rstrip("/")
    if host.startswith(("http://", "https://")):
        return host
    return f"http://{host}"


def _apply_options(blob: storage.Blob, options: WriteOptions | None) -> None:
    if options is None:
        return
    if options.content_type:
        blob.content_type = options.content_type
    if options.content_disposition:
        blob.content_disposition = options.content_disposition
    if options.cache_control:
        blob.cache_control = options.cache_control
    if options.metadata:
        blob.metadata = dict(options.metadata)


class GCSBlobWriter(BlobWriter):
    """Spools written bytes and uploads them in one request on close.

    The spool stays in memory up to one chunk and moves to a temporary file
    beyond that. Uploads larger than a chunk go through the resumable upload
    protocol, sent chunk by chunk.
    """

    def __init__(
        self,
        ctx: Context,
        *,
        owner: "GCSStorageClient",
        blob: storage.Blob,
        key: str,
        chunk_size: int,
    ) -> None:
        super().__init__(ctx, provider=GCSStorageClient.provider, key=key)
        self._owner = owner
        self._blob = blob
        self._spool = tempfile.SpooledTemporaryFile(max_size=chunk_size)

    def _write(self, data: memoryview) -> None:
        self._spool.write(data)

    def _commit(self) -> None:
        size = self._spool.tell()
        self._spool.seek(0)
        try:
            with _translate_errors("upload object", self._ctx):
                self._blob.upload_from_file(
                    self._spool,
                    size=size,
                    timeout=self._owner.timeout(self._ctx),
                    retry=None,
                )
        finally:
            self._spool.close()

    def _abort(self) -> None:
        self._spool.close()


class GCSBlobReader(BlobReader):
    """Reads ``[start, end)`` of one object generation, one chunk per request."""

    def __init__(
        self,
        ctx: Context,
        *,
        owner: "GCSStorageClient",
        blob: storage.Blob,
        key: str,
        start: int,
        end: int,
        chunk_size: int,
    ) -> None:
        super().__init__(ctx, provider=GCSStorageClient.provider, key=key, length=end - start)
        self._owner = owner
        self._blob = blob
        self._position = start
        self._end = end
        self._chunk_size = chunk_size
        self._chunk = b""

    def _read_chunk(self, size: int) -> bytes:
        if not self._chunk:
            if self._position >= self._end:
                return b""
            last = min(self._position + self._chunk_size, self._end) - 1
            with _translate_errors("read object", self._ctx):
                self._chunk = self._blob.download_as_bytes(
                    start=self._position,
                    end=last,
                    raw_download=True,
                    if_generation_match=self._blob.generation,
                    timeout=self._owner.timeout(self._ctx),
                    retry=None,
                )
            self._position += len(self._chunk)
        data, self._chunk = self._chunk[:size], self._chunk[size:]
        return data

    def _release(self) -> None:
        self._chunk = b""


class GCSStorageClient:
    """Google Cloud Storage backend bound to one bucket.

    In test mode the client uses anonymous credentials and, when an
    emulator host is configured, talks to the emulator instead of Google.
    SDK retries are disabled on every call.
    """

    provider = "gcp"

    def __init__(self, *, settings: "StorageSettings", client: Any = None) -> None:
        self._settings = settings
        self.bucket = settings.BUCKET_NAME
        self._endpoint = PUBLIC_ENDPOINT
        if settings.IS_TESTING and settings.GCP_STORAGE_EMULATOR_HOST:
            self._endpoint = _emulator_endpoint(settings.GCP_STORAGE_EMULATOR_HOST)
        self._anonymous = bool(settings.IS_TESTING)
        self._client = client if client is not None else self._build_client(settings)
        self._bucket = self._client.bucket(self.bucket)

    @staticmethod
    def _build_client(settings: "StorageSettings") -> storage.Client:
        """Create a storage client from the credentials JSON in settings."""
        info = settings.gcp_credentials_info()
        project = info.get("project_id")
        if settings.IS_TESTING:
            client_options = None
            if settings.GCP_STORAGE_EMULATOR_HOST:
                client_options = {
                    "api_endpoint": _emulator_endpoint(settings.GCP_STORAGE_EMULATOR_HOST)
                }
            return storage.Client(
                project=project,
                credentials=AnonymousCredentials(),
                client_options=client_options,
            )

        if info.get("type") != "service_account":
            raise ConfigurationError(
                "GCP_CREDENTIALS_JSON must hold a service_account key, "
                f"got type {info.get('type')!r}"
            )
        try:
            credentials = service_account.Credentials.from_service_account_info(info)
        except (ValueError, KeyError) as exc:
            raise ConfigurationError(
                f"Invalid service account credentials: {exc}", cause=exc
            ) from exc
        return storage.Client(project=project, credentials=credentials)

    def timeout(self, ctx: Context) -> float | tuple[float, float]:
        """Per-request timeout: the context's remaining time when it has a deadline."""
        remaining = ctx.remaining()
        if remaining is None:
            return (
                self._settings.CONNECT_TIMEOUT_SECONDS,
                self._settings.READ_TIMEOUT_SECONDS,
            )
        return remaining

    def create_bucket(self, ctx: Context) -> None:
        ctx.check()
        with _translate_errors("create bucket", ctx):
            self._client.create_bucket(self.bucket, timeout=self.timeout(ctx), retry=None)

    def write(
        self,
        ctx: Context,
        key: str,
        body: bytes,
        options: WriteOptions | None = None,
    ) -> None:
        require_key(key)
        data = bytes(body)
        blob = self._bucket.blob(key)
        _apply_options(blob, options)
        ctx.check()
        with _translate_errors("upload object", ctx):
            blob.upload_from_file(
                io.BytesIO(data),
                size=len(data),
                timeout=self.timeout(ctx),
                retry=None,
            )

    def get(self, ctx: Context, key: str) -> bytes:
        require_key(key)
        ctx.check()
        with _translate_errors("download object", ctx):
            return self._bucket.blob(key).download_as_bytes(
                raw_download=True, timeout=self.timeout(ctx), retry=None
            )

    def new_writer(
        self,
        ctx: Context,
        key: str,
        options: WriteOptions | None = None,
    ) -> GCSBlobWriter:
        require_key(key)
        ctx.check()
        blob = self._bucket.blob(key, chunk_size=self._settings.GCS_CHUNK_SIZE_BYTES)
        _apply_options(blob, options)
        return GCSBlobWriter(
            ctx,
            owner=self,
            blob=blob,
            key=key,
            chunk_size=self._settings.GCS_CHUNK_SIZE_BYTES,
        )

    def new_range_reader(
        self,
        ctx: Context,
        key: str,
        offset: int = 0,
        length: int = -1,
    ) -> BlobReader:
        require_key(key)
        require_offset(offset)
        blob = self._get_blob(ctx, key)
        size = blob.size or 0
        if offset > size:
            raise InvalidArgumentError(
                f"Range offset {offset} is beyond the end of {key!r} ({size} bytes)"
            )
        end = size if length <= 0 else min(size, offset + length)
        if offset == end:
            return EmptyBlobReader(ctx, provider=self.provider, key=key, length=0)
        return GCSBlobReader(
            ctx,
            owner=self,
            blob=blob,
            key=key,
            start=offset,
            end=end,
            chunk_size=self._settings.GCS_CHUNK_SIZE_BYTES,
        )

    def list(self, ctx: Context, prefix: str) -> Paginator:
        page_size = self._settings.LIST_PAGE_SIZE

        def fetch_page(ctx: Context, token: str | None) -> Page:
            with _translate_errors("list objects", ctx):
                iterator = self._client.list_blobs(
                    self.bucket,
                    prefix=prefix,
                    page_token=token,
                    page_size=page_size,
                    timeout=self.timeout(ctx),
                    retry=None,
                )
                page = next(iterator.pages, None)
                blobs = list(page) if page is not None else []
                next_token = iterator.next_page_token
            items = [
                ListItem(key=blob.name, size=blob.size, mod_time=blob.updated)
                for blob in blobs
            ]
            return Page(items=items, next_token=next_token)

        return Paginator(fetch_page, ctx)

    def attributes(self, ctx: Context, key: str) -> Attributes:
        blob = self._get_blob(ctx, key)
        return Attributes(
            size=int(blob.size or 0),
            mod_time=blob.updated,
            content_type=blob.content_type,
            etag=blob.etag,
            metadata=dict(blob.metadata or {}),
        )

    def _get_blob(self, ctx: Context, key: str) -> storage.Blob:
        require_key(key)
        ctx.check()
        with _translate_errors("get object metadata", ctx):
            blob = self._bucket.get_blob(key, timeout=self.timeout(ctx), retry=None)
        if blob is None:
            raise NotFoundError(f"Object not found: {key!r}")
        return blob

    def delete(self, ctx: Context, key: str) -> None:
        require_key(key)
        ctx.check()
        with _translate_errors("delete object", ctx):
            self._bucket.blob(key).delete(timeout=self.timeout(ctx), retry=None)

    def signed_url(self, ctx: Context, key: str, options: SignedURLOptions) -> str:
        require_key(key)
        method = options.validate()
        ctx.check()
        if self._anonymous:
            return self._unsigned_url(key, method)

        headers = None
        if options.enforce_absent_content_type:
            headers = {"Content-Type": ""}
        with _translate_errors("generate signed URL", ctx):
            url = self._bucket.blob(key).generate_signed_url(
                version="v4",
                expiration=options.expiry,
                method=method,
                content_type=options.content_type or None,
                headers=headers,
            )

        if not url:
            raise BackendFailureError("Generated signed URL is empty")

        return str(url)

    def _unsigned_url(self, key: str, method: str) -> str:
        # Anonymous credentials cannot sign; the emulator accepts plain JSON API URLs.
        name = quote(key, safe="")
        bucket = quote(self.bucket, safe="")
        if method == "PUT":
            return (
                f"{self._endpoint}/upload/storage/v1/b/{bucket}/o"
                f"?uploadType=media&name={name}"
            )
        if method == "DELETE":
            return f"{self._endpoint}/storage/v1/b/{bucket}/o/{name}"
        return f"{self._endpoint}/download/storage/v1/b/{bucket}/o/{name}?alt=media"

    def close(self) -> None:
        self._client.close()
