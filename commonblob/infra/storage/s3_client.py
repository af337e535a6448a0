"""S3-compatible storage client implementation.

This module provides the Amazon S3 backend. It works with AWS S3 and with
S3-compatible endpoints (LocalStack, MinIO) through an endpoint override.

Dependencies:
    - boto3
    - botocore
"""

from __future__ import annotations

import math
import threading
from collections import OrderedDict
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Iterator

import boto3
from botocore.config import Config
from botocore.exceptions import (
    ClientError,
    ConnectionError as BotoConnectionError,
    HTTPClientError,
    NoCredentialsError,
    ParamValidationError,
    PartialCredentialsError,
)

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

_NOT_FOUND_CODES = frozenset({"NoSuchKey", "NoSuchBucket", "NotFound", "404"})
_PERMISSION_CODES = frozenset(
    {
        "AccessDenied",
        "Forbidden",
        "403",
        "InvalidAccessKeyId",
        "SignatureDoesNotMatch",
        "ExpiredToken",
        "InvalidToken",
        "AllAccessDisabled",
    }
)
_EXISTS_CODES = frozenset({"BucketAlreadyExists", "BucketAlreadyOwnedByYou"})
_INVALID_CODES = frozenset(
    {
        "InvalidArgument",
        "InvalidRange",
        "InvalidBucketName",
        "InvalidRequest",
        "KeyTooLongError",
        "EntityTooSmall",
        "EntityTooLarge",
        "MalformedXML",
        "InvalidPart",
        "InvalidPartOrder",
        "NoSuchUpload",
        "400",
    }
)
_TRANSIENT_CODES = frozenset(
    {
        "SlowDown",
        "Throttling",
        "ThrottlingException",
        "RequestLimitExceeded",
        "RequestTimeout",
        "InternalError",
        "ServiceUnavailable",
        "OperationAborted",
    }
)

# ``us-east-1`` is the one region S3 rejects as an explicit LocationConstraint.
_DEFAULT_REGION = "us-east-1"

# Deadline-bound clients kept alive at once.
_BOUNDED_CLIENTS = 8

_PRESIGN_OPERATIONS = {
    "GET": "get_object",
    "PUT": "put_object",
    "DELETE": "delete_object",
}


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def _translate(exc: Exception, action: str) -> StorageError:
    if isinstance(exc, ClientError):
        code = _error_code(exc)
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        detail = exc.response.get("Error", {}).get("Message") or str(exc)
        message = f"Failed to {action}: {code or status}: {detail}"
        if code in _NOT_FOUND_CODES or status == 404:
            return NotFoundError(message, cause=exc)
        if code in _PERMISSION_CODES or status == 403:
            return PermissionDeniedError(message, cause=exc)
        if code in _EXISTS_CODES:
            return AlreadyExistsError(message, cause=exc)
        if code in _TRANSIENT_CODES or status == 429 or (status or 0) >= 500:
            return TransientError(message, cause=exc)
        if code in _INVALID_CODES or status in (400, 416):
            return InvalidArgumentError(message, cause=exc)
        return BackendFailureError(message, cause=exc)
    message = f"Failed to {action}: {exc}"
    if isinstance(exc, (BotoConnectionError, HTTPClientError)):
        return TransientError(message, cause=exc)
    if isinstance(exc, (NoCredentialsError, PartialCredentialsError)):
        return PermissionDeniedError(message, cause=exc)
    if isinstance(exc, ParamValidationError):
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


def _write_params(options: WriteOptions | None) -> dict[str, Any]:
    params: dict[str, Any] = {}
    if options is None:
        return params
    if options.content_type:
        params["ContentType"] = options.content_type
    if options.content_disposition:
        params["ContentDisposition"] = options.content_disposition
    if options.cache_control:
        params["CacheControl"] = options.cache_control
    if options.metadata:
        params["Metadata"] = dict(options.metadata)
    return params


class S3BlobWriter(BlobWriter):
    """Buffers one part at a time; switches to multipart upload past one part."""

    def __init__(
        self,
        ctx: Context,
        *,
        owner: "S3StorageClient",
        bucket: str,
        key: str,
        part_size: int,
        params: dict[str, Any],
    ) -> None:
        super().__init__(ctx, provider=S3StorageClient.provider, key=key)
        self._owner = owner
        self._bucket = bucket
        self._part_size = part_size
        self._params = params
        self._buffer = bytearray()
        self._upload_id: str | None = None
        self._parts: list[dict[str, Any]] = []

    def _write(self, data: memoryview) -> None:
        self._buffer += data
        while len(self._buffer) >= self._part_size:
            self._upload_part(bytes(self._buffer[: self._part_size]))
            del self._buffer[: self._part_size]

    def _upload_part(self, chunk: bytes) -> None:
        self._ctx.check()
        if self._upload_id is None:
            with _translate_errors("create multipart upload", self._ctx):
                response = self._owner.client_for(self._ctx).create_multipart_upload(
                    Bucket=self._bucket, Key=self.key, **self._params
                )
            upload_id = response.get("UploadId")
            if not upload_id:
                raise BackendFailureError("S3 response missing UploadId")
            self._upload_id = str(upload_id)

        part_number = len(self._parts) + 1
        with _translate_errors("upload part", self._ctx):
            response = self._owner.client_for(self._ctx).upload_part(
                Bucket=self._bucket,
                Key=self.key,
                UploadId=self._upload_id,
                PartNumber=part_number,
                Body=chunk,
            )
        self._parts.append({"ETag": response.get("ETag"), "PartNumber": part_number})

    def _commit(self) -> None:
        if self._upload_id is None:
            with _translate_errors("put object", self._ctx):
                self._owner.client_for(self._ctx).put_object(
                    Bucket=self._bucket,
                    Key=self.key,
                    Body=bytes(self._buffer),
                    **self._params,
                )
            self._buffer.clear()
            return

        if self._buffer:
            self._upload_part(bytes(self._buffer))
            self._buffer.clear()
        self._ctx.check()
        with _translate_errors("complete multipart upload", self._ctx):
            self._owner.client_for(self._ctx).complete_multipart_upload(
                Bucket=self._bucket,
                Key=self.key,
                UploadId=self._upload_id,
                MultipartUpload={"Parts": self._parts},
            )

    def _abort(self) -> None:
        self._buffer.clear()
        if self._upload_id is None:
            return
        with _translate_errors("abort multipart upload"):
            self._owner.client_for(None).abort_multipart_upload(
                Bucket=self._bucket,
                Key=self.key,
                UploadId=self._upload_id,
            )


class S3BlobReader(BlobReader):
    """Reads from a ``get_object`` streaming body."""

    def __init__(self, ctx: Context, *, key: str, body: Any) -> None:
        super().__init__(ctx, provider=S3StorageClient.provider, key=key)
        self._body = body

    def _read_chunk(self, size: int) -> bytes:
        with _translate_errors("read object", self._ctx):
            return self._body.read(size)

    def _release(self) -> None:
        self._body.close()


class S3StorageClient:
    """Amazon S3 backend bound to one bucket.

    SDK-level retries are disabled: apart from bucket creation every
    operation is a single attempt and retry policy belongs to the caller.

    Calls made under a context deadline shorter than the configured socket
    timeouts go through a client whose timeouts are cut to the remaining
    time, rounded up to whole seconds. Those clients are kept in a small
    LRU cache keyed by that limit.
    """

    provider = "aws"

    def __init__(self, *, settings: "StorageSettings", client: Any = None) -> None:
        self._settings = settings
        self.bucket = settings.BUCKET_NAME
        # An injected client is used for every call, deadlines or not.
        self._injected = client is not None
        self._client = client if client is not None else self._build_client(settings)
        self._bounded: OrderedDict[int, Any] = OrderedDict()
        self._bounded_lock = threading.Lock()

    @staticmethod
    def _build_client(settings: "StorageSettings", timeout: float | None = None) -> Any:
        """Create a boto3 S3 client from settings.

        ``timeout`` caps both the connect and the read timeout.
        """
        connect_timeout = settings.CONNECT_TIMEOUT_SECONDS
        read_timeout = settings.READ_TIMEOUT_SECONDS
        if timeout is not None:
            connect_timeout = min(connect_timeout, timeout)
            read_timeout = min(read_timeout, timeout)
        addressing_style = "path" if settings.IS_TESTING else "auto"
        config = Config(
            s3={"addressing_style": addressing_style},
            signature_version="s3v4",
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
            retries={"total_max_attempts": 1, "mode": "standard"},
        )
        return boto3.client(
            "s3",
            endpoint_url=settings.AWS_S3_ENDPOINT or None,
            region_name=settings.AWS_REGION,
            aws_access_key_id=settings.AWS_ACCESS_KEY_ID,
            aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
            config=config,
        )

    def client_for(self, ctx: Context | None) -> Any:
        """SDK client whose socket timeouts fit within ``ctx``'s deadline."""
        remaining = ctx.remaining() if ctx is not None else None
        if self._injected or remaining is None:
            return self._client
        limit = max(1, math.ceil(remaining))
        settings = self._settings
        if limit >= max(settings.CONNECT_TIMEOUT_SECONDS, settings.READ_TIMEOUT_SECONDS):
            return self._client

        with self._bounded_lock:
            client = self._bounded.get(limit)
            if client is None:
                client = self._build_client(settings, timeout=limit)
                self._bounded[limit] = client
                while len(self._bounded) > _BOUNDED_CLIENTS:
                    _, evicted = self._bounded.popitem(last=False)
                    evicted.close()
            else:
                self._bounded.move_to_end(limit)
        return client

    def create_bucket(self, ctx: Context) -> None:
        params: dict[str, Any] = {"Bucket": self.bucket}
        region = self._settings.AWS_REGION
        if region and region != _DEFAULT_REGION:
            params["CreateBucketConfiguration"] = {"LocationConstraint": region}
        ctx.check()
        with _translate_errors("create bucket", ctx):
            self.client_for(ctx).create_bucket(**params)

    def write(
        self,
        ctx: Context,
        key: str,
        body: bytes,
        options: WriteOptions | None = None,
    ) -> None:
        require_key(key)
        ctx.check()
        with _translate_errors("put object", ctx):
            self.client_for(ctx).put_object(
                Bucket=self.bucket, Key=key, Body=bytes(body), **_write_params(options)
            )

    def get(self, ctx: Context, key: str) -> bytes:
        with self.new_range_reader(ctx, key) as reader:
            return reader.read()

    def new_writer(
        self,
        ctx: Context,
        key: str,
        options: WriteOptions | None = None,
    ) -> S3BlobWriter:
        require_key(key)
        ctx.check()
        return S3BlobWriter(
            ctx,
            owner=self,
            bucket=self.bucket,
            key=key,
            part_size=self._settings.S3_PART_SIZE_BYTES,
            params=_write_params(options),
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
        params: dict[str, Any] = {"Bucket": self.bucket, "Key": key}
        if offset > 0 or length > 0:
            end = str(offset + length - 1) if length > 0 else ""
            params["Range"] = f"bytes={offset}-{end}"

        ctx.check()
        response = None
        with _translate_errors("get object", ctx):
            try:
                response = self.client_for(ctx).get_object(**params)
            except ClientError as exc:
                if _error_code(exc) != "InvalidRange":
                    raise
        if response is None:
            # S3 answers 416 for any range starting at or past the end; only
            # the latter is an error.
            size = self.attributes(ctx, key).size
            if offset > size:
                raise InvalidArgumentError(
                    f"Range offset {offset} is beyond the end of {key!r} ({size} bytes)"
                )
            return EmptyBlobReader(ctx, provider=self.provider, key=key, length=0)
        return S3BlobReader(ctx, key=key, body=response["Body"])

    def list(self, ctx: Context, prefix: str) -> Paginator:
        page_size = self._settings.LIST_PAGE_SIZE

        def fetch_page(ctx: Context, token: str | None) -> Page:
            params: dict[str, Any] = {
                "Bucket": self.bucket,
                "Prefix": prefix,
                "MaxKeys": page_size,
            }
            if token:
                params["ContinuationToken"] = token
            with _translate_errors("list objects", ctx):
                response = self.client_for(ctx).list_objects_v2(**params)
            items = [
                ListItem(
                    key=entry["Key"],
                    size=entry.get("Size"),
                    mod_time=entry.get("LastModified"),
                )
                for entry in response.get("Contents", [])
            ]
            next_token = None
            if response.get("IsTruncated"):
                next_token = response.get("NextContinuationToken")
            return Page(items=items, next_token=next_token)

        return Paginator(fetch_page, ctx)

    def attributes(self, ctx: Context, key: str) -> Attributes:
        require_key(key)
        ctx.check()
        with _translate_errors("get object metadata", ctx):
            response = self.client_for(ctx).head_object(Bucket=self.bucket, Key=key)

        size = response.get("ContentLength")
        etag = response.get("ETag")
        return Attributes(
            size=int(size) if size is not None else 0,
            mod_time=response["LastModified"],
            content_type=response.get("ContentType"),
            etag=etag.strip('"') if etag else None,
            metadata=dict(response.get("Metadata") or {}),
        )

    def delete(self, ctx: Context, key: str) -> None:
        # DeleteObject succeeds on missing keys; look first so absence is reported.
        self.attributes(ctx, key)
        ctx.check()
        with _translate_errors("delete object", ctx):
            self.client_for(ctx).delete_object(Bucket=self.bucket, Key=key)

    def signed_url(self, ctx: Context, key: str, options: SignedURLOptions) -> str:
        require_key(key)
        method = options.validate()
        if options.enforce_absent_content_type:
            raise InvalidArgumentError(
                "S3 presigned URLs cannot forbid a Content-Type header"
            )
        params: dict[str, Any] = {"Bucket": self.bucket, "Key": key}
        if options.content_type:
            params["ContentType"] = options.content_type

        ctx.check()
        with _translate_errors("generate presigned URL", ctx):
            url = self._client.generate_presigned_url(
                _PRESIGN_OPERATIONS[method],
                Params=params,
                ExpiresIn=int(options.expiry.total_seconds()),
                HttpMethod=method,
            )

        if not url:
            raise BackendFailureError("Generated presigned URL is empty")

        return str(url)

    def close(self) -> None:
        with self._bounded_lock:
            bounded = list(self._bounded.values())
            self._bounded.clear()
        for client in bounded:
            client.close()
        self._client.close()
