"""Provider-agnostic cloud storage facade.

This module provides the single public surface of the package. A
:class:`CloudStorage` selects one backend adapter at construction and forwards
every operation to it; the adapter translates errors, the facade adds
logging, metrics and the bucket creation retry loop.
"""

from __future__ import annotations

import logging
import random
from types import TracebackType

from commonblob.common.config import StorageSettings, get_settings
from commonblob.common.context import Context, ensure_context
from commonblob.infra.observability.instrument import mask_url, observe
from commonblob.infra.storage.client import (
    Attributes,
    SignedURLOptions,
    StorageClient,
    WriteOptions,
)
from commonblob.infra.storage.errors import (
    AlreadyExistsError,
    InvalidArgumentError,
    NotFoundError,
    TransientError,
)
from commonblob.infra.storage.paginator import Paginator
from commonblob.infra.storage.streams import BlobReader, BlobWriter

logger = logging.getLogger("commonblob.storage")


def build_storage_client(settings: StorageSettings) -> StorageClient:
    """Build the backend adapter matching ``settings.BUCKET_PROVIDER``."""
    if settings.BUCKET_PROVIDER == "aws":
        from commonblob.infra.storage.s3_client import S3StorageClient

        return S3StorageClient(settings=settings)

    from commonblob.infra.storage.gcs_client import GCSStorageClient

    return GCSStorageClient(settings=settings)


class CloudStorage:
    """Blob storage bound to one provider, one bucket and one credential set.

    Every operation accepts a keyword-only ``ctx`` for cancellation and
    deadlines; without one the call runs under a background context.
    Only :meth:`create_bucket` retries; everything else is a single attempt.
    """

    def __init__(self, settings: StorageSettings, *, client: StorageClient | None = None) -> None:
        self._settings = settings
        self._client = client if client is not None else build_storage_client(settings)
        self.provider = self._client.provider
        self.bucket = self._client.bucket

    @classmethod
    def from_settings(cls, settings: StorageSettings) -> "CloudStorage":
        return cls(settings)

    @classmethod
    def from_environment(cls) -> "CloudStorage":
        """Build from the process environment (and a local ``.env`` file).

        Settings are read once per process and cached.
        """
        return cls(get_settings())

    def create_bucket(
        self,
        name_prefix: str,
        num_retries: int = 0,
        *,
        ctx: Context | None = None,
    ) -> None:
        """Ensure the bucket exists.

        An existing bucket counts as success. Transient failures are retried
        up to ``num_retries`` times after the first attempt, with capped
        exponential backoff and full jitter.

        Raises:
            InvalidArgumentError: If ``name_prefix`` is empty.
            TransientError: If every attempt failed transiently.
            StorageError: For any other failure.
        """
        if not name_prefix:
            raise InvalidArgumentError("Bucket name prefix must not be empty")
        ctx = ensure_context(ctx)
        attempts = max(0, int(num_retries)) + 1
        base = self._settings.CREATE_BUCKET_BACKOFF_SECONDS
        cap = self._settings.CREATE_BUCKET_MAX_BACKOFF_SECONDS

        for attempt in range(1, attempts + 1):
            try:
                with observe(self.provider, "create_bucket", prefix=name_prefix):
                    self._client.create_bucket(ctx)
            except AlreadyExistsError:
                logger.info(
                    "bucket_exists provider=%s bucket=%s prefix=%s",
                    self.provider,
                    self.bucket,
                    name_prefix,
                )
                return
            except TransientError:
                if attempt >= attempts:
                    raise
                delay = random.uniform(0, min(cap, base * (2 ** (attempt - 1))))
                logger.warning(
                    "bucket_create_retry provider=%s bucket=%s attempt=%s delay_s=%.3f",
                    self.provider,
                    self.bucket,
                    attempt,
                    delay,
                )
                ctx.sleep(delay)
            else:
                logger.info(
                    "bucket_created provider=%s bucket=%s prefix=%s",
                    self.provider,
                    self.bucket,
                    name_prefix,
                )
                return

    def write(
        self,
        key: str,
        body: bytes,
        options: WriteOptions | None = None,
        *,
        ctx: Context | None = None,
    ) -> None:
        with observe(self.provider, "write", key=key, size=len(body)):
            self._client.write(ensure_context(ctx), key, body, options)

    def get(self, key: str, *, ctx: Context | None = None) -> bytes:
        with observe(self.provider, "get", key=key):
            return self._client.get(ensure_context(ctx), key)

    def get_writer(
        self,
        key: str,
        options: WriteOptions | None = None,
        *,
        ctx: Context | None = None,
    ) -> BlobWriter:
        """Open a writer; nothing is stored until it is closed."""
        with observe(self.provider, "get_writer", key=key):
            return self._client.new_writer(ensure_context(ctx), key, options)

    def get_reader(self, key: str, *, ctx: Context | None = None) -> BlobReader:
        with observe(self.provider, "get_reader", key=key):
            return self._client.new_range_reader(ensure_context(ctx), key, 0, -1)

    def get_range_reader(
        self,
        key: str,
        offset: int,
        length: int,
        *,
        ctx: Context | None = None,
    ) -> BlobReader:
        """Open a reader over ``length`` bytes from ``offset``.

        A range running past the end is cut short; ``length <= 0`` reads to
        the end of the object.
        """
        with observe(
            self.provider, "get_range_reader", key=key, offset=offset, length=length
        ):
            return self._client.new_range_reader(
                ensure_context(ctx), key, offset, length
            )

    def list(self, prefix: str, *, ctx: Context | None = None) -> Paginator:
        with observe(self.provider, "list", prefix=prefix):
            return self._client.list(ensure_context(ctx), prefix)

    def attributes(self, key: str, *, ctx: Context | None = None) -> Attributes:
        with observe(self.provider, "attributes", key=key):
            return self._client.attributes(ensure_context(ctx), key)

    def exists(self, key: str, *, ctx: Context | None = None) -> bool:
        try:
            self.attributes(key, ctx=ctx)
        except NotFoundError:
            return False
        return True

    def delete(self, key: str, *, ctx: Context | None = None) -> None:
        with observe(self.provider, "delete", key=key):
            self._client.delete(ensure_context(ctx), key)

    def get_signed_url(
        self,
        key: str,
        options: SignedURLOptions | None = None,
        *,
        ctx: Context | None = None,
    ) -> str:
        options = options or SignedURLOptions()
        with observe(
            self.provider, "get_signed_url", key=key, method=options.method
        ):
            url = self._client.signed_url(ensure_context(ctx), key, options)
        logger.debug("signed_url key=%s url=%s", key, mask_url(url))
        return url

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "CloudStorage":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()


def new_cloud_storage(
    ctx: Context | None,
    is_testing: bool,
    bucket_provider: str,
    bucket_name: str,
    aws_s3_endpoint: str = "",
    aws_s3_region: str = "",
    aws_s3_access_key_id: str = "",
    aws_s3_secret_access_key: str = "",
    gcp_credentials_json: str = "",
    gcp_storage_emulator_host: str = "",
) -> CloudStorage:
    """Build a :class:`CloudStorage` from explicit construction parameters.

    Raises:
        ConfigurationError: If the provider is unknown or its required
            credentials are missing or malformed.
        CanceledError: If ``ctx`` is already done.
    """
    ensure_context(ctx).check()
    settings = StorageSettings(
        BUCKET_PROVIDER=bucket_provider,
        BUCKET_NAME=bucket_name,
        IS_TESTING=is_testing,
        AWS_S3_ENDPOINT=aws_s3_endpoint,
        AWS_REGION=aws_s3_region,
        AWS_ACCESS_KEY_ID=aws_s3_access_key_id,
        AWS_SECRET_ACCESS_KEY=aws_s3_secret_access_key,
        GCP_CREDENTIALS_JSON=gcp_credentials_json,
        GCP_STORAGE_EMULATOR_HOST=gcp_storage_emulator_host,
    )
    return CloudStorage(settings)
