import logging
import re
import time
from contextlib import contextmanager
from typing import Any, Iterator

from commonblob.infra.observability.metrics import LATENCY, OPERATIONS
from commonblob.infra.storage.errors import (
    AlreadyExistsError,
    CanceledError,
    NotFoundError,
    StorageError,
)

logger = logging.getLogger("commonblob.storage")

# Signature-bearing query parameters of SigV4 and GCS V4 URLs.
_SIGNATURE_PATTERN = re.compile(
    r"(?i)(x-amz-signature|x-amz-credential|x-amz-security-token|"
    r"x-goog-signature|x-goog-credential|signature)=[^&]+"
)


def mask_url(url: str) -> str:
    return _SIGNATURE_PATTERN.sub(lambda m: m.group(1) + "=***", url)


def _outcome(exc: BaseException | None) -> str:
    if exc is None:
        return "ok"
    if isinstance(exc, StorageError):
        return type(exc).__name__
    return "error"


@contextmanager
def observe(provider: str, operation: str, **fields: Any) -> Iterator[None]:
    """Record latency, outcome metrics and one log line around an operation.

    Expected outcomes (missing objects, existing buckets, cancellation) log
    at INFO; other failures log at WARNING. The exception always propagates.
    """
    start = time.perf_counter()
    try:
        yield
    except BaseException as exc:
        elapsed = time.perf_counter() - start
        OPERATIONS.labels(provider, operation, _outcome(exc)).inc()
        LATENCY.labels(provider, operation).observe(elapsed)
        level = logging.WARNING
        if isinstance(exc, (NotFoundError, AlreadyExistsError, CanceledError)):
            level = logging.INFO
        logger.log(
            level,
            "storage_error provider=%s operation=%s duration_ms=%.3f error=%s",
            provider,
            operation,
            round(elapsed * 1000, 3),
            type(exc).__name__,
            extra={
                "extra": {
                    "provider": provider,
                    "operation": operation,
                    "duration_ms": round(elapsed * 1000, 3),
                    "exception": repr(exc),
                    **fields,
                }
            },
        )
        raise

    elapsed = time.perf_counter() - start
    OPERATIONS.labels(provider, operation, "ok").inc()
    LATENCY.labels(provider, operation).observe(elapsed)
    logger.debug(
        "storage provider=%s operation=%s duration_ms=%.3f",
        provider,
        operation,
        round(elapsed * 1000, 3),
        extra={
            "extra": {
                "provider": provider,
                "operation": operation,
                "duration_ms": round(elapsed * 1000, 3),
                **fields,
            }
        },
    )
