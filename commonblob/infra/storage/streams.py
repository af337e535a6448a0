"""Scoped stream handles for incremental object reads and writes.

Writers commit on :meth:`BlobWriter.close` and abort when a ``with`` block
exits with an exception. A writer that is never closed never commits: the
handle deliberately does not derive from :class:`io.IOBase`, whose finalizer
would call ``close()`` during garbage collection.
"""

from __future__ import annotations

import io
import logging
from types import TracebackType

from commonblob.common.context import Context
from commonblob.infra.observability.metrics import STREAM_BYTES

logger = logging.getLogger("commonblob.storage")


class BlobWriter:
    """Write-only handle; subclasses implement ``_write``, ``_commit``, ``_abort``."""

    def __init__(self, ctx: Context, *, provider: str, key: str) -> None:
        self._ctx = ctx
        self._provider = provider
        self.key = key
        self._closed = False
        self._failed = False
        self.bytes_written = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def writable(self) -> bool:
        return not self._closed

    def write(self, data: bytes) -> int:
        if self._closed:
            raise ValueError("write to closed blob writer")
        if self._failed:
            raise ValueError("blob writer failed earlier; abort it")
        view = memoryview(data).cast("B")
        if not view.nbytes:
            return 0
        self._ctx.check()
        try:
            self._write(view)
        except BaseException:
            self._failed = True
            raise
        self.bytes_written += view.nbytes
        STREAM_BYTES.labels(self._provider, "write").inc(view.nbytes)
        return view.nbytes

    def close(self) -> None:
        """Commit the object.

        Raises:
            StorageError: If the commit fails. The object is then not
                written, even if every ``write`` call succeeded.
        """
        if self._closed:
            return
        if self._failed:
            self.abort()
            raise ValueError("blob writer failed earlier; nothing was committed")
        try:
            self._ctx.check()
            self._commit()
        except BaseException:
            self._closed = True
            self._safe_abort()
            raise
        self._closed = True

    def abort(self) -> None:
        """Discard everything written so far without committing."""
        if self._closed:
            return
        self._closed = True
        self._safe_abort()

    def _safe_abort(self) -> None:
        try:
            self._abort()
        except Exception:
            # The commit error propagates; the abort error is only logged.
            logger.warning(
                "blob_writer_abort_failed provider=%s key=%s",
                self._provider,
                self.key,
                exc_info=True,
            )

    def __enter__(self) -> "BlobWriter":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if exc_type is None:
            self.close()
        else:
            self.abort()

    def _write(self, data: memoryview) -> None:
        raise NotImplementedError

    def _commit(self) -> None:
        raise NotImplementedError

    def _abort(self) -> None:
        raise NotImplementedError


class BlobReader(io.RawIOBase):
    """Read-only handle limited to a byte window of one object.

    Subclasses implement ``_read_chunk`` (return at most ``size`` bytes,
    ``b""`` at end of stream) and ``_release``. ``length`` of ``None`` means
    read until the backend stream ends.
    """

    def __init__(
        self,
        ctx: Context,
        *,
        provider: str,
        key: str,
        length: int | None = None,
    ) -> None:
        self._released = False
        super().__init__()
        self._ctx = ctx
        self._provider = provider
        self.key = key
        self._remaining = length

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        if self.closed:
            raise ValueError("read from closed blob reader")
        view = memoryview(buffer).cast("B")
        size = view.nbytes
        if self._remaining is not None:
            size = min(size, self._remaining)
        if size <= 0:
            return 0
        self._ctx.check()
        chunk = self._read_chunk(size)
        n = len(chunk)
        view[:n] = chunk
        if self._remaining is not None:
            self._remaining -= n
        if n:
            STREAM_BYTES.labels(self._provider, "read").inc(n)
        return n

    def close(self) -> None:
        if self._released:
            super().close()
            return
        self._released = True
        try:
            self._release()
        finally:
            super().close()

    def _read_chunk(self, size: int) -> bytes:
        raise NotImplementedError

    def _release(self) -> None:
        raise NotImplementedError


class EmptyBlobReader(BlobReader):
    """Reader over zero bytes, used for ranges that start at the end of an object."""

    def _read_chunk(self, size: int) -> bytes:
        return b""

    def _release(self) -> None:
        return None
