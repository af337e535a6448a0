"""Cancellation and deadline carrier passed to every storage operation."""

from __future__ import annotations

import threading
import time

from commonblob.infra.storage.errors import CanceledError


class Context:
    """Cancellable context with an optional deadline.

    A child context created with :meth:`with_timeout` or :meth:`with_cancel`
    is done as soon as its parent is done, or its own deadline passes, or it
    is cancelled itself. Cancelling a child never affects the parent.
    """

    def __init__(
        self,
        *,
        parent: "Context | None" = None,
        deadline: float | None = None,
    ) -> None:
        self._parent = parent
        if parent is not None and parent.deadline is not None:
            deadline = (
                parent.deadline if deadline is None else min(deadline, parent.deadline)
            )
        self._deadline = deadline
        self._cancelled = threading.Event()

    @classmethod
    def background(cls) -> "Context":
        """Return a context that is never cancelled and has no deadline."""
        return cls()

    def with_timeout(self, seconds: float) -> "Context":
        return Context(parent=self, deadline=time.monotonic() + float(seconds))

    def with_cancel(self) -> "Context":
        return Context(parent=self)

    @property
    def deadline(self) -> float | None:
        """Monotonic deadline (``time.monotonic()`` clock) or ``None``."""
        return self._deadline

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        if self._cancelled.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    def done(self) -> bool:
        if self.cancelled:
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    def remaining(self) -> float | None:
        """Seconds left before the deadline, ``None`` when there is none."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def error(self) -> CanceledError | None:
        """The error describing why the context is done, ``None`` while it is live."""
        if self.cancelled:
            return CanceledError("context canceled")
        if self._deadline is not None and time.monotonic() >= self._deadline:
            return CanceledError("context deadline exceeded")
        return None

    def check(self) -> None:
        """Raise :class:`CanceledError` if the context is done."""
        error = self.error()
        if error is not None:
            raise error

    def sleep(self, seconds: float) -> None:
        """Wait ``seconds`` unless the context finishes first.

        Raises:
            CanceledError: If the context is cancelled or its deadline passes
                during the wait.
        """
        self.check()
        end = time.monotonic() + max(0.0, seconds)
        while True:
            now = time.monotonic()
            if now >= end:
                return
            wait_for = end - now
            remaining = self.remaining()
            if remaining is not None:
                wait_for = min(wait_for, remaining)
            # Poll in short slices so a parent cancellation is noticed too.
            self._cancelled.wait(min(wait_for, 0.05))
            self.check()


def ensure_context(ctx: Context | None) -> Context:
    return ctx if ctx is not None else Context.background()
