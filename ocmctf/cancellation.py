"""Cancellation contexts and a reader that honours them.

A ``Context`` can be cancelled explicitly or expire at a deadline; derived
contexts end when their parent does. ``ContextReader`` checks its context
around every read so that long copies stop once the context has ended.
"""

from __future__ import annotations

import threading
import time
from typing import Any, BinaryIO, Optional


class Canceled(Exception):
    """The context was cancelled."""

    def __init__(self, message: str = "context canceled") -> None:
        super().__init__(message)


class DeadlineExceeded(TimeoutError):
    """The context's deadline passed."""

    def __init__(self, message: str = "context deadline exceeded") -> None:
        super().__init__(message)


class Context:
    """A cancellable scope with an optional deadline on the monotonic clock.

    ``Context()`` is a root that never ends unless cancelled. Contexts made
    with ``with_cancel`` or ``with_timeout`` end when their parent ends.
    """

    def __init__(
        self, parent: Optional["Context"] = None, deadline: Optional[float] = None
    ) -> None:
        self._parent = parent
        parent_deadline = parent.deadline() if parent is not None else None
        if deadline is None:
            self._deadline = parent_deadline
        elif parent_deadline is None:
            self._deadline = deadline
        else:
            self._deadline = min(deadline, parent_deadline)
        self._err: Optional[Exception] = None
        self._lock = threading.Lock()

    def _expired(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    def cancel(self) -> None:
        """End this context and everything derived from it."""
        with self._lock:
            if self._err is None:
                self._err = DeadlineExceeded() if self._expired() else Canceled()

    def err(self) -> Optional[Exception]:
        """Return why the context ended, or ``None`` while it is still live."""
        with self._lock:
            if self._err is None:
                if self._expired():
                    self._err = DeadlineExceeded()
                elif self._parent is not None:
                    self._err = self._parent.err()
            return self._err

    def deadline(self) -> Optional[float]:
        """Return the deadline as a ``time.monotonic()`` value, or ``None``."""
        return self._deadline

    def with_cancel(self) -> "Context":
        """Return a child context that can be cancelled on its own."""
        return Context(self)

    def with_timeout(self, seconds: float) -> "Context":
        """Return a child context that ends ``seconds`` from now."""
        return Context(self, time.monotonic() + seconds)


class ContextReader:
    """A binary reader that fails once its context has ended."""

    def __init__(self, ctx: Context, reader: BinaryIO) -> None:
        self._ctx = ctx
        self._reader = reader

    def _check(self) -> None:
        err = self._ctx.err()
        if err is not None:
            raise err

    def read(self, size: int = -1) -> bytes:
        """Read up to ``size`` bytes, raising the context's error if it has ended."""
        self._check()
        data = self._reader.read(size)
        self._check()
        return data

    def readable(self) -> bool:
        return True

    def close(self) -> None:
        close = getattr(self._reader, "close", None)
        if close is not None:
            close()

    def __enter__(self) -> "ContextReader":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


def new_ctx_reader(ctx: Context, reader: BinaryIO) -> ContextReader:
    """Wrap ``reader`` so that reads fail once ``ctx`` has ended.

    If the context has a deadline and the reader supports ``settimeout``
    (as sockets do), the remaining time is applied as its timeout.
    """
    deadline = ctx.deadline()
    if deadline is not None:
        settimeout = getattr(reader, "settimeout", None)
        if settimeout is not None:
            settimeout(max(0.0, deadline - time.monotonic()))
    return ContextReader(ctx, reader)