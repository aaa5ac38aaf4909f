"""Deadline and cancellation carried through control-plane calls."""

from __future__ import annotations

import threading
import time

from .errors import Cancelled

DEFAULT_REQUEST_TIMEOUT_SECONDS = 60.0


class RequestContext:
    """Bounds one logical operation.

    Every Azure call checks the context first and is given the remaining
    time as its transport timeout, so no operation blocks indefinitely.
    """

    def __init__(self, timeout: float | None = DEFAULT_REQUEST_TIMEOUT_SECONDS) -> None:
        self._deadline = None if timeout is None else time.monotonic() + timeout
        self._cancelled = threading.Event()

    @classmethod
    def background(cls) -> RequestContext:
        """A context without a deadline, for scheduled work."""
        return cls(timeout=None)

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def remaining(self) -> float | None:
        """Seconds left before the deadline, or None when unbounded."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def expired(self) -> bool:
        remaining = self.remaining()
        return self.cancelled or (remaining is not None and remaining <= 0)

    def check(self, operation: str = "operation") -> None:
        """Raise Cancelled if the context is done."""
        if self.cancelled:
            raise Cancelled(f"{operation} cancelled")
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise Cancelled(f"{operation} exceeded its deadline")

    def sleep(self, seconds: float) -> None:
        """Sleep unless cancelled first; raises Cancelled when interrupted."""
        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)
        if self._cancelled.wait(seconds):
            raise Cancelled("operation cancelled")
