"""Reader/writer lock for the cached Azure client."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class RWLock:
    """Many concurrent readers or one writer.

    Writers wait for active readers to drain; new readers wait while a
    writer holds the lock.
    """

    def __init__(self) -> None:
        self._read_ready = threading.Condition(threading.Lock())
        self._readers = 0

    def r_acquire(self) -> None:
        with self._read_ready:
            self._readers += 1

    def r_release(self) -> None:
        with self._read_ready:
            self._readers -= 1
            if self._readers == 0:
                self._read_ready.notify_all()

    def w_acquire(self) -> None:
        self._read_ready.acquire()
        while self._readers > 0:
            self._read_ready.wait()

    def w_release(self) -> None:
        self._read_ready.release()

    @contextmanager
    def read(self) -> Iterator[None]:
        self.r_acquire()
        try:
            yield
        finally:
            self.r_release()

    @contextmanager
    def write(self) -> Iterator[None]:
        self.w_acquire()
        try:
            yield
        finally:
            self.w_release()
