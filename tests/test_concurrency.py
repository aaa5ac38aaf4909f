"""Tests for the reader/writer lock and request contexts."""

import threading
import time

import pytest

from azsecrets.context import RequestContext
from azsecrets.errors import Cancelled
from azsecrets.locks import RWLock


class TestRWLock:
    """Tests for RWLock."""

    def test_readers_share(self) -> None:
        lock = RWLock()
        inside = threading.Barrier(3, timeout=5)

        def reader() -> None:
            with lock.read():
                inside.wait()

        threads = [threading.Thread(target=reader) for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(5)

        assert not inside.broken

    def test_writer_waits_for_readers(self) -> None:
        lock = RWLock()
        events: list[str] = []

        def writer() -> None:
            with lock.write():
                events.append("write")

        lock.r_acquire()
        thread = threading.Thread(target=writer)
        thread.start()
        time.sleep(0.05)
        events.append("read done")
        lock.r_release()
        thread.join(5)

        assert events == ["read done", "write"]

    def test_reader_waits_for_writer(self) -> None:
        lock = RWLock()
        events: list[str] = []

        def reader() -> None:
            with lock.read():
                events.append("read")

        lock.w_acquire()
        thread = threading.Thread(target=reader)
        thread.start()
        time.sleep(0.05)
        events.append("write done")
        lock.w_release()
        thread.join(5)

        assert events == ["write done", "read"]


class TestRequestContext:
    """Tests for RequestContext."""

    def test_background_never_expires(self) -> None:
        ctx = RequestContext.background()

        assert ctx.remaining() is None
        assert not ctx.expired()
        ctx.check()

    def test_deadline(self) -> None:
        ctx = RequestContext(timeout=0)

        assert ctx.expired()
        with pytest.raises(Cancelled) as exc_info:
            ctx.check("add password")

        assert "add password exceeded its deadline" in str(exc_info.value)

    def test_cancel(self) -> None:
        ctx = RequestContext()
        ctx.cancel()

        assert ctx.cancelled
        with pytest.raises(Cancelled):
            ctx.check()

    def test_sleep_interrupted_by_cancel(self) -> None:
        ctx = RequestContext()
        threading.Timer(0.05, ctx.cancel).start()

        started = time.monotonic()
        with pytest.raises(Cancelled):
            ctx.sleep(5)

        assert time.monotonic() - started < 5

    def test_sleep_bounded_by_deadline(self) -> None:
        ctx = RequestContext(timeout=0.05)

        started = time.monotonic()
        ctx.sleep(5)

        assert time.monotonic() - started < 5
