"""Key/value storage used to persist configuration, roles and rotation state.

The host provides durable storage; this module defines the protocol the
engine relies on plus two implementations: an in-memory store for tests
and embedding, and a JSON-file store used by the CLI.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol

from .errors import InvalidConfiguration

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[str], None]


class Storage(Protocol):
    """Per-path atomic key/value storage."""

    def get(self, key: str) -> dict[str, Any] | None: ...

    def put(self, key: str, value: dict[str, Any]) -> None: ...

    def delete(self, key: str) -> None: ...

    def list(self, prefix: str) -> list[str]: ...


class InMemoryStorage:
    """Thread-safe dict-backed storage.

    ``subscribe`` registers callbacks fired after every write or delete,
    which is how replicated-write notifications are simulated.
    """

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._lock = threading.Lock()
        self._subscribers: list[ChangeCallback] = []

    def subscribe(self, callback: ChangeCallback) -> None:
        self._subscribers.append(callback)

    def get(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            raw = self._data.get(key)
        return None if raw is None else json.loads(raw)

    def put(self, key: str, value: dict[str, Any]) -> None:
        encoded = json.dumps(value, default=str)
        with self._lock:
            self._data[key] = encoded
        self._notify(key)

    def delete(self, key: str) -> None:
        with self._lock:
            existed = self._data.pop(key, None) is not None
        if existed:
            self._notify(key)

    def list(self, prefix: str) -> list[str]:
        with self._lock:
            keys = [k for k in self._data if k.startswith(prefix)]
        return sorted(k[len(prefix) :] for k in keys)

    def _notify(self, key: str) -> None:
        for callback in self._subscribers:
            callback(key)


class FileStorage:
    """One JSON file per key under a root directory.

    Writes go through a temporary file and ``os.replace`` so a reader never
    sees a partially written record.
    """

    def __init__(self, root: Path) -> None:
        self._root = root
        self._root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        if ".." in key.split("/") or key.startswith("/"):
            raise InvalidConfiguration(f"invalid storage key: {key}")
        return self._root / f"{key}.json"

    def get(self, key: str) -> dict[str, Any] | None:
        path = self._path(key)
        if not path.exists():
            return None
        with path.open(encoding="utf-8") as f:
            return json.load(f)

    def put(self, key: str, value: dict[str, Any]) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        # Records may hold the root secret; private from the first byte
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        os.fchmod(fd, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(value, f, default=str, indent=2)
        os.replace(tmp, path)
        logger.debug("Stored record", extra={"key": key})

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def list(self, prefix: str) -> list[str]:
        base = self._root / prefix
        if not base.is_dir():
            return []
        return sorted(p.stem for p in base.glob("*.json"))
