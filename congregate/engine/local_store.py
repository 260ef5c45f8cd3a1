"""
congregate.engine.local_store — Client-Local Key-Value Store
=============================================================

A narrow ``get`` / ``set`` / ``clear`` interface for state that must survive
between sessions without a server round trip (rate-limit windows, local
activity counters).  Components receive a store instance instead of reaching
for ambient global state, so tests can hand them a :class:`MemoryStore`.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class LocalStore(Protocol):
    """Minimal persistence contract used by local-only components."""

    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def clear(self, key: str | None = None) -> None: ...


class MemoryStore:
    """Process-local store.  Values are deep-copied through JSON on write."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: dict[str, str] = {}

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            raw = self._data.get(key)
        if raw is None:
            return default
        return json.loads(raw)

    def set(self, key: str, value: Any) -> None:
        encoded = json.dumps(value)
        with self._lock:
            self._data[key] = encoded

    def clear(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._data.clear()
            else:
                self._data.pop(key, None)


class JsonFileStore:
    """Store persisted as a single JSON document on disk.

    A corrupt or unreadable file is treated as empty (and logged), matching
    how a browser's local storage behaves after the user clears it.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            with open(self._path, encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, json.JSONDecodeError):
            logger.exception("Failed to read local store %s — starting empty", self._path)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as fh:
            json.dump(data, fh)
        tmp.replace(self._path)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._read().get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)

    def clear(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                if self._path.exists():
                    self._path.unlink()
                return
            data = self._read()
            if data.pop(key, None) is not None:
                self._write(data)


def open_store(path: str | Path | None = None) -> LocalStore:
    """A :class:`JsonFileStore` at *path*, or a :class:`MemoryStore` when None."""
    if path is None:
        return MemoryStore()
    return JsonFileStore(path)
