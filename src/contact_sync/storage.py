"""
Key/value storage for tabs.

Two roles are played by the same backends:

- Tab-scoped storage (one per tab) holds the tab's origin id and, optionally,
  its version-token cache.
- Shared storage is a StorageArea that every tab of one origin writes through
  its own StorageView. A write through one view notifies every *other* view of
  the area, never the writer. For FileStorage areas shared between processes,
  StorageArea.poll() picks up writes made elsewhere and notifies all views.

Usage:
    area = StorageArea(FileStorage(Path(".contact-sync")))
    tab_a, tab_b = area.view(), area.view()

    tab_b.add_listener(lambda change: print(change.key, change.new_value))
    tab_a.set("greeting", "hello")  # tab_b's listener fires, tab_a's does not
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote, unquote

logger = logging.getLogger(__name__)

_FILE_SUFFIX = ".json"


class StorageQuotaExceeded(Exception):
    """Raised when a write would exceed a storage backend's quota."""

    pass


class StorageBackend(ABC):
    """Abstract string key/value store."""

    @abstractmethod
    def get(self, key: str) -> str | None:
        """Return the stored value or None."""

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store a value, overwriting any previous one."""

    @abstractmethod
    def remove(self, key: str) -> None:
        """Remove a key; removing a missing key is a no-op."""

    @abstractmethod
    def keys(self) -> list[str]:
        """List all stored keys."""

    def items(self) -> dict[str, str]:
        """Snapshot of every key and value."""
        result: dict[str, str] = {}
        for key in self.keys():
            value = self.get(key)
            if value is not None:
                result[key] = value
        return result


class MemoryStorage(StorageBackend):
    """
    In-memory storage, optionally with a byte quota.

    Args:
        max_bytes: Total size of keys and values allowed (None = unlimited)
    """

    def __init__(self, max_bytes: int | None = None):
        self.max_bytes = max_bytes
        self._data: dict[str, str] = {}
        self._lock = threading.Lock()

    def _size_with(self, key: str, value: str) -> int:
        size = sum(len(k) + len(v) for k, v in self._data.items() if k != key)
        return size + len(key) + len(value)

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            if self.max_bytes is not None and self._size_with(key, value) > self.max_bytes:
                raise StorageQuotaExceeded(
                    f"Writing '{key}' would exceed quota of {self.max_bytes} bytes"
                )
            self._data[key] = value

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._data)


class FileStorage(StorageBackend):
    """
    Directory-backed storage that survives process restarts.

    Each key is one file; writes go to a temporary file that is atomically
    moved into place so readers in other processes never see partial values.
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.directory / (quote(key, safe="") + _FILE_SUFFIX)

    def get(self, key: str) -> str | None:
        try:
            return self._path(key).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def set(self, key: str, value: str) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=".tmp-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(value)
            os.replace(tmp_name, self._path(key))
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def remove(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def keys(self) -> list[str]:
        return [
            unquote(path.name[: -len(_FILE_SUFFIX)])
            for path in self.directory.glob(f"*{_FILE_SUFFIX}")
            if not path.name.startswith(".tmp-")
        ]


@dataclass(frozen=True)
class StorageChange:
    """Notification that a shared key changed (None new_value = removed)."""

    key: str
    old_value: str | None
    new_value: str | None


StorageListener = Callable[[StorageChange], None]


class StorageArea:
    """
    Shared storage for every tab of one origin.

    Tabs never write to the backend directly; they take a view() and write
    through it so the area can notify the other views.
    """

    def __init__(self, backend: StorageBackend):
        self.backend = backend
        self._views: list[StorageView] = []
        self._lock = threading.RLock()
        self._snapshot: dict[str, str] = {}
        self._poll_thread: threading.Thread | None = None
        self._stop_polling = threading.Event()
        try:
            self._snapshot = backend.items()
        except OSError as e:
            logger.warning(f"Could not snapshot shared storage: {e}")

    def view(self) -> StorageView:
        """Open a view for one tab."""
        view = StorageView(self)
        with self._lock:
            self._views.append(view)
        return view

    def _detach(self, view: StorageView) -> None:
        with self._lock:
            if view in self._views:
                self._views.remove(view)

    def _write(self, writer: StorageView, key: str, value: str | None) -> None:
        with self._lock:
            old_value = self.backend.get(key)
            if value is None:
                self.backend.remove(key)
                self._snapshot.pop(key, None)
            else:
                self.backend.set(key, value)
                self._snapshot[key] = value
            others = [v for v in self._views if v is not writer]
        change = StorageChange(key=key, old_value=old_value, new_value=value)
        for view in others:
            view._notify(change)

    def poll(self) -> int:
        """
        Detect writes made outside this process and notify every view.

        Returns:
            Number of changed keys found
        """
        current = self.backend.items()
        with self._lock:
            previous = self._snapshot
            self._snapshot = current
            views = list(self._views)

        changes = [
            StorageChange(key=key, old_value=previous.get(key), new_value=current.get(key))
            for key in set(previous) | set(current)
            if previous.get(key) != current.get(key)
        ]
        for change in changes:
            for view in views:
                view._notify(change)
        return len(changes)

    def start_polling(self, interval: float = 0.5) -> None:
        """Poll the backend on a daemon thread until stop_polling() is called."""
        if self._poll_thread and self._poll_thread.is_alive():
            return
        self._stop_polling.clear()

        def _run() -> None:
            while not self._stop_polling.wait(interval):
                try:
                    self.poll()
                except Exception as e:  # nosec - a bad poll must not kill the poller
                    logger.warning(f"Shared storage poll failed: {e}")

        self._poll_thread = threading.Thread(
            target=_run, name="contact-sync-storage-poller", daemon=True
        )
        self._poll_thread.start()

    def stop_polling(self, timeout: float = 5.0) -> None:
        """Stop the polling thread started by start_polling()."""
        self._stop_polling.set()
        if self._poll_thread:
            self._poll_thread.join(timeout=timeout)
            self._poll_thread = None


class StorageView(StorageBackend):
    """One tab's handle on a StorageArea."""

    def __init__(self, area: StorageArea):
        self._area = area
        self._listeners: list[StorageListener] = []
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        return self._area.backend.get(key)

    def set(self, key: str, value: str) -> None:
        self._area._write(self, key, value)

    def remove(self, key: str) -> None:
        self._area._write(self, key, None)

    def keys(self) -> list[str]:
        return self._area.backend.keys()

    def add_listener(self, listener: StorageListener) -> Callable[[], None]:
        """
        Listen for changes written by other views.

        Returns:
            Function removing the listener (safe to call more than once)
        """
        with self._lock:
            self._listeners.append(listener)

        def _remove() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _remove

    def close(self) -> None:
        """Detach from the area and drop all listeners."""
        with self._lock:
            self._listeners.clear()
        self._area._detach(self)

    def _notify(self, change: StorageChange) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(change)
            except Exception as e:  # nosec - one listener must not starve the others
                logger.warning(f"Storage listener failed for key '{change.key}': {e}")
