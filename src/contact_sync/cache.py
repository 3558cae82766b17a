"""
Cached-view collaborator.

The sync handlers never cache anything themselves; they drive a query cache
through three calls: invalidate (mark stale, refetch on next access), remove
(drop entirely) and patch (apply an updater to the cached value).

InMemoryQueryCache is a small reference cache for tests and for hosts that
have no query library of their own.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Hashable
from dataclasses import dataclass
from typing import Any, Protocol

logger = logging.getLogger(__name__)

ViewKey = tuple[Hashable, ...]
Updater = Callable[[Any], Any]


class QueryCache(Protocol):
    """What the sync handlers need from a query cache."""

    def invalidate(self, key: ViewKey) -> None: ...

    def remove(self, key: ViewKey) -> None: ...

    def patch(self, key: ViewKey, updater: Updater) -> None: ...


@dataclass
class CachedView:
    """A cached value and whether it must be refetched before use."""

    data: Any
    stale: bool = False


class InMemoryQueryCache:
    """
    Thread-safe dictionary of cached views keyed by exact view key.

    Keys are matched exactly: invalidating ("/api/contacts", "C1") never
    touches ("/api/contacts", "C2").
    """

    def __init__(self) -> None:
        self._views: dict[ViewKey, CachedView] = {}
        self._lock = threading.Lock()

    def set(self, key: ViewKey, data: Any) -> None:
        with self._lock:
            self._views[key] = CachedView(data)

    def get(self, key: ViewKey) -> CachedView | None:
        with self._lock:
            return self._views.get(key)

    def invalidate(self, key: ViewKey) -> None:
        with self._lock:
            view = self._views.get(key)
            if view is not None:
                view.stale = True

    def remove(self, key: ViewKey) -> None:
        with self._lock:
            self._views.pop(key, None)

    def patch(self, key: ViewKey, updater: Updater) -> None:
        """Replace the cached value with updater(value); missing keys are left alone."""
        with self._lock:
            view = self._views.get(key)
            if view is None:
                return
            view.data = updater(view.data)

    def is_stale(self, key: ViewKey) -> bool:
        with self._lock:
            view = self._views.get(key)
            return view is not None and view.stale

    def keys(self) -> list[ViewKey]:
        with self._lock:
            return list(self._views)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._views

    def __len__(self) -> int:
        with self._lock:
            return len(self._views)
