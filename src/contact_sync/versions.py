"""
Version-token (ETag) cache.

Maps entity id to the most recently observed token: last write wins, tokens are
never merged. Only the entity client mutates it. With tab-scoped storage
attached, the cache survives a reload of the same tab.
"""

from __future__ import annotations

import json
import logging
import threading

from .storage import StorageBackend

logger = logging.getLogger(__name__)

STORAGE_KEY = "etag:v1"


class VersionTokenStore:
    """
    Per-entity version tokens for one entity scope.

    Args:
        scope: Entity kind the tokens belong to (e.g. "contact")
        storage: Optional tab-scoped storage to persist tokens to
    """

    def __init__(self, scope: str = "contact", storage: StorageBackend | None = None):
        self.scope = scope
        self.storage = storage
        self._tokens: dict[str, str] = {}
        self._lock = threading.Lock()
        self._load()

    def _load(self) -> None:
        if self.storage is None:
            return
        try:
            raw = self.storage.get(STORAGE_KEY)
            state = json.loads(raw) if raw else {}
            self._tokens = dict(state.get(self.scope, {}))
        except Exception as e:  # nosec - a corrupt cache just starts empty
            logger.warning(f"Ignoring unreadable version-token cache: {e}")
            self._tokens = {}

    def _persist(self) -> None:
        if self.storage is None:
            return
        try:
            raw = self.storage.get(STORAGE_KEY)
            state = json.loads(raw) if raw else {}
            state[self.scope] = dict(self._tokens)
            self.storage.set(STORAGE_KEY, json.dumps(state, separators=(",", ":")))
        except Exception as e:  # nosec - the in-memory cache stays authoritative
            logger.warning(f"Could not persist version tokens: {e}")

    def get(self, entity_id: str) -> str | None:
        with self._lock:
            return self._tokens.get(entity_id)

    def set(self, entity_id: str, token: str) -> None:
        with self._lock:
            self._tokens[entity_id] = token
            self._persist()

    def discard(self, entity_id: str) -> None:
        with self._lock:
            if self._tokens.pop(entity_id, None) is not None:
                self._persist()

    def clear(self) -> None:
        with self._lock:
            self._tokens.clear()
            self._persist()

    def __contains__(self, entity_id: object) -> bool:
        with self._lock:
            return entity_id in self._tokens

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)
