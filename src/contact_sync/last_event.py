"""
Durable last-event store.

Remembers the most recent event so a tab that starts (or reloads) after the
event fired can still replay it. Values live in shared storage and are simply
overwritten on every emit; there is no history and no expiry.

By default one slot is kept per event type, so replaying "contact:changed"
is never starved by a more recent "contact:deleted". Passing per_type=False
keeps a single slot for the globally last event instead.
"""

from __future__ import annotations

import json
import logging

from .events import BusEvent
from .storage import StorageBackend

logger = logging.getLogger(__name__)


class LastEventStore:
    """
    Persisted copy of the last emitted event(s) for one bus channel.

    Args:
        storage: Shared storage the slots are written to
        channel_name: Channel the slots are scoped to
        per_type: Keep one slot per event type (True) or one slot overall
    """

    def __init__(
        self,
        storage: StorageBackend,
        channel_name: str,
        per_type: bool = True,
    ):
        self.storage = storage
        self.channel_name = channel_name
        self.per_type = per_type

    def _key(self, event_type: str) -> str:
        if self.per_type:
            return f"{self.channel_name}:last:{event_type}"
        return f"{self.channel_name}:last"

    def save(self, event: BusEvent) -> None:
        """
        Overwrite the slot for this event.

        Raises whatever the storage backend raises (e.g. StorageQuotaExceeded);
        the bus decides whether that matters.
        """
        self.storage.set(self._key(event.type), event.to_json())

    def load_last_for(self, event_type: str, origin_id: str) -> BusEvent | None:
        """
        Return the stored event for replay, if there is one to replay.

        Args:
            event_type: Type the caller subscribes to
            origin_id: Caller's own tab id; its own events are never replayed

        Returns:
            The stored event, or None if missing, of another type, emitted by
            the caller itself, or unreadable
        """
        raw = self.storage.get(self._key(event_type))
        if not raw:
            return None

        try:
            event = BusEvent.from_json(raw)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.debug(f"Ignoring unreadable last-event slot for '{event_type}': {e}")
            return None

        if event.type != event_type or event.origin_id == origin_id:
            return None
        return event

    def clear(self) -> int:
        """
        Remove every slot owned by this channel.

        Returns:
            Number of slots removed
        """
        prefix = f"{self.channel_name}:last"
        removed = 0
        for key in self.storage.keys():
            if key == prefix or key.startswith(prefix + ":"):
                self.storage.remove(key)
                removed += 1
        return removed
