"""
Event data models for the cross-tab bus.

A BusEvent is the unit of cross-tab communication: an immutable record stamped
with the emitting tab's origin id. Domain events (contact changed, deleted,
conflicted) are closed variants parsed out of a BusEvent so consumers can
match on the variant instead of trusting an untyped payload.

Event Naming Convention:
    Events follow {entity}:{action} format:
    - contact:changed
    - contact:deleted
    - contact:conflict
"""

from __future__ import annotations

import json
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

CHANGED = "changed"
DELETED = "deleted"
CONFLICT = "conflict"


def now_ms() -> int:
    """Current wall-clock time in milliseconds since the epoch."""
    return int(time.time() * 1000)


def generate_origin_id() -> str:
    """Generate a tab origin id: timestamp prefix plus random suffix."""
    return f"{now_ms()}-{uuid.uuid4().hex[:12]}"


def event_type_for(entity: str, action: str) -> str:
    """Build an event type such as ``contact:changed``."""
    return f"{entity}:{action}"


def freeze_payload(value: Any) -> Any:
    """Deep copy JSON-like data into read-only mappings and tuples."""
    if isinstance(value, Mapping):
        return MappingProxyType({key: freeze_payload(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze_payload(item) for item in value)
    return value


def thaw_payload(value: Any) -> Any:
    """Plain, independently mutable dicts and lists from frozen data."""
    if isinstance(value, Mapping):
        return {key: thaw_payload(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [thaw_payload(item) for item in value]
    return value


@dataclass(frozen=True, slots=True)
class BusEvent:
    """
    Immutable cross-tab event record.

    Attributes:
        type: Namespaced event name (e.g. "contact:changed")
        payload: JSON-serializable event data, copied into a read-only mapping
        origin_id: Id of the tab that created the event
        timestamp: Creation time in ms since epoch (display/ordering only)
    """

    type: str
    payload: Mapping[str, Any]
    origin_id: str
    timestamp: int = field(default_factory=now_ms)

    def __post_init__(self) -> None:
        object.__setattr__(self, "payload", freeze_payload(self.payload))

    def to_wire(self) -> dict[str, Any]:
        """
        Convert to the wire shape shared by every transport.

        Returns:
            Dictionary with type, timestamp, originId and payload keys
        """
        return {
            "type": self.type,
            "timestamp": self.timestamp,
            "originId": self.origin_id,
            "payload": thaw_payload(self.payload),
        }

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> BusEvent:
        """
        Rebuild an event from its wire shape.

        Raises:
            KeyError: If a required field is missing
            ValueError: If the type is empty or the payload is not a dict
        """
        event_type = data["type"]
        payload = data.get("payload") or {}
        if not isinstance(event_type, str) or not event_type:
            raise ValueError("event type must be a non-empty string")
        if not isinstance(payload, dict):
            raise ValueError("event payload must be a dict")
        return cls(
            type=event_type,
            payload=payload,
            origin_id=str(data["originId"]),
            timestamp=int(data.get("timestamp", 0)),
        )

    def to_json(self) -> str:
        """Serialize to compact JSON."""
        return json.dumps(self.to_wire(), separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> BusEvent:
        """Deserialize from JSON produced by to_json()."""
        return cls.from_wire(json.loads(raw))

    @property
    def entity(self) -> str | None:
        """Entity part of the type, or None if the type is not namespaced."""
        entity, sep, _ = self.type.partition(":")
        return entity if sep else None

    @property
    def action(self) -> str | None:
        """Action part of the type, or None if the type is not namespaced."""
        _, sep, action = self.type.partition(":")
        return action if sep else None


# --- Domain variants ---


@dataclass(frozen=True, slots=True)
class EntityChanged:
    """An entity was written successfully in some tab."""

    entity: str
    id: str
    origin_id: str
    timestamp: int
    summary: dict[str, Any] | None = None


@dataclass(frozen=True, slots=True)
class EntityDeleted:
    """An entity deletion was confirmed by the server in some tab."""

    entity: str
    id: str
    origin_id: str
    timestamp: int
    summary: dict[str, Any] | None = None


@dataclass(frozen=True, slots=True)
class EntityConflict:
    """A conditional write in some tab was rejected as stale (HTTP 412)."""

    entity: str
    id: str
    origin_id: str
    timestamp: int
    current_token: str | None = None


DomainEvent = EntityChanged | EntityDeleted | EntityConflict


def parse_domain_event(event: BusEvent) -> DomainEvent:
    """
    Narrow a BusEvent to its domain variant.

    Args:
        event: Event received from the bus

    Returns:
        EntityChanged, EntityDeleted or EntityConflict

    Raises:
        ValueError: If the action is unknown or the payload has no id
    """
    entity, action = event.entity, event.action
    entity_id = event.payload.get("id")
    if not entity or not isinstance(entity_id, str) or not entity_id:
        raise ValueError(f"Event '{event.type}' does not reference an entity id")

    if action == CHANGED:
        return EntityChanged(
            entity=entity,
            id=entity_id,
            origin_id=event.origin_id,
            timestamp=event.timestamp,
            summary=_summary(event),
        )
    if action == DELETED:
        return EntityDeleted(
            entity=entity,
            id=entity_id,
            origin_id=event.origin_id,
            timestamp=event.timestamp,
            summary=_summary(event),
        )
    if action == CONFLICT:
        return EntityConflict(
            entity=entity,
            id=entity_id,
            origin_id=event.origin_id,
            timestamp=event.timestamp,
            current_token=event.payload.get("currentToken"),
        )
    raise ValueError(f"Unknown domain action '{action}' in event '{event.type}'")


def _summary(event: BusEvent) -> dict[str, Any] | None:
    summary = event.payload.get("summary")
    return thaw_payload(summary) if summary is not None else None
