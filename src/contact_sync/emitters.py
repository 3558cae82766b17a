"""
Typed emitters for domain events.

One function per domain event hides the bus's generic emit() signature and
keeps the payload shape identical at every call site. Emitters only translate;
they never perform I/O themselves.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from .events import CHANGED, CONFLICT, DELETED, BusEvent, event_type_for

if TYPE_CHECKING:
    from .bus import CrossTabBus

CONTACT = "contact"
CONTACT_CHANGED = event_type_for(CONTACT, CHANGED)
CONTACT_DELETED = event_type_for(CONTACT, DELETED)
CONTACT_CONFLICT = event_type_for(CONTACT, CONFLICT)


class EntityEvents:
    """
    Emitters for one entity kind.

    Usage:
        events = EntityEvents(bus, "contact")
        events.emit_changed("C1", {"name": "Acme", "type": "company"})
    """

    def __init__(self, bus: CrossTabBus, entity: str):
        if not entity:
            raise ValueError("entity must be a non-empty string")
        self.bus = bus
        self.entity = entity

    @property
    def changed_type(self) -> str:
        return event_type_for(self.entity, CHANGED)

    @property
    def deleted_type(self) -> str:
        return event_type_for(self.entity, DELETED)

    @property
    def conflict_type(self) -> str:
        return event_type_for(self.entity, CONFLICT)

    def emit_changed(self, entity_id: str, summary: dict[str, Any] | None = None) -> BusEvent:
        """Announce a confirmed successful write of entity_id."""
        return self.bus.emit(self.changed_type, _payload(entity_id, summary=summary))

    def emit_deleted(self, entity_id: str, summary: dict[str, Any] | None = None) -> BusEvent:
        """Announce a confirmed deletion of entity_id."""
        return self.bus.emit(self.deleted_type, _payload(entity_id, summary=summary))

    def emit_conflict(self, entity_id: str, current_token: str | None = None) -> BusEvent:
        """Announce that a conditional write of entity_id was rejected as stale."""
        return self.bus.emit(
            self.conflict_type, _payload(entity_id, currentToken=current_token)
        )


def _payload(entity_id: str, **fields: Any) -> dict[str, Any]:
    if not isinstance(entity_id, str) or not entity_id:
        raise ValueError("entity id must be a non-empty string")
    return {"id": entity_id, **fields}


def contact_events(bus: CrossTabBus) -> EntityEvents:
    """Emitters for contacts."""
    return EntityEvents(bus, CONTACT)


def emit_contact_changed(
    bus: CrossTabBus, contact_id: str, summary: dict[str, Any] | None = None
) -> BusEvent:
    return contact_events(bus).emit_changed(contact_id, summary)


def emit_contact_deleted(
    bus: CrossTabBus, contact_id: str, summary: dict[str, Any] | None = None
) -> BusEvent:
    return contact_events(bus).emit_deleted(contact_id, summary)
