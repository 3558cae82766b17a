"""
Staleness notices for an entity open for editing.

While a detail view of one entity is open, another tab may change or delete
that same entity. StalenessMonitor turns such events into a notice:

- changed: dismissible; reload() refetches the entity, dismiss() keeps the
  local edit (a stale write is still rejected by the server with 412)
- deleted: not dismissible; editing is disabled

Events for other ids, and events the monitoring tab emitted itself, never
raise a notice.

Usage:
    with StalenessMonitor(bus, client, "C1", on_notice=show_banner) as monitor:
        ...
        if monitor.notice and monitor.notice.kind is NoticeKind.CHANGED:
            fresh = await monitor.reload()
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from .events import CHANGED, DELETED, EntityChanged, EntityDeleted, event_type_for, parse_domain_event

if TYPE_CHECKING:
    from .bus import CrossTabBus
    from .client import EntityClient
    from .events import BusEvent

logger = logging.getLogger(__name__)


class NoticeKind(str, Enum):
    CHANGED = "changed"
    DELETED = "deleted"


@dataclass(frozen=True)
class StalenessNotice:
    """What the UI should tell the user about the entity being edited."""

    kind: NoticeKind
    entity_id: str
    origin_id: str
    timestamp: int
    summary: dict[str, Any] | None = None

    @property
    def dismissible(self) -> bool:
        return self.kind is NoticeKind.CHANGED


class StalenessMonitor:
    """
    Watches the bus for changes to one entity open in this tab.

    Args:
        bus: The tab's bus
        client: Entity client used by reload()
        entity_id: Id of the entity being edited
        entity: Entity kind
        on_notice: Called with each new notice
        on_reload: Called with the fresh entity after reload()
        on_deleted: Called with the deletion notice
    """

    def __init__(
        self,
        bus: CrossTabBus,
        client: EntityClient,
        entity_id: str,
        entity: str = "contact",
        on_notice: Callable[[StalenessNotice], Any] | None = None,
        on_reload: Callable[[Any], Any] | None = None,
        on_deleted: Callable[[StalenessNotice], Any] | None = None,
    ):
        self.bus = bus
        self.client = client
        self.entity_id = entity_id
        self.entity = entity
        self.on_notice = on_notice
        self.on_reload = on_reload
        self.on_deleted = on_deleted

        self.notice: StalenessNotice | None = None
        self.editable = True

        self._unsubscribers = [
            bus.on(event_type_for(entity, CHANGED), self._on_changed),
            bus.on(event_type_for(entity, DELETED), self._on_deleted),
        ]

    def __enter__(self) -> StalenessMonitor:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def _concerns_me(self, event: BusEvent) -> bool:
        return event.origin_id != self.bus.origin_id and event.payload.get("id") == self.entity_id

    def _on_changed(self, event: BusEvent) -> None:
        if not self._concerns_me(event) or not self.editable:
            return
        change = parse_domain_event(event)
        if not isinstance(change, EntityChanged):
            return

        logger.debug(f"{self.entity} '{self.entity_id}' changed in tab {change.origin_id}")
        self._show(
            StalenessNotice(
                kind=NoticeKind.CHANGED,
                entity_id=change.id,
                origin_id=change.origin_id,
                timestamp=change.timestamp,
                summary=change.summary,
            )
        )

    def _on_deleted(self, event: BusEvent) -> None:
        if not self._concerns_me(event):
            return
        deletion = parse_domain_event(event)
        if not isinstance(deletion, EntityDeleted):
            return

        logger.debug(f"{self.entity} '{self.entity_id}' deleted in tab {deletion.origin_id}")
        self.editable = False
        notice = StalenessNotice(
            kind=NoticeKind.DELETED,
            entity_id=deletion.id,
            origin_id=deletion.origin_id,
            timestamp=deletion.timestamp,
            summary=deletion.summary,
        )
        self._show(notice)
        if self.on_deleted:
            self.on_deleted(notice)

    def _show(self, notice: StalenessNotice) -> None:
        self.notice = notice
        if self.on_notice:
            self.on_notice(notice)

    async def reload(self) -> Any:
        """
        Refetch the entity and clear a change notice.

        The fetch also refreshes the client's version token, so the next write
        is checked against the latest revision.

        Raises:
            EntityHTTPError: If the fetch fails; the notice is kept
        """
        fresh = await self.client.get(self.entity_id)
        if self.notice is not None and self.notice.dismissible:
            self.notice = None
        if self.on_reload:
            self.on_reload(fresh)
        return fresh

    def dismiss(self) -> bool:
        """Clear a change notice without refetching; deletion notices stay."""
        if self.notice is None or not self.notice.dismissible:
            return False
        self.notice = None
        return True

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
