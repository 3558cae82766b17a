"""
Subscription registries.

Translate bus events into cached-view operations:

- "<entity>:changed": optionally patch cached views with the event summary,
  then invalidate the list views and the entity's own detail view
- "<entity>:deleted": invalidate the list views and remove the entity's
  detail view (refetching a deleted entity would fail)

Handlers fire for the tab's own writes too (local dispatch), so the writing
tab's lists are invalidated in the same synchronous step as the write's
notification.

Usage:
    from contact_sync.registry import register_contact_sync

    register_contact_sync(bus, cache)  # idempotent per tab
"""

from __future__ import annotations

import logging
import threading
import weakref
from collections.abc import Callable, Hashable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .emitters import CONTACT
from .events import (
    CHANGED,
    DELETED,
    EntityChanged,
    EntityDeleted,
    event_type_for,
    parse_domain_event,
)

if TYPE_CHECKING:
    from .bus import CrossTabBus
    from .cache import QueryCache, ViewKey
    from .events import BusEvent

logger = logging.getLogger(__name__)

Teardown = Callable[[], None]

_registered: set[str] = set()
_scoped_registrations: weakref.WeakKeyDictionary[Any, set[str]] = weakref.WeakKeyDictionary()
_registration_lock = threading.RLock()


def register_once(key: str, bootstrap: Callable[[], Any], scope: Any = None) -> bool:
    """
    Run bootstrap at most once for the given key.

    Safe to call from every entry point that mounts the feature. If bootstrap
    raises, the key stays unregistered so a later call can retry.

    Args:
        key: Name of the registration
        bootstrap: Zero-argument function doing the registration
        scope: Object owning the registration, usually the tab's bus; the
            guard is forgotten with it. None guards once per process.

    Returns:
        True if bootstrap ran now, False if it had already run
    """
    with _registration_lock:
        if scope is None:
            done = _registered
        else:
            done = _scoped_registrations.setdefault(scope, set())
        if key in done:
            logger.debug(f"Registration '{key}' already done; skipping")
            return False
        bootstrap()
        done.add(key)
        return True


def reset_registrations() -> None:
    """Forget every registration (tests only)."""
    with _registration_lock:
        _registered.clear()
        _scoped_registrations.clear()


@dataclass(frozen=True)
class ViewKeys:
    """
    Cached views showing one entity kind.

    Attributes:
        list_keys: Keys of views listing many entities
        detail_prefix: Leading key parts of a detail view; the entity id is appended
    """

    list_keys: tuple[ViewKey, ...]
    detail_prefix: tuple[Hashable, ...]

    def detail_key(self, entity_id: str) -> ViewKey:
        return (*self.detail_prefix, entity_id)


CONTACT_VIEWS = ViewKeys(
    list_keys=(
        ("/api/contacts",),
        ("/api/contacts/hierarchy",),
        ("/api/contacts/stats",),
    ),
    detail_prefix=("/api/contacts",),
)

WORKFLOW_ASSIGNMENT_VIEWS = ViewKeys(
    list_keys=(("/api/workflow-assignments",),),
    detail_prefix=("/api/workflow-assignments",),
)


def _merge_into_detail(summary: dict[str, Any]) -> Callable[[Any], Any]:
    def _update(data: Any) -> Any:
        if isinstance(data, dict):
            return {**data, **summary}
        return data

    return _update


def _merge_into_list(entity_id: str, summary: dict[str, Any]) -> Callable[[Any], Any]:
    def _update(data: Any) -> Any:
        if not isinstance(data, list):
            return data
        return [
            {**item, **summary} if isinstance(item, dict) and item.get("id") == entity_id else item
            for item in data
        ]

    return _update


class EntitySyncHandlers:
    """Bus handlers keeping one entity kind's cached views in step."""

    def __init__(self, cache: QueryCache, views: ViewKeys, optimistic: bool = True):
        self.cache = cache
        self.views = views
        self.optimistic = optimistic

    def on_changed(self, event: BusEvent) -> None:
        change = parse_domain_event(event)
        if not isinstance(change, EntityChanged):
            return

        if self.optimistic and change.summary:
            for key in self.views.list_keys:
                self.cache.patch(key, _merge_into_list(change.id, change.summary))
            self.cache.patch(self.views.detail_key(change.id), _merge_into_detail(change.summary))

        for key in self.views.list_keys:
            self.cache.invalidate(key)
        self.cache.invalidate(self.views.detail_key(change.id))

    def on_deleted(self, event: BusEvent) -> None:
        deletion = parse_domain_event(event)
        if not isinstance(deletion, EntityDeleted):
            return

        for key in self.views.list_keys:
            self.cache.invalidate(key)
        self.cache.remove(self.views.detail_key(deletion.id))


def register_entity_sync(
    bus: CrossTabBus,
    cache: QueryCache,
    entity: str,
    views: ViewKeys,
    replay_last: bool = True,
    optimistic: bool = True,
) -> Teardown:
    """
    Subscribe cache handlers for one entity kind.

    Args:
        bus: The tab's bus
        cache: Query cache to drive
        entity: Entity kind (event types are "<entity>:changed" / "<entity>:deleted")
        views: Cached views showing that entity kind
        replay_last: Catch up on the last change another tab made before this registration
        optimistic: Patch cached views with event summaries before invalidating

    Returns:
        Function removing both handlers; safe to call more than once
    """
    handlers = EntitySyncHandlers(cache, views, optimistic=optimistic)
    off_changed = bus.on(event_type_for(entity, CHANGED), handlers.on_changed, replay_last=replay_last)
    off_deleted = bus.on(event_type_for(entity, DELETED), handlers.on_deleted, replay_last=replay_last)

    def _teardown() -> None:
        off_changed()
        off_deleted()

    return _teardown


def register_contact_sync(bus: CrossTabBus, cache: QueryCache) -> bool:
    """Keep contact views in step with every tab's writes, once per tab."""
    return register_once(
        "contact-sync",
        lambda: register_entity_sync(bus, cache, CONTACT, CONTACT_VIEWS),
        scope=bus,
    )


def register_workflow_sync(bus: CrossTabBus, cache: QueryCache) -> bool:
    """Refetch workflow assignment views whenever a contact changes, once per tab."""
    return register_once(
        "workflow-contact-sync",
        lambda: register_entity_sync(
            bus, cache, CONTACT, WORKFLOW_ASSIGNMENT_VIEWS, optimistic=False
        ),
        scope=bus,
    )
