"""
Cross-Tab Bus.

Publish/subscribe between the tabs of one origin without a server push channel.

This module provides:
- emit(): synchronous local dispatch, then persistence to the last-event store,
  then fire-and-forget broadcast to the other tabs
- on() / on_any(): subscriptions returning an idempotent unsubscribe function,
  with optional replay of the last stored event of that type
- Self-origin suppression on the receive path for every transport
- Handler error isolation

Usage:
    from contact_sync import BroadcastHub, CrossTabBus, LastEventStore, MemoryStorage
    from contact_sync.transport import BroadcastTransport

    hub = BroadcastHub()
    shared = MemoryStorage()
    bus = CrossTabBus(
        BroadcastTransport(hub, "contacts-x-tab-v1"),
        LastEventStore(shared, "contacts-x-tab-v1"),
    )

    off = bus.on("contact:changed", lambda event: print(event.payload), replay_last=True)
    bus.emit("contact:changed", {"id": "C1", "summary": {"name": "Acme"}})
    off()
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .events import BusEvent, generate_origin_id
from .storage import MemoryStorage, StorageBackend
from .validation import EventValidator

if TYPE_CHECKING:
    from .last_event import LastEventStore
    from .metrics import SyncMetrics
    from .transport import Transport

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL = "contacts-x-tab-v1"
TAB_ID_KEY = "tabId"
ANY = "*"

EventHandler = Callable[[BusEvent], Any]
Unsubscribe = Callable[[], None]


def resolve_origin_id(tab_storage: StorageBackend) -> str:
    """
    Return the tab's origin id, creating and storing it on first use.

    The id lives in tab-scoped storage, so it is stable for the lifetime of
    the tab and regenerated for every new tab.
    """
    existing = tab_storage.get(TAB_ID_KEY)
    if existing:
        return existing
    origin_id = generate_origin_id()
    try:
        tab_storage.set(TAB_ID_KEY, origin_id)
    except Exception as e:  # nosec - an unpersisted id is still unique for this bus
        logger.warning(f"Could not persist tab id: {e}")
    return origin_id


@dataclass
class Subscription:
    """
    Event subscription details.

    Attributes:
        handler: Function called with each matching BusEvent
        event_type: Exact event type, or "*" for every event
        active: Whether subscription is currently active
        subscription_id: Unique identifier for this subscription
    """

    handler: EventHandler
    event_type: str
    active: bool = True
    subscription_id: str = field(
        default_factory=lambda: f"sub_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"
    )

    def matches(self, event_type: str) -> bool:
        if not self.active:
            return False
        return self.event_type == ANY or self.event_type == event_type


class CrossTabBus:
    """
    One tab's endpoint on the cross-tab bus.

    Construct once per tab at application start and pass it to every consumer.

    Args:
        transport: Cross-tab transport (None = local dispatch only)
        last_event_store: Durable store used for replay (None = no replay)
        channel_name: Scope for wire messages; must match the transport's
        origin_id: Explicit tab id (default: read from or stored in tab_storage)
        tab_storage: Tab-scoped storage holding the tab id
        metrics: Optional SyncMetrics
        validate_events: If True, event types must follow {entity}:{action}
        loop: Event loop that receive-path dispatch is handed to when events
            arrive on another thread
    """

    def __init__(
        self,
        transport: Transport | None = None,
        last_event_store: LastEventStore | None = None,
        *,
        channel_name: str = DEFAULT_CHANNEL,
        origin_id: str | None = None,
        tab_storage: StorageBackend | None = None,
        metrics: SyncMetrics | None = None,
        validate_events: bool = False,
        validator: EventValidator | None = None,
        loop: asyncio.AbstractEventLoop | None = None,
    ):
        self.channel_name = channel_name
        self.tab_storage = tab_storage if tab_storage is not None else MemoryStorage()
        self.origin_id = origin_id or resolve_origin_id(self.tab_storage)

        self._transport = transport
        self._last_event_store = last_event_store
        self._metrics = metrics
        self._validate_events = validate_events
        self._validator = validator if validator else EventValidator(strict=validate_events)
        self._loop = loop
        self._closed = False

        self._subscription_lock = threading.RLock()
        self.subscriptions: list[Subscription] = []

        if transport is not None:
            transport.listen(self._receive)

    @property
    def transport_name(self) -> str | None:
        return self._transport.name if self._transport else None

    # --- Subscribing ---

    def on(
        self,
        event_type: str,
        handler: EventHandler,
        replay_last: bool = False,
    ) -> Unsubscribe:
        """
        Register a handler for one event type.

        Args:
            event_type: Exact event type to match
            handler: Called with each matching BusEvent
            replay_last: Immediately deliver the last stored event of this
                type if another tab emitted it

        Returns:
            Zero-argument function removing the handler; calling it again is a no-op
        """
        if not isinstance(event_type, str) or not event_type.strip():
            raise ValueError("event_type must be a non-empty string")

        subscription = Subscription(handler=handler, event_type=event_type)
        with self._subscription_lock:
            self.subscriptions.append(subscription)

        if replay_last and event_type != ANY:
            self._replay(subscription)

        return self._unsubscriber(subscription)

    def on_any(self, handler: EventHandler) -> Unsubscribe:
        """Register a handler for every event (diagnostics only)."""
        return self.on(ANY, handler)

    def _unsubscriber(self, subscription: Subscription) -> Unsubscribe:
        def _unsubscribe() -> None:
            with self._subscription_lock:
                subscription.active = False
                if subscription in self.subscriptions:
                    self.subscriptions.remove(subscription)

        return _unsubscribe

    def _replay(self, subscription: Subscription) -> None:
        if self._last_event_store is None:
            return
        try:
            event = self._last_event_store.load_last_for(subscription.event_type, self.origin_id)
        except Exception as e:  # nosec - storage trouble only costs the replay
            logger.warning(f"Could not load last '{subscription.event_type}' event: {e}")
            return
        if event is None:
            return

        logger.debug(f"Replaying last '{event.type}' event from tab {event.origin_id}")
        if self._metrics:
            self._metrics.record_replay(event.type)
        self._invoke(subscription, event)

    # --- Emitting ---

    def emit(self, event_type: str, payload: dict[str, Any]) -> BusEvent:
        """
        Emit an event.

        Local subscribers run synchronously first; then the event is persisted
        for replay and broadcast to the other tabs. Persistence and broadcast
        failures are logged and swallowed.

        Args:
            event_type: Type of event (e.g., "contact:changed")
            payload: JSON-serializable event data; the event keeps a read-only
                copy, so later changes to this dict are not seen by anyone

        Returns:
            The emitted BusEvent

        Raises:
            ValueError: If event_type is empty or payload is not a dict
            ValidationError: If validate_events=True and event_type is invalid
        """
        if not isinstance(event_type, str) or not event_type.strip():
            raise ValueError("event_type must be a non-empty string")
        if not isinstance(payload, dict):
            raise ValueError("payload must be a dict")
        if self._validate_events:
            self._validator.validate_event_type(event_type)

        event = BusEvent(type=event_type, payload=payload, origin_id=self.origin_id)
        if self._metrics:
            self._metrics.record_event_emitted(event_type)

        self._dispatch(event)

        if self._last_event_store is not None:
            try:
                self._last_event_store.save(event)
            except Exception as e:  # nosec - replay is advisory, live delivery is not blocked
                self._log_delivery_failure("persist", event, e)

        if self._transport is not None and not self._closed:
            try:
                self._transport.post({"channel": self.channel_name, "event": event.to_wire()})
            except Exception as e:  # nosec - cross-tab delivery is fire-and-forget
                self._log_delivery_failure("broadcast", event, e)

        return event

    # --- Receiving ---

    def _receive(self, message: dict[str, Any]) -> None:
        """Transport receive path."""
        if self._closed:
            return
        if not isinstance(message, dict) or message.get("channel") != self.channel_name:
            logger.debug(f"Ignoring message for another channel on '{self.channel_name}'")
            return
        try:
            event = BusEvent.from_wire(message["event"])
        except (KeyError, TypeError, ValueError) as e:
            logger.debug(f"Ignoring undecodable message on '{self.channel_name}': {e}")
            return

        if event.origin_id == self.origin_id:
            if self._metrics:
                self._metrics.record_event_suppressed(event.type)
            return

        if self._metrics:
            self._metrics.record_event_received(event.type)

        if self._loop is not None and not self._on_loop_thread():
            self._loop.call_soon_threadsafe(self._dispatch, event)
        else:
            self._dispatch(event)

    def _on_loop_thread(self) -> bool:
        try:
            return asyncio.get_running_loop() is self._loop
        except RuntimeError:
            return False

    # --- Dispatch ---

    def _dispatch(self, event: BusEvent) -> None:
        with self._subscription_lock:
            matching = [sub for sub in self.subscriptions if sub.matches(event.type)]
        for sub in matching:
            self._invoke(sub, event)

    def _invoke(self, subscription: Subscription, event: BusEvent) -> None:
        # An earlier handler in the same dispatch may have unsubscribed this one
        if not subscription.active:
            return
        handler_start = time.perf_counter()
        success = True
        try:
            subscription.handler(event)
        except (KeyboardInterrupt, SystemExit):
            raise
        except Exception as e:  # nosec - protect the bus from handler exceptions
            success = False
            self._log_handler_error(event, subscription, e)
        finally:
            if self._metrics:
                self._metrics.record_handler_execution(
                    event.type,
                    getattr(subscription.handler, "__name__", "unknown"),
                    time.perf_counter() - handler_start,
                    success,
                )

    def _log_handler_error(
        self,
        event: BusEvent,
        subscription: Subscription,
        error: Exception,
    ) -> None:
        handler_name = getattr(subscription.handler, "__name__", "unknown")
        logger.error(
            f"Handler {handler_name} failed for '{event.type}': {error}",
            extra={
                "event_type": event.type,
                "origin_id": event.origin_id,
                "subscription_id": subscription.subscription_id,
                "handler_name": handler_name,
            },
        )

    def _log_delivery_failure(self, stage: str, event: BusEvent, error: Exception) -> None:
        logger.warning(
            f"Cross-tab {stage} failed for '{event.type}': {error}",
            extra={"event_type": event.type, "stage": stage, "error": str(error)[:200]},
        )
        if self._metrics:
            self._metrics.record_delivery_failure(stage, event.type)

    # --- Lifecycle ---

    def get_stats(self) -> dict[str, Any]:
        """Subscription counts, transport and origin details, and metrics if configured."""
        with self._subscription_lock:
            event_types = sorted({s.event_type for s in self.subscriptions if s.active})
            stats: dict[str, Any] = {
                "origin_id": self.origin_id,
                "channel_name": self.channel_name,
                "transport": self.transport_name,
                "active_subscriptions": len([s for s in self.subscriptions if s.active]),
                "event_types_subscribed": event_types,
                "replay_enabled": self._last_event_store is not None,
                "closed": self._closed,
            }
        if self._metrics:
            stats["metrics"] = self._metrics.get_snapshot()
        return stats

    def close(self) -> None:
        """Deactivate all subscriptions and close the transport."""
        if self._closed:
            return
        self._closed = True
        with self._subscription_lock:
            for sub in self.subscriptions:
                sub.active = False
            self.subscriptions.clear()
        if self._transport is not None:
            try:
                self._transport.close()
            except Exception as e:  # nosec - closing must not raise
                logger.warning(f"Transport close failed: {e}")
