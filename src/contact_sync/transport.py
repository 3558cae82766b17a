"""
Cross-tab transports.

A transport moves wire messages between tabs of one origin. It only ever
delivers to *other* tabs; the bus additionally drops anything carrying its own
origin id, so self-suppression never depends on transport semantics.

- BroadcastTransport: primary transport over a named BroadcastChannel opened
  on a BroadcastHub (the per-origin channel namespace).
- StorageTransport: fallback that writes the message to a single shared key;
  other tabs are notified of the change and re-read the key.

select_transport() picks one the way the bus expects: broadcast when a hub is
available, shared storage otherwise.
"""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

from .storage import StorageArea, StorageChange, StorageView

logger = logging.getLogger(__name__)

MessageListener = Callable[[dict[str, Any]], None]


class TransportUnavailableError(Exception):
    """Raised when no transport can be built for the requested mode."""

    pass


class BroadcastChannel:
    """
    One tab's endpoint on a named channel.

    post_message() delivers a structured copy of the message to every other
    open channel with the same name on the same hub.
    """

    def __init__(self, hub: BroadcastHub, name: str):
        self.hub = hub
        self.name = name
        self.on_message: MessageListener | None = None
        self.closed = False

    def post_message(self, message: dict[str, Any]) -> None:
        if self.closed:
            raise RuntimeError(f"BroadcastChannel '{self.name}' is closed")
        # Structured clone: receivers never share mutable state with the sender
        data = json.dumps(message)
        for peer in self.hub._peers(self):
            callback = peer.on_message
            if callback is None:
                continue
            try:
                callback(json.loads(data))
            except Exception as e:  # nosec - a failing receiver must not break the sender
                logger.warning(f"Broadcast receiver failed on channel '{self.name}': {e}")

    def close(self) -> None:
        self.closed = True
        self.on_message = None
        self.hub._detach(self)


class BroadcastHub:
    """Namespace of named broadcast channels shared by the tabs of one origin."""

    def __init__(self) -> None:
        self._channels: dict[str, list[BroadcastChannel]] = {}
        self._lock = threading.Lock()

    def open(self, name: str) -> BroadcastChannel:
        """Open a new endpoint on the named channel."""
        channel = BroadcastChannel(self, name)
        with self._lock:
            self._channels.setdefault(name, []).append(channel)
        return channel

    def channel_count(self, name: str) -> int:
        with self._lock:
            return len(self._channels.get(name, []))

    def _peers(self, sender: BroadcastChannel) -> list[BroadcastChannel]:
        with self._lock:
            return [c for c in self._channels.get(sender.name, []) if c is not sender]

    def _detach(self, channel: BroadcastChannel) -> None:
        with self._lock:
            members = self._channels.get(channel.name, [])
            if channel in members:
                members.remove(channel)
            if not members:
                self._channels.pop(channel.name, None)


class Transport(ABC):
    """Abstract cross-tab transport."""

    name: str = "transport"

    @abstractmethod
    def post(self, message: dict[str, Any]) -> None:
        """Send a message to the other tabs."""

    @abstractmethod
    def listen(self, listener: MessageListener) -> None:
        """Set the single receive-path callback."""

    @abstractmethod
    def close(self) -> None:
        """Stop sending and receiving."""


class BroadcastTransport(Transport):
    """Primary transport over a BroadcastChannel."""

    name = "broadcast"

    def __init__(self, hub: BroadcastHub, channel_name: str):
        self.channel = hub.open(channel_name)

    def post(self, message: dict[str, Any]) -> None:
        self.channel.post_message(message)

    def listen(self, listener: MessageListener) -> None:
        self.channel.on_message = listener

    def close(self) -> None:
        self.channel.close()


class StorageTransport(Transport):
    """
    Fallback transport over shared storage.

    Every message overwrites one key ("<channel>::event"); other views of the
    storage area are notified of the change and decode the new value.
    """

    name = "storage"

    def __init__(self, view: StorageView, channel_name: str, owns_view: bool = False):
        self.view = view
        self._owns_view = owns_view
        self.key = f"{channel_name}::event"
        self._listener: MessageListener | None = None
        self._remove_listener = view.add_listener(self._on_storage_change)

    def post(self, message: dict[str, Any]) -> None:
        self.view.set(self.key, json.dumps(message, separators=(",", ":")))

    def listen(self, listener: MessageListener) -> None:
        self._listener = listener

    def _on_storage_change(self, change: StorageChange) -> None:
        if change.key != self.key or not change.new_value or self._listener is None:
            return
        try:
            message = json.loads(change.new_value)
        except json.JSONDecodeError as e:
            logger.debug(f"Ignoring undecodable storage message on '{self.key}': {e}")
            return
        if isinstance(message, dict):
            self._listener(message)

    def close(self) -> None:
        self._listener = None
        self._remove_listener()
        if self._owns_view:
            self.view.close()


def select_transport(
    channel_name: str,
    hub: BroadcastHub | None = None,
    storage_area: StorageArea | None = None,
    mode: str = "auto",
) -> Transport:
    """
    Build the transport for a tab.

    Args:
        channel_name: Channel scoping both transports
        hub: Broadcast namespace, if the environment has one
        storage_area: Shared storage used by the fallback
        mode: "auto" (broadcast, else storage), "broadcast" or "storage"

    Raises:
        TransportUnavailableError: If the requested transport cannot be built
    """
    if mode not in ("auto", "broadcast", "storage"):
        raise ValueError(f"Unknown transport mode '{mode}'")

    if mode in ("auto", "broadcast") and hub is not None:
        return BroadcastTransport(hub, channel_name)
    if mode == "broadcast":
        raise TransportUnavailableError("Broadcast transport requested but no hub is available")

    if storage_area is not None:
        if mode == "auto":
            logger.info(f"Broadcast unavailable, using shared-storage fallback for '{channel_name}'")
        return StorageTransport(storage_area.view(), channel_name, owns_view=True)

    raise TransportUnavailableError(f"No transport available for channel '{channel_name}'")
