"""
Pytest configuration for contact-sync tests.
"""

from __future__ import annotations

import contextlib
import json

import httpx
import pytest

from contact_sync import (
    BroadcastHub,
    CrossTabBus,
    EntityClient,
    InMemoryMetrics,
    LastEventStore,
    MemoryStorage,
    RetryPolicy,
    StorageArea,
    SyncMetrics,
    contact_events,
)
from contact_sync.correlation import clear_correlation_id
from contact_sync.registry import reset_registrations
from contact_sync.transport import BroadcastTransport, StorageTransport

CHANNEL = "contacts-x-tab-v1"


@pytest.fixture(autouse=True)
def _isolate_process_state():
    """Registration guards and correlation ids are module state; reset them around each test."""
    reset_registrations()
    clear_correlation_id()
    yield
    reset_registrations()
    clear_correlation_id()


@pytest.fixture
def hub():
    return BroadcastHub()


@pytest.fixture
def shared_area():
    """Shared storage for every tab of one origin."""
    return StorageArea(MemoryStorage())


@pytest.fixture
def make_bus(hub, shared_area):
    """
    Factory for tabs on a common hub and shared storage.

    make_bus(transport="storage") uses the shared-storage fallback instead of
    the broadcast channel.
    """
    buses: list[CrossTabBus] = []

    def _make(transport: str = "broadcast", **kwargs) -> CrossTabBus:
        if transport == "broadcast":
            wire = BroadcastTransport(hub, CHANNEL)
        else:
            wire = StorageTransport(shared_area.view(), CHANNEL, owns_view=True)
        kwargs.setdefault("last_event_store", LastEventStore(shared_area.view(), CHANNEL))
        bus = CrossTabBus(wire, channel_name=CHANNEL, **kwargs)
        buses.append(bus)
        return bus

    yield _make

    for bus in buses:
        with contextlib.suppress(Exception):
            bus.close()


@pytest.fixture
def metrics():
    """SyncMetrics over an InMemoryMetrics backend."""
    return SyncMetrics(InMemoryMetrics())


class FakeContactBackend:
    """
    In-memory contacts API honouring the ETag/If-Match contract.

    Tokens are '"v<n>"' where n is the contact's revision. Writes without
    If-Match get 428, stale If-Match gets 412 with the current ETag.
    """

    def __init__(self):
        self.contacts: dict[str, dict] = {
            "C1": {"id": "C1", "name": "Acme", "type": "company", "email": "ops@acme.test"},
            "C2": {"id": "C2", "name": "Globex", "type": "company"},
        }
        self.revisions: dict[str, int] = {"C1": 1, "C2": 1}
        self.blocked: dict[str, dict] = {}
        self.fail_next: list = []
        self.requests: list[httpx.Request] = []

    def etag(self, contact_id: str) -> str:
        return f'"v{self.revisions[contact_id]}"'

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_next:
            failure = self.fail_next.pop(0)
            if failure == "connect-error":
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(failure, json={"error": "unavailable"})

        parts = request.url.path.strip("/").split("/")
        contact_id = parts[2]

        if parts[3:] == ["can-delete"]:
            blocked = self.blocked.get(contact_id)
            return httpx.Response(
                200,
                json={
                    "canDelete": blocked is None,
                    "reasons": [blocked["message"]] if blocked else [],
                    "suggestions": blocked.get("suggestions", []) if blocked else [],
                    "assignmentCount": 2 if blocked else 0,
                },
            )

        if request.method == "GET":
            if contact_id not in self.contacts:
                return httpx.Response(404, json={"error": "Contact not found"})
            return httpx.Response(
                200, json=self.contacts[contact_id], headers={"ETag": self.etag(contact_id)}
            )

        if_match = request.headers.get("If-Match")
        if not if_match:
            return httpx.Response(428, json={"error": "If-Match header required"})
        if contact_id not in self.contacts:
            return httpx.Response(404, json={"error": "Contact not found"})
        if if_match != self.etag(contact_id):
            current = self.etag(contact_id)
            return httpx.Response(
                412, json={"error": "Precondition failed"}, headers={"ETag": current}
            )

        if request.method == "PUT":
            self.contacts[contact_id] = {**self.contacts[contact_id], **json.loads(request.content)}
            self.revisions[contact_id] += 1
            return httpx.Response(
                200, json=self.contacts[contact_id], headers={"ETag": self.etag(contact_id)}
            )

        if request.method == "DELETE":
            if contact_id in self.blocked:
                return httpx.Response(409, json=self.blocked[contact_id])
            del self.contacts[contact_id]
            return httpx.Response(204)

        return httpx.Response(405)


@pytest.fixture
def backend():
    return FakeContactBackend()


@pytest.fixture
def make_client(backend):
    """
    Factory for EntityClients talking to the fake backend.

    make_client(bus) wires contact emitters on that bus; retries never sleep.
    MockTransport holds no connections, so clients need no explicit close.
    """

    def _make(bus: CrossTabBus | None = None, **kwargs) -> EntityClient:
        http = httpx.AsyncClient(
            transport=httpx.MockTransport(backend.handler), base_url="http://contacts.test"
        )
        kwargs.setdefault("retry", RetryPolicy(backoff_seconds=0))
        return EntityClient(
            http, events=contact_events(bus) if bus is not None else None, **kwargs
        )

    return _make
