"""
FastAPI integration tests.

A reference contacts backend built with the server-side ETag helpers is
served in process through httpx.ASGITransport; two tabs share a broadcast hub
and shared storage.

Tests:
- Update conflict between tabs
- Cross-tab list invalidation
- Deletion blocked by business rules
- Missing precondition and token clearing on delete
- Staleness notice followed by reload
- Correlation id reaching the server
"""

from __future__ import annotations

from typing import Annotated, Any

import httpx
import pytest
from fastapi import Body, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, Response

from contact_sync import (
    CONTACT_VIEWS,
    BroadcastHub,
    ConcurrencyConflictError,
    CorrelationContext,
    DeletionBlockedError,
    MemoryStorage,
    NoticeKind,
    PreconditionRequiredError,
    StalenessMonitor,
    StorageArea,
    SyncSettings,
    compute_etag,
    if_match_satisfied,
    open_tab,
    register_entity_sync,
)
from contact_sync.correlation import CORRELATION_ID_HEADER
from contact_sync.events import now_ms

pytestmark = pytest.mark.integration

# --- Reference backend ---


def create_app() -> FastAPI:
    """Contacts API honouring If-Match preconditions."""
    app = FastAPI()
    app.state.contacts = {
        "C1": {"id": "C1", "name": "Acme", "type": "company", "updatedAt": 1_700_000_000_000},
        "C2": {"id": "C2", "name": "Globex", "type": "company", "updatedAt": 1_700_000_000_000},
    }
    app.state.assignments = {"C2": ["W1", "W7"]}
    app.state.correlation_ids = []

    @app.middleware("http")
    async def record_correlation(request: Request, call_next):
        correlation_id = request.headers.get(CORRELATION_ID_HEADER)
        if correlation_id:
            app.state.correlation_ids.append(correlation_id)
        return await call_next(request)

    def find(contact_id: str) -> dict[str, Any]:
        contact = app.state.contacts.get(contact_id)
        if contact is None:
            raise HTTPException(status_code=404, detail="Contact not found")
        return contact

    def etag_of(contact: dict[str, Any]) -> str:
        return compute_etag(contact["id"], contact["updatedAt"])

    def require_if_match(if_match: str | None) -> JSONResponse | None:
        if not if_match:
            return JSONResponse(status_code=428, content={"error": "If-Match header required"})
        return None

    def check_precondition(contact: dict[str, Any], if_match: str) -> JSONResponse | None:
        current = etag_of(contact)
        if not if_match_satisfied(if_match, current):
            return JSONResponse(
                status_code=412,
                content={"error": "Contact was modified", "currentETag": current},
                headers={"ETag": current},
            )
        return None

    @app.get("/api/contacts/{contact_id}/can-delete")
    def can_delete(contact_id: str):
        find(contact_id)
        workflows = app.state.assignments.get(contact_id, [])
        return {
            "canDelete": not workflows,
            "reasons": ["Contact has active assignments"] if workflows else [],
            "suggestions": ["Reassign active workflows first"] if workflows else [],
            "assignmentCount": len(workflows),
        }

    @app.get("/api/contacts/{contact_id}")
    def get_contact(contact_id: str):
        contact = find(contact_id)
        return JSONResponse(content=contact, headers={"ETag": etag_of(contact)})

    @app.put("/api/contacts/{contact_id}")
    def update_contact(
        contact_id: str,
        patch: Annotated[dict[str, Any], Body()],
        if_match: Annotated[str | None, Header()] = None,
    ):
        rejected = require_if_match(if_match)
        if rejected is not None:
            return rejected
        contact = find(contact_id)
        rejected = check_precondition(contact, if_match)
        if rejected is not None:
            return rejected
        contact.update({k: v for k, v in patch.items() if k not in ("id", "updatedAt")})
        contact["updatedAt"] = max(now_ms(), contact["updatedAt"] + 1)
        return JSONResponse(content=contact, headers={"ETag": etag_of(contact)})

    @app.delete("/api/contacts/{contact_id}")
    def delete_contact(
        contact_id: str,
        if_match: Annotated[str | None, Header()] = None,
    ):
        rejected = require_if_match(if_match)
        if rejected is not None:
            return rejected
        contact = find(contact_id)
        rejected = check_precondition(contact, if_match)
        if rejected is not None:
            return rejected
        workflows = app.state.assignments.get(contact_id)
        if workflows:
            return JSONResponse(
                status_code=409,
                content={
                    "message": "Contact has active assignments",
                    "details": {"activeAssignments": len(workflows), "workflows": workflows},
                    "suggestions": ["Reassign active workflows first"],
                },
            )
        del app.state.contacts[contact_id]
        return Response(status_code=204)

    return app


# --- Fixtures ---


@pytest.fixture
def app() -> FastAPI:
    return create_app()


@pytest.fixture
def hub() -> BroadcastHub:
    return BroadcastHub()


@pytest.fixture
def area() -> StorageArea:
    return StorageArea(MemoryStorage())


@pytest.fixture
def open_browser_tab(app, hub, area):
    """Factory opening tabs against the in-process backend."""

    def _open():
        http = httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://testserver"
        )
        return open_tab(SyncSettings(), hub=hub, storage_area=area, http=http)

    return _open


# --- Tests ---


class TestConcurrencyEndToEnd:
    """Test optimistic concurrency against the reference backend."""

    @pytest.mark.asyncio
    async def test_update_conflict(self, app, open_browser_tab):
        """Test that a stale tab is rejected and learns the current token."""
        tab1, tab2 = open_browser_tab(), open_browser_tab()
        await tab1.client.get("C1")
        await tab2.client.get("C1")
        await tab2.client.update("C1", {"name": "Tab Two"})
        current = tab2.client.version_token("C1")

        with pytest.raises(ConcurrencyConflictError) as exc_info:
            await tab1.client.update("C1", {"name": "X"})

        assert exc_info.value.current_token == current
        assert tab1.client.version_token("C1") == current
        assert app.state.contacts["C1"]["name"] == "Tab Two"

        await tab1.client.update("C1", {"name": "X"})
        assert app.state.contacts["C1"]["name"] == "X"
        await tab1.aclose()
        await tab2.aclose()

    @pytest.mark.asyncio
    async def test_precondition_required(self, app, open_browser_tab):
        """Test that a never-fetched contact cannot be written."""
        tab = open_browser_tab()

        with pytest.raises(PreconditionRequiredError):
            await tab.client.update("C1", {"name": "X"})

        assert app.state.contacts["C1"]["name"] == "Acme"
        await tab.aclose()

    @pytest.mark.asyncio
    async def test_delete_then_update(self, app, open_browser_tab):
        """Test that a deleted contact's token is gone."""
        tab = open_browser_tab()
        await tab.client.get("C1")

        await tab.client.delete("C1")

        assert "C1" not in app.state.contacts
        assert tab.client.version_token("C1") is None
        with pytest.raises(PreconditionRequiredError):
            await tab.client.update("C1", {"name": "X"})
        await tab.aclose()

    @pytest.mark.asyncio
    async def test_deletion_blocked(self, app, open_browser_tab):
        """Test that business-rule refusals surface verbatim and keep the token."""
        tab = open_browser_tab()
        await tab.client.get("C2")
        token = tab.client.version_token("C2")

        check = await tab.client.can_delete("C2")
        with pytest.raises(DeletionBlockedError) as exc_info:
            await tab.client.delete("C2")

        assert check.can_delete is False
        assert check.assignment_count == 2
        assert exc_info.value.message == "Contact has active assignments"
        assert exc_info.value.details == {"activeAssignments": 2, "workflows": ["W1", "W7"]}
        assert exc_info.value.suggestions == ["Reassign active workflows first"]
        assert tab.client.version_token("C2") == token
        assert "C2" in app.state.contacts
        await tab.aclose()


class TestCrossTabSync:
    """Test views and notices following another tab's writes."""

    @pytest.mark.asyncio
    async def test_list_invalidation(self, open_browser_tab):
        """Test that both tabs invalidate C1's views and leave C2's alone."""
        tab1, tab2 = open_browser_tab(), open_browser_tab()
        for tab in (tab1, tab2):
            register_entity_sync(tab.bus, tab.cache, "contact", CONTACT_VIEWS)
            tab.cache.set(("/api/contacts",), [{"id": "C1"}, {"id": "C2"}])
            tab.cache.set(("/api/contacts", "C2"), {"id": "C2", "name": "Globex"})

        await tab1.client.get("C1")
        await tab1.client.update("C1", {"name": "Acme Ltd"})

        for tab in (tab1, tab2):
            assert tab.cache.is_stale(("/api/contacts",))
            assert not tab.cache.is_stale(("/api/contacts", "C2"))
        await tab1.aclose()
        await tab2.aclose()

    @pytest.mark.asyncio
    async def test_staleness_notice_and_reload(self, open_browser_tab):
        """Test an open editor learning of and reloading another tab's change."""
        editor, other = open_browser_tab(), open_browser_tab()
        await editor.client.get("C1")
        await other.client.get("C1")

        with StalenessMonitor(editor.bus, editor.client, "C1") as monitor:
            await other.client.update("C1", {"name": "Acme Ltd"})
            assert monitor.notice.kind is NoticeKind.CHANGED

            fresh = await monitor.reload()

        assert fresh["name"] == "Acme Ltd"
        assert editor.client.version_token("C1") == other.client.version_token("C1")
        await editor.client.update("C1", {"name": "Acme Group"})
        await editor.aclose()
        await other.aclose()

    @pytest.mark.asyncio
    async def test_correlation_id_reaches_server(self, app, open_browser_tab):
        """Test that a UI action's correlation id is sent with its requests."""
        tab = open_browser_tab()

        with CorrelationContext("save-contact-form"):
            await tab.client.get("C1")
            await tab.client.update("C1", {"name": "Acme Ltd"})

        assert app.state.correlation_ids == ["save-contact-form", "save-contact-form"]
        await tab.aclose()
