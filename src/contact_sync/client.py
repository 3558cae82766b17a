"""
Concurrency-aware entity client.

Reads and writes entities over HTTP with optimistic concurrency control:

- GET caches the entity's ETag as its version token
- PUT/DELETE send the cached token as If-Match (omitted when none is cached)
- 428 -> PreconditionRequiredError, 412 -> ConcurrencyConflictError (the
  server's current token is cached), 409 on delete -> DeletionBlockedError
- successful writes emit the domain "changed"/"deleted" event on the bus

The bus notification is advisory; the server's version check alone decides
whether a write is allowed.

Usage:
    async with httpx.AsyncClient(base_url="http://localhost:5000") as http:
        client = EntityClient(http, events=contact_events(bus))
        contact = await client.get("C1")
        contact = await client.update("C1", {"name": "Acme Ltd"})
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import httpx

from .correlation import with_correlation
from .errors import (
    ConcurrencyConflictError,
    DeletionBlockedError,
    EntityHTTPError,
    PreconditionRequiredError,
)
from .telemetry import inject_trace_context_to_headers, traced
from .versions import VersionTokenStore

if TYPE_CHECKING:
    from .emitters import EntityEvents
    from .metrics import SyncMetrics

logger = logging.getLogger(__name__)

DEFAULT_SUMMARY_FIELDS = ("name", "type")


@dataclass
class RetryPolicy:
    """
    Retry policy for idempotent reads.

    Conditional writes are never retried: a write whose response was lost may
    have succeeded, and replaying it with the old token could only produce a
    misleading conflict.

    Attributes:
        max_attempts: Total attempts including the first (1 = no retry)
        backoff_seconds: Sleep before the second attempt
        backoff_multiplier: Growth factor of the sleep per attempt
        retry_statuses: Response statuses treated as transient
    """

    max_attempts: int = 3
    backoff_seconds: float = 0.25
    backoff_multiplier: float = 2.0
    retry_statuses: frozenset[int] = field(default_factory=lambda: frozenset({502, 503, 504}))

    def delay(self, attempt: int) -> float:
        """Sleep after the given (1-based) failed attempt."""
        return self.backoff_seconds * (self.backoff_multiplier ** (attempt - 1))


@dataclass(frozen=True)
class DeletionCheck:
    """Answer of the pre-deletion validation endpoint."""

    can_delete: bool
    reasons: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)
    assignment_count: int = 0


def _json_or_none(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return None


def _http_error(response: httpx.Response, what: str) -> EntityHTTPError:
    body = _json_or_none(response)
    if body is None and response.content:
        body = response.text
    return EntityHTTPError(response.status_code, f"{what} failed: {response.status_code}", body)


class EntityClient:
    """
    HTTP client for one entity kind with per-entity version tracking.

    Args:
        http: httpx.AsyncClient configured with base URL and timeout
        entity: Entity kind; also the version-token scope
        base_path: Collection path; entities live at <base_path>/<id>
        events: Emitters for this entity kind (None = no bus notifications)
        tokens: Version-token cache (default: fresh in-memory cache)
        retry: Retry policy for reads (default: RetryPolicy())
        summary_fields: Entity fields copied into event summaries
        metrics: Optional SyncMetrics
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        entity: str = "contact",
        base_path: str = "/api/contacts",
        events: EntityEvents | None = None,
        tokens: VersionTokenStore | None = None,
        retry: RetryPolicy | None = None,
        summary_fields: Sequence[str] = DEFAULT_SUMMARY_FIELDS,
        metrics: SyncMetrics | None = None,
    ):
        self.http = http
        self.entity = entity
        self.base_path = base_path.rstrip("/")
        self.events = events
        self.tokens = tokens if tokens is not None else VersionTokenStore(scope=entity)
        self.retry = retry or RetryPolicy()
        self.summary_fields = tuple(summary_fields)
        self._metrics = metrics
        self._summaries: dict[str, dict[str, Any]] = {}

    async def __aenter__(self) -> EntityClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.http.aclose()

    def version_token(self, entity_id: str) -> str | None:
        """Currently cached version token for entity_id."""
        return self.tokens.get(entity_id)

    def summarize(self, entity: Any) -> dict[str, Any] | None:
        """Smallest subset of entity fields another tab needs to patch its views."""
        if not isinstance(entity, dict):
            return None
        summary = {key: entity[key] for key in self.summary_fields if key in entity}
        return summary or None

    def _path(self, entity_id: str, suffix: str = "") -> str:
        return f"{self.base_path}/{quote(entity_id, safe='')}{suffix}"

    # --- Operations ---

    @traced("get")
    async def get(self, entity_id: str) -> Any:
        """
        Fetch an entity and cache its version token.

        Raises:
            EntityHTTPError: On any non-2xx response, or a 2xx without a JSON body
        """
        response = await self._send("GET", self._path(entity_id), idempotent=True)
        if not response.is_success:
            self._record("GET", "error")
            raise _http_error(response, f"GET {self.entity} '{entity_id}'")

        body = _json_or_none(response)
        if body is None:
            self._record("GET", "error")
            raise EntityHTTPError(
                response.status_code,
                f"GET {self.entity} '{entity_id}' returned no JSON body",
                response.text or None,
            )

        etag = response.headers.get("ETag")
        if etag:
            self.tokens.set(entity_id, etag)
        self._remember_summary(entity_id, body)
        self._record("GET", "ok")
        return body

    @traced("update")
    async def update(self, entity_id: str, patch: dict[str, Any]) -> Any:
        """
        Conditionally write an entity.

        Returns:
            The updated entity as returned by the server

        Raises:
            PreconditionRequiredError: No token cached and the server requires one
            ConcurrencyConflictError: The cached token is stale
            EntityHTTPError: Any other non-2xx response
        """
        response = await self._send(
            "PUT", self._path(entity_id), headers=self._if_match(entity_id), json=patch
        )
        self._raise_for_precondition("PUT", entity_id, response)
        if not response.is_success:
            self._record("PUT", "error")
            raise _http_error(response, f"PUT {self.entity} '{entity_id}'")

        self._store_write_token(entity_id, response)
        body = _json_or_none(response)
        self._remember_summary(entity_id, body)
        self._record("PUT", "ok")

        if self.events is not None:
            self.events.emit_changed(entity_id, self.summarize(body))
        return body

    @traced("delete")
    async def delete(self, entity_id: str) -> None:
        """
        Conditionally delete an entity.

        Raises:
            PreconditionRequiredError: No token cached and the server requires one
            ConcurrencyConflictError: The cached token is stale
            DeletionBlockedError: The server refused for business reasons (409)
            EntityHTTPError: Any other non-2xx response
        """
        response = await self._send(
            "DELETE", self._path(entity_id), headers=self._if_match(entity_id)
        )
        self._raise_for_precondition("DELETE", entity_id, response)

        if response.status_code == 409:
            body = _json_or_none(response)
            fields = body if isinstance(body, dict) else {}
            self._record("DELETE", "deletion_blocked")
            logger.info(
                f"Deletion of {self.entity} '{entity_id}' blocked by server",
                extra={"entity_id": entity_id, "details": fields.get("details")},
            )
            raise DeletionBlockedError(
                entity_id,
                message=fields.get("message") or response.text or "Deletion blocked",
                details=fields.get("details"),
                suggestions=fields.get("suggestions"),
                body=body,
            )

        if not response.is_success:
            self._record("DELETE", "error")
            raise _http_error(response, f"DELETE {self.entity} '{entity_id}'")

        summary = self.summarize(_json_or_none(response)) or self._summaries.get(entity_id)
        self.tokens.discard(entity_id)
        self._summaries.pop(entity_id, None)
        self._record("DELETE", "ok")

        if self.events is not None:
            self.events.emit_deleted(entity_id, summary)

    @traced("can_delete")
    async def can_delete(self, entity_id: str) -> DeletionCheck:
        """Ask the server whether entity_id could be deleted, and why not."""
        response = await self._send(
            "GET", self._path(entity_id, "/can-delete"), idempotent=True
        )
        if not response.is_success:
            self._record("GET", "error")
            raise _http_error(response, f"Deletion check for {self.entity} '{entity_id}'")

        body = response.json()
        self._record("GET", "ok")
        return DeletionCheck(
            can_delete=bool(body.get("canDelete")),
            reasons=list(body.get("reasons") or []),
            suggestions=list(body.get("suggestions") or []),
            assignment_count=int(body.get("assignmentCount") or 0),
        )

    # --- Internals ---

    def _if_match(self, entity_id: str) -> dict[str, str]:
        token = self.tokens.get(entity_id)
        return {"If-Match": token} if token else {}

    def _raise_for_precondition(
        self, method: str, entity_id: str, response: httpx.Response
    ) -> None:
        if response.status_code == 428:
            self._record(method, "precondition_required")
            raise PreconditionRequiredError(entity_id, body=_json_or_none(response))

        if response.status_code == 412:
            body = _json_or_none(response)
            current = response.headers.get("ETag")
            if not current and isinstance(body, dict):
                current = body.get("currentETag")
            if current:
                self.tokens.set(entity_id, current)

            self._record(method, "conflict")
            logger.info(
                f"{method} {self.entity} '{entity_id}' rejected as stale",
                extra={"entity_id": entity_id, "current_token": current},
            )
            if self.events is not None:
                self.events.emit_conflict(entity_id, current)
            raise ConcurrencyConflictError(entity_id, current_token=current, body=body)

    def _store_write_token(self, entity_id: str, response: httpx.Response) -> None:
        etag = response.headers.get("ETag")
        if etag:
            self.tokens.set(entity_id, etag)
        else:
            # The entity changed server-side, so the old token can only be stale
            self.tokens.discard(entity_id)

    def _remember_summary(self, entity_id: str, body: Any) -> None:
        summary = self.summarize(body)
        if summary:
            self._summaries[entity_id] = summary

    def _record(self, method: str, outcome: str) -> None:
        if self._metrics:
            self._metrics.record_http(method, outcome)

    async def _send(
        self,
        method: str,
        path: str,
        *,
        headers: dict[str, str] | None = None,
        json: Any = None,
        idempotent: bool = False,
    ) -> httpx.Response:
        request_headers = with_correlation(headers)
        inject_trace_context_to_headers(request_headers)

        attempts = max(1, self.retry.max_attempts) if idempotent else 1
        for attempt in range(1, attempts + 1):
            try:
                response = await self.http.request(
                    method, path, headers=request_headers, json=json
                )
            except httpx.TransportError as e:
                if attempt >= attempts:
                    raise
                logger.info(f"{method} {path} attempt {attempt} failed: {e}; retrying")
            else:
                if response.status_code not in self.retry.retry_statuses or attempt >= attempts:
                    return response
                logger.info(
                    f"{method} {path} attempt {attempt} got {response.status_code}; retrying"
                )
            await asyncio.sleep(self.retry.delay(attempt))

        raise AssertionError("unreachable")  # pragma: no cover
