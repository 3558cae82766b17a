"""
Typed errors raised by the entity client.

HTTP and version errors always propagate to the caller; the UI branches on the
class (or on .code, which equals the HTTP status).
"""

from __future__ import annotations

from typing import Any


class SyncError(Exception):
    """Base class for contact-sync errors."""

    pass


class EntityHTTPError(SyncError):
    """
    Non-2xx response from the entity backend.

    Attributes:
        status_code: HTTP status of the response
        body: Decoded JSON body, or raw text, or None
    """

    def __init__(self, status_code: int, message: str | None = None, body: Any = None):
        self.status_code = status_code
        self.body = body
        super().__init__(message or f"HTTP {status_code}")

    @property
    def code(self) -> int:
        return self.status_code


class PreconditionRequiredError(EntityHTTPError):
    """
    The server requires If-Match and none was sent (428).

    The entity was never fetched in this tab (or its token was cleared);
    get() it first, then retry.
    """

    def __init__(self, entity_id: str, body: Any = None):
        self.entity_id = entity_id
        super().__init__(
            428, f"Precondition required: fetch '{entity_id}' before writing it", body
        )


class ConcurrencyConflictError(EntityHTTPError):
    """
    The cached version token is stale (412).

    current_token is the server's current token, already cached by the client,
    so a reload or an explicit retry carries the fresh precondition.
    """

    def __init__(self, entity_id: str, current_token: str | None = None, body: Any = None):
        self.entity_id = entity_id
        self.current_token = current_token
        super().__init__(412, f"'{entity_id}' was changed elsewhere; reload to continue", body)


class DeletionBlockedError(EntityHTTPError):
    """
    The server refused a delete for business reasons (409).

    message, details and suggestions are the server's fields, verbatim.
    """

    def __init__(
        self,
        entity_id: str,
        message: str,
        details: Any = None,
        suggestions: Any = None,
        body: Any = None,
    ):
        self.entity_id = entity_id
        self.message = message
        self.details = details
        self.suggestions = suggestions
        super().__init__(409, message, body)
