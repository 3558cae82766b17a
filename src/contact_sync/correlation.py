"""
Correlation ids for UI actions.

One user action (saving the contact form, confirming a delete) can issue
several requests: the GET that refreshes the version token, the conditional
PUT, read retries. Running them inside a CorrelationContext gives all of them
the same X-Correlation-ID, so the server log line for a rejected write can be
traced back to the action that sent it.

Usage:
    from contact_sync.correlation import CorrelationContext

    async with CorrelationContext(action="save-contact-form"):
        await client.get("C1")
        await client.update("C1", {"name": "Acme"})
"""

from __future__ import annotations

import logging
import uuid
from contextvars import ContextVar, Token
from typing import Any

CORRELATION_ID_HEADER = "X-Correlation-ID"

_correlation_id: ContextVar[str | None] = ContextVar("contact_sync_correlation_id", default=None)

logger = logging.getLogger(__name__)


def generate_correlation_id(action: str | None = None) -> str:
    """
    New correlation id, prefixed with the action name when one is given.

    Example:
        generate_correlation_id("delete-contact") -> "delete-contact-3f2a9c0d51e7"
    """
    suffix = uuid.uuid4().hex[:12]
    return f"{action}-{suffix}" if action else suffix


def get_correlation_id() -> str | None:
    return _correlation_id.get()


def set_correlation_id(correlation_id: str | None) -> Token:
    """Set the id for the current task; the token restores the previous one."""
    return _correlation_id.set(correlation_id)


def clear_correlation_id() -> None:
    _correlation_id.set(None)


def with_correlation(headers: dict[str, str] | None = None) -> dict[str, str]:
    """
    Copy of headers carrying X-Correlation-ID when an action is in progress.

    A header the caller set explicitly is left alone.
    """
    result = dict(headers or {})
    correlation_id = get_correlation_id()
    if correlation_id and CORRELATION_ID_HEADER not in result:
        result[CORRELATION_ID_HEADER] = correlation_id
    return result


class CorrelationContext:
    """
    Scope in which entity requests share one correlation id.

    Works with both ``with`` and ``async with``; nested scopes restore the
    outer id on exit.

    Args:
        correlation_id: Exact id to send
        action: Name used to generate an id when correlation_id is not given
    """

    def __init__(self, correlation_id: str | None = None, *, action: str | None = None):
        self.correlation_id = correlation_id or generate_correlation_id(action)
        self._token: Token | None = None

    def __enter__(self) -> str:
        self._token = set_correlation_id(self.correlation_id)
        logger.debug(f"Correlating requests as {self.correlation_id}")
        return self.correlation_id

    def __exit__(self, *exc_info: Any) -> None:
        if self._token is not None:
            _correlation_id.reset(self._token)
            self._token = None

    async def __aenter__(self) -> str:
        return self.__enter__()

    async def __aexit__(self, *exc_info: Any) -> None:
        self.__exit__(*exc_info)
