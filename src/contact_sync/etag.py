"""
Server-side ETag helpers.

A backend honouring the If-Match contract computes a token per entity revision
and checks incoming preconditions against it. Clients treat tokens as opaque.
"""

from __future__ import annotations

import base64
import hashlib
from datetime import datetime


def _quote(value: str) -> str:
    return f'"{value}"'


def _to_ms(updated_at: datetime | str | int | float | None) -> int:
    if updated_at is None:
        return 0
    if isinstance(updated_at, datetime):
        return int(updated_at.timestamp() * 1000)
    if isinstance(updated_at, str):
        return int(datetime.fromisoformat(updated_at.replace("Z", "+00:00")).timestamp() * 1000)
    return int(updated_at)


def compute_etag(entity_id: str, updated_at: datetime | str | int | float | None) -> str:
    """
    Strong ETag for one entity revision.

    The token is the quoted base64url SHA-1 of "<id>:<updated_at in ms>", so
    it changes exactly when the entity's update time does.
    """
    raw = f"{entity_id}:{_to_ms(updated_at)}".encode()
    digest = base64.urlsafe_b64encode(hashlib.sha1(raw).digest()).decode().rstrip("=")
    return _quote(digest)


def normalize_etag(etag: str) -> str:
    """Strip a weak-validator prefix and surrounding quotes."""
    value = etag.strip()
    if value.startswith("W/"):
        value = value[2:]
    return value.strip('"')


def if_match_satisfied(if_match: str | None, current_etag: str) -> bool:
    """
    Evaluate an If-Match header against the current ETag.

    "*" matches any existing entity; otherwise any of the comma-separated
    tokens must equal the current one after normalization. A missing or empty
    header never matches.
    """
    if not if_match or not if_match.strip():
        return False
    if if_match.strip() == "*":
        return True
    current = normalize_etag(current_etag)
    return any(normalize_etag(token) == current for token in if_match.split(",") if token.strip())
