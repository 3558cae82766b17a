"""
Event schema validation.

Enforces the {entity}:{action} event naming convention and provides
payload checks for domain events.

Usage:
    from contact_sync.validation import EventValidator, ValidationError

    validator = EventValidator()
    validator.validate_event_type("contact:changed")  # OK
    validator.validate_event_type("invalid")  # result.valid is False

    validator = EventValidator(strict=True, allowed_entities={"contact"})
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

# {entity}:{action} with optional sub-actions; dots are accepted as separators too.
# Examples: contact:changed, contact:deleted, workflow.step:completed
EVENT_TYPE_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*([:.][a-z][a-z0-9_-]*)+$")


class ValidationError(Exception):
    """Raised when event validation fails."""

    def __init__(self, message: str, event_type: str | None = None):
        self.event_type = event_type
        super().__init__(message)


@dataclass
class ValidationResult:
    """Result of event validation."""

    valid: bool
    errors: list[str]

    @property
    def ok(self) -> bool:
        return self.valid and len(self.errors) == 0


class EventValidator:
    """
    Validates event types and payloads.

    Args:
        strict: If True, raise ValidationError; otherwise return the result
        allowed_entities: Optional set of entity names accepted as prefixes
    """

    def __init__(
        self,
        strict: bool = False,
        allowed_entities: set[str] | None = None,
        custom_pattern: re.Pattern[str] | None = None,
    ):
        self.strict = strict
        self.allowed_entities = allowed_entities
        self.pattern = custom_pattern or EVENT_TYPE_PATTERN

    def validate_event_type(self, event_type: str) -> ValidationResult:
        """
        Validate an event type string.

        Raises:
            ValidationError: If strict mode and validation fails
        """
        errors: list[str] = []

        if not event_type or not event_type.strip():
            errors.append("Event type cannot be empty")
            return self._result(errors, event_type)

        if not self.pattern.match(event_type):
            errors.append(
                f"Event type '{event_type}' must follow {{entity}}:{{action}} format "
                f"(lowercase, ':' separating parts)"
            )
            return self._result(errors, event_type)

        entity = extract_entity(event_type)
        if self.allowed_entities and entity not in self.allowed_entities:
            errors.append(
                f"Entity '{entity}' not in allowed entities: {sorted(self.allowed_entities)}"
            )

        return self._result(errors, event_type)

    def validate_payload(
        self,
        payload: dict[str, Any],
        required_fields: set[str] | None = None,
    ) -> ValidationResult:
        """Check the payload is a dict carrying the required fields."""
        errors: list[str] = []

        if not isinstance(payload, dict):
            errors.append(f"Payload must be a dict, got {type(payload).__name__}")
            return self._result(errors)

        if required_fields:
            missing = required_fields - set(payload.keys())
            if missing:
                errors.append(f"Missing required fields: {sorted(missing)}")

        return self._result(errors)

    def validate(
        self,
        event_type: str,
        payload: dict[str, Any],
        required_fields: set[str] | None = None,
    ) -> ValidationResult:
        """Validate type and payload together."""
        all_errors: list[str] = []
        for result in (
            self.validate_event_type(event_type),
            self.validate_payload(payload, required_fields),
        ):
            all_errors.extend(result.errors)
        return self._result(all_errors, event_type)

    def _result(self, errors: list[str], event_type: str | None = None) -> ValidationResult:
        valid = len(errors) == 0
        if self.strict and not valid:
            raise ValidationError("; ".join(errors), event_type)
        return ValidationResult(valid=valid, errors=errors)


def _split(event_type: str) -> list[str]:
    return re.split(r"[:.]", event_type, maxsplit=1)


def extract_entity(event_type: str) -> str | None:
    """Entity part of an event type ("contact" for "contact:changed")."""
    if not event_type:
        return None
    parts = _split(event_type)
    return parts[0] if len(parts) > 1 else None


def extract_action(event_type: str) -> str | None:
    """Everything after the first separator, or None if there is none."""
    if not event_type:
        return None
    parts = _split(event_type)
    return parts[1] if len(parts) > 1 else None


def is_valid_event_type(event_type: str) -> bool:
    """Quick check if event type is valid."""
    return bool(event_type and EVENT_TYPE_PATTERN.match(event_type))
