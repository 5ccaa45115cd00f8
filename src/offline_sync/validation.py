"""Input validation for offline-sync.

This module provides validation functions for queue entries, resolution
rules and configuration values. All validators raise ValidationError with
descriptive messages.
"""

from __future__ import annotations

import re
from typing import Any, Iterable, Optional, Type, TypeVar

from enum import Enum

__all__ = [
    "ValidationError",
    "validate_required_string",
    "validate_payload",
    "validate_enum",
    "validate_field_pattern",
    "validate_positive_int",
    "validate_non_negative_number",
    "validate_uuid_hex",
    "MAX_ENTITY_TYPE_LENGTH",
    "MAX_ENTITY_ID_LENGTH",
]

MAX_ENTITY_TYPE_LENGTH = 100
MAX_ENTITY_ID_LENGTH = 255

E = TypeVar("E", bound=Enum)


class ValidationError(ValueError):
    """Validation error with field and message attributes."""

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"

    def __repr__(self) -> str:
        return f"ValidationError(field='{self.field}', message='{self.message}')"


def validate_required_string(
    value: Any, field_name: str, max_length: Optional[int] = None
) -> str:
    """Validate a non-empty string and return it stripped."""
    if not isinstance(value, str):
        raise ValidationError(
            field_name, f"must be a string, got {type(value).__name__}"
        )
    stripped = value.strip()
    if not stripped:
        raise ValidationError(field_name, "is required")
    if max_length is not None and len(stripped) > max_length:
        raise ValidationError(
            field_name, f"must be at most {max_length} characters"
        )
    return stripped


def validate_payload(payload: Any, field_name: str = "payload") -> None:
    """Validate a mutation payload (a non-empty mapping)."""
    if payload is None:
        raise ValidationError(field_name, "is required for create and update operations")
    if not isinstance(payload, dict):
        raise ValidationError(
            field_name, f"must be an object, got {type(payload).__name__}"
        )
    if not payload:
        raise ValidationError(field_name, "is required for create and update operations")


def validate_enum(
    value: Any, enum_type: Type[E], field_name: str, allowed: Optional[Iterable[E]] = None
) -> E:
    """Validate and convert a value into a member of an Enum."""
    try:
        member = enum_type(value)
    except ValueError:
        choices = ", ".join(m.value for m in (allowed or enum_type))
        raise ValidationError(field_name, f"must be one of: {choices}") from None
    if allowed is not None and member not in allowed:
        choices = ", ".join(m.value for m in allowed)
        raise ValidationError(field_name, f"must be one of: {choices}")
    return member


def validate_field_pattern(pattern: Optional[str]) -> Optional[str]:
    """Validate an optional regular expression for rule field matching."""
    if pattern is None or pattern == "":
        return None
    if not isinstance(pattern, str):
        raise ValidationError("field_pattern", "must be a string")
    try:
        re.compile(pattern)
    except re.error as e:
        raise ValidationError("field_pattern", f"invalid regular expression: {e}") from None
    return pattern


def validate_positive_int(value: Any, field_name: str) -> int:
    """Validate an integer greater than zero."""
    if isinstance(value, bool) or not isinstance(value, int):
        try:
            value = int(value)
        except (TypeError, ValueError):
            raise ValidationError(field_name, "must be an integer") from None
    if value < 1:
        raise ValidationError(field_name, "must be greater than zero")
    return value


def validate_non_negative_number(value: Any, field_name: str) -> float:
    """Validate a number that is zero or greater."""
    if isinstance(value, bool):
        raise ValidationError(field_name, "must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(field_name, "must be a number") from None
    if number < 0:
        raise ValidationError(field_name, "must not be negative")
    return number


def validate_uuid_hex(value: Any, field_name: str = "id") -> str:
    """Validate a UUID hex string (hyphens allowed) and normalize it."""
    if not isinstance(value, str):
        raise ValidationError(
            field_name, f"must be a string, got {type(value).__name__}"
        )
    normalized = value.replace("-", "").lower()
    if len(normalized) != 32:
        raise ValidationError(field_name, "must be 32 hex characters")
    try:
        int(normalized, 16)
    except ValueError:
        raise ValidationError(field_name, "must be a valid hex string") from None
    return normalized
