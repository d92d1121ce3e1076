"""
Validation Utilities
====================

Input validation for login identifiers.
"""

from __future__ import annotations

import re
from typing import Final

MAX_IDENTIFIER_LENGTH: Final[int] = 320  # longest legal email address

_CONTROL_CHARS: Final[re.Pattern[str]] = re.compile(r"[\x00-\x1f\x7f]")


class ValidationError(ValueError):
    """Raised when validation fails."""
    pass


def validate_string_safe(
    value: str,
    min_length: int = 0,
    max_length: int = 1000,
    allow_empty: bool = False,
    field_name: str = "value",
) -> str:
    """
    Validate a string value for safety.

    Args:
        value: The string to validate
        min_length: Minimum allowed length
        max_length: Maximum allowed length
        allow_empty: If False, empty strings are rejected
        field_name: Name of the field for error messages

    Returns:
        Validated string

    Raises:
        ValidationError: If validation fails
    """
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string")

    if not allow_empty and not value:
        raise ValidationError(f"{field_name} cannot be empty")

    if len(value) < min_length:
        raise ValidationError(f"{field_name} must be at least {min_length} characters")

    if len(value) > max_length:
        raise ValidationError(f"{field_name} must be at most {max_length} characters")

    if _CONTROL_CHARS.search(value):
        raise ValidationError(f"{field_name} contains invalid characters")

    return value


def normalize_identifier(identifier: str) -> str:
    """
    Normalize a login identifier so that one account maps to one record.

    Surrounding whitespace is dropped and the value is lower-cased.

    Raises:
        ValidationError: If the identifier is empty, too long or contains
            control characters
    """
    if not isinstance(identifier, str):
        raise ValidationError("identifier must be a string")
    return validate_string_safe(
        identifier.strip().lower(),
        max_length=MAX_IDENTIFIER_LENGTH,
        field_name="identifier",
    )
