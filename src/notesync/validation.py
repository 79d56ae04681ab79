"""Input validation for notesync.

All validators raise ValidationError with descriptive messages.

CRITICAL: This module must have NO third-party dependencies.
"""

from __future__ import annotations

from typing import Any, Dict

__all__ = [
    "ValidationError",
    "validate_local_id",
    "is_valid_server_id",
    "validate_server_id",
    "validate_note_payload",
    "MAX_TITLE_LENGTH",
    "MAX_NOTE_CONTENT_LENGTH",
]

MAX_TITLE_LENGTH = 255
MAX_NOTE_CONTENT_LENGTH = 100_000

# Placeholder values older clients wrote into serverId
_INVALID_SERVER_ID_STRINGS = frozenset(["", "null", "undefined", "none"])


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


def validate_local_id(value: Any, field: str = "local_id") -> str:
    """Validate a client-assigned note identifier.

    Args:
        value: Candidate identifier
        field: Field name used in the error message

    Returns:
        The identifier, stripped of surrounding whitespace

    Raises:
        ValidationError: If the value is not a non-empty string
    """
    if not isinstance(value, str):
        raise ValidationError(field, "must be a string")
    value = value.strip()
    if not value:
        raise ValidationError(field, "cannot be empty")
    return value


def is_valid_server_id(value: Any) -> bool:
    """Check whether a note carries a usable server identifier.

    A server ID is valid when it is a positive integer or a non-blank
    string other than the placeholders "null"/"undefined". Booleans are
    rejected even though they are ints.
    """
    if value is None or isinstance(value, bool):
        return False
    if isinstance(value, int):
        return value > 0
    if isinstance(value, str):
        return value.strip().lower() not in _INVALID_SERVER_ID_STRINGS
    return False


def validate_server_id(value: Any, field: str = "server_id") -> Any:
    """Validate a server identifier, returning it unchanged."""
    if not is_valid_server_id(value):
        raise ValidationError(field, f"invalid server id {value!r}")
    return value


def validate_note_payload(note: Dict[str, Any]) -> None:
    """Validate the user-editable fields of a note dict.

    Raises:
        ValidationError: If a field has the wrong type or is too long
    """
    title = note.get("title", "")
    if not isinstance(title, str):
        raise ValidationError("title", "must be a string")
    if len(title) > MAX_TITLE_LENGTH:
        raise ValidationError("title", f"exceeds {MAX_TITLE_LENGTH} characters")

    content = note.get("content", "")
    if not isinstance(content, str):
        raise ValidationError("content", "must be a string")
    if len(content) > MAX_NOTE_CONTENT_LENGTH:
        raise ValidationError(
            "content", f"exceeds {MAX_NOTE_CONTENT_LENGTH} characters"
        )

    for list_field in ("tags", "images", "voices"):
        if list_field in note and not isinstance(note[list_field], list):
            raise ValidationError(list_field, "must be a list")
