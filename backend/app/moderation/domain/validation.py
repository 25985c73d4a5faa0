"""Input validation and sanitisation for moderation requests."""

from __future__ import annotations

import html
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Type, TypeVar

from app.moderation.domain.errors import validation_error

E = TypeVar("E", bound=Enum)

MAX_DESCRIPTION_LENGTH = 1000
MAX_REASON_LENGTH = 1000
MAX_INTERNAL_NOTES_LENGTH = 5000
MAX_NOTIFICATION_MESSAGE_LENGTH = 2000
MAX_DURATION_DAYS = 365

_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]*>")
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def is_valid_uuid(value: object) -> bool:
    return isinstance(value, str) and bool(_UUID_RE.match(value))


def require_uuid(value: object, field_name: str) -> str:
    if not is_valid_uuid(value):
        raise validation_error(f"Invalid {field_name} format", **{field_name: value})
    return str(value)


def sanitize_text(text: Optional[str]) -> str:
    """Strip markup and control characters, escape what remains, and trim."""
    if not text:
        return ""
    cleaned = _TAG_RE.sub("", text)
    cleaned = _CONTROL_RE.sub("", cleaned)
    return html.escape(cleaned, quote=True).strip()


def validate_text_length(text: Optional[str], max_length: int, field_name: str) -> None:
    if text and len(text) > max_length:
        raise validation_error(
            f"{field_name} must be {max_length} characters or less",
            fieldName=field_name,
            length=len(text),
            maxLength=max_length,
        )


def require_text(text: Optional[str], max_length: int, field_name: str) -> str:
    if not text or not text.strip():
        raise validation_error(f"{field_name} is required")
    validate_text_length(text, max_length, field_name)
    return sanitize_text(text)


def optional_text(text: Optional[str], max_length: int, field_name: str) -> Optional[str]:
    if not text:
        return None
    validate_text_length(text, max_length, field_name)
    return sanitize_text(text) or None


def parse_enum(enum_cls: Type[E], value: object, field_name: str) -> E:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value))
    except ValueError:
        raise validation_error(f"Invalid {field_name}", **{field_name: value}) from None


def parse_iso_datetime(value: object, field_name: str) -> datetime:
    """Parse an ISO-8601 timestamp, treating naive values as UTC."""
    if isinstance(value, datetime):
        parsed = value
    else:
        if not value or not isinstance(value, str):
            raise validation_error(f"{field_name} is required", **{field_name: value})
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise validation_error(
                "Invalid date format. Use ISO 8601 format (YYYY-MM-DDTHH:mm:ss.sssZ)",
                **{field_name: value},
            ) from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_date_range(start: object, end: object) -> tuple[datetime, datetime]:
    if not start or not end:
        raise validation_error("Start date and end date are required", startDate=start, endDate=end)
    start_dt = parse_iso_datetime(start, "startDate")
    end_dt = parse_iso_datetime(end, "endDate")
    if start_dt > end_dt:
        raise validation_error("Start date must be before end date", startDate=start, endDate=end)
    return start_dt, end_dt
