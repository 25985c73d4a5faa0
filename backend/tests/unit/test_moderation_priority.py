"""Unit tests for report priority and request validation helpers."""

from __future__ import annotations

from datetime import timezone

import pytest

from app.moderation.domain.errors import ModerationError, ModerationErrorCode
from app.moderation.domain.models import ReportReason
from app.moderation.domain.priority import calculate_priority, is_high_priority
from app.moderation.domain.validation import (
    parse_date_range,
    parse_iso_datetime,
    require_text,
    require_uuid,
    sanitize_text,
)


@pytest.mark.parametrize(
    ("reason", "expected"),
    [
        (ReportReason.SELF_HARM, 1),
        (ReportReason.HATE_SPEECH, 2),
        (ReportReason.HARASSMENT, 2),
        (ReportReason.SPAM, 3),
        (ReportReason.INAPPROPRIATE_CONTENT, 3),
        (ReportReason.COPYRIGHT_VIOLATION, 3),
        (ReportReason.IMPERSONATION, 3),
        (ReportReason.OTHER, 4),
    ],
)
def test_priority_follows_reason_severity(reason: ReportReason, expected: int) -> None:
    assert calculate_priority(reason) == expected
    assert calculate_priority(reason.value) == expected


def test_high_priority_cutoff() -> None:
    assert is_high_priority(1)
    assert is_high_priority(2)
    assert not is_high_priority(3)
    assert not is_high_priority(4)


def test_sanitize_strips_markup_and_control_characters() -> None:
    assert sanitize_text("  <script>alert(1)</script>hello\x07 & bye ") == "alert(1)hello &amp; bye"
    assert sanitize_text(None) == ""


def test_require_text_rejects_blank_and_oversized_values() -> None:
    with pytest.raises(ModerationError) as blank:
        require_text("   ", 10, "Reason")
    assert blank.value.code is ModerationErrorCode.VALIDATION_ERROR
    assert blank.value.message == "Reason is required"

    with pytest.raises(ModerationError) as too_long:
        require_text("x" * 11, 10, "Reason")
    assert too_long.value.details["maxLength"] == 10


def test_require_uuid_rejects_malformed_ids() -> None:
    with pytest.raises(ModerationError) as excinfo:
        require_uuid("not-a-uuid", "targetId")
    assert excinfo.value.message == "Invalid targetId format"
    assert require_uuid("0f8fad5b-d9cb-469f-a165-70867728950e", "targetId")


def test_parse_iso_datetime_treats_naive_values_as_utc() -> None:
    parsed = parse_iso_datetime("2024-05-01T10:00:00", "startDate")
    assert parsed.tzinfo is timezone.utc
    assert parse_iso_datetime("2024-05-01T10:00:00Z", "startDate") == parsed


def test_parse_date_range_requires_ordered_bounds() -> None:
    with pytest.raises(ModerationError) as missing:
        parse_date_range("", "2024-05-01")
    assert missing.value.message == "Start date and end date are required"

    with pytest.raises(ModerationError) as reversed_range:
        parse_date_range("2024-06-01", "2024-05-01")
    assert reversed_range.value.message == "Start date must be before end date"

    with pytest.raises(ModerationError) as garbage:
        parse_date_range("yesterday", "2024-05-01")
    assert garbage.value.code is ModerationErrorCode.VALIDATION_ERROR
