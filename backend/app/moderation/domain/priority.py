"""Report priority mapping. Lower numbers surface first in the queue."""

from __future__ import annotations

from app.moderation.domain.models import ReportReason

MODERATOR_FLAG_PRIORITY = 1
HIGH_PRIORITY_CUTOFF = 2

_PRIORITY_BY_REASON: dict[ReportReason, int] = {
    ReportReason.SELF_HARM: 1,
    ReportReason.HATE_SPEECH: 2,
    ReportReason.HARASSMENT: 2,
    ReportReason.INAPPROPRIATE_CONTENT: 3,
    ReportReason.SPAM: 3,
    ReportReason.COPYRIGHT_VIOLATION: 3,
    ReportReason.IMPERSONATION: 3,
    ReportReason.OTHER: 4,
}


def calculate_priority(reason: ReportReason | str) -> int:
    return _PRIORITY_BY_REASON.get(ReportReason(reason), 4)


def is_high_priority(priority: int) -> bool:
    return priority <= HIGH_PRIORITY_CUTOFF
