"""Unit tests for repeat-offender detection and reversal analytics."""

from __future__ import annotations

import csv
import io
from datetime import timedelta
from typing import Optional
from uuid import uuid4

import pytest

from app.moderation.domain.analytics import CSV_HEADERS, reversal_rate, time_stats
from app.moderation.domain.errors import ModerationError, ModerationErrorCode
from app.moderation.domain.models import (
    ActionType,
    ModerationAction,
    Report,
    ReportReason,
    ReportStatus,
    ReportType,
    ReversalHistoryFilters,
)


def _seed_action(
    moderation,
    *,
    moderator_id: str,
    target_user_id: str,
    action_type: ActionType = ActionType.USER_WARNED,
    age: timedelta = timedelta(hours=1),
    revoked_after: Optional[timedelta] = None,
    revoked_by: Optional[str] = None,
    reversal_reason: str = "Appeal upheld",
    report_id: Optional[str] = None,
) -> ModerationAction:
    created_at = moderation.clock.now - age
    action = ModerationAction(
        id=str(uuid4()),
        moderator_id=moderator_id,
        target_user_id=target_user_id,
        action_type=action_type,
        reason="Policy breach",
        created_at=created_at,
        related_report_id=report_id,
    )
    if revoked_after is not None:
        action.revoked_at = created_at + revoked_after
        action.revoked_by = revoked_by or moderator_id
        action.metadata = {"reversal_reason": reversal_reason, "is_self_reversal": action.revoked_by == moderator_id}
    moderation.actions.put(action)
    return action


async def _seed_report(moderation, priority: int) -> Report:
    report = Report(
        id=str(uuid4()),
        reporter_id=str(uuid4()),
        report_type=ReportType.POST,
        target_id=str(uuid4()),
        reason=ReportReason.SELF_HARM if priority == 1 else ReportReason.SPAM,
        priority=priority,
        status=ReportStatus.RESOLVED,
        created_at=moderation.clock.now - timedelta(days=3),
    )
    return await moderation.reports.create_report(report)


def _range(moderation, days: int = 7) -> tuple[str, str]:
    now = moderation.clock.now
    return (now - timedelta(days=days)).isoformat(), now.isoformat()


def test_reversal_rate_rounds_to_two_decimals() -> None:
    assert reversal_rate(1, 3) == 33.33
    assert reversal_rate(0, 0) == 0.0


def test_time_stats_of_empty_sample_is_zero() -> None:
    stats = time_stats([])
    assert (stats.average_hours, stats.median_hours, stats.fastest_hours, stats.slowest_hours) == (0, 0, 0, 0)


@pytest.mark.asyncio
async def test_repeat_offender_threshold(moderation) -> None:
    moderator = moderation.moderator()
    offender = moderation.user()
    borderline = moderation.user()
    for days in (1, 10, 29):
        _seed_action(moderation, moderator_id=moderator, target_user_id=offender, age=timedelta(days=days))
    for days in (2, 45):
        _seed_action(moderation, moderator_id=moderator, target_user_id=borderline, age=timedelta(days=days))
    _seed_action(moderation, moderator_id=moderator, target_user_id=borderline, age=timedelta(days=5))

    assert await moderation.analytics.detect_repeat_offender(offender) is True
    assert await moderation.analytics.detect_repeat_offender(borderline) is False
    assert await moderation.analytics.detect_repeat_offender(None) is False


@pytest.mark.asyncio
async def test_violation_timeline_buckets(moderation) -> None:
    moderator = moderation.moderator()
    user = moderation.user()
    for days in (1, 5, 20, 60, 120):
        _seed_action(moderation, moderator_id=moderator, target_user_id=user, age=timedelta(days=days))

    timeline = await moderation.analytics.calculate_violation_timeline(user)

    assert timeline is not None
    assert (timeline.last_7_days, timeline.last_30_days, timeline.last_90_days) == (2, 3, 4)
    assert timeline.message == "2 violations in last 7 days"


@pytest.mark.asyncio
async def test_violation_timeline_messages(moderation) -> None:
    moderator = moderation.moderator()
    single = moderation.user()
    _seed_action(moderation, moderator_id=moderator, target_user_id=single, age=timedelta(days=12))

    timeline = await moderation.analytics.calculate_violation_timeline(single)
    assert timeline is not None and timeline.message == "1 violation in last 30 days"

    clean = await moderation.analytics.calculate_violation_timeline(moderation.user())
    assert clean is not None and clean.message == "No violations in last 90 days"
    assert await moderation.analytics.calculate_violation_timeline(None) is None


@pytest.mark.asyncio
async def test_reversal_rate_by_type_and_priority(moderation) -> None:
    moderator = moderation.moderator()
    target = moderation.user()
    urgent = await _seed_report(moderation, priority=1)
    _seed_action(moderation, moderator_id=moderator, target_user_id=target, revoked_after=timedelta(hours=1), report_id=urgent.id)
    _seed_action(moderation, moderator_id=moderator, target_user_id=target, report_id=urgent.id)
    _seed_action(moderation, moderator_id=moderator, target_user_id=target, action_type=ActionType.CONTENT_REMOVED)
    _seed_action(moderation, moderator_id=moderator, target_user_id=target, action_type=ActionType.CONTENT_REMOVED)
    _seed_action(moderation, moderator_id=moderator, target_user_id=target, age=timedelta(days=30))
    start, end = _range(moderation)

    result = await moderation.analytics.calculate_reversal_rate(moderator, start, end)

    assert result.total_actions == 4
    assert result.total_reversals == 1
    assert result.overall_reversal_rate == 25.0
    assert [(item.action_type, item.reversal_rate) for item in result.by_action_type] == [
        ("user_warned", 50.0),
        ("content_removed", 0.0),
    ]
    assert [(item.priority, item.total_actions, item.reversed_actions) for item in result.by_priority] == [
        (1, 2, 1),
        (3, 2, 0),
    ]


@pytest.mark.asyncio
async def test_reversal_analytics_require_moderator(moderation) -> None:
    start, end = _range(moderation)

    with pytest.raises(ModerationError) as excinfo:
        await moderation.analytics.calculate_reversal_rate(moderation.user(), start, end)

    assert excinfo.value.code is ModerationErrorCode.UNAUTHORIZED


@pytest.mark.asyncio
async def test_reversal_analytics_reject_inverted_range(moderation) -> None:
    start, end = _range(moderation)

    with pytest.raises(ModerationError) as excinfo:
        await moderation.analytics.get_reversal_metrics(moderation.moderator(), end, start)

    assert excinfo.value.code is ModerationErrorCode.VALIDATION_ERROR


@pytest.mark.asyncio
async def test_reversal_metrics_per_moderator(moderation) -> None:
    careful = moderation.moderator()
    hasty = moderation.moderator()
    reviewer = moderation.admin()
    target = moderation.user()
    _seed_action(moderation, moderator_id=careful, target_user_id=target)
    _seed_action(moderation, moderator_id=careful, target_user_id=target)
    _seed_action(moderation, moderator_id=hasty, target_user_id=target, revoked_after=timedelta(hours=2))
    _seed_action(
        moderation,
        moderator_id=hasty,
        target_user_id=target,
        revoked_after=timedelta(hours=4),
        revoked_by=reviewer,
        age=timedelta(hours=5),
    )
    start, end = _range(moderation)

    metrics = await moderation.analytics.get_reversal_metrics(careful, start, end)

    assert metrics.total_actions == 4
    assert metrics.overall_reversal_rate == 50.0
    assert [item.moderator_id for item in metrics.per_moderator_stats] == [hasty, careful]
    hasty_stats = metrics.per_moderator_stats[0]
    assert hasty_stats.reversal_rate == 100.0
    assert hasty_stats.self_reversals == 1
    assert hasty_stats.reversals_by_others == 1
    assert hasty_stats.average_time_to_reversal_hours == 3.0
    assert hasty_stats.actions_by_type["user_warned"].reversed == 2
    assert metrics.time_to_reversal_stats.median_hours == 3.0

    single = await moderation.analytics.get_moderator_reversal_stats(careful, careful, start, end)
    assert single.total_actions == 2
    assert single.reversal_rate == 0.0


@pytest.mark.asyncio
async def test_reversal_time_metrics_by_type(moderation) -> None:
    moderator = moderation.moderator()
    target = moderation.user()
    _seed_action(moderation, moderator_id=moderator, target_user_id=target, revoked_after=timedelta(hours=2), age=timedelta(hours=10))
    _seed_action(moderation, moderator_id=moderator, target_user_id=target, revoked_after=timedelta(hours=6), age=timedelta(hours=10))
    _seed_action(
        moderation,
        moderator_id=moderator,
        target_user_id=target,
        action_type=ActionType.USER_SUSPENDED,
        revoked_after=timedelta(hours=1),
        age=timedelta(hours=10),
    )
    start, end = _range(moderation)

    metrics = await moderation.analytics.get_reversal_time_metrics(moderator, start, end)

    assert metrics.overall.fastest_hours == 1.0
    assert metrics.overall.slowest_hours == 6.0
    assert metrics.overall.average_hours == 3.0
    warned = metrics.by_action_type["user_warned"]
    assert (warned.count, warned.average_hours, warned.median_hours) == (2, 4.0, 4.0)
    assert metrics.by_action_type["user_suspended"].count == 1


@pytest.mark.asyncio
async def test_user_history_includes_reversal_details(moderation) -> None:
    moderator = moderation.moderator()
    target = moderation.user()
    live = _seed_action(moderation, moderator_id=moderator, target_user_id=target, age=timedelta(hours=1))
    revoked = _seed_action(
        moderation, moderator_id=moderator, target_user_id=target, age=timedelta(hours=3), revoked_after=timedelta(minutes=90)
    )

    history = await moderation.analytics.get_user_moderation_history(moderator, target)

    assert [entry.action.id for entry in history] == [live.id, revoked.id]
    entry = history[1]
    assert entry.is_revoked is True
    assert entry.reversal_reason == "Appeal upheld"
    assert entry.time_between_action_and_reversal_ms == 90 * 60 * 1000
    assert [change.action.value for change in entry.state_changes] == ["applied"]
    assert entry.was_reapplied is False

    open_only = await moderation.analytics.get_user_moderation_history(moderator, target, include_revoked=False)
    assert [item.action.id for item in open_only] == [live.id]


@pytest.mark.asyncio
async def test_reversal_history_filters(moderation) -> None:
    moderator = moderation.moderator()
    reviewer = moderation.moderator()
    target = moderation.user()
    appeal = _seed_action(
        moderation, moderator_id=moderator, target_user_id=target, revoked_after=timedelta(minutes=5), reversal_reason="Appeal upheld"
    )
    _seed_action(
        moderation,
        moderator_id=moderator,
        target_user_id=target,
        revoked_after=timedelta(minutes=10),
        revoked_by=reviewer,
        reversal_reason="Wrong target",
    )
    _seed_action(moderation, moderator_id=moderator, target_user_id=target)

    everything = await moderation.analytics.get_reversal_history(moderator)
    assert len(everything) == 2

    by_reason = await moderation.analytics.get_reversal_history(moderator, ReversalHistoryFilters(reversal_reason="APPEAL"))
    assert [entry.action.id for entry in by_reason] == [appeal.id]
    assert by_reason[0].is_self_reversal is True

    by_reviewer = await moderation.analytics.get_reversal_history(moderator, ReversalHistoryFilters(revoked_by=reviewer))
    assert [entry.is_self_reversal for entry in by_reviewer] == [False]


@pytest.mark.asyncio
async def test_csv_export_is_admin_only(moderation) -> None:
    moderator = moderation.moderator()

    with pytest.raises(ModerationError) as excinfo:
        await moderation.analytics.export_reversal_history_csv(moderator)

    assert excinfo.value.code is ModerationErrorCode.UNAUTHORIZED


@pytest.mark.asyncio
async def test_csv_export_rows(moderation) -> None:
    admin = moderation.admin()
    moderator = moderation.moderator()
    target = moderation.user()
    action = _seed_action(
        moderation,
        moderator_id=moderator,
        target_user_id=target,
        revoked_after=timedelta(hours=1, minutes=30),
        reversal_reason='Said "sorry", appeal upheld',
    )

    exported = await moderation.analytics.export_reversal_history_csv(admin)

    assert exported.splitlines()[0].startswith('"Action ID","Action Type"')
    rows = list(csv.reader(io.StringIO(exported)))
    assert rows[0] == CSV_HEADERS
    assert len(rows) == 2
    row = dict(zip(CSV_HEADERS, rows[1]))
    assert row["Action ID"] == action.id
    assert row["Reversal Reason"] == 'Said "sorry", appeal upheld'
    assert row["Time to Reversal (Hours)"] == "1.50"
    assert row["Is Self Reversal"] == "Yes"
    assert row["Was Reapplied"] == "No"
    assert row["Duration (Days)"] == ""
