"""Unit tests for reversal tamper detection."""

from __future__ import annotations

import copy
from datetime import timedelta
from uuid import uuid4

import pytest

from app.moderation.domain.errors import ModerationError, ModerationErrorCode
from app.moderation.domain.immutability import BREACH_ERROR, NOT_REVERSED_ERROR, find_violations
from app.moderation.domain.models import ActionType, ModerationAction, ModerationActionParams, ReportParams, SecurityEvent
from app.moderation.infra.memory_repo import InMemoryActionRepository


class PermissiveActionRepository(InMemoryActionRepository):
    """Storage double whose writes skip the sealed-record checks."""

    async def update_action(self, action: ModerationAction, *, expected_version: int) -> ModerationAction:
        stored = copy.deepcopy(action)
        stored.version = expected_version + 1
        self.put(stored)
        return copy.deepcopy(stored)


class BrokenSecurityEventRepository:
    async def append(self, event):
        return event

    async def list_events(self, **kwargs):
        raise RuntimeError("event store unavailable")


async def _revoked_warning(moderation, moderator: str, target: str | None = None) -> ModerationAction:
    outcome = await moderation.action_service.take_moderation_action(
        moderator,
        ModerationActionParams(action_type="user_warned", target_user_id=target or moderation.user(), reason="Spam"),
    )
    moderation.clock.advance(minutes=30)
    return await moderation.reversal_service.revoke_action(moderator, outcome.action.id, "Wrong account")


def _tamper_event(moderation, event_type: str, user_id: str, *, offset_ms: int = 0) -> SecurityEvent:
    event = SecurityEvent(
        id=str(uuid4()),
        event_type=event_type,
        user_id=user_id,
        details={"actionId": str(uuid4())},
        created_at=moderation.clock.now - timedelta(hours=1) + timedelta(milliseconds=offset_ms),
    )
    moderation.security_events.events.append(event)
    return event


@pytest.mark.asyncio
async def test_revoked_action_passes_immutability_check(moderation) -> None:
    moderator = moderation.moderator()
    revoked = await _revoked_warning(moderation, moderator)

    report = await moderation.monitor.verify_reversal_immutability(moderator, revoked.id)

    assert report.is_immutable is True
    assert report.violations == []
    assert report.action.id == revoked.id


@pytest.mark.asyncio
async def test_open_action_has_nothing_to_verify(moderation) -> None:
    moderator = moderation.moderator()
    outcome = await moderation.action_service.take_moderation_action(
        moderator, ModerationActionParams(action_type="user_warned", target_user_id=moderation.user(), reason="Spam")
    )

    report = await moderation.monitor.verify_reversal_immutability(moderator, outcome.action.id)

    assert report.is_immutable is True


@pytest.mark.asyncio
async def test_corrupted_reversal_is_reported_and_logged(moderation) -> None:
    moderator = moderation.moderator()
    now = moderation.clock.now
    corrupted = ModerationAction(
        id=str(uuid4()),
        moderator_id=moderator,
        target_user_id=str(uuid4()),
        action_type=ActionType.USER_WARNED,
        reason="Spam",
        created_at=now,
        revoked_at=now - timedelta(hours=1),
        revoked_by="system",
        metadata={"reversal_reason": "   "},
    )
    moderation.actions.put(corrupted)

    report = await moderation.monitor.verify_reversal_immutability(moderator, corrupted.id)

    assert report.is_immutable is False
    assert "revoked_by is not a valid user id" in report.violations
    assert "reversal_reason is empty" in report.violations
    assert "revoked_at is before created_at" in report.violations
    events = moderation.security_events.of_type("reversal_immutability_violation_detected")
    assert len(events) == 1
    assert events[0].details["actionId"] == corrupted.id


def test_find_violations_flags_half_sealed_and_future_reversals(moderation) -> None:
    now = moderation.clock.now
    action = ModerationAction(
        id=str(uuid4()),
        moderator_id=str(uuid4()),
        target_user_id=str(uuid4()),
        action_type=ActionType.USER_WARNED,
        reason="Spam",
        created_at=now - timedelta(days=1),
        revoked_at=now + timedelta(days=1),
    )

    violations = find_violations(action, now=now)

    assert "revoked_at and revoked_by must both be set or both be null" in violations
    assert "reversal_reason is missing" in violations
    assert "revoked_at is in the future" in violations


@pytest.mark.asyncio
async def test_modification_attempt_is_prevented_and_logged(moderation) -> None:
    admin = moderation.admin()
    moderator = moderation.moderator()
    revoked = await _revoked_warning(moderation, moderator)

    result = await moderation.monitor.attempt_reversal_modification(admin, revoked.id)

    assert result.prevented is True
    assert result.security_event_logged is True
    assert len(moderation.security_events.of_type("reversal_modification_attempt")) == 1
    assert len(moderation.security_events.of_type("reversal_modification_prevented")) == 1
    stored = await moderation.actions.get_action(revoked.id)
    assert stored is not None and stored.metadata["reversal_reason"] == "Wrong account"


@pytest.mark.asyncio
async def test_modification_attempt_on_open_action_is_a_no_op(moderation) -> None:
    admin = moderation.admin()
    outcome = await moderation.action_service.take_moderation_action(
        admin, ModerationActionParams(action_type="user_warned", target_user_id=moderation.user(), reason="Spam")
    )

    result = await moderation.monitor.attempt_reversal_modification(admin, outcome.action.id)

    assert result.prevented is False
    assert result.security_event_logged is False
    assert result.error == NOT_REVERSED_ERROR


@pytest.mark.asyncio
async def test_modification_attempt_is_admin_only(moderation) -> None:
    moderator = moderation.moderator()
    revoked = await _revoked_warning(moderation, moderator)

    with pytest.raises(ModerationError) as excinfo:
        await moderation.monitor.attempt_reversal_modification(moderator, revoked.id)

    assert excinfo.value.code is ModerationErrorCode.UNAUTHORIZED
    assert len(moderation.security_events.of_type("unauthorized_admin_access")) == 1


@pytest.mark.asyncio
async def test_successful_modification_raises_critical_alert(moderation) -> None:
    permissive = PermissiveActionRepository()
    moderation.monitor.actions = permissive
    admin = moderation.admin()
    second_admin = moderation.admin()
    now = moderation.clock.now
    action = ModerationAction(
        id=str(uuid4()),
        moderator_id=admin,
        target_user_id=str(uuid4()),
        action_type=ActionType.USER_WARNED,
        reason="Spam",
        created_at=now - timedelta(hours=2),
        revoked_at=now - timedelta(hours=1),
        revoked_by=admin,
        metadata={"reversal_reason": "Original"},
    )
    permissive.put(action)

    result = await moderation.monitor.attempt_reversal_modification(admin, action.id, {"reversal_reason": "Edited"})

    assert result.prevented is False
    assert result.error == BREACH_ERROR
    assert len(moderation.security_events.of_type("reversal_modification_succeeded")) == 1
    alerts = [item for item in moderation.dispatcher.sent if item["data"].get("type") == "security_alert"]
    assert sorted(item["user_id"] for item in alerts) == sorted([admin, second_admin])
    assert all(item["data"]["severity"] == "critical" for item in alerts)
    assert alerts[0]["data"]["requires_immediate_action"] is True


@pytest.mark.asyncio
async def test_repeated_rapid_attempts_are_detected(moderation) -> None:
    admin = moderation.admin()
    attacker = str(uuid4())
    for index in range(6):
        _tamper_event(moderation, "reversal_modification_attempt", attacker, offset_ms=index * 200)

    result = await moderation.monitor.detect_suspicious_reversal_activity()

    assert result.suspicious_activity_detected is True
    by_name = {pattern.pattern: pattern for pattern in result.patterns}
    assert by_name["multiple_attempts_same_user"].severity == "medium"
    assert by_name["multiple_attempts_same_user"].details == {"userId": attacker, "attemptCount": 6}
    assert by_name["rapid_fire_attempts"].severity == "high"
    assert by_name["rapid_fire_attempts"].details["rapidAttemptCount"] == 5
    alerts = [item for item in moderation.dispatcher.sent if item["user_id"] == admin]
    assert len(alerts) == 1
    assert alerts[0]["data"]["severity"] == "high"
    assert len(moderation.security_events.of_type("admin_alert_sent")) == 1


@pytest.mark.asyncio
async def test_ten_attempts_escalate_to_high_severity(moderation) -> None:
    attacker = str(uuid4())
    for index in range(10):
        _tamper_event(moderation, "reversal_modification_prevented", attacker, offset_ms=index * 5000)

    result = await moderation.monitor.detect_suspicious_reversal_activity(user_id=attacker)

    patterns = {pattern.pattern: pattern for pattern in result.patterns}
    assert patterns["multiple_attempts_same_user"].severity == "high"
    assert "rapid_fire_attempts" not in patterns


@pytest.mark.asyncio
async def test_breach_and_violation_events_are_reported(moderation) -> None:
    user_id = str(uuid4())
    _tamper_event(moderation, "reversal_modification_succeeded", user_id)
    _tamper_event(moderation, "reversal_immutability_violation_detected", user_id)

    result = await moderation.monitor.detect_suspicious_reversal_activity()

    patterns = {pattern.pattern: pattern for pattern in result.patterns}
    assert patterns["immutability_breach"].severity == "critical"
    assert patterns["immutability_violations"].details == {"violationCount": 1}


@pytest.mark.asyncio
async def test_events_outside_window_are_ignored(moderation) -> None:
    attacker = str(uuid4())
    for index in range(6):
        _tamper_event(moderation, "reversal_modification_attempt", attacker, offset_ms=index * 100)
    moderation.clock.advance(hours=30)

    result = await moderation.monitor.detect_suspicious_reversal_activity(window_hours=24)

    assert result.suspicious_activity_detected is False
    assert result.patterns == []


@pytest.mark.asyncio
async def test_detection_failure_returns_empty_result(moderation) -> None:
    moderation.monitor.security_events = BrokenSecurityEventRepository()

    result = await moderation.monitor.detect_suspicious_reversal_activity()

    assert result.suspicious_activity_detected is False
    assert result.patterns == []


@pytest.mark.asyncio
async def test_previous_reversals_for_reported_content(moderation) -> None:
    moderator = moderation.moderator()
    owner = moderation.user()
    post_id = moderation.post(owner)
    outcome = await moderation.action_service.take_moderation_action(
        moderator,
        ModerationActionParams(
            action_type="content_approved", target_user_id=owner, reason="Fine", target_type="post", target_id=post_id
        ),
    )
    await moderation.reversal_service.revoke_action(moderator, outcome.action.id, "Needs another look")
    report = await moderation.report_service.submit_report(
        moderation.user(), ReportParams(report_type="post", target_id=post_id, reason="spam")
    )

    result = await moderation.monitor.check_previous_reversals(report)

    assert result.has_previous_reversals is True
    assert result.reversal_count == 1
    assert result.most_recent_reversal is not None
    assert result.most_recent_reversal.id == outcome.action.id


@pytest.mark.asyncio
async def test_previous_reversals_for_reported_user(moderation) -> None:
    moderator = moderation.moderator()
    target = moderation.user()
    await _revoked_warning(moderation, moderator, target)
    report = await moderation.report_service.submit_report(
        moderation.user(), ReportParams(report_type="user", target_id=target, reason="harassment")
    )
    fresh = await moderation.report_service.submit_report(
        moderation.user(), ReportParams(report_type="user", target_id=moderation.user(), reason="spam")
    )

    assert (await moderation.monitor.check_previous_reversals(report)).reversal_count == 1
    empty = await moderation.monitor.check_previous_reversals(fresh)
    assert empty.has_previous_reversals is False
    assert empty.most_recent_reversal is None
