"""Unit tests for the reversal engine and the append-only action history."""

from __future__ import annotations

import copy
from dataclasses import replace
from uuid import uuid4

import pytest

from app.moderation.domain.errors import ImmutableRecordError, ModerationError, ModerationErrorCode, StaleVersionError
from app.moderation.domain.models import PERMANENT_SUSPENSION_UNTIL, ModerationActionParams, RestrictionType
from app.moderation.domain.repository import ActionQuery


def _params(action_type: str, target_user_id: str, **kwargs) -> ModerationActionParams:
    return ModerationActionParams(action_type=action_type, target_user_id=target_user_id, reason="Policy breach", **kwargs)


async def _take(moderation, actor_id: str, action_type: str, target_user_id: str, **kwargs):
    outcome = await moderation.action_service.take_moderation_action(
        actor_id, _params(action_type, target_user_id, **kwargs)
    )
    return outcome.action


@pytest.mark.asyncio
async def test_revoke_action_records_reversal_and_history(moderation) -> None:
    original_moderator = moderation.moderator()
    reviewer = moderation.moderator()
    target = moderation.user()
    action = await _take(moderation, original_moderator, "user_warned", target)
    moderation.clock.advance(hours=2)

    revoked = await moderation.reversal_service.revoke_action(reviewer, action.id, "Appeal upheld")

    assert revoked.revoked_by == reviewer
    assert revoked.revoked_at == moderation.clock.now
    assert revoked.metadata["reversal_reason"] == "Appeal upheld"
    assert revoked.metadata["is_self_reversal"] is False
    history = revoked.metadata["state_changes"]
    assert [entry["action"] for entry in history] == ["applied", "reversed"]
    assert history[1]["by_user_id"] == reviewer
    assert moderation.dispatcher.sent[-1]["title"] == "Warning Revoked"
    assert moderation.dispatcher.sent[-1]["data"]["action_id"] == action.id
    assert moderation.security_events.of_type("self_reversal_action_revoke") == []


@pytest.mark.asyncio
async def test_second_revoke_is_rejected_without_touching_history(moderation) -> None:
    moderator = moderation.moderator()
    action = await _take(moderation, moderator, "user_warned", moderation.user())
    await moderation.reversal_service.revoke_action(moderator, action.id, "Mistake")

    with pytest.raises(ModerationError) as excinfo:
        await moderation.reversal_service.revoke_action(moderator, action.id, "Mistake again")

    assert excinfo.value.code is ModerationErrorCode.VALIDATION_ERROR
    assert excinfo.value.message == "This action has already been revoked"
    stored = await moderation.actions.get_action(action.id)
    assert stored is not None
    assert [entry["action"] for entry in stored.metadata["state_changes"]] == ["applied", "reversed"]
    assert stored.metadata["reversal_reason"] == "Mistake"


@pytest.mark.asyncio
async def test_concurrent_revoke_loses_compare_and_set(moderation, monkeypatch) -> None:
    moderator = moderation.moderator()
    action = await _take(moderation, moderator, "user_warned", moderation.user())
    stale = await moderation.actions.get_action(action.id)
    await moderation.reversal_service.revoke_action(moderator, action.id, "First reviewer")

    async def _stale_read(action_id: str):
        return copy.deepcopy(stale)

    monkeypatch.setattr(moderation.actions, "get_action", _stale_read)

    with pytest.raises(ModerationError) as excinfo:
        await moderation.reversal_service.revoke_action(moderator, action.id, "Second reviewer")

    assert excinfo.value.code is ModerationErrorCode.CONCURRENT_MODIFICATION
    monkeypatch.undo()
    stored = await moderation.actions.get_action(action.id)
    assert stored is not None and stored.metadata["reversal_reason"] == "First reviewer"


@pytest.mark.asyncio
async def test_self_reversal_is_flagged_and_logged(moderation) -> None:
    moderator = moderation.moderator()
    action = await _take(moderation, moderator, "user_warned", moderation.user())

    revoked = await moderation.reversal_service.revoke_action(moderator, action.id, "Wrong user")

    assert revoked.metadata["is_self_reversal"] is True
    assert revoked.metadata["state_changes"][-1]["is_self_action"] is True
    events = moderation.security_events.of_type("self_reversal_action_revoke")
    assert len(events) == 1
    assert events[0].details["actionId"] == action.id


@pytest.mark.asyncio
async def test_unknown_action_is_not_found(moderation) -> None:
    with pytest.raises(ModerationError) as excinfo:
        await moderation.reversal_service.revoke_action(moderation.moderator(), str(uuid4()), "reason")

    assert excinfo.value.code is ModerationErrorCode.NOT_FOUND


@pytest.mark.asyncio
async def test_moderator_cannot_revoke_ban(moderation) -> None:
    admin = moderation.admin()
    moderator = moderation.moderator()
    target = moderation.user()
    ban = await _take(moderation, admin, "user_banned", target)

    with pytest.raises(ModerationError) as excinfo:
        await moderation.reversal_service.revoke_action(moderator, ban.id, "Too harsh")

    assert excinfo.value.code is ModerationErrorCode.UNAUTHORIZED
    assert len(moderation.security_events.of_type("unauthorized_ban_revoke_attempt")) == 1
    profile = await moderation.profiles.get_profile(target)
    assert profile is not None and profile.is_permanently_banned


@pytest.mark.asyncio
async def test_moderator_cannot_revoke_action_targeting_admin(moderation) -> None:
    admin = moderation.admin()
    other_admin = moderation.admin()
    moderator = moderation.moderator()
    action = await _take(moderation, admin, "user_warned", other_admin)

    with pytest.raises(ModerationError) as excinfo:
        await moderation.reversal_service.revoke_action(moderator, action.id, "reason")

    assert excinfo.value.code is ModerationErrorCode.INSUFFICIENT_PERMISSIONS
    assert len(moderation.security_events.of_type("unauthorized_action_on_admin_target")) == 1


@pytest.mark.asyncio
async def test_revoking_suspension_restores_account(moderation) -> None:
    moderator = moderation.moderator()
    target = moderation.user()
    action = await _take(moderation, moderator, "user_suspended", target, duration_days=5)

    await moderation.reversal_service.revoke_action(moderator, action.id, "Evidence was fabricated")

    profile = await moderation.profiles.get_profile(target)
    assert profile is not None and profile.suspended_until is None
    assert await moderation.action_service.get_user_active_restrictions(target) == []
    assert moderation.dispatcher.sent[-1]["title"] == "Suspension Lifted"


@pytest.mark.asyncio
async def test_revoking_older_suspension_keeps_later_ban(moderation) -> None:
    admin = moderation.admin()
    target = moderation.user()
    suspension = await _take(moderation, admin, "user_suspended", target, duration_days=5)
    moderation.clock.advance(hours=1)
    ban = await _take(moderation, admin, "user_banned", target)

    await moderation.reversal_service.revoke_action(admin, suspension.id, "Superseded by ban")

    profile = await moderation.profiles.get_profile(target)
    assert profile is not None and profile.suspended_until == PERMANENT_SUSPENSION_UNTIL
    active = await moderation.action_service.get_user_active_restrictions(target)
    assert [restriction.related_action_id for restriction in active] == [ban.id]


@pytest.mark.asyncio
async def test_revoking_ban_falls_back_to_open_suspension(moderation) -> None:
    admin = moderation.admin()
    target = moderation.user()
    suspension = await _take(moderation, admin, "user_suspended", target, duration_days=5)
    moderation.clock.advance(hours=1)
    ban = await _take(moderation, admin, "user_banned", target)

    await moderation.reversal_service.revoke_action(admin, ban.id, "Appeal upheld")

    profile = await moderation.profiles.get_profile(target)
    assert profile is not None and profile.suspended_until == suspension.expires_at


@pytest.mark.asyncio
async def test_revoking_content_removal_keeps_content_deleted(moderation) -> None:
    moderator = moderation.moderator()
    owner = moderation.user()
    post_id = moderation.post(owner)
    action = await _take(moderation, moderator, "content_removed", owner, target_type="post", target_id=post_id)

    revoked = await moderation.reversal_service.revoke_action(moderator, action.id, "Context missed")

    assert revoked.is_revoked
    assert not moderation.content.has_content("post", post_id)


@pytest.mark.asyncio
async def test_lift_suspension_clears_profile_and_revokes_latest_action(moderation) -> None:
    moderator = moderation.moderator()
    reviewer = moderation.moderator()
    target = moderation.user()
    action = await _take(moderation, moderator, "user_suspended", target, duration_days=10)

    outcome = await moderation.reversal_service.lift_suspension(reviewer, target, "Served enough")

    assert outcome.action is not None and outcome.action.id == action.id
    assert outcome.action.revoked_by == reviewer
    assert outcome.is_self_reversal is False
    status = await moderation.action_service.get_user_suspension_status(target)
    assert status.is_suspended is False
    assert await moderation.action_service.can_user_perform_action(target, "post") is True
    assert moderation.dispatcher.sent[-1]["title"] == "Suspension Lifted"


@pytest.mark.asyncio
async def test_lift_suspension_requires_active_suspension(moderation) -> None:
    with pytest.raises(ModerationError) as excinfo:
        await moderation.reversal_service.lift_suspension(moderation.moderator(), moderation.user(), "reason")

    assert excinfo.value.code is ModerationErrorCode.VALIDATION_ERROR
    assert excinfo.value.message == "User is not currently suspended"


@pytest.mark.asyncio
async def test_lift_suspension_on_permanent_ban_requires_admin(moderation) -> None:
    admin = moderation.admin()
    moderator = moderation.moderator()
    target = moderation.user()
    await _take(moderation, admin, "user_banned", target)

    with pytest.raises(ModerationError) as excinfo:
        await moderation.reversal_service.lift_suspension(moderator, target, "reason")

    assert excinfo.value.code is ModerationErrorCode.UNAUTHORIZED
    assert len(moderation.security_events.of_type("unauthorized_ban_removal_attempt")) == 1


@pytest.mark.asyncio
async def test_remove_ban_is_admin_only(moderation) -> None:
    admin = moderation.admin()
    moderator = moderation.moderator()
    target = moderation.user()
    ban = await _take(moderation, admin, "user_banned", target)

    with pytest.raises(ModerationError) as denied:
        await moderation.reversal_service.remove_ban(moderator, target, "reason")
    assert denied.value.code is ModerationErrorCode.UNAUTHORIZED

    outcome = await moderation.reversal_service.remove_ban(admin, target, "Appeal granted")

    assert outcome.action is not None and outcome.action.id == ban.id
    assert outcome.is_self_reversal is True
    assert len(moderation.security_events.of_type("self_reversal_permanent_suspension_removal")) == 1
    profile = await moderation.profiles.get_profile(target)
    assert profile is not None and profile.suspended_until is None
    assert moderation.dispatcher.sent[-1]["title"] == "Ban Removed"


@pytest.mark.asyncio
async def test_remove_ban_rejects_temporary_suspension(moderation) -> None:
    admin = moderation.admin()
    target = moderation.user()
    await _take(moderation, admin, "user_suspended", target, duration_days=3)

    with pytest.raises(ModerationError) as excinfo:
        await moderation.reversal_service.remove_ban(admin, target, "reason")

    assert excinfo.value.code is ModerationErrorCode.VALIDATION_ERROR


@pytest.mark.asyncio
async def test_remove_restriction_revokes_related_action(moderation) -> None:
    moderator = moderation.moderator()
    reviewer = moderation.moderator()
    target = moderation.user()
    action = await _take(moderation, moderator, "restriction_applied", target, restriction_type="commenting_disabled")
    restriction_id = action.metadata["restriction_id"]

    outcome = await moderation.reversal_service.remove_user_restriction(reviewer, restriction_id, "Cooled down")

    assert outcome.restriction is not None and outcome.restriction.is_active is False
    assert outcome.action is not None and outcome.action.id == action.id
    assert outcome.action.metadata["restriction_type"] == RestrictionType.COMMENTING_DISABLED.value
    assert outcome.action.metadata["reversal_reason"] == "Cooled down"
    assert await moderation.action_service.can_user_perform_action(target, "comment") is True
    assert moderation.dispatcher.sent[-1]["title"] == "Restriction Removed"


@pytest.mark.asyncio
async def test_remove_inactive_restriction_is_rejected(moderation) -> None:
    moderator = moderation.moderator()
    target = moderation.user()
    action = await _take(moderation, moderator, "restriction_applied", target, restriction_type="posting_disabled")
    restriction_id = action.metadata["restriction_id"]
    await moderation.reversal_service.remove_user_restriction(moderator, restriction_id, "Done")

    with pytest.raises(ModerationError) as excinfo:
        await moderation.reversal_service.remove_user_restriction(moderator, restriction_id, "Again")

    assert excinfo.value.code is ModerationErrorCode.VALIDATION_ERROR


@pytest.mark.asyncio
async def test_moderator_cannot_lift_own_restriction(moderation) -> None:
    admin = moderation.admin()
    moderator = moderation.moderator()
    action = await _take(moderation, admin, "restriction_applied", moderator, restriction_type="upload_disabled")

    with pytest.raises(ModerationError) as excinfo:
        await moderation.reversal_service.remove_user_restriction(moderator, action.metadata["restriction_id"], "mine")

    assert excinfo.value.code is ModerationErrorCode.INSUFFICIENT_PERMISSIONS
    assert len(moderation.security_events.of_type("unauthorized_self_restriction_modification")) == 1


@pytest.mark.asyncio
async def test_repository_rejects_rewrites_of_sealed_reversals(moderation) -> None:
    moderator = moderation.moderator()
    action = await _take(moderation, moderator, "user_warned", moderation.user())
    revoked = await moderation.reversal_service.revoke_action(moderator, action.id, "Original reason")

    edits = [
        replace(revoked, metadata={**revoked.metadata, "reversal_reason": "Rewritten"}),
        replace(revoked, metadata={**revoked.metadata, "state_changes": revoked.metadata["state_changes"][:1]}),
        replace(revoked, revoked_by=str(uuid4())),
        replace(revoked, revoked_at=None, revoked_by=None),
        replace(revoked, reason="Different original reason"),
    ]
    for edit in edits:
        with pytest.raises(ImmutableRecordError):
            await moderation.actions.update_action(edit, expected_version=revoked.version)

    stored = await moderation.actions.get_action(action.id)
    assert stored == revoked


@pytest.mark.asyncio
async def test_repository_allows_appending_history(moderation) -> None:
    moderator = moderation.moderator()
    action = await _take(moderation, moderator, "user_warned", moderation.user())
    revoked = await moderation.reversal_service.revoke_action(moderator, action.id, "Original reason")
    extra_entry = dict(revoked.metadata["state_changes"][-1], action="reapplied")
    appended = replace(
        revoked,
        metadata={**revoked.metadata, "state_changes": [*revoked.metadata["state_changes"], extra_entry]},
    )

    stored = await moderation.actions.update_action(appended, expected_version=revoked.version)

    assert len(stored.metadata["state_changes"]) == 3
    with pytest.raises(StaleVersionError):
        await moderation.actions.update_action(appended, expected_version=revoked.version)


@pytest.mark.asyncio
async def test_revoke_latest_suspension_only_touches_open_actions(moderation) -> None:
    moderator = moderation.moderator()
    target = moderation.user()
    first = await _take(moderation, moderator, "user_suspended", target, duration_days=2)
    await moderation.reversal_service.revoke_action(moderator, first.id, "Too early")
    moderation.clock.advance(hours=1)
    second = await _take(moderation, moderator, "user_suspended", target, duration_days=2)

    outcome = await moderation.reversal_service.lift_suspension(moderator, target, "Resolved")

    assert outcome.action is not None and outcome.action.id == second.id
    open_actions = await moderation.actions.count_actions(ActionQuery(target_user_id=target, revoked=False))
    assert open_actions == 0
