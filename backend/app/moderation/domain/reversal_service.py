"""Reversal engine: revokes actions while keeping their history append-only.

Every reversal path funnels through :meth:`ReversalService._record_reversal`,
which appends the ``reversed`` state change and seals ``revoked_at`` /
``revoked_by`` with a compare-and-set on the action version. Losing that race
raises ``CONCURRENT_MODIFICATION`` and writes nothing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional

from app.moderation.domain.errors import (
    ImmutableRecordError,
    ModerationError,
    ModerationErrorCode,
    StaleVersionError,
    moderation_operation,
    not_found,
    validation_error,
)
from app.moderation.domain.metadata import ReversalMetadata, initial_state_change, state_changes_of
from app.moderation.domain.models import (
    PERMANENT_SUSPENSION_UNTIL,
    ActionType,
    ModerationAction,
    RestrictionType,
    StateChangeEntry,
    StateChangeKind,
    UserRestriction,
)
from app.moderation.domain.notifications import (
    NotificationPublisher,
    build_restriction_removal_notification,
    build_reversal_notification,
)
from app.moderation.domain.rbac import AuthorizationGuard
from app.moderation.domain.repository import ActionQuery, ActionRepository, ProfileRepository, RestrictionRepository
from app.moderation.domain.security import SecurityEventLogger
from app.moderation.domain.validation import MAX_REASON_LENGTH, require_text, require_uuid
from app.obs import audit
from app.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

_SUSPENSION_TYPES = (ActionType.USER_SUSPENDED, ActionType.USER_BANNED)


def _suspended_until(action: ModerationAction) -> datetime:
    if action.action_type is ActionType.USER_BANNED or action.expires_at is None:
        return PERMANENT_SUSPENSION_UNTIL
    return action.expires_at


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class ReversalOutcome:
    action: Optional[ModerationAction]
    is_self_reversal: bool = False
    restriction: Optional[UserRestriction] = None


@dataclass
class ReversalService:
    actions: ActionRepository
    restrictions: RestrictionRepository
    profiles: ProfileRepository
    guard: AuthorizationGuard
    events: SecurityEventLogger
    notifications: NotificationPublisher
    clock: Callable[[], datetime] = _utcnow

    @moderation_operation("revoking moderation action")
    async def revoke_action(self, actor_id: Optional[str], action_id: str, reason: str) -> ModerationAction:
        action_id = require_uuid(action_id, "actionId")
        reason = require_text(reason, MAX_REASON_LENGTH, "Reason")
        moderator_id = await self.guard.verify_moderator_role(
            actor_id,
            attempted_action="revoke_action",
            message="Only moderators and admins can revoke actions",
        )
        action = await self.actions.get_action(action_id)
        if action is None:
            raise not_found("Moderation action not found", actionId=action_id)
        if action.is_revoked:
            raise validation_error("This action has already been revoked", actionId=action_id)
        if action.action_type is ActionType.USER_BANNED:
            await self.guard.verify_admin_role(
                moderator_id,
                attempted_action="revoke_ban",
                event_type="unauthorized_ban_revoke_attempt",
                message="Only admins can revoke permanent bans",
                details={"actionId": action_id},
            )
        await self.guard.verify_not_admin_target(
            moderator_id,
            action.target_user_id,
            attempted_action="revoke_action",
            details={"actionId": action_id, "actionType": action.action_type.value},
        )

        now = self.clock()
        await self._undo_effects(action, now)
        revoked = await self._record_reversal(
            moderator_id, action, reason, now, self_event_type="self_reversal_action_revoke"
        )
        restriction_type = _restriction_type_of(action)
        title, message = build_reversal_notification(
            action,
            reason=reason,
            reversed_by=await self._display_name(moderator_id),
            restriction_type=restriction_type,
        )
        await self._notify(action.target_user_id, title, message, revoked, reason)
        audit.log_admin_action(
            moderator_id,
            "moderation.action_revoked",
            target_type="moderation_action",
            target_id=action.id,
            details={"action_type": action.action_type.value, "target_user_id": action.target_user_id},
        )
        return revoked

    @moderation_operation("lifting suspension")
    async def lift_suspension(self, actor_id: Optional[str], user_id: str, reason: str) -> ReversalOutcome:
        user_id = require_uuid(user_id, "userId")
        reason = require_text(reason, MAX_REASON_LENGTH, "Reason")
        moderator_id = await self.guard.verify_moderator_role(
            actor_id,
            attempted_action="lift_suspension",
            message="Only moderators and admins can lift suspensions",
        )
        await self.guard.verify_not_admin_target(moderator_id, user_id, attempted_action="lift_suspension")
        profile = await self.profiles.get_profile(user_id)
        if profile is None or profile.suspended_until is None:
            raise validation_error("User is not currently suspended", userId=user_id)
        if profile.is_permanently_banned:
            await self.guard.verify_admin_role(
                moderator_id,
                attempted_action="lift_suspension",
                event_type="unauthorized_ban_removal_attempt",
                message="Only admins can remove permanent bans",
                details={"targetUserId": user_id},
            )

        now = self.clock()
        await self.profiles.clear_suspension(user_id)
        await self.restrictions.deactivate_by_type(user_id, RestrictionType.SUSPENDED, at=now)
        outcome = await self._revoke_latest(
            moderator_id,
            user_id,
            _SUSPENSION_TYPES,
            reason,
            now,
            self_event_type="self_reversal_suspension_lift",
        )
        await self._notify_helper(outcome, user_id, reason, moderator_id, title="Suspension Lifted")
        audit.log_admin_action(
            moderator_id,
            "moderation.suspension_lifted",
            target_type="user",
            target_id=user_id,
            details={"action_id": outcome.action.id if outcome.action else None},
        )
        return outcome

    @moderation_operation("removing ban")
    async def remove_ban(self, actor_id: Optional[str], user_id: str, reason: str) -> ReversalOutcome:
        user_id = require_uuid(user_id, "userId")
        reason = require_text(reason, MAX_REASON_LENGTH, "Reason")
        admin_id = await self.guard.verify_admin_role(
            actor_id,
            attempted_action="remove_ban",
            event_type="unauthorized_ban_removal_attempt",
            message="Only admins can remove permanent bans",
            details={"targetUserId": user_id},
        )
        profile = await self.profiles.get_profile(user_id)
        if profile is None or not profile.is_permanently_banned:
            raise validation_error(
                "User is not permanently banned. Use lift_suspension for temporary suspensions.",
                userId=user_id,
            )

        now = self.clock()
        await self.profiles.clear_suspension(user_id)
        await self.restrictions.deactivate_by_type(user_id, RestrictionType.SUSPENDED, at=now)
        outcome = await self._revoke_latest(
            admin_id,
            user_id,
            (ActionType.USER_BANNED,),
            reason,
            now,
            self_event_type="self_reversal_permanent_suspension_removal",
        )
        await self._notify_helper(outcome, user_id, reason, admin_id, title="Ban Removed")
        audit.log_admin_action(
            admin_id,
            "moderation.ban_removed",
            target_type="user",
            target_id=user_id,
            details={"action_id": outcome.action.id if outcome.action else None},
        )
        return outcome

    @moderation_operation("removing restriction")
    async def remove_user_restriction(
        self,
        actor_id: Optional[str],
        restriction_id: str,
        reason: str,
    ) -> ReversalOutcome:
        restriction_id = require_uuid(restriction_id, "restrictionId")
        reason = require_text(reason, MAX_REASON_LENGTH, "Reason")
        moderator_id = await self.guard.verify_moderator_role(
            actor_id,
            attempted_action="remove_user_restriction",
            message="Only moderators and admins can remove restrictions",
        )
        restriction = await self.restrictions.get_restriction(restriction_id)
        if restriction is None:
            raise not_found("Restriction not found", restrictionId=restriction_id)
        if not restriction.is_active:
            raise validation_error("Restriction is not active", restrictionId=restriction_id)
        if restriction.user_id == moderator_id:
            await self.events.log(
                "unauthorized_self_restriction_modification",
                moderator_id,
                {"restrictionId": restriction_id, "restrictionType": restriction.restriction_type.value},
            )
            raise ModerationError(
                "You cannot remove restrictions from your own account",
                ModerationErrorCode.INSUFFICIENT_PERMISSIONS,
                {"restrictionId": restriction_id},
            )
        await self.guard.verify_not_admin_target(
            moderator_id,
            restriction.user_id,
            attempted_action="remove_user_restriction",
            details={"restrictionId": restriction_id},
        )

        now = self.clock()
        deactivated = await self.restrictions.deactivate(restriction_id, at=now) or restriction
        outcome = ReversalOutcome(action=None, restriction=deactivated)
        if restriction.related_action_id:
            related = await self.actions.get_action(restriction.related_action_id)
            if related is not None and not related.is_revoked:
                revoked = await self._record_reversal(
                    moderator_id,
                    related,
                    reason,
                    now,
                    self_event_type="self_reversal_restriction_removal",
                    extra={"restriction_id": restriction.id, "restriction_type": restriction.restriction_type.value},
                )
                outcome.action = revoked
                outcome.is_self_reversal = bool(revoked.metadata.get("is_self_reversal"))

        title, message = build_restriction_removal_notification(
            restriction.restriction_type, reason=reason, reversed_by=await self._display_name(moderator_id)
        )
        await self._notify(restriction.user_id, title, message, outcome.action, reason)
        audit.log_admin_action(
            moderator_id,
            "moderation.restriction_removed",
            target_type="user_restriction",
            target_id=restriction.id,
            details={"user_id": restriction.user_id, "restriction_type": restriction.restriction_type.value},
        )
        return outcome

    async def _revoke_latest(
        self,
        actor_id: str,
        user_id: str,
        action_types: tuple[ActionType, ...],
        reason: str,
        now: datetime,
        *,
        self_event_type: str,
    ) -> ReversalOutcome:
        candidates = await self.actions.list_actions(
            ActionQuery(target_user_id=user_id, action_types=action_types, revoked=False, limit=1)
        )
        if not candidates:
            logger.warning(
                "no open suspension action to revoke",
                extra={"target_user_id": user_id, "action_types": [item.value for item in action_types]},
            )
            return ReversalOutcome(action=None)
        revoked = await self._record_reversal(actor_id, candidates[0], reason, now, self_event_type=self_event_type)
        return ReversalOutcome(action=revoked, is_self_reversal=bool(revoked.metadata.get("is_self_reversal")))

    async def _record_reversal(
        self,
        actor_id: str,
        action: ModerationAction,
        reason: str,
        now: datetime,
        *,
        self_event_type: str,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> ModerationAction:
        is_self = self.guard.check_self_reversal(actor_id, action)
        appended = [] if state_changes_of(action) else [initial_state_change(action)]
        appended.append(
            StateChangeEntry(
                timestamp=now,
                action=StateChangeKind.REVERSED,
                by_user_id=actor_id,
                reason=reason,
                is_self_action=is_self,
            )
        )
        metadata = ReversalMetadata(
            reversal_reason=reason,
            is_self_reversal=is_self,
            appended=appended,
            extra=dict(extra or {}),
        ).merge_into(action.metadata)
        updated = replace(action, revoked_at=now, revoked_by=actor_id, metadata=metadata)
        try:
            stored = await self.actions.update_action(updated, expected_version=action.version)
        except StaleVersionError as exc:
            raise ModerationError(
                "This action was modified by another moderator. Reload and try again.",
                ModerationErrorCode.CONCURRENT_MODIFICATION,
                {"actionId": action.id},
            ) from exc
        except ImmutableRecordError as exc:
            raise ModerationError(
                "This action has already been revoked",
                ModerationErrorCode.INVALID_ACTION,
                {"actionId": action.id, "reason": str(exc)},
            ) from exc

        obs_metrics.MOD_REVERSALS_TOTAL.labels(
            action_type=action.action_type.value, self_reversal=str(is_self).lower()
        ).inc()
        logger.info(
            "moderation action revoked",
            extra={"action_id": action.id, "revoked_by": actor_id, "is_self_reversal": is_self},
        )
        if is_self:
            await self.events.log(
                self_event_type,
                actor_id,
                {"actionId": action.id, "actionType": action.action_type.value, "reason": reason},
            )
        return stored

    async def _undo_effects(self, action: ModerationAction, now: datetime) -> None:
        if action.action_type in _SUSPENSION_TYPES:
            await self._restore_suspension_state(action, now)
            await self.restrictions.deactivate_for_action(action.id, at=now)
        elif action.action_type is ActionType.RESTRICTION_APPLIED:
            await self.restrictions.deactivate_for_action(action.id, at=now)
        elif action.action_type is ActionType.CONTENT_REMOVED:
            logger.warning(
                "removed content cannot be restored by a reversal",
                extra={"action_id": action.id, "target_type": action.target_type, "target_id": action.target_id},
            )

    async def _restore_suspension_state(self, action: ModerationAction, now: datetime) -> None:
        """Clear the profile suspension unless another open suspension or ban still applies."""
        remaining = [
            other
            for other in await self.actions.list_actions(
                ActionQuery(target_user_id=action.target_user_id, action_types=_SUSPENSION_TYPES, revoked=False)
            )
            if other.id != action.id and _suspended_until(other) > now
        ]
        if not remaining:
            await self.profiles.clear_suspension(action.target_user_id)
            return
        strongest = max(remaining, key=_suspended_until)
        await self.profiles.set_suspension(
            action.target_user_id, until=_suspended_until(strongest), reason=strongest.reason
        )
        logger.info(
            "suspension kept after revoke",
            extra={"action_id": action.id, "remaining_action_id": strongest.id},
        )

    async def _display_name(self, user_id: str) -> str:
        profile = await self.profiles.get_profile(user_id)
        if profile is not None and profile.username:
            return profile.username
        return "a moderator"

    async def _notify_helper(
        self,
        outcome: ReversalOutcome,
        user_id: str,
        reason: str,
        actor_id: str,
        *,
        title: str,
    ) -> None:
        reversed_by = await self._display_name(actor_id)
        if outcome.action is not None:
            title, message = build_reversal_notification(
                outcome.action, reason=reason, reversed_by=reversed_by, title=title
            )
        else:
            message = (
                f"{title}.\n\nReversed by: {reversed_by}\nReason: {reason}\n\n"
                "Your account has been fully restored."
            )
        await self._notify(user_id, title, message, outcome.action, reason)

    async def _notify(
        self,
        user_id: str,
        title: str,
        message: str,
        action: Optional[ModerationAction],
        reason: str,
    ) -> None:
        data: Dict[str, Any] = {"type": "moderation_reversal", "reversal_reason": reason}
        if action is not None:
            data["action_id"] = action.id
            data["action_type"] = action.action_type.value
        await self.notifications.publish(user_id, title, message, data, kind="moderation_reversal")


def _restriction_type_of(action: ModerationAction) -> Optional[RestrictionType]:
    if action.action_type is not ActionType.RESTRICTION_APPLIED:
        return None
    raw = action.metadata.get("restriction_type")
    try:
        return RestrictionType(raw) if raw else None
    except ValueError:
        return None
