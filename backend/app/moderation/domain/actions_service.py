"""Action executor: applies moderation decisions and their cascades."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence
from uuid import uuid4

from app.infra import rate_limit
from app.moderation.domain.errors import (
    ModerationError,
    ModerationErrorCode,
    RecordStateError,
    moderation_operation,
    not_found,
    validation_error,
)
from app.moderation.domain.metadata import CascadeMetadata, RestrictionMetadata, TrackCascadeMetadata
from app.moderation.domain.models import (
    PERMANENT_SUSPENSION_UNTIL,
    ActionType,
    AlbumContext,
    CascadingOptions,
    ModerationAction,
    ModerationActionParams,
    Report,
    ReportType,
    RestrictionType,
    UserRestriction,
)
from app.moderation.domain.notifications import NotificationPublisher, build_action_notification
from app.moderation.domain.rbac import AuthorizationGuard
from app.moderation.domain.repository import (
    ActionRepository,
    ContentRepository,
    ProfileRepository,
    ReportRepository,
    RestrictionRepository,
)
from app.moderation.domain.security import SecurityEventLogger
from app.moderation.domain.validation import (
    MAX_DURATION_DAYS,
    MAX_INTERNAL_NOTES_LENGTH,
    MAX_NOTIFICATION_MESSAGE_LENGTH,
    MAX_REASON_LENGTH,
    optional_text,
    parse_enum,
    require_text,
    require_uuid,
)
from app.obs import audit
from app.obs import metrics as obs_metrics
from app.settings import settings

logger = logging.getLogger(__name__)

ACTION_RATE_LIMIT_KIND = "moderation_action"

_DELETABLE_CONTENT = frozenset({ReportType.POST.value, ReportType.COMMENT.value, ReportType.TRACK.value})
_OPERATION_RESTRICTIONS: Dict[str, RestrictionType] = {
    "post": RestrictionType.POSTING_DISABLED,
    "comment": RestrictionType.COMMENTING_DISABLED,
    "upload": RestrictionType.UPLOAD_DISABLED,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class ActionOutcome:
    """The primary action plus any track records written by an album cascade."""

    action: ModerationAction
    cascaded: List[ModerationAction] = field(default_factory=list)

    @property
    def records(self) -> List[ModerationAction]:
        return [self.action, *self.cascaded]


@dataclass(slots=True)
class SuspensionStatus:
    is_suspended: bool
    suspended_until: Optional[datetime] = None
    suspension_reason: Optional[str] = None
    is_permanent: bool = False
    days_remaining: Optional[int] = None


@dataclass(slots=True)
class _ValidatedAction:
    action_type: ActionType
    target_user_id: str
    reason: str
    report_id: Optional[str]
    target_type: Optional[str]
    target_id: Optional[str]
    internal_notes: Optional[str]
    duration_days: Optional[int]
    restriction_type: Optional[RestrictionType]
    notification_message: Optional[str]
    cascading: CascadingOptions


def _validate(params: ModerationActionParams) -> _ValidatedAction:
    action_type = parse_enum(ActionType, params.action_type, "actionType")
    target_user_id = require_uuid(params.target_user_id, "targetUserId")
    reason = require_text(params.reason, MAX_REASON_LENGTH, "Reason")
    report_id = require_uuid(params.report_id, "reportId") if params.report_id else None
    target_type = parse_enum(ReportType, params.target_type, "targetType").value if params.target_type else None
    target_id = require_uuid(params.target_id, "targetId") if params.target_id else None
    duration = params.duration_days
    if duration is not None and (isinstance(duration, bool) or not isinstance(duration, int) or not 0 <= duration <= MAX_DURATION_DAYS):
        raise validation_error(
            f"Duration must be between 0 and {MAX_DURATION_DAYS} days", durationDays=params.duration_days
        )
    restriction_type = (
        parse_enum(RestrictionType, params.restriction_type, "restrictionType") if params.restriction_type else None
    )
    if action_type is ActionType.RESTRICTION_APPLIED and restriction_type is None:
        raise validation_error("Restriction type is required for restriction actions")
    return _ValidatedAction(
        action_type=action_type,
        target_user_id=target_user_id,
        reason=reason,
        report_id=report_id,
        target_type=target_type,
        target_id=target_id,
        internal_notes=optional_text(params.internal_notes, MAX_INTERNAL_NOTES_LENGTH, "Internal notes"),
        duration_days=duration or None,
        restriction_type=restriction_type,
        notification_message=optional_text(
            params.notification_message, MAX_NOTIFICATION_MESSAGE_LENGTH, "Notification message"
        ),
        cascading=params.cascading_options or CascadingOptions(),
    )


@dataclass
class ActionService:
    reports: ReportRepository
    actions: ActionRepository
    restrictions: RestrictionRepository
    profiles: ProfileRepository
    content: ContentRepository
    guard: AuthorizationGuard
    events: SecurityEventLogger
    notifications: NotificationPublisher
    action_limit: int = field(default_factory=lambda: settings.moderation_action_rate_limit)
    action_window_seconds: int = field(default_factory=lambda: settings.moderation_action_window_seconds)
    clock: Callable[[], datetime] = _utcnow

    @moderation_operation("taking moderation action")
    async def take_moderation_action(self, actor_id: Optional[str], params: ModerationActionParams) -> ActionOutcome:
        request = _validate(params)
        moderator_id = await self.guard.verify_moderator_role(
            actor_id,
            attempted_action="take_moderation_action",
            message="Only moderators and admins can take moderation actions",
        )
        await self._enforce_action_rate_limit(moderator_id)

        if request.action_type is ActionType.USER_BANNED:
            await self.guard.verify_admin_role(
                moderator_id,
                attempted_action="user_banned",
                event_type="unauthorized_ban_attempt",
                message="Only admins can permanently ban users",
                details={"targetUserId": request.target_user_id},
            )
        await self.guard.verify_not_admin_target(
            moderator_id,
            request.target_user_id,
            attempted_action=request.action_type.value,
            event_type="unauthorized_action_on_admin",
            details={"actionType": request.action_type.value},
        )

        report: Optional[Report] = None
        if request.report_id:
            report = await self.reports.get_report(request.report_id)
            if report is None:
                raise not_found("Report not found", reportId=request.report_id)

        now = self.clock()
        album: Optional[AlbumContext] = None
        if request.target_type == ReportType.ALBUM.value and request.action_type is ActionType.CONTENT_REMOVED:
            if not request.target_id:
                raise validation_error("Album removals require a target id")
            album = await self.content.get_album(request.target_id)
            if album is None:
                raise not_found("Album not found", albumId=request.target_id)
            # Cascade records target the album owner, not the requested user.
            if album.user_id != request.target_user_id:
                await self.guard.verify_not_admin_target(
                    moderator_id,
                    album.user_id,
                    attempted_action=request.action_type.value,
                    event_type="unauthorized_action_on_admin",
                    details={"actionType": request.action_type.value, "albumId": album.id},
                )
            outcome = self._build_cascade(moderator_id, request, album, now)
        else:
            await self._ensure_target_exists(request)
            outcome = ActionOutcome(action=self._build_action(moderator_id, request, now))

        restriction_id = await self._prepare_restriction(request, outcome.action)

        stored = await self.actions.insert_actions(outcome.records)
        outcome = ActionOutcome(action=stored[0], cascaded=list(stored[1:]))
        await rate_limit.record(ACTION_RATE_LIMIT_KIND, moderator_id, window_seconds=self.action_window_seconds)
        for record in outcome.records:
            obs_metrics.MOD_ACTIONS_TOTAL.labels(
                action_type=record.action_type.value, target_type=record.target_type or "none"
            ).inc()
        logger.info(
            "moderation action recorded",
            extra={
                "action_id": outcome.action.id,
                "action_type": outcome.action.action_type.value,
                "record_count": len(outcome.records),
                "moderator_id": moderator_id,
            },
        )

        await self._apply_effects(request, outcome.action, album, restriction_id, now)

        if report is not None:
            await self._resolve_report(report, moderator_id, request.action_type, now)

        if request.action_type in (ActionType.USER_BANNED, ActionType.USER_SUSPENDED):
            audit.log_admin_action(
                moderator_id,
                f"moderation.{request.action_type.value}",
                target_type="user",
                target_id=outcome.action.target_user_id,
                details={"action_id": outcome.action.id, "duration_days": request.duration_days},
            )

        if request.action_type is not ActionType.CONTENT_APPROVED:
            outcome.action = await self._notify_target(request, outcome.action)
        return outcome

    @moderation_operation("fetching album context")
    async def fetch_album_context(self, actor_id: Optional[str], album_id: str) -> AlbumContext:
        await self.guard.verify_moderator_role(actor_id, attempted_action="fetch_album_context")
        album_id = require_uuid(album_id, "albumId")
        album = await self.content.get_album(album_id)
        if album is None:
            raise not_found("Album not found", albumId=album_id)
        return album

    @moderation_operation("checking user restrictions")
    async def can_user_perform_action(self, user_id: str, operation: str) -> bool:
        user_id = require_uuid(user_id, "userId")
        required = _OPERATION_RESTRICTIONS.get(operation)
        if required is None:
            raise validation_error("Invalid operation", operation=operation)
        active = await self.restrictions.list_active(user_id, now=self.clock())
        kinds = {restriction.restriction_type for restriction in active}
        return RestrictionType.SUSPENDED not in kinds and required not in kinds

    @moderation_operation("fetching user restrictions")
    async def get_user_active_restrictions(self, user_id: str) -> Sequence[UserRestriction]:
        user_id = require_uuid(user_id, "userId")
        return await self.restrictions.list_active(user_id, now=self.clock())

    @moderation_operation("fetching suspension status")
    async def get_user_suspension_status(self, user_id: str) -> SuspensionStatus:
        user_id = require_uuid(user_id, "userId")
        profile = await self.profiles.get_profile(user_id)
        now = self.clock()
        if profile is None or profile.suspended_until is None or profile.suspended_until <= now:
            return SuspensionStatus(is_suspended=False)
        if profile.is_permanently_banned:
            return SuspensionStatus(
                is_suspended=True,
                suspended_until=profile.suspended_until,
                suspension_reason=profile.suspension_reason,
                is_permanent=True,
            )
        remaining = (profile.suspended_until - now).total_seconds() / 86400
        return SuspensionStatus(
            is_suspended=True,
            suspended_until=profile.suspended_until,
            suspension_reason=profile.suspension_reason,
            days_remaining=math.ceil(remaining),
        )

    async def _enforce_action_rate_limit(self, moderator_id: str) -> None:
        count = await rate_limit.recent_count(
            ACTION_RATE_LIMIT_KIND, moderator_id, window_seconds=self.action_window_seconds
        )
        if count < self.action_limit:
            return
        await self.events.log(
            "moderation_action_rate_limit_exceeded",
            moderator_id,
            {"actionCount": count, "limit": self.action_limit, "windowSeconds": self.action_window_seconds},
        )
        raise ModerationError(
            f"You have exceeded the limit of {self.action_limit} moderation actions per hour",
            ModerationErrorCode.RATE_LIMIT_EXCEEDED,
            {"actionCount": count, "limit": self.action_limit},
        )

    async def _ensure_target_exists(self, request: _ValidatedAction) -> None:
        if request.action_type is not ActionType.CONTENT_REMOVED:
            return
        if request.target_type not in _DELETABLE_CONTENT or not request.target_id:
            return
        owner = await self.content.resolve_owner(ReportType(request.target_type), request.target_id)
        if owner is None:
            raise not_found("Target content not found", targetType=request.target_type, targetId=request.target_id)

    def _build_action(self, moderator_id: str, request: _ValidatedAction, now: datetime) -> ModerationAction:
        expires_at: Optional[datetime] = None
        if request.duration_days and request.action_type in (
            ActionType.USER_SUSPENDED,
            ActionType.RESTRICTION_APPLIED,
        ):
            expires_at = now + timedelta(days=request.duration_days)
        return ModerationAction(
            id=str(uuid4()),
            moderator_id=moderator_id,
            target_user_id=request.target_user_id,
            action_type=request.action_type,
            reason=request.reason,
            created_at=now,
            target_type=request.target_type,
            target_id=request.target_id,
            internal_notes=request.internal_notes,
            duration_days=request.duration_days,
            expires_at=expires_at,
            related_report_id=request.report_id,
            notification_message=request.notification_message,
        )

    def _build_cascade(
        self,
        moderator_id: str,
        request: _ValidatedAction,
        album: AlbumContext,
        now: datetime,
    ) -> ActionOutcome:
        parent = self._build_action(moderator_id, replace(request, target_user_id=album.user_id), now)
        track_ids = album.track_ids
        cascading = request.cascading.remove_album and request.cascading.remove_tracks
        parent.metadata = CascadeMetadata(cascading_action=cascading, affected_tracks=track_ids).to_document()
        if not cascading:
            return ActionOutcome(action=parent)
        obs_metrics.MOD_CASCADE_TRACKS.observe(len(track_ids))

        lineage = TrackCascadeMetadata(parent_album_action=parent.id, parent_album_id=album.id).to_document()
        children = [
            ModerationAction(
                id=str(uuid4()),
                moderator_id=moderator_id,
                target_user_id=album.user_id,
                action_type=request.action_type,
                reason=request.reason,
                created_at=now,
                target_type=ReportType.TRACK.value,
                target_id=track_id,
                internal_notes=request.internal_notes,
                related_report_id=request.report_id,
                metadata=dict(lineage),
            )
            for track_id in track_ids
        ]
        return ActionOutcome(action=parent, cascaded=children)

    async def _prepare_restriction(self, request: _ValidatedAction, action: ModerationAction) -> Optional[str]:
        if request.action_type is not ActionType.RESTRICTION_APPLIED or request.restriction_type is None:
            return None
        existing = await self.restrictions.find_active(request.target_user_id, request.restriction_type)
        if existing is not None:
            raise validation_error(
                f"User already has an active {request.restriction_type.value} restriction",
                restrictionId=existing.id,
            )
        restriction_id = str(uuid4())
        action.metadata = RestrictionMetadata(
            restriction_type=request.restriction_type, restriction_id=restriction_id
        ).to_document()
        return restriction_id

    async def _apply_effects(
        self,
        request: _ValidatedAction,
        action: ModerationAction,
        album: Optional[AlbumContext],
        restriction_id: Optional[str],
        now: datetime,
    ) -> None:
        kind = request.action_type
        try:
            if kind is ActionType.CONTENT_REMOVED:
                await self._remove_content(request, album)
            elif kind is ActionType.USER_SUSPENDED:
                until = action.expires_at or PERMANENT_SUSPENSION_UNTIL
                await self.profiles.set_suspension(action.target_user_id, until=until, reason=action.reason)
                await self._create_restriction(action, RestrictionType.SUSPENDED, action.expires_at, now)
            elif kind is ActionType.USER_BANNED:
                await self.profiles.set_suspension(
                    action.target_user_id, until=PERMANENT_SUSPENSION_UNTIL, reason=action.reason
                )
                await self._create_restriction(action, RestrictionType.SUSPENDED, None, now)
            elif kind is ActionType.RESTRICTION_APPLIED and request.restriction_type is not None:
                await self._create_restriction(
                    action, request.restriction_type, action.expires_at, now, restriction_id=restriction_id
                )
        except ModerationError:
            raise
        except Exception as exc:
            logger.exception(
                "moderation action recorded but its effect failed",
                extra={"action_id": action.id, "action_type": kind.value},
            )
            raise ModerationError(
                f"Moderation action was recorded but applying it failed: {exc}",
                ModerationErrorCode.DATABASE_ERROR,
                {"actionId": action.id, "originalError": repr(exc)},
            ) from exc

    async def _remove_content(self, request: _ValidatedAction, album: Optional[AlbumContext]) -> None:
        if album is not None:
            if not request.cascading.remove_album:
                logger.info("album removal logged without deleting content", extra={"album_id": album.id})
                return
            await self.content.delete_album(album.id, remove_tracks=request.cascading.remove_tracks)
            return
        if request.target_type in _DELETABLE_CONTENT and request.target_id:
            removed = await self.content.delete_content(request.target_type, request.target_id)
            if not removed:
                logger.warning(
                    "content already gone when removal was applied",
                    extra={"target_type": request.target_type, "target_id": request.target_id},
                )

    async def _create_restriction(
        self,
        action: ModerationAction,
        restriction_type: RestrictionType,
        expires_at: Optional[datetime],
        now: datetime,
        *,
        restriction_id: Optional[str] = None,
    ) -> UserRestriction:
        restriction = UserRestriction(
            id=restriction_id or str(uuid4()),
            user_id=action.target_user_id,
            restriction_type=restriction_type,
            reason=action.reason,
            applied_by=action.moderator_id,
            created_at=now,
            updated_at=now,
            expires_at=expires_at,
            related_action_id=action.id,
        )
        return await self.restrictions.create_restriction(restriction)

    async def _resolve_report(self, report: Report, moderator_id: str, action_type: ActionType, now: datetime) -> None:
        if report.is_resolved:
            logger.warning("report already resolved; leaving it untouched", extra={"report_id": report.id})
            return
        try:
            await self.reports.resolve_report(
                report.id, resolved_by=moderator_id, resolved_at=now, action_taken=action_type
            )
        except RecordStateError:
            logger.warning("report resolved concurrently; leaving it untouched", extra={"report_id": report.id})

    async def _notify_target(self, request: _ValidatedAction, action: ModerationAction) -> ModerationAction:
        title, message = build_action_notification(
            action.action_type,
            reason=action.reason,
            target_type=action.target_type,
            duration_days=action.duration_days,
            expires_at=action.expires_at,
            custom_message=request.notification_message,
            restriction_type=request.restriction_type,
        )
        data: Dict[str, Any] = {
            "action_id": action.id,
            "action_type": action.action_type.value,
            "report_id": action.related_report_id,
        }
        notification_id = await self.notifications.publish(
            action.target_user_id, title, message, data, kind="moderation_action"
        )
        if notification_id is None:
            return action
        action.notification_sent = True
        try:
            return await self.actions.update_action(action, expected_version=action.version)
        except Exception:  # noqa: BLE001
            logger.exception("failed to flag notification as sent", extra={"action_id": action.id})
            action.notification_sent = False
            return action
