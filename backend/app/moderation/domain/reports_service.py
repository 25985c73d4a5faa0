"""Report intake: validation, quotas, duplicate detection and priority."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Sequence
from uuid import uuid4

from app.moderation.domain.errors import ModerationError, ModerationErrorCode, moderation_operation, not_found, validation_error
from app.moderation.domain.models import (
    ModeratorFlagParams,
    QueueFilters,
    Report,
    ReportParams,
    ReportReason,
    ReportStatus,
    ReportType,
    Role,
)
from app.moderation.domain.notifications import NotificationPublisher, build_high_priority_report_notification
from app.moderation.domain.priority import MODERATOR_FLAG_PRIORITY, calculate_priority, is_high_priority
from app.moderation.domain.rbac import AuthorizationGuard
from app.moderation.domain.repository import ContentRepository, ReportRepository, RoleStore
from app.moderation.domain.security import SecurityEventLogger
from app.moderation.domain.validation import (
    MAX_DESCRIPTION_LENGTH,
    MAX_INTERNAL_NOTES_LENGTH,
    optional_text,
    parse_enum,
    require_text,
    require_uuid,
)
from app.obs import metrics as obs_metrics
from app.settings import settings

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ReportService:
    reports: ReportRepository
    content: ContentRepository
    roles: RoleStore
    guard: AuthorizationGuard
    events: SecurityEventLogger
    notifications: NotificationPublisher
    report_limit: int = field(default_factory=lambda: settings.moderation_report_rate_limit)
    report_window: timedelta = field(
        default_factory=lambda: timedelta(milliseconds=settings.moderation_report_window_ms)
    )
    duplicate_window: timedelta = field(
        default_factory=lambda: timedelta(hours=settings.moderation_duplicate_window_hours)
    )
    clock: Callable[[], datetime] = _utcnow

    @moderation_operation("submitting report")
    async def submit_report(self, actor_id: Optional[str], params: ReportParams) -> Report:
        report_type = parse_enum(ReportType, params.report_type, "reportType")
        reason = parse_enum(ReportReason, params.reason, "reason")
        target_id = require_uuid(params.target_id, "targetId")
        if reason is ReportReason.OTHER:
            description: Optional[str] = require_text(params.description, MAX_DESCRIPTION_LENGTH, "Description")
        else:
            description = optional_text(params.description, MAX_DESCRIPTION_LENGTH, "Description")

        reporter_id = self.guard.require_actor(actor_id)
        now = self.clock()

        if report_type is ReportType.USER and target_id == reporter_id:
            raise validation_error("You cannot report your own profile", targetId=target_id)

        reported_user_id = await self._resolve_reported_user(report_type, target_id)
        if report_type is not ReportType.USER and reported_user_id == reporter_id:
            raise validation_error("You cannot report your own content", targetId=target_id)

        await self._reject_duplicate(reporter_id, report_type, target_id, now)

        recent = await self.reports.count_reports_since(reporter_id, now - self.report_window)
        if recent >= self.report_limit:
            obs_metrics.MOD_REPORTS_REJECTED_TOTAL.labels(reason="rate_limit").inc()
            await self.events.log(
                "rate_limit_exceeded",
                reporter_id,
                {"reportCount": recent, "limit": self.report_limit, "reportType": report_type.value},
            )
            raise ModerationError(
                f"You have exceeded the report limit of {self.report_limit} reports per 24 hours. Please try again later.",
                ModerationErrorCode.RATE_LIMIT_EXCEEDED,
                {"reportCount": recent, "limit": self.report_limit},
            )

        if report_type is ReportType.USER and await self.guard.is_admin(target_id):
            obs_metrics.MOD_REPORTS_REJECTED_TOTAL.labels(reason="admin_target").inc()
            await self.events.log(
                "admin_report_attempt",
                reporter_id,
                {"targetUserId": target_id, "reason": reason.value},
            )
            raise validation_error("This account cannot be reported", targetId=target_id)

        priority = calculate_priority(reason)
        report = Report(
            id=str(uuid4()),
            reporter_id=reporter_id,
            report_type=report_type,
            target_id=target_id,
            reported_user_id=reported_user_id,
            reason=reason,
            description=description,
            priority=priority,
            status=ReportStatus.PENDING,
            moderator_flagged=False,
            created_at=now,
        )
        stored = await self.reports.create_report(report)
        obs_metrics.MOD_REPORTS_TOTAL.labels(reason=reason.value, priority=str(priority), source="user").inc()
        logger.info(
            "report submitted",
            extra={"report_id": stored.id, "report_type": report_type.value, "priority": priority},
        )
        if is_high_priority(priority):
            await self._notify_staff(stored)
        return stored

    @moderation_operation("flagging content")
    async def moderator_flag_content(self, actor_id: Optional[str], params: ModeratorFlagParams) -> Report:
        report_type = parse_enum(ReportType, params.report_type, "reportType")
        reason = parse_enum(ReportReason, params.reason, "reason")
        target_id = require_uuid(params.target_id, "targetId")
        internal_notes = require_text(params.internal_notes, MAX_INTERNAL_NOTES_LENGTH, "Internal notes")

        moderator_id = await self.guard.verify_moderator_role(
            actor_id,
            attempted_action="moderator_flag_content",
            message="Only moderators and admins can flag content",
        )
        now = self.clock()
        await self._reject_duplicate(moderator_id, report_type, target_id, now)
        reported_user_id = await self._resolve_reported_user(report_type, target_id)

        report = Report(
            id=str(uuid4()),
            reporter_id=moderator_id,
            report_type=report_type,
            target_id=target_id,
            reported_user_id=reported_user_id,
            reason=reason,
            description=None,
            priority=MODERATOR_FLAG_PRIORITY,
            status=ReportStatus.UNDER_REVIEW,
            moderator_flagged=True,
            internal_notes=internal_notes,
            created_at=now,
        )
        stored = await self.reports.create_report(report)
        obs_metrics.MOD_REPORTS_TOTAL.labels(
            reason=reason.value, priority=str(MODERATOR_FLAG_PRIORITY), source="moderator"
        ).inc()
        logger.info("content flagged by moderator", extra={"report_id": stored.id, "moderator_id": moderator_id})
        return stored

    @moderation_operation("fetching the moderation queue")
    async def fetch_moderation_queue(
        self,
        actor_id: Optional[str],
        filters: Optional[QueueFilters] = None,
    ) -> Sequence[Report]:
        await self.guard.verify_moderator_role(actor_id, attempted_action="fetch_moderation_queue")
        filters = filters or QueueFilters()
        if filters.priority is not None and not 1 <= filters.priority <= 4:
            raise validation_error("Priority must be between 1 and 4", priority=filters.priority)
        return await self.reports.list_reports(filters)

    @moderation_operation("fetching report")
    async def get_report(self, actor_id: Optional[str], report_id: str) -> Report:
        report_id = require_uuid(report_id, "reportId")
        await self.guard.verify_moderator_role(actor_id, attempted_action="get_report")
        report = await self.reports.get_report(report_id)
        if report is None:
            raise not_found("Report not found", reportId=report_id)
        return report

    async def _resolve_reported_user(self, report_type: ReportType, target_id: str) -> str:
        if report_type is ReportType.USER:
            return target_id
        owner = await self.content.resolve_owner(report_type, target_id)
        if owner is None:
            raise not_found("Reported content not found", reportType=report_type.value, targetId=target_id)
        return owner

    async def _reject_duplicate(self, reporter_id: str, report_type: ReportType, target_id: str, now: datetime) -> None:
        existing = await self.reports.find_recent_report(
            reporter_id=reporter_id,
            report_type=report_type,
            target_id=target_id,
            since=now - self.duplicate_window,
        )
        if existing is None:
            return
        obs_metrics.MOD_REPORTS_REJECTED_TOTAL.labels(reason="duplicate").inc()
        await self.events.log(
            "duplicate_report_attempt",
            reporter_id,
            {"reportType": report_type.value, "targetId": target_id, "existingReportId": existing.id},
        )
        raise validation_error(
            "You have already reported this content. Our moderation team will review it soon.",
            existingReportId=existing.id,
        )

    async def _notify_staff(self, report: Report) -> None:
        try:
            moderator_ids = await self.roles.list_user_ids_with_role(Role.MODERATOR)
            admin_ids = await self.roles.list_user_ids_with_role(Role.ADMIN)
        except Exception:  # noqa: BLE001
            logger.exception("failed to load staff for high priority report", extra={"report_id": report.id})
            return
        recipients = [user_id for user_id in dict.fromkeys([*moderator_ids, *admin_ids]) if user_id != report.reporter_id]
        if not recipients:
            return
        title, message = build_high_priority_report_notification(report)
        data = {
            "report_id": report.id,
            "priority": report.priority,
            "report_type": report.report_type.value,
            "reason": report.reason.value,
            "related_user_id": report.reported_user_id,
        }
        for user_id in recipients:
            await self.notifications.publish(user_id, title, message, data, kind="high_priority_report")
