"""Notification templates and the fire-and-forget publisher."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional

from app.moderation.domain.models import ActionType, ModerationAction, Report, RestrictionType
from app.moderation.domain.repository import NotificationDispatcher
from app.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

_ACTION_TITLES: dict[ActionType, str] = {
    ActionType.CONTENT_REMOVED: "Content Removed",
    ActionType.USER_WARNED: "Warning Issued",
    ActionType.USER_SUSPENDED: "Account Suspended",
    ActionType.USER_BANNED: "Account Suspended Permanently",
    ActionType.RESTRICTION_APPLIED: "Account Restriction Applied",
}

REVOCATION_TITLES: dict[ActionType, str] = {
    ActionType.USER_SUSPENDED: "Suspension Lifted",
    ActionType.USER_BANNED: "Ban Removed",
    ActionType.RESTRICTION_APPLIED: "Restriction Removed",
    ActionType.USER_WARNED: "Warning Revoked",
    ActionType.CONTENT_REMOVED: "Content Removal Revoked",
    ActionType.CONTENT_APPROVED: "Approval Revoked",
}
DEFAULT_REVOCATION_TITLE = "Moderation Action Revoked"

_RESTRICTION_LABELS: dict[RestrictionType, tuple[str, str, str]] = {
    # label, effect while applied, capability once removed
    RestrictionType.POSTING_DISABLED: (
        "Posting Disabled",
        "You will not be able to create new posts.",
        "You can now create new posts.",
    ),
    RestrictionType.COMMENTING_DISABLED: (
        "Commenting Disabled",
        "You will not be able to create new comments.",
        "You can now create new comments.",
    ),
    RestrictionType.UPLOAD_DISABLED: (
        "Upload Disabled",
        "You will not be able to upload new tracks.",
        "You can now upload new tracks.",
    ),
    RestrictionType.SUSPENDED: (
        "Account Suspended",
        "You will not be able to perform any actions on the platform.",
        "You can now use all platform features.",
    ),
}

_REASON_LABELS = {
    "spam": "Spam or Misleading Content",
    "harassment": "Harassment or Bullying",
    "hate_speech": "Hate Speech or Discrimination",
    "inappropriate_content": "Inappropriate or Offensive Content",
    "copyright_violation": "Copyright Violation",
    "impersonation": "Impersonation or Identity Theft",
    "self_harm": "Self-Harm or Suicide Content",
    "other": "Other Violation",
}

_APPEAL_FOOTER = "If you believe this was done in error, you may appeal this decision."


def _days(count: int) -> str:
    return f"{count} day{'s' if count > 1 else ''}"


def _duration_lines(duration_days: Optional[int], expires_at: Optional[datetime], *, subject: str) -> str:
    if duration_days:
        text = f"Duration: {_days(duration_days)}\n"
        if expires_at:
            text += f"{subject} will be automatically lifted on {expires_at:%Y-%m-%d at %H:%M} UTC.\n"
        return text + "\n"
    return "Duration: Permanent\n\n"


def build_action_notification(
    action_type: ActionType,
    *,
    reason: str,
    target_type: Optional[str] = None,
    duration_days: Optional[int] = None,
    expires_at: Optional[datetime] = None,
    custom_message: Optional[str] = None,
    restriction_type: Optional[RestrictionType] = None,
) -> tuple[str, str]:
    title = _ACTION_TITLES.get(action_type, "Moderation Action")
    extra = f"Additional information: {custom_message}\n\n" if custom_message else ""
    if action_type is ActionType.CONTENT_REMOVED:
        label = target_type if target_type in ("post", "comment", "track", "album") else "content"
        body = (
            f"Your {label} has been removed for violating our community guidelines.\n\n"
            f"Reason: {reason}\n\n{extra}{_APPEAL_FOOTER}"
        )
    elif action_type is ActionType.USER_WARNED:
        body = (
            "You have received a warning for violating our community guidelines.\n\n"
            f"Reason: {reason}\n\n{extra}"
            "Repeated violations may result in account restrictions or suspension.\n\n"
            f"{_APPEAL_FOOTER}"
        )
    elif action_type is ActionType.USER_SUSPENDED:
        body = (
            "Your account has been suspended for violating our community guidelines.\n\n"
            f"Reason: {reason}\n\n"
            f"{_duration_lines(duration_days, expires_at, subject='Your suspension')}{extra}{_APPEAL_FOOTER}"
        )
    elif action_type is ActionType.USER_BANNED:
        body = (
            "Your account has been permanently suspended for severe or repeated violations "
            "of our community guidelines.\n\n"
            f"Reason: {reason}\n\n{extra}"
            "This is a permanent suspension. Your account will not be restored.\n\n"
            f"{_APPEAL_FOOTER}"
        )
    elif action_type is ActionType.RESTRICTION_APPLIED and restriction_type is not None:
        label, effect, _ = _RESTRICTION_LABELS[restriction_type]
        body = (
            f"A restriction has been applied to your account: {label}\n\n"
            f"Reason: {reason}\n\n{effect}\n\n"
            f"{_duration_lines(duration_days, expires_at, subject='This restriction')}{extra}{_APPEAL_FOOTER}"
        )
    else:
        body = f"A moderation action was taken on your account.\n\nReason: {reason}\n\n{extra}{_APPEAL_FOOTER}"
    return title, body


def build_reversal_notification(
    original: ModerationAction,
    *,
    reason: str,
    reversed_by: str,
    title: Optional[str] = None,
    restriction_type: Optional[RestrictionType] = None,
) -> tuple[str, str]:
    title = title or REVOCATION_TITLES.get(original.action_type, DEFAULT_REVOCATION_TITLE)
    details = (
        "Original action details:\n"
        f"• Reason: {original.reason}\n"
        f"• Applied on: {original.created_at:%Y-%m-%d}\n"
    )
    if original.duration_days:
        details += f"• Duration: {_days(original.duration_days)}\n"
    if restriction_type is not None:
        closing = _RESTRICTION_LABELS[restriction_type][2]
    elif original.action_type in (ActionType.USER_SUSPENDED, ActionType.USER_BANNED):
        closing = "Your account has been fully restored."
    else:
        closing = "No further action is required from you."
    body = (
        f"A moderation action on your account has been reversed ({title}).\n\n"
        f"Reversed by: {reversed_by}\n"
        f"Reason for reversal: {reason}\n\n"
        f"{details}\n{closing}\n\n"
        "Please continue to follow our community guidelines to maintain your account in good standing."
    )
    return title, body


def build_restriction_removal_notification(
    restriction_type: RestrictionType,
    *,
    reason: str,
    reversed_by: str,
) -> tuple[str, str]:
    label, _, capability = _RESTRICTION_LABELS[restriction_type]
    title = REVOCATION_TITLES[ActionType.RESTRICTION_APPLIED]
    body = (
        f"A restriction has been removed from your account: {label}\n\n"
        f"Removed by: {reversed_by}\n"
        f"Reason: {reason}\n\n"
        f"{capability}"
    )
    return title, body


def build_high_priority_report_notification(report: Report) -> tuple[str, str]:
    priority_label = "P1 Critical" if report.priority == 1 else "P2 High Priority"
    reason_label = _REASON_LABELS.get(report.reason.value, report.reason.value)
    title = f"{priority_label} Report: {report.report_type.value.capitalize()} - {reason_label}"
    message = "Requires immediate attention" if report.priority == 1 else "Review needed"
    return title, message


@dataclass
class NotificationPublisher:
    """Fire-and-forget wrapper: failures are logged and counted, never raised."""

    dispatcher: NotificationDispatcher

    async def publish(
        self,
        user_id: str,
        title: str,
        message: str,
        data: Mapping[str, Any],
        *,
        kind: str,
    ) -> Optional[str]:
        try:
            return await self.dispatcher.send(user_id, title, message, dict(data))
        except Exception:  # noqa: BLE001
            obs_metrics.MOD_NOTIFICATION_FAILURES_TOTAL.labels(kind=kind).inc()
            logger.exception(
                "failed to send moderation notification",
                extra={"recipient_id": user_id, "notification_kind": kind},
            )
            return None
