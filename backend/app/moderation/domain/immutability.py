"""Tamper detection for reversal records."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from app.moderation.domain.errors import (
    ImmutableRecordError,
    ModerationError,
    ModerationErrorCode,
    StaleVersionError,
    moderation_operation,
    not_found,
)
from app.moderation.domain.metadata import reversal_reason_of
from app.moderation.domain.models import ModerationAction, Report, ReportType
from app.moderation.domain.rbac import AuthorizationGuard
from app.moderation.domain.repository import ActionQuery, ActionRepository, SecurityEventRepository
from app.moderation.domain.security import (
    REVERSAL_TAMPER_EVENT_TYPES,
    AdminAlerter,
    SecurityEventLogger,
    highest_severity,
)
from app.moderation.domain.validation import is_valid_uuid, require_uuid
from app.settings import settings

logger = logging.getLogger(__name__)

RAPID_FIRE_GAP = timedelta(seconds=1)
NOT_REVERSED_ERROR = "Action is not reversed, cannot test reversal modification"
BREACH_ERROR = "CRITICAL: Modification was not prevented by database constraints"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class ImmutabilityReport:
    is_immutable: bool
    violations: List[str]
    action: ModerationAction


@dataclass(slots=True)
class ModificationAttempt:
    prevented: bool
    security_event_logged: bool
    error: Optional[str] = None


@dataclass(slots=True)
class SuspiciousPattern:
    pattern: str
    severity: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class SuspiciousActivity:
    suspicious_activity_detected: bool
    patterns: List[SuspiciousPattern] = field(default_factory=list)


@dataclass(slots=True)
class PreviousReversals:
    has_previous_reversals: bool
    reversal_count: int
    most_recent_reversal: Optional[ModerationAction] = None


def find_violations(action: ModerationAction, *, now: datetime) -> List[str]:
    """Recompute the invariants that a revoked action must satisfy."""
    violations: List[str] = []
    revoked_at = action.revoked_at
    revoked_by = action.revoked_by
    if revoked_at is None and revoked_by is None:
        return violations
    if (revoked_at is None) != (revoked_by is None):
        violations.append("revoked_at and revoked_by must both be set or both be null")
    if revoked_at is not None and not isinstance(revoked_at, datetime):
        violations.append("revoked_at is not a valid timestamp")
        revoked_at = None
    if revoked_by is not None and not is_valid_uuid(revoked_by):
        violations.append("revoked_by is not a valid user id")
    reason = action.metadata.get("reversal_reason") if action.metadata else None
    if reason is None:
        violations.append("reversal_reason is missing")
    elif not isinstance(reason, str):
        violations.append("reversal_reason must be a string")
    elif not reason.strip():
        violations.append("reversal_reason is empty")
    if revoked_at is not None:
        if revoked_at > now:
            violations.append("revoked_at is in the future")
        if revoked_at < action.created_at:
            violations.append("revoked_at is before created_at")
    return violations


@dataclass
class ImmutabilityMonitor:
    actions: ActionRepository
    security_events: SecurityEventRepository
    guard: AuthorizationGuard
    events: SecurityEventLogger
    alerter: AdminAlerter
    attempt_threshold: int = field(default_factory=lambda: settings.moderation_suspicious_attempt_threshold)
    clock: Callable[[], datetime] = _utcnow

    @moderation_operation("verifying reversal immutability")
    async def verify_reversal_immutability(self, actor_id: Optional[str], action_id: str) -> ImmutabilityReport:
        action_id = require_uuid(action_id, "actionId")
        await self.guard.verify_moderator_role(actor_id, attempted_action="verify_reversal_immutability")
        action = await self.actions.get_action(action_id)
        if action is None:
            raise not_found("Moderation action not found", actionId=action_id)
        violations = find_violations(action, now=self.clock())
        if violations:
            await self.events.log(
                "reversal_immutability_violation_detected",
                actor_id,
                {"actionId": action.id, "violations": violations},
            )
        return ImmutabilityReport(is_immutable=not violations, violations=violations, action=action)

    @moderation_operation("testing reversal modification")
    async def attempt_reversal_modification(
        self,
        actor_id: Optional[str],
        action_id: str,
        patch: Optional[Mapping[str, Any]] = None,
    ) -> ModificationAttempt:
        action_id = require_uuid(action_id, "actionId")
        admin_id = await self.guard.verify_admin_role(actor_id, attempted_action="attempt_reversal_modification")
        action = await self.actions.get_action(action_id)
        if action is None:
            raise not_found("Moderation action not found", actionId=action_id)
        if not action.is_revoked:
            return ModificationAttempt(prevented=False, security_event_logged=False, error=NOT_REVERSED_ERROR)

        patch = dict(patch or {"reversal_reason": "modified"})
        details = {"actionId": action.id, "fields": sorted(patch)}
        await self.events.log("reversal_modification_attempt", admin_id, details)

        metadata = dict(action.metadata)
        if "reversal_reason" in patch:
            metadata["reversal_reason"] = patch["reversal_reason"]
        modified = replace(
            action,
            revoked_at=patch.get("revoked_at", action.revoked_at),
            revoked_by=patch.get("revoked_by", action.revoked_by),
            metadata=metadata,
        )
        try:
            await self.actions.update_action(modified, expected_version=action.version)
        except ImmutableRecordError as exc:
            await self.events.log("reversal_modification_prevented", admin_id, {**details, "error": str(exc)})
            return ModificationAttempt(prevented=True, security_event_logged=True, error=str(exc))
        except StaleVersionError as exc:
            raise ModerationError(
                "This action was modified concurrently",
                ModerationErrorCode.CONCURRENT_MODIFICATION,
                {"actionId": action.id},
            ) from exc

        logger.critical("reversal record was modified", extra={"action_id": action.id, "actor_id": admin_id})
        await self.events.log("reversal_modification_succeeded", admin_id, {**details, "severity": "critical"})
        await self.alerter.alert(
            event_type="reversal_immutability_breach",
            severity="critical",
            details=details,
            action_id=action.id,
            user_id=admin_id,
        )
        return ModificationAttempt(prevented=False, security_event_logged=True, error=BREACH_ERROR)

    async def detect_suspicious_reversal_activity(
        self,
        user_id: Optional[str] = None,
        window_hours: int = 24,
    ) -> SuspiciousActivity:
        try:
            since = self.clock() - timedelta(hours=window_hours)
            events = await self.security_events.list_events(
                event_types=REVERSAL_TAMPER_EVENT_TYPES, since=since, user_id=user_id
            )
            patterns = self._match_patterns(events)
            if patterns:
                await self.alerter.alert(
                    event_type="suspicious_reversal_activity_detected",
                    severity=highest_severity([item.severity for item in patterns]),
                    details={
                        "patterns": [{"pattern": item.pattern, "severity": item.severity} for item in patterns],
                        "windowHours": window_hours,
                    },
                    user_id=user_id,
                )
            return SuspiciousActivity(suspicious_activity_detected=bool(patterns), patterns=patterns)
        except Exception:  # noqa: BLE001
            logger.exception("suspicious reversal scan failed", extra={"target_user_id": user_id})
            return SuspiciousActivity(suspicious_activity_detected=False)

    def _match_patterns(self, events) -> List[SuspiciousPattern]:
        patterns: List[SuspiciousPattern] = []
        per_user = Counter(event.user_id for event in events if event.user_id)
        for offender, count in per_user.items():
            if count >= self.attempt_threshold:
                patterns.append(
                    SuspiciousPattern(
                        pattern="multiple_attempts_same_user",
                        severity="high" if count >= self.attempt_threshold * 2 else "medium",
                        details={"userId": offender, "attemptCount": count},
                    )
                )

        succeeded = [event for event in events if event.event_type == "reversal_modification_succeeded"]
        if succeeded:
            patterns.append(
                SuspiciousPattern(
                    pattern="immutability_breach",
                    severity="critical",
                    details={
                        "breachCount": len(succeeded),
                        "actionIds": [event.details.get("actionId") for event in succeeded],
                    },
                )
            )

        attempts = sorted(
            (event for event in events if event.event_type == "reversal_modification_attempt"),
            key=lambda event: event.created_at,
        )
        rapid = sum(
            1 for earlier, later in zip(attempts, attempts[1:]) if later.created_at - earlier.created_at < RAPID_FIRE_GAP
        )
        if rapid >= self.attempt_threshold:
            patterns.append(
                SuspiciousPattern(
                    pattern="rapid_fire_attempts",
                    severity="high",
                    details={"rapidAttemptCount": rapid, "note": "Possible automated attack"},
                )
            )

        violations = [event for event in events if event.event_type == "reversal_immutability_violation_detected"]
        if violations:
            patterns.append(
                SuspiciousPattern(
                    pattern="immutability_violations",
                    severity="high",
                    details={"violationCount": len(violations)},
                )
            )
        return patterns

    @moderation_operation("checking previous reversals")
    async def check_previous_reversals(self, report: Report) -> PreviousReversals:
        if report.report_type is ReportType.USER:
            query = ActionQuery(
                target_user_id=report.reported_user_id or report.target_id, revoked=True, order_by="revoked_at"
            )
        else:
            query = ActionQuery(target_id=report.target_id, revoked=True, order_by="revoked_at")
        reversed_actions = await self.actions.list_actions(query)
        if not reversed_actions:
            return PreviousReversals(has_previous_reversals=False, reversal_count=0)
        latest = reversed_actions[0]
        logger.info(
            "report target has prior reversals",
            extra={"report_id": report.id, "reversal_count": len(reversed_actions), "reason": reversal_reason_of(latest)},
        )
        return PreviousReversals(
            has_previous_reversals=True,
            reversal_count=len(reversed_actions),
            most_recent_reversal=latest,
        )
