"""Security event journal and admin alert fan-out."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional
from uuid import uuid4

from app.moderation.domain.models import Role, SecurityEvent
from app.moderation.domain.repository import NotificationDispatcher, RoleStore, SecurityEventRepository
from app.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

REVERSAL_TAMPER_EVENT_TYPES = (
    "reversal_modification_attempt",
    "reversal_modification_prevented",
    "reversal_modification_succeeded",
    "reversal_immutability_violation_detected",
)

SEVERITY_ORDER = ("low", "medium", "high", "critical")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SecurityEventLogger:
    """Append-only writer for the security event sink.

    Sink failures are logged and never interrupt the calling operation.
    """

    repository: SecurityEventRepository
    clock: Callable[[], datetime] = _utcnow

    async def log(self, event_type: str, user_id: Optional[str], details: Mapping[str, Any]) -> SecurityEvent:
        event = SecurityEvent(
            id=str(uuid4()),
            event_type=event_type,
            user_id=user_id,
            details=dict(details),
            created_at=self.clock(),
        )
        obs_metrics.MOD_SECURITY_EVENTS_TOTAL.labels(event_type=event_type).inc()
        logger.warning(
            "security_event",
            extra={"event_type": event_type, "event_user_id": user_id, "details": event.details},
        )
        try:
            await self.repository.append(event)
        except Exception:  # noqa: BLE001
            logger.exception("failed to persist security event", extra={"event_type": event_type})
        return event


@dataclass
class AdminAlerter:
    """Sends a security alert notification to every active admin."""

    roles: RoleStore
    notifications: NotificationDispatcher
    events: SecurityEventLogger
    clock: Callable[[], datetime] = _utcnow

    async def alert(
        self,
        *,
        event_type: str,
        severity: str,
        details: Mapping[str, Any],
        action_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> int:
        try:
            admin_ids = list(dict.fromkeys(await self.roles.list_user_ids_with_role(Role.ADMIN)))
        except Exception:  # noqa: BLE001
            logger.exception("failed to load admins for security alert", extra={"alert_event": event_type})
            return 0
        if not admin_ids:
            logger.warning("no admin users to alert", extra={"alert_event": event_type})
            return 0
        title = f"Security Alert: {event_type}"
        message = (
            "Suspicious activity detected related to moderation reversal records.\n\n"
            f"Severity: {severity.upper()}\n\n"
            f"Details: {json.dumps(dict(details), indent=2, default=str)}\n\n"
            "Please investigate immediately."
        )
        data = {
            "type": "security_alert",
            "event_type": event_type,
            "severity": severity,
            "action_id": action_id,
            "user_id": user_id,
            "details": dict(details),
            "timestamp": self.clock().isoformat(),
            "requires_immediate_action": severity == "critical",
        }
        delivered = 0
        for admin_id in admin_ids:
            try:
                await self.notifications.send(admin_id, title, message, data)
                delivered += 1
            except Exception:  # noqa: BLE001
                obs_metrics.MOD_NOTIFICATION_FAILURES_TOTAL.labels(kind="security_alert").inc()
                logger.exception("failed to deliver security alert", extra={"admin_id": admin_id})
        obs_metrics.MOD_ADMIN_ALERTS_TOTAL.labels(severity=severity).inc()
        await self.events.log(
            "admin_alert_sent",
            None,
            {"eventType": event_type, "severity": severity, "adminCount": len(admin_ids), "details": dict(details)},
        )
        return delivered


def highest_severity(severities: list[str]) -> str:
    ranked = [SEVERITY_ORDER.index(item) for item in severities if item in SEVERITY_ORDER]
    if not ranked:
        return "medium"
    return SEVERITY_ORDER[max(max(ranked), SEVERITY_ORDER.index("medium"))]
