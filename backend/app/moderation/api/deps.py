"""Shared dependencies for the moderation routers."""

from __future__ import annotations

from fastapi import HTTPException

from app.moderation.domain.actions_service import ActionService
from app.moderation.domain.analytics import ModerationAnalytics
from app.moderation.domain.container import (
    get_action_service,
    get_analytics,
    get_immutability_monitor,
    get_report_service,
    get_reversal_service,
)
from app.moderation.domain.errors import ModerationError
from app.moderation.domain.immutability import ImmutabilityMonitor
from app.moderation.domain.reports_service import ReportService
from app.moderation.domain.reversal_service import ReversalService


def http_error(exc: ModerationError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_dict())


def get_report_service_dep() -> ReportService:
    return get_report_service()


def get_action_service_dep() -> ActionService:
    return get_action_service()


def get_reversal_service_dep() -> ReversalService:
    return get_reversal_service()


def get_immutability_monitor_dep() -> ImmutabilityMonitor:
    return get_immutability_monitor()


def get_analytics_dep() -> ModerationAnalytics:
    return get_analytics()
