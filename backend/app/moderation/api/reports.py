"""Report intake and moderation queue endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, ConfigDict, Field

from app.infra.auth import AuthenticatedUser, get_current_user
from app.moderation.api.deps import (
    get_immutability_monitor_dep,
    get_report_service_dep,
    http_error,
)
from app.moderation.domain.errors import ModerationError
from app.moderation.domain.immutability import ImmutabilityMonitor
from app.moderation.domain.models import (
    ActionType,
    ModeratorFlagParams,
    QueueFilters,
    ReportParams,
    ReportReason,
    ReportStatus,
    ReportType,
)
from app.moderation.domain.reports_service import ReportService

router = APIRouter(prefix="/api/mod/v1/reports", tags=["moderation-reports"])


class ReportIn(BaseModel):
    report_type: str
    target_id: str
    reason: str
    description: Optional[str] = None


class FlagIn(BaseModel):
    report_type: str
    target_id: str
    reason: str
    internal_notes: str


class ReportOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    reporter_id: str
    report_type: ReportType
    target_id: str
    reported_user_id: Optional[str]
    reason: ReportReason
    description: Optional[str]
    priority: int
    status: ReportStatus
    moderator_flagged: bool
    created_at: datetime
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    action_taken: Optional[ActionType] = None


@router.post("", response_model=ReportOut, status_code=status.HTTP_201_CREATED)
async def submit_report(
    payload: ReportIn,
    service: ReportService = Depends(get_report_service_dep),
    user: AuthenticatedUser = Depends(get_current_user),
) -> ReportOut:
    try:
        report = await service.submit_report(user.id, ReportParams(**payload.model_dump()))
    except ModerationError as exc:
        raise http_error(exc) from exc
    return ReportOut.model_validate(report)


@router.post("/flags", response_model=ReportOut, status_code=status.HTTP_201_CREATED)
async def flag_content(
    payload: FlagIn,
    service: ReportService = Depends(get_report_service_dep),
    user: AuthenticatedUser = Depends(get_current_user),
) -> ReportOut:
    try:
        report = await service.moderator_flag_content(user.id, ModeratorFlagParams(**payload.model_dump()))
    except ModerationError as exc:
        raise http_error(exc) from exc
    return ReportOut.model_validate(report)


@router.get("/queue", response_model=list[ReportOut])
async def moderation_queue(
    status_filter: Optional[ReportStatus] = Query(default=None, alias="status"),
    priority: Optional[int] = Query(default=None),
    report_type: Optional[ReportType] = Query(default=None),
    moderator_flagged: Optional[bool] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    service: ReportService = Depends(get_report_service_dep),
    user: AuthenticatedUser = Depends(get_current_user),
) -> list[ReportOut]:
    filters = QueueFilters(
        status=status_filter,
        priority=priority,
        report_type=report_type,
        moderator_flagged=moderator_flagged,
        limit=limit,
    )
    try:
        reports = await service.fetch_moderation_queue(user.id, filters)
    except ModerationError as exc:
        raise http_error(exc) from exc
    return [ReportOut.model_validate(report) for report in reports]


@router.get("/{report_id}/previous-reversals")
async def previous_reversals(
    report_id: str,
    service: ReportService = Depends(get_report_service_dep),
    monitor: ImmutabilityMonitor = Depends(get_immutability_monitor_dep),
    user: AuthenticatedUser = Depends(get_current_user),
) -> dict[str, Any]:
    try:
        report = await service.get_report(user.id, report_id)
        result = await monitor.check_previous_reversals(report)
    except ModerationError as exc:
        raise http_error(exc) from exc
    return jsonable_encoder(result)
