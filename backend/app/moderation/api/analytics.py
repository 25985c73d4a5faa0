"""Reversal analytics and exports for moderation staff."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.encoders import jsonable_encoder
from starlette.responses import Response

from app.infra.auth import AuthenticatedUser, get_current_user
from app.moderation.api.deps import get_analytics_dep, http_error
from app.moderation.domain.analytics import ModerationAnalytics
from app.moderation.domain.errors import ModerationError
from app.moderation.domain.models import ReversalHistoryFilters
from app.obs import metrics as obs_metrics

router = APIRouter(prefix="/api/mod/v1/analytics", tags=["moderation-analytics"])


def _history_filters(
    start_date: Optional[str] = Query(default=None),
    end_date: Optional[str] = Query(default=None),
    moderator_id: Optional[str] = Query(default=None),
    action_type: Optional[str] = Query(default=None),
    reversal_reason: Optional[str] = Query(default=None),
    target_user_id: Optional[str] = Query(default=None),
    revoked_by: Optional[str] = Query(default=None),
) -> ReversalHistoryFilters:
    return ReversalHistoryFilters(
        start_date=start_date,
        end_date=end_date,
        moderator_id=moderator_id,
        action_type=action_type,
        reversal_reason=reversal_reason,
        target_user_id=target_user_id,
        revoked_by=revoked_by,
    )


@router.get("/reversal-rate")
async def reversal_rate(
    start_date: str = Query(...),
    end_date: str = Query(...),
    analytics: ModerationAnalytics = Depends(get_analytics_dep),
    user: AuthenticatedUser = Depends(get_current_user),
) -> dict[str, Any]:
    try:
        result = await analytics.calculate_reversal_rate(user.id, start_date, end_date)
    except ModerationError as exc:
        raise http_error(exc) from exc
    return jsonable_encoder(result)


@router.get("/reversal-metrics")
async def reversal_metrics(
    start_date: str = Query(...),
    end_date: str = Query(...),
    analytics: ModerationAnalytics = Depends(get_analytics_dep),
    user: AuthenticatedUser = Depends(get_current_user),
) -> dict[str, Any]:
    try:
        result = await analytics.get_reversal_metrics(user.id, start_date, end_date)
    except ModerationError as exc:
        raise http_error(exc) from exc
    return jsonable_encoder(result)


@router.get("/reversal-time")
async def reversal_time(
    start_date: str = Query(...),
    end_date: str = Query(...),
    analytics: ModerationAnalytics = Depends(get_analytics_dep),
    user: AuthenticatedUser = Depends(get_current_user),
) -> dict[str, Any]:
    try:
        result = await analytics.get_reversal_time_metrics(user.id, start_date, end_date)
    except ModerationError as exc:
        raise http_error(exc) from exc
    return jsonable_encoder(result)


@router.get("/moderators/{moderator_id}/reversal-stats")
async def moderator_reversal_stats(
    moderator_id: str,
    start_date: str = Query(...),
    end_date: str = Query(...),
    analytics: ModerationAnalytics = Depends(get_analytics_dep),
    user: AuthenticatedUser = Depends(get_current_user),
) -> dict[str, Any]:
    try:
        result = await analytics.get_moderator_reversal_stats(user.id, moderator_id, start_date, end_date)
    except ModerationError as exc:
        raise http_error(exc) from exc
    return jsonable_encoder(result)


@router.get("/reversals")
async def reversal_history(
    filters: ReversalHistoryFilters = Depends(_history_filters),
    analytics: ModerationAnalytics = Depends(get_analytics_dep),
    user: AuthenticatedUser = Depends(get_current_user),
) -> list[dict[str, Any]]:
    try:
        entries = await analytics.get_reversal_history(user.id, filters)
    except ModerationError as exc:
        raise http_error(exc) from exc
    return jsonable_encoder(entries)


@router.get("/reversals/export.csv")
async def export_reversals(
    filters: ReversalHistoryFilters = Depends(_history_filters),
    analytics: ModerationAnalytics = Depends(get_analytics_dep),
    user: AuthenticatedUser = Depends(get_current_user),
) -> Response:
    try:
        body = await analytics.export_reversal_history_csv(user.id, filters)
    except ModerationError as exc:
        raise http_error(exc) from exc
    obs_metrics.MOD_EXPORTS_TOTAL.labels(kind="reversal_history").inc()
    return Response(
        content=body,
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=reversal-history.csv"},
    )
