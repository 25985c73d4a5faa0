"""Per-user restriction, suspension and moderation history endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from fastapi.encoders import jsonable_encoder

from app.infra.auth import AuthenticatedUser, get_current_user
from app.moderation.api.deps import get_action_service_dep, get_analytics_dep, http_error
from app.moderation.domain.actions_service import ActionService
from app.moderation.domain.analytics import ModerationAnalytics
from app.moderation.domain.errors import ModerationError

router = APIRouter(prefix="/api/mod/v1/users", tags=["moderation-users"])


async def _require_self_or_staff(service: ActionService, user: AuthenticatedUser, user_id: str, attempted: str) -> None:
    if user.id == user_id:
        return
    await service.guard.verify_moderator_role(user.id, attempted_action=attempted)


@router.get("/{user_id}/restrictions")
async def active_restrictions(
    user_id: str,
    service: ActionService = Depends(get_action_service_dep),
    user: AuthenticatedUser = Depends(get_current_user),
) -> list[dict[str, Any]]:
    try:
        await _require_self_or_staff(service, user, user_id, "get_user_active_restrictions")
        restrictions = await service.get_user_active_restrictions(user_id)
    except ModerationError as exc:
        raise http_error(exc) from exc
    return jsonable_encoder(list(restrictions))


@router.get("/{user_id}/permissions/{operation}")
async def can_perform(
    user_id: str,
    operation: str,
    service: ActionService = Depends(get_action_service_dep),
    user: AuthenticatedUser = Depends(get_current_user),
) -> dict[str, Any]:
    try:
        await _require_self_or_staff(service, user, user_id, "can_user_perform_action")
        allowed = await service.can_user_perform_action(user_id, operation)
    except ModerationError as exc:
        raise http_error(exc) from exc
    return {"user_id": user_id, "operation": operation, "allowed": allowed}


@router.get("/{user_id}/suspension")
async def suspension_status(
    user_id: str,
    service: ActionService = Depends(get_action_service_dep),
    user: AuthenticatedUser = Depends(get_current_user),
) -> dict[str, Any]:
    try:
        await _require_self_or_staff(service, user, user_id, "get_user_suspension_status")
        result = await service.get_user_suspension_status(user_id)
    except ModerationError as exc:
        raise http_error(exc) from exc
    return jsonable_encoder(result)


@router.get("/{user_id}/history")
async def moderation_history(
    user_id: str,
    include_revoked: bool = Query(default=True),
    analytics: ModerationAnalytics = Depends(get_analytics_dep),
    user: AuthenticatedUser = Depends(get_current_user),
) -> list[dict[str, Any]]:
    try:
        entries = await analytics.get_user_moderation_history(user.id, user_id, include_revoked)
    except ModerationError as exc:
        raise http_error(exc) from exc
    return jsonable_encoder(entries)


@router.get("/{user_id}/violations")
async def violation_summary(
    user_id: str,
    analytics: ModerationAnalytics = Depends(get_analytics_dep),
    user: AuthenticatedUser = Depends(get_current_user),
) -> dict[str, Any]:
    try:
        await analytics.guard.verify_moderator_role(user.id, attempted_action="violation_summary")
        repeat_offender = await analytics.detect_repeat_offender(user_id)
        timeline = await analytics.calculate_violation_timeline(user_id)
    except ModerationError as exc:
        raise http_error(exc) from exc
    return {"user_id": user_id, "is_repeat_offender": repeat_offender, "timeline": jsonable_encoder(timeline)}
