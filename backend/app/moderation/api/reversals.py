"""Reversal and immutability endpoints."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, Field

from app.infra.auth import AuthenticatedUser, get_current_user
from app.moderation.api.deps import get_immutability_monitor_dep, get_reversal_service_dep, http_error
from app.moderation.domain.errors import ModerationError
from app.moderation.domain.immutability import ImmutabilityMonitor
from app.moderation.domain.reversal_service import ReversalService
from app.obs.logging import log_context

router = APIRouter(prefix="/api/mod/v1/reversals", tags=["moderation-reversals"])


class ReasonIn(BaseModel):
    reason: str


class ModificationPatchIn(BaseModel):
    revoked_at: Optional[str] = None
    revoked_by: Optional[str] = None
    reversal_reason: Optional[str] = Field(default=None)


@router.post("/actions/{action_id}")
async def revoke_action(
    action_id: str,
    payload: ReasonIn,
    service: ReversalService = Depends(get_reversal_service_dep),
    user: AuthenticatedUser = Depends(get_current_user),
) -> dict[str, Any]:
    try:
        with log_context(action_id=action_id):
            action = await service.revoke_action(user.id, action_id, payload.reason)
    except ModerationError as exc:
        raise http_error(exc) from exc
    return jsonable_encoder(action)


@router.post("/users/{user_id}/suspension")
async def lift_suspension(
    user_id: str,
    payload: ReasonIn,
    service: ReversalService = Depends(get_reversal_service_dep),
    user: AuthenticatedUser = Depends(get_current_user),
) -> dict[str, Any]:
    try:
        outcome = await service.lift_suspension(user.id, user_id, payload.reason)
    except ModerationError as exc:
        raise http_error(exc) from exc
    return jsonable_encoder(outcome)


@router.post("/users/{user_id}/ban")
async def remove_ban(
    user_id: str,
    payload: ReasonIn,
    service: ReversalService = Depends(get_reversal_service_dep),
    user: AuthenticatedUser = Depends(get_current_user),
) -> dict[str, Any]:
    try:
        outcome = await service.remove_ban(user.id, user_id, payload.reason)
    except ModerationError as exc:
        raise http_error(exc) from exc
    return jsonable_encoder(outcome)


@router.post("/restrictions/{restriction_id}")
async def remove_restriction(
    restriction_id: str,
    payload: ReasonIn,
    service: ReversalService = Depends(get_reversal_service_dep),
    user: AuthenticatedUser = Depends(get_current_user),
) -> dict[str, Any]:
    try:
        outcome = await service.remove_user_restriction(user.id, restriction_id, payload.reason)
    except ModerationError as exc:
        raise http_error(exc) from exc
    return jsonable_encoder(outcome)


@router.get("/actions/{action_id}/immutability")
async def verify_immutability(
    action_id: str,
    monitor: ImmutabilityMonitor = Depends(get_immutability_monitor_dep),
    user: AuthenticatedUser = Depends(get_current_user),
) -> dict[str, Any]:
    try:
        with log_context(action_id=action_id):
            report = await monitor.verify_reversal_immutability(user.id, action_id)
    except ModerationError as exc:
        raise http_error(exc) from exc
    return jsonable_encoder(report)


@router.post("/actions/{action_id}/modification-test")
async def modification_test(
    action_id: str,
    payload: ModificationPatchIn,
    monitor: ImmutabilityMonitor = Depends(get_immutability_monitor_dep),
    user: AuthenticatedUser = Depends(get_current_user),
) -> dict[str, Any]:
    patch = payload.model_dump(exclude_none=True) or None
    try:
        result = await monitor.attempt_reversal_modification(user.id, action_id, patch)
    except ModerationError as exc:
        raise http_error(exc) from exc
    return jsonable_encoder(result)


@router.get("/suspicious-activity")
async def suspicious_activity(
    user_id: Optional[str] = Query(default=None),
    window_hours: int = Query(default=24, ge=1, le=24 * 30),
    monitor: ImmutabilityMonitor = Depends(get_immutability_monitor_dep),
    user: AuthenticatedUser = Depends(get_current_user),
) -> dict[str, Any]:
    try:
        await monitor.guard.verify_admin_role(user.id, attempted_action="detect_suspicious_reversal_activity")
    except ModerationError as exc:
        raise http_error(exc) from exc
    result = await monitor.detect_suspicious_reversal_activity(user_id, window_hours)
    return jsonable_encoder(result)
