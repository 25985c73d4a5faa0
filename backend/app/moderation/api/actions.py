"""Moderation action endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, status
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, ConfigDict, Field

from app.infra.auth import AuthenticatedUser, get_current_user
from app.moderation.api.deps import get_action_service_dep, http_error
from app.moderation.domain.actions_service import ActionService
from app.moderation.domain.errors import ModerationError
from app.moderation.domain.models import ActionType, CascadingOptions, ModerationActionParams

router = APIRouter(prefix="/api/mod/v1/actions", tags=["moderation-actions"])


class CascadingOptionsIn(BaseModel):
    remove_album: bool = True
    remove_tracks: bool = True


class ActionIn(BaseModel):
    action_type: str
    target_user_id: str
    reason: str
    report_id: Optional[str] = None
    target_type: Optional[str] = None
    target_id: Optional[str] = None
    internal_notes: Optional[str] = None
    duration_days: Optional[int] = None
    restriction_type: Optional[str] = None
    notification_message: Optional[str] = None
    cascading_options: Optional[CascadingOptionsIn] = None

    def to_params(self) -> ModerationActionParams:
        data = self.model_dump(exclude={"cascading_options"})
        cascading = None
        if self.cascading_options is not None:
            cascading = CascadingOptions(**self.cascading_options.model_dump())
        return ModerationActionParams(**data, cascading_options=cascading)


class ActionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    moderator_id: str
    target_user_id: str
    action_type: ActionType
    target_type: Optional[str]
    target_id: Optional[str]
    reason: str
    duration_days: Optional[int]
    expires_at: Optional[datetime]
    related_report_id: Optional[str]
    metadata: Dict[str, Any] = Field(default_factory=dict)
    notification_sent: bool
    created_at: datetime
    revoked_at: Optional[datetime]
    revoked_by: Optional[str]


class ActionOutcomeOut(BaseModel):
    action: ActionOut
    cascaded: List[ActionOut] = Field(default_factory=list)


@router.post("", response_model=ActionOutcomeOut, status_code=status.HTTP_201_CREATED)
async def take_action(
    payload: ActionIn,
    service: ActionService = Depends(get_action_service_dep),
    user: AuthenticatedUser = Depends(get_current_user),
) -> ActionOutcomeOut:
    try:
        outcome = await service.take_moderation_action(user.id, payload.to_params())
    except ModerationError as exc:
        raise http_error(exc) from exc
    return ActionOutcomeOut(
        action=ActionOut.model_validate(outcome.action),
        cascaded=[ActionOut.model_validate(record) for record in outcome.cascaded],
    )


@router.get("/albums/{album_id}/context")
async def album_context(
    album_id: str,
    service: ActionService = Depends(get_action_service_dep),
    user: AuthenticatedUser = Depends(get_current_user),
) -> dict[str, Any]:
    try:
        album = await service.fetch_album_context(user.id, album_id)
    except ModerationError as exc:
        raise http_error(exc) from exc
    payload = jsonable_encoder(album)
    payload["track_count"] = album.track_count
    payload["total_duration"] = album.total_duration
    return payload
