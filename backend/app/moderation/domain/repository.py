"""Storage and collaborator interfaces consumed by the moderation services."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional, Protocol, Sequence

from app.moderation.domain.errors import ImmutableRecordError, RecordStateError
from app.moderation.domain.models import (
    ActionType,
    AlbumContext,
    ModerationAction,
    QueueFilters,
    Report,
    ReportType,
    RestrictionType,
    Role,
    SecurityEvent,
    UserProfile,
    UserRestriction,
)

_ACTION_CORE_FIELDS = (
    "id",
    "moderator_id",
    "target_user_id",
    "action_type",
    "target_type",
    "target_id",
    "reason",
    "created_at",
    "related_report_id",
)


@dataclass(slots=True)
class ActionQuery:
    """Filter set understood by :meth:`ActionRepository.list_actions`.

    Date bounds are inclusive. ``order_by`` is either ``created_at`` or
    ``revoked_at``; results are always newest first.
    """

    target_user_id: Optional[str] = None
    moderator_id: Optional[str] = None
    revoked_by: Optional[str] = None
    action_types: Optional[Sequence[ActionType]] = None
    target_type: Optional[str] = None
    target_id: Optional[str] = None
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None
    revoked_from: Optional[datetime] = None
    revoked_to: Optional[datetime] = None
    revoked: Optional[bool] = None
    order_by: str = "created_at"
    limit: Optional[int] = None


class RoleStore(Protocol):
    async def has_role(self, user_id: str, role: Role) -> bool:
        ...

    async def list_user_ids_with_role(self, role: Role) -> Sequence[str]:
        ...


class ReportRepository(Protocol):
    async def create_report(self, report: Report) -> Report:
        ...

    async def get_report(self, report_id: str) -> Optional[Report]:
        ...

    async def find_recent_report(
        self,
        *,
        reporter_id: str,
        report_type: ReportType,
        target_id: str,
        since: datetime,
    ) -> Optional[Report]:
        ...

    async def count_reports_since(self, reporter_id: str, since: datetime) -> int:
        ...

    async def resolve_report(
        self,
        report_id: str,
        *,
        resolved_by: str,
        resolved_at: datetime,
        action_taken: ActionType,
        resolution_notes: Optional[str] = None,
    ) -> Report:
        """Move an open report to ``resolved``; raises ``RecordStateError`` if it already is."""
        ...

    async def list_reports(self, filters: QueueFilters) -> Sequence[Report]:
        ...


class ActionRepository(Protocol):
    async def insert_actions(self, actions: Sequence[ModerationAction]) -> Sequence[ModerationAction]:
        """Persist every record or none of them."""
        ...

    async def get_action(self, action_id: str) -> Optional[ModerationAction]:
        ...

    async def update_action(self, action: ModerationAction, *, expected_version: int) -> ModerationAction:
        """Compare-and-set write.

        Raises ``StaleVersionError`` when the stored version moved on and
        ``ImmutableRecordError`` when the write would alter sealed reversal fields.
        """
        ...

    async def list_actions(self, query: ActionQuery) -> Sequence[ModerationAction]:
        ...

    async def count_actions(self, query: ActionQuery) -> int:
        ...


class RestrictionRepository(Protocol):
    async def create_restriction(self, restriction: UserRestriction) -> UserRestriction:
        ...

    async def get_restriction(self, restriction_id: str) -> Optional[UserRestriction]:
        ...

    async def find_active(self, user_id: str, restriction_type: RestrictionType) -> Optional[UserRestriction]:
        ...

    async def list_active(self, user_id: str, *, now: datetime) -> Sequence[UserRestriction]:
        ...

    async def deactivate(self, restriction_id: str, *, at: datetime) -> Optional[UserRestriction]:
        ...

    async def deactivate_for_action(self, action_id: str, *, at: datetime) -> Sequence[UserRestriction]:
        ...

    async def deactivate_by_type(
        self,
        user_id: str,
        restriction_type: RestrictionType,
        *,
        at: datetime,
    ) -> Sequence[UserRestriction]:
        ...


class ProfileRepository(Protocol):
    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        ...

    async def set_suspension(self, user_id: str, *, until: datetime, reason: str) -> None:
        ...

    async def clear_suspension(self, user_id: str) -> None:
        ...


class ContentRepository(Protocol):
    async def resolve_owner(self, content_type: ReportType, content_id: str) -> Optional[str]:
        ...

    async def get_album(self, album_id: str) -> Optional[AlbumContext]:
        ...

    async def delete_content(self, content_type: str, content_id: str) -> bool:
        ...

    async def delete_album(self, album_id: str, *, remove_tracks: bool) -> None:
        """Delete the album row and its track links; track rows go too when ``remove_tracks``."""
        ...


class SecurityEventRepository(Protocol):
    async def append(self, event: SecurityEvent) -> SecurityEvent:
        ...

    async def list_events(
        self,
        *,
        event_types: Sequence[str],
        since: datetime,
        user_id: Optional[str] = None,
    ) -> Sequence[SecurityEvent]:
        ...


class NotificationDispatcher(Protocol):
    async def send(self, user_id: str, title: str, message: str, data: Mapping[str, Any]) -> Optional[str]:
        ...


def check_action_update(existing: ModerationAction, updated: ModerationAction) -> None:
    """Reject writes that would rewrite an action's audit trail."""

    for name in _ACTION_CORE_FIELDS:
        if getattr(existing, name) != getattr(updated, name):
            raise ImmutableRecordError(f"{name} cannot be modified")
    if existing.revoked_at is not None and updated.revoked_at != existing.revoked_at:
        raise ImmutableRecordError("revoked_at cannot be modified once set")
    if existing.revoked_by is not None and updated.revoked_by != existing.revoked_by:
        raise ImmutableRecordError("revoked_by cannot be modified once set")
    if (updated.revoked_at is None) != (updated.revoked_by is None):
        raise ImmutableRecordError("revoked_at and revoked_by must be set together")
    old_reason = existing.metadata.get("reversal_reason")
    if old_reason is not None and updated.metadata.get("reversal_reason") != old_reason:
        raise ImmutableRecordError("reversal_reason cannot be removed or modified")
    old_history = list(existing.metadata.get("state_changes") or [])
    new_history = list(updated.metadata.get("state_changes") or [])
    if new_history[: len(old_history)] != old_history:
        raise ImmutableRecordError("state_changes is append-only")


def check_report_update(existing: Report) -> None:
    if existing.is_resolved:
        raise RecordStateError("resolved reports cannot be modified")
