"""In-memory repositories for development and tests."""

from __future__ import annotations

import copy
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from app.moderation.domain.errors import StaleVersionError
from app.moderation.domain.models import (
    ActionType,
    AlbumContext,
    ModerationAction,
    QueueFilters,
    Report,
    ReportStatus,
    ReportType,
    RestrictionType,
    Role,
    SecurityEvent,
    UserProfile,
    UserRestriction,
)
from app.moderation.domain.repository import (
    ActionQuery,
    ActionRepository,
    ContentRepository,
    NotificationDispatcher,
    ProfileRepository,
    ReportRepository,
    RestrictionRepository,
    RoleStore,
    SecurityEventRepository,
    check_action_update,
    check_report_update,
)


class InMemoryRoleStore(RoleStore):
    def __init__(self, roles: Optional[Mapping[str, Sequence[Role]]] = None) -> None:
        self._roles: Dict[str, Set[Role]] = {user_id: set(items) for user_id, items in (roles or {}).items()}

    def grant(self, user_id: str, role: Role) -> None:
        self._roles.setdefault(user_id, set()).add(role)

    def revoke(self, user_id: str, role: Role) -> None:
        self._roles.get(user_id, set()).discard(role)

    async def has_role(self, user_id: str, role: Role) -> bool:
        return role in self._roles.get(user_id, set())

    async def list_user_ids_with_role(self, role: Role) -> Sequence[str]:
        return [user_id for user_id, roles in self._roles.items() if role in roles]


class InMemoryReportRepository(ReportRepository):
    def __init__(self) -> None:
        self._items: Dict[str, Report] = {}

    async def create_report(self, report: Report) -> Report:
        self._items[report.id] = copy.deepcopy(report)
        return copy.deepcopy(report)

    async def get_report(self, report_id: str) -> Optional[Report]:
        report = self._items.get(report_id)
        return copy.deepcopy(report) if report else None

    async def find_recent_report(
        self,
        *,
        reporter_id: str,
        report_type: ReportType,
        target_id: str,
        since: datetime,
    ) -> Optional[Report]:
        for report in self._items.values():
            if (
                report.reporter_id == reporter_id
                and report.report_type is report_type
                and report.target_id == target_id
                and report.created_at >= since
            ):
                return copy.deepcopy(report)
        return None

    async def count_reports_since(self, reporter_id: str, since: datetime) -> int:
        return sum(1 for report in self._items.values() if report.reporter_id == reporter_id and report.created_at >= since)

    async def resolve_report(
        self,
        report_id: str,
        *,
        resolved_by: str,
        resolved_at: datetime,
        action_taken: ActionType,
        resolution_notes: Optional[str] = None,
    ) -> Report:
        existing = self._items.get(report_id)
        if existing is None:
            raise KeyError(report_id)
        check_report_update(existing)
        updated = replace(
            existing,
            status=ReportStatus.RESOLVED,
            resolved_by=resolved_by,
            resolved_at=resolved_at,
            action_taken=action_taken,
            internal_notes=resolution_notes or existing.internal_notes,
        )
        self._items[report_id] = updated
        return copy.deepcopy(updated)

    async def list_reports(self, filters: QueueFilters) -> Sequence[Report]:
        items = [
            report
            for report in self._items.values()
            if (filters.status is None or report.status is filters.status)
            and (filters.priority is None or report.priority == filters.priority)
            and (filters.report_type is None or report.report_type is filters.report_type)
            and (filters.moderator_flagged is None or report.moderator_flagged == filters.moderator_flagged)
        ]
        items.sort(key=lambda report: report.created_at)
        items.sort(key=lambda report: (not report.moderator_flagged, report.priority))
        return [copy.deepcopy(report) for report in items[: filters.limit]]


class InMemoryActionRepository(ActionRepository):
    def __init__(self) -> None:
        self._items: Dict[str, ModerationAction] = {}
        self.fail_next_insert: Optional[Exception] = None

    async def insert_actions(self, actions: Sequence[ModerationAction]) -> Sequence[ModerationAction]:
        staged = [copy.deepcopy(action) for action in actions]
        ids = [action.id for action in staged]
        if len(set(ids)) != len(ids) or any(action_id in self._items for action_id in ids):
            raise ValueError("duplicate moderation action id")
        if self.fail_next_insert is not None:
            error, self.fail_next_insert = self.fail_next_insert, None
            raise error
        for action in staged:
            self._items[action.id] = action
        return [copy.deepcopy(action) for action in staged]

    async def get_action(self, action_id: str) -> Optional[ModerationAction]:
        action = self._items.get(action_id)
        return copy.deepcopy(action) if action else None

    async def update_action(self, action: ModerationAction, *, expected_version: int) -> ModerationAction:
        existing = self._items.get(action.id)
        if existing is None:
            raise KeyError(action.id)
        if existing.version != expected_version:
            raise StaleVersionError(f"action {action.id} is at version {existing.version}")
        check_action_update(existing, action)
        stored = copy.deepcopy(action)
        stored.version = existing.version + 1
        self._items[action.id] = stored
        return copy.deepcopy(stored)

    def put(self, action: ModerationAction) -> None:
        """Seed a record directly, bypassing the write checks."""
        self._items[action.id] = copy.deepcopy(action)

    async def list_actions(self, query: ActionQuery) -> Sequence[ModerationAction]:
        items = [action for action in self._items.values() if _matches(action, query)]
        if query.order_by == "revoked_at":
            items.sort(key=lambda action: (action.revoked_at or action.created_at), reverse=True)
        else:
            items.sort(key=lambda action: action.created_at, reverse=True)
        if query.limit is not None:
            items = items[: query.limit]
        return [copy.deepcopy(action) for action in items]

    async def count_actions(self, query: ActionQuery) -> int:
        return sum(1 for action in self._items.values() if _matches(action, query))


def _matches(action: ModerationAction, query: ActionQuery) -> bool:
    if query.target_user_id is not None and action.target_user_id != query.target_user_id:
        return False
    if query.moderator_id is not None and action.moderator_id != query.moderator_id:
        return False
    if query.revoked_by is not None and action.revoked_by != query.revoked_by:
        return False
    if query.action_types is not None and action.action_type not in query.action_types:
        return False
    if query.target_type is not None and action.target_type != query.target_type:
        return False
    if query.target_id is not None and action.target_id != query.target_id:
        return False
    if query.created_from is not None and action.created_at < query.created_from:
        return False
    if query.created_to is not None and action.created_at > query.created_to:
        return False
    if query.revoked is not None and action.is_revoked != query.revoked:
        return False
    if query.revoked_from is not None and (action.revoked_at is None or action.revoked_at < query.revoked_from):
        return False
    if query.revoked_to is not None and (action.revoked_at is None or action.revoked_at > query.revoked_to):
        return False
    return True


class InMemoryRestrictionRepository(RestrictionRepository):
    def __init__(self) -> None:
        self._items: Dict[str, UserRestriction] = {}

    async def create_restriction(self, restriction: UserRestriction) -> UserRestriction:
        self._items[restriction.id] = copy.deepcopy(restriction)
        return copy.deepcopy(restriction)

    async def get_restriction(self, restriction_id: str) -> Optional[UserRestriction]:
        restriction = self._items.get(restriction_id)
        return copy.deepcopy(restriction) if restriction else None

    async def find_active(self, user_id: str, restriction_type: RestrictionType) -> Optional[UserRestriction]:
        for restriction in self._items.values():
            if restriction.user_id == user_id and restriction.restriction_type is restriction_type and restriction.is_active:
                return copy.deepcopy(restriction)
        return None

    async def list_active(self, user_id: str, *, now: datetime) -> Sequence[UserRestriction]:
        return [
            copy.deepcopy(restriction)
            for restriction in self._items.values()
            if restriction.user_id == user_id and restriction.is_in_force(now=now)
        ]

    async def deactivate(self, restriction_id: str, *, at: datetime) -> Optional[UserRestriction]:
        restriction = self._items.get(restriction_id)
        if restriction is None:
            return None
        restriction.is_active = False
        restriction.updated_at = at
        return copy.deepcopy(restriction)

    async def deactivate_for_action(self, action_id: str, *, at: datetime) -> Sequence[UserRestriction]:
        return self._deactivate_where(lambda item: item.related_action_id == action_id, at)

    async def deactivate_by_type(
        self,
        user_id: str,
        restriction_type: RestrictionType,
        *,
        at: datetime,
    ) -> Sequence[UserRestriction]:
        return self._deactivate_where(
            lambda item: item.user_id == user_id and item.restriction_type is restriction_type,
            at,
        )

    def _deactivate_where(self, predicate, at: datetime) -> List[UserRestriction]:
        changed: List[UserRestriction] = []
        for restriction in self._items.values():
            if restriction.is_active and predicate(restriction):
                restriction.is_active = False
                restriction.updated_at = at
                changed.append(copy.deepcopy(restriction))
        return changed


class InMemoryProfileRepository(ProfileRepository):
    def __init__(self) -> None:
        self._items: Dict[str, UserProfile] = {}

    def put(self, profile: UserProfile) -> None:
        self._items[profile.user_id] = copy.deepcopy(profile)

    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        profile = self._items.get(user_id)
        return copy.deepcopy(profile) if profile else None

    async def set_suspension(self, user_id: str, *, until: datetime, reason: str) -> None:
        profile = self._items.setdefault(user_id, UserProfile(user_id=user_id))
        profile.suspended_until = until
        profile.suspension_reason = reason

    async def clear_suspension(self, user_id: str) -> None:
        profile = self._items.get(user_id)
        if profile is not None:
            profile.suspended_until = None
            profile.suspension_reason = None


class InMemoryContentRepository(ContentRepository):
    def __init__(self) -> None:
        self._content: Dict[Tuple[str, str], str] = {}
        self._albums: Dict[str, AlbumContext] = {}
        self.fail_deletes: Optional[Exception] = None

    def add_content(self, content_type: str, content_id: str, owner_id: str) -> None:
        self._content[(content_type, content_id)] = owner_id

    def add_album(self, album: AlbumContext) -> None:
        self._albums[album.id] = copy.deepcopy(album)
        self._content[(ReportType.ALBUM.value, album.id)] = album.user_id
        for track in album.tracks:
            self._content[(ReportType.TRACK.value, track.id)] = album.user_id

    def has_content(self, content_type: str, content_id: str) -> bool:
        return (content_type, content_id) in self._content

    def has_album(self, album_id: str) -> bool:
        return album_id in self._albums

    async def resolve_owner(self, content_type: ReportType, content_id: str) -> Optional[str]:
        return self._content.get((content_type.value, content_id))

    async def get_album(self, album_id: str) -> Optional[AlbumContext]:
        album = self._albums.get(album_id)
        if album is None:
            return None
        result = copy.deepcopy(album)
        result.tracks.sort(key=lambda track: track.position)
        return result

    async def delete_content(self, content_type: str, content_id: str) -> bool:
        if self.fail_deletes is not None:
            raise self.fail_deletes
        return self._content.pop((content_type, content_id), None) is not None

    async def delete_album(self, album_id: str, *, remove_tracks: bool) -> None:
        if self.fail_deletes is not None:
            raise self.fail_deletes
        album = self._albums.pop(album_id, None)
        self._content.pop((ReportType.ALBUM.value, album_id), None)
        if album is not None and remove_tracks:
            for track in album.tracks:
                self._content.pop((ReportType.TRACK.value, track.id), None)


class InMemorySecurityEventRepository(SecurityEventRepository):
    def __init__(self) -> None:
        self.events: List[SecurityEvent] = []

    async def append(self, event: SecurityEvent) -> SecurityEvent:
        self.events.append(copy.deepcopy(event))
        return event

    async def list_events(
        self,
        *,
        event_types: Sequence[str],
        since: datetime,
        user_id: Optional[str] = None,
    ) -> Sequence[SecurityEvent]:
        wanted = set(event_types)
        return [
            copy.deepcopy(event)
            for event in self.events
            if event.event_type in wanted
            and event.created_at >= since
            and (user_id is None or event.user_id == user_id)
        ]

    def of_type(self, event_type: str) -> List[SecurityEvent]:
        return [event for event in self.events if event.event_type == event_type]


class InMemoryNotificationDispatcher(NotificationDispatcher):
    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []

    async def send(self, user_id: str, title: str, message: str, data: Mapping[str, Any]) -> Optional[str]:
        notification_id = f"notif-{len(self.sent) + 1}"
        self.sent.append(
            {"id": notification_id, "user_id": user_id, "title": title, "message": message, "data": dict(data)}
        )
        return notification_id
