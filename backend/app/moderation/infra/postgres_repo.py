"""PostgreSQL-backed repositories for the moderation lifecycle."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Mapping, Optional, Sequence

import asyncpg

from app.moderation.domain.errors import StaleVersionError
from app.moderation.domain.models import (
    ActionType,
    AlbumContext,
    AlbumTrack,
    ModerationAction,
    QueueFilters,
    Report,
    ReportReason,
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

_REPORT_COLUMNS = """
    id, reporter_id, report_type, target_id, reported_user_id, reason, description, priority, status,
    moderator_flagged, internal_notes, created_at, resolved_at, resolved_by, action_taken
"""

_ACTION_COLUMNS = """
    id, moderator_id, target_user_id, action_type, target_type, target_id, reason, internal_notes,
    duration_days, expires_at, related_report_id, notification_message, metadata, notification_sent,
    created_at, revoked_at, revoked_by, version
"""

_RESTRICTION_COLUMNS = """
    id, user_id, restriction_type, reason, applied_by, expires_at, is_active, related_action_id,
    created_at, updated_at
"""

_CONTENT_TABLES = {
    ReportType.POST.value: "posts",
    ReportType.COMMENT.value: "comments",
    ReportType.TRACK.value: "tracks",
    ReportType.ALBUM.value: "albums",
}


def _json_document(raw: Any) -> dict[str, Any]:
    if raw is None:
        return {}
    if isinstance(raw, str):
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError:
            return {}
        return decoded if isinstance(decoded, dict) else {}
    return dict(raw)


def _str_or_none(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def _report_from_record(record: asyncpg.Record) -> Report:
    return Report(
        id=str(record["id"]),
        reporter_id=str(record["reporter_id"]),
        report_type=ReportType(record["report_type"]),
        target_id=str(record["target_id"]),
        reported_user_id=_str_or_none(record["reported_user_id"]),
        reason=ReportReason(record["reason"]),
        description=record["description"],
        priority=int(record["priority"]),
        status=ReportStatus(record["status"]),
        moderator_flagged=bool(record["moderator_flagged"]),
        internal_notes=record["internal_notes"],
        created_at=record["created_at"],
        resolved_at=record["resolved_at"],
        resolved_by=_str_or_none(record["resolved_by"]),
        action_taken=ActionType(record["action_taken"]) if record["action_taken"] else None,
    )


def _action_from_record(record: asyncpg.Record) -> ModerationAction:
    return ModerationAction(
        id=str(record["id"]),
        moderator_id=str(record["moderator_id"]),
        target_user_id=str(record["target_user_id"]),
        action_type=ActionType(record["action_type"]),
        target_type=record["target_type"],
        target_id=_str_or_none(record["target_id"]),
        reason=record["reason"],
        internal_notes=record["internal_notes"],
        duration_days=record["duration_days"],
        expires_at=record["expires_at"],
        related_report_id=_str_or_none(record["related_report_id"]),
        notification_message=record["notification_message"],
        metadata=_json_document(record["metadata"]),
        notification_sent=bool(record["notification_sent"]),
        created_at=record["created_at"],
        revoked_at=record["revoked_at"],
        revoked_by=_str_or_none(record["revoked_by"]),
        version=int(record["version"]),
    )


def _restriction_from_record(record: asyncpg.Record) -> UserRestriction:
    return UserRestriction(
        id=str(record["id"]),
        user_id=str(record["user_id"]),
        restriction_type=RestrictionType(record["restriction_type"]),
        reason=record["reason"],
        applied_by=str(record["applied_by"]),
        expires_at=record["expires_at"],
        is_active=bool(record["is_active"]),
        related_action_id=_str_or_none(record["related_action_id"]),
        created_at=record["created_at"],
        updated_at=record["updated_at"],
    )


class PostgresRoleStore(RoleStore):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def has_role(self, user_id: str, role: Role) -> bool:
        query = "SELECT 1 FROM user_roles WHERE user_id = $1 AND role = $2 LIMIT 1"
        return await self.pool.fetchrow(query, user_id, role.value) is not None

    async def list_user_ids_with_role(self, role: Role) -> Sequence[str]:
        records = await self.pool.fetch("SELECT DISTINCT user_id FROM user_roles WHERE role = $1", role.value)
        return [str(record["user_id"]) for record in records]


class PostgresReportRepository(ReportRepository):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def create_report(self, report: Report) -> Report:
        query = f"""
        INSERT INTO moderation_reports (
            id, reporter_id, report_type, target_id, reported_user_id, reason, description, priority,
            status, moderator_flagged, internal_notes, created_at
        )
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
        RETURNING {_REPORT_COLUMNS}
        """
        record = await self.pool.fetchrow(
            query,
            report.id,
            report.reporter_id,
            report.report_type.value,
            report.target_id,
            report.reported_user_id,
            report.reason.value,
            report.description,
            report.priority,
            report.status.value,
            report.moderator_flagged,
            report.internal_notes,
            report.created_at,
        )
        assert record is not None
        return _report_from_record(record)

    async def get_report(self, report_id: str) -> Optional[Report]:
        record = await self.pool.fetchrow(f"SELECT {_REPORT_COLUMNS} FROM moderation_reports WHERE id = $1", report_id)
        return _report_from_record(record) if record else None

    async def find_recent_report(
        self,
        *,
        reporter_id: str,
        report_type: ReportType,
        target_id: str,
        since: datetime,
    ) -> Optional[Report]:
        query = f"""
        SELECT {_REPORT_COLUMNS}
        FROM moderation_reports
        WHERE reporter_id = $1 AND report_type = $2 AND target_id = $3 AND created_at >= $4
        ORDER BY created_at DESC
        LIMIT 1
        """
        record = await self.pool.fetchrow(query, reporter_id, report_type.value, target_id, since)
        return _report_from_record(record) if record else None

    async def count_reports_since(self, reporter_id: str, since: datetime) -> int:
        query = "SELECT COUNT(*) FROM moderation_reports WHERE reporter_id = $1 AND created_at >= $2"
        return int(await self.pool.fetchval(query, reporter_id, since) or 0)

    async def resolve_report(
        self,
        report_id: str,
        *,
        resolved_by: str,
        resolved_at: datetime,
        action_taken: ActionType,
        resolution_notes: Optional[str] = None,
    ) -> Report:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                existing = await conn.fetchrow(
                    f"SELECT {_REPORT_COLUMNS} FROM moderation_reports WHERE id = $1 FOR UPDATE", report_id
                )
                if existing is None:
                    raise KeyError(report_id)
                check_report_update(_report_from_record(existing))
                query = f"""
                UPDATE moderation_reports
                SET status = $2, resolved_by = $3, resolved_at = $4, action_taken = $5,
                    internal_notes = COALESCE($6, internal_notes)
                WHERE id = $1
                RETURNING {_REPORT_COLUMNS}
                """
                record = await conn.fetchrow(
                    query,
                    report_id,
                    ReportStatus.RESOLVED.value,
                    resolved_by,
                    resolved_at,
                    action_taken.value,
                    resolution_notes,
                )
        assert record is not None
        return _report_from_record(record)

    async def list_reports(self, filters: QueueFilters) -> Sequence[Report]:
        clauses: list[str] = []
        params: list[Any] = []
        if filters.status is not None:
            params.append(filters.status.value)
            clauses.append(f"status = ${len(params)}")
        if filters.priority is not None:
            params.append(filters.priority)
            clauses.append(f"priority = ${len(params)}")
        if filters.report_type is not None:
            params.append(filters.report_type.value)
            clauses.append(f"report_type = ${len(params)}")
        if filters.moderator_flagged is not None:
            params.append(filters.moderator_flagged)
            clauses.append(f"moderator_flagged = ${len(params)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(filters.limit)
        query = f"""
        SELECT {_REPORT_COLUMNS}
        FROM moderation_reports
        {where}
        ORDER BY moderator_flagged DESC, priority ASC, created_at ASC
        LIMIT ${len(params)}
        """
        records = await self.pool.fetch(query, *params)
        return [_report_from_record(record) for record in records]


class PostgresActionRepository(ActionRepository):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def insert_actions(self, actions: Sequence[ModerationAction]) -> Sequence[ModerationAction]:
        query = f"""
        INSERT INTO moderation_actions (
            id, moderator_id, target_user_id, action_type, target_type, target_id, reason, internal_notes,
            duration_days, expires_at, related_report_id, notification_message, metadata, notification_sent,
            created_at, version
        )
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13::jsonb, $14, $15, $16)
        RETURNING {_ACTION_COLUMNS}
        """
        stored: list[ModerationAction] = []
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                for action in actions:
                    record = await conn.fetchrow(
                        query,
                        action.id,
                        action.moderator_id,
                        action.target_user_id,
                        action.action_type.value,
                        action.target_type,
                        action.target_id,
                        action.reason,
                        action.internal_notes,
                        action.duration_days,
                        action.expires_at,
                        action.related_report_id,
                        action.notification_message,
                        json.dumps(action.metadata, default=str),
                        action.notification_sent,
                        action.created_at,
                        action.version,
                    )
                    assert record is not None
                    stored.append(_action_from_record(record))
        return stored

    async def get_action(self, action_id: str) -> Optional[ModerationAction]:
        record = await self.pool.fetchrow(f"SELECT {_ACTION_COLUMNS} FROM moderation_actions WHERE id = $1", action_id)
        return _action_from_record(record) if record else None

    async def update_action(self, action: ModerationAction, *, expected_version: int) -> ModerationAction:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                existing = await conn.fetchrow(
                    f"SELECT {_ACTION_COLUMNS} FROM moderation_actions WHERE id = $1 FOR UPDATE", action.id
                )
                if existing is None:
                    raise KeyError(action.id)
                current = _action_from_record(existing)
                if current.version != expected_version:
                    raise StaleVersionError(f"action {action.id} is at version {current.version}")
                check_action_update(current, action)
                query = f"""
                UPDATE moderation_actions
                SET internal_notes = $3, duration_days = $4, expires_at = $5, notification_message = $6,
                    metadata = $7::jsonb, notification_sent = $8, revoked_at = $9, revoked_by = $10,
                    version = version + 1
                WHERE id = $1 AND version = $2
                RETURNING {_ACTION_COLUMNS}
                """
                record = await conn.fetchrow(
                    query,
                    action.id,
                    expected_version,
                    action.internal_notes,
                    action.duration_days,
                    action.expires_at,
                    action.notification_message,
                    json.dumps(action.metadata, default=str),
                    action.notification_sent,
                    action.revoked_at,
                    action.revoked_by,
                )
        if record is None:
            raise StaleVersionError(f"action {action.id} changed during update")
        return _action_from_record(record)

    async def list_actions(self, query: ActionQuery) -> Sequence[ModerationAction]:
        where, params = _action_filters(query)
        order_column = "revoked_at" if query.order_by == "revoked_at" else "created_at"
        sql = f"SELECT {_ACTION_COLUMNS} FROM moderation_actions {where} ORDER BY {order_column} DESC NULLS LAST"
        if query.limit is not None:
            params.append(query.limit)
            sql += f" LIMIT ${len(params)}"
        records = await self.pool.fetch(sql, *params)
        return [_action_from_record(record) for record in records]

    async def count_actions(self, query: ActionQuery) -> int:
        where, params = _action_filters(query)
        return int(await self.pool.fetchval(f"SELECT COUNT(*) FROM moderation_actions {where}", *params) or 0)


def _action_filters(query: ActionQuery) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []

    def add(clause: str, value: Any) -> None:
        params.append(value)
        clauses.append(clause.format(n=len(params)))

    if query.target_user_id is not None:
        add("target_user_id = ${n}", query.target_user_id)
    if query.moderator_id is not None:
        add("moderator_id = ${n}", query.moderator_id)
    if query.revoked_by is not None:
        add("revoked_by = ${n}", query.revoked_by)
    if query.action_types is not None:
        add("action_type = ANY(${n}::text[])", [item.value for item in query.action_types])
    if query.target_type is not None:
        add("target_type = ${n}", query.target_type)
    if query.target_id is not None:
        add("target_id = ${n}", query.target_id)
    if query.created_from is not None:
        add("created_at >= ${n}", query.created_from)
    if query.created_to is not None:
        add("created_at <= ${n}", query.created_to)
    if query.revoked_from is not None:
        add("revoked_at >= ${n}", query.revoked_from)
    if query.revoked_to is not None:
        add("revoked_at <= ${n}", query.revoked_to)
    if query.revoked is True:
        clauses.append("revoked_at IS NOT NULL")
    elif query.revoked is False:
        clauses.append("revoked_at IS NULL")
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    return where, params


class PostgresRestrictionRepository(RestrictionRepository):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def create_restriction(self, restriction: UserRestriction) -> UserRestriction:
        query = f"""
        INSERT INTO user_restrictions (
            id, user_id, restriction_type, reason, applied_by, expires_at, is_active, related_action_id,
            created_at, updated_at
        )
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
        RETURNING {_RESTRICTION_COLUMNS}
        """
        record = await self.pool.fetchrow(
            query,
            restriction.id,
            restriction.user_id,
            restriction.restriction_type.value,
            restriction.reason,
            restriction.applied_by,
            restriction.expires_at,
            restriction.is_active,
            restriction.related_action_id,
            restriction.created_at,
            restriction.updated_at,
        )
        assert record is not None
        return _restriction_from_record(record)

    async def get_restriction(self, restriction_id: str) -> Optional[UserRestriction]:
        record = await self.pool.fetchrow(
            f"SELECT {_RESTRICTION_COLUMNS} FROM user_restrictions WHERE id = $1", restriction_id
        )
        return _restriction_from_record(record) if record else None

    async def find_active(self, user_id: str, restriction_type: RestrictionType) -> Optional[UserRestriction]:
        query = f"""
        SELECT {_RESTRICTION_COLUMNS}
        FROM user_restrictions
        WHERE user_id = $1 AND restriction_type = $2 AND is_active
        ORDER BY created_at DESC
        LIMIT 1
        """
        record = await self.pool.fetchrow(query, user_id, restriction_type.value)
        return _restriction_from_record(record) if record else None

    async def list_active(self, user_id: str, *, now: datetime) -> Sequence[UserRestriction]:
        query = f"""
        SELECT {_RESTRICTION_COLUMNS}
        FROM user_restrictions
        WHERE user_id = $1 AND is_active AND (expires_at IS NULL OR expires_at > $2)
        ORDER BY created_at DESC
        """
        records = await self.pool.fetch(query, user_id, now)
        return [_restriction_from_record(record) for record in records]

    async def deactivate(self, restriction_id: str, *, at: datetime) -> Optional[UserRestriction]:
        query = f"""
        UPDATE user_restrictions SET is_active = FALSE, updated_at = $2
        WHERE id = $1
        RETURNING {_RESTRICTION_COLUMNS}
        """
        record = await self.pool.fetchrow(query, restriction_id, at)
        return _restriction_from_record(record) if record else None

    async def deactivate_for_action(self, action_id: str, *, at: datetime) -> Sequence[UserRestriction]:
        query = f"""
        UPDATE user_restrictions SET is_active = FALSE, updated_at = $2
        WHERE related_action_id = $1 AND is_active
        RETURNING {_RESTRICTION_COLUMNS}
        """
        records = await self.pool.fetch(query, action_id, at)
        return [_restriction_from_record(record) for record in records]

    async def deactivate_by_type(
        self,
        user_id: str,
        restriction_type: RestrictionType,
        *,
        at: datetime,
    ) -> Sequence[UserRestriction]:
        query = f"""
        UPDATE user_restrictions SET is_active = FALSE, updated_at = $3
        WHERE user_id = $1 AND restriction_type = $2 AND is_active
        RETURNING {_RESTRICTION_COLUMNS}
        """
        records = await self.pool.fetch(query, user_id, restriction_type.value, at)
        return [_restriction_from_record(record) for record in records]


class PostgresProfileRepository(ProfileRepository):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        query = "SELECT id, username, suspended_until, suspension_reason FROM profiles WHERE id = $1"
        record = await self.pool.fetchrow(query, user_id)
        if record is None:
            return None
        return UserProfile(
            user_id=str(record["id"]),
            username=record["username"],
            suspended_until=record["suspended_until"],
            suspension_reason=record["suspension_reason"],
        )

    async def set_suspension(self, user_id: str, *, until: datetime, reason: str) -> None:
        query = "UPDATE profiles SET suspended_until = $2, suspension_reason = $3 WHERE id = $1"
        await self.pool.execute(query, user_id, until, reason)

    async def clear_suspension(self, user_id: str) -> None:
        query = "UPDATE profiles SET suspended_until = NULL, suspension_reason = NULL WHERE id = $1"
        await self.pool.execute(query, user_id)


class PostgresContentRepository(ContentRepository):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def resolve_owner(self, content_type: ReportType, content_id: str) -> Optional[str]:
        table = _CONTENT_TABLES.get(content_type.value)
        if table is None:
            return None
        owner = await self.pool.fetchval(f"SELECT user_id FROM {table} WHERE id = $1", content_id)
        return _str_or_none(owner)

    async def get_album(self, album_id: str) -> Optional[AlbumContext]:
        album = await self.pool.fetchrow(
            """
            SELECT id, name, description, cover_image_url, user_id, is_public, created_at
            FROM albums
            WHERE id = $1
            """,
            album_id,
        )
        if album is None:
            return None
        tracks = await self.pool.fetch(
            """
            SELECT t.id, t.title, t.duration, at.position
            FROM album_tracks at
            JOIN tracks t ON t.id = at.track_id
            WHERE at.album_id = $1
            ORDER BY at.position ASC
            """,
            album_id,
        )
        return AlbumContext(
            id=str(album["id"]),
            name=album["name"],
            description=album["description"],
            cover_image_url=album["cover_image_url"],
            user_id=str(album["user_id"]),
            is_public=bool(album["is_public"]),
            created_at=album["created_at"],
            tracks=[
                AlbumTrack(
                    id=str(track["id"]),
                    title=track["title"],
                    position=int(track["position"]),
                    duration=track["duration"],
                )
                for track in tracks
            ],
        )

    async def delete_content(self, content_type: str, content_id: str) -> bool:
        table = _CONTENT_TABLES.get(content_type)
        if table is None:
            return False
        result = await self.pool.execute(f"DELETE FROM {table} WHERE id = $1", content_id)
        return result.endswith(" 1")

    async def delete_album(self, album_id: str, *, remove_tracks: bool) -> None:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                track_ids = [
                    record["track_id"]
                    for record in await conn.fetch("SELECT track_id FROM album_tracks WHERE album_id = $1", album_id)
                ]
                await conn.execute("DELETE FROM album_tracks WHERE album_id = $1", album_id)
                await conn.execute("DELETE FROM albums WHERE id = $1", album_id)
                if remove_tracks and track_ids:
                    await conn.execute("DELETE FROM tracks WHERE id = ANY($1::uuid[])", track_ids)


class PostgresSecurityEventRepository(SecurityEventRepository):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def append(self, event: SecurityEvent) -> SecurityEvent:
        query = """
        INSERT INTO security_events (id, event_type, user_id, details, created_at)
        VALUES ($1, $2, $3, $4::jsonb, $5)
        """
        await self.pool.execute(
            query, event.id, event.event_type, event.user_id, json.dumps(event.details, default=str), event.created_at
        )
        return event

    async def list_events(
        self,
        *,
        event_types: Sequence[str],
        since: datetime,
        user_id: Optional[str] = None,
    ) -> Sequence[SecurityEvent]:
        query = """
        SELECT id, event_type, user_id, details, created_at
        FROM security_events
        WHERE event_type = ANY($1::text[]) AND created_at >= $2 AND ($3::text IS NULL OR user_id::text = $3)
        ORDER BY created_at ASC
        """
        records = await self.pool.fetch(query, list(event_types), since, user_id)
        return [
            SecurityEvent(
                id=str(record["id"]),
                event_type=record["event_type"],
                user_id=_str_or_none(record["user_id"]),
                details=_json_document(record["details"]),
                created_at=record["created_at"],
            )
            for record in records
        ]


class PostgresNotificationDispatcher(NotificationDispatcher):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def send(self, user_id: str, title: str, message: str, data: Mapping[str, Any]) -> Optional[str]:
        query = """
        INSERT INTO notifications (user_id, type, title, message, data)
        VALUES ($1, 'moderation', $2, $3, $4::jsonb)
        RETURNING id
        """
        notification_id = await self.pool.fetchval(query, user_id, title, message, json.dumps(dict(data), default=str))
        return _str_or_none(notification_id)
