"""AsyncPG pool and schema bootstrap for the moderation tables.

Only the tables this service owns are created here. Profiles, roles, content
(posts, comments, tracks, albums) and notifications belong to the platform
database and are assumed to exist.
"""

from __future__ import annotations

import logging
from typing import Optional

import asyncpg

from app.settings import settings

logger = logging.getLogger(__name__)

_pool: Optional[asyncpg.pool.Pool] = None

MODERATION_SCHEMA = (
	"""
	CREATE TABLE IF NOT EXISTS moderation_reports (
		id UUID PRIMARY KEY,
		reporter_id UUID NOT NULL,
		report_type TEXT NOT NULL,
		target_id UUID NOT NULL,
		reported_user_id UUID,
		reason TEXT NOT NULL,
		description TEXT,
		priority SMALLINT NOT NULL CHECK (priority BETWEEN 1 AND 4),
		status TEXT NOT NULL DEFAULT 'pending',
		moderator_flagged BOOLEAN NOT NULL DEFAULT FALSE,
		internal_notes TEXT,
		created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
		resolved_at TIMESTAMPTZ,
		resolved_by UUID,
		action_taken TEXT
	)
	""",
	"CREATE INDEX IF NOT EXISTS moderation_reports_queue_idx ON moderation_reports (status, priority, created_at)",
	"CREATE INDEX IF NOT EXISTS moderation_reports_reporter_idx ON moderation_reports (reporter_id, created_at)",
	"""
	CREATE TABLE IF NOT EXISTS moderation_actions (
		id UUID PRIMARY KEY,
		moderator_id UUID NOT NULL,
		target_user_id UUID NOT NULL,
		action_type TEXT NOT NULL,
		target_type TEXT,
		target_id UUID,
		reason TEXT NOT NULL,
		internal_notes TEXT,
		duration_days INTEGER,
		expires_at TIMESTAMPTZ,
		related_report_id UUID REFERENCES moderation_reports (id),
		notification_message TEXT,
		metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
		notification_sent BOOLEAN NOT NULL DEFAULT FALSE,
		created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
		revoked_at TIMESTAMPTZ,
		revoked_by UUID,
		version INTEGER NOT NULL DEFAULT 1,
		CONSTRAINT moderation_actions_revocation_pair CHECK ((revoked_at IS NULL) = (revoked_by IS NULL)),
		CONSTRAINT moderation_actions_revocation_order CHECK (revoked_at IS NULL OR revoked_at >= created_at)
	)
	""",
	"CREATE INDEX IF NOT EXISTS moderation_actions_target_idx ON moderation_actions (target_user_id, created_at DESC)",
	"CREATE INDEX IF NOT EXISTS moderation_actions_moderator_idx ON moderation_actions (moderator_id, created_at)",
	"CREATE INDEX IF NOT EXISTS moderation_actions_revoked_idx ON moderation_actions (revoked_at) WHERE revoked_at IS NOT NULL",
	"""
	CREATE TABLE IF NOT EXISTS user_restrictions (
		id UUID PRIMARY KEY,
		user_id UUID NOT NULL,
		restriction_type TEXT NOT NULL,
		reason TEXT NOT NULL,
		applied_by UUID NOT NULL,
		expires_at TIMESTAMPTZ,
		is_active BOOLEAN NOT NULL DEFAULT TRUE,
		related_action_id UUID REFERENCES moderation_actions (id),
		created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
		updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
	)
	""",
	"CREATE INDEX IF NOT EXISTS user_restrictions_active_idx ON user_restrictions (user_id, restriction_type) WHERE is_active",
	"""
	CREATE TABLE IF NOT EXISTS security_events (
		id UUID PRIMARY KEY,
		event_type TEXT NOT NULL,
		user_id UUID,
		details JSONB NOT NULL DEFAULT '{}'::jsonb,
		created_at TIMESTAMPTZ NOT NULL DEFAULT now()
	)
	""",
	"CREATE INDEX IF NOT EXISTS security_events_type_idx ON security_events (event_type, created_at)",
)


async def init_pool() -> asyncpg.pool.Pool:
	global _pool
	if _pool is None:
		_pool = await asyncpg.create_pool(
			dsn=settings.postgres_url,
			min_size=settings.postgres_min_pool_size,
			max_size=settings.postgres_max_pool_size,
		)
		logger.info("postgres pool ready", extra={"min_size": settings.postgres_min_pool_size})
	return _pool


async def ensure_schema(pool: asyncpg.pool.Pool) -> None:
	"""Create the moderation tables and indexes when they are missing."""
	async with pool.acquire() as conn:
		async with conn.transaction():
			for statement in MODERATION_SCHEMA:
				await conn.execute(statement)
	logger.info("moderation schema ensured", extra={"statements": len(MODERATION_SCHEMA)})


async def get_pool() -> asyncpg.pool.Pool:
	if _pool is None:
		await init_pool()
	assert _pool is not None
	return _pool


async def close_pool() -> None:
	global _pool
	if _pool is not None:
		await _pool.close()
		_pool = None
