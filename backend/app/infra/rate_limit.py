"""Redis-backed rolling-window rate limiting utilities."""

from __future__ import annotations

import time
import uuid
from typing import Optional

from app.infra.redis import namespaced, redis_client


def _key(kind: str, actor_id: str) -> str:
	return namespaced("rl", kind, actor_id)


async def recent_count(
	kind: str,
	actor_id: str,
	*,
	window_seconds: int,
	now: Optional[float] = None,
) -> int:
	"""Return how many hits ``actor_id`` recorded for ``kind`` inside the rolling window."""

	now = now or time.time()
	key = _key(kind, actor_id)
	async with redis_client.pipeline(transaction=True) as pipe:
		pipe.zremrangebyscore(key, 0, now - max(1, int(window_seconds)))
		pipe.zcard(key)
		_, count = await pipe.execute()
	return int(count)


async def record(
	kind: str,
	actor_id: str,
	*,
	window_seconds: int,
	now: Optional[float] = None,
) -> int:
	"""Record one hit and return the number of hits now inside the window."""

	now = now or time.time()
	window = max(1, int(window_seconds))
	key = _key(kind, actor_id)
	member = f"{now:.6f}:{uuid.uuid4().hex}"
	async with redis_client.pipeline(transaction=True) as pipe:
		pipe.zremrangebyscore(key, 0, now - window)
		pipe.zadd(key, {member: now})
		pipe.expire(key, window)
		pipe.zcard(key)
		_, _, _, count = await pipe.execute()
	return int(count)
