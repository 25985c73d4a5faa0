"""Redis client for the moderation service.

Modules import the shared ``redis_client`` proxy. The real connection is built on
first use from ``settings.redis_url``; tests install a fakeredis client through
``set_redis_client`` before anything touches Redis.
"""

from __future__ import annotations

from typing import Optional

import redis.asyncio as redis

from app.settings import settings


class RedisProxy:
	"""Forwards attribute access to the installed client, creating it lazily."""

	def __init__(self, url: str) -> None:
		self._url = url
		self._client: Optional[redis.Redis] = None

	def set_client(self, client: Optional[redis.Redis]) -> None:
		self._client = client

	@property
	def client(self) -> redis.Redis:
		if self._client is None:
			self._client = redis.from_url(self._url, decode_responses=True)
		return self._client

	def __getattr__(self, item):
		return getattr(self.client, item)


redis_client = RedisProxy(settings.redis_url)


def set_redis_client(client: Optional[redis.Redis]) -> None:
	redis_client.set_client(client)


def namespaced(*parts: str) -> str:
	"""Join key parts under the service prefix, e.g. ``mod:rl:report:<user>``."""
	return ":".join((settings.redis_key_prefix, *parts))
