"""Redis connection management.

Provides a proxy object that forwards to an underlying ``redis.asyncio`` client.
The client can be swapped at runtime (e.g., to fakeredis in tests) without
breaking references already handed to repositories.
"""

from __future__ import annotations

import asyncio
import logging
from time import perf_counter

import redis.asyncio as redis
from redis.exceptions import RedisError

from chatguard.obs import metrics

LOGGER = logging.getLogger(__name__)


class RedisProxy:
	"""Lightweight proxy that forwards attribute access to an underlying Redis client."""

	def __init__(self, client: redis.Redis):
		self._client: redis.Redis = client

	def set_client(self, client: redis.Redis) -> None:
		self._client = client

	@property
	def client(self) -> redis.Redis:
		return self._client

	async def ping_ok(self, timeout: float = 0.2) -> bool:
		"""Ping the server and record availability/latency metrics."""
		start = perf_counter()
		try:
			await asyncio.wait_for(self._client.ping(), timeout=timeout)
		except (asyncio.TimeoutError, RedisError, OSError):
			metrics.mark_redis(False)
			LOGGER.warning("Redis ping failed", exc_info=True)
			return False
		metrics.mark_redis(True, latency_seconds=perf_counter() - start)
		return True

	# Fallback: delegate everything else to the underlying client
	def __getattr__(self, item):
		return getattr(self._client, item)


def build_redis(url: str) -> RedisProxy:
	"""Create a proxy around a client for ``url``; no connection is opened yet."""
	return RedisProxy(redis.from_url(url, decode_responses=True))

