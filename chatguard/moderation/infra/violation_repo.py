"""Redis persistence for the message violation ledger."""

from __future__ import annotations

import json
import logging
from typing import Sequence

from redis.asyncio import Redis

from chatguard.infra.redis import RedisProxy
from chatguard.moderation.domain.violations import MessageViolation, ViolationRepository
from chatguard.moderation.infra.redis_errors import store_errors

logger = logging.getLogger(__name__)


class RedisViolationRepository(ViolationRepository):
    """JSON record per violation, indexed by timestamp globally and per sender."""

    def __init__(self, redis: RedisProxy | Redis, *, namespace: str = "chatguard") -> None:
        self._redis = redis
        self._namespace = namespace

    def _key(self, violation_id: str) -> str:
        return f"{self._namespace}:violations:{violation_id}"

    @property
    def _timeline_key(self) -> str:
        return f"{self._namespace}:violations:index:time"

    def _sender_key(self, sender_id: str) -> str:
        return f"{self._namespace}:violations:index:sender:{sender_id}"

    async def save(self, violation: MessageViolation) -> None:
        score = violation.timestamp.timestamp()
        with store_errors("violations", "save"):
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.set(self._key(violation.violation_id), json.dumps(violation.to_document()))
                pipe.zadd(self._timeline_key, {violation.violation_id: score})
                pipe.zadd(self._sender_key(violation.sender_id), {violation.violation_id: score})
                await pipe.execute()

    async def get(self, violation_id: str) -> MessageViolation | None:
        with store_errors("violations", "get"):
            raw = await self._redis.get(self._key(violation_id))
        return _decode(raw)

    async def list_recent(self, limit: int) -> Sequence[MessageViolation]:
        if limit <= 0:
            return []
        return await self._load_range(self._timeline_key, limit - 1, "list")

    async def list_for_sender(self, sender_id: str) -> Sequence[MessageViolation]:
        return await self._load_range(self._sender_key(sender_id), -1, "list_sender")

    async def _load_range(self, index_key: str, stop: int, op: str) -> list[MessageViolation]:
        with store_errors("violations", op):
            ids = await self._redis.zrevrange(index_key, 0, stop)
            if not ids:
                return []
            rows = await self._redis.mget([self._key(violation_id) for violation_id in ids])
        return [item for item in (_decode(raw) for raw in rows) if item is not None]


def _decode(raw: str | None) -> MessageViolation | None:
    if raw is None:
        return None
    try:
        return MessageViolation.from_document(json.loads(raw))
    except (ValueError, KeyError, TypeError):
        logger.warning("unreadable violation record")
        return None
