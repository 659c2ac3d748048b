"""Redis persistence for per-user sanction records."""

from __future__ import annotations

import json
import logging
from typing import Sequence

from redis.asyncio import Redis
from redis.exceptions import WatchError

from chatguard.infra.redis import RedisProxy
from chatguard.moderation.domain.errors import SanctionDataError
from chatguard.moderation.domain.sanctions import SanctionRecord, SanctionRepository
from chatguard.moderation.infra.redis_errors import store_errors

logger = logging.getLogger(__name__)


def _decode(raw: str) -> SanctionRecord:
    try:
        return SanctionRecord.from_document(json.loads(raw))
    except (ValueError, KeyError, TypeError, AttributeError) as exc:
        raise SanctionDataError() from exc


def _stored_version(raw: str | None) -> int | None:
    """Version of the stored record, 0 when absent, None when unreadable."""
    if raw is None:
        return 0
    try:
        return int(json.loads(raw).get("version", 0))
    except (ValueError, AttributeError, TypeError):
        return None


class RedisSanctionRepository(SanctionRepository):
    """One JSON record per user, written with WATCH/MULTI on the stored version."""

    def __init__(self, redis: RedisProxy | Redis, *, namespace: str = "chatguard") -> None:
        self._redis = redis
        self._namespace = namespace

    def _key(self, user_id: str) -> str:
        return f"{self._namespace}:warnings:{user_id}"

    @property
    def _users_key(self) -> str:
        return f"{self._namespace}:warnings:index:users"

    @property
    def _blocked_key(self) -> str:
        return f"{self._namespace}:warnings:index:blocked"

    async def get(self, user_id: str) -> SanctionRecord | None:
        with store_errors("sanctions", "get"):
            raw = await self._redis.get(self._key(user_id))
        if raw is None:
            return None
        try:
            return _decode(raw)
        except SanctionDataError:
            logger.warning("unreadable sanction record", extra={"user_id": user_id})
            raise

    async def put(self, record: SanctionRecord, *, expected_version: int) -> bool:
        key = self._key(record.user_id)
        with store_errors("sanctions", "put"):
            async with self._redis.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(key)
                    if _stored_version(await pipe.get(key)) != expected_version:
                        await pipe.unwatch()
                        return False
                    pipe.multi()
                    pipe.set(key, json.dumps(record.to_document()))
                    pipe.sadd(self._users_key, record.user_id)
                    if record.is_blocked:
                        pipe.sadd(self._blocked_key, record.user_id)
                    else:
                        pipe.srem(self._blocked_key, record.user_id)
                    await pipe.execute()
                except WatchError:
                    return False
        return True

    async def list_records(self) -> Sequence[SanctionRecord]:
        return await self._load_index(self._users_key, "list")

    async def list_blocked(self) -> Sequence[SanctionRecord]:
        records = await self._load_index(self._blocked_key, "list_blocked")
        return [record for record in records if record.is_blocked]

    async def _load_index(self, index_key: str, op: str) -> list[SanctionRecord]:
        with store_errors("sanctions", op):
            user_ids = sorted(await self._redis.smembers(index_key))
            if not user_ids:
                return []
            rows = await self._redis.mget([self._key(user_id) for user_id in user_ids])
        records: list[SanctionRecord] = []
        for user_id, raw in zip(user_ids, rows):
            if raw is None:
                continue
            try:
                records.append(_decode(raw))
            except SanctionDataError:
                logger.warning("skipping unreadable sanction record", extra={"user_id": user_id})
        return records
