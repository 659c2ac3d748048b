"""Redis persistence and change feed for lexicon word lists."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Mapping, Sequence

from redis.asyncio import Redis
from redis.exceptions import RedisError

from chatguard.infra.redis import RedisProxy
from chatguard.moderation.domain.lexicon import LexiconCategory, LexiconChange, LexiconRepository
from chatguard.moderation.infra.redis_errors import store_errors

logger = logging.getLogger(__name__)


class RedisLexiconRepository(LexiconRepository):
    """Stores each category as a JSON document and publishes every write.

    Undecodable payloads are handed back as-is so the store reads them as malformed.
    """

    def __init__(
        self,
        redis: RedisProxy | Redis,
        *,
        namespace: str = "chatguard",
        poll_timeout: float = 1.0,
    ) -> None:
        self._redis = redis
        self._namespace = namespace
        self._poll_timeout = poll_timeout

    @property
    def channel(self) -> str:
        return f"{self._namespace}:lexicon:changes"

    def _key(self, category: LexiconCategory) -> str:
        return f"{self._namespace}:lexicon:{category.value}"

    async def get(self, category: LexiconCategory) -> Mapping[str, Any] | None:
        with store_errors("lexicon", "get"):
            raw = await self._redis.get(self._key(category))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("undecodable lexicon document", extra={"category": category.value})
            return raw

    async def put(self, category: LexiconCategory, document: Mapping[str, Any]) -> None:
        body = json.dumps(dict(document))
        event = json.dumps({"category": category.value, "document": dict(document)})
        with store_errors("lexicon", "put"):
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.set(self._key(category), body)
                pipe.publish(self.channel, event)
                await pipe.execute()

    async def changes(self, categories: Sequence[LexiconCategory]) -> AsyncIterator[LexiconChange]:
        wanted = set(categories)
        pubsub = self._redis.pubsub()
        try:
            with store_errors("lexicon", "subscribe"):
                await pubsub.subscribe(self.channel)
            while True:
                with store_errors("lexicon", "listen"):
                    message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=self._poll_timeout)
                if message is None:
                    continue
                change = _decode_change(message.get("data"))
                if change is not None and change.category in wanted:
                    yield change
        finally:
            try:
                await pubsub.unsubscribe(self.channel)
                await pubsub.aclose()
            except (RedisError, OSError):  # pragma: no cover - connection already gone
                logger.debug("lexicon subscription closed with a dead connection")


def _decode_change(data: Any) -> LexiconChange | None:
    try:
        payload = json.loads(data)
        category = LexiconCategory(payload["category"])
    except (TypeError, ValueError, KeyError):
        logger.warning("ignoring malformed lexicon change event")
        return None
    return LexiconChange(category=category, document=payload.get("document"))
