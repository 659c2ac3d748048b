import asyncio
import json

import pytest

from chatguard.moderation.domain.lexicon import LexiconCategory, LexiconStore
from chatguard.moderation.domain.retry import RetryPolicy
from chatguard.moderation.infra.lexicon_repo import RedisLexiconRepository

FAST_RETRY = RetryPolicy(timeout_seconds=1, retries=0, backoff_seconds=0)


async def _eventually(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.02)


@pytest.mark.asyncio
async def test_put_and_get_document(fake_redis) -> None:
    repo = RedisLexiconRepository(fake_redis, namespace="t")

    await repo.put(LexiconCategory.BULLY, {"words": ["dumb"]})

    assert await repo.get(LexiconCategory.BULLY) == {"words": ["dumb"]}
    assert json.loads(await fake_redis.get("t:lexicon:bully_words")) == {"words": ["dumb"]}
    assert await repo.get(LexiconCategory.BAD) is None


@pytest.mark.asyncio
async def test_undecodable_document_reads_as_empty(fake_redis) -> None:
    await fake_redis.set("t:lexicon:bad_words", "{not json")
    await fake_redis.set("t:lexicon:bully_words", json.dumps({"words": ["dumb", 7]}))
    store = LexiconStore(RedisLexiconRepository(fake_redis, namespace="t"), retry=FAST_RETRY, live_updates=False, defaults={})

    await store.start()

    assert store.current_words(LexiconCategory.BAD) == frozenset()
    assert store.current_words(LexiconCategory.BULLY) == frozenset({"dumb"})


@pytest.mark.asyncio
async def test_change_feed_delivers_updates(fake_redis) -> None:
    writer = RedisLexiconRepository(fake_redis, namespace="t", poll_timeout=0.05)
    reader = RedisLexiconRepository(fake_redis, namespace="t", poll_timeout=0.05)
    received = []

    async def consume() -> None:
        async for change in reader.changes([LexiconCategory.BULLY]):
            received.append(change)

    task = asyncio.create_task(consume())
    await asyncio.sleep(0.1)
    await writer.put(LexiconCategory.BAD, {"words": ["heck"]})
    await writer.put(LexiconCategory.BULLY, {"words": ["meanie"]})

    await _eventually(lambda: len(received) == 1)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert received[0].category is LexiconCategory.BULLY
    assert received[0].document == {"words": ["meanie"]}


@pytest.mark.asyncio
async def test_store_follows_redis_updates(fake_redis) -> None:
    repo = RedisLexiconRepository(fake_redis, namespace="t", poll_timeout=0.05)
    async with LexiconStore(repo, retry=FAST_RETRY) as store:
        await asyncio.sleep(0.1)
        other_writer = RedisLexiconRepository(fake_redis, namespace="t")
        await other_writer.put(LexiconCategory.BULLY, {"words": ["meanie"]})

        await _eventually(lambda: store.current_words(LexiconCategory.BULLY) == frozenset({"meanie"}))
