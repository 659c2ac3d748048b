import pytest_asyncio
from fakeredis.aioredis import FakeRedis

from chatguard.infra.redis import RedisProxy


@pytest_asyncio.fixture
async def fake_redis():
	client = FakeRedis(decode_responses=True)
	try:
		yield RedisProxy(client)
	finally:
		await client.flushall()
		await client.aclose()
