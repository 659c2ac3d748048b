"""Service container wiring the moderation engine from settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from chatguard.infra.redis import RedisProxy, build_redis
from chatguard.moderation.domain.classifier import MessageClassifier
from chatguard.moderation.domain.gate import MessageGate
from chatguard.moderation.domain.lexicon import (
	InMemoryLexiconRepository,
	LexiconLoadResult,
	LexiconRepository,
	LexiconStore,
)
from chatguard.moderation.domain.matcher import FuzzyMatcher, MatchPolicy
from chatguard.moderation.domain.retry import RetryPolicy
from chatguard.moderation.domain.sanctions import (
	InMemorySanctionRepository,
	SanctionRepository,
	SanctionsService,
)
from chatguard.moderation.domain.violations import (
	InMemoryViolationRepository,
	ViolationRepository,
	ViolationService,
)
from chatguard.moderation.infra.lexicon_repo import RedisLexiconRepository
from chatguard.moderation.infra.sanction_repo import RedisSanctionRepository
from chatguard.moderation.infra.violation_repo import RedisViolationRepository
from chatguard.settings import Settings

logger = logging.getLogger(__name__)

MEMORY_BACKEND = "memory"
REDIS_BACKEND = "redis"


@dataclass(slots=True)
class ModerationContainer:
	lexicon: LexiconStore
	classifier: MessageClassifier
	sanctions: SanctionsService
	violations: ViolationService
	gate: MessageGate
	redis: Optional[RedisProxy] = None
	owns_redis: bool = False

	async def start(self) -> LexiconLoadResult:
		if self.redis is not None:
			await self.redis.ping_ok()
		return await self.lexicon.start()

	async def close(self) -> None:
		await self.lexicon.close()
		if self.redis is not None and self.owns_redis:
			await self.redis.client.aclose()

	async def __aenter__(self) -> "ModerationContainer":
		await self.start()
		return self

	async def __aexit__(self, *exc_info: object) -> None:
		await self.close()


def retry_policy_from(settings: Settings) -> RetryPolicy:
	return RetryPolicy(
		timeout_seconds=settings.moderation_store_timeout_seconds,
		retries=settings.moderation_store_retries,
		backoff_seconds=settings.moderation_store_retry_backoff_seconds,
	)


def match_policy_from(settings: Settings) -> MatchPolicy:
	return MatchPolicy.named(
		settings.moderation_match_policy,
		min_containment_length=settings.moderation_min_containment_length,
		similarity_threshold=settings.moderation_similarity_threshold,
	)


def build_container(
	settings: Settings,
	*,
	redis: RedisProxy | None = None,
	lexicon_repository: LexiconRepository | None = None,
	sanction_repository: SanctionRepository | None = None,
	violation_repository: ViolationRepository | None = None,
) -> ModerationContainer:
	"""Assemble the engine; explicitly passed repositories take precedence over the backend setting."""

	backend = settings.moderation_store_backend
	if backend not in (MEMORY_BACKEND, REDIS_BACKEND):
		raise ValueError(f"unknown moderation store backend: {backend!r}")

	owns_redis = False
	if backend == REDIS_BACKEND:
		if redis is None:
			redis = build_redis(settings.redis_url)
			owns_redis = True
		namespace = settings.moderation_redis_namespace
		lexicon_repository = lexicon_repository or RedisLexiconRepository(redis, namespace=namespace)
		sanction_repository = sanction_repository or RedisSanctionRepository(redis, namespace=namespace)
		violation_repository = violation_repository or RedisViolationRepository(redis, namespace=namespace)
	else:
		lexicon_repository = lexicon_repository or InMemoryLexiconRepository()
		sanction_repository = sanction_repository or InMemorySanctionRepository()
		violation_repository = violation_repository or InMemoryViolationRepository()

	retry = retry_policy_from(settings)
	lexicon = LexiconStore(
		lexicon_repository,
		retry=retry,
		live_updates=settings.moderation_lexicon_live_updates,
	)
	classifier = MessageClassifier(lexicon, FuzzyMatcher(match_policy_from(settings)))
	sanctions = SanctionsService(
		sanction_repository,
		max_warnings=settings.moderation_max_warnings,
		block_duration=settings.block_duration(),
		retry=retry,
		conflict_retries=settings.moderation_conflict_retries,
		fail_open=settings.moderation_fail_open,
	)
	violations = ViolationService(violation_repository, retry=retry)
	gate = MessageGate(lexicon=lexicon, classifier=classifier, sanctions=sanctions, violations=violations)
	logger.info(
		"moderation container built",
		extra={
			"backend": backend,
			"match_policy": settings.moderation_match_policy,
			"max_warnings": settings.moderation_max_warnings,
			"fail_open": settings.moderation_fail_open,
		},
	)
	return ModerationContainer(
		lexicon=lexicon,
		classifier=classifier,
		sanctions=sanctions,
		violations=violations,
		gate=gate,
		redis=redis if backend == REDIS_BACKEND else None,
		owns_redis=owns_redis,
	)
