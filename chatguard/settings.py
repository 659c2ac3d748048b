"""Settings for the chatguard moderation engine."""

from __future__ import annotations

from datetime import timedelta
from typing import Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_field(default, *env_names: str):
    if env_names:
        alias = AliasChoices(*env_names) if len(env_names) > 1 else env_names[0]
        return Field(default=default, validation_alias=alias)
    return Field(default=default)


class Settings(BaseSettings):
    environment: str = _env_field("production", "ENV", "APP_ENV", "ENVIRONMENT")
    service_name: str = _env_field("chatguard", "SERVICE_NAME")
    git_commit: str = _env_field("unknown", "GIT_COMMIT", "COMMIT_SHA", "SOURCE_VERSION")
    obs_log_level: str = _env_field("INFO", "LOG_LEVEL")
    obs_log_sampling_rate_info: float = _env_field(1.0, "LOG_SAMPLING_RATE_INFO")
    redis_url: str = _env_field("redis://localhost:6379/0", "REDIS_URL")

    # "memory" keeps everything in-process; "redis" shares state between workers
    moderation_store_backend: str = _env_field("memory", "MODERATION_STORE_BACKEND")
    moderation_redis_namespace: str = _env_field("chatguard", "MODERATION_REDIS_NAMESPACE")

    # Matching
    moderation_match_policy: str = _env_field("strict", "MODERATION_MATCH_POLICY")
    moderation_min_containment_length: int = _env_field(3, "MODERATION_MIN_CONTAINMENT_LENGTH")
    moderation_similarity_threshold: float = _env_field(0.8, "MODERATION_SIMILARITY_THRESHOLD")
    moderation_lexicon_live_updates: bool = _env_field(True, "MODERATION_LEXICON_LIVE_UPDATES")

    # Sanctions
    moderation_max_warnings: int = _env_field(1000, "MODERATION_MAX_WARNINGS")
    moderation_block_hours: float = _env_field(24.0, "MODERATION_BLOCK_HOURS")
    moderation_conflict_retries: int = _env_field(3, "MODERATION_CONFLICT_RETRIES")
    moderation_fail_open: bool = _env_field(True, "MODERATION_FAIL_OPEN")

    # Backing store calls
    moderation_store_timeout_seconds: float = _env_field(2.0, "MODERATION_STORE_TIMEOUT_SECONDS")
    moderation_store_retries: int = _env_field(2, "MODERATION_STORE_RETRIES")
    moderation_store_retry_backoff_seconds: float = _env_field(0.05, "MODERATION_STORE_RETRY_BACKOFF_SECONDS")

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("moderation_store_backend", "moderation_match_policy", mode="before")
    def _lower(cls, value):  # type: ignore[override]
        if value is None:
            return value
        return str(value).strip().lower()

    @field_validator("moderation_max_warnings")
    def _positive_threshold(cls, value: int) -> int:  # type: ignore[override]
        if value < 1:
            raise ValueError("moderation_max_warnings must be at least 1")
        return value

    def block_duration(self) -> Optional[timedelta]:
        """Block length for the sanctions engine; None means indefinite."""
        if self.moderation_block_hours <= 0:
            return None
        return timedelta(hours=self.moderation_block_hours)


def _normalise_level(level: str) -> str:
    return level.upper()


settings = Settings()
settings.obs_log_level = _normalise_level(settings.obs_log_level)
