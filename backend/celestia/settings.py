"""Settings for the Celestia matching core."""

from __future__ import annotations

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
    obs_log_level: str = _env_field("INFO", "LOG_LEVEL")
    obs_log_sampling_rate_info: float = _env_field(1.0, "LOG_SAMPLING_RATE_INFO")
    service_name: str = _env_field("celestia-core", "SERVICE_NAME")
    git_commit: str = _env_field("unknown", "GIT_COMMIT", "COMMIT_SHA", "SOURCE_VERSION")

    # Candidate ranking
    match_max_distance_km: float = _env_field(50.0, "MATCH_MAX_DISTANCE_KM")
    ranking_score_ttl_seconds: float = _env_field(60.0, "RANKING_SCORE_TTL_SECONDS")
    ranking_result_ttl_seconds: float = _env_field(300.0, "RANKING_RESULT_TTL_SECONDS")
    ranking_result_capacity: int = _env_field(50, "RANKING_RESULT_CAPACITY")
    ranking_score_capacity: int = _env_field(5000, "RANKING_SCORE_CAPACITY")
    ranking_parallel_chunk: int = _env_field(64, "RANKING_PARALLEL_CHUNK")

    # Quotas (remote authority first, local fallback enforces the same numbers)
    quota_remote_timeout_seconds: float = _env_field(2.5, "QUOTA_REMOTE_TIMEOUT_SECONDS")
    quota_swipe_per_day: int = _env_field(50, "QUOTA_SWIPE_PER_DAY")
    quota_superlike_per_day: int = _env_field(1, "QUOTA_SUPERLIKE_PER_DAY")
    quota_message_per_hour: int = _env_field(100, "QUOTA_MESSAGE_PER_HOUR")

    # Chat sync and the outbound queue
    chat_page_size: int = _env_field(20, "CHAT_PAGE_SIZE")
    chat_max_body_length: int = _env_field(4000, "CHAT_MAX_BODY_LENGTH")
    outbox_base_delay_seconds: float = _env_field(2.0, "OUTBOX_BASE_DELAY_SECONDS")
    outbox_max_delay_seconds: float = _env_field(60.0, "OUTBOX_MAX_DELAY_SECONDS")
    outbox_max_attempts: int = _env_field(5, "OUTBOX_MAX_ATTEMPTS")
    outbox_max_age_seconds: float = _env_field(86_400.0, "OUTBOX_MAX_AGE_SECONDS")
    outbox_poll_interval_seconds: float = _env_field(1.0, "OUTBOX_POLL_INTERVAL_SECONDS")

    # Write retries for swipes / match creation
    write_retry_attempts: int = _env_field(3, "WRITE_RETRY_ATTEMPTS")
    write_retry_base_delay_seconds: float = _env_field(0.5, "WRITE_RETRY_BASE_DELAY_SECONDS")
    write_retry_max_delay_seconds: float = _env_field(4.0, "WRITE_RETRY_MAX_DELAY_SECONDS")
    match_recheck_delay_seconds: float = _env_field(5.0, "MATCH_RECHECK_DELAY_SECONDS")
    match_recheck_attempts: int = _env_field(3, "MATCH_RECHECK_ATTEMPTS")

    redis_key_prefix: Optional[str] = _env_field(None, "REDIS_KEY_PREFIX")

    # Environment helpers
    def is_prod(self) -> bool:
        return self.environment.lower() in ("prod", "production", "live")

    def is_dev(self) -> bool:
        return self.environment.lower() in ("dev", "development")

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    @field_validator("obs_log_level", mode="before")
    def _normalise_level(cls, value):  # type: ignore[override]
        if value in (None, ""):
            return "INFO"
        return str(value).strip().upper()

    @field_validator("obs_log_sampling_rate_info", mode="after")
    def _clamp_sampling(cls, value):  # type: ignore[override]
        return max(0.0, min(1.0, float(value)))


def load_settings(**overrides) -> Settings:
    """Build a Settings instance; keyword overrides win over the environment."""
    return Settings(**overrides)


