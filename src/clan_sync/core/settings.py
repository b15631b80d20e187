"""Data plane settings and configuration.

This module defines all configuration options for the clan-sync data plane.
Settings are loaded from environment variables with sensible defaults and then
frozen into a :class:`SyncConfig` that is handed to each component at startup.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RateLimitRule(BaseModel):
    """Per-subject request allowance for one endpoint prefix."""

    limit: int = Field(..., ge=1)
    window_seconds: float = Field(..., gt=0)
    # Durable counters survive a restart (votes, reports); others live in memory.
    durable: bool = False


def _default_rate_limits() -> dict[str, RateLimitRule]:
    return {
        "/votes": RateLimitRule(limit=20, window_seconds=60, durable=True),
        "/reports": RateLimitRule(limit=5, window_seconds=3600, durable=True),
        "/content": RateLimitRule(limit=60, window_seconds=60),
    }


class Settings(BaseSettings):
    """Data plane settings loaded from environment variables.

    Settings can be overridden via environment variables or ``.env`` files.
    """

    # Server surface
    base_url: str = Field(default="http://localhost:3000/api", alias="CLAN_SYNC_BASE_URL")
    realtime_url: str = Field(
        default="ws://localhost:3000/realtime",
        alias="CLAN_SYNC_REALTIME_URL",
    )

    # Local store
    database_url: str = Field(default="sqlite:///./clan_sync.db", alias="CLAN_SYNC_DATABASE_URL")
    sql_debug: bool = Field(default=False, alias="CLAN_SYNC_SQL_DEBUG")
    stale_entity_days: int = Field(default=30, alias="CLAN_SYNC_STALE_ENTITY_DAYS")
    download_dir: str = Field(default="./downloads", alias="CLAN_SYNC_DOWNLOAD_DIR")

    # Request gateway
    cacheable_prefixes: list[str] = Field(
        default=["/content", "/clans", "/users", "/leaderboards", "/proposals"],
        alias="CLAN_SYNC_CACHEABLE_PREFIXES",
    )
    request_timeout_ms: int = Field(default=30_000, alias="CLAN_SYNC_REQUEST_TIMEOUT_MS")
    default_retries: int = Field(default=3, alias="CLAN_SYNC_DEFAULT_RETRIES")
    retry_base_seconds: float = Field(default=1.0, alias="CLAN_SYNC_RETRY_BASE_SECONDS")
    cache_ttl_seconds: int = Field(default=3600, alias="CLAN_SYNC_CACHE_TTL_SECONDS")
    token_refresh_threshold_seconds: int = Field(
        default=300,
        alias="CLAN_SYNC_TOKEN_REFRESH_THRESHOLD_SECONDS",
    )
    rate_limits: dict[str, RateLimitRule] = Field(
        default_factory=_default_rate_limits,
        alias="CLAN_SYNC_RATE_LIMITS",
    )

    # Sync engine
    batch_size: int = Field(default=10, alias="CLAN_SYNC_BATCH_SIZE")
    max_attempts: int = Field(default=5, alias="CLAN_SYNC_MAX_ATTEMPTS")
    periodic_sync_ms: int = Field(default=30_000, alias="CLAN_SYNC_PERIODIC_SYNC_MS")
    max_batches_per_drain: int = Field(default=50, alias="CLAN_SYNC_MAX_BATCHES_PER_DRAIN")

    # Realtime channel
    realtime_buffer_cap: int = Field(default=1024, alias="CLAN_SYNC_REALTIME_BUFFER_CAP")
    realtime_backoff_initial_seconds: float = Field(
        default=1.0,
        alias="CLAN_SYNC_REALTIME_BACKOFF_INITIAL_SECONDS",
    )
    realtime_backoff_max_seconds: float = Field(
        default=30.0,
        alias="CLAN_SYNC_REALTIME_BACKOFF_MAX_SECONDS",
    )
    realtime_jitter: float = Field(default=0.2, alias="CLAN_SYNC_REALTIME_JITTER")

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        populate_by_name=True,
        extra="ignore",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process settings, read once from the environment."""
    return Settings()


@dataclass(frozen=True)
class SyncConfig:
    """Immutable configuration shared by the data plane components."""

    base_url: str
    realtime_url: str
    database_url: str
    cacheable_prefixes: tuple[str, ...]
    batch_size: int = 10
    max_attempts: int = 5
    periodic_sync_ms: int = 30_000
    request_timeout_ms: int = 30_000
    realtime_buffer_cap: int = 1024
    default_retries: int = 3
    retry_base_seconds: float = 1.0
    cache_ttl_seconds: int = 3600
    token_refresh_threshold_seconds: int = 300
    max_batches_per_drain: int = 50
    realtime_backoff_initial_seconds: float = 1.0
    realtime_backoff_max_seconds: float = 30.0
    realtime_jitter: float = 0.2
    stale_entity_days: int = 30
    download_dir: str = "./downloads"
    sql_debug: bool = False
    rate_limits: dict[str, RateLimitRule] = field(default_factory=dict)

    @property
    def request_timeout_seconds(self) -> float:
        return self.request_timeout_ms / 1000.0

    @property
    def periodic_sync_seconds(self) -> float:
        return self.periodic_sync_ms / 1000.0

    def is_cacheable(self, endpoint: str) -> bool:
        """Return True if ``endpoint`` falls under a configured cacheable prefix."""
        path = endpoint.split("?", 1)[0]
        return any(
            path == prefix or path.startswith(prefix.rstrip("/") + "/")
            for prefix in self.cacheable_prefixes
        )


def load_sync_config(settings: Settings | None = None) -> SyncConfig:
    """Build configuration object from settings."""

    settings = settings or get_settings()
    return SyncConfig(
        base_url=settings.base_url,
        realtime_url=settings.realtime_url,
        database_url=settings.database_url,
        cacheable_prefixes=tuple(settings.cacheable_prefixes),
        batch_size=settings.batch_size,
        max_attempts=settings.max_attempts,
        periodic_sync_ms=settings.periodic_sync_ms,
        request_timeout_ms=settings.request_timeout_ms,
        realtime_buffer_cap=settings.realtime_buffer_cap,
        default_retries=settings.default_retries,
        retry_base_seconds=settings.retry_base_seconds,
        cache_ttl_seconds=settings.cache_ttl_seconds,
        token_refresh_threshold_seconds=settings.token_refresh_threshold_seconds,
        max_batches_per_drain=settings.max_batches_per_drain,
        realtime_backoff_initial_seconds=settings.realtime_backoff_initial_seconds,
        realtime_backoff_max_seconds=settings.realtime_backoff_max_seconds,
        realtime_jitter=settings.realtime_jitter,
        stale_entity_days=settings.stale_entity_days,
        download_dir=settings.download_dir,
        sql_debug=settings.sql_debug,
        rate_limits=dict(settings.rate_limits),
    )
