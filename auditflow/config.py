# auditflow/config.py
import logging
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Orchestration settings, loaded from environment variables and `.env`.
    Names are matched case-insensitively.
    """

    # ── SERVICE ──────────────────────────────────────────────────────────────
    APP_NAME: str = "auditflow"
    APP_VERSION: str = "1.0.0"
    LOG_LEVEL: str = Field(default="INFO", description="Root log level")

    # ── DATABASE ─────────────────────────────────────────────────────────────
    DATABASE_URL: str = Field(default="sqlite:///./auditflow.db")
    DB_ECHO: bool = False

    # ── BATCH RUNNER ─────────────────────────────────────────────────────────
    MAX_PAGES: int = Field(default=100, ge=1)
    MAX_CONCURRENCY: int = Field(default=10, ge=1)
    BATCH_SIZE: int = Field(default=20, ge=1)
    MEMORY_LIMIT_MB: float = Field(default=512.0, gt=0)
    CACHE_MAX_ENTRIES: int = Field(default=1000, ge=1)
    CACHE_WINDOW_SECONDS: int = Field(default=3600, ge=0, description="Store recency window for cached page audits")
    STALE_AFTER_SECONDS: int = Field(default=3600, ge=0)

    # ── JOB QUEUE ────────────────────────────────────────────────────────────
    QUEUE_POLL_SECONDS: float = Field(default=5.0, gt=0)
    QUEUE_MIN_CONCURRENCY: int = Field(default=3, ge=1)
    QUEUE_MAX_CONCURRENCY: int = Field(default=10, ge=1)
    JOB_RETENTION_SECONDS: int = Field(default=24 * 3600, ge=0)
    MAINTENANCE_SECONDS: float = Field(default=300.0, gt=0)

    # ── SOURCES & DISCOVERY ──────────────────────────────────────────────────
    SOURCE_DEADLINE_MS: int = Field(default=30000, ge=1)
    REQUIRE_ALL_SOURCES: bool = False
    DISCOVERY_TIMEOUT_SECONDS: float = Field(default=8.0, gt=0)
    CRAWL_MAX_PAGES: int = Field(default=20, ge=1)
    CRAWL_MAX_DEPTH: int = Field(default=2, ge=0)
    USER_AGENT: str = "auditflow/1.0 (+https://github.com/auditflow)"
    PSI_API_KEY: str = Field(default="", description="PageSpeed Insights key (optional)")
    PSI_MAX_CALLS_PER_MINUTE: int = Field(default=100, ge=1)
    PSI_MIN_INTERVAL_MS: int = Field(default=0, ge=0, description="Gap between PSI calls; at least 100ms without a key")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def normalize_postgres_url(cls, v: str) -> str:
        """Converts old-style 'postgres://' URLs to 'postgresql://'."""
        v = str(v or "").strip().strip('"').strip("'")
        if v.startswith("postgres://"):
            return v.replace("postgres://", "postgresql://", 1)
        return v

    @field_validator("QUEUE_MAX_CONCURRENCY")
    @classmethod
    def max_not_below_min(cls, v: int, info) -> int:
        low = info.data.get("QUEUE_MIN_CONCURRENCY", 1)
        if v < low:
            logger.warning("QUEUE_MAX_CONCURRENCY=%s below minimum %s; raising to minimum", v, low)
            return low
        return v


# Cached singleton to avoid repeated instantiation
@lru_cache()
def get_settings() -> Settings:
    return Settings()
