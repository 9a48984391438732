"""Application settings and configuration.

This module defines all configuration options for the Forum Stage application.
Settings are loaded from environment variables with sensible defaults.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files. Services
    receive an instance explicitly instead of reading the module-level object.
    """

    # Application metadata
    app_name: str = Field(default="Forum Stage", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Security and authentication (tokens are issued elsewhere, only verified here)
    secret_key: str = Field(alias="SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")

    # Database configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./forum.db",
        alias="DATABASE_URL",
    )
    test_database_url: str | None = Field(default=None, alias="TEST_DATABASE_URL")
    use_testing_database: bool = Field(default=False, alias="USE_TEST_DATABASE")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")
    database_pool_size: int = Field(default=10, alias="DATABASE_POOL_SIZE")

    # Redis configuration for the read-through cache
    redis_url: str = Field(default="redis://localhost:6379", alias="REDIS_URL")
    redis_cache_url: str | None = Field(default=None, alias="REDIS_CACHE_URL")

    # Cache TTLs in seconds
    thread_list_cache_ttl_seconds: int = Field(default=60, alias="THREAD_LIST_CACHE_TTL")
    thread_detail_cache_ttl_seconds: int = Field(default=45, alias="THREAD_DETAIL_CACHE_TTL")
    thread_search_cache_ttl_seconds: int = Field(default=45, alias="THREAD_SEARCH_CACHE_TTL")

    # Queue names (one per job kind so concurrency can be tuned independently)
    ai_moderation_queue: str = Field(default="ai-moderation", alias="AI_MODERATION_QUEUE")
    ai_summary_queue: str = Field(default="ai-summary", alias="AI_SUMMARY_QUEUE")
    notification_queue: str = Field(default="notifications", alias="NOTIFICATION_QUEUE")

    # Default job options
    job_default_attempts: int = Field(default=3, alias="JOB_DEFAULT_ATTEMPTS")
    job_default_backoff_seconds: float = Field(default=2.0, alias="JOB_DEFAULT_BACKOFF_SECONDS")

    # Worker pools
    workers_enabled: bool = Field(default=True, alias="WORKERS_ENABLED")
    worker_poll_interval_seconds: float = Field(default=1.0, alias="WORKER_POLL_INTERVAL_SECONDS")
    worker_lease_seconds: float = Field(default=120.0, alias="WORKER_LEASE_SECONDS")
    moderation_concurrency: int = Field(default=5, alias="AI_MODERATION_CONCURRENCY")
    summary_concurrency: int = Field(default=2, alias="AI_SUMMARY_CONCURRENCY")
    notification_concurrency: int = Field(default=3, alias="NOTIFICATION_CONCURRENCY")

    # External classifier / summarizer (OpenAI-compatible HTTP API)
    ai_api_key: str | None = Field(default=None, alias="AI_API_KEY")
    ai_api_base_url: str = Field(default="https://api.openai.com/v1", alias="AI_API_BASE_URL")
    ai_moderation_model: str = Field(
        default="text-moderation-latest",
        alias="AI_MODERATION_MODEL",
    )
    ai_summary_model: str = Field(default="gpt-4o-mini", alias="AI_SUMMARY_MODEL")
    ai_request_timeout_ms: int = Field(default=10_000, alias="AI_REQUEST_TIMEOUT_MS")

    # Outbound notification webhook
    notification_webhook_url: str | None = Field(default=None, alias="NOTIFICATION_WEBHOOK_URL")
    notification_webhook_secret: str | None = Field(
        default=None,
        alias="NOTIFICATION_WEBHOOK_SECRET",
    )
    notification_retry_limit: int = Field(default=5, alias="NOTIFICATION_RETRY_LIMIT")
    notification_backoff_seconds: float = Field(
        default=5.0,
        alias="NOTIFICATION_BACKOFF_SECONDS",
    )
    notification_request_timeout_seconds: float = Field(
        default=8.0,
        alias="NOTIFICATION_REQUEST_TIMEOUT_SECONDS",
    )

    # CORS configuration for web frontend access
    cors_origins: list[str] = Field(default=["*"], alias="CORS_ORIGINS")
    cors_allow_credentials: bool = Field(default=True, alias="CORS_ALLOW_CREDENTIALS")

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def database_url_sync(self) -> str:
        """Return a sync-compatible database URL for tooling.

        Converts async driver URLs to their synchronous counterparts for
        operations like Alembic migrations.

        Returns:
            Database URL compatible with synchronous database drivers
        """
        url = self.effective_database_url
        if url.startswith("postgresql+asyncpg"):
            return url.replace("postgresql+asyncpg", "postgresql+psycopg", 1)
        if url.startswith("sqlite+aiosqlite"):
            return url.replace("sqlite+aiosqlite", "sqlite", 1)
        return url

    @property
    def effective_database_url(self) -> str:
        """Return the database URL respecting testing overrides."""
        if self.use_testing_database and self.test_database_url:
            return self.test_database_url
        return self.database_url

    @property
    def effective_cache_url(self) -> str:
        """Return the Redis URL used by the cache layer."""
        return self.redis_cache_url or self.redis_url

    @property
    def ai_enabled(self) -> bool:
        """Return True when an API key for the classifier/summarizer is configured."""
        return bool(self.ai_api_key and self.ai_api_key.strip())

    @property
    def ai_request_timeout_seconds(self) -> float:
        """Return the classifier/summarizer timeout in seconds."""
        timeout_ms = self.ai_request_timeout_ms if self.ai_request_timeout_ms > 0 else 10_000
        return timeout_ms / 1000.0

    @property
    def webhook_url(self) -> str | None:
        """Return the trimmed webhook URL, or None when notifications are not forwarded."""
        url = (self.notification_webhook_url or "").strip()
        return url or None


settings = Settings()  # type: ignore[call-arg]
