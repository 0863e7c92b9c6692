import os

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

load_dotenv()


class Settings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Backend
    api_base_url: str = Field(
        default="http://localhost:3001/api", alias="POS_API_URL"
    )
    health_path: str = Field(default="/health", alias="POS_HEALTH_PATH")

    # Timeouts (seconds)
    request_timeout: float = Field(default=30.0, alias="POS_REQUEST_TIMEOUT")
    auth_timeout: float = Field(default=10.0, alias="POS_AUTH_TIMEOUT")
    login_timeout: float = Field(default=15.0, alias="POS_LOGIN_TIMEOUT")
    bulk_timeout: float = Field(default=60.0, alias="POS_BULK_TIMEOUT")

    # Retry
    max_retries: int = Field(default=3, alias="POS_MAX_RETRIES")
    retry_base_delay: float = Field(default=1.0, alias="POS_RETRY_BASE_DELAY")
    retry_max_delay: float = Field(default=10.0, alias="POS_RETRY_MAX_DELAY")
    retry_jitter: float = Field(default=0.25, alias="POS_RETRY_JITTER")

    # Session
    session_lifetime_minutes: int = Field(
        default=16 * 60, alias="POS_SESSION_LIFETIME_MINUTES"
    )
    session_warning_minutes: int = Field(
        default=30, alias="POS_SESSION_WARNING_MINUTES"
    )
    session_check_interval_seconds: int = Field(
        default=60, alias="POS_SESSION_CHECK_INTERVAL"
    )

    # Cache
    memory_cache_max_entries: int = Field(default=200, alias="POS_MEMORY_CACHE_SIZE")
    persistent_cache_max_entries: int = Field(
        default=100, alias="POS_PERSISTENT_CACHE_SIZE"
    )
    default_cache_ttl_seconds: int = Field(default=300, alias="POS_CACHE_TTL")
    cache_cleanup_interval_seconds: int = Field(
        default=120, alias="POS_CACHE_CLEANUP_INTERVAL"
    )

    # Request coordination
    max_concurrent_requests: int = Field(default=3, alias="POS_MAX_CONCURRENT")
    batch_max_size: int = Field(default=10, alias="POS_BATCH_SIZE")
    batch_window_ms: int = Field(default=50, alias="POS_BATCH_WINDOW_MS")
    batch_path: str = Field(default="/batch", alias="POS_BATCH_PATH")

    # Offline sync
    sync_interval_seconds: int = Field(default=30, alias="POS_SYNC_INTERVAL")
    sync_max_retries: int = Field(default=3, alias="POS_SYNC_MAX_RETRIES")
    connectivity_check_interval_seconds: int = Field(
        default=30, alias="POS_CONNECTIVITY_INTERVAL"
    )

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./posclient.db", alias="DATABASE_URL"
    )
    database_echo: bool = Field(default=False, alias="DATABASE_ECHO")

    debug: bool = Field(default=False, alias="POS_DEBUG")

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment (after .env loading)."""
        return cls.model_validate(dict(os.environ))


global_settings = Settings.from_env()
