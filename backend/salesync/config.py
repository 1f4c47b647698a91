"""
Configuration for sync workers.

Values come from environment variables, optionally loaded from backend/.env.
Tunables that are not set fall back to the module defaults below.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .errors import ConfigError
from .models import PLATFORM_SHOPIFY, PLATFORM_WOOCOMMERCE, PLATFORMS


# Load .env from backend directory
_backend_dir = Path(__file__).resolve().parent.parent
load_dotenv(_backend_dir / ".env")


# =============================================================================
# Defaults
# =============================================================================

# Longest single invocation the host allows; the tick budget is a fraction of it
DEFAULT_MAX_RUNTIME_SECONDS = 360
EXECUTION_BUDGET_FRACTION = 2 / 3

# Lock
DEFAULT_LOCK_WAIT_SECONDS = 10
LOCK_TTL_MARGIN_SECONDS = 60

# Data windows
DEFAULT_LOOKBACK_DAYS = 90
DEFAULT_RECENT_WINDOW_DAYS = 14

# Paging and output
DEFAULT_PAGE_SIZE = {
    PLATFORM_SHOPIFY: 250,
    PLATFORM_WOOCOMMERCE: 100,
}
DEFAULT_WRITE_CHUNK_SIZE = 500

# Retry configuration (exponential backoff)
MAX_RETRIES = 5
INITIAL_RETRY_DELAY = 1
MAX_RETRY_DELAY = 30
MAX_RATE_LIMIT_WAITS = 10
REQUEST_TIMEOUT = 30

# Concurrent requests within one tick
MAX_CONCURRENT_REQUESTS = 5

# Jobs older than this are abandoned
DEFAULT_MAX_JOB_AGE_HOURS = 20

DEFAULT_SQLITE_PATH = "salesync.db"


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


@dataclass
class SyncConfig:
    """Settings for one platform's sync job."""
    platform: str
    store_url: str
    access_token: Optional[str] = None
    consumer_key: Optional[str] = None
    consumer_secret: Optional[str] = None
    api_version: str = "2024-01"

    database_url: Optional[str] = None
    sqlite_path: str = DEFAULT_SQLITE_PATH

    max_runtime_seconds: float = DEFAULT_MAX_RUNTIME_SECONDS
    execution_budget_seconds: Optional[float] = None
    lock_wait_seconds: float = DEFAULT_LOCK_WAIT_SECONDS
    lock_ttl_seconds: Optional[float] = None

    lookback_days: int = DEFAULT_LOOKBACK_DAYS
    recent_window_days: int = DEFAULT_RECENT_WINDOW_DAYS
    page_size: Optional[int] = None
    write_chunk_size: int = DEFAULT_WRITE_CHUNK_SIZE

    max_retries: int = MAX_RETRIES
    initial_retry_delay: float = INITIAL_RETRY_DELAY
    max_retry_delay: float = MAX_RETRY_DELAY
    max_rate_limit_waits: int = MAX_RATE_LIMIT_WAITS
    request_timeout: float = REQUEST_TIMEOUT
    max_concurrent_requests: int = MAX_CONCURRENT_REQUESTS

    max_job_age_hours: float = DEFAULT_MAX_JOB_AGE_HOURS

    def __post_init__(self):
        if self.platform not in PLATFORMS:
            raise ConfigError(
                f"Unknown platform {self.platform!r}. Valid platforms: {list(PLATFORMS)}"
            )
        self.store_url = (self.store_url or "").rstrip("/")
        if self.execution_budget_seconds is None:
            self.execution_budget_seconds = self.max_runtime_seconds * EXECUTION_BUDGET_FRACTION
        if self.lock_ttl_seconds is None:
            self.lock_ttl_seconds = self.max_runtime_seconds + LOCK_TTL_MARGIN_SECONDS
        if self.page_size is None:
            self.page_size = DEFAULT_PAGE_SIZE[self.platform]
        if self.execution_budget_seconds <= 0:
            raise ConfigError("execution_budget_seconds must be positive")
        if self.write_chunk_size <= 0:
            raise ConfigError("write_chunk_size must be positive")

    @property
    def source_key(self) -> str:
        """Stable identifier for this job in the stores and the sink."""
        return self.platform

    @property
    def lock_name(self) -> str:
        return f"salesync:{self.platform}"

    def validate_credentials(self) -> None:
        """Raise ConfigError if the platform credentials are incomplete."""
        if not self.store_url:
            raise ConfigError(f"{self.platform}: store URL is not configured")
        if self.platform == PLATFORM_SHOPIFY and not self.access_token:
            raise ConfigError("SHOPIFY_ACCESS_TOKEN not found in environment")
        if self.platform == PLATFORM_WOOCOMMERCE and not (self.consumer_key and self.consumer_secret):
            raise ConfigError(
                "WOOCOMMERCE_CONSUMER_KEY and WOOCOMMERCE_CONSUMER_SECRET must both be set"
            )

    @classmethod
    def from_env(cls, platform: str) -> "SyncConfig":
        """
        Build the configuration for a platform from environment variables.

        Platform settings:
            SHOPIFY_STORE_URL, SHOPIFY_ACCESS_TOKEN, SHOPIFY_API_VERSION
            WOOCOMMERCE_STORE_URL, WOOCOMMERCE_CONSUMER_KEY, WOOCOMMERCE_CONSUMER_SECRET

        Shared settings use the SALESYNC_ prefix, plus DATABASE_URL.
        """
        platform = (platform or "").strip().lower()
        prefix = platform.upper()

        config = cls(
            platform=platform,
            store_url=_env(f"{prefix}_STORE_URL", "") or "",
            access_token=_env("SHOPIFY_ACCESS_TOKEN"),
            consumer_key=_env("WOOCOMMERCE_CONSUMER_KEY"),
            consumer_secret=_env("WOOCOMMERCE_CONSUMER_SECRET"),
            api_version=_env("SHOPIFY_API_VERSION", "2024-01"),
            database_url=_env("DATABASE_URL"),
            sqlite_path=_env("SALESYNC_SQLITE_PATH", DEFAULT_SQLITE_PATH),
            max_runtime_seconds=_env_float("SALESYNC_MAX_RUNTIME_SECONDS", DEFAULT_MAX_RUNTIME_SECONDS),
            execution_budget_seconds=(
                _env_float("SALESYNC_EXECUTION_BUDGET_SECONDS", 0)
                if _env("SALESYNC_EXECUTION_BUDGET_SECONDS") else None
            ),
            lock_wait_seconds=_env_float("SALESYNC_LOCK_WAIT_SECONDS", DEFAULT_LOCK_WAIT_SECONDS),
            lookback_days=_env_int("SALESYNC_LOOKBACK_DAYS", DEFAULT_LOOKBACK_DAYS),
            recent_window_days=_env_int("SALESYNC_RECENT_WINDOW_DAYS", DEFAULT_RECENT_WINDOW_DAYS),
            page_size=_env_int("SALESYNC_PAGE_SIZE", 0) or None,
            write_chunk_size=_env_int("SALESYNC_WRITE_CHUNK_SIZE", DEFAULT_WRITE_CHUNK_SIZE),
            max_retries=_env_int("SALESYNC_MAX_RETRIES", MAX_RETRIES),
            max_concurrent_requests=_env_int("SALESYNC_MAX_CONCURRENT_REQUESTS", MAX_CONCURRENT_REQUESTS),
            max_job_age_hours=_env_float("SALESYNC_MAX_JOB_AGE_HOURS", DEFAULT_MAX_JOB_AGE_HOURS),
        )
        config.validate_credentials()
        return config
