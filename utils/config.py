"""
Configuration Utility - Environment Variables Management

Centralized configuration loading from .env files using pydantic-settings.
Type-safe access to all environment variables with validation.

Usage:
    from utils.config import settings

    interval = settings.REFRESH_INTERVAL_MS
    slots = settings.daily_slots
"""

import logging
import re
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

_HHMM_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")
DEFAULT_DAILY_SLOTS = ("08:00", "20:00")


def parse_slots(raw: str) -> list[str]:
    """Parse a comma separated "HH:MM" list, dropping invalid entries.

    Args:
        raw: Value such as "08:00,20:00"

    Returns:
        Valid slot labels in input order, or the default slots if none are valid
    """
    slots: list[str] = []
    for part in (raw or "").split(","):
        part = part.strip()
        if not part:
            continue
        if not _HHMM_RE.match(part):
            logger.warning("Ignoring invalid daily slot: %s", part)
            continue
        if part not in slots:
            slots.append(part)
    return slots or list(DEFAULT_DAILY_SLOTS)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Portal / page adapter
    PAGE_ADAPTER: str = Field(default="")
    PROBE_HOST: str = Field(default="seller.indiamart.com")
    PROBE_PORT: int = Field(default=443)
    PROBE_TIMEOUT: float = Field(default=4.0)

    # Collection cycle
    REFRESH_INTERVAL_MS: int = Field(default=7000)
    SETTLE_DELAY_MS: int = Field(default=3000)
    RETRY_DELAY_MS: int = Field(default=1000)
    AUTO_START: bool = Field(default=True)
    RUN_ONCE: bool = Field(default=False)

    # Stores
    MAX_LIVE_ROWS: int = Field(default=10000)
    ROTATE_THRESHOLD: int = Field(default=12000)
    WRITE_COALESCE_MS: int = Field(default=120)

    # Health monitoring
    HEALTH_CHECK_MS: int = Field(default=1200)
    NETWORK_FAILURE_THRESHOLD: int = Field(default=3)
    ONLINE_STABLE_MS: int = Field(default=5000)
    LOGIN_MISS_THRESHOLD: int = Field(default=3)
    LOGOUT_QUARANTINE_MS: int = Field(default=5000)
    RELOAD_TIMEOUT_MS: int = Field(default=20000)

    # Daily reports
    DAILY_TZ: str = Field(default="Asia/Kolkata")
    DAILY_REPORT_TIMES: str = Field(default="08:00,20:00")
    DAILY_CATCHUP_MINS: int = Field(default=120)
    DAILY_CATCHUP_INCLUSIVE: bool = Field(default=True)
    DAILY_TICK_SECONDS: int = Field(default=30)
    STATUS_REPORT_MINUTES: int = Field(default=30)

    # Notifications
    NOTIFY_DEDUP_TTL_SECONDS: int = Field(default=300)
    NOTIFY_SILENT: bool = Field(default=True)

    # Lock screen credentials
    LOCK_USER: str = Field(default="")
    LOCK_PASS: str = Field(default="")
    LOCK_PASS_HASH: str = Field(default="")
    LOCK_MAX_ATTEMPTS: int = Field(default=5)
    LOCK_WINDOW_MS: int = Field(default=300000)
    LOCK_LOCKOUT_MS: int = Field(default=300000)
    LOCK_RECORD_EXPIRY_MS: int = Field(default=86400000)
    LOCK_SWEEP_SECONDS: int = Field(default=3600)
    LOCK_PERSIST: bool = Field(default=True)
    LOCK_PERSIST_TTL_MS: int = Field(default=0)

    # File System Paths
    DATA_DIR: str = Field(default="/app/data")
    STATE_DIR: str = Field(default="/app/data/state")
    REPORTS_DIR: str = Field(default="/app/data/reports")
    ARCHIVE_DIR: str = Field(default="/app/data/reports_archive")
    LIST_DIR: str = Field(default="/app/data/list")

    # Redis Configuration
    REDIS_URL: str = Field(default="redis://redis:6379/0")
    REDIS_MAX_CONNECTIONS: int = Field(default=10)
    REDIS_CHANNEL_NOTIFY: str = Field(default="portal.notifications")
    REDIS_CHANNEL_COMMANDS: str = Field(default="portal.commands")

    # SFTP Configuration (optional archive upload)
    SFTP_HOST: str = Field(default="")
    SFTP_PORT: int = Field(default=22)
    SFTP_USERNAME: str = Field(default="")
    SFTP_KEY_PATH: str = Field(default="/run/secrets/id_rsa")
    SFTP_KEY_PASSPHRASE: str | None = Field(default=None)
    SFTP_REMOTE_BASE: str = Field(default="/upload")
    SFTP_TIMEOUT: int = Field(default=15)

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")

    # Application Metadata
    ENVIRONMENT: str = Field(default="production")
    APP_NAME: str = Field(default="portalwatch-backend")
    APP_VERSION: str = Field(default="0.1.0")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True

    @property
    def daily_slots(self) -> list[str]:
        return parse_slots(self.DAILY_REPORT_TIMES)

    @property
    def state_dir(self) -> Path:
        return Path(self.STATE_DIR)

    @property
    def reports_dir(self) -> Path:
        return Path(self.REPORTS_DIR)

    @property
    def archive_dir(self) -> Path:
        return Path(self.ARCHIVE_DIR)

    @property
    def list_dir(self) -> Path:
        return Path(self.LIST_DIR)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Singleton Settings instance
    """
    return Settings()


# Global settings instance
settings = get_settings()
