"""Application-wide configuration loaded from environment / .env file."""

from __future__ import annotations

from enum import Enum

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from entsync.models.enums import HydrationPolicy


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="ENTSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Store ────────────────────────────────────────────
    database_path: str = Field(
        default=":memory:",
        description="SQLite file used to track sync runs (':memory:' for a throwaway store)",
    )
    command_name: str = Field(
        default="",
        description="Command recorded against each sync run when none is given",
    )

    # ── Entities ─────────────────────────────────────────
    hydration_policy: HydrationPolicy = Field(
        default=HydrationPolicy.LAZY,
        description="Default hydration policy for deferred relationships",
    )
    strict_signatures: bool = Field(
        default=False,
        description="Reject backend data that would be discarded during entity construction",
    )

    # ── HTTP ─────────────────────────────────────────────
    http_timeout: float = Field(default=30.0, description="Request timeout in seconds")
    http_retry_attempts: int = Field(default=3, description="Attempts per request on transport errors")
    http_retry_max_wait: float = Field(default=10.0, description="Upper bound for retry backoff in seconds")

    # ── Logging ──────────────────────────────────────────
    log_level: LogLevel = LogLevel.INFO


_settings: Settings | None = None


def get_settings() -> Settings:
    """Return the cached singleton settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()  # type: ignore[call-arg]
    return _settings


def reset_settings() -> None:
    """Forget the cached settings so the next call re-reads the environment."""
    global _settings
    _settings = None
