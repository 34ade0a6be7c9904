"""Configuration management using Pydantic settings."""

from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from feedwatch.core.types import HandlerErrorPolicy


class LogLevel(str, Enum):
    """Log level options."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class CheckpointBackend(str, Enum):
    """Resume token persistence backends."""

    MEMORY = "memory"
    MONGODB = "mongodb"


class MongoDBSettings(BaseSettings):
    """MongoDB connection and target namespace settings."""

    model_config = SettingsConfigDict(env_prefix="MONGODB_")

    uri: SecretStr = Field(
        default=SecretStr("mongodb://localhost:27017"),
        description="MongoDB connection URI",
    )
    database: str = Field(
        default="sample_airbnb",
        description="Database to watch",
    )
    collection: str = Field(
        default="listingsAndReviews",
        description="Collection to watch",
    )
    resume_tokens_database: str = Field(
        default="feedwatch",
        description="Database holding persisted resume tokens",
    )
    resume_tokens_collection: str = Field(
        default="resume_tokens",
        description="Collection for change stream resume tokens",
    )
    full_document: str = Field(
        default="updateLookup",
        description="Full document mode for change streams",
    )
    server_selection_timeout_ms: int = Field(default=5000, ge=100)


class BackoffSettings(BaseSettings):
    """Reconnect backoff settings."""

    model_config = SettingsConfigDict(env_prefix="BACKOFF_")

    base_delay: float = Field(default=1.0, gt=0)
    max_delay: float = Field(default=60.0, gt=0)
    max_attempts: int = Field(
        default=5,
        ge=0,
        description="Consecutive failed reconnects tolerated before giving up",
    )
    jitter: float = Field(
        default=0.25,
        ge=0.0,
        lt=0.5,
        description="Fraction of each delay that may be shaved off at random",
    )


class CheckpointSettings(BaseSettings):
    """Resume token persistence settings."""

    model_config = SettingsConfigDict(env_prefix="CHECKPOINT_")

    backend: CheckpointBackend = Field(default=CheckpointBackend.MEMORY)
    flush_every: int = Field(
        default=1,
        ge=1,
        description="Persist after this many pending tokens",
    )
    flush_interval: float = Field(
        default=0.0,
        ge=0.0,
        description="Persist pending token after this many seconds (0 disables)",
    )


class WatcherSettings(BaseSettings):
    """Watcher run settings."""

    model_config = SettingsConfigDict(env_prefix="WATCHER_")

    duration: float | None = Field(
        default=60.0,
        description="Seconds to watch before closing (None runs until cancelled)",
    )
    handler_error_policy: HandlerErrorPolicy = Field(
        default=HandlerErrorPolicy.CONTINUE,
    )

    @field_validator("duration", mode="before")
    @classmethod
    def parse_duration(cls, v: float | str | None) -> float | None:
        """Treat empty or non-positive durations as run-until-cancelled."""
        if v in (None, "", "none", "None"):
            return None
        value = float(v)
        return value if value > 0 else None


class ObservabilitySettings(BaseSettings):
    """Observability settings."""

    model_config = SettingsConfigDict(env_prefix="OBSERVABILITY_")

    log_level: LogLevel = Field(default=LogLevel.INFO)
    log_format: Literal["json", "console"] = Field(default="console")
    metrics_enabled: bool = Field(default=False)
    metrics_port: int = Field(default=9090, ge=1, le=65535)
    service_name: str = Field(default="feedwatch")


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_prefix="FEEDWATCH_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    environment: Literal["development", "test", "staging", "production"] = Field(
        default="development"
    )

    mongodb: MongoDBSettings = Field(default_factory=MongoDBSettings)
    backoff: BackoffSettings = Field(default_factory=BackoffSettings)
    checkpoint: CheckpointSettings = Field(default_factory=CheckpointSettings)
    watcher: WatcherSettings = Field(default_factory=WatcherSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)

    @classmethod
    def load(cls) -> Settings:
        """Load settings from environment."""
        return cls()


# Global settings instance (lazy loaded)
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings.load()
    return _settings


def configure_settings(settings: Settings) -> None:
    """Configure the global settings instance (for testing)."""
    global _settings
    _settings = settings
