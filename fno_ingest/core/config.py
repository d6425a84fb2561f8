"""
Configuration module using Pydantic for type validation and centralized settings management.
Implements a singleton pattern to ensure consistent configuration across the application.

Each concern (market session, pacing, individual feeds, storage) owns a settings
class with its own environment prefix, so e.g. ``OC_LIVE_MS=5000`` only touches the
option chain feed.
"""

from datetime import date
from typing import Any, Dict, List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from fno_ingest.providers.config.provider_settings import AnalyticsApiSettings, DhanSettings


class MarketSettings(BaseSettings):
    """Session calendar settings."""

    TIMEZONE: str = Field(
        default="Asia/Kolkata",
        description="Civil timezone every session computation is done in"
    )
    SESSION_START_MIN: int = Field(
        default=9 * 60 + 15,
        description="Session open as minutes since local midnight (inclusive)"
    )
    SESSION_END_MIN: int = Field(
        default=15 * 60 + 30,
        description="Session close as minutes since local midnight (inclusive)"
    )
    HOLIDAYS: List[date] = Field(
        default_factory=list,
        description="Exchange holidays, closed for the whole day"
    )

    model_config = SettingsConfigDict(
        env_prefix="MARKET_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    @field_validator("SESSION_START_MIN", "SESSION_END_MIN")
    @classmethod
    def validate_minute_of_day(cls, v: int) -> int:
        """Validate that the value is a minute of the day."""
        if not 0 <= v < 24 * 60:
            raise ValueError("must be a minute of the day (0-1439)")
        return v

    @model_validator(mode="after")
    def validate_session_window(self) -> "MarketSettings":
        """Validate that the session does not end before it starts."""
        if self.SESSION_END_MIN < self.SESSION_START_MIN:
            raise ValueError("SESSION_END_MIN must not be before SESSION_START_MIN")
        return self


class PacingSettings(BaseSettings):
    """Upstream rate budget, one gate per upstream host."""

    DHAN_MIN_GAP_MS: int = Field(
        default=3100,
        description="Minimum gap between any two Dhan API dispatches"
    )
    DHAN_QUEUE_GAPS_MS: Dict[str, int] = Field(
        default_factory=dict,
        description="Optional extra spacing per Dhan queue, e.g. {\"option_chain\": 3100}"
    )
    ANALYTICS_MIN_GAP_MS: int = Field(
        default=250,
        description="Minimum gap between any two analytics API dispatches"
    )
    ANALYTICS_QUEUE_GAPS_MS: Dict[str, int] = Field(
        default_factory=dict,
        description="Optional extra spacing per analytics queue"
    )

    model_config = SettingsConfigDict(
        env_prefix="PACING_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    @field_validator("DHAN_MIN_GAP_MS", "ANALYTICS_MIN_GAP_MS")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        """Validate that the gap is not negative."""
        if v < 0:
            raise ValueError("must not be negative")
        return v


class FeedSettings(BaseSettings):
    """Cadence and backoff knobs shared by every poll loop."""

    ENABLED: bool = Field(default=True, description="Start this feed with the scheduler")
    SYMBOL: str = Field(default="NIFTY", description="Underlying symbol")
    EXPIRY: Optional[str] = Field(
        default=None,
        description="Explicit session key (expiry); bypasses auto-resolution"
    )
    LIVE_MS: int = Field(default=7000, description="Base polling interval while open")
    MIN_INTERVAL_MS: int = Field(default=3100, description="Floor for the polling interval")
    STEP_MS: int = Field(default=1000, description="Extra delay per backoff step")
    MAX_BACKOFF_STEPS: int = Field(default=12, description="Cap for the backoff counter")
    JITTER_MS: int = Field(default=250, description="Upper bound of the random jitter")
    CLOSED_MS: int = Field(default=60_000, description="Sleep while the market is closed")
    MARKET_HOURS_ONLY: bool = Field(default=True, description="Skip upstream work outside the session")
    START_OFFSET_MS: int = Field(default=1600, description="Delay before the first tick")
    RESOLVE_INITIAL_WAIT_MS: int = Field(
        default=15_000,
        description="First wait after a failed initial session key resolution"
    )
    RESOLVE_MAX_WAIT_MS: int = Field(
        default=300_000,
        description="Cap for the initial session key resolution wait"
    )

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=True, extra="ignore")

    @field_validator("LIVE_MS", "MIN_INTERVAL_MS", "RESOLVE_INITIAL_WAIT_MS", "RESOLVE_MAX_WAIT_MS")
    @classmethod
    def validate_positive_integer(cls, v: int) -> int:
        """Validate that the value is a positive integer."""
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v

    @field_validator("STEP_MS", "MAX_BACKOFF_STEPS", "JITTER_MS", "START_OFFSET_MS")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        """Validate that the value is not negative."""
        if v < 0:
            raise ValueError("must not be negative")
        return v

    @field_validator("CLOSED_MS")
    @classmethod
    def clamp_closed_sleep(cls, v: int) -> int:
        """Never poll faster than every 10s while closed."""
        return max(10_000, v)

    @field_validator("SYMBOL")
    @classmethod
    def normalize_symbol(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("EXPIRY")
    @classmethod
    def blank_expiry_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return v.strip()


class OptionChainFeedSettings(FeedSettings):
    """Option chain poller for one underlying."""

    UNDERLYING_SECURITY_ID: int = Field(default=13, description="Dhan security id of the underlying")
    UNDERLYING_SEGMENT: str = Field(default="IDX_I", description="Dhan exchange segment of the underlying")
    FALLBACK_EXPIRY: Optional[str] = Field(
        default=None,
        description="Used when the expiry list cannot be fetched"
    )
    VERBOSE: bool = Field(default=True, description="Log the ATM/PCR summary on every tick")
    WINDOW_STEPS: int = Field(default=15, description="Strikes either side of ATM in the windowed PCR")
    PCR_STEPS: int = Field(default=3, description="Strikes either side of ATM in the near PCR")

    model_config = SettingsConfigDict(
        env_prefix="OC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )


class GexLevelsFeedSettings(FeedSettings):
    """Minute job computing and storing GEX levels."""

    OI_WEIGHT: int = Field(default=2, description="Weight of the OI rank in the level score")
    VOL_WEIGHT: int = Field(default=1, description="Weight of the volume rank in the level score")

    model_config = SettingsConfigDict(
        env_prefix="GEX_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )


class AdvDecFeedSettings(FeedSettings):
    """Minute job storing advance/decline breadth snapshots."""

    BIN: int = Field(default=5, description="Chart bin size in minutes")
    SINCE_MIN: int = Field(default=1440, description="Look-back window in minutes")

    model_config = SettingsConfigDict(
        env_prefix="ADVDEC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    @field_validator("BIN", "SINCE_MIN")
    @classmethod
    def at_least_one(cls, v: int) -> int:
        return max(1, v)


class DatabaseSettings(BaseSettings):
    """MongoDB connection settings."""

    MONGODB_SERVER: str = Field(
        default="localhost",
        description="MongoDB server hostname"
    )
    MONGODB_PORT: int = Field(
        default=27017,
        description="MongoDB server port"
    )
    MONGODB_USER: str = Field(
        default="",
        description="MongoDB username"
    )
    MONGODB_PASSWORD: str = Field(
        default="",
        description="MongoDB password"
    )
    MONGODB_DB: str = Field(
        default="fno_ingest",
        description="MongoDB database name"
    )
    MONGODB_AUTH_SOURCE: str = Field(
        default="admin",
        description="MongoDB authentication source"
    )
    MONGODB_MAX_POOL_SIZE: int = Field(
        default=50,
        description="MongoDB maximum connection pool size"
    )
    MONGODB_MIN_POOL_SIZE: int = Field(
        default=0,
        description="MongoDB minimum connection pool size"
    )
    MONGODB_CONNECT_TIMEOUT_MS: int = Field(
        default=20000,
        description="MongoDB connection timeout in ms"
    )
    MONGODB_SERVER_SELECTION_TIMEOUT_MS: int = Field(
        default=5000,
        description="MongoDB server selection timeout in ms"
    )
    MONGODB_URI: Optional[str] = None

    model_config = SettingsConfigDict(
        env_prefix="DB_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    @model_validator(mode="after")
    def assemble_mongodb_uri(self) -> "DatabaseSettings":
        """Assembles MongoDB URI if not provided."""
        if self.MONGODB_URI:
            return self

        auth_str = ""
        if self.MONGODB_USER and self.MONGODB_PASSWORD:
            auth_str = f"{self.MONGODB_USER}:{self.MONGODB_PASSWORD}@"

        self.MONGODB_URI = (
            f"mongodb://{auth_str}{self.MONGODB_SERVER}:{self.MONGODB_PORT}/"
            f"{self.MONGODB_DB}?authSource={self.MONGODB_AUTH_SOURCE}"
        )
        return self


class Settings(BaseSettings):
    """Main application settings that combine all setting categories."""

    # Application metadata
    APP_NAME: str = Field(
        default="F&O Snapshot Ingestion",
        description="Application name"
    )
    APP_VERSION: str = Field(
        default="0.1.0",
        description="Application version"
    )
    DEBUG: bool = Field(
        default=False,
        description="Enable debug mode"
    )
    ENV: str = Field(
        default="development",
        description="Environment (development, staging, production)"
    )
    LOG_LEVEL: str = Field(
        default="INFO",
        description="Root log level"
    )
    API_PREFIX: str = Field(
        default="/api/v1",
        description="API route prefix"
    )
    START_SCHEDULER: bool = Field(
        default=True,
        description="Run the poll loops inside the API process"
    )
    SHUTDOWN_TIMEOUT_S: float = Field(
        default=30.0,
        description="How long shutdown waits for in-flight ticks"
    )
    HOST: str = Field(
        default="0.0.0.0",
        description="Bind address for uvicorn"
    )
    PORT: int = Field(
        default=8000,
        description="Bind port for uvicorn"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=True,
        extra="ignore"
    )

    market: MarketSettings = Field(default_factory=MarketSettings)
    pacing: PacingSettings = Field(default_factory=PacingSettings)
    db: DatabaseSettings = Field(default_factory=DatabaseSettings)
    dhan: DhanSettings = Field(default_factory=DhanSettings)
    analytics: AnalyticsApiSettings = Field(default_factory=AnalyticsApiSettings)
    option_chain: OptionChainFeedSettings = Field(default_factory=OptionChainFeedSettings)
    gex_levels: GexLevelsFeedSettings = Field(default_factory=GexLevelsFeedSettings)
    advdec: AdvDecFeedSettings = Field(default_factory=AdvDecFeedSettings)

    @field_validator("ENV")
    @classmethod
    def validate_env(cls, v: str) -> str:
        """Validates environment value."""
        allowed = {"development", "staging", "production"}
        if v.lower() not in allowed:
            raise ValueError(f"Environment must be one of {allowed}")
        return v.lower()

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"LOG_LEVEL must be one of {allowed}")
        return v.upper()


# Singleton pattern - ensures only one Settings instance is created
_settings_instance: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Returns singleton instance of application settings.
    Uses module-level variable for singleton pattern to avoid issues with circular imports.
    """
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings()
    return _settings_instance


def reset_settings(**overrides: Any) -> Settings:
    """Rebuild the singleton, mainly for tests."""
    global _settings_instance
    _settings_instance = Settings(**overrides)
    return _settings_instance
