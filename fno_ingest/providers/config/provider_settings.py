"""
Provider configuration settings.

This module defines settings models for the upstream HTTP APIs using Pydantic:
the Dhan brokerage API (option chain) and the analytics API (GEX cache,
advance/decline breadth).
"""

import logging
from typing import Any, Dict

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Set up logging
logger = logging.getLogger(__name__)


class BaseProviderSettings(BaseSettings):
    """Base settings for all upstream providers."""

    # Connection settings
    REQUEST_TIMEOUT: float = Field(
        default=15.0,
        description="Per-call deadline in seconds; a timed-out call is retryable"
    )
    CONNECTION_TIMEOUT: float = Field(
        default=10.0,
        description="Connection establishment timeout in seconds"
    )

    # Retry policy
    RETRY_BASE_MS: int = Field(
        default=1000,
        description="Base wait before the first retry of a retryable failure"
    )
    RETRY_CAP_MS: int = Field(
        default=15000,
        description="Upper bound for a single retry wait"
    )

    # Logging and monitoring
    DEBUG_MODE: bool = Field(
        default=False,
        description="Enable debug logging of request payloads"
    )

    model_config = SettingsConfigDict(
        env_prefix="PROVIDER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    @field_validator("RETRY_BASE_MS", "RETRY_CAP_MS")
    @classmethod
    def validate_positive_integer(cls, v: int) -> int:
        """Validate that the value is a positive integer."""
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v

    @field_validator("REQUEST_TIMEOUT", "CONNECTION_TIMEOUT")
    @classmethod
    def validate_positive_timeout(cls, v: float) -> float:
        """Validate that the timeout is positive."""
        if v <= 0:
            raise ValueError("must be positive")
        return v


class DhanSettings(BaseProviderSettings):
    """Dhan v2 API settings."""

    # Authentication
    ACCESS_TOKEN: SecretStr = Field(
        default=SecretStr(""),
        description="Dhan access token, sent as the access-token header"
    )
    CLIENT_ID: str = Field(
        default="",
        description="Dhan client id, sent as the client-id header"
    )

    # API endpoints
    API_BASE_URL: str = Field(
        default="https://api.dhan.co/v2/",
        description="Dhan REST API base URL"
    )

    # Attempts per call (each attempt goes through the pacing gate)
    EXPIRY_LIST_ATTEMPTS: int = Field(
        default=3,
        description="Attempts for the expiry list call"
    )
    OPTION_CHAIN_ATTEMPTS: int = Field(
        default=4,
        description="Attempts for the option chain call"
    )

    model_config = SettingsConfigDict(
        env_prefix="DHAN_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    @field_validator("EXPIRY_LIST_ATTEMPTS", "OPTION_CHAIN_ATTEMPTS")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        """Validate that at least one attempt is made."""
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v

    @property
    def has_credentials(self) -> bool:
        return bool(self.ACCESS_TOKEN.get_secret_value() and self.CLIENT_ID)

    def get_auth_headers(self) -> Dict[str, str]:
        """
        Get authentication headers for API requests.

        Returns:
            Dictionary of headers with authentication information
        """
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "access-token": self.ACCESS_TOKEN.get_secret_value(),
            "client-id": self.CLIENT_ID,
        }

    def mask_sensitive_data(self) -> Dict[str, Any]:
        """
        Get a copy of settings with sensitive data masked for logging.

        Returns:
            Dictionary with masked sensitive fields
        """
        data = self.model_dump()
        data["ACCESS_TOKEN"] = "********" if self.ACCESS_TOKEN.get_secret_value() else ""
        return data


class AnalyticsApiSettings(BaseProviderSettings):
    """Analytics API (GEX cache, breadth) settings."""

    API_BASE_URL: str = Field(
        default="https://api.upholictech.com/api/",
        description="Analytics REST API base URL"
    )
    REQUEST_TIMEOUT: float = Field(
        default=10.0,
        description="Per-call deadline in seconds; a timed-out call is retryable"
    )
    FETCH_ATTEMPTS: int = Field(
        default=3,
        description="Attempts per analytics call"
    )

    model_config = SettingsConfigDict(
        env_prefix="ANALYTICS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    @field_validator("FETCH_ATTEMPTS")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        """Validate that at least one attempt is made."""
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v
