"""
Error handling module for the ingestion service.

Provides:
- Standardized error categories and severities
- AppError, which knows how to log itself and become an HTTP error
- Conversion of upstream provider errors into AppErrors
- Process-wide error counters for the status endpoint
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

from fastapi import HTTPException, status
from pydantic import BaseModel, Field

from fno_ingest.providers.base.provider import (
    AuthenticationError as ProviderAuthenticationError,
    MalformedPayloadError,
    ProviderError,
    ResolutionError,
    RetryableUpstreamError,
)

# Configure logging
logger = logging.getLogger(__name__)


class ErrorCategory(str, Enum):
    """Standardized error categories for the application."""
    DATABASE = "database"
    DATABASE_CONNECTION = "database_connection"
    AUTHENTICATION = "authentication"
    VALIDATION = "validation"
    EXTERNAL_SERVICE = "external_service"
    RATE_LIMIT = "rate_limit"
    RESOLUTION = "resolution"
    UNKNOWN = "unknown"


class ErrorSeverity(str, Enum):
    """Error severity levels."""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AppErrorDetail(BaseModel):
    """
    Structured error detail for error tracking.
    """
    timestamp: datetime = Field(default_factory=_utcnow)
    message: str
    error_category: ErrorCategory
    severity: ErrorSeverity = ErrorSeverity.MEDIUM
    error_code: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    component: Optional[str] = None


class AppError(Exception):
    """
    Base application error class for standardized error handling.
    """
    def __init__(
        self,
        message: str,
        error_category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        component: Optional[str] = None,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    ):
        self.detail = AppErrorDetail(
            message=message,
            error_category=error_category,
            severity=severity,
            error_code=error_code,
            context=context or {},
            component=component
        )
        self.status_code = status_code
        super().__init__(message)

    def log(self, logger_obj: Optional[logging.Logger] = None) -> None:
        """
        Log the error with appropriate context.
        """
        log_method = (logger_obj or logger).error
        log_method(
            f"{self.detail.error_category.value.upper()} Error: {self.detail.message}",
            extra={
                "error_detail": self.detail.model_dump(),
                "severity": self.detail.severity,
                "component": self.detail.component
            }
        )

    def to_http_exception(self) -> HTTPException:
        """
        Convert error to a FastAPI HTTPException.
        """
        return HTTPException(
            status_code=self.status_code,
            detail={
                "ok": False,
                "message": self.detail.message,
                "category": self.detail.error_category.value,
                "timestamp": self.detail.timestamp.isoformat()
            }
        )


class DatabaseError(AppError):
    """
    Base error for database-related operations.
    """
    def __init__(
        self,
        message: str,
        db_name: Optional[str] = None,
        **kwargs
    ):
        kwargs.setdefault('error_category', ErrorCategory.DATABASE)
        kwargs.setdefault('severity', ErrorSeverity.HIGH)

        context = kwargs.get('context', {})
        if db_name:
            context['database'] = db_name
        kwargs['context'] = context

        super().__init__(message, **kwargs)


class DatabaseConnectionError(DatabaseError):
    """
    Specific error for database connection failures.
    """
    def __init__(
        self,
        message: str,
        db_name: Optional[str] = None,
        **kwargs
    ):
        kwargs.setdefault('error_category', ErrorCategory.DATABASE_CONNECTION)
        kwargs.setdefault('severity', ErrorSeverity.CRITICAL)
        kwargs.setdefault('status_code', status.HTTP_503_SERVICE_UNAVAILABLE)
        super().__init__(message, db_name=db_name, **kwargs)


class UpstreamError(AppError):
    """
    An upstream API call failed for good (retries exhausted or fatal status).
    """
    def __init__(
        self,
        message: str,
        upstream_status: Optional[int] = None,
        **kwargs
    ):
        kwargs.setdefault('error_category', ErrorCategory.EXTERNAL_SERVICE)
        kwargs.setdefault('severity', ErrorSeverity.MEDIUM)
        kwargs.setdefault('status_code', status.HTTP_502_BAD_GATEWAY)

        context = kwargs.get('context', {})
        if upstream_status is not None:
            context['upstream_status'] = upstream_status
        kwargs['context'] = context

        super().__init__(message, **kwargs)


class AuthenticationError(AppError):
    """
    Upstream rejected our credentials.
    """
    def __init__(
        self,
        message: str,
        **kwargs
    ):
        kwargs.setdefault('error_category', ErrorCategory.AUTHENTICATION)
        kwargs.setdefault('severity', ErrorSeverity.CRITICAL)
        kwargs.setdefault('status_code', status.HTTP_401_UNAUTHORIZED)
        super().__init__(message, **kwargs)


class ResolutionFailedError(AppError):
    """
    No session key (expiry) could be resolved for a feed.
    """
    def __init__(
        self,
        message: str,
        **kwargs
    ):
        kwargs.setdefault('error_category', ErrorCategory.RESOLUTION)
        kwargs.setdefault('severity', ErrorSeverity.HIGH)
        kwargs.setdefault('status_code', status.HTTP_502_BAD_GATEWAY)
        super().__init__(message, **kwargs)


class ErrorTracker:
    """
    Centralized error counting for monitoring.
    """
    # Global error tracking
    _error_stats: Dict[str, Dict[Any, Any]] = {
        "counters": {},  # Error counters by category
        "by_component": {},  # Error counters by component
        "last_errors": {},  # Last error by category
    }

    @classmethod
    def track_error(
        cls,
        error: Union[AppError, Exception],
        category: Optional[ErrorCategory] = None,
        component: Optional[str] = None
    ) -> None:
        """
        Track error occurrence.

        Args:
            error: The error that occurred
            category: Optional category override (for non-AppError exceptions)
            component: Component (usually feed id) the error belongs to
        """
        if isinstance(error, AppError):
            error_cat = error.detail.error_category
            component = component or error.detail.component
        else:
            error_cat = category or ErrorCategory.UNKNOWN

        counters = cls._error_stats["counters"]
        counters[error_cat] = counters.get(error_cat, 0) + 1
        cls._error_stats["last_errors"][error_cat] = error

        if component:
            per_component = cls._error_stats["by_component"]
            per_component[component] = per_component.get(component, 0) + 1

    @classmethod
    def clear_error_stats(cls) -> None:
        """Reset error statistics (mainly for testing)."""
        cls._error_stats["counters"] = {}
        cls._error_stats["by_component"] = {}
        cls._error_stats["last_errors"] = {}

    @classmethod
    def get_error_stats(cls) -> Dict[str, Any]:
        """
        Retrieve current error statistics.

        Returns:
            Dictionary of current error tracking data
        """
        return {
            "counters": {k.value: v for k, v in cls._error_stats["counters"].items()},
            "by_component": dict(cls._error_stats["by_component"]),
            "last_errors": {
                k.value: str(v) for k, v in cls._error_stats["last_errors"].items()
            },
        }


def categorize_provider_error(error: Exception) -> ErrorCategory:
    """Map an upstream exception onto an error category."""
    if isinstance(error, ProviderAuthenticationError):
        return ErrorCategory.AUTHENTICATION
    if isinstance(error, RetryableUpstreamError):
        return ErrorCategory.RATE_LIMIT if error.status_code == 429 else ErrorCategory.EXTERNAL_SERVICE
    if isinstance(error, ResolutionError):
        return ErrorCategory.RESOLUTION
    if isinstance(error, MalformedPayloadError):
        return ErrorCategory.VALIDATION
    if isinstance(error, ProviderError):
        return ErrorCategory.EXTERNAL_SERVICE
    return ErrorCategory.UNKNOWN


def convert_provider_error(e: Exception, component: Optional[str] = None) -> AppError:
    """
    Convert upstream and unexpected exceptions to AppError types.

    Args:
        e: Exception to convert
        component: Component the failure happened in

    Returns:
        Converted AppError
    """
    if isinstance(e, AppError):
        return e
    if isinstance(e, ProviderAuthenticationError):
        return AuthenticationError(str(e), component=component)
    if isinstance(e, ResolutionError):
        return ResolutionFailedError(str(e), component=component)
    if isinstance(e, MalformedPayloadError):
        return UpstreamError(str(e), component=component, error_category=ErrorCategory.VALIDATION)
    if isinstance(e, ProviderError):
        return UpstreamError(
            str(e),
            upstream_status=e.status_code,
            component=component,
            error_category=categorize_provider_error(e),
        )

    # Default to generic AppError
    return AppError(
        f"Unexpected error: {e}",
        error_category=ErrorCategory.UNKNOWN,
        severity=ErrorSeverity.CRITICAL,
        component=component
    )
