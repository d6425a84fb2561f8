"""
Upstream provider error taxonomy.

Every upstream failure is raised as one of these types so that callers can
decide between retrying, skipping a tick and surfacing the failure without
inspecting status codes themselves.
"""

from typing import Optional


class ProviderError(Exception):
    """Base class for provider errors."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_text: Optional[str] = None
    ):
        """
        Initialize a provider error.

        Args:
            message: Error message
            status_code: HTTP status code (optional)
            response_text: Response body, kept for logging only (optional)
        """
        self.status_code = status_code
        self.response_text = response_text
        super().__init__(message)


class AuthenticationError(ProviderError):
    """Credentials rejected (401/403) or missing. Never retried."""


class RequestError(ProviderError):
    """Any other 4xx, or a response we could not decode. Never retried."""


class DataNotFoundError(RequestError):
    """404 from upstream."""


class UpstreamConnectionError(ProviderError):
    """Network-level failure before a response arrived. Never retried."""


class RetryableUpstreamError(ProviderError):
    """Transient upstream failure; the call may be retried."""


class RateLimitError(RetryableUpstreamError):
    """429 from upstream."""


class ServerError(RetryableUpstreamError):
    """5xx from upstream."""


class UpstreamTimeoutError(RetryableUpstreamError):
    """The call's deadline passed before a response arrived."""


class ResolutionError(ProviderError):
    """No session key (e.g. nearest expiry) could be determined."""


class MalformedPayloadError(ProviderError):
    """The response as a whole is unusable (not individual bad rows)."""


def error_for_status(
    status_code: int,
    message: str,
    response_text: Optional[str] = None
) -> ProviderError:
    """
    Build the typed error for a non-2xx HTTP status.

    Args:
        status_code: HTTP status code
        message: Human readable message
        response_text: Response body

    Returns:
        The matching ProviderError subclass instance
    """
    if status_code in (401, 403):
        return AuthenticationError(f"Authentication failed: {message}", status_code, response_text)
    if status_code == 404:
        return DataNotFoundError(f"Data not found: {message}", status_code, response_text)
    if status_code == 429:
        return RateLimitError(f"Rate limit exceeded: {message}", status_code, response_text)
    if status_code >= 500:
        return ServerError(f"Upstream server error ({status_code}): {message}", status_code, response_text)
    return RequestError(f"Request failed ({status_code}): {message}", status_code, response_text)
