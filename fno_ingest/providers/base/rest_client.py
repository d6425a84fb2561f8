"""
Base REST API client for upstream providers.

This module implements a reusable REST client with connection pooling, paced
dispatch, a bounded retry policy and standardized error handling for all
upstream APIs.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar, Union
from urllib.parse import urljoin

import aiohttp
from aiohttp import ClientResponse, ClientSession, TCPConnector

from fno_ingest.providers.base.pacing import PacingGate
from fno_ingest.providers.base.provider import (
    AuthenticationError,
    RequestError,
    RetryableUpstreamError,
    UpstreamConnectionError,
    UpstreamTimeoutError,
    error_for_status,
)
from fno_ingest.providers.config.provider_settings import BaseProviderSettings

# Set up logging
logger = logging.getLogger(__name__)

# Type variables
T = TypeVar('T')


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential retry for retryable upstream failures.

    Attempt ``i`` (0-based) that fails with a retryable error waits
    ``min(cap_ms, base_ms * 2**i)`` before attempt ``i + 1``.
    """
    attempts: int = 3
    base_ms: int = 1000
    cap_ms: int = 15000

    def delay_ms(self, attempt: int) -> int:
        return min(self.cap_ms, self.base_ms * (2 ** attempt))


async def call_with_retries(
    gate: PacingGate,
    queue_id: str,
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    description: str = "upstream call",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
) -> T:
    """
    Execute ``func`` through the pacing gate, retrying transient failures.

    Args:
        gate: Pacing gate every attempt is dispatched through
        queue_id: Gate queue the attempts belong to
        func: Zero-argument coroutine function performing one attempt
        policy: Number of attempts and backoff parameters
        description: Text used in log messages
        sleep: Awaitable sleep, replaceable in tests

    Returns:
        The result of the first successful attempt

    Raises:
        RetryableUpstreamError: When every attempt failed transiently (the last one)
        ProviderError: Immediately, for fatal failures (auth, other 4xx, network)
    """
    for attempt in range(policy.attempts):
        try:
            return await gate.schedule(queue_id, func)
        except RetryableUpstreamError as e:
            if attempt + 1 >= policy.attempts:
                logger.error(f"{description}: all {policy.attempts} attempts failed: {e}")
                raise
            wait_ms = policy.delay_ms(attempt)
            logger.warning(
                f"{description} failed on attempt {attempt + 1}/{policy.attempts}, "
                f"retrying in {wait_ms}ms: {e}"
            )
            await sleep(wait_ms / 1000.0)
        except AuthenticationError as e:
            logger.error(f"{description}: authentication rejected, not retrying: {e}")
            raise

    # attempts < 1 never enters the loop
    raise ValueError("RetryPolicy.attempts must be at least 1")


class RestClient:
    """
    Base REST API client with connection pooling and error handling.

    Every request is dispatched through a PacingGate queue; the client itself
    never retries. Retries are layered on top with ``with_retries`` so each
    attempt pays the pacing cost again.
    """

    def __init__(
        self,
        base_url: str,
        settings: BaseProviderSettings,
        gate: PacingGate,
        headers: Optional[Dict[str, str]] = None,
    ):
        """
        Initialize a REST client.

        Args:
            base_url: Base URL for API requests
            settings: Provider settings
            gate: Pacing gate for this upstream
            headers: Default headers for all requests
        """
        self.base_url = base_url.rstrip("/") + "/"
        self.settings = settings
        self.gate = gate
        self.default_headers = headers or {
            "Content-Type": "application/json",
            "Accept": "application/json"
        }

        # Session management
        self._session: Optional[ClientSession] = None
        self._connector: Optional[TCPConnector] = None

        logger.debug(f"Initialized REST client for {self.base_url}")

    async def __aenter__(self) -> "RestClient":
        """Enter async context manager, ensuring session is created."""
        await self.ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit async context manager, closing the session."""
        await self.close()

    async def ensure_session(self) -> None:
        """
        Ensure that an HTTP session exists, creating one if necessary.
        """
        if self._session is None or self._session.closed:
            self._connector = TCPConnector(
                limit=20,
                limit_per_host=10,
                keepalive_timeout=30,
            )

            timeout = aiohttp.ClientTimeout(
                total=self.settings.REQUEST_TIMEOUT,
                connect=self.settings.CONNECTION_TIMEOUT
            )

            self._session = ClientSession(
                connector=self._connector,
                timeout=timeout,
                headers=self.default_headers.copy(),
                raise_for_status=False,  # We'll handle status codes ourselves
            )

            logger.debug("Created new HTTP session with connection pooling")

    async def close(self) -> None:
        """
        Close the HTTP session.
        """
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None
            logger.debug("Closed HTTP session")

    def get_full_url(self, endpoint: str) -> str:
        """
        Get the full URL for an endpoint.

        Args:
            endpoint: API endpoint path

        Returns:
            Full URL
        """
        # Strip leading slash so urljoin keeps the base path
        return urljoin(self.base_url, endpoint.lstrip("/"))

    def _prepare_headers(self, headers: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        result = self.default_headers.copy()
        if headers:
            result.update(headers)
        return result

    async def _process_response(self, response: ClientResponse) -> Dict[str, Any]:
        """
        Process an HTTP response, classifying errors and extracting JSON.

        The body of an error response is logged and attached to the error,
        never used to decide how to handle it.

        Args:
            response: HTTP response

        Returns:
            JSON response data

        Raises:
            AuthenticationError: 401/403
            DataNotFoundError: 404
            RateLimitError: 429
            ServerError: 5xx
            RequestError: Other statuses, or an undecodable 2xx body
        """
        status_code = response.status
        text = await response.text()

        if 200 <= status_code < 300:
            try:
                data = json.loads(text) if text else {}
            except json.JSONDecodeError as e:
                logger.error(f"Failed to parse JSON response: {text[:200]}...")
                raise RequestError(f"Invalid JSON response: {e}", status_code, text)
            if not isinstance(data, dict):
                return {"data": data}
            return data

        logger.warning(f"Upstream {response.method} {response.url} returned {status_code}: {text[:300]}")
        raise error_for_status(status_code, response.reason or "error", text)

    async def request(
        self,
        method: str,
        endpoint: str,
        queue_id: str,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Make one paced HTTP request to the API.

        Args:
            method: HTTP method (GET, POST, etc.)
            endpoint: API endpoint
            queue_id: Pacing gate queue for this call
            params: Query parameters
            data: Request data (will be converted to JSON)
            headers: Additional headers
            timeout: Request timeout override

        Returns:
            Response data

        Raises:
            UpstreamTimeoutError: The call exceeded its deadline
            UpstreamConnectionError: For network errors
            ProviderError: Typed error for non-2xx statuses
        """
        return await self.gate.schedule(
            queue_id,
            lambda: self._send(method, endpoint, params, data, headers, timeout),
        )

    async def _send(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]],
        data: Optional[Any],
        headers: Optional[Dict[str, str]],
        timeout: Optional[float],
    ) -> Dict[str, Any]:
        await self.ensure_session()
        assert self._session is not None, "Session not initialized"

        url = self.get_full_url(endpoint)
        request_kwargs: Dict[str, Any] = {
            "params": {k: v for k, v in (params or {}).items() if v is not None} or None,
            "headers": self._prepare_headers(headers),
        }
        if data is not None:
            if isinstance(data, (dict, list)):
                request_kwargs["json"] = data
            else:
                request_kwargs["data"] = data
        if timeout is not None:
            request_kwargs["timeout"] = aiohttp.ClientTimeout(total=timeout)

        logger.debug(f"Making {method} request to {url}")
        if self.settings.DEBUG_MODE:
            logger.debug(f"Request params: {params}")
            if isinstance(data, (dict, list)):
                logger.debug(f"Request data: {self._mask_sensitive_data(data)}")

        start_time = time.monotonic()
        try:
            async with self._session.request(method, url, **request_kwargs) as response:
                result = await self._process_response(response)
                logger.debug(f"{method} {endpoint} completed in {time.monotonic() - start_time:.3f}s")
                return result
        except asyncio.TimeoutError:
            elapsed = time.monotonic() - start_time
            logger.error(f"{method} request to {endpoint} timed out after {elapsed:.3f}s")
            raise UpstreamTimeoutError(f"{method} {endpoint} timed out after {elapsed:.1f}s")
        except aiohttp.ClientError as e:
            elapsed = time.monotonic() - start_time
            logger.error(f"{method} request to {endpoint} failed after {elapsed:.3f}s: {e}")
            raise UpstreamConnectionError(f"Connection error: {e}")

    def _mask_sensitive_data(self, data: Union[Dict[str, Any], List[Any]]) -> Union[Dict[str, Any], List[Any]]:
        """
        Mask sensitive data for logging.

        Args:
            data: Data to mask

        Returns:
            Masked data
        """
        if isinstance(data, dict):
            result = {}
            for key, value in data.items():
                if any(sensitive in key.lower() for sensitive in ["password", "secret", "token", "auth", "cred"]):
                    result[key] = "********"
                elif isinstance(value, (dict, list)):
                    result[key] = self._mask_sensitive_data(value)
                else:
                    result[key] = value
            return result
        return [self._mask_sensitive_data(item) if isinstance(item, (dict, list)) else item for item in data]

    async def with_retries(
        self,
        method: str,
        endpoint: str,
        queue_id: str,
        attempts: int,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Make a request, retrying 429/5xx/timeouts with exponential backoff.

        Args:
            method: HTTP method
            endpoint: API endpoint
            queue_id: Pacing gate queue
            attempts: Total number of attempts
            params: Query parameters
            data: Request data
            headers: Additional headers

        Returns:
            Response data of the first successful attempt
        """
        policy = RetryPolicy(
            attempts=attempts,
            base_ms=self.settings.RETRY_BASE_MS,
            cap_ms=self.settings.RETRY_CAP_MS,
        )
        return await call_with_retries(
            self.gate,
            queue_id,
            lambda: self._send(method, endpoint, params, data, headers, None),
            policy,
            description=f"{method} {endpoint}",
        )
