"""
Unit tests for the base REST client and its retry policy.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, Mock

import aiohttp
import pytest

from fno_ingest.providers.base.pacing import PacingGate
from fno_ingest.providers.base.provider import (
    AuthenticationError,
    DataNotFoundError,
    RateLimitError,
    RequestError,
    RetryableUpstreamError,
    ServerError,
    UpstreamConnectionError,
    UpstreamTimeoutError,
    error_for_status,
)
from fno_ingest.providers.base.rest_client import RestClient, RetryPolicy, call_with_retries
from fno_ingest.providers.config.provider_settings import BaseProviderSettings


@pytest.fixture
def gate():
    return PacingGate(0, name="test")


@pytest.fixture
def fake_sleep():
    """Sleep replacement that records the requested waits."""
    return AsyncMock(return_value=None)


def sequence(*outcomes):
    """Zero-argument coroutine function raising or returning each outcome in turn."""
    calls = Mock()
    remaining = list(outcomes)

    async def attempt():
        calls()
        outcome = remaining.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    attempt.calls = calls
    return attempt


def mock_response(status, text, reason="OK"):
    response = MagicMock()
    response.status = status
    response.text = AsyncMock(return_value=text)
    response.reason = reason
    response.method = "GET"
    response.url = "https://upstream.test/x"
    return response


@pytest.fixture
def client(gate):
    client = RestClient("https://upstream.test/api", BaseProviderSettings(), gate)
    session = MagicMock()
    session.closed = False
    session.request.return_value.__aexit__.return_value = False
    client._session = session
    return client


class TestRetryPolicy:
    """Test backoff delays."""

    def test_delays_double_and_cap(self):
        policy = RetryPolicy(attempts=6, base_ms=1000, cap_ms=15000)

        assert [policy.delay_ms(i) for i in range(6)] == [1000, 2000, 4000, 8000, 15000, 15000]


class TestCallWithRetries:
    """Test which failures are retried and how long retries wait."""

    @pytest.mark.asyncio
    async def test_retries_server_errors_until_success(self, gate, fake_sleep):
        attempt = sequence(ServerError("503", 503), ServerError("503", 503), {"data": "ok"})

        result = await call_with_retries(gate, "q", attempt, RetryPolicy(attempts=4), sleep=fake_sleep)

        assert result == {"data": "ok"}
        assert attempt.calls.call_count == 3
        assert [c.args[0] for c in fake_sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhaustion_raises_last_error_without_final_sleep(self, gate, fake_sleep):
        attempt = sequence(ServerError("a", 503), RateLimitError("b", 429), ServerError("c", 502))

        with pytest.raises(ServerError, match="c"):
            await call_with_retries(gate, "q", attempt, RetryPolicy(attempts=3), sleep=fake_sleep)

        assert attempt.calls.call_count == 3
        assert [c.args[0] for c in fake_sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_timeout_is_retried(self, gate, fake_sleep):
        attempt = sequence(UpstreamTimeoutError("slow"), {"ok": True})

        assert await call_with_retries(gate, "q", attempt, RetryPolicy(attempts=2), sleep=fake_sleep) == {"ok": True}
        assert attempt.calls.call_count == 2

    @pytest.mark.asyncio
    async def test_authentication_is_not_retried(self, gate, fake_sleep):
        attempt = sequence(AuthenticationError("401", 401), {"never": "reached"})

        with pytest.raises(AuthenticationError):
            await call_with_retries(gate, "q", attempt, RetryPolicy(attempts=4), sleep=fake_sleep)

        assert attempt.calls.call_count == 1
        fake_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        RequestError("400", 400),
        DataNotFoundError("404", 404),
        UpstreamConnectionError("refused"),
    ])
    async def test_fatal_errors_are_not_retried(self, gate, fake_sleep, error):
        attempt = sequence(error, {"never": "reached"})

        with pytest.raises(type(error)):
            await call_with_retries(gate, "q", attempt, RetryPolicy(attempts=4), sleep=fake_sleep)

        assert attempt.calls.call_count == 1

    @pytest.mark.asyncio
    async def test_every_attempt_goes_through_the_gate(self, fake_sleep):
        gate = PacingGate(0)
        attempt = sequence(ServerError("503", 503), {"ok": True})

        await call_with_retries(gate, "option_chain", attempt, RetryPolicy(attempts=2), sleep=fake_sleep)

        assert gate.get_stats()["dispatched"] == {"option_chain": 2}

    @pytest.mark.asyncio
    async def test_zero_attempts_rejected(self, gate):
        with pytest.raises(ValueError):
            await call_with_retries(gate, "q", sequence(), RetryPolicy(attempts=0))


class TestErrorForStatus:
    """Test status classification."""

    @pytest.mark.parametrize("status,expected", [
        (401, AuthenticationError),
        (403, AuthenticationError),
        (404, DataNotFoundError),
        (429, RateLimitError),
        (500, ServerError),
        (503, ServerError),
        (400, RequestError),
        (422, RequestError),
    ])
    def test_mapping(self, status, expected):
        error = error_for_status(status, "msg", "body")

        assert type(error) is expected
        assert error.status_code == status
        assert error.response_text == "body"

    def test_retryable(self):
        assert isinstance(error_for_status(429, "x"), RetryableUpstreamError)
        assert isinstance(error_for_status(502, "x"), RetryableUpstreamError)
        assert isinstance(UpstreamTimeoutError("x"), RetryableUpstreamError)
        assert not isinstance(error_for_status(401, "x"), RetryableUpstreamError)
        assert not isinstance(error_for_status(400, "x"), RetryableUpstreamError)


class TestRestClient:
    """Test request building and response handling."""

    def test_get_full_url_keeps_base_path(self, client):
        assert client.get_full_url("gex/nifty/cache") == "https://upstream.test/api/gex/nifty/cache"
        assert client.get_full_url("/advdec") == "https://upstream.test/api/advdec"

    @pytest.mark.asyncio
    async def test_successful_json(self, client):
        client._session.request.return_value.__aenter__.return_value = mock_response(200, '{"data": {"a": 1}}')

        result = await client.request("GET", "x", "q", params={"expiry": None, "bin": 5})

        assert result == {"data": {"a": 1}}
        _, kwargs = client._session.request.call_args
        assert kwargs["params"] == {"bin": 5}

    @pytest.mark.asyncio
    async def test_non_object_body_is_wrapped(self, client):
        client._session.request.return_value.__aenter__.return_value = mock_response(200, '["2024-06-13"]')

        assert await client.request("POST", "x", "q", data={"a": 1}) == {"data": ["2024-06-13"]}
        _, kwargs = client._session.request.call_args
        assert kwargs["json"] == {"a": 1}

    @pytest.mark.asyncio
    async def test_invalid_json(self, client):
        client._session.request.return_value.__aenter__.return_value = mock_response(200, "<html>")

        with pytest.raises(RequestError, match="Invalid JSON"):
            await client.request("GET", "x", "q")

    @pytest.mark.asyncio
    async def test_error_status_is_typed(self, client):
        client._session.request.return_value.__aenter__.return_value = mock_response(
            503, "maintenance", reason="Service Unavailable"
        )

        with pytest.raises(ServerError) as exc_info:
            await client.request("GET", "x", "q")

        assert exc_info.value.status_code == 503
        assert exc_info.value.response_text == "maintenance"

    @pytest.mark.asyncio
    async def test_timeout_becomes_retryable(self, client):
        client._session.request.side_effect = asyncio.TimeoutError()

        with pytest.raises(UpstreamTimeoutError):
            await client.request("GET", "x", "q")

    @pytest.mark.asyncio
    async def test_network_error_is_fatal(self, client):
        client._session.request.side_effect = aiohttp.ClientConnectionError("refused")

        with pytest.raises(UpstreamConnectionError):
            await client.request("GET", "x", "q")

    def test_mask_sensitive_data(self, client):
        masked = client._mask_sensitive_data({
            "access_token": "abc",
            "nested": {"client_secret": "s", "UnderlyingScrip": 13},
            "items": [{"password": "p"}],
        })

        assert masked == {
            "access_token": "********",
            "nested": {"client_secret": "********", "UnderlyingScrip": 13},
            "items": [{"password": "********"}],
        }

    @pytest.mark.asyncio
    async def test_close(self, client):
        session = client._session
        session.close = AsyncMock()

        await client.close()

        session.close.assert_awaited_once()
        assert client._session is None
