"""
Tests for the on-demand trigger, health and status endpoints.

The app is created without entering its lifespan, so no scheduler is
started; tests install a mocked scheduler on ``app.state``.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, Mock

import pytest
from fastapi.testclient import TestClient

from fno_ingest.core.config import Settings
from fno_ingest.main import create_application
from fno_ingest.providers.base.provider import AuthenticationError, ResolutionError, ServerError
from fno_ingest.schemas.market_data import SnapshotRecord
from fno_ingest.services.feeds.base import PollResult


def make_result(saved=True):
    record = SnapshotRecord(
        feed_id="gex_levels:NIFTY",
        session_key="2024-06-13",
        trading_day="2024-06-12",
        minute_bucket=28_636_110,
        payload={"strikes": {"R1": 22000}},
        captured_at_utc=datetime(2024, 6, 12, 4, 30, 30, tzinfo=timezone.utc),
        captured_at_local="12/06/2024, 10:00:30",
    )
    return PollResult(record=record, saved=saved, duplicate=not saved)


@pytest.fixture
def loops():
    found = {}
    for kind in ("gex_levels", "advdec", "option_chain"):
        loop = Mock()
        loop.feed_id = f"{kind}:NIFTY"
        loop.feed = Mock(feed_id=f"{kind}:NIFTY")
        loop.feed.with_params.return_value = loop.feed
        found[kind] = loop
    return found


@pytest.fixture
def scheduler(loops):
    mock = Mock()
    mock.get_loop.side_effect = lambda kind: loops[kind]
    mock.run_once = AsyncMock(return_value=make_result())
    mock.get_status.return_value = {"running": True, "feeds": {}, "gates": []}
    return mock


@pytest.fixture
def app(scheduler):
    application = create_application(Settings(_env_file=None))
    application.state.scheduler = scheduler
    return application


@pytest.fixture
def client(app):
    return TestClient(app)


class TestTriggerEndpoints:
    """Test the on-demand snapshot triggers."""

    def test_gex_levels_calc(self, client, scheduler, loops):
        response = client.get("/api/v1/gex/levels/calc", params={"symbol": "nifty", "expiry": "2024-06-13"})

        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is True
        assert body["saved"] is True
        assert body["duplicate"] is False
        assert body["record"]["payload"] == {"strikes": {"R1": 22000}}
        loops["gex_levels"].feed.with_params.assert_called_once_with(symbol="nifty")
        scheduler.run_once.assert_awaited_once_with(
            "gex_levels:NIFTY", session_key="2024-06-13", feed=loops["gex_levels"].feed
        )

    def test_duplicate_is_still_ok(self, client, scheduler):
        scheduler.run_once.return_value = make_result(saved=False)

        body = client.get("/api/v1/gex/levels/calc").json()

        assert body["ok"] is True
        assert body["saved"] is False
        assert body["duplicate"] is True

    def test_advdec_save_aliases(self, client, scheduler, loops):
        response = client.get("/api/v1/advdec/save", params={"bin": 15, "sinceMin": 60})

        assert response.status_code == 200
        loops["advdec"].feed.with_params.assert_called_once_with(bin_size=15, since_min=60, symbol=None)
        scheduler.run_once.assert_awaited_once_with(
            "advdec:NIFTY", session_key=None, feed=loops["advdec"].feed
        )

    def test_option_chain_snapshot(self, client, scheduler, loops):
        response = client.get("/api/v1/option-chain/snapshot")

        assert response.status_code == 200
        scheduler.run_once.assert_awaited_once_with(
            "option_chain:NIFTY", session_key=None, feed=loops["option_chain"].feed
        )

    @pytest.mark.parametrize("path", [
        "/api/v1/gex/levels/calc",
        "/api/v1/option-chain/snapshot",
        "/api/v1/advdec/save",
    ])
    @pytest.mark.parametrize("expiry", ["garbage", "13-06-2024", "2024-06-13x"])
    def test_malformed_expiry_is_rejected(self, client, scheduler, path, expiry):
        response = client.get(path, params={"expiry": expiry})

        assert response.status_code == 422
        scheduler.run_once.assert_not_awaited()

    def test_upstream_failure_is_502(self, client, scheduler):
        scheduler.run_once.side_effect = ServerError("analytics returned 503", 503)

        response = client.get("/api/v1/gex/levels/calc")

        assert response.status_code == 502
        detail = response.json()["detail"]
        assert detail["ok"] is False
        assert detail["category"] == "external_service"
        assert "503" in detail["message"]

    def test_resolution_failure_is_502(self, client, scheduler):
        scheduler.run_once.side_effect = ResolutionError("No session key")

        response = client.get("/api/v1/option-chain/snapshot")

        assert response.status_code == 502
        assert response.json()["detail"]["category"] == "resolution"

    def test_auth_failure_is_401(self, client, scheduler):
        scheduler.run_once.side_effect = AuthenticationError("rejected", 401)

        response = client.get("/api/v1/option-chain/snapshot")

        assert response.status_code == 401
        assert response.json()["detail"]["category"] == "authentication"

    def test_unexpected_failure_is_500(self, client, scheduler):
        scheduler.run_once.side_effect = RuntimeError("boom")

        response = client.get("/api/v1/advdec/save")

        assert response.status_code == 500
        assert response.json()["detail"]["ok"] is False

    def test_unknown_feed_is_404(self, client, scheduler):
        scheduler.get_loop.side_effect = KeyError("gex_levels")

        response = client.get("/api/v1/gex/levels/calc")

        assert response.status_code == 404

    def test_without_scheduler_is_503(self, app, client):
        app.state.scheduler = None

        response = client.get("/api/v1/gex/levels/calc")

        assert response.status_code == 503


class TestHealthEndpoints:
    """Test health and feed status."""

    def test_health_ok(self, app, client, mongo):
        app.state.mongo = mongo

        response = client.get("/api/v1/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_health_unreachable_store(self, app, client):
        app.state.mongo = Mock(check_health=Mock(return_value=False))

        response = client.get("/api/v1/health")

        assert response.status_code == 503
        assert response.json()["components"]["mongodb"]["status"] == "unhealthy"

    def test_health_before_startup(self, client):
        assert client.get("/api/v1/health").status_code == 503

    def test_feeds_status(self, client):
        body = client.get("/api/v1/feeds/status").json()

        assert body["running"] is True
        assert set(body["errors"]) == {"counters", "by_component", "last_errors"}

    def test_root(self, client):
        assert "Welcome" in client.get("/").json()["message"]
