"""
Unit tests for config.py and provider_settings.py.

Tests configuration defaults, environment overrides and validation.
"""

import os
from datetime import date
from unittest import mock

import pytest
from pydantic import ValidationError

from fno_ingest.core.config import (
    AdvDecFeedSettings,
    DatabaseSettings,
    MarketSettings,
    OptionChainFeedSettings,
    PacingSettings,
    Settings,
    get_settings,
    reset_settings,
)
from fno_ingest.providers.config.provider_settings import AnalyticsApiSettings, DhanSettings


class TestConfig:
    """Test configuration settings and validation."""

    def test_get_settings_singleton(self):
        """Test that get_settings returns a singleton instance."""
        settings1 = get_settings()
        settings2 = get_settings()

        assert settings1 is settings2

    def test_reset_settings_replaces_singleton(self):
        before = get_settings()
        after = reset_settings(DEBUG=True)

        assert after is not before
        assert get_settings() is after
        assert after.DEBUG is True
        reset_settings()

    def test_default_values(self):
        """Test default configuration values."""
        settings = Settings(_env_file=None)

        assert settings.API_PREFIX == "/api/v1"
        assert settings.LOG_LEVEL == "INFO"

        # Session window 09:15-15:30 IST
        assert settings.market.TIMEZONE == "Asia/Kolkata"
        assert settings.market.SESSION_START_MIN == 555
        assert settings.market.SESSION_END_MIN == 930

        # Pacing
        assert settings.pacing.DHAN_MIN_GAP_MS == 3100
        assert settings.pacing.ANALYTICS_MIN_GAP_MS == 250

        # Option chain cadence
        assert settings.option_chain.LIVE_MS == 7000
        assert settings.option_chain.MIN_INTERVAL_MS == 3100
        assert settings.option_chain.STEP_MS == 1000
        assert settings.option_chain.MAX_BACKOFF_STEPS == 12
        assert settings.option_chain.JITTER_MS == 250
        assert settings.option_chain.CLOSED_MS == 60000
        assert settings.option_chain.EXPIRY is None

        assert settings.gex_levels.OI_WEIGHT == 2
        assert settings.advdec.BIN == 5
        assert settings.advdec.SINCE_MIN == 1440

        assert settings.db.MONGODB_DB == "fno_ingest"

    @mock.patch.dict(os.environ, {
        "OC_LIVE_MS": "5000",
        "OC_EXPIRY": "2024-06-13",
        "OC_SYMBOL": " banknifty ",
        "GEX_ENABLED": "false",
    })
    def test_feed_env_prefixes(self):
        """Each feed reads only its own prefix."""
        settings = Settings(_env_file=None)

        assert settings.option_chain.LIVE_MS == 5000
        assert settings.option_chain.EXPIRY == "2024-06-13"
        assert settings.option_chain.SYMBOL == "BANKNIFTY"
        assert settings.gex_levels.ENABLED is False
        assert settings.gex_levels.LIVE_MS == 7000
        assert settings.advdec.EXPIRY is None

    def test_dotenv_reaches_nested_settings(self, tmp_path, monkeypatch):
        """Prefixed values in .env are read by the nested settings groups."""
        (tmp_path / ".env").write_text(
            "OC_EXPIRY=2024-06-27\nGEX_ENABLED=false\nDHAN_CLIENT_ID=1100\nAPP_NAME=from-dotenv\n"
        )
        monkeypatch.chdir(tmp_path)
        for name in ("OC_EXPIRY", "GEX_ENABLED", "DHAN_CLIENT_ID", "APP_NAME"):
            monkeypatch.delenv(name, raising=False)

        settings = Settings()

        assert settings.APP_NAME == "from-dotenv"
        assert settings.option_chain.EXPIRY == "2024-06-27"
        assert settings.gex_levels.ENABLED is False
        assert settings.dhan.CLIENT_ID == "1100"

    @mock.patch.dict(os.environ, {"MARKET_HOLIDAYS": '["2024-08-15", "2024-10-02"]'})
    def test_holidays_from_env(self):
        settings = MarketSettings()

        assert settings.HOLIDAYS == [date(2024, 8, 15), date(2024, 10, 2)]

    def test_blank_expiry_is_none(self):
        assert OptionChainFeedSettings(EXPIRY="  ").EXPIRY is None

    def test_closed_sleep_is_clamped(self):
        assert OptionChainFeedSettings(CLOSED_MS=1000).CLOSED_MS == 10000

    def test_advdec_minimums(self):
        settings = AdvDecFeedSettings(BIN=0, SINCE_MIN=-5)

        assert settings.BIN == 1
        assert settings.SINCE_MIN == 1

    def test_invalid_cadence(self):
        with pytest.raises(ValidationError):
            OptionChainFeedSettings(LIVE_MS=0)

        with pytest.raises(ValidationError):
            OptionChainFeedSettings(JITTER_MS=-1)

    def test_invalid_session_window(self):
        with pytest.raises(ValidationError):
            MarketSettings(SESSION_START_MIN=600, SESSION_END_MIN=500)

        with pytest.raises(ValidationError):
            MarketSettings(SESSION_END_MIN=1440)

    def test_negative_gap_rejected(self):
        with pytest.raises(ValidationError):
            PacingSettings(DHAN_MIN_GAP_MS=-1)

    def test_env_validation(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, ENV="qa")

        assert Settings(_env_file=None, ENV="Production").ENV == "production"
        assert Settings(_env_file=None, LOG_LEVEL="debug").LOG_LEVEL == "DEBUG"

    def test_mongodb_uri_assembled(self):
        settings = DatabaseSettings(MONGODB_USER="ingest", MONGODB_PASSWORD="pw", MONGODB_SERVER="db.local")

        assert settings.MONGODB_URI == "mongodb://ingest:pw@db.local:27017/fno_ingest?authSource=admin"

    def test_mongodb_uri_explicit(self):
        settings = DatabaseSettings(MONGODB_URI="mongodb://elsewhere:27018/x")

        assert settings.MONGODB_URI == "mongodb://elsewhere:27018/x"


class TestProviderSettings:
    """Test upstream API settings."""

    def test_dhan_auth_headers(self):
        settings = DhanSettings(ACCESS_TOKEN="tok", CLIENT_ID="1000")

        headers = settings.get_auth_headers()

        assert headers["access-token"] == "tok"
        assert headers["client-id"] == "1000"
        assert settings.has_credentials is True

    def test_dhan_without_credentials(self):
        assert DhanSettings(ACCESS_TOKEN="", CLIENT_ID="").has_credentials is False

    def test_mask_sensitive_data(self):
        masked = DhanSettings(ACCESS_TOKEN="tok", CLIENT_ID="1000").mask_sensitive_data()

        assert masked["ACCESS_TOKEN"] == "********"
        assert masked["CLIENT_ID"] == "1000"

    def test_attempts_validation(self):
        with pytest.raises(ValidationError):
            DhanSettings(OPTION_CHAIN_ATTEMPTS=0)

        with pytest.raises(ValidationError):
            AnalyticsApiSettings(FETCH_ATTEMPTS=0)

    def test_analytics_defaults(self):
        settings = AnalyticsApiSettings()

        assert settings.API_BASE_URL == "https://api.upholictech.com/api/"
        assert settings.REQUEST_TIMEOUT == 10.0
        assert settings.RETRY_BASE_MS == 1000
        assert settings.RETRY_CAP_MS == 15000
