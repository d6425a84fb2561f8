"""
Client for the analytics API that serves the GEX cache and market breadth.
"""

import logging
from typing import List, Optional, Tuple

from pydantic import ValidationError

from fno_ingest.providers.base.pacing import PacingGate
from fno_ingest.providers.base.provider import MalformedPayloadError
from fno_ingest.providers.base.rest_client import RestClient
from fno_ingest.providers.config.provider_settings import AnalyticsApiSettings
from fno_ingest.schemas.market_data import (
    AdvDecPoint,
    AdvDecResponse,
    ExposureRow,
    GexCacheResponse,
    GexTicksResponse,
    filter_valid,
)

logger = logging.getLogger(__name__)


class AnalyticsClient(RestClient):
    """GEX cache and advance/decline endpoints."""

    GEX_QUEUE = "gex"
    ADVDEC_QUEUE = "advdec"

    def __init__(self, settings: AnalyticsApiSettings, gate: PacingGate):
        super().__init__(
            settings.API_BASE_URL,
            settings,
            gate,
            headers={"Accept": "application/json", "Cache-Control": "no-cache"},
        )
        self.analytics_settings = settings

    @staticmethod
    def _gex_path(symbol: str, resource: str) -> str:
        return f"gex/{symbol.lower()}/{resource}"

    async def get_gex_cache(self, symbol: str, expiry: Optional[str] = None) -> GexCacheResponse:
        """
        Fetch the GEX cache for ``symbol``; without ``expiry`` the server picks the current one.

        Raises:
            MalformedPayloadError: If the body does not look like a cache response
        """
        payload = await self.with_retries(
            "GET",
            self._gex_path(symbol, "cache"),
            self.GEX_QUEUE,
            attempts=self.analytics_settings.FETCH_ATTEMPTS,
            params={"expiry": expiry},
        )
        try:
            return GexCacheResponse.model_validate(payload)
        except ValidationError as e:
            raise MalformedPayloadError(f"Invalid GEX cache response: {e.error_count()} error(s)")

    async def get_gex_ticks_meta(self, symbol: str, expiry: str) -> GexTicksResponse:
        payload = await self.with_retries(
            "GET",
            self._gex_path(symbol, "ticks"),
            self.GEX_QUEUE,
            attempts=self.analytics_settings.FETCH_ATTEMPTS,
            params={"expiry": expiry},
        )
        try:
            return GexTicksResponse.model_validate(payload)
        except ValidationError as e:
            raise MalformedPayloadError(f"Invalid GEX ticks response: {e.error_count()} error(s)")

    async def get_gex_snapshot(
        self,
        symbol: str,
        expiry: str
    ) -> Tuple[GexCacheResponse, List[ExposureRow], Optional[str]]:
        """
        Fetch the exposure rows for one expiry together with the upstream trading day.

        Returns:
            (cache response, valid exposure rows, upstream trading day or None)
        """
        cache = await self.get_gex_cache(symbol, expiry)
        ticks = await self.get_gex_ticks_meta(symbol, expiry)
        rows = filter_valid(ExposureRow, cache.rows, context=f"GEX {symbol} {expiry}")
        return cache, rows, ticks.trading_day_ist

    async def get_advdec(
        self,
        bin_size: int,
        since_min: int,
        expiry: Optional[str] = None
    ) -> Tuple[AdvDecResponse, List[AdvDecPoint]]:
        """
        Fetch the current advance/decline counts and the binned chart series.

        Args:
            bin_size: Chart bin size in minutes
            since_min: Look-back window in minutes
            expiry: Optional expiry filter

        Returns:
            (response, valid chart points)
        """
        payload = await self.with_retries(
            "GET",
            "advdec",
            self.ADVDEC_QUEUE,
            attempts=self.analytics_settings.FETCH_ATTEMPTS,
            params={"bin": bin_size, "sinceMin": since_min, "expiry": expiry},
        )
        try:
            response = AdvDecResponse.model_validate(payload)
        except ValidationError as e:
            raise MalformedPayloadError(f"Invalid advdec response: {e.error_count()} error(s)")
        points = filter_valid(AdvDecPoint, response.chart_data, context="advdec chartData")
        return response, points
