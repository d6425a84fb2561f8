"""
GEX levels feed: minute snapshots of R1/R2/S1/S2/Flip derived from the GEX cache.
"""

import logging
from datetime import datetime
from typing import Optional

from fno_ingest.core.config import GexLevelsFeedSettings
from fno_ingest.db.repositories.snapshot_repository import GEX_LEVELS, SnapshotRepository
from fno_ingest.providers.analytics.client import AnalyticsClient
from fno_ingest.providers.dhan.transformers import is_valid_expiry
from fno_ingest.services.feeds.base import Feed, PollResult
from fno_ingest.services.levels.level_selector import levels_by_name, select_levels
from fno_ingest.services.market.market_clock import MarketClock

logger = logging.getLogger(__name__)


class GexLevelsFeed(Feed):
    """Computes named GEX levels once per minute and appends them."""

    def __init__(
        self,
        client: AnalyticsClient,
        clock: MarketClock,
        repository: SnapshotRepository,
        settings: GexLevelsFeedSettings
    ):
        super().__init__(f"gex_levels:{settings.SYMBOL}", clock, repository)
        self.client = client
        self.settings = settings

    def with_params(self, symbol: Optional[str] = None) -> "GexLevelsFeed":
        """Copy of this feed for another symbol (on-demand triggers)."""
        if not symbol or symbol.strip().upper() == self.settings.SYMBOL:
            return self
        settings = self.settings.model_copy(update={"SYMBOL": symbol.strip().upper()})
        return GexLevelsFeed(self.client, self.clock, self.repository, settings)

    async def resolve_session_key(self) -> Optional[str]:
        """The expiry the GEX cache is currently built for."""
        cache = await self.client.get_gex_cache(self.settings.SYMBOL)
        if not is_valid_expiry(cache.expiry):
            logger.warning(f"[{self.feed_id}] GEX cache reported no valid expiry: {cache.expiry!r}")
            return None
        return cache.expiry

    async def poll(self, session_key: Optional[str], now: datetime) -> PollResult:
        cache, rows, upstream_day = await self.client.get_gex_snapshot(self.settings.SYMBOL, session_key)

        levels = select_levels(rows, self.settings.OI_WEIGHT, self.settings.VOL_WEIGHT)
        trading_day = upstream_day if is_valid_expiry(upstream_day) else self.clock.trading_day(now)
        symbol = (cache.symbol or self.settings.SYMBOL).upper()

        record = self.build_record(now, session_key, {}, trading_day=trading_day)
        record.payload = {
            "symbol": symbol,
            "expiry": session_key,
            "spot": cache.spot,
            "row_count": len(rows),
            "levels": [level.model_dump(mode="json") for level in levels],
            "strikes": {name: level.strike for name, level in levels_by_name(levels).items()},
            "client_key": f"{symbol}|{session_key}|{trading_day}|{record.minute_bucket}",
        }

        result = await self.persist(GEX_LEVELS, record)
        if result.saved:
            logger.info(
                f"[{self.feed_id}] {trading_day} mb={record.minute_bucket} "
                + " ".join(f"{name}={strike:g}" for name, strike in record.payload["strikes"].items())
            )
        return PollResult.from_writes(record, [result])
