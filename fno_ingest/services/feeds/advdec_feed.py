"""
Advance/decline breadth feed: one snapshot per minute bucket and chart bin size.
"""

import logging
from datetime import datetime
from typing import Optional

from fno_ingest.core.config import AdvDecFeedSettings
from fno_ingest.db.repositories.snapshot_repository import ADVDEC_SNAPSHOTS, SnapshotRepository
from fno_ingest.providers.analytics.client import AnalyticsClient
from fno_ingest.services.feeds.base import Feed, PollResult
from fno_ingest.services.market.market_clock import MarketClock

logger = logging.getLogger(__name__)


class AdvDecFeed(Feed):
    """Stores the breadth series; the optional expiry filter is the session key."""

    requires_session_key = False

    def __init__(
        self,
        client: AnalyticsClient,
        clock: MarketClock,
        repository: SnapshotRepository,
        settings: AdvDecFeedSettings
    ):
        super().__init__(f"advdec:{settings.SYMBOL}", clock, repository)
        self.client = client
        self.settings = settings

    def with_params(
        self,
        bin_size: Optional[int] = None,
        since_min: Optional[int] = None,
        symbol: Optional[str] = None
    ) -> "AdvDecFeed":
        """Copy of this feed with other request parameters (on-demand triggers)."""
        update = {}
        if bin_size is not None:
            update["BIN"] = max(1, bin_size)
        if since_min is not None:
            update["SINCE_MIN"] = max(1, since_min)
        if symbol and symbol.strip():
            update["SYMBOL"] = symbol.strip().upper()
        if not update:
            return self
        settings = self.settings.model_copy(update=update)
        return AdvDecFeed(self.client, self.clock, self.repository, settings)

    async def resolve_session_key(self) -> Optional[str]:
        return self.settings.EXPIRY

    async def poll(self, session_key: Optional[str], now: datetime) -> PollResult:
        response, points = await self.client.get_advdec(
            self.settings.BIN,
            self.settings.SINCE_MIN,
            session_key,
        )
        record = self.build_record(now, session_key, {}, sub_bucket_size=self.settings.BIN)
        record.payload = {
            "symbol": self.settings.SYMBOL,
            "bin": self.settings.BIN,
            "since_min": self.settings.SINCE_MIN,
            "expiry": session_key,
            "current": response.current.model_dump(),
            "chart_data": [p.model_dump() for p in points],
            "client_key": (
                f"ADVDEC|{self.settings.SYMBOL}|{record.session_key}|{record.trading_day}"
                f"|{self.settings.BIN}|{record.minute_bucket}"
            ),
        }

        result = await self.persist(ADVDEC_SNAPSHOTS, record)
        if result.saved:
            current = response.current
            logger.info(
                f"[{self.feed_id}] adv={current.advances} dec={current.declines} "
                f"total={current.total} mb={record.minute_bucket}"
            )
        return PollResult.from_writes(record, [result])
