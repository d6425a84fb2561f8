"""
Option chain feed: nearest-expiry chain for one underlying.

Each poll upserts the latest chain per (feed, expiry) and appends one tick
per minute bucket to the tick history.
"""

import logging
from datetime import datetime
from typing import Optional

from fno_ingest.core.config import OptionChainFeedSettings
from fno_ingest.db.repositories.snapshot_repository import (
    OPTION_CHAIN_LATEST,
    OPTION_CHAIN_TICKS,
    SnapshotRepository,
)
from fno_ingest.providers.base.provider import ProviderError
from fno_ingest.providers.dhan.option_chain_client import DhanOptionChainClient
from fno_ingest.providers.dhan.transformers import chain_summary, pick_nearest_expiry
from fno_ingest.services.feeds.base import Feed, PollResult
from fno_ingest.services.market.market_clock import MarketClock

logger = logging.getLogger(__name__)


class OptionChainFeed(Feed):
    """Polls the Dhan option chain for the configured underlying."""

    def __init__(
        self,
        client: DhanOptionChainClient,
        clock: MarketClock,
        repository: SnapshotRepository,
        settings: OptionChainFeedSettings
    ):
        super().__init__(f"option_chain:{settings.SYMBOL}", clock, repository)
        self.client = client
        self.settings = settings

    async def resolve_session_key(self) -> Optional[str]:
        """
        Nearest expiry on or after today, from the upstream expiry list.

        Falls back to ``OC_FALLBACK_EXPIRY`` when the list cannot be fetched
        or is empty.
        """
        today = self.clock.trading_day()
        try:
            expiries = await self.client.get_expiry_list(
                self.settings.UNDERLYING_SECURITY_ID,
                self.settings.UNDERLYING_SEGMENT,
            )
        except ProviderError as e:
            if not self.settings.FALLBACK_EXPIRY:
                raise
            logger.warning(f"[{self.feed_id}] expiry list failed, using fallback {self.settings.FALLBACK_EXPIRY}: {e}")
            return self.settings.FALLBACK_EXPIRY

        expiry = pick_nearest_expiry(expiries, today)
        if expiry is None:
            logger.warning(f"[{self.feed_id}] expiry list is empty")
            return self.settings.FALLBACK_EXPIRY
        return expiry

    async def poll(self, session_key: Optional[str], now: datetime) -> PollResult:
        snapshot = await self.client.get_option_chain(
            self.settings.UNDERLYING_SECURITY_ID,
            self.settings.UNDERLYING_SEGMENT,
            session_key,
        )

        payload = {
            "symbol": self.settings.SYMBOL,
            "underlying_security_id": self.settings.UNDERLYING_SECURITY_ID,
            "underlying_segment": self.settings.UNDERLYING_SEGMENT,
            "expiry": session_key,
            "last_price": snapshot.last_price,
            "strikes": [row.model_dump(mode="json", exclude_none=True) for row in snapshot.rows],
        }
        record = self.build_record(now, session_key, payload)

        latest = await self.persist(OPTION_CHAIN_LATEST, record)
        tick = await self.persist(OPTION_CHAIN_TICKS, record)

        if self.settings.VERBOSE:
            summary = chain_summary(snapshot, self.settings.WINDOW_STEPS, self.settings.PCR_STEPS)
            if summary is not None:
                logger.info(
                    f"[{self.feed_id}] LTP:{summary.last_price} ATM:{summary.atm:g} "
                    f"PCR(±win):{summary.pcr_window:.2f} | PCR(near):{summary.pcr_near:.2f} "
                    f"strikes:{len(snapshot.rows)}"
                )

        # saved/duplicate reflect the minute-bucketed tick write
        return PollResult.from_writes(record, [tick, latest])
