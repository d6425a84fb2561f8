"""
Common interface of a polled data feed.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from fno_ingest.db.repositories.snapshot_repository import CollectionSpec, SnapshotRepository
from fno_ingest.schemas.market_data import NO_SESSION_KEY, SaveResult, SnapshotRecord
from fno_ingest.services.market.market_clock import MarketClock

logger = logging.getLogger(__name__)


@dataclass
class PollResult:
    """Outcome of one poll-and-persist cycle."""
    record: SnapshotRecord
    saved: bool
    duplicate: bool
    writes: List[SaveResult] = field(default_factory=list)

    @classmethod
    def from_writes(cls, record: SnapshotRecord, writes: List[SaveResult]) -> "PollResult":
        # the first write is the feed's primary record
        primary = writes[0]
        return cls(record=record, saved=primary.saved, duplicate=primary.duplicate, writes=writes)

    def to_response(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "saved": self.saved,
            "duplicate": self.duplicate,
            "record": self.record.model_dump(mode="json"),
            "writes": [w.model_dump(mode="json") for w in self.writes],
        }


class Feed(ABC):
    """
    One independently scheduled upstream data source.

    Subclasses fetch from upstream in ``poll`` and persist through the
    shared repository; scheduling, backoff and session gating live in
    PollLoop.
    """

    requires_session_key = True

    def __init__(self, feed_id: str, clock: MarketClock, repository: SnapshotRepository):
        self.feed_id = feed_id
        self.clock = clock
        self.repository = repository

    @abstractmethod
    async def resolve_session_key(self) -> Optional[str]:
        """Determine today's session key (e.g. nearest expiry); None if unavailable."""

    @abstractmethod
    async def poll(self, session_key: Optional[str], now: datetime) -> PollResult:
        """Fetch one snapshot and persist it."""

    def build_record(
        self,
        now: datetime,
        session_key: Optional[str],
        payload: Dict[str, Any],
        trading_day: Optional[str] = None,
        sub_bucket_size: Optional[int] = None
    ) -> SnapshotRecord:
        return SnapshotRecord(
            feed_id=self.feed_id,
            session_key=session_key or NO_SESSION_KEY,
            trading_day=trading_day or self.clock.trading_day(now),
            minute_bucket=self.clock.minute_bucket(self.clock.epoch_ms(now)),
            sub_bucket_size=sub_bucket_size,
            payload=payload,
            captured_at_utc=now,
            captured_at_local=self.clock.format_local(now),
        )

    async def persist(self, spec: CollectionSpec, record: SnapshotRecord) -> SaveResult:
        # pymongo is synchronous; keep it off the event loop
        result = await asyncio.to_thread(self.repository.save, spec, record)
        if result.saved:
            logger.debug(f"[{self.feed_id}] stored {spec.name} {result.key}")
        return result
