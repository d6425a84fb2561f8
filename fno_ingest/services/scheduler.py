"""
Ingestion scheduler: wires feeds to poll loops and runs them as asyncio tasks.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from fno_ingest.core.config import Settings
from fno_ingest.core.database import MongoDB
from fno_ingest.db.repositories.snapshot_repository import SnapshotRepository
from fno_ingest.providers.analytics.client import AnalyticsClient
from fno_ingest.providers.base.pacing import PacingGate
from fno_ingest.providers.base.rest_client import RestClient
from fno_ingest.providers.dhan.option_chain_client import DhanOptionChainClient
from fno_ingest.services.feeds.advdec_feed import AdvDecFeed
from fno_ingest.services.feeds.base import Feed, PollResult
from fno_ingest.services.feeds.gex_levels_feed import GexLevelsFeed
from fno_ingest.services.feeds.option_chain_feed import OptionChainFeed
from fno_ingest.services.market.market_clock import MarketClock
from fno_ingest.services.poll_loop import LoopConfig, MinuteAlignedLoop, PollLoop

logger = logging.getLogger(__name__)


class IngestionScheduler:
    """
    Owns the poll loops and their shared stop signal.
    """

    def __init__(
        self,
        loops: List[PollLoop],
        gates: Optional[List[PacingGate]] = None,
        enabled: Optional[Set[str]] = None,
        clock: Optional[MarketClock] = None
    ):
        """
        Initialize the scheduler.

        Args:
            loops: One loop per feed, keyed by the feed id
            gates: Pacing gates shared by the feeds, reported in status
            enabled: Feed ids started by ``start``; all loops when omitted
            clock: Session clock whose window is reported in status
        """
        self.loops: Dict[str, PollLoop] = {loop.feed_id: loop for loop in loops}
        self.gates = gates or []
        self.enabled: Set[str] = set(self.loops) if enabled is None else set(enabled)
        self.clock = clock
        self._stop_event: Optional[asyncio.Event] = None
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks.values())

    def get_loop(self, feed_id: str) -> PollLoop:
        """
        Look up a loop by feed id, or by feed kind when only one matches.

        Raises:
            KeyError: If no (or more than one) loop matches
        """
        if feed_id in self.loops:
            return self.loops[feed_id]
        matches = [loop for fid, loop in self.loops.items() if fid.split(":", 1)[0] == feed_id]
        if len(matches) != 1:
            raise KeyError(feed_id)
        return matches[0]

    async def start(self) -> None:
        """Spawn one task per loop."""
        if self.running:
            logger.warning("Scheduler already running")
            return
        self._stop_event = asyncio.Event()
        for feed_id, loop in self.loops.items():
            if feed_id not in self.enabled:
                logger.info(f"[{feed_id}] disabled; available on demand only")
                continue
            self._tasks[feed_id] = asyncio.create_task(loop.run(self._stop_event), name=f"poll:{feed_id}")
        logger.info(f"Scheduler started {len(self._tasks)} feed(s): {', '.join(self._tasks)}")

    async def stop(self, timeout: float = 30.0) -> None:
        """
        Signal every loop to stop and wait for in-flight ticks to finish.

        Loops still running after ``timeout`` seconds are cancelled.
        """
        if self._stop_event is not None:
            self._stop_event.set()
        tasks = [t for t in self._tasks.values() if not t.done()]
        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                logger.warning(f"Cancelling {task.get_name()} after {timeout}s shutdown timeout")
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    logger.error(f"{task.get_name()} ended with an error: {task.exception()}")
        self._tasks.clear()
        logger.info("Scheduler stopped")

    async def run_once(
        self,
        feed_id: str,
        session_key: Optional[str] = None,
        feed: Optional[Feed] = None
    ) -> PollResult:
        """One immediate poll-and-persist cycle; errors propagate to the caller."""
        return await self.get_loop(feed_id).run_once(session_key=session_key, feed=feed)

    def get_status(self) -> Dict[str, Any]:
        status = {
            "running": self.running,
            "feeds": {
                feed_id: {**loop.get_status(), "enabled": feed_id in self.enabled}
                for feed_id, loop in self.loops.items()
            },
            "gates": [gate.get_stats() for gate in self.gates],
        }
        if self.clock is not None:
            status["market"] = {**self.clock.get_session_window(), "is_open": self.clock.is_open()}
        return status


@dataclass
class IngestionRuntime:
    """Everything ``build_scheduler`` creates, so shutdown can release it."""
    scheduler: IngestionScheduler
    clock: MarketClock
    repository: SnapshotRepository
    clients: List[RestClient] = field(default_factory=list)

    async def close(self) -> None:
        for client in self.clients:
            await client.close()


def build_clock(settings: Settings) -> MarketClock:
    return MarketClock(
        timezone_name=settings.market.TIMEZONE,
        session_start_min=settings.market.SESSION_START_MIN,
        session_end_min=settings.market.SESSION_END_MIN,
        holidays=settings.market.HOLIDAYS,
    )


def build_scheduler(settings: Settings, mongo: MongoDB) -> IngestionRuntime:
    """
    Wire clock, gates, clients, repository, feeds and loops from settings.

    Every configured feed gets a loop, enabled or not, so on-demand triggers
    work for all of them; only enabled loops are started by the scheduler.
    """
    clock = build_clock(settings)
    repository = SnapshotRepository(mongo)

    dhan_gate = PacingGate(settings.pacing.DHAN_MIN_GAP_MS, settings.pacing.DHAN_QUEUE_GAPS_MS, name="dhan")
    analytics_gate = PacingGate(
        settings.pacing.ANALYTICS_MIN_GAP_MS, settings.pacing.ANALYTICS_QUEUE_GAPS_MS, name="analytics"
    )
    dhan_client = DhanOptionChainClient(settings.dhan, dhan_gate)
    analytics_client = AnalyticsClient(settings.analytics, analytics_gate)

    oc_feed = OptionChainFeed(dhan_client, clock, repository, settings.option_chain)
    gex_feed = GexLevelsFeed(analytics_client, clock, repository, settings.gex_levels)
    advdec_feed = AdvDecFeed(analytics_client, clock, repository, settings.advdec)

    loops = [
        PollLoop(oc_feed, clock, LoopConfig.from_settings(settings.option_chain)),
        MinuteAlignedLoop(gex_feed, clock, LoopConfig.from_settings(settings.gex_levels)),
        MinuteAlignedLoop(advdec_feed, clock, LoopConfig.from_settings(settings.advdec)),
    ]
    enabled = {
        feed.feed_id
        for feed, feed_settings in (
            (oc_feed, settings.option_chain),
            (gex_feed, settings.gex_levels),
            (advdec_feed, settings.advdec),
        )
        if feed_settings.ENABLED
    }

    logger.info(f"Dhan option chain client: {settings.dhan.mask_sensitive_data()}")

    scheduler = IngestionScheduler(loops, gates=[dhan_gate, analytics_gate], enabled=enabled, clock=clock)
    return IngestionRuntime(
        scheduler=scheduler,
        clock=clock,
        repository=repository,
        clients=[dhan_client, analytics_client],
    )
