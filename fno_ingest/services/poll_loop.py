"""
Per-feed polling loop.

Each PollLoop owns one feed's cadence: market-hours gating, exponential
backoff with jitter, day-rollover re-resolution of the session key (e.g. the
nearest expiry) and cooperative shutdown. The mutable per-feed bookkeeping
lives in an explicit FeedState that ``tick`` takes and returns, so a tick can
be exercised without any timers.
"""

import asyncio
import logging
import random
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from fno_ingest.core.config import FeedSettings
from fno_ingest.core.error_handling import ErrorTracker, categorize_provider_error
from fno_ingest.providers.base.provider import (
    AuthenticationError,
    ResolutionError,
    RetryableUpstreamError,
)
from fno_ingest.providers.dhan.transformers import is_valid_expiry
from fno_ingest.services.feeds.base import Feed, PollResult
from fno_ingest.services.market.market_clock import MarketClock

# Set up logging
logger = logging.getLogger(__name__)


class TickOutcome(str, Enum):
    SKIPPED_IN_FLIGHT = "skipped_in_flight"
    SKIPPED_CLOSED = "skipped_closed"
    NO_SESSION_KEY = "no_session_key"
    SAVED = "saved"
    DUPLICATE = "duplicate"
    RETRYABLE_FAILURE = "retryable_failure"
    FATAL_FAILURE = "fatal_failure"


@dataclass
class FeedState:
    """Bookkeeping for one feed, carried from tick to tick."""
    feed_id: str
    cadence_ms: int
    backoff_steps: int = 0
    in_flight: bool = False
    session_key: Optional[str] = None
    last_resolved_day: Optional[str] = None
    ticks: int = 0
    last_outcome: Optional[str] = None
    last_tick_at: Optional[datetime] = None
    last_error: Optional[str] = None


@dataclass(frozen=True)
class LoopConfig:
    base_interval_ms: int = 7000
    min_interval_ms: int = 3100
    step_ms: int = 1000
    max_backoff_steps: int = 12
    jitter_ms: int = 250
    closed_sleep_ms: int = 60_000
    market_hours_only: bool = True
    start_offset_ms: int = 1600
    resolve_initial_wait_ms: int = 15_000
    resolve_max_wait_ms: int = 300_000
    session_key_override: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: FeedSettings) -> "LoopConfig":
        return cls(
            base_interval_ms=settings.LIVE_MS,
            min_interval_ms=settings.MIN_INTERVAL_MS,
            step_ms=settings.STEP_MS,
            max_backoff_steps=settings.MAX_BACKOFF_STEPS,
            jitter_ms=settings.JITTER_MS,
            closed_sleep_ms=settings.CLOSED_MS,
            market_hours_only=settings.MARKET_HOURS_ONLY,
            start_offset_ms=settings.START_OFFSET_MS,
            resolve_initial_wait_ms=settings.RESOLVE_INITIAL_WAIT_MS,
            resolve_max_wait_ms=settings.RESOLVE_MAX_WAIT_MS,
            session_key_override=settings.EXPIRY,
        )


@dataclass
class TickResult:
    state: FeedState
    outcome: TickOutcome
    delay_ms: int
    result: Optional[PollResult] = None


async def wait_or_stop(stop_event: asyncio.Event, delay_ms: int) -> bool:
    """
    Sleep ``delay_ms`` unless ``stop_event`` fires first.

    Returns:
        True if the stop event is set
    """
    if stop_event.is_set():
        return True
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=max(0, delay_ms) / 1000.0)
        return True
    except asyncio.TimeoutError:
        return False


class PollLoop:
    """
    Cadence, backoff and session gating for one feed.
    """

    def __init__(
        self,
        feed: Feed,
        clock: MarketClock,
        config: LoopConfig,
        rng: Optional[random.Random] = None
    ):
        """
        Initialize a poll loop.

        Args:
            feed: Feed to poll
            clock: Session clock used for gating and day rollover
            config: Cadence and backoff configuration
            rng: Random source for jitter
        """
        self.feed = feed
        self.clock = clock
        self.config = config
        self._rng = rng or random.Random()
        self.state = FeedState(
            feed_id=feed.feed_id,
            cadence_ms=config.base_interval_ms,
            session_key=config.session_key_override,
        )

    @property
    def feed_id(self) -> str:
        return self.feed.feed_id

    def next_delay_ms(self, state: FeedState, is_open: bool) -> int:
        """
        Delay before the next tick.

        Open: ``max(min_interval, base + steps * step) + jitter``.
        Closed: the fixed closed-market sleep, independent of backoff.
        """
        if not is_open:
            return self.config.closed_sleep_ms
        interval = max(
            self.config.min_interval_ms,
            self.config.base_interval_ms + state.backoff_steps * self.config.step_ms,
        )
        jitter = self._rng.randint(0, self.config.jitter_ms) if self.config.jitter_ms > 0 else 0
        return interval + jitter

    def initial_delay_ms(self) -> int:
        return self.config.start_offset_ms

    def _is_gated_open(self, now: Optional[datetime] = None) -> bool:
        return not self.config.market_hours_only or self.clock.is_open(now)

    async def _refresh_session_key(self, state: FeedState, now: datetime) -> None:
        if self.config.session_key_override:
            state.session_key = self.config.session_key_override
            return
        if not self.feed.requires_session_key:
            return

        day = self.clock.trading_day(now)
        if day == state.last_resolved_day:
            return

        # recorded before resolving so a failure is not retried every tick
        state.last_resolved_day = day
        try:
            key = await self.feed.resolve_session_key()
        except Exception as e:
            logger.warning(f"[{self.feed_id}] session key re-resolution for {day} failed: {e}")
            ErrorTracker.track_error(e, categorize_provider_error(e), component=self.feed_id)
            return

        if not key:
            logger.warning(f"[{self.feed_id}] no session key available for {day}; keeping {state.session_key}")
            return
        if key != state.session_key:
            logger.info(f"[{self.feed_id}] session key {state.session_key} -> {key} for {day}")
            state.session_key = key

    async def tick(self, state: FeedState) -> TickResult:
        """
        Run one tick against ``state``.

        Never raises for upstream or storage failures; those are logged,
        counted and reflected in the outcome and ``backoff_steps``.

        Args:
            state: The feed's current state

        Returns:
            The updated state, what happened and the delay before the next tick
        """
        if state.in_flight:
            return TickResult(state, TickOutcome.SKIPPED_IN_FLIGHT, self.next_delay_ms(state, True))

        now = self.clock.current_time()
        if not self._is_gated_open(now):
            state.last_outcome = TickOutcome.SKIPPED_CLOSED.value
            return TickResult(state, TickOutcome.SKIPPED_CLOSED, self.next_delay_ms(state, False))

        state.in_flight = True
        outcome = TickOutcome.FATAL_FAILURE
        result: Optional[PollResult] = None
        try:
            await self._refresh_session_key(state, now)
            if self.feed.requires_session_key and not state.session_key:
                outcome = TickOutcome.NO_SESSION_KEY
                logger.warning(f"[{self.feed_id}] no session key resolved yet; skipping tick")
            else:
                result = await self.feed.poll(state.session_key, now)
                state.backoff_steps = max(0, state.backoff_steps - 1)
                outcome = TickOutcome.SAVED if result.saved else TickOutcome.DUPLICATE
                state.last_error = None
        except RetryableUpstreamError as e:
            state.backoff_steps = min(self.config.max_backoff_steps, state.backoff_steps + 1)
            state.last_error = str(e)
            outcome = TickOutcome.RETRYABLE_FAILURE
            logger.warning(f"[{self.feed_id}] transient upstream failure, backoff steps={state.backoff_steps}: {e}")
            ErrorTracker.track_error(e, categorize_provider_error(e), component=self.feed_id)
        except AuthenticationError as e:
            state.last_error = str(e)
            logger.error(
                f"[{self.feed_id}] upstream rejected credentials; every tick will fail until they are fixed: {e}"
            )
            ErrorTracker.track_error(e, categorize_provider_error(e), component=self.feed_id)
        except Exception as e:
            state.last_error = str(e)
            logger.exception(f"[{self.feed_id}] tick failed: {e}")
            ErrorTracker.track_error(e, categorize_provider_error(e), component=self.feed_id)
        finally:
            state.in_flight = False
            state.ticks += 1
            state.last_tick_at = now
            state.last_outcome = outcome.value

        return TickResult(state, outcome, self.next_delay_ms(state, self._is_gated_open()), result)

    async def resolve_initial(self, stop_event: asyncio.Event) -> bool:
        """
        Resolve the session key before the first tick, retrying without limit.

        The wait between attempts starts at ``resolve_initial_wait_ms`` and
        doubles up to ``resolve_max_wait_ms``.

        Returns:
            False if the stop event fired before a key was found
        """
        if self.config.session_key_override or not self.feed.requires_session_key:
            return True

        wait_ms = self.config.resolve_initial_wait_ms
        while not stop_event.is_set():
            now = self.clock.current_time()
            key: Optional[str] = None
            try:
                key = await self.feed.resolve_session_key()
            except Exception as e:
                logger.warning(f"[{self.feed_id}] session key resolution failed: {e}")
                ErrorTracker.track_error(e, categorize_provider_error(e), component=self.feed_id)

            if key:
                self.state.session_key = key
                self.state.last_resolved_day = self.clock.trading_day(now)
                logger.info(f"[{self.feed_id}] using session key {key}")
                return True

            logger.warning(f"[{self.feed_id}] no session key yet, retrying in {wait_ms / 1000:.0f}s")
            if await wait_or_stop(stop_event, wait_ms):
                return False
            wait_ms = min(wait_ms * 2, self.config.resolve_max_wait_ms)
        return False

    async def run(self, stop_event: asyncio.Event) -> None:
        """
        Tick until ``stop_event`` is set.

        Setting the event wakes the inter-tick sleep at once; a tick that is
        already running is allowed to finish its writes.
        """
        logger.info(f"[{self.feed_id}] poll loop starting")
        if await wait_or_stop(stop_event, self.initial_delay_ms()):
            return
        if not await self.resolve_initial(stop_event):
            logger.info(f"[{self.feed_id}] stopped before a session key was resolved")
            return

        while not stop_event.is_set():
            tick_result = await self.tick(self.state)
            self.state = tick_result.state
            if await wait_or_stop(stop_event, tick_result.delay_ms):
                break
        logger.info(f"[{self.feed_id}] poll loop stopped")

    async def run_once(self, session_key: Optional[str] = None, feed: Optional[Feed] = None) -> PollResult:
        """
        One immediate poll-and-persist cycle for on-demand triggers.

        Cadence, backoff and market-hours gating are bypassed and the loop
        state is left untouched. Failures propagate to the caller.

        The loop's override and today's resolved key only apply to feeds with
        the loop's feed id; a feed for another symbol resolves its own.

        Args:
            session_key: Explicit session key (``YYYY-MM-DD``); resolved when omitted
            feed: Re-parameterised feed to poll instead of the loop's own

        Returns:
            The stored record and whether it was a fresh write

        Raises:
            ResolutionError: If no valid session key can be determined
            ProviderError: Upstream failures
        """
        feed = feed or self.feed
        now = self.clock.current_time()

        if session_key is not None and not is_valid_expiry(session_key):
            raise ResolutionError(f"No valid expiry resolved for {feed.feed_id}: {session_key!r}")

        key = session_key
        if not key and feed.feed_id == self.feed_id:
            key = self.config.session_key_override
            if not key and self.state.session_key and self.state.last_resolved_day == self.clock.trading_day(now):
                key = self.state.session_key
        if not key and feed.requires_session_key:
            key = await feed.resolve_session_key()
            if not key:
                raise ResolutionError(f"No session key could be resolved for {feed.feed_id}")

        return await feed.poll(key, now)

    def get_status(self) -> Dict[str, Any]:
        status = asdict(self.state)
        if status["last_tick_at"] is not None:
            status["last_tick_at"] = status["last_tick_at"].isoformat()
        status["market_hours_only"] = self.config.market_hours_only
        status["session_key_override"] = self.config.session_key_override
        return status


class MinuteAlignedLoop(PollLoop):
    """
    A PollLoop that fires once per minute, on the minute boundary.

    Used for the cron-style snapshot jobs whose records are keyed by minute
    bucket; backoff is still tracked but never stretches the cadence.
    """

    def next_delay_ms(self, state: FeedState, is_open: bool) -> int:
        return self.clock.ms_until_next_minute_boundary(self.clock.current_time())

    def initial_delay_ms(self) -> int:
        return self.clock.ms_until_next_minute_boundary(self.clock.current_time())
