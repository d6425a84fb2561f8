"""
On-demand snapshot endpoints.

Each endpoint runs exactly one poll-and-persist cycle for a feed, outside the
feed's cadence and backoff, and reports whether a new record was written.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from fno_ingest.core.error_handling import AppError, ErrorTracker, convert_provider_error
from fno_ingest.providers.dhan.transformers import EXPIRY_PATTERN
from fno_ingest.services.feeds.base import Feed
from fno_ingest.services.poll_loop import PollLoop
from fno_ingest.services.scheduler import IngestionScheduler

# Set up logging
logger = logging.getLogger(__name__)

# Create router
router = APIRouter(tags=["snapshots"])


def get_scheduler(request: Request) -> IngestionScheduler:
    """Dependency to get the scheduler created at startup."""
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"ok": False, "message": "Ingestion scheduler is not running"}
        )
    return scheduler


def _get_loop(scheduler: IngestionScheduler, feed_kind: str) -> PollLoop:
    try:
        return scheduler.get_loop(feed_kind)
    except KeyError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"ok": False, "message": f"Feed {feed_kind} is not configured"}
        )


async def _trigger(
    scheduler: IngestionScheduler,
    loop: PollLoop,
    session_key: Optional[str],
    feed: Feed
) -> Dict[str, Any]:
    try:
        result = await scheduler.run_once(loop.feed_id, session_key=session_key, feed=feed)
    except Exception as e:
        app_error: AppError = convert_provider_error(e, component=feed.feed_id)
        app_error.log(logger)
        ErrorTracker.track_error(app_error)
        raise app_error.to_http_exception() from e
    return result.to_response()


#################################################
# Trigger Endpoints
#################################################

@router.get("/gex/levels/calc")
async def calc_gex_levels(
    symbol: Optional[str] = Query(None, description="Underlying symbol, defaults to the configured one"),
    expiry: Optional[str] = Query(
        None, pattern=EXPIRY_PATTERN.pattern, description="Expiry (YYYY-MM-DD), resolved from the GEX cache when omitted"
    ),
    scheduler: IngestionScheduler = Depends(get_scheduler)
) -> Dict[str, Any]:
    """
    Compute R1/R2/S1/S2/Flip from the current GEX cache and store them.

    Returns:
        ``{ok, saved, duplicate, record}``
    """
    loop = _get_loop(scheduler, "gex_levels")
    return await _trigger(scheduler, loop, expiry, loop.feed.with_params(symbol=symbol))


@router.get("/advdec/save")
async def save_advdec(
    bin_size: Optional[int] = Query(None, alias="bin", description="Chart bin size in minutes"),
    since_min: Optional[int] = Query(None, alias="sinceMin", description="Lookback window in minutes"),
    expiry: Optional[str] = Query(
        None, pattern=EXPIRY_PATTERN.pattern, description="Optional expiry filter"
    ),
    symbol: Optional[str] = Query(None, description="Symbol label stored with the snapshot"),
    scheduler: IngestionScheduler = Depends(get_scheduler)
) -> Dict[str, Any]:
    """
    Fetch the advance/decline breadth series and store one snapshot.

    Returns:
        ``{ok, saved, duplicate, record}``
    """
    loop = _get_loop(scheduler, "advdec")
    feed = loop.feed.with_params(bin_size=bin_size, since_min=since_min, symbol=symbol)
    return await _trigger(scheduler, loop, expiry, feed)


@router.get("/option-chain/snapshot")
async def snapshot_option_chain(
    expiry: Optional[str] = Query(
        None, pattern=EXPIRY_PATTERN.pattern, description="Expiry (YYYY-MM-DD), nearest expiry when omitted"
    ),
    scheduler: IngestionScheduler = Depends(get_scheduler)
) -> Dict[str, Any]:
    """
    Fetch the option chain once and store it.

    Returns:
        ``{ok, saved, duplicate, record}``
    """
    loop = _get_loop(scheduler, "option_chain")
    return await _trigger(scheduler, loop, expiry, loop.feed)
