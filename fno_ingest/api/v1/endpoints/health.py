"""
Health and feed status endpoints.
"""

import asyncio
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from fno_ingest.api.v1.endpoints.snapshots import get_scheduler
from fno_ingest.core.error_handling import ErrorTracker
from fno_ingest.services.scheduler import IngestionScheduler

# Set up logging
logger = logging.getLogger(__name__)

# Create router
router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(request: Request):
    """Ping MongoDB; 503 when the store is unreachable."""
    mongo = getattr(request.app.state, "mongo", None)
    is_healthy = False
    if mongo is not None:
        is_healthy = await asyncio.to_thread(mongo.check_health)

    health_status = {
        "status": "ok" if is_healthy else "critical",
        "components": {"mongodb": {"status": "healthy" if is_healthy else "unhealthy", "required": True}},
    }
    if not is_healthy:
        return JSONResponse(status_code=503, content=health_status)
    return health_status


@router.get("/feeds/status")
async def feeds_status(scheduler: IngestionScheduler = Depends(get_scheduler)) -> Dict[str, Any]:
    """
    Per-feed loop state, pacing gate counters and error counts.
    """
    status = scheduler.get_status()
    status["errors"] = ErrorTracker.get_error_stats()
    return status
