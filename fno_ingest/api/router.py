"""
Main API router.
"""

from fastapi import APIRouter

# Import versioned routers
from fno_ingest.api.v1.router import api_router as api_v1_router

# Main API router
api_router = APIRouter()

# Include versioned routers
api_router.include_router(api_v1_router)
