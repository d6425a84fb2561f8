"""
Version 1 API router.
"""

from fastapi import APIRouter

# Import endpoint modules
from fno_ingest.api.v1.endpoints import health, snapshots

# Create the v1 API router
api_router = APIRouter()

api_router.include_router(health.router)
api_router.include_router(snapshots.router)
