"""API routes."""

import logging
from fastapi import APIRouter

from stocksync.api.routes import deductions, mappings, repairs, sync_health

logger = logging.getLogger(__name__)

api_router = APIRouter()

api_router.include_router(deductions.router, prefix="/deductions", tags=["deductions"])
api_router.include_router(mappings.router, prefix="/mappings", tags=["mappings"])
api_router.include_router(sync_health.router, prefix="/sync-health", tags=["sync-health"])
api_router.include_router(repairs.router, prefix="/repairs", tags=["repairs"])
