"""
Liveness endpoint for the load balancer.
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter

from fluxstudio.config.supabase_config import test_connection
from fluxstudio.routes.helpers.executor import run_sync

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/health", tags=["health"])
async def health_check():
    """
    Always HTTP 200 while the process serves requests; a failed database
    check is reported as "degraded" in the body.
    """
    try:
        database_ok = await run_sync(test_connection)
    except RuntimeError as e:
        logger.warning(f"Health check database check failed: {e}")
        database_ok = False

    return {
        "status": "healthy" if database_ok else "degraded",
        "database": "connected" if database_ok else "unavailable",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
