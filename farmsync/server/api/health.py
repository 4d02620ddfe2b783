"""
Health check endpoints for container orchestration and monitoring.
"""

import logging
import time
from datetime import datetime, timezone

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from farmsync import __version__

logger = logging.getLogger(__name__)

router = APIRouter()

_startup_time = time.time()


def get_current_timestamp() -> str:
    """Get current timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat()


@router.get("/health/live")
async def liveness_check():
    """Liveness probe: the process is up and serving requests."""
    return {
        "status": "alive",
        "service": "farmsync",
        "version": __version__,
        "uptime_seconds": round(time.time() - _startup_time, 2),
        "timestamp": get_current_timestamp()
    }


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness probe: the record store is attached."""
    store = getattr(request.app.state, 'record_store', None)
    if store is None:
        return JSONResponse(
            content={"status": "not_ready", "timestamp": get_current_timestamp()},
            status_code=503
        )

    return {
        "status": "ready",
        "records": len(store),
        "timestamp": get_current_timestamp()
    }
