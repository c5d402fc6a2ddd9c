"""Health check endpoints.

Provides:
- Basic liveness probe (/health/)
- Detailed runtime status (/health/status)
"""

import platform
import sys
import time
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Request
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["health"])

_start_time = time.monotonic()
_start_datetime = datetime.now(timezone.utc).isoformat()


@router.get("/", response_model=dict[str, Any])
async def root(request: Request) -> dict[str, Any]:
    """
    Get API root information and version.
    Used as a simple liveness probe.
    """
    settings = request.app.state.settings
    return {
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "ok",
    }


@router.get("/status", response_model=dict[str, Any])
async def system_status(request: Request) -> dict[str, Any]:
    """
    Detailed runtime status including uptime, registry size and live sessions.
    Intended for admin dashboards and monitoring.
    """
    state = request.app.state
    uptime_seconds = time.monotonic() - _start_time
    hours, remainder = divmod(int(uptime_seconds), 3600)
    minutes, seconds = divmod(remainder, 60)

    return {
        "app": state.settings.APP_NAME,
        "version": state.settings.APP_VERSION,
        "environment": state.settings.ENVIRONMENT,
        "started_at": _start_datetime,
        "uptime": f"{hours}h {minutes}m {seconds}s",
        "uptime_seconds": round(uptime_seconds, 1),
        "python": {
            "version": sys.version,
            "platform": platform.platform(),
        },
        "components": {
            "registered_functions": len(state.registry),
            "debug_sessions": state.debug_sessions.active_count,
            "background_runs": len(state.background_runs),
            "persistence": state.settings.PERSISTENCE_BACKEND,
        },
    }
