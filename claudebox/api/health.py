"""
Health check endpoints.
"""

import time
from typing import Any

from fastapi import APIRouter, Query, Request

from claudebox import __version__

router = APIRouter()

# Server start time for uptime calculation
_start_time = time.time()


@router.get("/health")
async def health_check(
    request: Request,
    detailed: bool = Query(False, description="Include detailed information"),
) -> dict[str, Any]:
    """
    Health check endpoint.

    Returns session counts, plus docker and uptime info if requested.
    """
    broker = request.app.state.broker

    basic = {
        "status": "ok",
        "totalSessions": broker.registry.total_sessions,
        "activeUsers": broker.registry.active_users,
        "timestamp": int(time.time() * 1000),
        "version": __version__,
    }

    if not detailed:
        return basic

    docker_available = await broker.sandbox.is_available()
    image_available = await broker.sandbox.image_exists() if docker_available else False

    return {
        **basic,
        "uptime": int(time.time() - _start_time),
        "docker": {
            **broker.sandbox.health_info(),
            "imageAvailable": image_available,
        },
    }
