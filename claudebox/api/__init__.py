"""
API routes for the claudebox server.
"""

from fastapi import APIRouter

from claudebox.api import commands, config, health, sessions

# Create main API router
api_router = APIRouter(prefix="/api")

# Include all route modules
api_router.include_router(config.router, tags=["config"])
api_router.include_router(health.router, tags=["health"])
api_router.include_router(sessions.router, tags=["sessions"])
api_router.include_router(commands.router, tags=["commands"])
