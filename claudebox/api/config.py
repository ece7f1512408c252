"""
Client bootstrap configuration.
"""

from fastapi import APIRouter

from claudebox.config import get_settings

router = APIRouter()

WS_PATH = "/ws"


@router.get("/config")
async def get_client_config() -> dict:
    """Ports and path a browser client needs to open the session socket."""
    settings = get_settings()
    return {
        "httpPort": settings.port,
        "wsPort": settings.advertised_ws_port,
        "wsPath": WS_PATH,
    }
