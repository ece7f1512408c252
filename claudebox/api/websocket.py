"""
Session WebSocket endpoint.
"""

from fastapi import APIRouter, WebSocket

from claudebox.config import get_settings
from claudebox.core.connection import ConnectionHandler

router = APIRouter()


@router.websocket("/ws")
async def session_socket(websocket: WebSocket):
    """One terminal session connection. Authentication happens in-band."""
    settings = get_settings()
    await websocket.accept()
    handler = ConnectionHandler(
        websocket,
        broker=websocket.app.state.broker,
        verifier=websocket.app.state.verifier,
        auth_close_delay=settings.auth_close_delay,
        max_message_length=settings.max_message_length,
    )
    await handler.run()
