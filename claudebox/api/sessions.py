"""
Per-user session endpoints.
"""

import logging

from fastapi import APIRouter, Depends

from claudebox.api.deps import get_broker, get_principal
from claudebox.core.broker import SessionBroker
from claudebox.lib.auth import Principal
from claudebox.lib.logger import short_id

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/user/sessions")
async def list_user_sessions(
    principal: Principal = Depends(get_principal),
    broker: SessionBroker = Depends(get_broker),
) -> dict:
    """List the caller's live sessions."""
    sessions = broker.sessions_for(principal.user_id)
    return {
        "sessions": [s.info().model_dump(mode="json", by_alias=True) for s in sessions],
    }


@router.post("/user/sessions/{session_id}/stop")
async def stop_user_session(
    session_id: str,
    principal: Principal = Depends(get_principal),
    broker: SessionBroker = Depends(get_broker),
) -> dict:
    """Stop one of the caller's sessions and remove its sandbox."""
    await broker.stop_user_session(principal, session_id)
    logger.info(f"Session {short_id(session_id)} stopped by {principal.user_id}")
    return {"stopped": True, "sessionId": session_id}
