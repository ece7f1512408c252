"""
Whitelisted command endpoint.
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from claudebox.api.deps import get_broker, get_principal
from claudebox.core.broker import SessionBroker
from claudebox.core.commands import COMMANDS
from claudebox.lib.auth import Principal

router = APIRouter()


class RunCommandRequest(BaseModel):
    command: str = Field(description=f"One of: {', '.join(COMMANDS)}")


@router.post("/run-command")
async def run_command(
    body: RunCommandRequest,
    principal: Principal = Depends(get_principal),
    broker: SessionBroker = Depends(get_broker),
) -> dict:
    """Type a whitelisted command into the caller's active session.

    Returns the terminal output gathered until it goes quiet, with
    `timeout: true` when the hard limit was reached first.
    """
    result = await broker.run_command(principal, body.command)
    return result.to_dict()
