"""
WebSocket message envelope.

Every frame is a JSON object with a required `type` field. Client messages are
parsed into one of the client models below; server messages are built from the
server models and serialized with camelCase aliases.
"""

import json
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from claudebox.lib.errors import ProtocolError


class WireMessage(BaseModel):
    model_config = {"populate_by_name": True}

    def to_wire(self) -> dict[str, Any]:
        """Serialize for sending, dropping unset optional fields."""
        return self.model_dump(by_alias=True, exclude_none=True)


# --- Client -> server ---


class ClientUser(BaseModel):
    """User hint sent alongside the token. Never trusted for identity."""

    id: Optional[str] = None
    email: Optional[str] = None


class AuthMessage(WireMessage):
    type: Literal["auth"] = "auth"
    token: str = ""
    user: Optional[ClientUser] = None


class StartMessage(WireMessage):
    type: Literal["start"] = "start"
    project_path: Optional[str] = Field(
        default=None,
        alias="projectPath",
        serialization_alias="projectPath",
        description="Workspace subdirectory, relative to the user's workspace",
    )


class InputMessage(WireMessage):
    type: Literal["input"] = "input"
    data: str


class ResizeMessage(WireMessage):
    type: Literal["resize"] = "resize"
    cols: int = Field(gt=0, le=1000)
    rows: int = Field(gt=0, le=1000)


ClientMessage = Annotated[
    Union[AuthMessage, StartMessage, InputMessage, ResizeMessage],
    Field(discriminator="type"),
]

CLIENT_MESSAGE_TYPES = frozenset({"auth", "start", "input", "resize"})

_client_adapter: TypeAdapter = TypeAdapter(ClientMessage)


def decode_frame(raw: str) -> dict:
    """Decode one client frame to a JSON object without validating its fields."""
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError):
        raise ProtocolError("Invalid message format") from None

    if not isinstance(payload, dict):
        raise ProtocolError("Invalid message format")
    return payload


def validate_client_message(payload: dict) -> Union[AuthMessage, StartMessage, InputMessage, ResizeMessage]:
    msg_type = payload.get("type")
    if msg_type not in CLIENT_MESSAGE_TYPES:
        raise ProtocolError(f"Unknown message type: {msg_type}")

    try:
        return _client_adapter.validate_python(payload)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"][1:]) or msg_type for err in e.errors())
        raise ProtocolError(f"Invalid {msg_type} message: {fields}") from None


def parse_client_message(raw: str) -> Union[AuthMessage, StartMessage, InputMessage, ResizeMessage]:
    """Parse one client frame, raising ProtocolError on anything malformed."""
    return validate_client_message(decode_frame(raw))


# --- Server -> client ---


class AuthResult(WireMessage):
    type: Literal["auth"] = "auth"
    status: Literal["authenticated", "failed"]
    session_id: Optional[str] = Field(default=None, serialization_alias="sessionId")
    error: Optional[str] = None


class StatusMessage(WireMessage):
    type: Literal["status"] = "status"
    status: Literal["started", "error"]
    session_id: Optional[str] = Field(default=None, serialization_alias="sessionId")
    error: Optional[str] = None


class OutputMessage(WireMessage):
    type: Literal["output"] = "output"
    data: str


class ExitMessage(WireMessage):
    type: Literal["exit"] = "exit"
    code: int
    signal: Optional[int] = None


class ErrorMessage(WireMessage):
    type: Literal["error"] = "error"
    error: str
