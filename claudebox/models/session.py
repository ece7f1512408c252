"""
Session data models.

A Session is the live pairing of one sandbox and one attached terminal for one
user. It lives only in the broker's memory; `SessionInfo` is its REST view.
"""

import asyncio
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Optional

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from claudebox.core.sandbox import SandboxHandle
    from claudebox.core.terminal import PtyProcess


class SessionStatus(str, Enum):
    """Lifecycle status of a session."""

    STARTING = "starting"
    ACTIVE = "active"
    EXITED = "exited"
    ERROR = "error"


def new_session_id() -> str:
    """Generate an opaque, URL-safe session identifier."""
    return secrets.token_hex(16)


@dataclass
class Session:
    """Broker-side state for one session."""

    user_id: str
    session_id: str = field(default_factory=new_session_id)
    project_path: Optional[str] = None
    owner: Optional[str] = None  # Connection id that owns this session
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    status: SessionStatus = SessionStatus.STARTING
    sandbox: Optional["SandboxHandle"] = None
    pty: Optional["PtyProcess"] = None
    # The owning connection's subscription to the terminal's events
    events: Optional[asyncio.Queue] = field(default=None, repr=False)

    @property
    def is_bound(self) -> bool:
        """True when both the sandbox and the terminal are attached."""
        return self.sandbox is not None and self.pty is not None

    def bind(self, sandbox: "SandboxHandle", pty: "PtyProcess") -> None:
        """Attach both handles at once and mark the session active."""
        if sandbox is None or pty is None:
            raise ValueError("Session requires both a sandbox and a terminal")
        self.sandbox = sandbox
        self.pty = pty
        self.status = SessionStatus.ACTIVE

    def unbind(self) -> tuple[Optional["SandboxHandle"], Optional["PtyProcess"]]:
        """Detach both handles at once, returning them for teardown."""
        sandbox, pty = self.sandbox, self.pty
        self.sandbox = None
        self.pty = None
        return sandbox, pty

    def info(self) -> "SessionInfo":
        return SessionInfo(
            session_id=self.session_id,
            user_id=self.user_id,
            status=self.status,
            created_at=self.created_at,
            project_path=self.project_path,
            container=self.sandbox.name if self.sandbox else None,
        )


class SessionInfo(BaseModel):
    """A session as reported over REST."""

    session_id: str = Field(
        alias="sessionId",
        serialization_alias="sessionId",
        description="Opaque session identifier",
    )
    user_id: str = Field(
        alias="userId",
        serialization_alias="userId",
        description="Owner of the session",
    )
    status: SessionStatus = Field(description="Lifecycle status")
    created_at: datetime = Field(
        alias="createdAt",
        serialization_alias="createdAt",
        description="Creation timestamp",
    )
    project_path: Optional[str] = Field(
        default=None,
        alias="projectPath",
        serialization_alias="projectPath",
        description="Workspace subdirectory the session was started in",
    )
    container: Optional[str] = Field(default=None, description="Sandbox container name")

    model_config = {"populate_by_name": True}
