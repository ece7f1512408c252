"""
Session broker.

Composes the registry, the sandbox manager and the terminal bridge into the
session operations used by both the WebSocket handler and the REST API:
start (with per-user exclusivity), stop, exit handling, whitelisted commands
and shutdown.
"""

import asyncio
import logging
import re
from pathlib import Path, PurePosixPath
from typing import Optional

from claudebox.core.commands import COMMANDS, CommandResult, collect_output
from claudebox.core.registry import SessionRegistry
from claudebox.core.sandbox import DockerSandbox
from claudebox.core.terminal import TerminalBridge
from claudebox.lib.auth import Principal
from claudebox.lib.errors import (
    ErrorCode,
    ForbiddenError,
    NoActiveSessionError,
    ProtocolError,
    ProvisioningError,
    SessionNotFoundError,
)
from claudebox.lib.logger import short_id
from claudebox.models.session import Session, SessionStatus

logger = logging.getLogger(__name__)

# Seconds the terminal process gets to exit before it is killed
PTY_STOP_TIMEOUT = 3.0


def _safe_segment(value: str) -> str:
    """Make a user id usable as a single directory name."""
    return re.sub(r"[^A-Za-z0-9_.-]", "_", value).strip(".") or "_"


class SessionBroker:
    """Owns session lifecycle for the whole process."""

    def __init__(
        self,
        registry: SessionRegistry,
        sandbox: DockerSandbox,
        bridge: TerminalBridge,
        workspaces_dir: Path,
        command: str = "claude",
        command_silence_timeout: float = 0.5,
        command_timeout: float = 5.0,
    ):
        self.registry = registry
        self.sandbox = sandbox
        self.bridge = bridge
        self.workspaces_dir = workspaces_dir
        self.command = command
        self.command_silence_timeout = command_silence_timeout
        self.command_timeout = command_timeout

    @classmethod
    def from_settings(cls, settings) -> "SessionBroker":
        return cls(
            registry=SessionRegistry(),
            sandbox=DockerSandbox.from_settings(settings),
            bridge=TerminalBridge(),
            workspaces_dir=settings.workspaces_dir,
            command=settings.sandbox_command,
            command_silence_timeout=settings.command_silence_timeout,
            command_timeout=settings.command_timeout,
        )

    def resolve_workspace(self, user_id: str, project_path: Optional[str] = None) -> Path:
        """Host directory to mount for a user, optionally a subdirectory of it."""
        root = self.workspaces_dir / _safe_segment(user_id)
        if not project_path:
            return root

        relative = PurePosixPath(project_path)
        if relative.is_absolute() or ".." in relative.parts:
            raise ProvisioningError("Project path must be relative to your workspace")
        return root / relative

    async def start_session(
        self,
        principal: Principal,
        project_path: Optional[str] = None,
        owner: Optional[str] = None,
    ) -> Session:
        """Start a new session for a user, replacing any existing one.

        The whole evict -> provision -> register sequence runs under the
        user's lock, so concurrent starts for one user serialize and the
        last one wins. A sandbox whose terminal fails to attach is stopped
        before the error propagates.
        """
        user_id = principal.user_id
        session = Session(user_id=user_id, project_path=project_path, owner=owner)
        try:
            workspace = self.resolve_workspace(user_id, project_path)
        except ProvisioningError as e:
            e.session_id = session.session_id
            raise

        async with self.registry.user_lock(user_id):
            for existing_id in self.registry.list_active_for(user_id):
                logger.info(
                    f"Replacing session {short_id(existing_id)} for {user_id} "
                    f"with {short_id(session.session_id)}"
                )
                await self.stop_session(existing_id)

            handle = await self.sandbox.start(session.session_id, user_id, workspace)
            try:
                pty = await self.bridge.attach(handle, self.command)
            except BaseException:
                session.status = SessionStatus.ERROR
                await self.sandbox.stop(handle)
                raise

            session.bind(handle, pty)
            session.events = pty.subscribe()
            self.registry.create(user_id, session)

        logger.info(f"Session {short_id(session.session_id)} started for {user_id}")
        return session

    async def stop_session(self, session_id: str) -> bool:
        """Remove a session and tear down its terminal and sandbox.

        Returns False if the session was already gone.
        """
        session = self.registry.remove_and_unindex(session_id)
        if session is None:
            return False
        await self._teardown(session)
        return True

    async def handle_exit(self, session_id: str) -> None:
        """The session's process exited on its own; release its sandbox."""
        session = self.registry.remove_and_unindex(session_id)
        if session is None:
            return
        logger.info(f"Session {short_id(session_id)} process exited")
        await self._teardown(session)

    async def _teardown(self, session: Session) -> None:
        sandbox, pty = session.unbind()
        session.status = SessionStatus.EXITED

        if pty is not None:
            try:
                await pty.terminate(timeout=PTY_STOP_TIMEOUT)
            except Exception as e:
                logger.warning(f"Failed to terminate terminal for {short_id(session.session_id)}: {e}")

        if sandbox is not None:
            stopped = await self.sandbox.stop(sandbox)
            if not stopped:
                logger.error(
                    f"Sandbox {sandbox.name} for session {short_id(session.session_id)} "
                    f"could not be removed"
                )

    def sessions_for(self, user_id: str) -> list[Session]:
        return self.registry.sessions_for(user_id)

    async def stop_user_session(self, principal: Principal, session_id: str) -> None:
        """Stop one of the caller's sessions."""
        session = self.registry.get(session_id)
        if session is None:
            raise SessionNotFoundError("Session not found")
        if session.user_id != principal.user_id:
            raise ForbiddenError("Not allowed to stop this session")
        await self.stop_session(session_id)

    async def run_command(self, principal: Principal, command_id: str) -> CommandResult:
        """Type a whitelisted command into the caller's active session."""
        text = COMMANDS.get(command_id)
        if text is None:
            raise ProtocolError(f"Unknown command: {command_id}", code=ErrorCode.UNKNOWN_COMMAND)

        active = [
            s for s in self.registry.sessions_for(principal.user_id)
            if s.pty is not None and not s.pty.closed
        ]
        if not active:
            raise NoActiveSessionError("No active terminal session")

        session = active[0]
        logger.info(f"Running '{command_id}' in session {short_id(session.session_id)}")
        output, timed_out = await collect_output(
            session.pty,
            text,
            silence_timeout=self.command_silence_timeout,
            timeout=self.command_timeout,
        )
        return CommandResult(command=command_id, output=output, timed_out=timed_out)

    async def shutdown(self) -> None:
        """Stop every session, e.g. on server shutdown."""
        session_ids = [s.session_id for s in self.registry.sessions()]
        if not session_ids:
            return
        logger.info(f"Stopping {len(session_ids)} session(s)")
        results = await asyncio.gather(
            *[self.stop_session(sid) for sid in session_ids],
            return_exceptions=True,
        )
        for sid, result in zip(session_ids, results):
            if isinstance(result, Exception):
                logger.warning(f"Failed to stop session {short_id(sid)}: {result}")
