"""
Per-connection state machine.

One ConnectionHandler serves one accepted WebSocket. Socket frames and
terminal events are funnelled into a single inbox queue and handled by one
consumer loop, so input is applied in socket order and output is forwarded
in the order the terminal produced it.

States:
    unauthenticated -> authenticated -> session-active -> closed
    error is reachable from any state.
"""

import asyncio
import logging
import secrets
from enum import Enum
from typing import Any, Optional

from claudebox.core.broker import SessionBroker
from claudebox.core.terminal import PtyEvent, PtyExit, PtyOutput
from claudebox.lib.auth import Principal, TokenVerifier
from claudebox.lib.errors import (
    InvalidCredentialError,
    NoActiveSessionError,
    ProtocolError,
    ProvisioningError,
    TransportError,
)
from claudebox.lib.logger import short_id
from claudebox.models.messages import (
    AuthMessage,
    AuthResult,
    ErrorMessage,
    ExitMessage,
    InputMessage,
    OutputMessage,
    ResizeMessage,
    StartMessage,
    StatusMessage,
    WireMessage,
    decode_frame,
    validate_client_message,
)

logger = logging.getLogger(__name__)

# WebSocket close codes
CLOSE_NORMAL = 1000
CLOSE_POLICY_VIOLATION = 1008
CLOSE_INTERNAL_ERROR = 1011

# Frames and terminal events waiting to be handled. When full, the socket
# reader and the terminal pump wait, which in turn pauses the terminal.
INBOX_SIZE = 256


class ConnectionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    SESSION_ACTIVE = "session-active"
    CLOSED = "closed"
    ERROR = "error"


class ConnectionHandler:
    """Drives one client socket through auth, session start and relay.

    `websocket` is an accepted Starlette WebSocket (or anything with the same
    `receive`, `send_json` and `close` coroutines).
    """

    def __init__(
        self,
        websocket: Any,
        broker: SessionBroker,
        verifier: TokenVerifier,
        auth_close_delay: float = 0.25,
        max_message_length: int = 102400,
    ):
        self.websocket = websocket
        self.broker = broker
        self.verifier = verifier
        self.auth_close_delay = auth_close_delay
        self.max_message_length = max_message_length

        self.connection_id = secrets.token_hex(8)
        self.state = ConnectionState.UNAUTHENTICATED
        self.principal: Optional[Principal] = None
        self.session_id: Optional[str] = None

        self._inbox: asyncio.Queue = asyncio.Queue(maxsize=INBOX_SIZE)
        self._pump_task: Optional[asyncio.Task] = None
        self._socket_open = True

    @property
    def _who(self) -> str:
        user = self.principal.user_id if self.principal else "anonymous"
        return f"[{self.connection_id} {user}]"

    async def run(self) -> None:
        """Serve the connection until the socket closes."""
        reader = asyncio.create_task(self._read_socket())
        try:
            while self.state not in (ConnectionState.CLOSED, ConnectionState.ERROR):
                kind, payload = await self._inbox.get()
                if kind == "closed":
                    logger.info(f"{self._who} Socket closed by peer")
                    break
                if kind == "frame":
                    await self._handle_frame(payload)
                elif kind == "pty":
                    await self._handle_pty_event(*payload)
                if not self._socket_open:
                    break
        except TransportError as e:
            logger.info(f"{self._who} Socket lost: {e.message}")
        except Exception as e:
            logger.exception(f"{self._who} Connection failed: {e}")
            self.state = ConnectionState.ERROR
        finally:
            reader.cancel()
            await asyncio.shield(self._teardown())

    # --- Event sources ---

    async def _read_socket(self) -> None:
        while True:
            message = await self.websocket.receive()
            if message["type"] == "websocket.disconnect":
                self._socket_open = False
                await self._inbox.put(("closed", None))
                return
            text = message.get("text")
            if text is None and message.get("bytes") is not None:
                text = message["bytes"].decode("utf-8", errors="replace")
            if text is not None:
                await self._inbox.put(("frame", text))

    async def _pump(self, session_id: str, events: asyncio.Queue) -> None:
        while True:
            event = await events.get()
            await self._inbox.put(("pty", (session_id, event)))
            if isinstance(event, PtyExit):
                return

    # --- Socket frames ---

    async def _handle_frame(self, raw: str) -> None:
        if len(raw) > self.max_message_length:
            await self._send(ErrorMessage(error="Message too large"))
            return

        try:
            payload = decode_frame(raw)
            # Nothing but auth is validated before the client has authenticated
            if self.state == ConnectionState.UNAUTHENTICATED and payload.get("type") != "auth":
                await self._send(ErrorMessage(error="Authentication required"))
                return
            message = validate_client_message(payload)
        except ProtocolError as e:
            logger.debug(f"{self._who} Rejected frame: {e.message}")
            await self._send(ErrorMessage(error=e.message))
            return

        if isinstance(message, AuthMessage):
            await self._handle_auth(message)
            return

        if isinstance(message, StartMessage):
            await self._handle_start(message)
            return

        try:
            pty = self._active_pty()
        except NoActiveSessionError as e:
            await self._send(ErrorMessage(error=e.message))
            return

        if isinstance(message, InputMessage):
            pty.write(message.data)
        elif isinstance(message, ResizeMessage):
            pty.resize(message.cols, message.rows)

    async def _handle_auth(self, message: AuthMessage) -> None:
        if self.state != ConnectionState.UNAUTHENTICATED:
            await self._send(ErrorMessage(error="Already authenticated"))
            return

        try:
            self.principal = self.verifier.verify(message.token)
        except InvalidCredentialError as e:
            logger.warning(f"{self._who} Authentication failed")
            await self._send(AuthResult(status="failed", error=e.message))
            await asyncio.sleep(self.auth_close_delay)
            await self._close(CLOSE_POLICY_VIOLATION, "Authentication failed")
            self.state = ConnectionState.CLOSED
            return

        self.state = ConnectionState.AUTHENTICATED
        logger.info(f"{self._who} Authenticated")
        await self._send(AuthResult(status="authenticated"))

    async def _handle_start(self, message: StartMessage) -> None:
        # The old session's exit must not be reported once it is being replaced
        previous = self.session_id
        self._detach()

        try:
            session = await self.broker.start_session(
                self.principal,
                project_path=message.project_path,
                owner=self.connection_id,
            )
        except ProvisioningError as e:
            logger.warning(f"{self._who} Session start failed: {e.message}")
            await self._release(previous)
            self.state = ConnectionState.AUTHENTICATED
            await self._send(StatusMessage(status="error", session_id=e.session_id, error=e.message))
            return
        except Exception as e:
            logger.exception(f"{self._who} Session start failed: {e}")
            await self._release(previous)
            self.state = ConnectionState.AUTHENTICATED
            await self._send(StatusMessage(status="error", error="Failed to start session"))
            return

        self.session_id = session.session_id
        self.state = ConnectionState.SESSION_ACTIVE
        self._pump_task = asyncio.create_task(self._pump(session.session_id, session.events))
        logger.info(f"{self._who} Session {short_id(session.session_id)} started")
        await self._send(StatusMessage(status="started", session_id=session.session_id))

    async def _release(self, session_id: Optional[str]) -> None:
        """Stop a detached session that a failed start did not get to replace."""
        if session_id is not None and session_id in self.broker.registry:
            await self.broker.stop_session(session_id)

    def _active_pty(self):
        if self.session_id is None:
            raise NoActiveSessionError("No active session")
        session = self.broker.registry.get(self.session_id)
        if session is None or session.pty is None:
            raise NoActiveSessionError("No active session")
        return session.pty

    # --- Terminal events ---

    async def _handle_pty_event(self, session_id: str, event: PtyEvent) -> None:
        if session_id != self.session_id:
            # Left over from a session this connection no longer owns
            return

        if isinstance(event, PtyOutput):
            await self._send(OutputMessage(data=event.data))
            return

        logger.info(f"{self._who} Session {short_id(session_id)} exited with code {event.code}")
        self._pump_task = None
        self.session_id = None
        self.state = ConnectionState.AUTHENTICATED
        try:
            await self._send(ExitMessage(code=event.code, signal=event.signal))
        finally:
            await self.broker.handle_exit(session_id)

    # --- Plumbing ---

    def _detach(self) -> None:
        if self._pump_task is not None:
            self._pump_task.cancel()
            self._pump_task = None
        self.session_id = None

    async def _send(self, message: WireMessage) -> None:
        if not self._socket_open:
            raise TransportError("Socket is closed")
        try:
            await self.websocket.send_json(message.to_wire())
        except Exception as e:
            self._socket_open = False
            raise TransportError(f"Send failed: {e}") from e

    async def _close(self, code: int, reason: str = "") -> None:
        if not self._socket_open:
            return
        self._socket_open = False
        try:
            await self.websocket.close(code=code, reason=reason)
        except Exception as e:
            logger.debug(f"{self._who} Close failed: {e}")

    async def _teardown(self) -> None:
        session_id = self.session_id
        self._detach()
        if session_id is not None:
            logger.info(f"{self._who} Stopping session {short_id(session_id)} on disconnect")
            try:
                await self.broker.stop_session(session_id)
            except Exception as e:
                logger.error(f"{self._who} Failed to stop session {short_id(session_id)}: {e}")

        if self.state == ConnectionState.ERROR:
            await self._close(CLOSE_INTERNAL_ERROR, "Internal error")
        else:
            await self._close(CLOSE_NORMAL)
            self.state = ConnectionState.CLOSED
