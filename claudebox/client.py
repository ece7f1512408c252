"""
Client connection manager.

Keeps one authenticated socket to a claudebox server, retrying with
exponential backoff when the connection cannot be established or drops
unexpectedly. Usage:

    manager = await ConnectionManager.from_server("http://localhost:3000", token)
    manager.add_handler(print)
    await manager.connect()
    await manager.start_session()
    await manager.send_input("hello\\r")
"""

import asyncio
import inspect
import json
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union
from urllib.parse import urlsplit

import httpx
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

logger = logging.getLogger(__name__)

MessageHandler = Callable[[dict], Union[None, Awaitable[None]]]
StatusListener = Callable[["ConnectionStatus"], None]


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    SESSION_STARTED = "session-started"
    ERROR = "error"


class ConnectionFailedError(Exception):
    """No authenticated connection could be established."""


class AuthRejectedError(ConnectionFailedError):
    """The server refused the token. Retrying will not help."""


async def fetch_ws_url(http_url: str, client: Optional[httpx.AsyncClient] = None) -> str:
    """Build the session socket URL from the server's /api/config."""
    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=10.0)
    try:
        response = await client.get(f"{http_url.rstrip('/')}/api/config")
        response.raise_for_status()
        config = response.json()
    finally:
        if owns_client:
            await client.aclose()

    parts = urlsplit(http_url)
    scheme = "wss" if parts.scheme == "https" else "ws"
    host = parts.hostname or "localhost"
    port = config.get("wsPort") or parts.port
    path = config.get("wsPath", "/ws")
    return f"{scheme}://{host}:{port}{path}" if port else f"{scheme}://{host}{path}"


class ConnectionManager:
    """One logical connection to the broker, with reconnection."""

    def __init__(
        self,
        url: str,
        token: str,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        open_timeout: float = 10.0,
        auth_timeout: float = 10.0,
        auto_reconnect: bool = True,
        connector: Optional[Callable[[str], Awaitable[Any]]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.url = url
        self.token = token
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.open_timeout = open_timeout
        self.auth_timeout = auth_timeout
        self.auto_reconnect = auto_reconnect
        self._connector = connector or self._open_socket
        self._sleep = sleep

        self.status = ConnectionStatus.DISCONNECTED
        self.last_error: Optional[str] = None
        self.session_id: Optional[str] = None
        self.attempts = 0

        self._ws: Any = None
        self._connect_task: Optional[asyncio.Task] = None
        self._receive_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._closing = False
        self._handlers: list[MessageHandler] = []
        self._status_listeners: list[StatusListener] = []

    @classmethod
    async def from_server(cls, http_url: str, token: str, **kwargs) -> "ConnectionManager":
        """Create a manager for the socket advertised by a server's /api/config."""
        return cls(await fetch_ws_url(http_url), token, **kwargs)

    @staticmethod
    async def _open_socket(url: str):
        return await websockets.connect(url, max_size=10 * 1024 * 1024, close_timeout=5)

    @property
    def connected(self) -> bool:
        return self._ws is not None and self.status in (
            ConnectionStatus.AUTHENTICATED,
            ConnectionStatus.SESSION_STARTED,
        )

    def retry_delay(self, retry: int) -> float:
        """Delay before the given retry (1-based)."""
        return self.base_delay * 2 ** (retry - 1)

    # --- Listeners ---

    def add_handler(self, handler: MessageHandler) -> None:
        if handler not in self._handlers:
            self._handlers.append(handler)

    def remove_handler(self, handler: MessageHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    def add_status_listener(self, listener: StatusListener) -> None:
        self._status_listeners.append(listener)

    def _set_status(self, status: ConnectionStatus) -> None:
        if status == self.status:
            return
        logger.debug(f"Connection status: {self.status.value} -> {status.value}")
        self.status = status
        for listener in list(self._status_listeners):
            try:
                listener(status)
            except Exception as e:
                logger.warning(f"Status listener failed: {e}")

    # --- Connecting ---

    async def connect(self) -> None:
        """Open and authenticate the socket.

        Does nothing when already connected. Concurrent callers share one
        in-flight attempt. Raises ConnectionFailedError once every attempt
        has failed, or AuthRejectedError as soon as the token is refused.
        """
        if self.connected:
            return

        if self._connect_task is None or self._connect_task.done():
            self._closing = False
            self._connect_task = asyncio.create_task(self._connect_loop())

        task = self._connect_task
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled() and not asyncio.current_task().cancelling():
                raise ConnectionFailedError("Connection attempt cancelled") from None
            raise

    async def _connect_loop(self) -> None:
        for attempt in range(1, self.max_attempts + 1):
            self.attempts = attempt
            if attempt > 1:
                delay = self.retry_delay(attempt - 1)
                logger.info(f"Reconnecting in {delay:.1f}s (attempt {attempt}/{self.max_attempts})")
                await self._sleep(delay)

            self._set_status(ConnectionStatus.CONNECTING)
            try:
                await self._open_and_authenticate()
                self.attempts = 0
                self.last_error = None
                return
            except AuthRejectedError as e:
                self.last_error = str(e)
                logger.error(f"Authentication rejected: {e}")
                self._set_status(ConnectionStatus.ERROR)
                raise
            except (OSError, asyncio.TimeoutError, ValueError,
                    WebSocketException, ConnectionFailedError) as e:
                self.last_error = str(e) or type(e).__name__
                logger.warning(f"Connection attempt {attempt} failed: {self.last_error}")

        self._set_status(ConnectionStatus.ERROR)
        raise ConnectionFailedError(
            f"Failed to connect after {self.max_attempts} attempts: {self.last_error}"
        )

    async def _open_and_authenticate(self) -> None:
        ws = await asyncio.wait_for(self._connector(self.url), timeout=self.open_timeout)
        try:
            await ws.send(json.dumps({"type": "auth", "token": self.token}))
            reply = json.loads(await asyncio.wait_for(ws.recv(), timeout=self.auth_timeout))
            if not isinstance(reply, dict) or reply.get("type") != "auth":
                raise ConnectionFailedError(f"Unexpected reply to auth: {reply}")
            if reply.get("status") != "authenticated":
                raise AuthRejectedError(reply.get("error") or "Authentication failed")
        except BaseException:
            await ws.close()
            raise

        self._ws = ws
        self.session_id = None
        self._set_status(ConnectionStatus.AUTHENTICATED)
        self._receive_task = asyncio.create_task(self._receive_loop(ws))
        logger.info(f"Connected to {self.url}")

    async def _receive_loop(self, ws) -> None:
        try:
            async for raw in ws:
                try:
                    message = json.loads(raw)
                except ValueError:
                    logger.warning(f"Ignoring non-JSON frame: {str(raw)[:100]}")
                    continue
                if not isinstance(message, dict):
                    continue
                self._track(message)
                await self._dispatch(message)
        except ConnectionClosed as e:
            logger.info(f"Connection closed: {e}")
        finally:
            if self._ws is ws:
                self._ws = None
                self.session_id = None
                if not self._closing:
                    self._on_unexpected_close()

    def _on_unexpected_close(self) -> None:
        logger.warning("Connection lost")
        self._set_status(ConnectionStatus.DISCONNECTED)
        if self.auto_reconnect:
            self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        try:
            await self.connect()
        except ConnectionFailedError as e:
            logger.error(f"Reconnect failed: {e}")

    def _track(self, message: dict) -> None:
        msg_type = message.get("type")
        if msg_type == "status" and message.get("status") == "started":
            self.session_id = message.get("sessionId")
            self._set_status(ConnectionStatus.SESSION_STARTED)
        elif msg_type == "exit":
            self.session_id = None
            self._set_status(ConnectionStatus.AUTHENTICATED)

    async def _dispatch(self, message: dict) -> None:
        for handler in list(self._handlers):
            try:
                result = handler(message)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.exception(f"Message handler failed: {e}")

    # --- Sending ---

    async def send(self, message: dict) -> bool:
        """Send one message. Returns False, and never raises, when it could not be sent."""
        msg_type = message.get("type") if isinstance(message, dict) else None
        if not self.connected:
            logger.warning(f"Cannot send '{msg_type}': not connected")
            return False
        try:
            await self._ws.send(json.dumps(message))
            return True
        except ConnectionClosed as e:
            logger.warning(f"Cannot send '{msg_type}': {e}")
            return False
        except Exception as e:
            logger.error(f"Failed to send '{msg_type}': {e}")
            return False

    async def start_session(self, project_path: Optional[str] = None) -> bool:
        message: dict[str, Any] = {"type": "start"}
        if project_path:
            message["projectPath"] = project_path
        return await self.send(message)

    async def send_input(self, data: str) -> bool:
        return await self.send({"type": "input", "data": data})

    async def resize(self, cols: int, rows: int) -> bool:
        return await self.send({"type": "resize", "cols": cols, "rows": rows})

    # --- Closing ---

    async def disconnect(self) -> None:
        """Close the socket and cancel any pending connection attempt."""
        self._closing = True
        for task in (self._reconnect_task, self._connect_task):
            if task is not None and not task.done():
                task.cancel()
        self._reconnect_task = None
        self._connect_task = None

        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
        if self._receive_task is not None:
            self._receive_task.cancel()
            self._receive_task = None

        self.session_id = None
        self._set_status(ConnectionStatus.DISCONNECTED)
