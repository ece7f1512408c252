"""
Pytest configuration and fixtures.
"""

import asyncio
import os
import tempfile
from pathlib import Path
from typing import Optional

import pytest
from fastapi.testclient import TestClient

TEST_SECRET = "test-signing-secret-with-enough-length-for-hs256"

# Set test environment before claudebox.config builds its settings
os.environ["DATA_DIR"] = tempfile.mkdtemp(prefix="claudebox-test-")
os.environ["JWT_SECRET"] = TEST_SECRET
os.environ["ANTHROPIC_API_KEY"] = "sk-test-key"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["COMMAND_SILENCE_TIMEOUT"] = "0.05"
os.environ["COMMAND_TIMEOUT"] = "1.0"

from claudebox.core.broker import SessionBroker  # noqa: E402
from claudebox.core.registry import SessionRegistry  # noqa: E402
from claudebox.core.sandbox import SandboxHandle, container_name  # noqa: E402
from claudebox.core.terminal import PtyExit, PtyOutput  # noqa: E402
from claudebox.lib.auth import TokenVerifier, issue_token  # noqa: E402
from claudebox.lib.errors import BridgeError, ErrorCode, ProvisioningError  # noqa: E402


class FakePty:
    """In-memory stand-in for PtyProcess that echoes its input."""

    def __init__(self, echo: bool = True):
        self.echo = echo
        self.pid = 4242
        self.exit: Optional[PtyExit] = None
        self.writes: list[str] = []
        self.resizes: list[tuple[int, int]] = []
        self.terminated = False
        self._subscribers: list[asyncio.Queue] = []
        self._backlog: list = []

    @property
    def closed(self) -> bool:
        return self.exit is not None

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        if not self._subscribers:
            for event in self._backlog:
                queue.put_nowait(event)
            self._backlog.clear()
        elif self.exit is not None:
            queue.put_nowait(self.exit)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def _publish(self, event) -> None:
        if not self._subscribers:
            self._backlog.append(event)
            return
        for queue in self._subscribers:
            queue.put_nowait(event)

    def emit(self, data: str) -> None:
        self._publish(PtyOutput(data))

    def finish(self, code: int = 0, signal: Optional[int] = None) -> None:
        if self.exit is None:
            self.exit = PtyExit(code=code, signal=signal)
            self._publish(self.exit)

    def write(self, data: str) -> None:
        if self.exit is not None:
            return
        self.writes.append(data)
        if data.strip() == "exit":
            self.finish(0)
        elif self.echo:
            self.emit(data)

    def resize(self, cols: int, rows: int) -> None:
        self.resizes.append((cols, rows))

    async def terminate(self, timeout: float = 3.0) -> PtyExit:
        self.terminated = True
        self.finish(143, 15)
        return self.exit


class FakeSandbox:
    """Records sandbox starts and stops without touching Docker."""

    def __init__(self):
        self.started: list[SandboxHandle] = []
        self.stopped: list[SandboxHandle] = []
        self.running: dict[str, SandboxHandle] = {}
        self.fail_with: Optional[str] = None
        self.start_delay = 0.0

    async def start(self, session_id, user_id, workspace) -> SandboxHandle:
        if self.start_delay:
            await asyncio.sleep(self.start_delay)
        if self.fail_with:
            raise ProvisioningError(self.fail_with, session_id=session_id)
        handle = SandboxHandle(
            name=container_name(session_id),
            container_id=f"cid{session_id[:12]}",
            session_id=session_id,
            workspace=workspace,
        )
        self.started.append(handle)
        self.running[handle.name] = handle
        return handle

    async def stop(self, handle: SandboxHandle) -> bool:
        self.stopped.append(handle)
        self.running.pop(handle.name, None)
        return True

    async def is_available(self) -> bool:
        return True

    async def image_exists(self) -> bool:
        return True

    async def reconcile(self, active_session_ids=None) -> int:
        return 0

    def health_info(self) -> dict:
        return {"available": True, "image": "claude-env"}


class FakeBridge:
    """Hands out FakePty terminals."""

    def __init__(self):
        self.attached: list[tuple[SandboxHandle, str, FakePty]] = []
        self.fail = False

    async def attach(self, handle, command, cols=80, rows=30) -> FakePty:
        if self.fail:
            raise BridgeError(
                "Executable 'claude' not found in sandbox",
                code=ErrorCode.EXECUTABLE_NOT_FOUND,
                session_id=handle.session_id,
            )
        pty = FakePty()
        self.attached.append((handle, command, pty))
        return pty

    @property
    def last_pty(self) -> FakePty:
        return self.attached[-1][2]


@pytest.fixture
def fake_sandbox() -> FakeSandbox:
    return FakeSandbox()


@pytest.fixture
def fake_bridge() -> FakeBridge:
    return FakeBridge()


@pytest.fixture
def registry() -> SessionRegistry:
    return SessionRegistry()


@pytest.fixture
def broker(registry, fake_sandbox, fake_bridge, tmp_path: Path) -> SessionBroker:
    """A broker wired to fake sandbox and terminal backends."""
    return SessionBroker(
        registry=registry,
        sandbox=fake_sandbox,
        bridge=fake_bridge,
        workspaces_dir=tmp_path / "workspaces",
        command="claude",
        command_silence_timeout=0.05,
        command_timeout=1.0,
    )


@pytest.fixture
def verifier() -> TokenVerifier:
    return TokenVerifier(TEST_SECRET)


@pytest.fixture
def make_token():
    """Mint tokens signed with the test secret."""

    def _make(user_id: str = "user-1", **kwargs) -> str:
        return issue_token(TEST_SECRET, user_id, **kwargs)

    return _make


@pytest.fixture
def eventually():
    """Poll an async-visible condition until it holds or a timeout passes."""

    async def _wait(predicate, timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("Condition not met before timeout")
            await asyncio.sleep(0.01)

    return _wait


@pytest.fixture
def test_client(broker, monkeypatch) -> TestClient:
    """Create a FastAPI test client whose broker uses the fakes."""
    import claudebox.server as server

    monkeypatch.setattr(server, "build_broker", lambda settings: broker)

    with TestClient(server.app) as client:
        yield client
