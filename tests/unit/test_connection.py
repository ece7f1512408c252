"""
Unit tests for the per-connection state machine.
"""

import asyncio
import json

import pytest
import pytest_asyncio

from claudebox.core.connection import ConnectionHandler, ConnectionState


class FakeWebSocket:
    """Scripted socket with the Starlette receive/send_json/close surface."""

    def __init__(self):
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent: list[dict] = []
        self.close_code = None
        self.broken = False

    async def receive(self) -> dict:
        return await self.incoming.get()

    async def send_json(self, data: dict) -> None:
        if self.close_code is not None or self.broken:
            raise RuntimeError("socket closed")
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.close_code = code

    def push(self, message) -> None:
        text = message if isinstance(message, str) else json.dumps(message)
        self.incoming.put_nowait({"type": "websocket.receive", "text": text})

    def disconnect(self) -> None:
        self.incoming.put_nowait({"type": "websocket.disconnect", "code": 1001})


@pytest.fixture
def ws():
    return FakeWebSocket()


@pytest.fixture
def handler(ws, broker, verifier):
    return ConnectionHandler(ws, broker, verifier, auth_close_delay=0, max_message_length=1024)


@pytest_asyncio.fixture
async def run(handler):
    """Run the handler in the background and stop it after the test."""
    tasks = []

    def _start():
        task = asyncio.create_task(handler.run())
        tasks.append(task)
        return task

    yield _start

    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    # Let shielded teardown finish
    await asyncio.sleep(0.01)


async def _authenticate(ws, make_token, eventually, user_id="alice"):
    ws.push({"type": "auth", "token": make_token(user_id)})
    await eventually(lambda: len(ws.sent) >= 1)
    assert ws.sent[-1] == {"type": "auth", "status": "authenticated"}


async def _start(ws, eventually, **fields):
    count = len(ws.sent)
    ws.push({"type": "start", **fields})
    await eventually(lambda: len(ws.sent) > count)
    return ws.sent[-1]


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_valid_token(self, ws, handler, run, make_token, eventually):
        run()
        await _authenticate(ws, make_token, eventually)
        assert handler.state == ConnectionState.AUTHENTICATED
        assert handler.principal.user_id == "alice"

    @pytest.mark.asyncio
    async def test_invalid_token_closes_with_policy_violation(self, ws, handler, run):
        task = run()
        ws.push({"type": "auth", "token": "nope"})
        await asyncio.wait_for(task, timeout=2.0)

        assert ws.sent == [{"type": "auth", "status": "failed", "error": "Invalid credential"}]
        assert ws.close_code == 1008
        assert handler.state == ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_client_user_hint_is_ignored(self, ws, handler, run, make_token, eventually):
        run()
        ws.push({"type": "auth", "token": make_token("alice"), "user": {"id": "mallory"}})
        await eventually(lambda: handler.principal is not None)
        assert handler.principal.user_id == "alice"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("message", [
        {"type": "start"},
        {"type": "input", "data": "ls\r"},
        {"type": "resize", "cols": 80, "rows": 24},
    ])
    async def test_messages_before_auth_are_refused(
        self, ws, handler, run, fake_sandbox, eventually, message
    ):
        run()
        ws.push(message)
        await eventually(lambda: len(ws.sent) == 1)

        assert ws.sent[0] == {"type": "error", "error": "Authentication required"}
        assert handler.state == ConnectionState.UNAUTHENTICATED
        assert fake_sandbox.started == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("message", [
        {"type": "resize", "cols": 0, "rows": 0},
        {"type": "input"},
        {"type": "output", "data": "x"},
        {"type": "bogus"},
        {"data": "x"},
    ])
    async def test_invalid_messages_before_auth_are_refused(
        self, ws, handler, run, fake_sandbox, eventually, message
    ):
        run()
        ws.push(message)
        await eventually(lambda: len(ws.sent) == 1)

        assert ws.sent[0] == {"type": "error", "error": "Authentication required"}
        assert handler.state == ConnectionState.UNAUTHENTICATED
        assert fake_sandbox.started == []

    @pytest.mark.asyncio
    async def test_second_auth_is_refused(self, ws, run, make_token, eventually):
        run()
        await _authenticate(ws, make_token, eventually)
        ws.push({"type": "auth", "token": make_token("bob")})
        await eventually(lambda: len(ws.sent) == 2)
        assert ws.sent[1] == {"type": "error", "error": "Already authenticated"}


class TestProtocolErrors:
    @pytest.mark.asyncio
    async def test_malformed_json(self, ws, handler, run, eventually):
        run()
        ws.push("{not json")
        await eventually(lambda: len(ws.sent) == 1)
        assert ws.sent[0] == {"type": "error", "error": "Invalid message format"}
        assert handler.state == ConnectionState.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_unknown_type(self, ws, run, make_token, eventually):
        run()
        await _authenticate(ws, make_token, eventually)
        ws.push({"type": "bogus"})
        await eventually(lambda: len(ws.sent) == 2)
        assert ws.sent[1] == {"type": "error", "error": "Unknown message type: bogus"}

    @pytest.mark.asyncio
    async def test_oversized_frame(self, ws, run, make_token, eventually):
        run()
        await _authenticate(ws, make_token, eventually)
        ws.push({"type": "input", "data": "x" * 2000})
        await eventually(lambda: len(ws.sent) == 2)
        assert ws.sent[1] == {"type": "error", "error": "Message too large"}

    @pytest.mark.asyncio
    async def test_input_without_session(self, ws, run, make_token, eventually):
        run()
        await _authenticate(ws, make_token, eventually)
        ws.push({"type": "input", "data": "ls\r"})
        await eventually(lambda: len(ws.sent) == 2)
        assert ws.sent[1] == {"type": "error", "error": "No active session"}


class TestSessionRelay:
    @pytest.mark.asyncio
    async def test_start_relays_io(self, ws, handler, run, fake_bridge, make_token, eventually):
        run()
        await _authenticate(ws, make_token, eventually)
        status = await _start(ws, eventually)

        assert status["type"] == "status"
        assert status["status"] == "started"
        assert status["sessionId"] == handler.session_id
        assert handler.state == ConnectionState.SESSION_ACTIVE

        ws.push({"type": "input", "data": "hello"})
        await eventually(lambda: ws.sent[-1] == {"type": "output", "data": "hello"})

        ws.push({"type": "resize", "cols": 132, "rows": 43})
        await eventually(lambda: fake_bridge.last_pty.resizes == [(132, 43)])

    @pytest.mark.asyncio
    async def test_output_order_is_preserved(self, ws, run, fake_bridge, make_token, eventually):
        run()
        await _authenticate(ws, make_token, eventually)
        await _start(ws, eventually)

        chunks = [f"chunk-{i}" for i in range(50)]
        for chunk in chunks:
            fake_bridge.last_pty.emit(chunk)
        await eventually(lambda: len([m for m in ws.sent if m["type"] == "output"]) == 50)

        assert [m["data"] for m in ws.sent if m["type"] == "output"] == chunks

    @pytest.mark.asyncio
    async def test_input_order_is_preserved(self, ws, run, fake_bridge, make_token, eventually):
        run()
        await _authenticate(ws, make_token, eventually)
        await _start(ws, eventually)

        for i in range(20):
            ws.push({"type": "input", "data": str(i)})
        await eventually(lambda: len(fake_bridge.last_pty.writes) == 20)
        assert fake_bridge.last_pty.writes == [str(i) for i in range(20)]

    @pytest.mark.asyncio
    async def test_process_exit(self, ws, handler, run, fake_sandbox, make_token, eventually):
        run()
        await _authenticate(ws, make_token, eventually)
        await _start(ws, eventually)

        ws.push({"type": "input", "data": "exit\r"})
        await eventually(lambda: ws.sent[-1]["type"] == "exit")
        assert ws.sent[-1] == {"type": "exit", "code": 0}

        await eventually(lambda: len(fake_sandbox.stopped) == 1)
        assert handler.state == ConnectionState.AUTHENTICATED
        assert handler.broker.registry.total_sessions == 0

    @pytest.mark.asyncio
    async def test_start_failure_keeps_connection(
        self, ws, handler, run, fake_sandbox, make_token, eventually
    ):
        fake_sandbox.fail_with = "image 'claude-env' not found"
        run()
        await _authenticate(ws, make_token, eventually)
        status = await _start(ws, eventually)

        assert status["status"] == "error"
        assert "claude-env" in status["error"]
        assert handler.state == ConnectionState.AUTHENTICATED

        fake_sandbox.fail_with = None
        status = await _start(ws, eventually)
        assert status["status"] == "started"

    @pytest.mark.asyncio
    async def test_restart_replaces_own_session_silently(
        self, ws, handler, run, fake_sandbox, make_token, eventually
    ):
        run()
        await _authenticate(ws, make_token, eventually)
        first = await _start(ws, eventually)
        second = await _start(ws, eventually)

        assert first["sessionId"] != second["sessionId"]
        assert [h.session_id for h in fake_sandbox.stopped] == [first["sessionId"]]
        assert handler.session_id == second["sessionId"]

        await asyncio.sleep(0.05)
        assert not any(m["type"] == "exit" for m in ws.sent)

    @pytest.mark.asyncio
    async def test_disconnect_stops_session(
        self, ws, handler, run, fake_sandbox, make_token, eventually
    ):
        task = run()
        await _authenticate(ws, make_token, eventually)
        await _start(ws, eventually)

        ws.disconnect()
        await asyncio.wait_for(task, timeout=2.0)

        assert len(fake_sandbox.stopped) == 1
        assert fake_sandbox.running == {}
        assert handler.broker.registry.total_sessions == 0
        assert handler.state == ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_broken_socket_stops_session(
        self, ws, handler, run, fake_sandbox, fake_bridge, make_token, eventually
    ):
        task = run()
        await _authenticate(ws, make_token, eventually)
        await _start(ws, eventually)

        ws.broken = True
        fake_bridge.last_pty.emit("lost output")
        await asyncio.wait_for(task, timeout=2.0)

        assert len(fake_sandbox.stopped) == 1
        assert handler.broker.registry.total_sessions == 0
        assert handler.state == ConnectionState.CLOSED


class TestConnectionIsolation:
    @pytest.mark.asyncio
    async def test_eviction_reports_exit_to_previous_owner(
        self, broker, verifier, make_token, eventually
    ):
        ws_a, ws_b = FakeWebSocket(), FakeWebSocket()
        a = ConnectionHandler(ws_a, broker, verifier, auth_close_delay=0)
        b = ConnectionHandler(ws_b, broker, verifier, auth_close_delay=0)
        tasks = [asyncio.create_task(a.run()), asyncio.create_task(b.run())]
        try:
            await _authenticate(ws_a, make_token, eventually)
            await _authenticate(ws_b, make_token, eventually)
            await _start(ws_a, eventually)
            await _start(ws_b, eventually)

            await eventually(lambda: ws_a.sent[-1]["type"] == "exit")
            assert a.state == ConnectionState.AUTHENTICATED
            assert broker.registry.list_active_for("alice") == {b.session_id}
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    @pytest.mark.asyncio
    async def test_other_users_unaffected_by_failure(
        self, broker, verifier, make_token, eventually
    ):
        ws_a, ws_b = FakeWebSocket(), FakeWebSocket()
        a = ConnectionHandler(ws_a, broker, verifier, auth_close_delay=0)
        b = ConnectionHandler(ws_b, broker, verifier, auth_close_delay=0)
        tasks = [asyncio.create_task(a.run()), asyncio.create_task(b.run())]
        try:
            await _authenticate(ws_a, make_token, eventually, user_id="alice")
            await _start(ws_a, eventually)

            ws_b.push({"type": "auth", "token": "bad"})
            await asyncio.wait_for(tasks[1], timeout=2.0)

            ws_a.push({"type": "input", "data": "still here"})
            await eventually(lambda: ws_a.sent[-1] == {"type": "output", "data": "still here"})
            assert b.state == ConnectionState.CLOSED
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
