"""
Unit tests for the WebSocket message envelope.
"""

import json

import pytest

from claudebox.lib.errors import ProtocolError
from claudebox.models.messages import (
    AuthMessage,
    AuthResult,
    ExitMessage,
    InputMessage,
    ResizeMessage,
    StartMessage,
    StatusMessage,
    parse_client_message,
)


class TestParseClientMessage:
    def test_auth(self):
        msg = parse_client_message(json.dumps({"type": "auth", "token": "t", "user": {"id": "x"}}))
        assert isinstance(msg, AuthMessage)
        assert msg.token == "t"
        assert msg.user.id == "x"

    def test_start_with_project_path_alias(self):
        msg = parse_client_message(json.dumps({"type": "start", "projectPath": "demo"}))
        assert isinstance(msg, StartMessage)
        assert msg.project_path == "demo"

    def test_input_is_verbatim(self):
        data = "\x1b[A\r\nünïcode"
        msg = parse_client_message(json.dumps({"type": "input", "data": data}))
        assert isinstance(msg, InputMessage)
        assert msg.data == data

    def test_resize(self):
        msg = parse_client_message(json.dumps({"type": "resize", "cols": 120, "rows": 40}))
        assert isinstance(msg, ResizeMessage)
        assert (msg.cols, msg.rows) == (120, 40)

    @pytest.mark.parametrize("raw", ["not json", "[1, 2]", '"text"'])
    def test_malformed(self, raw):
        with pytest.raises(ProtocolError, match="Invalid message format"):
            parse_client_message(raw)

    def test_unknown_type(self):
        with pytest.raises(ProtocolError, match="Unknown message type: bogus"):
            parse_client_message(json.dumps({"type": "bogus"}))

    def test_missing_type(self):
        with pytest.raises(ProtocolError, match="Unknown message type"):
            parse_client_message(json.dumps({"data": "x"}))

    def test_invalid_fields(self):
        with pytest.raises(ProtocolError, match="Invalid resize message"):
            parse_client_message(json.dumps({"type": "resize", "cols": 0, "rows": 24}))

    def test_input_requires_data(self):
        with pytest.raises(ProtocolError, match="Invalid input message: data"):
            parse_client_message(json.dumps({"type": "input"}))


class TestServerMessages:
    def test_auth_result_omits_unset_fields(self):
        assert AuthResult(status="authenticated").to_wire() == {
            "type": "auth",
            "status": "authenticated",
        }

    def test_status_uses_camel_case(self):
        wire = StatusMessage(status="started", session_id="abc").to_wire()
        assert wire == {"type": "status", "status": "started", "sessionId": "abc"}

    def test_exit_keeps_zero_code(self):
        assert ExitMessage(code=0).to_wire() == {"type": "exit", "code": 0}

    def test_exit_with_signal(self):
        assert ExitMessage(code=143, signal=15).to_wire() == {"type": "exit", "code": 143, "signal": 15}
