"""
Typed errors for the session broker.

Every failure the broker reports to a client is one of these. The REST layer
turns them into `{"error": ..., "code": ...}` responses with the matching
status code; the WebSocket layer turns them into `status`/`error` messages.
"""

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """Error codes for programmatic handling."""

    # Authentication errors
    AUTH_REQUIRED = "auth_required"
    INVALID_CREDENTIAL = "invalid_credential"
    FORBIDDEN = "forbidden"

    # Provisioning errors
    PROVISIONING_FAILED = "provisioning_failed"
    EXECUTABLE_NOT_FOUND = "executable_not_found"
    DOCKER_UNAVAILABLE = "docker_unavailable"

    # Protocol errors
    PROTOCOL_ERROR = "protocol_error"
    NO_ACTIVE_SESSION = "no_active_session"
    UNKNOWN_COMMAND = "unknown_command"

    # Session errors
    SESSION_NOT_FOUND = "session_not_found"

    # Transport errors
    TRANSPORT_CLOSED = "transport_closed"

    # Configuration
    CONFIG_ERROR = "config_error"


class BrokerError(Exception):
    """Base class for errors that carry a client-facing message."""

    code: ErrorCode = ErrorCode.PROTOCOL_ERROR
    status_code: int = 500

    def __init__(self, message: str, code: Optional[ErrorCode] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code.value}


class AuthError(BrokerError):
    """Missing credential or a message that requires authentication."""

    code = ErrorCode.AUTH_REQUIRED
    status_code = 401


class InvalidCredentialError(AuthError):
    """Token rejected. The reason is deliberately opaque."""

    code = ErrorCode.INVALID_CREDENTIAL

    def __init__(self, message: str = "Invalid credential"):
        super().__init__(message)


class ForbiddenError(BrokerError):
    code = ErrorCode.FORBIDDEN
    status_code = 403


class SessionNotFoundError(BrokerError):
    code = ErrorCode.SESSION_NOT_FOUND
    status_code = 404


class ProtocolError(BrokerError):
    """Message not allowed in the current state, or malformed."""

    code = ErrorCode.PROTOCOL_ERROR
    status_code = 400


class NoActiveSessionError(ProtocolError):
    code = ErrorCode.NO_ACTIVE_SESSION


class ProvisioningError(BrokerError):
    """Sandbox or terminal creation failed. The connection stays usable."""

    code = ErrorCode.PROVISIONING_FAILED
    status_code = 500

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        session_id: Optional[str] = None,
    ):
        super().__init__(message, code)
        self.session_id = session_id


class BridgeError(ProvisioningError):
    """Terminal attachment failed."""


class TransportError(BrokerError):
    """Socket closed or broken mid-session. Nothing can be sent back."""

    code = ErrorCode.TRANSPORT_CLOSED


class ConfigError(BrokerError):
    """A startup precondition is absent. Fatal, not a runtime fault."""

    code = ErrorCode.CONFIG_ERROR
