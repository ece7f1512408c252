"""
Bearer token verification.

Tokens are HS256 JWTs issued by the identity provider and signed with a
secret shared with this process. Verification is a pure function of the token
and that secret; every rejection collapses to one opaque outcome so callers
cannot probe why a token failed.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from claudebox.lib.errors import ConfigError, InvalidCredentialError

logger = logging.getLogger(__name__)

DEFAULT_ALGORITHM = "HS256"
DEFAULT_AUDIENCE = "authenticated"
DEFAULT_ROLE = "authenticated"


@dataclass(frozen=True)
class Principal:
    """The authenticated identity derived from a verified token."""

    user_id: str
    email: str = ""
    role: str = DEFAULT_ROLE


class TokenVerifier:
    """Verifies bearer tokens against a shared signing secret."""

    def __init__(
        self,
        secret: Optional[str],
        algorithm: str = DEFAULT_ALGORITHM,
        audience: Optional[str] = DEFAULT_AUDIENCE,
        leeway: float = 0,
    ):
        if not secret:
            raise ConfigError("Token signing secret is not configured")
        self._secret = secret
        self.algorithm = algorithm
        self.audience = audience or None
        self.leeway = leeway

    def verify(self, token: Optional[str]) -> Principal:
        """Return the token's principal, or raise InvalidCredentialError."""
        if not token or not isinstance(token, str):
            raise InvalidCredentialError()

        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[self.algorithm],
                audience=self.audience,
                leeway=self.leeway,
                options={
                    "require": ["exp", "sub"],
                    "verify_aud": self.audience is not None,
                },
            )
        except jwt.PyJWTError as e:
            logger.debug(f"Token rejected: {type(e).__name__}: {e}")
            raise InvalidCredentialError() from None

        user_id = claims.get("sub")
        if not isinstance(user_id, str) or not user_id:
            logger.debug("Token rejected: empty subject")
            raise InvalidCredentialError()

        return Principal(
            user_id=user_id,
            email=claims.get("email") or "",
            role=claims.get("role") or DEFAULT_ROLE,
        )


def issue_token(
    secret: str,
    user_id: str,
    email: str = "",
    role: str = DEFAULT_ROLE,
    ttl_seconds: int = 3600,
    audience: Optional[str] = DEFAULT_AUDIENCE,
    algorithm: str = DEFAULT_ALGORITHM,
) -> str:
    """Mint a token in the identity provider's format.

    Used by the CLI for local development and by the test suite.
    """
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "email": email,
        "role": role,
        "iat": now,
        "exp": now + timedelta(seconds=ttl_seconds),
    }
    if audience:
        payload["aud"] = audience
    return jwt.encode(payload, secret, algorithm=algorithm)
