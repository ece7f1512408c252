"""
Request dependencies shared by the REST routes.
"""

from typing import Optional

from fastapi import Header, Request

from claudebox.core.broker import SessionBroker
from claudebox.lib.auth import Principal
from claudebox.lib.errors import AuthError


def get_broker(request: Request) -> SessionBroker:
    return request.app.state.broker


def get_principal(
    request: Request,
    authorization: Optional[str] = Header(default=None),
) -> Principal:
    """Resolve the caller from an `Authorization: Bearer <token>` header."""
    if not authorization:
        raise AuthError("Missing bearer token")

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthError("Missing bearer token")

    return request.app.state.verifier.verify(token.strip())
