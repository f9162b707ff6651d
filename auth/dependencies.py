"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Bearer tokens arrive in the Authorization header. The raw token is handed to
AuthService, which owns verification; these helpers only extract it and pick
the service off app.state.

bearer_token() is the soft variant (returns None when the header is absent).
get_current_account() resolves the account or raises MissingAccessToken /
InvalidAccessToken. Role checks stay in AuthService so every caller, HTTP or
CLI, goes through the same role_allows() gate.

Errors are raised as AuthError subclasses; api/main.py renders them into the
standard error envelope.

Layer rule: no imports from api/ or core/.
  auth/dependencies.py may import from fastapi (for Depends/Request) because
  this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Depends, Request

from auth.models import Account
from auth.service import AuthService


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def bearer_token(request: Request) -> str | None:
    """Return the token from 'Authorization: Bearer <token>', or None."""
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_current_account(
    token: str | None = Depends(bearer_token),
    service: AuthService = Depends(get_auth_service),
) -> Account:
    """Require a valid access token for a non-banned account.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(account: Account = Depends(get_current_account)): ...
    """
    return service.current_user(token)
