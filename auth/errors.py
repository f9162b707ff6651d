"""
auth/errors.py -- Typed failures raised by the auth core.

Every failure the core can surface to a caller is an AuthError subclass with a
stable machine-readable code, a human message, and the HTTP status the API
layer should render it with. The API layer turns any AuthError into the shared
ErrorResponse envelope; the CLI prints the message.

Deliberately collapsed signals:
  InvalidCredentials   -- unknown email and wrong password are indistinguishable.
  InvalidOrExpiredToken -- not found, expired, consumed and wrong-purpose
                           recovery tokens all look the same to the caller.
  InvalidRefreshToken  -- not found, revoked, expired and already-rotated.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for every failure the auth core reports to its callers."""

    status_code: int = 400
    code: str = "auth_error"
    message: str = "Authentication failed."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)
        if message:
            self.message = message


class InvalidCredentials(AuthError):
    status_code = 401
    code = "invalid_credentials"
    message = "Invalid email or password."


class AccountLocked(AuthError):
    status_code = 423
    code = "account_locked"
    message = "Account is temporarily locked after repeated failed logins."

    def __init__(self, retry_after: int) -> None:
        minutes = max(1, -(-retry_after // 60))
        super().__init__(f"Account is locked. Try again in {minutes} minute{'s' if minutes != 1 else ''}.")
        self.retry_after = retry_after


class AccountBanned(AuthError):
    status_code = 403
    code = "account_banned"
    message = "Account has been banned."


class InvalidOrExpiredToken(AuthError):
    status_code = 400
    code = "invalid_or_expired_token"
    message = "Invalid or expired token."


class InvalidRefreshToken(AuthError):
    status_code = 401
    code = "invalid_refresh_token"
    message = "Invalid refresh token."


class MissingAccessToken(AuthError):
    status_code = 401
    code = "no_token"
    message = "No access token provided."


class InvalidAccessToken(AuthError):
    status_code = 401
    code = "invalid_token"
    message = "Invalid or expired access token."


class RateLimited(AuthError):
    status_code = 429
    code = "rate_limited"
    message = "Too many requests. Please try again later."


class EmailAlreadyRegistered(AuthError):
    status_code = 409
    code = "conflict"
    message = "An account with that email already exists."


class PermissionDenied(AuthError):
    status_code = 403
    code = "forbidden"
    message = "Insufficient privileges."


class AccountNotFound(AuthError):
    status_code = 404
    code = "not_found"
    message = "Account not found."


class AuthInternalError(AuthError):
    """Opaque, non-retryable failure. Details go to the log, never to the caller."""

    status_code = 500
    code = "internal_error"
    message = "An unexpected error occurred."
