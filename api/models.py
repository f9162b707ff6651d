"""
API request and response models for authkeeper REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from auth.credentials import PASSWORD_MAX_LENGTH, password_policy_errors
from auth.models import RecoveryToken, Session, TokenPair

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    user = "user"
    manager = "manager"
    admin = "admin"
    superadmin = "superadmin"


class StatusEnum(str, Enum):
    pending = "pending"
    active = "active"
    banned = "banned"


# ---------------------------------------------------------------------------
# Shared validation
# ---------------------------------------------------------------------------


def _check_password_policy(value: str) -> str:
    errors = password_policy_errors(value)
    if errors:
        raise ValueError(" ".join(errors))
    return value


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    The password is only length-checked here. Policy rules apply to new
    passwords, not to login attempts against existing ones.
    """

    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=PASSWORD_MAX_LENGTH)


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    email: EmailStr
    password: str = Field(max_length=PASSWORD_MAX_LENGTH)
    name: str = Field(default="", max_length=255)

    @field_validator("password")
    @classmethod
    def password_policy(cls, v: str) -> str:
        return _check_password_policy(v)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1, max_length=512)


class EmailRequest(BaseModel):
    """Request body for the reset-request and verification-resend endpoints."""

    email: EmailStr


class TokenRequest(BaseModel):
    """Request body carrying a single recovery token."""

    token: str = Field(min_length=1, max_length=512)


class PasswordResetConfirm(BaseModel):
    """Request body for POST /api/v1/auth/password-reset/confirm."""

    token: str = Field(min_length=1, max_length=512)
    new_password: str = Field(max_length=PASSWORD_MAX_LENGTH)

    @field_validator("new_password")
    @classmethod
    def password_policy(cls, v: str) -> str:
        return _check_password_policy(v)


class StatusPatch(BaseModel):
    """Request body for PATCH /api/v1/auth/admin/accounts/{id}/status."""

    status: StatusEnum


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class AccountResponse(BaseModel):
    """Public account view. Never carries the password hash."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    name: str
    role: RoleEnum
    status: StatusEnum
    email_verified: bool
    email_verified_at: Optional[str] = None
    last_login_at: Optional[str] = None
    created_at: Optional[str] = None


class TokenPairResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"  # noqa: S105 # nosec B105 -- OAuth token type, not a password
    expires_in: int
    session_id: int

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenPairResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_in=pair.expires_in,
            session_id=pair.session_id,
        )


class LoginResponse(BaseModel):
    """Response for POST /api/v1/auth/login."""

    model_config = ConfigDict(frozen=True)

    account: AccountResponse
    tokens: TokenPairResponse


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    message: str


class TokenCheckResponse(BaseModel):
    """Response for POST /api/v1/auth/password-reset/verify."""

    model_config = ConfigDict(frozen=True)

    valid: bool
    email: str


class LogoutAllResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    revoked: int


class SessionResponse(BaseModel):
    """One active session. The refresh token hash is never exposed."""

    model_config = ConfigDict(frozen=True)

    id: int
    issued_at: str
    expires_at: str
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None

    @classmethod
    def from_session(cls, session: Session) -> "SessionResponse":
        return cls(
            id=session.id,
            issued_at=session.issued_at.isoformat(),
            expires_at=session.expires_at.isoformat(),
            user_agent=session.user_agent,
            ip_address=session.ip_address,
        )


class RecoveryTokenInfo(BaseModel):
    """Admin view of an outstanding recovery token. The hash is never exposed."""

    model_config = ConfigDict(frozen=True)

    id: int
    purpose: str
    created_at: str
    expires_at: str

    @classmethod
    def from_token(cls, token: RecoveryToken) -> "RecoveryTokenInfo":
        return cls(
            id=token.id,
            purpose=token.purpose.value,
            created_at=token.created_at.isoformat(),
            expires_at=token.expires_at.isoformat(),
        )


class CancelledResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    cancelled: int


class SweepResponse(BaseModel):
    """Response for POST /api/v1/auth/admin/sweep."""

    model_config = ConfigDict(frozen=True)

    recovery_tokens: int
    sessions: int


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
