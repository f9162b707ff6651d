"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and services do
the work; these types only own the domain shape.

Timestamps are timezone-aware UTC datetimes. The store converts them to and
from ISO 8601 strings at the persistence boundary. Components that compare
against "now" take a Clock so tests can move time forward.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    USER = "user"
    MANAGER = "manager"
    ADMIN = "admin"
    SUPERADMIN = "superadmin"


class AccountStatus(str, Enum):
    PENDING = "pending"  # registered, email not yet verified
    ACTIVE = "active"
    BANNED = "banned"


class TokenPurpose(str, Enum):
    PASSWORD_RESET = "password_reset"
    EMAIL_VERIFY = "email_verify"


@dataclass
class Account:
    """An identity that can log in.

    email is always stored stripped and lower-cased; the store normalizes on
    write and on lookup so callers never need to care.

    failed_login_count / last_failed_login_at hold the lockout state. They are
    columns on the account row rather than a separate record so the counter can
    be bumped with a single conditional UPDATE.
    """

    email: str
    password_hash: str
    name: str = ""
    role: Role = Role.USER
    status: AccountStatus = AccountStatus.PENDING
    id: int | None = None
    email_verified_at: datetime | None = None
    failed_login_count: int = 0
    last_failed_login_at: datetime | None = None
    last_login_at: datetime | None = None
    last_login_ip: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class LockoutState:
    """Snapshot of an account's consecutive-failure counter."""

    failed_count: int
    last_failed_at: datetime | None
    locked_until: datetime | None = None

    @property
    def locked(self) -> bool:
        return self.locked_until is not None


@dataclass
class Session:
    """One authenticated session, addressed by its refresh token.

    Only the HMAC of the refresh token is persisted (refresh_token_hash); the
    raw value exists in the client's hands and in the TokenPair returned at
    issue/rotation time.

    replaced_by points at the session created when this one was rotated, so a
    replayed refresh token can be traced to its successor in the logs.
    """

    account_id: int
    refresh_token_hash: str
    issued_at: datetime
    expires_at: datetime
    id: int | None = None
    revoked: bool = False
    revoked_at: datetime | None = None
    replaced_by: int | None = None
    user_agent: str | None = None
    ip_address: str | None = None


@dataclass
class RecoveryToken:
    """A single-use credential-recovery artifact.

    One entity serves both password reset and email verification; purpose is
    the discriminant. token_hash is HMAC-SHA256(SECRET_KEY, raw_token).
    """

    account_id: int
    token_hash: str
    purpose: TokenPurpose
    expires_at: datetime
    created_at: datetime
    id: int | None = None
    consumed_at: datetime | None = None


@dataclass(frozen=True)
class RecoveryGrant:
    """What a valid recovery token authorizes: one purpose for one account."""

    account_id: int
    purpose: TokenPurpose
    expires_at: datetime


@dataclass(frozen=True)
class AccessClaims:
    """Decoded access token payload. Never persisted."""

    account_id: int
    email: str
    role: Role
    session_id: int
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int  # access token lifetime, seconds
    session_id: int
    token_type: str = "bearer"  # noqa: S105 -- OAuth token type, not a password


@dataclass(frozen=True)
class LoginResult:
    """Login outcome: the account view (no password hash) plus the token pair."""

    account: dict
    tokens: TokenPair
