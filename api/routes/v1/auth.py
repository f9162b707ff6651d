"""
api/routes/v1/auth.py -- Credential lifecycle REST endpoints.

Routes:
  POST   /api/v1/auth/register                         -- create pending account (201)
  POST   /api/v1/auth/login                            -- password login; returns token pair
  POST   /api/v1/auth/refresh                          -- rotate refresh token
  POST   /api/v1/auth/logout                           -- revoke this access token's session
  POST   /api/v1/auth/logout-all                       -- revoke every session of the caller
  GET    /api/v1/auth/me                               -- current account
  GET    /api/v1/auth/sessions                         -- caller's active sessions
  POST   /api/v1/auth/password-reset/request           -- always 200, generic message
  POST   /api/v1/auth/password-reset/verify            -- check a reset token
  POST   /api/v1/auth/password-reset/confirm           -- set new password
  POST   /api/v1/auth/email-verification/resend        -- always 200, generic message
  POST   /api/v1/auth/email-verification/confirm       -- activate account
  PATCH  /api/v1/auth/admin/accounts/{id}/status       -- ban / unban (admin)
  GET    /api/v1/auth/admin/accounts/{id}/recovery-tokens -- outstanding tokens (admin)
  DELETE /api/v1/auth/admin/accounts/{id}/recovery-tokens -- cancel tokens (admin)
  POST   /api/v1/auth/admin/sweep                      -- delete expired tokens/sessions (admin)

Security:
  [H2] login and the two recovery request endpoints are rate-limited per IP
       (LOGIN_RATE_LIMIT / RECOVERY_RATE_LIMIT). The recovery limit per
       (account, purpose) is separate and lives in RecoveryTokenManager.
  [C1] Handlers never look accounts up themselves -- AuthService owns the
       timing-equalized paths.
  [M5] Cache-Control: no-store on every response that carries a credential.

Handlers are sync `def`: AuthService does blocking bcrypt and SQL work, so
FastAPI runs them in its thread pool.

No `from __future__ import annotations` here: slowapi wraps the limited
handlers, and FastAPI must be able to resolve their annotations as real types.
"""

from fastapi import APIRouter, BackgroundTasks, Depends, Request, Response

from api.limiter import limiter
from api.models import (
    AccountResponse,
    CancelledResponse,
    EmailRequest,
    LoginRequest,
    LoginResponse,
    LogoutAllResponse,
    MessageResponse,
    PasswordResetConfirm,
    RecoveryTokenInfo,
    RefreshRequest,
    RegisterRequest,
    SessionResponse,
    StatusPatch,
    SweepResponse,
    TokenCheckResponse,
    TokenPairResponse,
    TokenRequest,
)
from auth.dependencies import bearer_token, get_auth_service, get_current_account
from auth.models import Account, AccountStatus
from auth.service import AuthService, public_account
from core.config import get_settings

# Auth policy:
# - register, login, refresh, password-reset/*, email-verification/*: public
# - logout, logout-all:      bearer token (AuthService raises 401 itself)
# - me, sessions:            requires auth (get_current_account)
# - admin/*:                 requires auth; AuthService enforces role_allows(ADMIN)
router = APIRouter()


_settings = get_settings()


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def _no_store(response: Response) -> None:
    response.headers["Cache-Control"] = "no-store"  # [M5]


# ---------------------------------------------------------------------------
# Registration and login
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=AccountResponse, status_code=201)
def register(
    body: RegisterRequest,
    background_tasks: BackgroundTasks,
    service: AuthService = Depends(get_auth_service),
) -> AccountResponse:
    """Create a pending account and email a verification link.

    Returns 409 if the email is already registered.
    """
    account = service.register(body.email, body.password, body.name, schedule=background_tasks.add_task)
    return AccountResponse(**public_account(account))


@router.post("/auth/login", response_model=LoginResponse)
@limiter.limit(_settings.login_rate_limit)  # [H2] must sit BELOW @router so the route registers the limited wrapper
def login(
    request: Request,
    response: Response,
    body: LoginRequest,
    service: AuthService = Depends(get_auth_service),
) -> LoginResponse:
    """Authenticate with email and password; return account view and token pair.

    Unknown email and wrong password both answer 401 invalid_credentials.
    A locked account answers 423 with a Retry-After header.
    """
    _no_store(response)
    result = service.login(
        body.email,
        body.password,
        user_agent=request.headers.get("User-Agent"),
        ip_address=_client_ip(request),
    )
    return LoginResponse(
        account=AccountResponse(**result.account),
        tokens=TokenPairResponse.from_pair(result.tokens),
    )


@router.post("/auth/refresh", response_model=TokenPairResponse)
def refresh(
    response: Response,
    body: RefreshRequest,
    service: AuthService = Depends(get_auth_service),
) -> TokenPairResponse:
    """Exchange a refresh token for a new pair. The presented token stops working."""
    _no_store(response)
    return TokenPairResponse.from_pair(service.refresh(body.refresh_token))


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    token: str | None = Depends(bearer_token),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Revoke the session behind the access token.

    The access token itself remains valid until it expires.
    """
    service.logout(token)
    return MessageResponse(message="Logged out.")


@router.post("/auth/logout-all", response_model=LogoutAllResponse)
def logout_all(
    token: str | None = Depends(bearer_token),
    service: AuthService = Depends(get_auth_service),
) -> LogoutAllResponse:
    return LogoutAllResponse(revoked=service.logout_all(token))


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=AccountResponse)
def me(account: Account = Depends(get_current_account)) -> AccountResponse:
    """Return the account the access token belongs to."""
    return AccountResponse(**public_account(account))


@router.get("/auth/sessions", response_model=list[SessionResponse])
def sessions(
    token: str | None = Depends(bearer_token),
    service: AuthService = Depends(get_auth_service),
) -> list[SessionResponse]:
    return [SessionResponse.from_session(s) for s in service.list_sessions(token)]


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@router.post("/auth/password-reset/request", response_model=MessageResponse)
@limiter.limit(_settings.recovery_rate_limit)  # [H2]
def request_password_reset(
    request: Request,
    body: EmailRequest,
    background_tasks: BackgroundTasks,
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Always 200 with the same message, whether or not the email exists.

    The email goes out as a background task after the response, so response
    time does not reveal whether the address has an account.
    """
    result = service.request_password_reset(body.email, schedule=background_tasks.add_task)
    return MessageResponse(success=result["success"], message=result["message"])


@router.post("/auth/password-reset/verify", response_model=TokenCheckResponse)
def verify_password_reset(
    response: Response,
    body: TokenRequest,
    service: AuthService = Depends(get_auth_service),
) -> TokenCheckResponse:
    _no_store(response)
    return TokenCheckResponse(**service.verify_password_reset_token(body.token))


@router.post("/auth/password-reset/confirm", response_model=MessageResponse)
def confirm_password_reset(
    response: Response,
    body: PasswordResetConfirm,
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Set a new password. Clears lockout and revokes every session."""
    _no_store(response)
    result = service.confirm_password_reset(body.token, body.new_password)
    return MessageResponse(success=result["success"], message=result["message"])


# ---------------------------------------------------------------------------
# Email verification
# ---------------------------------------------------------------------------


@router.post("/auth/email-verification/resend", response_model=MessageResponse)
@limiter.limit(_settings.recovery_rate_limit)  # [H2]
def resend_email_verification(
    request: Request,
    body: EmailRequest,
    background_tasks: BackgroundTasks,
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    result = service.request_email_verification(body.email, schedule=background_tasks.add_task)
    return MessageResponse(success=result["success"], message=result["message"])


@router.post("/auth/email-verification/confirm", response_model=AccountResponse)
def confirm_email_verification(
    body: TokenRequest,
    service: AuthService = Depends(get_auth_service),
) -> AccountResponse:
    return AccountResponse(**public_account(service.confirm_email_verification(body.token)))


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------


@router.patch("/auth/admin/accounts/{account_id}/status", response_model=AccountResponse)
def set_account_status(
    account_id: int,
    body: StatusPatch,
    actor: Account = Depends(get_current_account),
    service: AuthService = Depends(get_auth_service),
) -> AccountResponse:
    """Change an account's status. Banning revokes all of its sessions."""
    account = service.set_account_status(actor, account_id, AccountStatus(body.status.value))
    return AccountResponse(**public_account(account))


@router.get("/auth/admin/accounts/{account_id}/recovery-tokens", response_model=list[RecoveryTokenInfo])
def list_recovery_tokens(
    account_id: int,
    actor: Account = Depends(get_current_account),
    service: AuthService = Depends(get_auth_service),
) -> list[RecoveryTokenInfo]:
    return [RecoveryTokenInfo.from_token(t) for t in service.list_recovery_tokens(actor, account_id)]


@router.delete("/auth/admin/accounts/{account_id}/recovery-tokens", response_model=CancelledResponse)
def cancel_recovery_tokens(
    account_id: int,
    actor: Account = Depends(get_current_account),
    service: AuthService = Depends(get_auth_service),
) -> CancelledResponse:
    return CancelledResponse(cancelled=service.cancel_recovery_tokens(actor, account_id))


@router.post("/auth/admin/sweep", response_model=SweepResponse)
def sweep(
    actor: Account = Depends(get_current_account),
    service: AuthService = Depends(get_auth_service),
) -> SweepResponse:
    return SweepResponse(**service.sweep_expired(actor))
