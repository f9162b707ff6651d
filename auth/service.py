"""
auth/service.py -- AuthService, the single entry point for credential flows.

The API routes and the CLI call AuthService and nothing below it. The
service composes LockoutTracker, TokenIssuer, RecoveryTokenManager and an
EmailSender over one AuthStore, and owns the ordering of every flow:

  login:   check lockout -> verify password -> check ban -> clear lockout
           -> stamp last login -> issue tokens
  reset:   verify token -> hash new password -> consume token, set password
           and clear lockout in one transaction -> cancel other tokens
           -> revoke every session
  verify:  consume token -> stamp email_verified_at -> pending becomes active

Error contract:
  Every failure a caller can see is an AuthError (auth/errors.py).
  SQLAlchemyError from the store is logged with its traceback and re-raised
  as AuthInternalError. Nothing is retried here.
  Email delivery never changes an outcome: sender exceptions are logged and
  dropped.
  Callers that hold a request open pass `schedule` (BackgroundTasks.add_task)
  so the send runs after the response. Known and unknown addresses then take
  the same time to answer.

Enumeration resistance [C1]:
  Unknown emails at login cost one dummy bcrypt check and fail exactly like a
  wrong password. Reset and resend requests answer the same generic message
  whether or not the address exists, and external callers never learn that
  they were rate limited.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from contextlib import contextmanager
from datetime import datetime

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.credentials import hash_password, verify_dummy_password, verify_password
from auth.email import EmailSender, LogEmailSender, redact_email
from auth.errors import (
    AccountBanned,
    AccountLocked,
    AccountNotFound,
    AuthInternalError,
    EmailAlreadyRegistered,
    InvalidAccessToken,
    InvalidCredentials,
    InvalidOrExpiredToken,
    MissingAccessToken,
    PermissionDenied,
    RateLimited,
)
from auth.lockout import LockoutTracker
from auth.models import (
    AccessClaims,
    Account,
    AccountStatus,
    Clock,
    LoginResult,
    RecoveryToken,
    Role,
    Session,
    TokenPair,
    TokenPurpose,
    utcnow,
)
from auth.permissions import role_allows
from auth.recovery import RecoveryTokenManager
from auth.store import AuthStore, normalize_email
from auth.tokens import TokenIssuer

logger = logging.getLogger("authkeeper.auth")

RESET_REQUEST_MESSAGE = "If an account with that email exists, a password reset link has been sent."
VERIFY_REQUEST_MESSAGE = "If an account with that email needs verification, a verification link has been sent."

# Runs func(*args) later, e.g. fastapi.BackgroundTasks.add_task
Schedule = Callable[..., None]


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def public_account(account: Account) -> dict:
    """Account view safe to return to callers. Never includes the password hash."""
    return {
        "id": account.id,
        "email": account.email,
        "name": account.name,
        "role": Role(account.role).value,
        "status": AccountStatus(account.status).value,
        "email_verified": account.email_verified_at is not None,
        "email_verified_at": _iso(account.email_verified_at),
        "last_login_at": _iso(account.last_login_at),
        "created_at": _iso(account.created_at),
    }


class AuthService:
    """Orchestrates login, bearer tokens and recovery over one AuthStore.

    Usage:
        service = AuthService(AuthStore(settings.database_url), settings)
        account = service.register("john@example.com", "Secret123", "John")
        result = service.login("john@example.com", "Secret123")
        pair = service.refresh(result.tokens.refresh_token)
    """

    def __init__(
        self,
        store: AuthStore,
        settings,
        email_sender: EmailSender | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.clock = clock
        self.email_sender = email_sender or LogEmailSender()
        self.bcrypt_rounds = settings.bcrypt_rounds
        self.lockout = LockoutTracker(
            store,
            max_attempts=settings.lockout_max_attempts,
            window_seconds=settings.lockout_window_seconds,
            cooldown_seconds=settings.lockout_cooldown_seconds,
            clock=clock,
        )
        self.tokens = TokenIssuer(
            store,
            secret_key=settings.secret_key,
            issuer=settings.jwt_issuer,
            access_ttl=settings.access_token_expire_seconds,
            refresh_ttl=settings.refresh_token_expire_seconds,
            clock=clock,
        )
        self.recovery = RecoveryTokenManager(
            store,
            secret_key=settings.secret_key,
            ttl_seconds={
                TokenPurpose.PASSWORD_RESET: settings.password_reset_ttl_seconds,
                TokenPurpose.EMAIL_VERIFY: settings.email_verify_ttl_seconds,
            },
            max_requests=settings.recovery_max_requests,
            rate_window_seconds=settings.recovery_rate_window_seconds,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _storage(self, operation: str):
        try:
            yield
        except SQLAlchemyError:
            logger.exception("Storage failure during %s", operation)
            raise AuthInternalError() from None

    def _deliver(self, send, account: Account, token: str) -> None:
        try:
            send(account.email, account.name, token)
        except Exception:
            logger.exception("Email delivery to %s failed", redact_email(account.email))

    def _dispatch(self, send, account: Account, token: str, schedule: Schedule | None) -> None:
        if schedule is None:
            self._deliver(send, account, token)
        else:
            schedule(self._deliver, send, account, token)

    def _claims(self, access_token: str | None) -> AccessClaims:
        if not access_token:
            raise MissingAccessToken()
        return self.tokens.verify_access(access_token)

    def _require_admin(self, actor: Account) -> None:
        if not role_allows(actor.role, Role.ADMIN):
            logger.warning("Account %s (role %s) denied admin operation", actor.id, Role(actor.role).value)
            raise PermissionDenied()

    def _get_account(self, account_id: int) -> Account:
        account = self.store.get_by_id(account_id)
        if account is None:
            raise AccountNotFound()
        return account

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def create_account(
        self,
        email: str,
        password: str,
        name: str = "",
        role: Role = Role.USER,
        status: AccountStatus = AccountStatus.PENDING,
    ) -> Account:
        """Insert an account. Raises EmailAlreadyRegistered on a duplicate email.

        Accounts created as ACTIVE are stamped as email-verified. No email is
        sent; register() is the self-service path that also sends one.
        """
        email = normalize_email(email)
        now = self.clock()
        with self._storage("create_account"):
            if self.store.get_by_email(email) is not None:
                raise EmailAlreadyRegistered()
            account = Account(
                email=email,
                password_hash=hash_password(password, self.bcrypt_rounds),
                name=name.strip(),
                role=Role(role),
                status=AccountStatus(status),
                email_verified_at=now if status == AccountStatus.ACTIVE else None,
            )
            try:
                account_id = self.store.create_account(account, now)
            except IntegrityError:
                # Lost a race with a concurrent registration of the same email
                raise EmailAlreadyRegistered() from None
            created = self.store.get_by_id(account_id)
        logger.info("Account %s created (%s, %s)", account_id, created.role.value, created.status.value)
        return created

    def register(
        self, email: str, password: str, name: str = "", schedule: Schedule | None = None
    ) -> Account:
        """Self-service signup: pending account plus an email verification link."""
        account = self.create_account(email, password, name)
        with self._storage("register"):
            token = self.recovery.request_token(account.id, TokenPurpose.EMAIL_VERIFY)
        self._dispatch(self.email_sender.send_email_verification, account, token, schedule)
        return account

    # ------------------------------------------------------------------
    # Login and bearer tokens
    # ------------------------------------------------------------------

    def login(
        self,
        email: str,
        password: str,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> LoginResult:
        with self._storage("login"):
            account = self.store.get_by_email(email)
            if account is None:
                # Same bcrypt cost as a real check [C1]
                verify_dummy_password(password, self.bcrypt_rounds)
                raise InvalidCredentials()

            state = self.lockout.state(account.id)
            if state.locked:
                retry_after = math.ceil((state.locked_until - self.clock()).total_seconds())
                logger.warning("Login rejected for locked account %s", account.id)
                raise AccountLocked(retry_after=max(retry_after, 1))

            if not verify_password(password, account.password_hash):
                self.lockout.record_failure(account.id)
                raise InvalidCredentials()

            if account.status == AccountStatus.BANNED:
                logger.warning("Login rejected for banned account %s", account.id)
                raise AccountBanned()

            self.lockout.record_success(account.id)
            self.store.update_last_login(account.id, self.clock(), ip_address)
            tokens = self.tokens.issue(account, user_agent=user_agent, ip_address=ip_address)
            account = self.store.get_by_id(account.id)
        logger.info("Account %s logged in (session %s)", account.id, tokens.session_id)
        return LoginResult(account=public_account(account), tokens=tokens)

    def refresh(self, refresh_token: str) -> TokenPair:
        with self._storage("refresh"):
            return self.tokens.rotate(refresh_token)

    def logout(self, access_token: str | None) -> None:
        """Revoke the session the access token was issued for. Idempotent.

        The access token itself stays valid until it expires.
        """
        claims = self._claims(access_token)
        with self._storage("logout"):
            self.tokens.revoke_session(claims.session_id)

    def logout_all(self, access_token: str | None) -> int:
        claims = self._claims(access_token)
        with self._storage("logout_all"):
            return self.tokens.revoke_all(claims.account_id)

    def current_user(self, access_token: str | None) -> Account:
        claims = self._claims(access_token)
        with self._storage("current_user"):
            account = self.store.get_by_id(claims.account_id)
        if account is None or account.status == AccountStatus.BANNED:
            raise InvalidAccessToken()
        return account

    def list_sessions(self, access_token: str | None) -> list[Session]:
        claims = self._claims(access_token)
        with self._storage("list_sessions"):
            return self.tokens.list_sessions(claims.account_id)

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def request_password_reset(
        self, email: str, privileged: bool = False, schedule: Schedule | None = None
    ) -> dict:
        """Start a reset. External callers always get the same generic answer.

        privileged=True is for internal tooling: unknown emails raise
        AccountNotFound, rate limiting raises RateLimited, and the raw token
        is included in the result so the caller can build a link.
        """
        result = {"success": True, "message": RESET_REQUEST_MESSAGE}
        with self._storage("request_password_reset"):
            account = self.store.get_by_email(email)
            if account is None:
                logger.info("Password reset requested for unknown address %s", redact_email(email))
                if privileged:
                    raise AccountNotFound()
                return result
            try:
                token = self.recovery.request_token(account.id, TokenPurpose.PASSWORD_RESET)
            except RateLimited:
                if privileged:
                    raise
                return result
        self._dispatch(self.email_sender.send_password_reset, account, token, schedule)
        if privileged:
            return {**result, "token": token}
        return result

    def verify_password_reset_token(self, token: str) -> dict:
        with self._storage("verify_password_reset_token"):
            grant = self.recovery.verify(token, TokenPurpose.PASSWORD_RESET)
            account = self.store.get_by_id(grant.account_id)
        if account is None:
            raise InvalidOrExpiredToken()
        return {"valid": True, "email": account.email}

    def confirm_password_reset(self, token: str, new_password: str) -> dict:
        with self._storage("confirm_password_reset"):
            self.recovery.verify(token, TokenPurpose.PASSWORD_RESET)
            password_hash = hash_password(new_password, self.bcrypt_rounds)
            grant = self.recovery.consume(token, TokenPurpose.PASSWORD_RESET, password_hash=password_hash)
            account_id = grant.account_id
            self.recovery.cancel(account_id)
            revoked = self.tokens.revoke_all(account_id)
        logger.info("Password reset for account %s; %d session(s) revoked", account_id, revoked)
        return {"success": True, "message": "Password has been reset. Please log in with your new password."}

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    def request_email_verification(
        self, email: str, privileged: bool = False, schedule: Schedule | None = None
    ) -> dict:
        """Resend the verification link. No-op for unknown or verified accounts."""
        result = {"success": True, "message": VERIFY_REQUEST_MESSAGE}
        with self._storage("request_email_verification"):
            account = self.store.get_by_email(email)
            if account is None or account.email_verified_at is not None:
                return result
            try:
                token = self.recovery.request_token(account.id, TokenPurpose.EMAIL_VERIFY)
            except RateLimited:
                if privileged:
                    raise
                return result
        self._dispatch(self.email_sender.send_email_verification, account, token, schedule)
        if privileged:
            return {**result, "token": token}
        return result

    def confirm_email_verification(self, token: str) -> Account:
        with self._storage("confirm_email_verification"):
            grant = self.recovery.consume(token, TokenPurpose.EMAIL_VERIFY)
            account = self.store.get_by_id(grant.account_id)
            if account is None:
                raise InvalidOrExpiredToken()
            fields = {"email_verified_at": self.clock()}
            if account.status == AccountStatus.PENDING:
                fields["status"] = AccountStatus.ACTIVE
            self.store.update_account(account.id, self.clock(), **fields)
            account = self.store.get_by_id(account.id)
        logger.info("Email verified for account %s", account.id)
        return account

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def apply_account_status(self, account_id: int, status: AccountStatus) -> Account:
        """Change an account's status without an actor check (internal tooling).

        Banning revokes every session so refresh stops working immediately.
        """
        status = AccountStatus(status)
        with self._storage("apply_account_status"):
            self._get_account(account_id)
            self.store.update_account(account_id, self.clock(), status=status)
            if status == AccountStatus.BANNED:
                self.tokens.revoke_all(account_id)
            account = self.store.get_by_id(account_id)
        logger.info("Account %s status set to %s", account_id, status.value)
        return account

    def run_sweep(self) -> dict:
        """Delete expired recovery tokens and sessions. Used by the background loop."""
        with self._storage("sweep"):
            tokens = self.recovery.sweep_expired()
            sessions = self.tokens.purge_expired()
        return {"recovery_tokens": tokens, "sessions": sessions}

    def set_account_status(self, actor: Account, account_id: int, status: AccountStatus) -> Account:
        self._require_admin(actor)
        return self.apply_account_status(account_id, status)

    def cancel_recovery_tokens(self, actor: Account, account_id: int) -> int:
        self._require_admin(actor)
        with self._storage("cancel_recovery_tokens"):
            self._get_account(account_id)
            return self.recovery.cancel(account_id)

    def list_recovery_tokens(self, actor: Account, account_id: int) -> list[RecoveryToken]:
        self._require_admin(actor)
        with self._storage("list_recovery_tokens"):
            self._get_account(account_id)
            return self.recovery.active_tokens(account_id)

    def sweep_expired(self, actor: Account) -> dict:
        self._require_admin(actor)
        return self.run_sweep()
