"""Unit tests for auth/service.py -- AuthService flows end to end.

Covers:
- registration, duplicate email, case-insensitive lookup
- login: unknown email, wrong password, lockout on the 6th attempt, ban,
  counter reset on success, account view without password hash
- refresh / logout / logout_all / current_user / list_sessions
- password reset: generic response, rate limiting (silent vs privileged),
  confirm revokes sessions, clears lockout and invalidates other tokens
- email verification: activation, single use, resend rules, bans persist
- admin operations and the role check
- email delivery failures and storage failures
- scheduled delivery keeps reset responses equally fast for every address
- the two end-to-end scenarios: login/refresh/logout and repeated resets
"""

import time

import pytest
from sqlalchemy.exc import OperationalError

from auth.errors import (
    AccountBanned,
    AccountLocked,
    AccountNotFound,
    AuthInternalError,
    EmailAlreadyRegistered,
    InvalidAccessToken,
    InvalidCredentials,
    InvalidOrExpiredToken,
    InvalidRefreshToken,
    MissingAccessToken,
    PermissionDenied,
    RateLimited,
)
from auth.models import AccountStatus, Role
from auth.service import RESET_REQUEST_MESSAGE, AuthService

EMAIL = "john@example.com"
PASSWORD = "Secret123"


@pytest.fixture
def john(service: AuthService):
    return service.register(EMAIL, PASSWORD, "John")


@pytest.fixture
def admin(service: AuthService):
    return service.create_account("admin@example.com", "Admin1234", role=Role.ADMIN, status=AccountStatus.ACTIVE)


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestRegister:
    def test_creates_pending_account_and_sends_verification(self, service: AuthService, outbox) -> None:
        account = service.register("  John@Example.com ", PASSWORD, " John ")
        assert account.email == EMAIL
        assert account.name == "John"
        assert account.status == AccountStatus.PENDING
        assert account.role == Role.USER
        assert account.email_verified_at is None
        assert [(kind, to) for kind, to, _ in outbox.sent] == [("email_verify", EMAIL)]

    def test_duplicate_email_rejected(self, service: AuthService, john) -> None:
        with pytest.raises(EmailAlreadyRegistered):
            service.register("JOHN@example.com", PASSWORD)

    def test_password_is_hashed(self, service: AuthService, john) -> None:
        stored = service.store.get_by_id(john.id)
        assert stored.password_hash != PASSWORD
        assert stored.password_hash.startswith("$2")


# ---------------------------------------------------------------------------
# Login and lockout
# ---------------------------------------------------------------------------


class TestLogin:
    def test_success_returns_view_and_tokens(self, service: AuthService, john) -> None:
        result = service.login(EMAIL, PASSWORD, user_agent="pytest", ip_address="10.0.0.1")
        assert result.account["email"] == EMAIL
        assert "password_hash" not in result.account
        assert result.tokens.access_token
        assert result.tokens.refresh_token
        stored = service.store.get_by_id(john.id)
        assert stored.last_login_ip == "10.0.0.1"
        assert stored.last_login_at is not None

    def test_pending_account_may_log_in(self, service: AuthService, john) -> None:
        assert service.login(EMAIL, PASSWORD).account["status"] == "pending"

    def test_unknown_email(self, service: AuthService) -> None:
        with pytest.raises(InvalidCredentials):
            service.login("nobody@example.com", PASSWORD)

    def test_wrong_password(self, service: AuthService, john) -> None:
        with pytest.raises(InvalidCredentials) as exc_info:
            service.login(EMAIL, "Wrong1234")
        assert exc_info.value.message == InvalidCredentials.message

    def test_sixth_attempt_locked_even_with_correct_password(self, service: AuthService, john) -> None:
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                service.login(EMAIL, "Wrong1234")
        with pytest.raises(AccountLocked) as exc_info:
            service.login(EMAIL, PASSWORD)
        assert exc_info.value.retry_after == 1800
        assert "30 minutes" in exc_info.value.message

    def test_locked_attempts_do_not_extend_lock(self, service: AuthService, john, clock) -> None:
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                service.login(EMAIL, "Wrong1234")
        clock.advance(seconds=1000)
        with pytest.raises(AccountLocked) as exc_info:
            service.login(EMAIL, "Wrong1234")
        assert exc_info.value.retry_after == 800
        clock.advance(seconds=801)
        assert service.login(EMAIL, PASSWORD).tokens.access_token

    def test_success_resets_counter(self, service: AuthService, john) -> None:
        for _ in range(4):
            with pytest.raises(InvalidCredentials):
                service.login(EMAIL, "Wrong1234")
        service.login(EMAIL, PASSWORD)
        assert service.lockout.state(john.id).failed_count == 0
        for _ in range(4):
            with pytest.raises(InvalidCredentials):
                service.login(EMAIL, "Wrong1234")
        service.login(EMAIL, PASSWORD)

    def test_banned_account(self, service: AuthService, john) -> None:
        service.apply_account_status(john.id, AccountStatus.BANNED)
        with pytest.raises(AccountBanned):
            service.login(EMAIL, PASSWORD)
        # A wrong password on a banned account still looks like any other failure
        with pytest.raises(InvalidCredentials):
            service.login(EMAIL, "Wrong1234")


# ---------------------------------------------------------------------------
# Bearer tokens
# ---------------------------------------------------------------------------


class TestBearerTokens:
    def test_missing_token(self, service: AuthService) -> None:
        with pytest.raises(MissingAccessToken):
            service.logout(None)
        with pytest.raises(MissingAccessToken):
            service.current_user("")

    def test_invalid_token(self, service: AuthService) -> None:
        with pytest.raises(InvalidAccessToken):
            service.logout("garbage")

    def test_logout_is_idempotent(self, service: AuthService, john) -> None:
        tokens = service.login(EMAIL, PASSWORD).tokens
        service.logout(tokens.access_token)
        service.logout(tokens.access_token)
        with pytest.raises(InvalidRefreshToken):
            service.refresh(tokens.refresh_token)

    def test_logout_all(self, service: AuthService, john) -> None:
        first = service.login(EMAIL, PASSWORD).tokens
        second = service.login(EMAIL, PASSWORD).tokens
        assert len(service.list_sessions(first.access_token)) == 2
        assert service.logout_all(second.access_token) == 2
        for pair in (first, second):
            with pytest.raises(InvalidRefreshToken):
                service.refresh(pair.refresh_token)

    def test_current_user_rejects_banned(self, service: AuthService, john) -> None:
        tokens = service.login(EMAIL, PASSWORD).tokens
        assert service.current_user(tokens.access_token).id == john.id
        service.apply_account_status(john.id, AccountStatus.BANNED)
        with pytest.raises(InvalidAccessToken):
            service.current_user(tokens.access_token)


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


class TestPasswordReset:
    def test_unknown_email_same_response(self, service: AuthService, john, outbox) -> None:
        sent_before = len(outbox.sent)
        known = service.request_password_reset(EMAIL)
        unknown = service.request_password_reset("ghost@example.com")
        assert known == unknown == {"success": True, "message": RESET_REQUEST_MESSAGE}
        assert len(outbox.sent) == sent_before + 1

    def test_privileged_unknown_email(self, service: AuthService) -> None:
        with pytest.raises(AccountNotFound):
            service.request_password_reset("ghost@example.com", privileged=True)

    def test_privileged_returns_token(self, service: AuthService, john) -> None:
        result = service.request_password_reset(EMAIL, privileged=True)
        assert service.verify_password_reset_token(result["token"]) == {"valid": True, "email": EMAIL}

    def test_verification_token_is_not_a_reset_token(self, service: AuthService, john, outbox) -> None:
        with pytest.raises(InvalidOrExpiredToken):
            service.verify_password_reset_token(outbox.last_token("email_verify"))

    def test_confirm_revokes_sessions_and_clears_lockout(self, service: AuthService, john, outbox) -> None:
        tokens = service.login(EMAIL, PASSWORD).tokens
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                service.login(EMAIL, "Wrong1234")
        service.request_password_reset(EMAIL)
        result = service.confirm_password_reset(outbox.last_token("password_reset"), "NewSecret456")
        assert result["success"] is True
        with pytest.raises(InvalidRefreshToken):
            service.refresh(tokens.refresh_token)
        with pytest.raises(InvalidCredentials):
            service.login(EMAIL, PASSWORD)
        assert service.login(EMAIL, "NewSecret456").tokens.access_token

    def test_confirm_twice_fails(self, service: AuthService, john, outbox) -> None:
        service.request_password_reset(EMAIL)
        token = outbox.last_token("password_reset")
        service.confirm_password_reset(token, "NewSecret456")
        with pytest.raises(InvalidOrExpiredToken):
            service.confirm_password_reset(token, "Other7890x")
        assert service.login(EMAIL, "NewSecret456")

    def test_expired_reset_token(self, service: AuthService, john, outbox, clock) -> None:
        service.request_password_reset(EMAIL)
        clock.advance(hours=24)
        with pytest.raises(InvalidOrExpiredToken):
            service.confirm_password_reset(outbox.last_token("password_reset"), "NewSecret456")


# ---------------------------------------------------------------------------
# Email verification
# ---------------------------------------------------------------------------


class TestEmailVerification:
    def test_confirm_activates(self, service: AuthService, john, outbox, clock) -> None:
        account = service.confirm_email_verification(outbox.last_token("email_verify"))
        assert account.status == AccountStatus.ACTIVE
        assert account.email_verified_at == clock()

    def test_confirm_twice_fails(self, service: AuthService, john, outbox) -> None:
        token = outbox.last_token("email_verify")
        service.confirm_email_verification(token)
        with pytest.raises(InvalidOrExpiredToken):
            service.confirm_email_verification(token)

    def test_resend_replaces_token(self, service: AuthService, john, outbox) -> None:
        first = outbox.last_token("email_verify")
        service.request_email_verification(EMAIL)
        second = outbox.last_token("email_verify")
        assert first != second
        with pytest.raises(InvalidOrExpiredToken):
            service.confirm_email_verification(first)
        service.confirm_email_verification(second)

    def test_resend_noop_when_verified(self, service: AuthService, john, outbox) -> None:
        service.confirm_email_verification(outbox.last_token("email_verify"))
        sent_before = len(outbox.sent)
        service.request_email_verification(EMAIL)
        service.request_email_verification("ghost@example.com")
        assert len(outbox.sent) == sent_before

    def test_banned_account_stays_banned(self, service: AuthService, john, outbox) -> None:
        token = outbox.last_token("email_verify")
        service.apply_account_status(john.id, AccountStatus.BANNED)
        account = service.confirm_email_verification(token)
        assert account.status == AccountStatus.BANNED
        assert account.email_verified_at is not None


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------


class TestAdmin:
    def test_non_admin_rejected(self, service: AuthService, john) -> None:
        for call in (
            lambda: service.set_account_status(john, john.id, AccountStatus.BANNED),
            lambda: service.cancel_recovery_tokens(john, john.id),
            lambda: service.list_recovery_tokens(john, john.id),
            lambda: service.sweep_expired(john),
        ):
            with pytest.raises(PermissionDenied):
                call()

    def test_manager_is_not_admin(self, service: AuthService, john) -> None:
        manager = service.create_account("mgr@example.com", "Manager123", role=Role.MANAGER)
        with pytest.raises(PermissionDenied):
            service.sweep_expired(manager)

    def test_ban_revokes_sessions(self, service: AuthService, john, admin) -> None:
        tokens = service.login(EMAIL, PASSWORD).tokens
        banned = service.set_account_status(admin, john.id, AccountStatus.BANNED)
        assert banned.status == AccountStatus.BANNED
        with pytest.raises(InvalidRefreshToken):
            service.refresh(tokens.refresh_token)

    def test_unban(self, service: AuthService, john, admin) -> None:
        service.set_account_status(admin, john.id, AccountStatus.BANNED)
        service.set_account_status(admin, john.id, AccountStatus.ACTIVE)
        assert service.login(EMAIL, PASSWORD)

    def test_unknown_account(self, service: AuthService, admin) -> None:
        with pytest.raises(AccountNotFound):
            service.set_account_status(admin, 9999, AccountStatus.BANNED)
        with pytest.raises(AccountNotFound):
            service.list_recovery_tokens(admin, 9999)

    def test_list_and_cancel_recovery_tokens(self, service: AuthService, john, admin) -> None:
        [token] = service.list_recovery_tokens(admin, john.id)
        assert token.purpose.value == "email_verify"
        assert service.cancel_recovery_tokens(admin, john.id) == 1
        assert service.list_recovery_tokens(admin, john.id) == []

    def test_sweep(self, service: AuthService, john, admin, clock) -> None:
        service.login(EMAIL, PASSWORD)
        clock.advance(days=8)
        assert service.sweep_expired(admin) == {"recovery_tokens": 1, "sessions": 1}


# ---------------------------------------------------------------------------
# Failure handling
# ---------------------------------------------------------------------------


class _BrokenSender:
    def send_password_reset(self, to_email: str, name: str, token: str) -> None:
        raise ConnectionRefusedError("smtp down")

    def send_email_verification(self, to_email: str, name: str, token: str) -> None:
        raise ConnectionRefusedError("smtp down")


class TestFailureHandling:
    def test_email_failure_does_not_change_outcome(self, store, settings, clock) -> None:
        service = AuthService(store, settings, email_sender=_BrokenSender(), clock=clock)
        account = service.register(EMAIL, PASSWORD)
        assert account.id is not None
        assert service.request_password_reset(EMAIL)["success"] is True

    def test_storage_failure_is_opaque(self, service: AuthService, monkeypatch: pytest.MonkeyPatch) -> None:
        def boom(*args, **kwargs):
            raise OperationalError("SELECT 1", {}, Exception("database is locked"))

        monkeypatch.setattr(service.store, "get_by_email", boom)
        with pytest.raises(AuthInternalError) as exc_info:
            service.login(EMAIL, PASSWORD)
        assert "locked" not in exc_info.value.message


class _SlowSender:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    def send_password_reset(self, to_email: str, name: str, token: str) -> None:
        time.sleep(0.5)
        self.sent.append(("password_reset", to_email))

    def send_email_verification(self, to_email: str, name: str, token: str) -> None:
        time.sleep(0.5)
        self.sent.append(("email_verify", to_email))


class TestScheduledDelivery:
    def test_reset_timing_does_not_depend_on_account(self, store, settings, clock) -> None:
        sender = _SlowSender()
        service = AuthService(store, settings, email_sender=sender, clock=clock)
        service.create_account(EMAIL, PASSWORD, status=AccountStatus.ACTIVE)
        queued = []

        def schedule(func, *args) -> None:
            queued.append((func, args))

        start = time.perf_counter()
        known = service.request_password_reset(EMAIL, schedule=schedule)
        known_elapsed = time.perf_counter() - start

        start = time.perf_counter()
        unknown = service.request_password_reset("nobody@example.com", schedule=schedule)
        unknown_elapsed = time.perf_counter() - start

        assert known == unknown
        assert known_elapsed < 0.25
        assert unknown_elapsed < 0.25
        assert sender.sent == []
        assert len(queued) == 1

        func, args = queued[0]
        func(*args)
        assert sender.sent == [("password_reset", EMAIL)]

    def test_register_schedules_verification(self, store, settings, clock) -> None:
        sender = _SlowSender()
        service = AuthService(store, settings, email_sender=sender, clock=clock)
        queued = []
        service.register(EMAIL, PASSWORD, schedule=lambda func, *args: queued.append((func, args)))
        assert sender.sent == []
        assert len(queued) == 1

    def test_scheduled_failure_is_logged(self, store, settings, clock, caplog) -> None:
        service = AuthService(store, settings, email_sender=_BrokenSender(), clock=clock)
        service.create_account(EMAIL, PASSWORD, status=AccountStatus.ACTIVE)
        queued = []
        service.request_password_reset(EMAIL, schedule=lambda func, *args: queued.append((func, args)))
        func, args = queued[0]
        func(*args)
        assert "Email delivery to jo***@example.com failed" in caplog.text


# ---------------------------------------------------------------------------
# End-to-end scenarios
# ---------------------------------------------------------------------------


class TestScenarios:
    def test_login_refresh_logout(self, service: AuthService, clock) -> None:
        """Register, log in, rotate, log out; the access token lives until expiry."""
        service.register(EMAIL, PASSWORD)
        login = service.login(EMAIL, PASSWORD)
        assert login.tokens.access_token and login.tokens.refresh_token

        rotated = service.refresh(login.tokens.refresh_token)
        assert rotated.refresh_token != login.tokens.refresh_token
        with pytest.raises(InvalidRefreshToken):
            service.refresh(login.tokens.refresh_token)

        service.logout(rotated.access_token)
        assert service.current_user(rotated.access_token).email == EMAIL
        with pytest.raises(InvalidRefreshToken):
            service.refresh(rotated.refresh_token)

        clock.advance(seconds=901)
        with pytest.raises(InvalidAccessToken):
            service.current_user(rotated.access_token)

    def test_repeated_password_resets(self, service: AuthService, outbox, clock) -> None:
        """Three resets in an hour are accepted, the fourth is rate limited,
        and confirming the last token invalidates every other one."""
        service.register(EMAIL, PASSWORD)
        tokens = []
        for _ in range(3):
            result = service.request_password_reset(EMAIL)
            assert result == {"success": True, "message": RESET_REQUEST_MESSAGE}
            tokens.append(outbox.last_token("password_reset"))
            clock.advance(minutes=5)

        # External callers cannot tell; internal tooling sees the limit.
        sent_before = len(outbox.sent)
        assert service.request_password_reset(EMAIL) == {"success": True, "message": RESET_REQUEST_MESSAGE}
        assert len(outbox.sent) == sent_before
        with pytest.raises(RateLimited):
            service.request_password_reset(EMAIL, privileged=True)

        service.confirm_password_reset(tokens[-1], "NewSecret456")
        for token in tokens:
            with pytest.raises(InvalidOrExpiredToken):
                service.verify_password_reset_token(token)
        assert service.login(EMAIL, "NewSecret456").tokens.access_token
