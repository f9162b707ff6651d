"""Unit tests for auth/recovery.py -- single-use recovery tokens.

Covers:
- verify() / consume() happy path returns the grant
- consuming twice fails; expired-but-unconsumed fails the same way
- a password set on consume commits with the claim or not at all
- wrong purpose fails verify()
- issuing a new token invalidates the previous one, across purposes
- per-(account, purpose) rate limit and its release after the window
- sweep_expired() removes expired tokens only
- only the HMAC of a token is stored
"""

from datetime import timedelta

import pytest
from sqlalchemy import event

from auth.credentials import hash_password, hash_token
from auth.errors import InvalidOrExpiredToken, RateLimited
from auth.models import Account, TokenPurpose
from auth.recovery import RecoveryTokenManager
from auth.store import AuthStore

RESET = TokenPurpose.PASSWORD_RESET
VERIFY = TokenPurpose.EMAIL_VERIFY


@pytest.fixture
def account_id(store: AuthStore, clock) -> int:
    return store.create_account(Account(email="rec@example.com", password_hash=hash_password("x", 4)), clock())


@pytest.fixture
def manager(store: AuthStore, settings, clock) -> RecoveryTokenManager:
    return RecoveryTokenManager(
        store,
        secret_key=settings.secret_key,
        ttl_seconds={RESET: 3600, VERIFY: 7200},
        max_requests=3,
        rate_window_seconds=3600,
        clock=clock,
    )


class TestVerifyAndConsume:
    def test_grant_contents(self, manager: RecoveryTokenManager, account_id: int, clock) -> None:
        token = manager.request_token(account_id, RESET)
        grant = manager.verify(token, RESET)
        assert grant.account_id == account_id
        assert grant.purpose == RESET
        assert (grant.expires_at - clock()).total_seconds() == 3600

    def test_consume_twice_fails(self, manager: RecoveryTokenManager, account_id: int) -> None:
        token = manager.request_token(account_id, RESET)
        manager.consume(token, RESET)
        with pytest.raises(InvalidOrExpiredToken):
            manager.consume(token, RESET)
        with pytest.raises(InvalidOrExpiredToken):
            manager.verify(token)

    def test_expired_token_fails(self, manager: RecoveryTokenManager, account_id: int, clock) -> None:
        token = manager.request_token(account_id, RESET)
        clock.advance(seconds=3600)
        with pytest.raises(InvalidOrExpiredToken):
            manager.verify(token)
        with pytest.raises(InvalidOrExpiredToken):
            manager.consume(token)

    def test_wrong_purpose_fails(self, manager: RecoveryTokenManager, account_id: int) -> None:
        token = manager.request_token(account_id, VERIFY)
        with pytest.raises(InvalidOrExpiredToken):
            manager.verify(token, RESET)
        # Still usable for its own purpose
        assert manager.consume(token, VERIFY).purpose == VERIFY

    def test_unknown_and_empty_tokens_fail(self, manager: RecoveryTokenManager) -> None:
        with pytest.raises(InvalidOrExpiredToken):
            manager.verify("nope")
        with pytest.raises(InvalidOrExpiredToken):
            manager.consume("")

    def test_store_consume_is_conditional(
        self, manager: RecoveryTokenManager, account_id: int, store: AuthStore, settings, clock
    ) -> None:
        """The conditional UPDATE lets exactly one caller claim the token."""
        token = manager.request_token(account_id, RESET)
        token_hash = hash_token(token, settings.secret_key)
        assert store.consume_recovery_token(token_hash, clock()) is True
        assert store.consume_recovery_token(token_hash, clock()) is False

    def test_consume_sets_password_and_clears_lockout(
        self, manager: RecoveryTokenManager, account_id: int, store: AuthStore, clock
    ) -> None:
        store.update_account(account_id, clock(), failed_login_count=4, last_failed_login_at=clock())
        token = manager.request_token(account_id, RESET)
        manager.consume(token, RESET, password_hash="new-hash")
        account = store.get_by_id(account_id)
        assert account.password_hash == "new-hash"
        assert account.failed_login_count == 0
        assert account.last_failed_login_at is None

    def test_spent_token_leaves_password_alone(
        self, manager: RecoveryTokenManager, account_id: int, store: AuthStore
    ) -> None:
        token = manager.request_token(account_id, RESET)
        manager.consume(token, RESET, password_hash="first-hash")
        with pytest.raises(InvalidOrExpiredToken):
            manager.consume(token, RESET, password_hash="second-hash")
        assert store.get_by_id(account_id).password_hash == "first-hash"

    def test_failed_password_write_keeps_token_usable(
        self, manager: RecoveryTokenManager, account_id: int, store: AuthStore
    ) -> None:
        """Claim and password update commit together or not at all."""
        token = manager.request_token(account_id, RESET)
        original = store.get_by_id(account_id).password_hash

        def fail_account_update(conn, cursor, statement, parameters, context, executemany):
            if statement.startswith("UPDATE accounts"):
                raise RuntimeError("disk I/O error")

        event.listen(store.engine, "before_cursor_execute", fail_account_update)
        try:
            with pytest.raises(RuntimeError):
                manager.consume(token, RESET, password_hash="new-hash")
        finally:
            event.remove(store.engine, "before_cursor_execute", fail_account_update)

        assert store.get_by_id(account_id).password_hash == original
        assert manager.verify(token, RESET).account_id == account_id

    def test_only_hash_is_stored(self, manager: RecoveryTokenManager, account_id: int, store: AuthStore) -> None:
        token = manager.request_token(account_id, RESET)
        [record] = manager.active_tokens(account_id)
        assert record.token_hash != token
        assert store.get_recovery_token(token) is None


class TestOutstandingTokens:
    def test_new_token_invalidates_previous(self, manager: RecoveryTokenManager, account_id: int) -> None:
        first = manager.request_token(account_id, RESET)
        second = manager.request_token(account_id, RESET)
        with pytest.raises(InvalidOrExpiredToken):
            manager.verify(first)
        manager.verify(second)

    def test_invalidation_is_per_account_not_per_purpose(self, manager: RecoveryTokenManager, account_id: int) -> None:
        verify_token = manager.request_token(account_id, VERIFY)
        manager.request_token(account_id, RESET)
        with pytest.raises(InvalidOrExpiredToken):
            manager.verify(verify_token)

    def test_cancel(self, manager: RecoveryTokenManager, account_id: int) -> None:
        token = manager.request_token(account_id, RESET)
        assert manager.cancel(account_id) == 1
        assert manager.active_tokens(account_id) == []
        with pytest.raises(InvalidOrExpiredToken):
            manager.verify(token)


class TestRateLimit:
    def test_fourth_request_in_window_rejected(self, manager: RecoveryTokenManager, account_id: int, clock) -> None:
        for _ in range(3):
            manager.request_token(account_id, RESET)
            clock.advance(minutes=10)
        with pytest.raises(RateLimited):
            manager.request_token(account_id, RESET)

    def test_limit_is_per_purpose(self, manager: RecoveryTokenManager, account_id: int) -> None:
        for _ in range(3):
            manager.request_token(account_id, RESET)
        manager.request_token(account_id, VERIFY)

    def test_limit_releases_after_window(self, manager: RecoveryTokenManager, account_id: int, clock) -> None:
        for _ in range(3):
            manager.request_token(account_id, RESET)
        clock.advance(seconds=3601)
        manager.request_token(account_id, RESET)

    def test_rejected_request_keeps_outstanding_token(self, manager: RecoveryTokenManager, account_id: int) -> None:
        tokens = [manager.request_token(account_id, RESET) for _ in range(3)]
        with pytest.raises(RateLimited):
            manager.request_token(account_id, RESET)
        manager.verify(tokens[-1])


class TestSweep:
    def test_sweep_removes_expired_only(self, manager: RecoveryTokenManager, store: AuthStore, account_id: int, clock) -> None:
        other_id = store.create_account(Account(email="other@example.com", password_hash="x"), clock())
        manager.request_token(account_id, RESET)  # expires after 1h
        live = manager.request_token(other_id, VERIFY)  # expires after 2h
        clock.advance(seconds=3601)
        assert manager.sweep_expired() == 1
        manager.verify(live)
        assert manager.active_tokens(account_id) == []

    def test_sweep_prunes_request_log(self, manager: RecoveryTokenManager, store: AuthStore, account_id: int, clock) -> None:
        manager.request_token(account_id, RESET)
        clock.advance(seconds=3601)
        manager.sweep_expired()
        assert store.count_recovery_requests(account_id, RESET, since=clock() - timedelta(days=30)) == 0
