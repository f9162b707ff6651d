"""
auth/recovery.py -- Single-use recovery tokens for password reset and email verification.

One engine, two purposes. A RecoveryToken row carries a TokenPurpose and the
same generate / rate-limit / verify / consume path serves both flows; callers
pass the purpose they expect.

Rules:
  - At most RECOVERY_MAX_REQUESTS requests per (account, purpose) inside
    RECOVERY_RATE_WINDOW_SECONDS. Counted from the recovery_requests log.
    The count is read before the insert, so two simultaneous requests can
    both slip in under the cap. Accepted.
  - Issuing a token deletes every unconsumed token of the account, for both
    purposes. A fresh verification email kills an outstanding reset link and
    the other way around.
  - Not found, expired, consumed and wrong purpose all raise the same
    InvalidOrExpiredToken so a caller learns nothing from the failure.
  - consume() is a conditional UPDATE. Exactly one caller wins.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from auth.credentials import generate_secure_token, hash_token
from auth.errors import InvalidOrExpiredToken, RateLimited
from auth.models import Clock, RecoveryGrant, RecoveryToken, TokenPurpose, utcnow
from auth.store import AuthStore

logger = logging.getLogger("authkeeper.auth.recovery")


class RecoveryTokenManager:
    def __init__(
        self,
        store: AuthStore,
        secret_key: str,
        ttl_seconds: dict[TokenPurpose, int] | None = None,
        max_requests: int = 3,
        rate_window_seconds: int = 3600,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self._secret_key = secret_key
        self.ttl_seconds = {
            TokenPurpose.PASSWORD_RESET: 24 * 3600,
            TokenPurpose.EMAIL_VERIFY: 24 * 3600,
            **(ttl_seconds or {}),
        }
        self.max_requests = max_requests
        self.rate_window = timedelta(seconds=rate_window_seconds)
        self.clock = clock

    def request_token(self, account_id: int, purpose: TokenPurpose) -> str:
        """Issue a new raw token for *purpose*. Raises RateLimited at the cap."""
        purpose = TokenPurpose(purpose)
        now = self.clock()
        recent = self.store.count_recovery_requests(account_id, purpose, since=now - self.rate_window)
        if recent >= self.max_requests:
            logger.warning("Recovery rate limit hit for account %s (%s)", account_id, purpose.value)
            raise RateLimited()

        raw = generate_secure_token()
        self.store.replace_recovery_token(
            RecoveryToken(
                account_id=account_id,
                token_hash=hash_token(raw, self._secret_key),
                purpose=purpose,
                expires_at=now + timedelta(seconds=self.ttl_seconds[purpose]),
                created_at=now,
            )
        )
        return raw

    def _lookup(self, token: str, purpose: TokenPurpose | None) -> RecoveryToken:
        if not token:
            raise InvalidOrExpiredToken()
        record = self.store.get_recovery_token(hash_token(token, self._secret_key))
        if (
            record is None
            or record.consumed_at is not None
            or record.expires_at <= self.clock()
            or (purpose is not None and record.purpose != TokenPurpose(purpose))
        ):
            raise InvalidOrExpiredToken()
        return record

    def verify(self, token: str, purpose: TokenPurpose | None = None) -> RecoveryGrant:
        """Check a token without spending it."""
        record = self._lookup(token, purpose)
        return RecoveryGrant(account_id=record.account_id, purpose=record.purpose, expires_at=record.expires_at)

    def consume(
        self, token: str, purpose: TokenPurpose | None = None, password_hash: str | None = None
    ) -> RecoveryGrant:
        """Spend a token. A second consume of the same token always fails.

        *password_hash* is written to the owning account in the same
        transaction as the claim, and its lockout is cleared with it.
        """
        record = self._lookup(token, purpose)
        if not self.store.consume_recovery_token(record.token_hash, self.clock(), password_hash=password_hash):
            raise InvalidOrExpiredToken()
        return RecoveryGrant(account_id=record.account_id, purpose=record.purpose, expires_at=record.expires_at)

    def cancel(self, account_id: int) -> int:
        """Delete every outstanding token of an account. Returns the count."""
        return self.store.delete_outstanding_recovery_tokens(account_id)

    def active_tokens(self, account_id: int) -> list[RecoveryToken]:
        return self.store.list_active_recovery_tokens(account_id, self.clock())

    def sweep_expired(self) -> int:
        """Delete expired tokens and request-log rows older than the rate window.

        Returns the number of tokens removed.
        """
        now = self.clock()
        removed = self.store.delete_expired_recovery_tokens(now)
        self.store.delete_recovery_requests_before(now - self.rate_window)
        if removed:
            logger.info("Swept %d expired recovery token(s)", removed)
        return removed
