"""
auth/lockout.py -- Consecutive-failure lockout for password logins.

Policy (all numbers come from Settings):
  LOCKOUT_MAX_ATTEMPTS failures within LOCKOUT_WINDOW_SECONDS lock the account.
  The lock lasts LOCKOUT_COOLDOWN_SECONDS from the last recorded failure.
  Attempts made while locked are rejected before the password is checked and
  are not recorded, so hammering a locked account does not extend the lock.

The tracker holds no state of its own. The counter lives on the account row
and is bumped by AuthStore.record_login_failure() in a single conditional
UPDATE, so several API replicas can share one database safely.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from auth.models import Clock, LockoutState, utcnow
from auth.store import AuthStore

logger = logging.getLogger("authkeeper.auth.lockout")


class LockoutTracker:
    def __init__(
        self,
        store: AuthStore,
        max_attempts: int = 5,
        window_seconds: int = 900,
        cooldown_seconds: int = 1800,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.max_attempts = max_attempts
        self.window = timedelta(seconds=window_seconds)
        self.cooldown = timedelta(seconds=cooldown_seconds)
        self.clock = clock

    def _derive(self, count: int, last_failed_at: datetime | None, now: datetime) -> LockoutState:
        locked_until = None
        if count >= self.max_attempts and last_failed_at is not None:
            until = last_failed_at + self.cooldown
            if until > now:
                locked_until = until
        return LockoutState(failed_count=count, last_failed_at=last_failed_at, locked_until=locked_until)

    def state(self, account_id: int) -> LockoutState:
        """Return the current counter and, if locked, when the lock lifts."""
        account = self.store.get_by_id(account_id)
        if account is None:
            return LockoutState(failed_count=0, last_failed_at=None)
        return self._derive(account.failed_login_count, account.last_failed_login_at, self.clock())

    def is_locked(self, account_id: int) -> bool:
        return self.state(account_id).locked

    def record_failure(self, account_id: int) -> LockoutState:
        """Count one failed login and return the resulting state.

        A failure older than the window, or one following an expired lock,
        restarts the count at 1. The decision is made inside the UPDATE.
        """
        now = self.clock()
        result = self.store.record_login_failure(
            account_id,
            now,
            window_start=now - self.window,
            cooldown_start=now - self.cooldown,
            max_attempts=self.max_attempts,
        )
        if result is None:
            return LockoutState(failed_count=0, last_failed_at=None)
        count, last_failed_at = result
        state = self._derive(count, last_failed_at, now)
        if count == self.max_attempts:
            logger.warning("Account %s locked after %d failed logins", account_id, count)
        return state

    def record_success(self, account_id: int) -> None:
        self.store.clear_login_failures(account_id)
