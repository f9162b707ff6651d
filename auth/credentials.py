"""
auth/credentials.py -- Password hashing and opaque token primitives.

Security design decisions:
  Passwords: bcrypt used directly (no passlib wrapper). The cost factor is a
       parameter so operators can raise it through BCRYPT_ROUNDS without a code
       change; tests lower it to keep the suite fast.

  Timing equalization [C1]: verify_dummy_password() runs a full bcrypt check
       against a throwaway hash of the same cost. The login path calls it when
       the email is unknown so response time does not reveal whether an
       account exists.

  Opaque tokens: secrets.token_urlsafe(32) gives 256 bits of entropy in a
       URL-safe alphabet. The same generator backs refresh tokens and
       recovery (reset / verification) tokens.

  Token storage: only HMAC-SHA256(SECRET_KEY, raw_token) is persisted. A copy
       of the database alone cannot be replayed, and lookup stays O(1) on a
       UNIQUE index. bcrypt's slowness is unnecessary for 256-bit secrets.

Layer rule: no imports from api/ or core/. Keys and costs are passed in.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from functools import lru_cache

import bcrypt

DEFAULT_BCRYPT_ROUNDS = 12


def hash_password(plain: str, rounds: int = DEFAULT_BCRYPT_ROUNDS) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only looks at the first 72 bytes. The API layer caps passwords at
    128 characters, and hashes stay deterministic for the same input prefix.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed or empty stored hash
        return False


@lru_cache(maxsize=4)
def _dummy_hash(rounds: int) -> str:
    return hash_password("authkeeper_timing_dummy", rounds)


def verify_dummy_password(plain: str, rounds: int = DEFAULT_BCRYPT_ROUNDS) -> bool:
    """Burn one bcrypt comparison of the given cost. Always returns False."""
    verify_password(plain, _dummy_hash(rounds))
    return False


def generate_secure_token(nbytes: int = 32) -> str:
    """Return a cryptographically random, URL-safe opaque token."""
    return secrets.token_urlsafe(nbytes)


def hash_token(raw_token: str, key: str) -> str:
    """Return HMAC-SHA256(key, raw_token) as a hex string."""
    return hmac.new(key.encode("utf-8"), raw_token.encode("utf-8"), hashlib.sha256).hexdigest()


PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128


def password_policy_errors(plain: str) -> list[str]:
    """Return the password rules *plain* breaks. Empty list means acceptable.

    Shared by the API request models and the CLI so both enforce one policy:
    8 to 128 characters with at least one lowercase letter, one uppercase
    letter and one digit.
    """
    errors = []
    if len(plain) < PASSWORD_MIN_LENGTH:
        errors.append(f"Password must be at least {PASSWORD_MIN_LENGTH} characters.")
    if len(plain) > PASSWORD_MAX_LENGTH:
        errors.append(f"Password must be at most {PASSWORD_MAX_LENGTH} characters.")
    if not any(c.islower() for c in plain):
        errors.append("Password must contain a lowercase letter.")
    if not any(c.isupper() for c in plain):
        errors.append("Password must contain an uppercase letter.")
    if not any(c.isdigit() for c in plain):
        errors.append("Password must contain a digit.")
    return errors
