"""
auth/tokens.py -- Bearer access tokens and rotating refresh sessions.

Security design decisions:
  Access tokens: python-jose JWT, HS256, signed with SECRET_KEY. Claims are
       sub (account id), email, role, sid (session id), iat, exp, iss and
       typ="access". Verification never touches the store, so an access token
       stays valid until it expires even after its session is revoked. Keep
       ACCESS_TOKEN_EXPIRE_SECONDS short.

  Expiry is checked against the injected clock rather than jose's wall
       clock, so tests can move time forward without sleeping.

  Refresh tokens: opaque generate_secure_token() strings. The Session row
       stores only hash_token(SECRET_KEY, raw). Rotation is single use: the
       store revokes the presented session and inserts its successor in one
       compare-and-swap transaction. Presenting a rotated token again is
       logged as a replay and rejected.

Layer rule: no imports from api/ or core/. Keys and lifetimes are passed in.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from auth.credentials import generate_secure_token, hash_token
from auth.errors import InvalidAccessToken, InvalidRefreshToken
from auth.models import AccessClaims, Account, AccountStatus, Clock, Role, Session, TokenPair, utcnow
from auth.store import AuthStore

logger = logging.getLogger("authkeeper.auth.tokens")

_ALGORITHM = "HS256"
_ACCESS_TYPE = "access"


class TokenIssuer:
    """Issues, verifies, rotates and revokes bearer credentials.

    Usage:
        issuer = TokenIssuer(store, secret_key=settings.secret_key)
        pair = issuer.issue(account)
        claims = issuer.verify_access(pair.access_token)
        pair = issuer.rotate(pair.refresh_token)
    """

    def __init__(
        self,
        store: AuthStore,
        secret_key: str,
        issuer: str = "authkeeper",
        access_ttl: int = 900,
        refresh_ttl: int = 7 * 24 * 3600,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self._secret_key = secret_key
        self.issuer = issuer
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.clock = clock

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    def _encode_access(self, account: Account, session_id: int, now: datetime) -> str:
        payload = {
            "sub": str(account.id),
            "email": account.email,
            "role": Role(account.role).value,
            "sid": session_id,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=self.access_ttl)).timestamp()),
            "iss": self.issuer,
            "typ": _ACCESS_TYPE,
        }
        return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)

    def verify_access(self, token: str) -> AccessClaims:
        """Check signature, issuer, type and expiry. Raises InvalidAccessToken."""
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[_ALGORITHM],
                issuer=self.issuer,
                options={"verify_exp": False},
            )
        except JWTError:
            raise InvalidAccessToken() from None
        if payload.get("typ") != _ACCESS_TYPE:
            raise InvalidAccessToken()
        try:
            claims = AccessClaims(
                account_id=int(payload["sub"]),
                email=payload["email"],
                role=Role(payload["role"]),
                session_id=int(payload["sid"]),
                issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
                expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            )
        except (KeyError, TypeError, ValueError):
            raise InvalidAccessToken() from None
        if claims.expires_at <= self.clock():
            raise InvalidAccessToken()
        return claims

    # ------------------------------------------------------------------
    # Refresh sessions
    # ------------------------------------------------------------------

    def _new_session(self, account_id: int, now: datetime, user_agent: str | None, ip_address: str | None):
        raw = generate_secure_token()
        session = Session(
            account_id=account_id,
            refresh_token_hash=hash_token(raw, self._secret_key),
            issued_at=now,
            expires_at=now + timedelta(seconds=self.refresh_ttl),
            user_agent=user_agent,
            ip_address=ip_address,
        )
        return raw, session

    def issue(self, account: Account, user_agent: str | None = None, ip_address: str | None = None) -> TokenPair:
        """Open a new session for *account* and return its token pair."""
        now = self.clock()
        raw, session = self._new_session(account.id, now, user_agent, ip_address)
        session_id = self.store.create_session(session)
        return TokenPair(
            access_token=self._encode_access(account, session_id, now),
            refresh_token=raw,
            expires_in=self.access_ttl,
            session_id=session_id,
        )

    def rotate(self, refresh_token: str) -> TokenPair:
        """Exchange a live refresh token for a new pair. The old token dies.

        Missing, revoked, expired and already-rotated tokens are all reported
        as InvalidRefreshToken, as is a session whose account is gone or banned.
        """
        if not refresh_token:
            raise InvalidRefreshToken()
        now = self.clock()
        session = self.store.get_session_by_hash(hash_token(refresh_token, self._secret_key))
        if session is None:
            raise InvalidRefreshToken()
        if session.revoked:
            if session.replaced_by is not None:
                logger.warning(
                    "Refresh token replay for account %s (session %s, replaced by %s)",
                    session.account_id,
                    session.id,
                    session.replaced_by,
                )
            raise InvalidRefreshToken()
        if session.expires_at <= now:
            raise InvalidRefreshToken()

        account = self.store.get_by_id(session.account_id)
        if account is None or account.status == AccountStatus.BANNED:
            self.store.revoke_session(session.id, now)
            raise InvalidRefreshToken()

        raw, successor = self._new_session(account.id, now, session.user_agent, session.ip_address)
        new_id = self.store.rotate_session(session.id, successor, now)
        if new_id is None:
            # Lost the race against a concurrent rotation of the same token.
            logger.warning("Concurrent refresh rejected for account %s (session %s)", account.id, session.id)
            raise InvalidRefreshToken()
        return TokenPair(
            access_token=self._encode_access(account, new_id, now),
            refresh_token=raw,
            expires_in=self.access_ttl,
            session_id=new_id,
        )

    def revoke(self, refresh_token: str) -> bool:
        """Revoke the session behind a raw refresh token. Unknown tokens are a no-op."""
        session = self.store.get_session_by_hash(hash_token(refresh_token, self._secret_key))
        if session is None:
            return False
        return self.store.revoke_session(session.id, self.clock())

    def revoke_session(self, session_id: int) -> bool:
        return self.store.revoke_session(session_id, self.clock())

    def revoke_all(self, account_id: int) -> int:
        count = self.store.revoke_sessions_for_account(account_id, self.clock())
        if count:
            logger.info("Revoked %d session(s) for account %s", count, account_id)
        return count

    def list_sessions(self, account_id: int) -> list[Session]:
        return self.store.list_active_sessions(account_id, self.clock())

    def purge_expired(self) -> int:
        """Delete sessions past their refresh expiry. Returns the number removed."""
        return self.store.delete_expired_sessions(self.clock())
