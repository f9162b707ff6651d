"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. AuthStore is the repository; the _row_to_*
functions are the mappers that turn rows into the dataclasses in auth/models.py.
Service code never touches SQL directly.

Concurrency: the database is the single source of truth and the only place
where concurrent requests are serialized. Every state transition that two
requests can race on is one conditional statement (compare-and-swap):

  record_login_failure()   -- UPDATE ... SET failed_login_count = CASE ... END
  rotate_session()         -- UPDATE ... WHERE revoked = 0, then INSERT, in one
                              transaction; rowcount decides the winner
  consume_recovery_token() -- UPDATE ... WHERE consumed_at IS NULL AND
                              expires_at > now; with a password_hash the
                              account UPDATE joins the same transaction

Timestamps are stored as fixed-width ISO 8601 UTC strings (microsecond
precision, +00:00 suffix) so lexicographic comparison in SQL matches
chronological order.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Raw refresh and recovery tokens never reach this module -- only their HMACs.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    and_,
    case,
    create_engine,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import Account, AccountStatus, RecoveryToken, Role, Session, TokenPurpose

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'authkeeper.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("name", String(255), nullable=False, server_default=""),
    Column("password_hash", Text, nullable=False),
    Column("role", String(20), nullable=False, server_default="user"),
    Column("status", String(20), nullable=False, server_default="pending"),
    Column("email_verified_at", String(32)),
    Column("failed_login_count", Integer, nullable=False, server_default="0"),
    Column("last_failed_login_at", String(32)),
    Column("last_login_at", String(32)),
    Column("last_login_ip", String(45)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("refresh_token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("issued_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("revoked", Integer, nullable=False, server_default="0"),
    Column("revoked_at", String(32)),
    Column("replaced_by", Integer),
    Column("user_agent", String(512)),
    Column("ip_address", String(45)),
)

_recovery_tokens = Table(
    "recovery_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("purpose", String(20), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("consumed_at", String(32)),
    Column("created_at", String(32), nullable=False),
)

# Append-only request log for the recovery rate limit. Outstanding tokens are
# deleted on every new request, so counting tokens could never reach the cap.
_recovery_requests = Table(
    "recovery_requests",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("purpose", String(20), nullable=False),
    Column("requested_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign key enforcement.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. foreign_keys=ON is what makes the ON DELETE
    CASCADE clauses above take effect.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for Account, Session and RecoveryToken entities.

    Usage:
        store = AuthStore()                                # SQLite default
        store = AuthStore("postgresql://user:pw@host/db")  # PostgreSQL
        account_id = store.create_account(Account(email="a@b.c", password_hash=h), now)
        account = store.get_by_email("A@B.C")
        store.close()

    Time-sensitive methods take an explicit `now` so the service layer's clock
    is the only clock in the system.
    """

    # Columns update_account() may touch. Anything else raises ValueError.
    _UPDATABLE: set = {
        "name",
        "password_hash",
        "role",
        "status",
        "email_verified_at",
        "failed_login_count",
        "last_failed_login_at",
    }

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """Run a trivial query. Raises on connection failure."""
        with self.engine.connect() as conn:
            conn.execute(select(1)).scalar()
        return True

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def create_account(self, account: Account, now: datetime) -> int:
        """Insert a new account and return its assigned ID.

        Raises sqlalchemy.exc.IntegrityError if the email is already taken.
        The UNIQUE constraint is the arbiter for concurrent registrations.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.insert().values(
                    email=normalize_email(account.email),
                    name=account.name,
                    password_hash=account.password_hash,
                    role=Role(account.role).value,
                    status=AccountStatus(account.status).value,
                    email_verified_at=_iso(account.email_verified_at),
                    created_at=_iso(now),
                    updated_at=_iso(now),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_email(self, email: str) -> Account | None:
        """Look up an account by email (case-insensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.email == normalize_email(email))).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_id(self, account_id: int) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def update_account(self, account_id: int, now: datetime, **fields) -> bool:
        """Update mutable fields on an existing account.

        Enum and datetime values are converted to their column representation.
        Returns True if a row was updated, False if account_id was not found.
        """
        unknown = set(fields) - self._UPDATABLE
        if unknown:
            raise ValueError(f"Unknown account fields: {unknown!r}")
        values = {}
        for key, value in fields.items():
            if isinstance(value, datetime):
                value = _iso(value)
            elif isinstance(value, (Role, AccountStatus)):
                value = value.value
            values[key] = value
        values["updated_at"] = _iso(now)
        with self.engine.connect() as conn:
            result = conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(**values))
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, account_id: int, now: datetime, ip_address: str | None = None) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(last_login_at=_iso(now), last_login_ip=ip_address)
            )
            conn.commit()

    # ------------------------------------------------------------------
    # Lockout counter
    # ------------------------------------------------------------------

    def record_login_failure(
        self,
        account_id: int,
        now: datetime,
        *,
        window_start: datetime,
        cooldown_start: datetime,
        max_attempts: int,
    ) -> tuple[int, datetime | None] | None:
        """Atomically bump the consecutive-failure counter and return (count, last_failed_at).

        The counter restarts at 1 when the previous failure is older than the
        window, or when the account was locked and the cooldown has since
        elapsed. Both branches live in one UPDATE so concurrent failures can
        never lose an increment. Returns None if the account does not exist.
        """
        count = _accounts.c.failed_login_count
        last = _accounts.c.last_failed_login_at
        restart = or_(
            last.is_(None),
            last < _iso(window_start),
            and_(count >= max_attempts, last < _iso(cooldown_start)),
        )
        with self.engine.begin() as conn:
            result = conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(failed_login_count=case((restart, 1), else_=count + 1), last_failed_login_at=_iso(now))
            )
            if result.rowcount == 0:
                return None
            row = conn.execute(select(count, last).where(_accounts.c.id == account_id)).fetchone()
        return row[0], _dt(row[1])

    def clear_login_failures(self, account_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(failed_login_count=0, last_failed_login_at=None)
            )
            conn.commit()

    # ------------------------------------------------------------------
    # Sessions (refresh tokens)
    # ------------------------------------------------------------------

    def create_session(self, session: Session) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.insert().values(**_session_values(session)))
            conn.commit()
            return result.inserted_primary_key[0]

    def get_session(self, session_id: int) -> Session | None:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def get_session_by_hash(self, refresh_token_hash: str) -> Session | None:
        """Look up a session by refresh token HMAC. O(1) via UNIQUE index."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _sessions.select().where(_sessions.c.refresh_token_hash == refresh_token_hash)
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def rotate_session(self, old_session_id: int, new_session: Session, now: datetime) -> int | None:
        """Revoke *old_session_id* and insert *new_session* in one transaction.

        Compare-and-swap: the revoke only matches a session that is still
        live. When two requests rotate the same refresh token concurrently,
        exactly one UPDATE changes a row; the loser gets None and nothing is
        inserted. Returns the new session ID on success.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _sessions.update()
                .where(
                    (_sessions.c.id == old_session_id)
                    & (_sessions.c.revoked == 0)
                    & (_sessions.c.expires_at > _iso(now))
                )
                .values(revoked=1, revoked_at=_iso(now))
            )
            if result.rowcount != 1:
                return None
            new_id = conn.execute(_sessions.insert().values(**_session_values(new_session))).inserted_primary_key[0]
            conn.execute(_sessions.update().where(_sessions.c.id == old_session_id).values(replaced_by=new_id))
        return new_id

    def revoke_session(self, session_id: int, now: datetime) -> bool:
        """Mark a live session revoked. Returns False if it was already revoked or absent."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.id == session_id) & (_sessions.c.revoked == 0))
                .values(revoked=1, revoked_at=_iso(now))
            )
            conn.commit()
        return result.rowcount > 0

    def revoke_sessions_for_account(self, account_id: int, now: datetime, *, exclude_id: int | None = None) -> int:
        """Revoke every live session of an account. Returns the number revoked."""
        condition = (_sessions.c.account_id == account_id) & (_sessions.c.revoked == 0)
        if exclude_id is not None:
            condition = condition & (_sessions.c.id != exclude_id)
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.update().where(condition).values(revoked=1, revoked_at=_iso(now)))
            conn.commit()
        return result.rowcount

    def list_active_sessions(self, account_id: int, now: datetime) -> list[Session]:
        """Return live (unrevoked, unexpired) sessions, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select()
                .where(
                    (_sessions.c.account_id == account_id)
                    & (_sessions.c.revoked == 0)
                    & (_sessions.c.expires_at > _iso(now))
                )
                .order_by(_sessions.c.issued_at.desc(), _sessions.c.id.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def delete_expired_sessions(self, now: datetime) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expires_at < _iso(now)))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Recovery tokens
    # ------------------------------------------------------------------

    def count_recovery_requests(self, account_id: int, purpose: TokenPurpose, since: datetime) -> int:
        """Count recovery requests for (account, purpose) at or after *since*."""
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_recovery_requests)
                .where(
                    (_recovery_requests.c.account_id == account_id)
                    & (_recovery_requests.c.purpose == TokenPurpose(purpose).value)
                    & (_recovery_requests.c.requested_at >= _iso(since))
                )
            ).scalar()
        return result or 0

    def replace_recovery_token(self, token: RecoveryToken) -> int:
        """Issue *token* as the account's only outstanding recovery token.

        In one transaction: delete every unconsumed token the account holds
        (any purpose), append the request to the rate-limit log, insert the new
        token. Returns the new token's ID.
        """
        with self.engine.begin() as conn:
            conn.execute(
                _recovery_tokens.delete().where(
                    (_recovery_tokens.c.account_id == token.account_id) & (_recovery_tokens.c.consumed_at.is_(None))
                )
            )
            conn.execute(
                _recovery_requests.insert().values(
                    account_id=token.account_id,
                    purpose=TokenPurpose(token.purpose).value,
                    requested_at=_iso(token.created_at),
                )
            )
            result = conn.execute(
                _recovery_tokens.insert().values(
                    account_id=token.account_id,
                    token_hash=token.token_hash,
                    purpose=TokenPurpose(token.purpose).value,
                    expires_at=_iso(token.expires_at),
                    consumed_at=None,
                    created_at=_iso(token.created_at),
                )
            )
            return result.inserted_primary_key[0]

    def get_recovery_token(self, token_hash: str) -> RecoveryToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _recovery_tokens.select().where(_recovery_tokens.c.token_hash == token_hash)
            ).fetchone()
        return _row_to_recovery_token(row) if row is not None else None

    def consume_recovery_token(self, token_hash: str, now: datetime, *, password_hash: str | None = None) -> bool:
        """Stamp consumed_at if the token is still unconsumed and unexpired.

        Returns True for exactly one caller per token; every later or
        concurrent attempt sees rowcount 0.

        With *password_hash*, the owning account's password is replaced and
        its lockout counter cleared in the same transaction. If that update
        fails the claim rolls back and the token stays usable.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _recovery_tokens.update()
                .where(
                    (_recovery_tokens.c.token_hash == token_hash)
                    & (_recovery_tokens.c.consumed_at.is_(None))
                    & (_recovery_tokens.c.expires_at > _iso(now))
                )
                .values(consumed_at=_iso(now))
            )
            if result.rowcount != 1:
                return False
            if password_hash is not None:
                owner = (
                    select(_recovery_tokens.c.account_id)
                    .where(_recovery_tokens.c.token_hash == token_hash)
                    .scalar_subquery()
                )
                conn.execute(
                    _accounts.update()
                    .where(_accounts.c.id == owner)
                    .values(
                        password_hash=password_hash,
                        failed_login_count=0,
                        last_failed_login_at=None,
                        updated_at=_iso(now),
                    )
                )
        return True

    def delete_outstanding_recovery_tokens(self, account_id: int) -> int:
        """Delete every unconsumed recovery token of an account. Returns the count."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _recovery_tokens.delete().where(
                    (_recovery_tokens.c.account_id == account_id) & (_recovery_tokens.c.consumed_at.is_(None))
                )
            )
            conn.commit()
        return result.rowcount

    def list_active_recovery_tokens(self, account_id: int, now: datetime) -> list[RecoveryToken]:
        """Return unconsumed, unexpired tokens for an account, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _recovery_tokens.select()
                .where(
                    (_recovery_tokens.c.account_id == account_id)
                    & (_recovery_tokens.c.consumed_at.is_(None))
                    & (_recovery_tokens.c.expires_at > _iso(now))
                )
                .order_by(_recovery_tokens.c.created_at.desc())
            ).fetchall()
        return [_row_to_recovery_token(r) for r in rows]

    def delete_expired_recovery_tokens(self, now: datetime) -> int:
        """Delete strictly expired tokens (consumed or not). Returns the count."""
        with self.engine.connect() as conn:
            result = conn.execute(_recovery_tokens.delete().where(_recovery_tokens.c.expires_at < _iso(now)))
            conn.commit()
        return result.rowcount

    def delete_recovery_requests_before(self, cutoff: datetime) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_recovery_requests.delete().where(_recovery_requests.c.requested_at < _iso(cutoff)))
            conn.commit()
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _session_values(session: Session) -> dict:
    return {
        "account_id": session.account_id,
        "refresh_token_hash": session.refresh_token_hash,
        "issued_at": _iso(session.issued_at),
        "expires_at": _iso(session.expires_at),
        "revoked": 1 if session.revoked else 0,
        "revoked_at": _iso(session.revoked_at),
        "replaced_by": session.replaced_by,
        "user_agent": session.user_agent,
        "ip_address": session.ip_address,
    }


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        name=row.name,
        password_hash=row.password_hash,
        role=Role(row.role),
        status=AccountStatus(row.status),
        email_verified_at=_dt(row.email_verified_at),
        failed_login_count=row.failed_login_count,
        last_failed_login_at=_dt(row.last_failed_login_at),
        last_login_at=_dt(row.last_login_at),
        last_login_ip=row.last_login_ip,
        created_at=_dt(row.created_at),
        updated_at=_dt(row.updated_at),
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        account_id=row.account_id,
        refresh_token_hash=row.refresh_token_hash,
        issued_at=_dt(row.issued_at),
        expires_at=_dt(row.expires_at),
        revoked=bool(row.revoked),
        revoked_at=_dt(row.revoked_at),
        replaced_by=row.replaced_by,
        user_agent=row.user_agent,
        ip_address=row.ip_address,
    )


def _row_to_recovery_token(row) -> RecoveryToken:
    return RecoveryToken(
        id=row.id,
        account_id=row.account_id,
        token_hash=row.token_hash,
        purpose=TokenPurpose(row.purpose),
        expires_at=_dt(row.expires_at),
        consumed_at=_dt(row.consumed_at),
        created_at=_dt(row.created_at),
    )
