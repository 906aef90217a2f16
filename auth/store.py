"""
auth/store.py -- SQLAlchemy Core persistence layer for accounts.

Pattern: Repository + Data Mapper. AccountStore is the repository;
_row_to_account is the mapper. Route, service and dependency code never
touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  UNIQUE(email) and UNIQUE(phone) are enforced in SQL. Both columns are
  nullable -- a phone-only account has no email and vice versa -- and SQLite
  and PostgreSQL both treat NULLs as distinct in UNIQUE constraints, which is
  exactly the semantics wanted here. A violation surfaces as
  sqlalchemy.exc.IntegrityError; AuthService maps it to a domain Conflict.

  The store never hashes anything. AuthService hashes exactly once before it
  calls create()/save(), so there is no "is this value already hashed?"
  guesswork at this layer.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import uuid
from dataclasses import replace
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, text
from sqlalchemy.engine import Engine

from auth.models import Account, Role

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), unique=True),  # NULL for phone-only accounts
    Column("phone", String(30), unique=True),  # normalized +977XXXXXXXXXX
    Column("full_name", String(120), nullable=False),
    Column("password_hash", Text),  # NULL for OTP-only accounts
    Column("role", String(16), nullable=False, server_default=Role.PSR.value),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block behind writers.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for Account entities.

    Usage:
        store = AccountStore("sqlite:///:memory:")
        created = store.create(Account(full_name="Admin", email="a@x.com", role=Role.ADMIN,
                                       password_hash=hash_password("secret123")))
        account = store.find_by_email("a@x.com")
        store.close()
    """

    def __init__(self, db_url: str = "sqlite:///fieldtrack_auth.db") -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite") and ":memory:" not in db_url and "mode=memory" not in db_url:
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def find_by_email(self, email: str) -> Account | None:
        """Look up an account by email (stored lower-cased). Returns None if not found."""
        return self._find_one(_accounts.c.email == email.strip().lower())

    def find_by_phone(self, phone: str) -> Account | None:
        """Look up an account by normalized phone. Returns None if not found."""
        return self._find_one(_accounts.c.phone == phone)

    def find_by_id(self, account_id: str) -> Account | None:
        return self._find_one(_accounts.c.id == account_id)

    def list_accounts(self) -> list[Account]:
        """Return all accounts ordered by creation time. Admin-only operation."""
        with self.engine.connect() as conn:
            rows = conn.execute(_accounts.select().order_by(_accounts.c.created_at)).fetchall()
        return [_row_to_account(r) for r in rows]

    def ping(self) -> bool:
        """Cheap connectivity check for the health endpoint."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception:
            return False

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, account: Account) -> Account:
        """Insert a new account and return it with id and timestamps filled in.

        Raises sqlalchemy.exc.IntegrityError if the email or phone is taken.
        Callers catch it as the authoritative uniqueness signal -- the
        find_by_* pre-check in AuthService can race with a concurrent insert.
        """
        now = _now_iso()
        created = replace(
            account,
            id=account.id or str(uuid.uuid4()),
            email=account.email.strip().lower() if account.email else None,
            created_at=now,
            updated_at=now,
        )
        with self.engine.connect() as conn:
            conn.execute(
                _accounts.insert().values(
                    id=created.id,
                    email=created.email,
                    phone=created.phone,
                    full_name=created.full_name,
                    password_hash=created.password_hash,
                    role=Role(created.role).value,
                    is_active=1 if created.is_active else 0,
                    created_at=created.created_at,
                    updated_at=created.updated_at,
                )
            )
            conn.commit()
        return created

    def save(self, account: Account) -> Account:
        """Persist every mutable field of an existing account and bump updated_at.

        Raises KeyError if the account does not exist, IntegrityError on a
        uniqueness violation.
        """
        if account.id is None:
            raise ValueError("save() requires a persisted account; use create().")
        saved = replace(
            account,
            email=account.email.strip().lower() if account.email else None,
            updated_at=_now_iso(),
        )
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.update()
                .where(_accounts.c.id == saved.id)
                .values(
                    email=saved.email,
                    phone=saved.phone,
                    full_name=saved.full_name,
                    password_hash=saved.password_hash,
                    role=Role(saved.role).value,
                    is_active=1 if saved.is_active else 0,
                    updated_at=saved.updated_at,
                )
            )
            conn.commit()
        if result.rowcount == 0:
            raise KeyError(saved.id)
        return saved

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _find_one(self, clause) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(clause)).fetchone()
        return _row_to_account(row) if row is not None else None


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        phone=row.phone,
        full_name=row.full_name,
        password_hash=row.password_hash,
        role=Role(row.role),
        is_active=bool(row.is_active),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
