"""
auth/otp.py -- OTP ledger: phone -> {code, expires_at}, single-use, TTL-bound.

Two interchangeable backends behind one interface (OTPLedger):

  InMemoryOTPLedger -- dict + threading.Lock. Default. Lost on restart, which
      only invalidates outstanding codes (clients request a new one).

  SQLiteOTPLedger -- a SQLite table on local disk (same shape as a TTL cache:
      key, value, expiry). Several uvicorn workers on one host can share it.

Concurrency contract:
  issue()  -- last writer wins; a new code overwrites the previous one.
  verify() -- atomic check-then-delete. Two concurrent verifications of the
              same valid code can never both succeed:
                in-memory: the whole read-modify-write runs under one lock.
                SQLite:    the final DELETE ... WHERE phone=? AND code=? is a
                           compare-and-delete; only the caller that sees
                           rowcount == 1 wins.

verify() returns a bare bool. No entry, wrong code, too many attempts and
expired all look the same to the caller.

Codes are compared with hmac.compare_digest. Expired entries are dropped
lazily on access and in bulk by purge_expired(), which api/main.py runs on a
timer from the lifespan.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hmac
import logging
import secrets
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path

from auth.models import OTPEntry

logger = logging.getLogger("fieldtrack.auth.otp")

CODE_LENGTH = 6
DEFAULT_TTL = 5 * 60  # seconds
DEFAULT_MAX_ATTEMPTS = 5


def generate_code() -> str:
    """Uniform over 000000-999999, zero padded. secrets, not random."""
    return f"{secrets.randbelow(10**CODE_LENGTH):0{CODE_LENGTH}d}"


def _codes_match(stored: str, supplied: str) -> bool:
    # Encode first: compare_digest raises TypeError on non-ASCII str input.
    return hmac.compare_digest(stored.encode("utf-8"), supplied.encode("utf-8"))


class OTPLedger(ABC):
    """Interface the orchestrator depends on. Phones arrive already normalized."""

    def __init__(
        self,
        ttl: int = DEFAULT_TTL,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl = ttl
        self.max_attempts = max_attempts
        self._clock = clock

    @abstractmethod
    def issue(self, phone: str) -> str:
        """Generate, store and return a fresh code, replacing any earlier one."""

    @abstractmethod
    def verify(self, phone: str, code: str, consume: bool = True) -> bool:
        """True iff a live entry for phone holds code.

        consume=True deletes the entry on success (single-use).
        consume=False only checks; a later consuming verify still works.
        Either way a mismatch counts against max_attempts.
        """

    @abstractmethod
    def discard(self, phone: str) -> None:
        """Drop any entry for phone (e.g. the SMS carrying it never left)."""

    @abstractmethod
    def purge_expired(self) -> int:
        """Delete all expired entries. Returns number removed."""

    def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class InMemoryOTPLedger(OTPLedger):
    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self._entries: dict[str, OTPEntry] = {}
        self._lock = threading.Lock()

    def issue(self, phone: str) -> str:
        code = generate_code()
        with self._lock:
            self._entries[phone] = OTPEntry(phone=phone, code=code, expires_at=self._clock() + self.ttl)
        return code

    def verify(self, phone: str, code: str, consume: bool = True) -> bool:
        with self._lock:
            entry = self._entries.get(phone)
            if entry is None:
                return False
            if self._clock() >= entry.expires_at:
                del self._entries[phone]
                return False
            if not _codes_match(entry.code, code):
                entry.attempts += 1
                if entry.attempts >= self.max_attempts:
                    logger.info("OTP for %s invalidated after %d failed attempts", phone, entry.attempts)
                    del self._entries[phone]
                return False
            if consume:
                del self._entries[phone]
            return True

    def discard(self, phone: str) -> None:
        with self._lock:
            self._entries.pop(phone, None)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [p for p, e in self._entries.items() if e.expires_at <= now]
            for phone in expired:
                del self._entries[phone]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


# ---------------------------------------------------------------------------
# SQLite backend
# ---------------------------------------------------------------------------

_DDL = """
CREATE TABLE IF NOT EXISTS otp_entries (
    phone       TEXT PRIMARY KEY,
    code        TEXT NOT NULL,
    expires_at  REAL NOT NULL,
    attempts    INTEGER NOT NULL DEFAULT 0
);
"""


class SQLiteOTPLedger(OTPLedger):
    """Usage:
    ledger = SQLiteOTPLedger(Path("/var/lib/fieldtrack/otp.db"))
    code = ledger.issue("+9779841234567")
    ledger.verify("+9779841234567", code)   # True, entry gone
    ledger.purge_expired()                  # call periodically
    """

    def __init__(self, db_path: Path | str = ":memory:", **kwargs) -> None:
        super().__init__(**kwargs)
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(_DDL)
        self._conn.commit()
        self._lock = threading.Lock()

    def issue(self, phone: str) -> str:
        code = generate_code()
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO otp_entries (phone, code, expires_at, attempts) VALUES (?, ?, ?, 0)",
                (phone, code, self._clock() + self.ttl),
            )
            self._conn.commit()
        return code

    def verify(self, phone: str, code: str, consume: bool = True) -> bool:
        with self._lock:
            row = self._conn.execute(
                "SELECT code, expires_at, attempts FROM otp_entries WHERE phone = ?",
                (phone,),
            ).fetchone()
            if row is None:
                return False
            stored, expires_at, attempts = row
            now = self._clock()
            if now >= expires_at:
                self._conn.execute("DELETE FROM otp_entries WHERE phone = ? AND code = ?", (phone, stored))
                self._conn.commit()
                return False
            if not _codes_match(stored, code):
                if attempts + 1 >= self.max_attempts:
                    logger.info("OTP for %s invalidated after %d failed attempts", phone, attempts + 1)
                    self._conn.execute("DELETE FROM otp_entries WHERE phone = ? AND code = ?", (phone, stored))
                else:
                    self._conn.execute(
                        "UPDATE otp_entries SET attempts = attempts + 1 WHERE phone = ? AND code = ?",
                        (phone, stored),
                    )
                self._conn.commit()
                return False
            if not consume:
                return True
            # Compare-and-delete: another process may have consumed it since the SELECT.
            cursor = self._conn.execute(
                "DELETE FROM otp_entries WHERE phone = ? AND code = ? AND expires_at > ?",
                (phone, stored, now),
            )
            self._conn.commit()
            return cursor.rowcount == 1

    def discard(self, phone: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM otp_entries WHERE phone = ?", (phone,))
            self._conn.commit()

    def purge_expired(self) -> int:
        with self._lock:
            cursor = self._conn.execute("DELETE FROM otp_entries WHERE expires_at <= ?", (self._clock(),))
            self._conn.commit()
        return cursor.rowcount

    def close(self) -> None:
        self._conn.close()


def build_ledger(db_path: str, ttl: int, max_attempts: int) -> OTPLedger:
    """Pick the backend from Settings.otp_db_path (empty -> in-memory)."""
    if db_path:
        logger.info("OTP ledger: SQLite at %s", db_path)
        return SQLiteOTPLedger(Path(db_path), ttl=ttl, max_attempts=max_attempts)
    logger.info("OTP ledger: in-memory (codes are lost on restart)")
    return InMemoryOTPLedger(ttl=ttl, max_attempts=max_attempts)
