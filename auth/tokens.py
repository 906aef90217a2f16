"""
auth/tokens.py -- JWT issuance/verification and password hashing.

Security design decisions:
  JWT: python-jose with HS256. Three token kinds, each stamped with a "type"
       claim so one kind can never be replayed as another, even when the
       refresh/reset secrets fall back to SECRET_KEY [M8]:
         access  -- {sub, role, type, iat, exp}, 1 hour
         refresh -- {sub, type, iat, exp}, 7 days. Never carries role: the
                    orchestrator re-reads role from the store on every refresh.
         reset   -- {sub, type, pwf, iat, exp}, 1 hour. pwf is an HMAC
                    fingerprint of the current password hash, so the token
                    dies the moment the password changes (single-use without
                    server-side state).
       Tokens are self-contained; there is no session table. Revocation is
       indirect -- refresh fails once the account is gone or deactivated.

  Passwords: bcrypt used directly (no passlib wrapper). The cost factor comes
       from Settings.bcrypt_rounds. _DUMMY_HASH enables timing equalization in
       authenticate() so response time does not reveal whether an email
       exists [C1].

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTError

from auth.models import Account, Claims, Role, TokenPair
from core.config import Settings, get_settings

if TYPE_CHECKING:
    from auth.store import AccountStore

logger = logging.getLogger("fieldtrack.auth")

_ALGORITHM = "HS256"

ACCESS = "access"
REFRESH = "refresh"
RESET = "reset"


class TokenError(Exception):
    """Base for token verification failures."""


class TokenInvalid(TokenError):
    """Bad signature, malformed token, wrong type, or missing claims."""


class TokenExpired(TokenError):
    """Signature valid but exp is in the past."""


# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: int | None = None) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only looks at the first 72 bytes. The API layer caps passwords at
    128 characters and the input is truncated here so bcrypt 4.x never raises
    on long multi-byte input.
    """
    cost = rounds if rounds is not None else get_settings().bcrypt_rounds
    return bcrypt.hashpw(plain.encode("utf-8")[:72], bcrypt.gensalt(rounds=cost)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8")[:72], hashed.encode("utf-8"))
    except (ValueError, TypeError):
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("fieldtrack_timing_dummy")


def authenticate(store: AccountStore, email: str, password: str) -> Account | None:
    """Authenticate an email/password login with timing equalization.

    Always runs bcrypt whether or not the account exists:
    - Unknown email or OTP-only account: bcrypt runs against _DUMMY_HASH
    - Wrong password: bcrypt runs against the real hash

    Returns the Account on success, None on any failure.
    """
    account = store.find_by_email(email)
    if account is None or account.password_hash is None:
        # Equalize timing -- do NOT return early before running bcrypt [C1]
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, account.password_hash):
        return None
    if not account.is_active:
        return None
    return account


# ---------------------------------------------------------------------------
# Token service
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenService:
    """Issues and verifies access, refresh and password-reset JWTs.

    Stateless apart from the secrets and lifetimes it is built with, so one
    instance is shared by every request. clock is injectable for tests.
    """

    def __init__(self, settings: Settings, clock: Callable[[], datetime] = _utcnow) -> None:
        self._access_secret = settings.secret_key
        self._refresh_secret = settings.effective_refresh_secret
        self._reset_secret = settings.effective_reset_secret
        self.access_ttl = settings.access_token_expire_seconds
        self.refresh_ttl = settings.refresh_token_expire_seconds
        self.reset_ttl = settings.reset_token_expire_seconds
        self._clock = clock

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue_pair(self, account: Account) -> TokenPair:
        """Sign a fresh access + refresh pair for account using its current role."""
        if account.id is None:
            raise ValueError("Cannot issue tokens for an unsaved account.")
        access = self._encode(
            {"sub": account.id, "role": Role(account.role).value, "type": ACCESS},
            self._access_secret,
            self.access_ttl,
        )
        refresh = self._encode({"sub": account.id, "type": REFRESH}, self._refresh_secret, self.refresh_ttl)
        return TokenPair(access_token=access, refresh_token=refresh, expires_in=self.access_ttl)

    def issue_reset_token(self, account: Account) -> str:
        return self._encode(
            {"sub": account.id, "type": RESET, "pwf": self.password_fingerprint(account)},
            self._reset_secret,
            self.reset_ttl,
        )

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify_access(self, token: str) -> Claims:
        """Return access claims. Raises TokenExpired or TokenInvalid."""
        payload = self._decode(token, self._access_secret, ACCESS)
        try:
            role = Role(payload.get("role"))
        except ValueError as exc:
            raise TokenInvalid("access token has no valid role claim") from exc
        return Claims(subject=payload["sub"], token_type=ACCESS, role=role, expires_at=int(payload["exp"]))

    def verify_refresh(self, token: str) -> Claims:
        """Return refresh claims. Raises TokenExpired or TokenInvalid."""
        payload = self._decode(token, self._refresh_secret, REFRESH)
        return Claims(subject=payload["sub"], token_type=REFRESH, expires_at=int(payload["exp"]))

    def verify_reset_token(self, token: str) -> Claims:
        """Return reset claims (pwf in extra). The caller checks the fingerprint."""
        payload = self._decode(token, self._reset_secret, RESET)
        pwf = payload.get("pwf")
        if not isinstance(pwf, str):
            raise TokenInvalid("reset token has no fingerprint")
        return Claims(subject=payload["sub"], token_type=RESET, expires_at=int(payload["exp"]), extra={"pwf": pwf})

    def password_fingerprint(self, account: Account) -> str:
        """HMAC-SHA256(reset secret, password_hash) truncated to 32 hex chars.

        OTP-only accounts have no hash; the empty string still yields a stable
        fingerprint until a password is first set.
        """
        return hmac.new(
            self._reset_secret.encode(),
            (account.password_hash or "").encode(),
            hashlib.sha256,
        ).hexdigest()[:32]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _encode(self, claims: dict, secret: str, ttl: int) -> str:
        now = self._clock()
        payload = {**claims, "iat": now, "exp": now + timedelta(seconds=ttl)}
        return jwt.encode(payload, secret, algorithm=_ALGORITHM)

    def _decode(self, token: str, secret: str, expected_type: str) -> dict:
        try:
            payload = jwt.decode(token, secret, algorithms=[_ALGORITHM])
        except ExpiredSignatureError as exc:
            raise TokenExpired(f"{expected_type} token expired") from exc
        except JWTError as exc:
            raise TokenInvalid(f"{expected_type} token invalid") from exc
        if payload.get("type") != expected_type:
            raise TokenInvalid(f"expected a {expected_type} token")
        if not isinstance(payload.get("sub"), str) or not payload["sub"]:
            raise TokenInvalid("token has no subject")
        if "exp" not in payload:
            raise TokenInvalid("token has no expiry")
        return payload
