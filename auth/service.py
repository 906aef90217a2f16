"""
auth/service.py -- AuthService: the orchestrator behind every auth route.

Coordinates the three leaves (AccountStore, OTPLedger, TokenService) and the
outbound collaborators (SMSGateway, Mailer). Every method either returns a
result object or raises a core.errors.AuthError subclass; the API layer maps
those to responses and never re-implements any of the rules below.

Flows:
  register         -- validate, reject duplicates (Conflict), default role psr,
                      hash once, persist, issue a token pair.
  login            -- generic bad_credentials for unknown email, wrong password,
                      password-less or inactive account [C1].
  refresh          -- verify refresh token, re-read the account, issue a pair
                      with the CURRENT role (role is never cached in the token).
  change_password  -- verify current password, reject reuse and weak passwords.
  forgot_password  -- same answer whether or not the email exists.
  reset_password   -- verify reset token signature/expiry/purpose/fingerprint.
  request_otp      -- issue + SMS. Gateway failure -> ServiceUnavailable.
  verify_otp       -- explicit state machine, see OTPState.
  link_phone       -- attach a phone to the caller's account after a password check.

Hashing is explicit here and nowhere else: the store only ever receives a
bcrypt hash, so "is this already hashed?" is never a question.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hmac
import logging
import re
from dataclasses import dataclass, replace
from enum import Enum

from sqlalchemy.exc import IntegrityError

from auth.models import DEFAULT_ROLE, Account, Role, TokenPair
from auth.notify import Mailer, SMSGateway
from auth.otp import CODE_LENGTH, OTPLedger
from auth.phone import normalize_phone
from auth.store import AccountStore
from auth.tokens import TokenError, TokenService, authenticate, hash_password, verify_password
from core.config import Settings
from core.errors import (
    Conflict,
    FieldError,
    Forbidden,
    NotFound,
    ServiceUnavailable,
    Unauthorized,
    ValidationFailed,
)

logger = logging.getLogger("fieldtrack.auth")

PASSWORD_MIN_LEN = 8
PASSWORD_MAX_LEN = 128
FULL_NAME_MIN_LEN = 2
FULL_NAME_MAX_LEN = 100

BAD_CREDENTIALS_MESSAGE = "Invalid email or password."
FORGOT_PASSWORD_MESSAGE = "If your email is registered, you will receive a password reset link."

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class OTPState(str, Enum):
    """States of the phone/OTP login flow.

    (start)               -> request_otp()  -> AWAITING_VERIFICATION
    AWAITING_VERIFICATION -> verify_otp()   -> AUTHENTICATED | REGISTRATION_REQUIRED | REJECTED
    REGISTRATION_REQUIRED -> verify_otp(+full_name, same code) -> AUTHENTICATED | REJECTED

    The start state, awaiting an OTP request, stores nothing and has no
    member. REJECTED is non-fatal: the client starts over with request_otp().
    """

    AWAITING_VERIFICATION = "awaiting_verification"
    REGISTRATION_REQUIRED = "registration_required"
    AUTHENTICATED = "authenticated"
    REJECTED = "rejected"


@dataclass(frozen=True)
class AuthResult:
    account: Account
    tokens: TokenPair


@dataclass(frozen=True)
class OTPDispatch:
    phone: str
    code: str
    expires_in: int
    state: OTPState = OTPState.AWAITING_VERIFICATION


@dataclass(frozen=True)
class OTPOutcome:
    state: OTPState
    phone: str
    account: Account | None = None
    tokens: TokenPair | None = None
    created: bool = False


# ---------------------------------------------------------------------------
# Input policy
# ---------------------------------------------------------------------------


def password_policy_errors(password: str | None, field: str = "password") -> list[FieldError]:
    """Length 8-128, at least one letter and one digit. One message per rule broken."""
    password = password or ""
    errors: list[FieldError] = []
    if len(password) < PASSWORD_MIN_LEN:
        errors.append(FieldError(field, f"Password must be at least {PASSWORD_MIN_LEN} characters long"))
    elif len(password) > PASSWORD_MAX_LEN:
        errors.append(FieldError(field, f"Password must be at most {PASSWORD_MAX_LEN} characters long"))
    if not re.search(r"[A-Za-z]", password):
        errors.append(FieldError(field, "Password must contain at least one letter"))
    if not re.search(r"\d", password):
        errors.append(FieldError(field, "Password must contain at least one number"))
    return errors


def _email_errors(email: str, field: str = "email") -> list[FieldError]:
    if not _EMAIL_RE.match(email) or len(email) > 255:
        return [FieldError(field, "Please provide a valid email address")]
    return []


def _full_name_errors(full_name: str, field: str = "full_name") -> list[FieldError]:
    if not (FULL_NAME_MIN_LEN <= len(full_name) <= FULL_NAME_MAX_LEN):
        return [FieldError(field, f"Full name must be between {FULL_NAME_MIN_LEN} and {FULL_NAME_MAX_LEN} characters")]
    return []


def _phone_or_error(raw: str | None, errors: list[FieldError], field: str = "phone") -> str | None:
    try:
        return normalize_phone(raw or "")
    except ValueError as exc:
        errors.append(FieldError(field, str(exc)))
        return None


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class AuthService:
    def __init__(
        self,
        store: AccountStore,
        ledger: OTPLedger,
        tokens: TokenService,
        sms: SMSGateway,
        mailer: Mailer,
        settings: Settings,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._tokens = tokens
        self._sms = sms
        self._mailer = mailer
        self._bcrypt_rounds = settings.bcrypt_rounds
        self._sender_name = settings.sms_sender_name
        self._self_registration_enabled = settings.self_registration_enabled

    # ------------------------------------------------------------------
    # Email + password
    # ------------------------------------------------------------------

    def register(
        self,
        email: str,
        password: str,
        full_name: str,
        phone: str | None = None,
        role_id: int | None = None,
    ) -> AuthResult:
        if not self._self_registration_enabled:
            raise Forbidden("Self-registration is disabled.", code="registration_disabled")

        email = (email or "").strip().lower()
        full_name = (full_name or "").strip()
        errors = _email_errors(email) + password_policy_errors(password) + _full_name_errors(full_name)
        normalized_phone = _phone_or_error(phone, errors) if phone else None
        role = DEFAULT_ROLE
        if role_id is not None:
            resolved = Role.from_id(role_id)
            if resolved is None:
                errors.append(FieldError("role_id", "Invalid role specified"))
            else:
                role = resolved
        if errors:
            raise ValidationFailed(errors)

        if self._store.find_by_email(email) is not None:
            raise Conflict("User with this email already exists.")
        if normalized_phone and self._store.find_by_phone(normalized_phone) is not None:
            raise Conflict("This phone number is already linked to another account.")

        account = self._create(
            Account(
                full_name=full_name,
                email=email,
                phone=normalized_phone,
                role=role,
                password_hash=hash_password(password, self._bcrypt_rounds),
            )
        )
        logger.info("Registered account %s (role=%s)", account.id, account.role.value)
        return AuthResult(account, self._tokens.issue_pair(account))

    def login(self, email: str, password: str) -> AuthResult:
        account = authenticate(self._store, (email or "").strip().lower(), password or "")
        if account is None:
            raise Unauthorized(BAD_CREDENTIALS_MESSAGE, code="bad_credentials")
        return AuthResult(account, self._tokens.issue_pair(account))

    def refresh(self, refresh_token: str) -> TokenPair:
        try:
            claims = self._tokens.verify_refresh(refresh_token or "")
        except TokenError:
            raise Unauthorized("Invalid or expired refresh token.", code="invalid_refresh_token") from None
        account = self._store.find_by_id(claims.subject)
        if account is None or not account.is_active:
            raise Unauthorized("Invalid or expired refresh token.", code="invalid_refresh_token")
        return self._tokens.issue_pair(account)

    def get_profile(self, account_id: str) -> Account:
        account = self._store.find_by_id(account_id)
        if account is None:
            raise NotFound("User not found.")
        return account

    def change_password(self, account_id: str, current_password: str, new_password: str) -> None:
        account = self._store.find_by_id(account_id)
        if account is None or not account.is_active:
            raise Unauthorized()
        if account.password_hash is None or not verify_password(current_password or "", account.password_hash):
            raise Unauthorized("Current password is incorrect.", code="bad_credentials")

        errors: list[FieldError] = []
        if new_password == current_password:
            errors.append(FieldError("new_password", "New password cannot be the same as current password"))
        errors += password_policy_errors(new_password, "new_password")
        if errors:
            raise ValidationFailed(errors)

        self._save(replace(account, password_hash=hash_password(new_password, self._bcrypt_rounds)))
        logger.info("Password changed for account %s", account.id)

    def forgot_password(self, email: str) -> str | None:
        """Issue a reset token if the email belongs to an active account.

        Callers must answer FORGOT_PASSWORD_MESSAGE either way. The token is
        returned only so debug builds can echo it; production hands it to the
        mailer and drops it.
        """
        email = (email or "").strip().lower()
        errors = _email_errors(email)
        if errors:
            raise ValidationFailed(errors)
        account = self._store.find_by_email(email)
        if account is None or not account.is_active:
            return None
        token = self._tokens.issue_reset_token(account)
        if not self._mailer.send_password_reset(email, token):
            # Surfacing this would reveal that the email exists.
            logger.warning("Password reset mail for account %s was not delivered", account.id)
        return token

    def reset_password(self, token: str, new_password: str) -> None:
        errors = password_policy_errors(new_password, "new_password")
        if errors:
            raise ValidationFailed(errors)
        invalid = Unauthorized("Invalid or expired reset token.", code="invalid_reset_token")
        try:
            claims = self._tokens.verify_reset_token(token or "")
        except TokenError:
            raise invalid from None
        account = self._store.find_by_id(claims.subject)
        if account is None or not account.is_active:
            raise invalid
        # Fingerprint of the hash the token was issued against; any password
        # change since then (including a previous reset) kills the token.
        if not hmac.compare_digest(claims.extra["pwf"], self._tokens.password_fingerprint(account)):
            raise invalid
        self._save(replace(account, password_hash=hash_password(new_password, self._bcrypt_rounds)))
        logger.info("Password reset for account %s", account.id)

    # ------------------------------------------------------------------
    # Phone + OTP
    # ------------------------------------------------------------------

    def request_otp(self, phone: str) -> OTPDispatch:
        errors: list[FieldError] = []
        normalized = _phone_or_error(phone, errors)
        if errors or normalized is None:
            raise ValidationFailed(errors)

        code = self._ledger.issue(normalized)
        minutes = max(1, self._ledger.ttl // 60)
        message = f"Your {self._sender_name} verification code is: {code}. Valid for {minutes} minutes."
        if not self._sms.send(normalized, message):
            # Leave nothing behind: the client simply asks again.
            self._ledger.discard(normalized)
            raise ServiceUnavailable("Could not send verification code. Please try again.", code="sms_failed")
        return OTPDispatch(phone=normalized, code=code, expires_in=self._ledger.ttl)

    def verify_otp(self, phone: str, code: str, full_name: str | None = None) -> OTPOutcome:
        errors: list[FieldError] = []
        normalized = _phone_or_error(phone, errors)
        code = (code or "").strip()
        if len(code) != CODE_LENGTH or not code.isdigit():
            errors.append(FieldError("otp", f"OTP must be {CODE_LENGTH} digits"))
        name = (full_name or "").strip() or None
        if name is not None:
            errors += _full_name_errors(name)
        if errors or normalized is None:
            raise ValidationFailed(errors)

        account = self._store.find_by_phone(normalized)

        if account is None and name is None:
            # Check without consuming so the same code can be resubmitted
            # with a full name inside its window.
            if self._ledger.verify(normalized, code, consume=False):
                return OTPOutcome(OTPState.REGISTRATION_REQUIRED, normalized)
            return OTPOutcome(OTPState.REJECTED, normalized)

        if not self._ledger.verify(normalized, code):
            return OTPOutcome(OTPState.REJECTED, normalized)

        created = False
        if account is None:
            account = self._create(Account(full_name=name, phone=normalized, role=DEFAULT_ROLE))
            created = True
            logger.info("Registered account %s via OTP", account.id)
        elif not account.is_active:
            return OTPOutcome(OTPState.REJECTED, normalized)

        return OTPOutcome(
            OTPState.AUTHENTICATED,
            normalized,
            account=account,
            tokens=self._tokens.issue_pair(account),
            created=created,
        )

    def link_phone(self, account_id: str, phone: str, password: str) -> Account:
        errors: list[FieldError] = []
        normalized = _phone_or_error(phone, errors)
        if errors or normalized is None:
            raise ValidationFailed(errors)

        account = self._store.find_by_id(account_id)
        if account is None or not account.is_active:
            raise Unauthorized()
        if account.password_hash is None or not verify_password(password or "", account.password_hash):
            raise Unauthorized("Invalid password.", code="bad_credentials")

        owner = self._store.find_by_phone(normalized)
        if owner is not None and owner.id != account.id:
            raise Conflict("This phone number is already linked to another account.")
        return self._save(replace(account, phone=normalized))

    # ------------------------------------------------------------------
    # Store wrappers -- uniqueness violations become Conflict, never a 500
    # ------------------------------------------------------------------

    def _create(self, account: Account) -> Account:
        try:
            return self._store.create(account)
        except IntegrityError as exc:
            raise Conflict("An account with this email or phone already exists.") from exc

    def _save(self, account: Account) -> Account:
        try:
            return self._store.save(account)
        except IntegrityError as exc:
            raise Conflict("An account with this email or phone already exists.") from exc
