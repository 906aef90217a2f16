"""
core/errors.py -- Domain error taxonomy shared by auth/ and api/.

Every error the auth core raises on purpose is an AuthError subclass. Each
carries a stable machine-readable code, a human-readable message, and the HTTP
status the API layer maps it to. api/main.py registers one exception handler
for AuthError, so route handlers never build error responses by hand.

Anything that is NOT an AuthError is an unexpected failure: it is logged in
full server-side and the client sees only a generic "internal_error".

Layer rule: core/ is the kernel. No imports from api/ or auth/.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class FieldError:
    """One field-level validation message (1:1 with the offending field)."""

    field: str
    message: str


class AuthError(Exception):
    """Base class for all expected, client-facing auth failures."""

    status_code: int = 400
    default_code: str = "bad_request"
    default_message: str = "Bad request."

    def __init__(self, message: str | None = None, code: str | None = None) -> None:
        self.message = message or self.default_message
        self.code = code or self.default_code
        super().__init__(self.message)


class ValidationFailed(AuthError):
    """Malformed input. Carries one FieldError per invalid field."""

    status_code = 422
    default_code = "validation_failed"
    default_message = "Validation failed."

    def __init__(self, fields: list[FieldError], message: str | None = None) -> None:
        super().__init__(message)
        self.fields = fields


class Unauthorized(AuthError):
    """Missing, invalid or expired credential or token."""

    status_code = 401
    default_code = "unauthorized"
    default_message = "Authentication required."


class Forbidden(AuthError):
    """Valid identity, insufficient role."""

    status_code = 403
    default_code = "forbidden"
    default_message = "You do not have permission to access this resource."


class Conflict(AuthError):
    """Uniqueness violation (email or phone already taken)."""

    status_code = 409
    default_code = "conflict"
    default_message = "Resource already exists."


class NotFound(AuthError):
    status_code = 404
    default_code = "not_found"
    default_message = "Resource not found."


class ServiceUnavailable(AuthError):
    """A downstream collaborator (SMS gateway, mailer) failed."""

    status_code = 503
    default_code = "service_unavailable"
    default_message = "A downstream service is unavailable. Please try again."


class RegistrationRequired(AuthError):
    """OTP verified for a phone with no account and no full name supplied.

    Not a failure of the credential: the client must resubmit the same code
    together with a full name to finish registration.
    """

    status_code = 400
    default_code = "registration_required"
    default_message = "User not found. Please provide your full name to register."
