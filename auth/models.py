"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Dataclasses own
domain shape; the store, ledger, token service and orchestrator do the work.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Role(str, Enum):
    """Closed set of roles. Compared by member, never by ad hoc string."""

    ADMIN = "admin"
    PSR = "psr"

    @property
    def role_id(self) -> int:
        return _ROLE_IDS[self]

    @classmethod
    def from_id(cls, role_id: int) -> "Role | None":
        """Map the numeric role id used by clients (1=admin, 2=psr). None if unknown."""
        for role, rid in _ROLE_IDS.items():
            if rid == role_id:
                return role
        return None


_ROLE_IDS: dict[Role, int] = {Role.ADMIN: 1, Role.PSR: 2}

DEFAULT_ROLE = Role.PSR


@dataclass
class Account:
    """A FieldTrack identity: an administrator or a PSR.

    At least one of email / phone is always set. phone is stored normalized
    (+977XXXXXXXXXX) so lookups by any accepted input format hit the same row.

    password_hash is None for OTP-only accounts -- they have no local password
    and password login always fails for them.
    """

    full_name: str
    role: Role = DEFAULT_ROLE
    id: str | None = None
    email: str | None = None
    phone: str | None = None
    password_hash: str | None = None
    is_active: bool = True
    created_at: str | None = None
    updated_at: str | None = None

    def __post_init__(self) -> None:
        if not self.email and not self.phone:
            raise ValueError("Account requires an email or a phone number.")


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int = 3600


@dataclass(frozen=True)
class Claims:
    """Verified token claims. role is None for refresh and reset tokens."""

    subject: str
    token_type: str
    role: Role | None = None
    expires_at: int = 0
    extra: dict = field(default_factory=dict)


@dataclass
class OTPEntry:
    phone: str
    code: str
    expires_at: float
    attempts: int = 0
