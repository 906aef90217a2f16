"""
auth/phone.py -- Nepali mobile number validation and normalization.

Accepted inputs: 98XXXXXXXX, 098XXXXXXXX, 97798XXXXXXXX, +97798XXXXXXXX,
with any spaces, dashes or parentheses. Mobile prefixes are 96-99.

Every phone number is normalized to +977XXXXXXXXXX before it touches the
OTP ledger or the account store, so "9841234567" and "+977-984-1234567"
address the same ledger entry and the same account.
"""

from __future__ import annotations

import re

COUNTRY_CODE = "977"

_NEPALI_MOBILE_RE = re.compile(r"^(\+977|977|0)?9[6-9]\d{8}$")
_SEPARATORS_RE = re.compile(r"[\s\-()]")


def is_valid_phone(raw: str) -> bool:
    return bool(_NEPALI_MOBILE_RE.match(_SEPARATORS_RE.sub("", raw or "")))


def normalize_phone(raw: str) -> str:
    """Return the +977 E.164 form of raw.

    Raises ValueError when raw is not a Nepali mobile number; callers turn
    that into a field-level ValidationFailed.
    """
    compact = _SEPARATORS_RE.sub("", raw or "")
    if not _NEPALI_MOBILE_RE.match(compact):
        raise ValueError("Please provide a valid Nepali phone number")
    # Local numbers can themselves start with 97 (e.g. 9771234567), so only
    # the 13-digit form carries the country code.
    digits = compact.lstrip("+")
    if len(digits) == 10 + len(COUNTRY_CODE):
        return f"+{digits}"
    return f"+{COUNTRY_CODE}{digits[-10:]}"
