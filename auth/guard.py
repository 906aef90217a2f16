"""
auth/guard.py -- Role checks against verified access-token claims.

Pure functions, no framework imports: auth/dependencies.py adapts them to
FastAPI Depends(), and anything else (CLI, background jobs) can call them
directly.

No claims at all is Unauthorized (401). Claims with the wrong role is
Forbidden (403). The two are never conflated.
"""

from __future__ import annotations

from collections.abc import Iterable

from auth.models import Claims, Role
from core.errors import Forbidden, Unauthorized


def require_role(claims: Claims | None, allowed: Iterable[Role]) -> Claims:
    """Pass through if claims.role is in allowed, else raise Forbidden."""
    if claims is None or claims.role is None:
        raise Unauthorized()
    if claims.role not in set(allowed):
        raise Forbidden()
    return claims


def require_self_or_role(claims: Claims | None, resource_owner_id: str, privileged: Iterable[Role]) -> Claims:
    """Pass if the caller owns the resource or holds a privileged role."""
    if claims is None or claims.role is None:
        raise Unauthorized()
    if claims.subject == resource_owner_id or claims.role in set(privileged):
        return claims
    raise Forbidden()
