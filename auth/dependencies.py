"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Only one credential is accepted: Authorization: Bearer <access token>.
Refresh and reset tokens are rejected here by their "type" claim.

get_claims()            -- verified Claims, or Unauthorized (missing, garbled,
                           expired, or wrong token type).
get_current_account()   -- get_claims() + fresh store read; Unauthorized when
                           the account is gone or deactivated.
require_roles(*roles)   -- dependency factory; Forbidden when the claim role
                           is not in roles.
require_admin           -- require_roles(Role.ADMIN).

Errors are raised as core.errors types; api/main.py turns them into the
standard error envelope.

Layer rule: may import from fastapi (it is part of the DI system) but not
from api/.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Depends, Request

from auth.guard import require_role
from auth.models import Account, Claims, Role
from auth.tokens import TokenExpired, TokenInvalid
from core.errors import Unauthorized


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_claims(request: Request) -> Claims:
    """Require a valid access token. Raises Unauthorized otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(claims: Claims = Depends(get_claims)): ...
    """
    token = _bearer_token(request)
    if token is None:
        raise Unauthorized("Authentication required. No token provided.")
    try:
        return request.app.state.token_service.verify_access(token)
    except TokenExpired:
        raise Unauthorized("Authentication token has expired. Please login again.", code="token_expired") from None
    except TokenInvalid:
        raise Unauthorized("Invalid authentication token.", code="invalid_token") from None


def get_current_account(request: Request, claims: Claims = Depends(get_claims)) -> Account:
    account = request.app.state.account_store.find_by_id(claims.subject)
    if account is None or not account.is_active:
        raise Unauthorized("User no longer exists or access has been revoked.")
    return account


def require_roles(*roles: Role) -> Callable[[Claims], Claims]:
    """Build a dependency that admits only the given roles.

        @router.get("/reports", dependencies=[Depends(require_roles(Role.ADMIN))])
    """
    allowed = frozenset(roles)

    def dependency(claims: Claims = Depends(get_claims)) -> Claims:
        return require_role(claims, allowed)

    return dependency


require_admin = require_roles(Role.ADMIN)
