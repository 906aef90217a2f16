"""
tests/conftest.py -- Shared test fixtures for FieldTrack auth tests.

This module provides:
  - RecordingSMSGateway / RecordingMailer: in-process collaborators that keep
    what they were asked to send (and can be told to fail)
  - _make_test_core(): isolated store + ledger + token service + AuthService
  - _patch_lifespan(): wires a test core into app.state, bypassing real startup
  - core: function-scoped test core for service-level tests
  - api_client: TestClient with an admin JWT for API integration tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The env vars below must be set before any auth/core import:
  DEBUG=true               -- get_settings() auto-generates SECRET_KEY
  BCRYPT_ROUNDS=4          -- bcrypt minimum; keeps the suite fast
  RATE_LIMIT_ENABLED=false -- the shared limiter would otherwise trip on
                              repeated logins from the same test client
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass

# CRITICAL: set before any auth/core import (see module docstring).
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.models import Account, Role
from auth.notify import Mailer, SMSGateway
from auth.otp import InMemoryOTPLedger
from auth.service import AuthService
from auth.store import AccountStore
from auth.tokens import TokenService, hash_password
from core.config import get_settings

ADMIN_EMAIL = "admin@fieldtrack.test"
ADMIN_PASSWORD = "AdminPass1"
PSR_EMAIL = "psr@fieldtrack.test"
PSR_PASSWORD = "PsrPass123"

# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------


class RecordingSMSGateway(SMSGateway):
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []
        self.fail = False

    def send(self, phone: str, message: str) -> bool:
        if self.fail:
            return False
        self.sent.append((phone, message))
        return True


class RecordingMailer(Mailer):
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    def send_password_reset(self, email: str, token: str) -> bool:
        self.sent.append((email, token))
        return True


# ---------------------------------------------------------------------------
# Core helpers
# ---------------------------------------------------------------------------


@dataclass
class AuthCore:
    store: AccountStore
    ledger: InMemoryOTPLedger
    tokens: TokenService
    sms: RecordingSMSGateway
    mailer: RecordingMailer
    service: AuthService

    def close(self) -> None:
        self.ledger.close()
        self.store.close()


def _make_test_core(db_suffix: str) -> AuthCore:
    """Create an isolated auth core on a named shared-memory SQLite DB.

    Args:
        db_suffix: Unique string appended to the DB name so test modules and
                   function-scoped fixtures never share state.
    """
    settings = get_settings()
    store = AccountStore(db_url=f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true")
    ledger = InMemoryOTPLedger(ttl=settings.otp_ttl_seconds, max_attempts=settings.otp_max_attempts)
    tokens = TokenService(settings)
    sms = RecordingSMSGateway()
    mailer = RecordingMailer()
    service = AuthService(store, ledger, tokens, sms, mailer, settings)
    return AuthCore(store, ledger, tokens, sms, mailer, service)


def _seed_account(core: AuthCore, email: str, password: str, role: Role, full_name: str) -> Account:
    return core.store.create(
        Account(full_name=full_name, email=email, role=role, password_hash=hash_password(password))
    )


def _patch_lifespan(core: AuthCore):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.account_store = core.store
        app.state.otp_ledger = core.ledger
        app.state.token_service = core.tokens
        app.state.auth_service = core.service
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def core() -> Generator[AuthCore, None, None]:
    """Fresh auth core per test: empty store, empty ledger, no sent messages."""
    test_core = _make_test_core(f"unit_{uuid.uuid4().hex}")
    yield test_core
    test_core.close()


@pytest.fixture(scope="module")
def api_core(request) -> Generator[AuthCore, None, None]:
    """Module-scoped core shared by api_client and tests that inspect it."""
    test_core = _make_test_core(request.module.__name__.rsplit(".", 1)[-1])
    yield test_core
    test_core.close()


@pytest.fixture(scope="module")
def api_client(api_core: AuthCore) -> Generator[tuple[TestClient, str, str], None, None]:
    """Yield (client, token, account_id) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers but use isolated in-memory stores.
    The admin account is created before the client starts and its access
    token is issued for use in Authorization headers.
    """
    admin = _seed_account(api_core, ADMIN_EMAIL, ADMIN_PASSWORD, Role.ADMIN, "Test Admin")
    token = api_core.tokens.issue_pair(admin).access_token

    app.router.lifespan_context = _patch_lifespan(api_core)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, token, admin.id


@pytest.fixture(scope="module")
def psr_auth(api_core: AuthCore, api_client) -> tuple[str, str]:
    """Yield (token, account_id) for a PSR account in the api_client store."""
    psr = _seed_account(api_core, PSR_EMAIL, PSR_PASSWORD, Role.PSR, "Test Psr")
    return api_core.tokens.issue_pair(psr).access_token, psr.id
