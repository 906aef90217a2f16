"""
api/main.py -- FastAPI application entry point for FieldTrack auth.

Exposes the auth core (accounts, OTP login, tokens, role guard) over HTTP for
the field app and the admin dashboard.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (account store, OTP ledger, token service, SMS
gateway, purge task) and shutdown (cancel purge task, close stores)
symmetrically.

Error envelope: every non-2xx response body is
    {"error": {"code": ..., "message": ..., "detail"?: ..., "fields"?: [...]}}
"""

from __future__ import annotations

import asyncio
import logging
import time
import traceback
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, FieldErrorModel, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.notify import LogMailer, build_sms_gateway
from auth.otp import build_ledger
from auth.service import AuthService
from auth.store import AccountStore
from auth.tokens import TokenService
from core.config import get_settings
from core.errors import AuthError, ValidationFailed

__version__ = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("fieldtrack.api")

settings = get_settings()

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Drop expired OTP entries every OTP_PURGE_INTERVAL_SECONDS.

    Verification already ignores expired entries; this only bounds how long
    unused codes sit in memory or on disk. CancelledError from task.cancel()
    during shutdown propagates out of asyncio.sleep and ends the loop.
    """
    while True:
        await asyncio.sleep(settings.otp_purge_interval_seconds)
        removed = app.state.otp_ledger.purge_expired()
        if removed:
            logger.debug("Purged %d expired OTP entries", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the auth core once and share it through app.state.

    Startup order matters:
      1. Store and ledger -- the leaves; depend on nothing.
      2. Token service, SMS gateway, mailer.
      3. AuthService -- wires the above together.
      4. Purge task last -- references app.state.otp_ledger.
    """
    logger.info("FieldTrack auth API starting up")
    app.state.account_store = AccountStore(settings.database_url)
    app.state.otp_ledger = build_ledger(settings.otp_db_path, settings.otp_ttl_seconds, settings.otp_max_attempts)
    app.state.token_service = TokenService(settings)
    app.state.auth_service = AuthService(
        store=app.state.account_store,
        ledger=app.state.otp_ledger,
        tokens=app.state.token_service,
        sms=build_sms_gateway(settings.sms_gateway_url, settings.sms_api_key, settings.sms_timeout_seconds),
        mailer=LogMailer(debug=settings.debug),
        settings=settings,
    )
    logger.info("Auth core initialized (self_registration=%s)", settings.self_registration_enabled)
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.otp_ledger.close()
    app.state.account_store.close()
    logger.info("FieldTrack auth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="FieldTrack Auth API",
    description="Accounts, phone/OTP login, JWT sessions and role checks for the FieldTrack field app.",
    version=__version__,
    lifespan=lifespan,
    # Interactive docs only in debug builds.
    docs_url="/docs" if settings.debug else None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _envelope(status_code: int, detail: ErrorDetail) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=detail).model_dump(exclude_none=True),
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map every domain error (core.errors) to its status and stable code."""
    fields = None
    if isinstance(exc, ValidationFailed):
        fields = [FieldErrorModel(field=f.field, message=f.message) for f in exc.fields]
    if exc.status_code >= 500:
        logger.warning("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return _envelope(exc.status_code, ErrorDetail(code=exc.code, message=exc.message, fields=fields))


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After tells clients how many seconds to wait before retrying.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _envelope(
        429,
        ErrorDetail(code="rate_limited", message="Too many requests.", detail=str(exc)),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 when the request body does not even have the right shape."""
    fields = [
        FieldErrorModel(
            field=".".join(str(p) for p in err.get("loc", ()) if p != "body") or "body",
            message=err.get("msg", "Invalid value"),
        )
        for err in exc.errors()
    ]
    return _envelope(
        422,
        ErrorDetail(code="validation_error", message="Request validation failed.", fields=fields),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Structured error for framework-raised HTTP errors (404 route, 405 method)."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _envelope(exc.status_code, ErrorDetail(code=f"http_{exc.status_code}", message=str(exc.detail)))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The traceback is always logged. It is echoed to the client only when
    DEBUG=true; production responses carry the generic message alone.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    stack = traceback.format_exception(type(exc), exc, exc.__traceback__) if settings.debug else None
    return _envelope(
        500,
        ErrorDetail(code="internal_error", message="An unexpected error occurred.", stack=stack),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return liveness plus a database round-trip check."""
    db_ok = request.app.state.account_store.ping()
    return HealthResponse(
        status="healthy" if db_ok else "degraded",
        version=__version__,
        components={"app": "ok", "database": "ok" if db_ok else "unavailable"},
    )
