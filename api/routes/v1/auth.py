"""
api/routes/v1/auth.py -- Authentication and account REST endpoints.

Routes:
  POST /api/v1/auth/register          -- email+password registration (201)
  POST /api/v1/auth/login             -- email+password login
  POST /api/v1/auth/refresh-token     -- rotate a refresh token into a fresh pair
  GET  /api/v1/auth/me                -- current account (requires auth)
  POST /api/v1/auth/change-password   -- requires auth
  POST /api/v1/auth/forgot-password   -- always the same generic answer
  POST /api/v1/auth/reset-password    -- reset-token based
  POST /api/v1/auth/send-otp          -- SMS a 6-digit code
  POST /api/v1/auth/verify-otp        -- OTP login / registration
  POST /api/v1/auth/link-phone        -- attach a phone (requires auth)
  GET  /api/v1/auth/users             -- list accounts (admin only)
  GET  /api/v1/auth/users/{id}        -- one account (self or admin)

Security:
  [H2] login, forgot-password, send-otp and verify-otp are rate-limited per IP.
  [C1] AuthService.login() runs bcrypt on every attempt -- never inline a
       store lookup + verify_password() here.
  [M5] Cache-Control: no-store on every response that carries tokens.
  Handlers that hash or verify passwords are plain `def` so FastAPI runs them
  in its threadpool instead of blocking the event loop.

All business rules live in AuthService. Handlers translate HTTP <-> service
calls and nothing else; domain errors propagate to the handlers in api/main.py.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.limiter import limiter
from api.models import (
    AccountResponse,
    AuthResponse,
    ChangePasswordRequest,
    ForgotPasswordRequest,
    ForgotPasswordResponse,
    LinkPhoneRequest,
    LoginRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    SendOTPRequest,
    SendOTPResponse,
    TokenResponse,
    VerifyOTPRequest,
)
from auth.dependencies import get_claims, get_current_account, require_admin
from auth.guard import require_self_or_role
from auth.models import Account, Claims, Role
from auth.service import FORGOT_PASSWORD_MESSAGE, AuthResult, AuthService, OTPState
from auth.store import AccountStore
from core.config import get_settings
from core.errors import NotFound, RegistrationRequired, Unauthorized

# Auth policy:
# - register, login, refresh-token, forgot-password, reset-password,
#   send-otp, verify-otp:            public
# - me, change-password, link-phone: requires auth (get_current_account / get_claims)
# - users:                           requires admin (require_admin)
# - users/{id}:                      requires auth + self-or-admin (require_self_or_role)
router = APIRouter()

_settings = get_settings()


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _no_store(response: Response) -> None:
    response.headers["Cache-Control"] = "no-store"  # [M5]


def _auth_response(message: str, result: AuthResult, created: bool = False) -> AuthResponse:
    pair = result.tokens
    return AuthResponse(
        message=message,
        user=AccountResponse.from_account(result.account),
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        expires_in=pair.expires_in,
        created=created,
    )


# ---------------------------------------------------------------------------
# Email + password
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=AuthResponse, status_code=201)
def register(request: Request, response: Response, body: RegisterRequest) -> AuthResponse:
    """Create an account with email + password and return a token pair.

    role_id is optional (1=admin, 2=psr); omitted means psr.
    """
    result = _service(request).register(
        email=body.email,
        password=body.password,
        full_name=body.full_name,
        phone=body.phone,
        role_id=body.role_id,
    )
    _no_store(response)
    return _auth_response("User registered successfully", result, created=True)


@limiter.limit(_settings.login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=AuthResponse)
def login(request: Request, response: Response, body: LoginRequest) -> AuthResponse:
    """Authenticate with email and password.

    Wrong password and unknown email both produce 401 bad_credentials with the
    same message, in the same time.
    """
    result = _service(request).login(body.email, body.password)
    _no_store(response)
    return _auth_response("Login successful", result)


@router.post("/auth/refresh-token", response_model=TokenResponse)
async def refresh_token(request: Request, response: Response, body: RefreshRequest) -> TokenResponse:
    """Exchange a refresh token for a new pair carrying the account's current role."""
    pair = _service(request).refresh(body.refresh_token)
    _no_store(response)
    return TokenResponse.from_pair("Token refreshed successfully", pair)


@router.get("/auth/me", response_model=AccountResponse)
async def me(request: Request, claims: Claims = Depends(get_claims)) -> AccountResponse:
    """Return a fresh read of the authenticated account."""
    return AccountResponse.from_account(_service(request).get_profile(claims.subject))


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    account: Account = Depends(get_current_account),
) -> MessageResponse:
    _service(request).change_password(account.id, body.current_password, body.new_password)
    return MessageResponse(message="Password changed successfully")


@limiter.limit(_settings.login_rate_limit)  # [H2]
@router.post("/auth/forgot-password", response_model=ForgotPasswordResponse)
def forgot_password(request: Request, body: ForgotPasswordRequest) -> ForgotPasswordResponse:
    """Always answers with the same message so callers cannot probe for accounts.

    The reset token is echoed only when DEBUG=true.
    """
    token = _service(request).forgot_password(body.email)
    return ForgotPasswordResponse(
        message=FORGOT_PASSWORD_MESSAGE,
        reset_token=token if _settings.debug else None,
    )


@router.post("/auth/reset-password", response_model=MessageResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    _service(request).reset_password(body.token, body.new_password)
    return MessageResponse(message="Password reset successfully")


# ---------------------------------------------------------------------------
# Phone + OTP
# ---------------------------------------------------------------------------


@limiter.limit(_settings.otp_rate_limit)  # [H2] also caps SMS spend per IP
@router.post("/auth/send-otp", response_model=SendOTPResponse)
def send_otp(request: Request, body: SendOTPRequest) -> SendOTPResponse:
    """Send a 6-digit code by SMS. The code itself is echoed only when DEBUG=true."""
    dispatch = _service(request).request_otp(body.phone)
    return SendOTPResponse(
        message="OTP sent successfully",
        phone=dispatch.phone,
        expires_in=dispatch.expires_in,
        otp=dispatch.code if _settings.debug else None,
    )


@limiter.limit(_settings.otp_rate_limit)  # [H2]
@router.post("/auth/verify-otp", response_model=AuthResponse)
def verify_otp(request: Request, response: Response, body: VerifyOTPRequest) -> AuthResponse:
    """Verify a code and log in, registering the phone first if full_name is given.

    401 invalid_otp     -- wrong, expired, reused or unknown code (indistinguishable).
    400 registration_required -- code is valid but no account exists for the
                               phone; resubmit the same code with full_name.
    """
    outcome = _service(request).verify_otp(body.phone, body.otp, body.full_name)
    if outcome.state is OTPState.REGISTRATION_REQUIRED:
        raise RegistrationRequired()
    if outcome.state is not OTPState.AUTHENTICATED:
        raise Unauthorized("The verification code is invalid or has expired.", code="invalid_otp")
    _no_store(response)
    return _auth_response(
        "Authentication successful",
        AuthResult(outcome.account, outcome.tokens),
        created=outcome.created,
    )


@router.post("/auth/link-phone", response_model=AccountResponse)
def link_phone(
    request: Request,
    body: LinkPhoneRequest,
    account: Account = Depends(get_current_account),
) -> AccountResponse:
    """Attach a phone number to the caller's account (password re-confirmed)."""
    updated = _service(request).link_phone(account.id, body.phone, body.password)
    return AccountResponse.from_account(updated)


# ---------------------------------------------------------------------------
# Account directory
# ---------------------------------------------------------------------------


@router.get("/auth/users", response_model=list[AccountResponse])
async def list_users(request: Request, _claims: Claims = Depends(require_admin)) -> list[AccountResponse]:
    """List all accounts. Admin only."""
    store: AccountStore = request.app.state.account_store
    return [AccountResponse.from_account(a) for a in store.list_accounts()]


@router.get("/auth/users/{account_id}", response_model=AccountResponse)
async def get_user(request: Request, account_id: str, claims: Claims = Depends(get_claims)) -> AccountResponse:
    """Return one account. PSRs may read only their own record; admins any."""
    require_self_or_role(claims, account_id, {Role.ADMIN})
    store: AccountStore = request.app.state.account_store
    account = store.find_by_id(account_id)
    if account is None:
        raise NotFound("User not found.")
    return AccountResponse.from_account(account)
