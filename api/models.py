"""
API request and response models for FieldTrack auth endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py, which own the
internal domain representation. Route handlers map between the two.

Request models only enforce shape (types, generous length caps). The business
rules -- password strength, email format, phone format, role ids -- live in
AuthService so they produce field-level ValidationFailed errors no matter
which caller hits them.

Request fields accept both snake_case and the camelCase names the web
client sends (fullName, roleId, refreshToken, ...).
"""

from typing import Annotated, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, StringConstraints

from auth.models import Account, TokenPair

# Identifiers are trimmed; passwords are hashed and compared exactly as sent.
Trimmed = Annotated[str, StringConstraints(strip_whitespace=True)]

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    email: Trimmed = Field(max_length=255)
    password: str = Field(max_length=255)
    full_name: Trimmed = Field(max_length=255, validation_alias=AliasChoices("full_name", "fullName"))
    phone: Optional[Trimmed] = Field(default=None, max_length=30)
    role_id: Optional[int] = Field(default=None, validation_alias=AliasChoices("role_id", "roleId"))


class LoginRequest(BaseModel):
    email: Trimmed = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(
        min_length=1,
        max_length=4096,
        validation_alias=AliasChoices("refresh_token", "refreshToken"),
    )


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(
        min_length=1,
        max_length=255,
        validation_alias=AliasChoices("current_password", "currentPassword"),
    )
    new_password: str = Field(max_length=255, validation_alias=AliasChoices("new_password", "newPassword"))


class ForgotPasswordRequest(BaseModel):
    email: Trimmed = Field(min_length=1, max_length=255)


class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=1, max_length=4096)
    new_password: str = Field(max_length=255, validation_alias=AliasChoices("new_password", "newPassword"))


class SendOTPRequest(BaseModel):
    phone: Trimmed = Field(min_length=1, max_length=30)


class VerifyOTPRequest(BaseModel):
    phone: Trimmed = Field(min_length=1, max_length=30)
    otp: Trimmed = Field(min_length=1, max_length=16)
    full_name: Optional[Trimmed] = Field(
        default=None,
        max_length=255,
        validation_alias=AliasChoices("full_name", "fullName"),
    )


class LinkPhoneRequest(BaseModel):
    phone: Trimmed = Field(min_length=1, max_length=30)
    password: str = Field(min_length=1, max_length=255)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class AccountResponse(BaseModel):
    """Public view of an Account. Never includes the password hash."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: Optional[Trimmed]
    phone: Optional[Trimmed]
    full_name: Trimmed
    role: str
    role_id: int
    is_active: bool
    created_at: Optional[str]

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.id,
            email=account.email,
            phone=account.phone,
            full_name=account.full_name,
            role=account.role.value,
            role_id=account.role.role_id,
            is_active=account.is_active,
            created_at=account.created_at,
        )


class TokenResponse(BaseModel):
    """Response for POST /api/v1/auth/refresh-token."""

    model_config = ConfigDict(frozen=True)

    message: str
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int

    @classmethod
    def from_pair(cls, message: str, pair: TokenPair) -> "TokenResponse":
        return cls(
            message=message,
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_in=pair.expires_in,
        )


class AuthResponse(TokenResponse):
    """Tokens plus the account they were issued for (register, login, verify-otp)."""

    user: AccountResponse
    created: bool = False


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class ForgotPasswordResponse(BaseModel):
    """reset_token is populated only when DEBUG=true (no mail provider locally)."""

    model_config = ConfigDict(frozen=True)

    message: str
    reset_token: Optional[str] = None


class SendOTPResponse(BaseModel):
    """otp is populated only when DEBUG=true."""

    model_config = ConfigDict(frozen=True)

    message: str
    phone: Trimmed
    expires_in: int
    otp: Optional[Trimmed] = None


class FieldErrorModel(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    fields: Optional[list[FieldErrorModel]] = None
    stack: Optional[list[str]] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
