"""
API request and response models for keyhold REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.

Emails and passwords are deliberately plain `str` here. Format and policy
checks belong to AccountService so the same rules apply to every caller and
the error codes stay the service's (invalid_email, trivial_password, ...).
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import Account, AuditEvent, Token

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class SignupRequest(BaseModel):
    """Request body for POST /api/v1/account/signup. Password is optional."""

    email: str = Field(max_length=255)
    password: Optional[str] = Field(default=None, max_length=1024)


class LoginRequest(BaseModel):
    email: str = Field(max_length=255)
    password: str = Field(max_length=1024)


class PasswordRequest(BaseModel):
    """Request body for POST /api/v1/account/elevate (re-authentication)."""

    password: str = Field(max_length=1024)


class ChangePasswordRequest(BaseModel):
    new_password: str = Field(max_length=1024)


class EmailRequest(BaseModel):
    """Request body for change-email, reset-password and login-link requests."""

    email: str = Field(max_length=255)


class TokenRequest(BaseModel):
    token: str = Field(max_length=256)


class ResetPasswordRequest(BaseModel):
    token: str = Field(max_length=256)
    new_password: str = Field(max_length=1024)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class AccountResponse(BaseModel):
    """Public view of an Account. The password hash never leaves the server."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    role: str
    email_verified: int
    created: int
    updated: int

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.id,
            email=account.email,
            role=account.role.value,
            email_verified=account.email_verified,
            created=account.created,
            updated=account.updated,
        )


class FlashResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    message: str


class MeResponse(BaseModel):
    """Response for GET /api/v1/account/me."""

    model_config = ConfigDict(frozen=True)

    account: AccountResponse
    previous_visit: int
    elevation_remaining_ms: int
    flash: Optional[FlashResponse] = None


class SessionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    created: int
    expires: int
    user_agent: str
    last_activity: int
    current: bool

    @classmethod
    def from_token(cls, token: Token, current_id: Optional[str]) -> "SessionResponse":
        payload = token.payload
        return cls(
            id=token.id,
            created=token.created,
            expires=token.expires,
            user_agent=payload.user_agent if payload is not None else "",
            last_activity=payload.last_activity if payload is not None else 0,
            current=token.id == current_id,
        )


class ElevationResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    elevated: bool
    remaining_ms: int


class AccountPageResponse(BaseModel):
    """Response for GET /api/v1/admin/accounts."""

    model_config = ConfigDict(frozen=True)

    accounts: list[AccountResponse]
    total: int
    page: int
    per_page: int


class AuditEventResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[int]
    account_id: Optional[str]
    type: str
    level: int
    data: dict
    created: int

    @classmethod
    def from_event(cls, event: AuditEvent) -> "AuditEventResponse":
        return cls(
            id=event.id,
            account_id=event.account_id,
            type=event.type.value,
            level=int(event.level),
            data=event.data,
            created=event.created,
        )


class SweepResponse(BaseModel):
    """Response for POST /api/v1/cron/delete-expired-tokens."""

    model_config = ConfigDict(frozen=True)

    deleted: int
