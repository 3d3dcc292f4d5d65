from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

MAX_TOKEN_LENGTH = 2048


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width characters used for look-alike names."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "service_unavailable",
    "invalid_credentials",
    "account_locked",
    "origin_blocked",
    "account_disabled",
    "invalid_token",
    "invalid_code",
    "session_revoked",
    "resend_too_soon",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code clients can switch on")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class RegisterRequest(BaseModel):
    username: str = Field(..., max_length=64)
    password: str = Field(..., max_length=1024)
    email: Optional[str] = Field(default=None, max_length=254)

    @field_validator("username")
    @classmethod
    def _normalize_username(cls, value: str) -> str:
        return _normalize_unicode(value.strip())

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = _normalize_unicode(value.strip())
        return value or None


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=254, description="Username or email")
    password: str = Field(..., min_length=1, max_length=1024)
    remember_me: bool = False
    trusted_device_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)

    @field_validator("username")
    @classmethod
    def _normalize_identifier(cls, value: str) -> str:
        return _normalize_unicode(value.strip())


class TokenRefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)


class UserResponse(BaseModel):
    id: str
    username: str
    email: Optional[str] = None
    email_verified: bool = False
    role: str = "user"
    two_factor_enabled: bool = False
    is_disabled: bool = False
    created_at: datetime
    last_login_at: Optional[datetime] = None


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_expires_at: datetime


class AuthResponse(BaseModel):
    status: Literal["authenticated", "second_factor_required"]
    user_id: str
    user: Optional[UserResponse] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: Optional[str] = None
    expires_in: Optional[int] = None
    refresh_expires_at: Optional[datetime] = None
    trusted_device_token: Optional[str] = None


class SessionResponse(BaseModel):
    id: str
    origin_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime
    expires_at: datetime
    is_current: bool = False


class SessionListResponse(BaseModel):
    items: List[SessionResponse]


class SendCodeRequest(BaseModel):
    purpose: Literal["enable_2fa", "disable_2fa"]


class SendLoginCodeRequest(BaseModel):
    user_id: str = Field(..., max_length=64)


class SendCodeResponse(BaseModel):
    sent: bool
    wait_seconds: int = 0


class SecondFactorVerifyRequest(BaseModel):
    user_id: str = Field(..., max_length=64)
    code: str = Field(..., min_length=1, max_length=32)
    is_recovery_code: bool = False
    trust_device: bool = False
    remember_me: bool = False


class EnableTwoFactorRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=32)


class DisableTwoFactorRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=1024)
    code: str = Field(..., min_length=1, max_length=32)


class RegenerateCodesRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=1024)


class RecoveryCodesResponse(BaseModel):
    recovery_codes: List[str]


class TwoFactorStatusResponse(BaseModel):
    enabled: bool
    has_verified_email: bool
    recovery_codes_remaining: int


class RecoveryCodeStatusResponse(BaseModel):
    total: int
    remaining: int
    created_at: Optional[datetime] = None


class SendVerificationRequest(BaseModel):
    email: Optional[str] = Field(default=None, max_length=254)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = _normalize_unicode(value.strip())
        return value or None


class VerificationSentResponse(BaseModel):
    sent: bool
    email: str


class VerifyEmailRequest(BaseModel):
    token: str = Field(..., min_length=64, max_length=64)


class PasswordResetRequest(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=254, description="Username or email")

    @field_validator("identifier")
    @classmethod
    def _normalize_identifier(cls, value: str) -> str:
        return _normalize_unicode(value.strip())


class PasswordResetConfirmRequest(BaseModel):
    token: str = Field(..., min_length=64, max_length=64)
    new_password: str = Field(..., min_length=1, max_length=1024)


class TrustedDeviceResponse(BaseModel):
    id: str
    label: Optional[str] = None
    origin_address: Optional[str] = None
    created_at: datetime
    expires_at: datetime


class TrustedDeviceListResponse(BaseModel):
    items: List[TrustedDeviceResponse]


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=1024)
    new_password: str = Field(..., min_length=1, max_length=1024)


class AdminSettingsResponse(BaseModel):
    auth_disabled: bool
    allow_registration: bool
    updated_at: Optional[datetime] = None


class AdminSettingsUpdateRequest(BaseModel):
    auth_disabled: Optional[bool] = None
    allow_registration: Optional[bool] = None
