from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

# Upper bound on secrets accepted from clients before hashing
MAX_SECRET_LENGTH = 256


def _normalize_unicode(value: str) -> str:
    """Normalize a string with NFKC after stripping spoofing characters.

    Zero-width characters and bidi overrides are removed first, since they
    render invisibly and can make two addresses look identical.
    """
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)

    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class _EmailPayload(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_payload_email(cls, value: str) -> str:
        return _validate_email(value)


# ---------------------------------------------------------------------------
# sign-up and sign-in
# ---------------------------------------------------------------------------
class SignupRequest(_EmailPayload):
    name: str = Field(..., min_length=1, max_length=100)
    password: str = Field(..., max_length=MAX_SECRET_LENGTH)
    agree_to_terms: bool = False


class LoginRequest(_EmailPayload):
    password: str = Field(..., min_length=1, max_length=MAX_SECRET_LENGTH)


class UserSummary(BaseModel):
    id: str
    email: str
    name: str
    auth_provider: str
    photo_url: Optional[str] = None
    two_factor_enabled: bool = False
    roles: List[str] = Field(default_factory=list)


class AuthResponse(BaseModel):
    user: UserSummary
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_at: datetime
    refresh_expires_at: datetime
    is_new_user: bool = False


class LoginResponse(BaseModel):
    status: Literal["authenticated", "otp_pending"]
    auth: Optional[AuthResponse] = None
    login_token: Optional[str] = None
    otp_expires_at: Optional[datetime] = None


class LoginOtpVerifyRequest(BaseModel):
    login_token: str = Field(..., max_length=2048)
    code: str = Field(..., min_length=1, max_length=10)


class BackupCodeVerifyRequest(BaseModel):
    login_token: str = Field(..., max_length=2048)
    backup_code: str = Field(..., min_length=1, max_length=32)


class LoginOtpResendRequest(BaseModel):
    login_token: str = Field(..., max_length=2048)


class OtpDispatchResponse(BaseModel):
    message: str = "Verification code sent"
    expires_at: datetime
    retry_after: int
    login_token: Optional[str] = None


class TokenRefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


# ---------------------------------------------------------------------------
# standalone email codes
# ---------------------------------------------------------------------------
class SendOtpRequest(_EmailPayload):
    pass


class VerifyOtpRequest(_EmailPayload):
    code: str = Field(..., min_length=1, max_length=10)


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------
class OAuthStartRequest(BaseModel):
    redirect_uri: Optional[str] = Field(default=None, max_length=2048)


class OAuthStartResponse(BaseModel):
    authorization_url: str
    state: str
    provider: str


# ---------------------------------------------------------------------------
# passwords
# ---------------------------------------------------------------------------
class ForgotPasswordRequest(_EmailPayload):
    pass


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., max_length=256)
    new_password: str = Field(..., max_length=MAX_SECRET_LENGTH)


class VerifyResetTokenRequest(BaseModel):
    token: str = Field(..., max_length=256)


class PasswordChangeRequest(BaseModel):
    """Request to change password (requires current password)."""
    current_password: str = Field(..., min_length=1, max_length=MAX_SECRET_LENGTH)
    new_password: str = Field(..., max_length=MAX_SECRET_LENGTH)


class PasswordStrengthRequest(BaseModel):
    password: str = Field(..., max_length=MAX_SECRET_LENGTH)


class PasswordStrengthResponse(BaseModel):
    is_valid: bool
    errors: List[str]
    score: int
    feedback: str


class MessageResponse(BaseModel):
    message: str


class TokenCheckResponse(BaseModel):
    valid: bool
    message: str


# ---------------------------------------------------------------------------
# two-factor management
# ---------------------------------------------------------------------------
class TwoFactorStatusResponse(BaseModel):
    enabled: bool
    backup_codes_remaining: int
    last_used: Optional[datetime] = None


class TwoFactorSetupRequest(BaseModel):
    current_password: Optional[str] = Field(default=None, max_length=MAX_SECRET_LENGTH)


class TwoFactorCodeRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=10)


class TwoFactorConfirmRequest(BaseModel):
    """Password for email accounts; an emailed code for social accounts."""
    current_password: Optional[str] = Field(default=None, max_length=MAX_SECRET_LENGTH)
    code: Optional[str] = Field(default=None, max_length=10)


class TwoFactorSendCodeRequest(BaseModel):
    purpose: Literal["setup", "disable", "backup_generate"]


class BackupCodesResponse(BaseModel):
    backup_codes: List[str]
    message: str = "Store these backup codes somewhere safe. Each code can be used once."


# ---------------------------------------------------------------------------
# admin
# ---------------------------------------------------------------------------
class PurgeResponse(BaseModel):
    otp_codes: int
    refresh_tokens: int
    reset_tokens: int
    attempts: int
