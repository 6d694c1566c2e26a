from __future__ import annotations

from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Path, Query, Request, Response

from reliefgate.api.schemas import (
    AuthResponse,
    BackupCodesResponse,
    BackupCodeVerifyRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginOtpResendRequest,
    LoginOtpVerifyRequest,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    MessageResponse,
    OAuthStartRequest,
    OAuthStartResponse,
    OtpDispatchResponse,
    PasswordChangeRequest,
    PasswordStrengthRequest,
    PasswordStrengthResponse,
    PurgeResponse,
    ResetPasswordRequest,
    SendOtpRequest,
    SignupRequest,
    TokenCheckResponse,
    TokenRefreshRequest,
    TwoFactorCodeRequest,
    TwoFactorConfirmRequest,
    TwoFactorSendCodeRequest,
    TwoFactorSetupRequest,
    TwoFactorStatusResponse,
    UserSummary,
    VerifyOtpRequest,
    VerifyResetTokenRequest,
)
from reliefgate.logging import get_logger
from reliefgate.service.auth import AuthContext, AuthResult, OtpDispatch
from reliefgate.service.maintenance import purge_expired
from reliefgate.service.otp import OtpPurpose
from reliefgate.service.runtime import check_rate_limit, get_runtime
from reliefgate.storage.models import utcnow

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Apply a per-route token bucket; raises 429 when it is empty."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        retry_after = max(1, reset_seconds)
        raise _http_error(
            "rate_limited",
            "Too many requests. Please try again later.",
            status_code=429,
            details={"retry_after": retry_after},
            headers={"Retry-After": str(retry_after)},
        )
    return info


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization)
    if not ctx:
        raise _http_error("unauthorized", "Authentication required", status_code=401)
    return ctx


async def get_admin_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization, required_role="admin")
    if not ctx:
        raise _http_error("forbidden", "admin access required", status_code=403)
    return ctx


def _apply_refresh_cookie(response: Response, result: AuthResult, *, secure: bool) -> None:
    response.set_cookie(
        "refresh_token",
        result.tokens.refresh_token,
        httponly=True,
        secure=secure,
        samesite="lax",
        expires=result.tokens.refresh_expires_at,
        path="/",
    )


def _auth_response(result: AuthResult) -> AuthResponse:
    user = result.user
    return AuthResponse(
        user=UserSummary(
            id=user.id,
            email=user.email,
            name=user.name,
            auth_provider=user.auth_provider,
            photo_url=user.photo_url,
            two_factor_enabled=user.two_factor_enabled,
            roles=result.roles,
        ),
        access_token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
        token_type=result.tokens.token_type,
        expires_at=result.tokens.expires_at,
        refresh_expires_at=result.tokens.refresh_expires_at,
        is_new_user=result.is_new_user,
    )


def _authenticated(response: Response, result: AuthResult, runtime) -> AuthResponse:
    _apply_refresh_cookie(response, result, secure=runtime.settings.cookie_secure)
    return _auth_response(result)


def _dispatch_response(dispatch: OtpDispatch) -> OtpDispatchResponse:
    return OtpDispatchResponse(
        expires_at=dispatch.expires_at,
        retry_after=dispatch.retry_after,
        login_token=dispatch.login_token,
    )


# ---------------------------------------------------------------------------
# sign-up and sign-in
# ---------------------------------------------------------------------------
@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, request: Request, response: Response):
    """Create an email/password account and sign it in.

    Raises:
        400: Terms not accepted or password policy not met
        403: Signups are disabled
        409: An account with this email already exists
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"signup:{_client_ip(request)}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    result = await runtime.auth.signup(
        body.name,
        body.email,
        body.password,
        body.agree_to_terms,
        ip=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return Envelope(status="ok", data=_authenticated(response, result, runtime))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Accounts with two-factor authentication get ``status="otp_pending"`` and
    a short-lived ``login_token``; the emailed code is then submitted to
    ``/auth/otp/verify``.

    Raises:
        401: Invalid credentials
        429: Too many attempts
        502: The sign-in code could not be emailed
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    result = await runtime.auth.login(
        body.email,
        body.password,
        ip=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    if result.auth is None:
        return Envelope(
            status="ok",
            data=LoginResponse(
                status="otp_pending",
                login_token=result.login_token,
                otp_expires_at=result.otp_expires_at,
            ),
        )
    return Envelope(
        status="ok",
        data=LoginResponse(status="authenticated", auth=_authenticated(response, result.auth, runtime)),
    )


@router.post("/auth/otp/verify", response_model=Envelope, tags=["auth"])
async def verify_login_otp(body: LoginOtpVerifyRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"otp:verify:{_client_ip(request)}", runtime.settings.otp_rate_limit_per_minute, 60
    )
    result = await runtime.auth.verify_login_otp(
        body.login_token,
        body.code,
        ip=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return Envelope(status="ok", data=_authenticated(response, result, runtime))


@router.post("/auth/otp/verify-backup", response_model=Envelope, tags=["auth"])
async def verify_backup_code(body: BackupCodeVerifyRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"otp:verify:{_client_ip(request)}", runtime.settings.otp_rate_limit_per_minute, 60
    )
    result = await runtime.auth.verify_backup_code(
        body.login_token,
        body.backup_code,
        ip=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return Envelope(status="ok", data=_authenticated(response, result, runtime))


@router.post("/auth/otp/send", response_model=Envelope, tags=["auth"])
async def resend_login_otp(body: LoginOtpResendRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"otp:send:{_client_ip(request)}", runtime.settings.otp_rate_limit_per_minute, 60
    )
    dispatch = await runtime.auth.resend_login_otp(body.login_token, ip=_client_ip(request))
    return Envelope(status="ok", data=_dispatch_response(dispatch))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    request: Request,
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias="refresh_token"),
):
    """Rotate a refresh token; the presented token stops working."""
    runtime = get_runtime()
    token = (body.refresh_token if body else None) or refresh_cookie
    if not token:
        raise _http_error("unauthorized", "Refresh token required", status_code=401)
    result = await runtime.auth.refresh(token, ip=_client_ip(request))
    return Envelope(status="ok", data=_authenticated(response, result, runtime))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    body: Optional[LogoutRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias="refresh_token"),
    authorization: Optional[str] = Header(None),
):
    """Revoke the presented refresh token only; other devices stay signed in."""
    runtime = get_runtime()
    token = (body.refresh_token if body else None) or refresh_cookie
    access_token = runtime.auth.extract_bearer(authorization)
    await runtime.auth.logout(refresh_token=token, access_token=access_token)
    response.delete_cookie(
        "refresh_token", path="/", secure=runtime.settings.cookie_secure, samesite="lax"
    )
    return Envelope(status="ok", data=MessageResponse(message="Logged out successfully"))


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------
@router.post("/auth/oauth/{provider}/start", response_model=Envelope, tags=["auth"])
async def oauth_start(
    provider: str = Path(..., description="OAuth provider (google, github, microsoft)"),
    body: Optional[OAuthStartRequest] = None,
):
    """Return the provider authorization URL to redirect the user to."""
    runtime = get_runtime()
    # Bound state creation per provider
    await _enforce_rate_limit(runtime, f"oauth:start:{provider}", limit=20, window_seconds=60)
    start = await runtime.auth.start_oauth(
        provider, redirect_uri=body.redirect_uri if body else None
    )
    return Envelope(
        status="ok",
        data=OAuthStartResponse(
            authorization_url=start["authorization_url"],
            state=start["state"],
            provider=provider,
        ),
    )


@router.get("/auth/oauth/{provider}/callback", response_model=Envelope, tags=["auth"])
async def oauth_callback(
    request: Request,
    response: Response,
    provider: str = Path(..., description="OAuth provider"),
    code: str = Query(..., max_length=512, description="Authorization code from OAuth provider"),
    state: str = Query(..., max_length=128, description="State parameter for CSRF protection"),
):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, f"oauth:callback:{provider}", limit=10, window_seconds=60)
    result = await runtime.auth.complete_oauth(
        provider,
        code,
        state,
        ip=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return Envelope(status="ok", data=_authenticated(response, result, runtime))


# ---------------------------------------------------------------------------
# passwords
# ---------------------------------------------------------------------------
@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, request: Request):
    """Email a reset link; the reply is identical whether or not the account exists."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"reset:request:{body.email}", runtime.settings.reset_rate_limit_per_minute, 60
    )
    message = await runtime.auth.forgot_password(body.email, ip=_client_ip(request))
    return Envelope(status="ok", data=MessageResponse(message=message))


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:confirm:{_client_ip(request)}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    message = await runtime.auth.reset_password(
        body.token, body.new_password, ip=_client_ip(request)
    )
    return Envelope(status="ok", data=MessageResponse(message=message))


@router.post("/auth/verify-reset-token", response_model=Envelope, tags=["auth"])
async def verify_reset_token(body: VerifyResetTokenRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:check:{_client_ip(request)}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    valid, message = await runtime.auth.verify_reset_token(body.token)
    return Envelope(status="ok", data=TokenCheckResponse(valid=valid, message=message))


@router.post("/auth/validate-password", response_model=Envelope, tags=["auth"])
async def validate_password(body: PasswordStrengthRequest):
    runtime = get_runtime()
    check = runtime.auth.validate_password(body.password)
    return Envelope(
        status="ok",
        data=PasswordStrengthResponse(
            is_valid=check.is_valid,
            errors=check.errors,
            score=check.score,
            feedback=check.feedback,
        ),
    )


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await runtime.auth.change_password(
        principal.user_id, body.current_password, body.new_password, ip=_client_ip(request)
    )
    return Envelope(status="ok", data=MessageResponse(message="Password changed successfully."))


# ---------------------------------------------------------------------------
# standalone email codes
# ---------------------------------------------------------------------------
@router.post("/auth/send-otp", response_model=Envelope, tags=["auth"])
async def send_otp(body: SendOtpRequest, request: Request):
    """Email a sign-in code, creating the account on first use."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"otp:send:{_client_ip(request)}", runtime.settings.otp_rate_limit_per_minute, 60
    )
    dispatch = await runtime.auth.send_otp(body.email, ip=_client_ip(request))
    return Envelope(status="ok", data=_dispatch_response(dispatch))


@router.post("/auth/verify-otp", response_model=Envelope, tags=["auth"])
async def verify_otp(body: VerifyOtpRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"otp:verify:{_client_ip(request)}", runtime.settings.otp_rate_limit_per_minute, 60
    )
    result = await runtime.auth.verify_otp_standalone(
        body.email,
        body.code,
        ip=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return Envelope(status="ok", data=_authenticated(response, result, runtime))


# ---------------------------------------------------------------------------
# two-factor management
# ---------------------------------------------------------------------------
@router.get("/auth/2fa/status", response_model=Envelope, tags=["2fa"])
async def two_factor_status(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    status = await runtime.auth.two_factor_status(principal.user_id)
    return Envelope(
        status="ok",
        data=TwoFactorStatusResponse(
            enabled=status.enabled,
            backup_codes_remaining=status.backup_codes_remaining,
            last_used=status.last_used,
        ),
    )


@router.post("/auth/2fa/send-code", response_model=Envelope, tags=["2fa"])
async def two_factor_send_code(
    body: TwoFactorSendCodeRequest,
    request: Request,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    dispatch = await runtime.auth.request_two_factor_code(
        principal.user_id, OtpPurpose(body.purpose), ip=_client_ip(request)
    )
    return Envelope(status="ok", data=_dispatch_response(dispatch))


@router.post("/auth/2fa/setup", response_model=Envelope, tags=["2fa"])
async def two_factor_setup(
    body: TwoFactorSetupRequest,
    request: Request,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    dispatch = await runtime.auth.setup_two_factor(
        principal.user_id, body.current_password, ip=_client_ip(request)
    )
    return Envelope(status="ok", data=_dispatch_response(dispatch))


@router.post("/auth/2fa/verify-setup", response_model=Envelope, tags=["2fa"])
async def two_factor_verify_setup(
    body: TwoFactorCodeRequest,
    request: Request,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    codes = await runtime.auth.verify_two_factor_setup(
        principal.user_id, body.code, ip=_client_ip(request)
    )
    return Envelope(status="ok", data=BackupCodesResponse(backup_codes=codes))


@router.post("/auth/2fa/disable", response_model=Envelope, tags=["2fa"])
async def two_factor_disable(
    body: TwoFactorConfirmRequest,
    request: Request,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await runtime.auth.disable_two_factor(
        principal.user_id, body.current_password, body.code, ip=_client_ip(request)
    )
    return Envelope(
        status="ok", data=MessageResponse(message="Two-factor authentication disabled.")
    )


@router.post("/auth/2fa/backup-codes/generate", response_model=Envelope, tags=["2fa"])
async def two_factor_generate_backup_codes(
    body: TwoFactorConfirmRequest,
    request: Request,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    codes = await runtime.auth.generate_backup_codes(
        principal.user_id, body.current_password, body.code, ip=_client_ip(request)
    )
    return Envelope(status="ok", data=BackupCodesResponse(backup_codes=codes))


# ---------------------------------------------------------------------------
# admin
# ---------------------------------------------------------------------------
@router.post("/admin/maintenance/purge", response_model=Envelope, tags=["admin"])
async def admin_purge(principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    counts = purge_expired(
        runtime.store,
        now=utcnow(),
        attempt_retention=timedelta(hours=runtime.settings.attempt_retention_hours),
    )
    logger.info("admin_purge", admin_id=principal.user_id, **counts)
    return Envelope(status="ok", data=PurgeResponse(**counts))
