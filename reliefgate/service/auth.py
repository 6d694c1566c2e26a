from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, List, NoReturn, Optional, Tuple
from urllib.parse import urlencode, urlparse

import httpx
from argon2 import PasswordHasher
from redis.exceptions import RedisError

from reliefgate.config import Settings
from reliefgate.logging import get_logger
from reliefgate.service.attempts import AttemptLedger, AttemptPolicy, AttemptType
from reliefgate.service.backup_codes import BackupCodeVault
from reliefgate.service.email import (
    EmailContent,
    EmailService,
    otp_code_email,
    password_reset_email,
    provider_notice_email,
    two_factor_disabled_email,
    two_factor_enabled_email,
)
from reliefgate.service.errors import (
    AuthenticationError,
    ConflictError,
    DeliveryFailedError,
    ErrorKind,
    ForbiddenError,
    Outcome,
    RateLimitedError,
    ServerError,
    ValidationError,
)
from reliefgate.service.otp import IssuedOtp, OtpEngine, OtpPurpose
from reliefgate.service.passwords import (
    PasswordCheck,
    build_hasher,
    hash_secret,
    validate_password,
    verify_secret,
)
from reliefgate.service.ports import (
    AuditSink,
    EmailPort,
    LoggingAuditSink,
    RoleLookup,
    SafeAuditSink,
    StoreRoleLookup,
)
from reliefgate.service.refresh_tokens import RefreshTokenManager
from reliefgate.service.reset_tokens import PasswordResetTokenManager
from reliefgate.storage.errors import ConstraintViolation
from reliefgate.storage.models import OtpCode, RefreshToken, User, utcnow

# OAuth provider configurations
OAUTH_PROVIDERS = {
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid email profile",
    },
    "github": {
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "scope": "read:user user:email",
    },
    "microsoft": {
        "auth_url": "https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
        "token_url": "https://login.microsoftonline.com/common/oauth2/v2.0/token",
        "userinfo_url": "https://graph.microsoft.com/v1.0/me",
        "scope": "openid email profile User.Read",
    },
}

INVALID_CREDENTIALS = "Invalid email or password"
INVALID_CODE = "Invalid or expired verification code"
INVALID_LOGIN_TOKEN = "Login session is invalid or has expired. Please sign in again."
INVALID_REFRESH_TOKEN = "Invalid or expired refresh token"
INVALID_RESET_TOKEN = "Invalid or expired reset token."
TOO_MANY_ATTEMPTS = "Too many attempts. Please try again later."
FORGOT_PASSWORD_MESSAGE = (
    "If an account with that email exists, a password reset link has been sent."
)
RESET_SUCCESS_MESSAGE = "Password has been reset successfully."
SOCIAL_RESET_MESSAGE = "Password reset is not available for social login accounts."

NEW_USER_WINDOW = timedelta(minutes=10)

logger = get_logger(__name__)


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


@dataclass
class AuthResult:
    user: User
    tokens: TokenPair
    roles: List[str] = field(default_factory=list)
    is_new_user: bool = False


@dataclass
class LoginResult:
    status: str
    auth: Optional[AuthResult] = None
    login_token: Optional[str] = None
    otp_expires_at: Optional[datetime] = None

    @property
    def requires_otp(self) -> bool:
        return self.status == "otp_pending"


@dataclass
class OtpDispatch:
    expires_at: datetime
    retry_after: int
    login_token: Optional[str] = None


@dataclass
class TwoFactorStatus:
    enabled: bool
    backup_codes_remaining: int
    last_used: Optional[datetime] = None


@dataclass
class AuthContext:
    user_id: str
    email: str
    roles: List[str] = field(default_factory=list)
    jti: Optional[str] = None
    expires_at: Optional[int] = None

    def has_role(self, role: str) -> bool:
        return role in self.roles


class AuthService:
    """Session orchestrator: password, OTP, backup-code and OAuth sign-in.

    The credential managers report failures as ``ErrorKind`` outcomes; this
    class is the only place those are turned into client-facing errors, and
    it always coarsens them so a caller cannot tell an unknown account from
    a wrong password or a used code from an expired one.
    """

    def __init__(
        self,
        store,
        cache,
        settings: Settings,
        *,
        email: Optional[EmailPort] = None,
        roles: Optional[RoleLookup] = None,
        audit: Optional[AuditSink] = None,
        hasher: Optional[PasswordHasher] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.logger = logger
        self._clock = clock or utcnow
        self.email: EmailPort = email or EmailService(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
        )
        self.roles: RoleLookup = roles or StoreRoleLookup(store)
        self.audit = SafeAuditSink(audit or LoggingAuditSink())
        self.hasher = hasher or build_hasher(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_kib,
            parallelism=settings.password_hash_parallelism,
        )
        self.ledger = AttemptLedger(
            store, AttemptPolicy.from_settings(settings), audit=self.audit, clock=self._clock
        )
        self.otp = OtpEngine(
            store,
            self.ledger,
            expiry_minutes=settings.otp_expiry_minutes,
            max_attempts=settings.otp_max_attempts,
            clock=self._clock,
        )
        self.backup_codes = BackupCodeVault(
            store, self.hasher, count=settings.backup_code_count, clock=self._clock
        )
        self.reset_tokens = PasswordResetTokenManager(
            store, ttl_minutes=settings.reset_token_ttl_minutes, clock=self._clock
        )
        self.refresh_tokens = RefreshTokenManager(
            store, ttl_days=settings.refresh_token_ttl_days, clock=self._clock
        )
        self._state_lock = threading.Lock()
        self._oauth_states: dict[str, tuple[str, datetime]] = {}
        self._oauth_code_registry: dict[tuple[str, str], dict] = {}
        # Local access-token denylist (jti -> exp); Redis is authoritative when present
        self._revoked_access: dict[str, float] = {}
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=120)
        # Verified against when the account is unknown so timing stays flat
        self._dummy_hash = hash_secret(self.hasher, uuid.uuid4().hex)

    def _now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # outcome coarsening and delivery
    # ------------------------------------------------------------------
    def _raise_for(self, outcome: Outcome, message: str, *, event: str, **log: Any) -> NoReturn:
        kind = outcome.error or ErrorKind.SYSTEM
        self.logger.warning(event, reason=kind.value, detail=outcome.detail, **log)
        if kind is ErrorKind.RATE_LIMITED:
            raise RateLimitedError(TOO_MANY_ATTEMPTS, retry_after=outcome.retry_after)
        if kind is ErrorKind.VALIDATION:
            raise ValidationError(outcome.detail or message)
        if kind is ErrorKind.DELIVERY_FAILED:
            raise DeliveryFailedError("Unable to deliver email. Please try again later.")
        if kind is ErrorKind.SYSTEM:
            raise ServerError("Internal server error")
        raise AuthenticationError(message)

    async def _deliver(self, to_address: str, content: EmailContent) -> bool:
        try:
            delivered = await asyncio.to_thread(
                self.email.send, to_address, content.subject, content.body
            )
        except Exception as exc:
            # Any transport failure of a custom port counts as non-delivery
            self.logger.error(
                "email_delivery_error",
                subject=content.subject,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            delivered = False
        if not delivered:
            self.logger.error("email_delivery_failed", subject=content.subject)
        return bool(delivered)

    async def _deliver_or_raise(
        self, to_address: str, content: EmailContent, *, detail: Optional[dict] = None
    ) -> None:
        if not await self._deliver(to_address, content):
            raise DeliveryFailedError(
                "Unable to deliver email. Please try again later.", detail=detail
            )

    def _issue_otp_or_raise(self, user: User, purpose: OtpPurpose, *, ip: str) -> IssuedOtp:
        outcome = self.otp.issue(user.id, purpose, ip=ip, email=user.email)
        if not outcome.ok:
            self._raise_for(
                outcome,
                "Unable to send verification code",
                event="otp_issue_rejected",
                user_id=user.id,
                purpose=OtpPurpose(purpose).value,
            )
        return outcome.value

    async def _send_code(self, user: User, issued: IssuedOtp, purpose: OtpPurpose, **detail) -> None:
        content = otp_code_email(issued.code, OtpPurpose(purpose).value, self.settings.otp_expiry_minutes)
        await self._deliver_or_raise(user.email, content, detail=detail or None)

    # ------------------------------------------------------------------
    # token minting
    # ------------------------------------------------------------------
    def _authenticate_user(
        self,
        user: User,
        *,
        ip: Optional[str],
        user_agent: Optional[str],
        method: str,
        is_new_user: bool = False,
    ) -> AuthResult:
        if user.is_blacklisted:
            self.logger.warning("token_issue_blocked", user_id=user.id, reason="blacklisted")
            raise AuthenticationError(INVALID_CREDENTIALS)
        roles = sorted(self.roles.roles_of(user.id))
        tokens = self._issue_tokens(user, roles)
        self.audit.record("login_success", "info", user.id, f"Signed in via {method}", ip, user_agent)
        self.logger.info("user_authenticated", user_id=user.id, method=method)
        return AuthResult(user=user, tokens=tokens, roles=roles, is_new_user=is_new_user)

    def _issue_tokens(
        self, user: User, roles: List[str], *, refresh: Optional[RefreshToken] = None
    ) -> TokenPair:
        now = self._now()
        access_exp = now + timedelta(minutes=self.settings.access_token_ttl_minutes)
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "name": user.name,
            "email": user.email,
            "roles": roles,
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int(access_exp.timestamp()),
        }
        refresh = refresh or self.refresh_tokens.issue(user.id)
        return TokenPair(
            access_token=self._encode_jwt(payload),
            refresh_token=refresh.token,
            expires_at=access_exp,
            refresh_expires_at=refresh.expires_at,
        )

    def _encode_login_token(self, user: User, issued: IssuedOtp) -> str:
        now = self._now()
        return self._encode_jwt(
            {
                "iss": self.settings.jwt_issuer,
                "aud": self.settings.jwt_audience,
                "sub": user.id,
                "cid": issued.code_id,
                "token_type": "login_otp",
                "jti": str(uuid.uuid4()),
                "iat": int(now.timestamp()),
                "exp": int(
                    (now + timedelta(minutes=self.settings.login_token_ttl_minutes)).timestamp()
                ),
            }
        )

    def _resolve_login_token(
        self, login_token: Optional[str], *, require_pending: bool
    ) -> Tuple[User, str]:
        payload = self._decode_jwt(login_token) if login_token else None
        if not payload or payload.get("token_type") != "login_otp":
            self.logger.warning("login_token_rejected", reason="undecodable")
            raise AuthenticationError(INVALID_LOGIN_TOKEN)
        user = self.store.get_user(str(payload.get("sub") or ""))
        code_id = str(payload.get("cid") or "")
        if not user or user.is_blacklisted or not user.two_factor_enabled or not code_id:
            self.logger.warning("login_token_rejected", reason="user_state")
            raise AuthenticationError(INVALID_LOGIN_TOKEN)
        if require_pending:
            code: Optional[OtpCode] = self.otp.get_code(code_id)
            if code is None or code.user_id != user.id or not self.otp.is_pending(code):
                self.logger.warning("login_token_rejected", reason="code_not_pending", user_id=user.id)
                raise AuthenticationError(INVALID_LOGIN_TOKEN)
        return user, code_id

    # ------------------------------------------------------------------
    # sign-up and sign-in
    # ------------------------------------------------------------------
    async def signup(
        self,
        name: str,
        email: str,
        password: str,
        agree_to_terms: bool,
        *,
        ip: str,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        if not self.settings.allow_signup:
            raise ForbiddenError("Signups are disabled")
        if not agree_to_terms:
            raise ValidationError("You must agree to the terms and conditions")
        check = validate_password(password)
        if not check.is_valid:
            raise ValidationError(check.errors[0], detail={"errors": check.errors})
        normalized = email.strip().lower()
        if self.store.get_user_by_email(normalized):
            raise ConflictError("An account with this email already exists")
        try:
            user = self.store.create_user(
                normalized,
                name.strip(),
                auth_provider="email",
                password_hash=hash_secret(self.hasher, password),
                now=self._now(),
            )
        except ConstraintViolation as exc:
            raise ConflictError("An account with this email already exists") from exc
        self.store.assign_role(user.id, self.settings.default_role)
        self.audit.record("user_registered", "info", user.id, "Account created", ip, user_agent)
        return self._authenticate_user(
            user, ip=ip, user_agent=user_agent, method="signup", is_new_user=True
        )

    async def login(
        self,
        email: str,
        password: str,
        *,
        ip: str,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        normalized = email.strip().lower()
        user = self.store.get_user_by_email(normalized)
        user_id = user.id if user else None

        decision = self.ledger.check_login(ip=ip, user_id=user_id)
        if not decision.ok:
            self.ledger.record(
                ip=ip, attempt_type=AttemptType.LOGIN, success=False, user_id=user_id, email=normalized
            )
            self._raise_for(decision, INVALID_CREDENTIALS, event="login_rejected", user_id=user_id)

        reason: Optional[str] = None
        if user is None:
            verify_secret(self.hasher, self._dummy_hash, password)
            reason = "unknown_account"
        elif user.is_blacklisted:
            reason = "blacklisted"
        elif not user.is_email_account:
            reason = "provider_account"
        elif not verify_secret(self.hasher, user.password_hash, password):
            reason = "bad_password"
        if reason:
            self.ledger.record(
                ip=ip, attempt_type=AttemptType.LOGIN, success=False, user_id=user_id, email=normalized
            )
            self.logger.warning("login_failed", reason=reason, user_id=user_id)
            self.audit.record("login_failed", "warning", user_id, "Failed sign-in", ip, user_agent)
            raise AuthenticationError(INVALID_CREDENTIALS)

        self.ledger.record(
            ip=ip, attempt_type=AttemptType.LOGIN, success=True, user_id=user.id, email=normalized
        )
        if not user.two_factor_enabled:
            auth = self._authenticate_user(user, ip=ip, user_agent=user_agent, method="password")
            return LoginResult(status="authenticated", auth=auth)

        issued = self._issue_otp_or_raise(user, OtpPurpose.LOGIN, ip=ip)
        marker = self._encode_login_token(user, issued)
        await self._send_code(user, issued, OtpPurpose.LOGIN, login_token=marker)
        self.audit.record("login_otp_sent", "info", user.id, "Sign-in code sent", ip, user_agent)
        return LoginResult(status="otp_pending", login_token=marker, otp_expires_at=issued.expires_at)

    async def verify_login_otp(
        self,
        login_token: str,
        code: str,
        *,
        ip: str,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        user, code_id = self._resolve_login_token(login_token, require_pending=False)
        outcome = self.otp.verify(user.id, OtpPurpose.LOGIN, code, ip=ip, expected_code_id=code_id)
        if not outcome.ok:
            self.audit.record("login_otp_failed", "warning", user.id, "Invalid sign-in code", ip, user_agent)
            self._raise_for(outcome, INVALID_CODE, event="login_otp_rejected", user_id=user.id)
        updated = self.store.update_user(user.id, two_factor_last_used=self._now()) or user
        return self._authenticate_user(updated, ip=ip, user_agent=user_agent, method="otp")

    async def verify_backup_code(
        self,
        login_token: str,
        backup_code: str,
        *,
        ip: str,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        user, _ = self._resolve_login_token(login_token, require_pending=True)
        decision = self.ledger.check_verify(ip=ip, user_id=user.id)
        if not decision.ok:
            self.ledger.record(ip=ip, attempt_type=AttemptType.VERIFY_OTP, success=False, user_id=user.id)
            self._raise_for(decision, INVALID_CODE, event="backup_code_rejected", user_id=user.id)

        outcome = self.backup_codes.consume(user.id, backup_code)
        self.ledger.record(
            ip=ip, attempt_type=AttemptType.VERIFY_OTP, success=outcome.ok, user_id=user.id
        )
        if not outcome.ok:
            self.audit.record("backup_code_failed", "warning", user.id, "Invalid backup code", ip, user_agent)
            self._raise_for(outcome, "Invalid backup code", event="backup_code_rejected", user_id=user.id)

        # The pending sign-in code is no longer needed
        self.otp.invalidate(user.id, OtpPurpose.LOGIN)
        updated = self.store.update_user(user.id, two_factor_last_used=self._now()) or user
        if updated.backup_codes_remaining <= 2:
            self.logger.warning(
                "backup_codes_low", user_id=user.id, remaining=updated.backup_codes_remaining
            )
        self.audit.record("backup_code_used", "warning", user.id, "Signed in with a backup code", ip, user_agent)
        return self._authenticate_user(updated, ip=ip, user_agent=user_agent, method="backup_code")

    async def resend_login_otp(self, login_token: str, *, ip: str) -> OtpDispatch:
        user, _ = self._resolve_login_token(login_token, require_pending=True)
        issued = self._issue_otp_or_raise(user, OtpPurpose.LOGIN, ip=ip)
        marker = self._encode_login_token(user, issued)
        await self._send_code(user, issued, OtpPurpose.LOGIN, login_token=marker)
        return OtpDispatch(
            expires_at=issued.expires_at,
            retry_after=self.settings.otp_resend_seconds,
            login_token=marker,
        )

    async def refresh(self, refresh_token: str, *, ip: Optional[str] = None) -> AuthResult:
        outcome = self.refresh_tokens.rotate(refresh_token)
        if not outcome.ok:
            self._raise_for(outcome, INVALID_REFRESH_TOKEN, event="refresh_rejected", ip=ip)
        new_token = outcome.value
        user = self.store.get_user(new_token.user_id)
        if not user or user.is_blacklisted:
            self.refresh_tokens.revoke(new_token.token)
            self.logger.warning("refresh_rejected", reason="user_unavailable", user_id=new_token.user_id)
            raise AuthenticationError(INVALID_REFRESH_TOKEN)
        roles = sorted(self.roles.roles_of(user.id))
        tokens = self._issue_tokens(user, roles, refresh=new_token)
        return AuthResult(user=user, tokens=tokens, roles=roles)

    async def logout(
        self, refresh_token: Optional[str] = None, access_token: Optional[str] = None
    ) -> None:
        """Revoke exactly the presented refresh token and deny the access token."""
        if refresh_token and not self.refresh_tokens.revoke(refresh_token):
            self.logger.info("logout_refresh_token_unknown")
        if not access_token:
            return
        payload = self._decode_jwt(access_token)
        if not payload or payload.get("token_type") != "access" or not payload.get("jti"):
            return
        exp = float(payload.get("exp") or 0)
        ttl = int(exp - self._now().timestamp())
        await self._denylist_access(payload["jti"], exp, ttl)
        self.audit.record("logout", "info", payload.get("sub"), "Signed out")

    async def _denylist_access(self, jti: str, exp: float, ttl: int) -> None:
        with self._state_lock:
            now_ts = self._now().timestamp()
            for stale in [key for key, until in self._revoked_access.items() if until <= now_ts]:
                self._revoked_access.pop(stale, None)
            self._revoked_access[jti] = exp
        if self.cache and ttl > 0:
            try:
                await self.cache.denylist_access_token(jti, ttl)
            except (RedisError, OSError) as exc:
                self.logger.warning("denylist_store_failed", jti=jti, error=str(exc))

    async def _is_access_denylisted(self, jti: str) -> bool:
        with self._state_lock:
            if jti in self._revoked_access:
                return True
        if self.cache:
            try:
                return await self.cache.is_access_token_denylisted(jti)
            except (RedisError, OSError) as exc:
                # Fail open on cache errors
                self.logger.warning("denylist_check_failed", jti=jti, error=str(exc))
        return False

    # ------------------------------------------------------------------
    # passwords
    # ------------------------------------------------------------------
    def validate_password(self, password: str) -> PasswordCheck:
        return validate_password(password)

    async def forgot_password(self, email: str, *, ip: str) -> str:
        """Start a reset; the response never reveals whether the account exists."""
        normalized = email.strip().lower()
        user = self.store.get_user_by_email(normalized)
        if user is None or user.is_blacklisted:
            self.logger.info("password_reset_skipped", reason="no_eligible_account")
            return FORGOT_PASSWORD_MESSAGE
        if not user.is_email_account:
            await self._deliver(user.email, provider_notice_email(user.auth_provider))
            self.logger.info("password_reset_provider_notice", user_id=user.id)
            return FORGOT_PASSWORD_MESSAGE
        token = self.reset_tokens.create(user.id)
        reset_url = f"{self.settings.frontend_base_url.rstrip('/')}/reset-password?{urlencode({'token': token.token})}"
        if not await self._deliver(
            user.email, password_reset_email(reset_url, self.settings.reset_token_ttl_minutes)
        ):
            self.logger.error("password_reset_email_failed", user_id=user.id)
        self.audit.record("password_reset_requested", "info", user.id, "Password reset requested", ip)
        return FORGOT_PASSWORD_MESSAGE

    async def verify_reset_token(self, token: str) -> Tuple[bool, str]:
        outcome = self.reset_tokens.validate(token)
        if not outcome.ok:
            self.logger.info("reset_token_check_failed", reason=outcome.error.value)
            return False, INVALID_RESET_TOKEN
        return True, "Token is valid."

    async def reset_password(self, token: str, new_password: str, *, ip: str) -> str:
        check = validate_password(new_password)
        if not check.is_valid:
            raise ValidationError(check.errors[0], detail={"errors": check.errors})
        current = self.reset_tokens.validate(token)
        if not current.ok:
            self._raise_for(current, INVALID_RESET_TOKEN, event="password_reset_rejected")
        user = self.store.get_user(current.value.user_id)
        if not user or user.is_blacklisted:
            self.logger.warning("password_reset_rejected", reason="user_unavailable")
            raise AuthenticationError(INVALID_RESET_TOKEN)
        if not user.is_email_account:
            raise ValidationError(SOCIAL_RESET_MESSAGE)
        consumed = self.reset_tokens.consume(token, hash_secret(self.hasher, new_password))
        if not consumed.ok:
            self._raise_for(consumed, INVALID_RESET_TOKEN, event="password_reset_rejected", user_id=user.id)
        self.refresh_tokens.revoke_all(user.id)
        self.audit.record("password_reset", "warning", user.id, "Password reset completed", ip)
        self.logger.info("password_reset_completed", user_id=user.id)
        return RESET_SUCCESS_MESSAGE

    async def change_password(
        self, user_id: str, current_password: str, new_password: str, *, ip: str
    ) -> None:
        user = self._require_user(user_id)
        if not user.is_email_account:
            raise ValidationError(SOCIAL_RESET_MESSAGE)
        if not user.has_password:
            raise ValidationError("No password is set for this account")
        self._guard_account(user, ip=ip)
        if not verify_secret(self.hasher, user.password_hash, current_password):
            self.ledger.record(ip=ip, attempt_type=AttemptType.LOGIN, success=False, user_id=user.id)
            raise AuthenticationError("Current password is incorrect")
        check = validate_password(new_password)
        if not check.is_valid:
            raise ValidationError(check.errors[0], detail={"errors": check.errors})
        self.store.set_password_hash(user.id, hash_secret(self.hasher, new_password))
        self.refresh_tokens.revoke_all(user.id)
        self.audit.record("password_changed", "warning", user.id, "Password changed", ip)

    # ------------------------------------------------------------------
    # standalone email one-time codes
    # ------------------------------------------------------------------
    async def send_otp(self, email: str, *, ip: str) -> OtpDispatch:
        normalized = email.strip().lower()
        decision = self.ledger.check_send(ip=ip, email=normalized)
        if not decision.ok:
            self.ledger.record(ip=ip, attempt_type=AttemptType.SEND_OTP, success=False, email=normalized)
            self._raise_for(decision, "Unable to send verification code", event="email_otp_rejected")

        user = self.store.get_user_by_email(normalized)
        if user is None:
            try:
                user = self.store.create_user(
                    normalized, normalized.split("@")[0], auth_provider="email", now=self._now()
                )
            except ConstraintViolation:
                # Concurrent first send created it
                user = self.store.get_user_by_email(normalized)
                if user is None:
                    raise
            else:
                self.store.assign_role(user.id, self.settings.default_role)
                self.logger.info("user_auto_created", user_id=user.id)
        if user.is_blacklisted:
            self.logger.warning("email_otp_rejected", reason="blacklisted", user_id=user.id)
            raise AuthenticationError("Unable to send verification code")

        issued = self._issue_otp_or_raise(user, OtpPurpose.EMAIL_LOGIN, ip=ip)
        await self._send_code(user, issued, OtpPurpose.EMAIL_LOGIN)
        return OtpDispatch(expires_at=issued.expires_at, retry_after=self.settings.otp_resend_seconds)

    async def verify_otp_standalone(
        self, email: str, code: str, *, ip: str, user_agent: Optional[str] = None
    ) -> AuthResult:
        normalized = email.strip().lower()
        user = self.store.get_user_by_email(normalized)
        if user is None or user.is_blacklisted:
            self.ledger.record(
                ip=ip,
                attempt_type=AttemptType.VERIFY_OTP,
                success=False,
                user_id=user.id if user else None,
                email=normalized,
            )
            self.logger.warning("email_otp_verify_rejected", reason="no_eligible_account")
            raise AuthenticationError(INVALID_CODE)
        outcome = self.otp.verify(user.id, OtpPurpose.EMAIL_LOGIN, code, ip=ip)
        if not outcome.ok:
            self._raise_for(outcome, INVALID_CODE, event="email_otp_verify_rejected", user_id=user.id)
        is_new_user = self._now() - user.created_at <= NEW_USER_WINDOW
        return self._authenticate_user(
            user, ip=ip, user_agent=user_agent, method="email_otp", is_new_user=is_new_user
        )

    # ------------------------------------------------------------------
    # two-factor management
    # ------------------------------------------------------------------
    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user or user.is_blacklisted:
            raise AuthenticationError("Authentication required")
        return user

    def _guard_account(self, user: User, *, ip: str) -> None:
        decision = self.ledger.check_login(ip=ip, user_id=user.id)
        if not decision.ok:
            self._raise_for(decision, INVALID_CREDENTIALS, event="account_guard_rejected", user_id=user.id)

    def _confirm_sensitive_action(
        self,
        user: User,
        *,
        password: Optional[str],
        code: Optional[str],
        purpose: OtpPurpose,
        attempt_type: AttemptType,
        ip: str,
    ) -> None:
        """Require the password where one is set and, when given, a purpose code."""
        self._guard_account(user, ip=ip)
        if user.has_password:
            if not verify_secret(self.hasher, user.password_hash, password or ""):
                self.ledger.record(ip=ip, attempt_type=attempt_type, success=False, user_id=user.id)
                self.logger.warning("sensitive_action_rejected", reason="bad_password", user_id=user.id)
                raise AuthenticationError("Invalid password")
        elif not code:
            raise ValidationError("Verification code required")
        if code:
            outcome = self.otp.verify(user.id, purpose, code, ip=ip)
            if not outcome.ok:
                self._raise_for(outcome, INVALID_CODE, event="sensitive_action_rejected", user_id=user.id)

    async def two_factor_status(self, user_id: str) -> TwoFactorStatus:
        user = self._require_user(user_id)
        return TwoFactorStatus(
            enabled=user.two_factor_enabled,
            backup_codes_remaining=self.backup_codes.remaining(user.id),
            last_used=user.two_factor_last_used,
        )

    async def request_two_factor_code(
        self, user_id: str, purpose: OtpPurpose, *, ip: str
    ) -> OtpDispatch:
        """Send a code confirming a sensitive two-factor change."""
        purpose = OtpPurpose(purpose)
        if purpose in (OtpPurpose.LOGIN, OtpPurpose.EMAIL_LOGIN):
            raise ValidationError("Sign-in codes are sent by the login flow")
        user = self._require_user(user_id)
        issued = self._issue_otp_or_raise(user, purpose, ip=ip)
        await self._send_code(user, issued, purpose)
        return OtpDispatch(expires_at=issued.expires_at, retry_after=self.settings.otp_resend_seconds)

    async def setup_two_factor(
        self, user_id: str, current_password: Optional[str], *, ip: str
    ) -> OtpDispatch:
        user = self._require_user(user_id)
        if user.two_factor_enabled:
            raise ValidationError("Two-factor authentication is already enabled")
        self._guard_account(user, ip=ip)
        # Passwordless accounts prove ownership with the emailed setup code
        if user.has_password and not verify_secret(
            self.hasher, user.password_hash, current_password or ""
        ):
            self.ledger.record(ip=ip, attempt_type=AttemptType.SETUP, success=False, user_id=user.id)
            self.logger.warning("two_factor_setup_rejected", reason="bad_password", user_id=user.id)
            raise AuthenticationError("Invalid password")
        issued = self._issue_otp_or_raise(user, OtpPurpose.SETUP, ip=ip)
        await self._send_code(user, issued, OtpPurpose.SETUP)
        return OtpDispatch(expires_at=issued.expires_at, retry_after=self.settings.otp_resend_seconds)

    async def verify_two_factor_setup(self, user_id: str, code: str, *, ip: str) -> List[str]:
        user = self._require_user(user_id)
        if user.two_factor_enabled:
            raise ValidationError("Two-factor authentication is already enabled")
        outcome = self.otp.verify(user.id, OtpPurpose.SETUP, code, ip=ip)
        if not outcome.ok:
            self._raise_for(outcome, INVALID_CODE, event="two_factor_setup_rejected", user_id=user.id)
        self.store.update_user(user.id, two_factor_enabled=True)
        codes = self.backup_codes.regenerate(user.id)
        self.ledger.record(ip=ip, attempt_type=AttemptType.SETUP, success=True, user_id=user.id)
        self.audit.record("two_factor_enabled", "info", user.id, "Two-factor authentication enabled", ip)
        await self._deliver(user.email, two_factor_enabled_email())
        return codes

    async def disable_two_factor(
        self,
        user_id: str,
        current_password: Optional[str] = None,
        code: Optional[str] = None,
        *,
        ip: str,
    ) -> None:
        user = self._require_user(user_id)
        if not user.two_factor_enabled:
            raise ValidationError("Two-factor authentication is not enabled")
        self._confirm_sensitive_action(
            user,
            password=current_password,
            code=code,
            purpose=OtpPurpose.DISABLE,
            attempt_type=AttemptType.DISABLE,
            ip=ip,
        )
        self.store.update_user(user.id, two_factor_enabled=False, two_factor_last_used=None)
        self.backup_codes.invalidate_all(user.id)
        self.otp.invalidate(user.id)
        self.refresh_tokens.revoke_all(user.id)
        self.ledger.record(ip=ip, attempt_type=AttemptType.DISABLE, success=True, user_id=user.id)
        self.audit.record("two_factor_disabled", "warning", user.id, "Two-factor authentication disabled", ip)
        await self._deliver(user.email, two_factor_disabled_email())

    async def generate_backup_codes(
        self,
        user_id: str,
        current_password: Optional[str] = None,
        code: Optional[str] = None,
        *,
        ip: str,
    ) -> List[str]:
        user = self._require_user(user_id)
        if not user.two_factor_enabled:
            raise ValidationError("Two-factor authentication is not enabled")
        self._confirm_sensitive_action(
            user,
            password=current_password,
            code=code,
            purpose=OtpPurpose.BACKUP_GENERATE,
            attempt_type=AttemptType.SETUP,
            ip=ip,
        )
        codes = self.backup_codes.regenerate(user.id)
        self.audit.record("backup_codes_regenerated", "warning", user.id, "Backup codes regenerated", ip)
        return codes

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------
    def _get_oauth_credentials(self, provider: str) -> tuple[Optional[str], Optional[str]]:
        if provider == "google":
            return self.settings.oauth_google_client_id, self.settings.oauth_google_client_secret
        if provider == "github":
            return self.settings.oauth_github_client_id, self.settings.oauth_github_client_secret
        if provider == "microsoft":
            return self.settings.oauth_microsoft_client_id, self.settings.oauth_microsoft_client_secret
        return None, None

    def _validate_redirect_uri(self, redirect_uri: str) -> str:
        parsed = urlparse(redirect_uri)
        if parsed.scheme not in {"https", "http"}:
            raise ValidationError("OAuth redirect URI must be http(s)")
        if parsed.scheme == "http" and parsed.hostname not in {"localhost", "127.0.0.1"}:
            raise ValidationError("Insecure redirect URI not allowed outside localhost")
        if not parsed.netloc:
            raise ValidationError("OAuth redirect URI must include host")
        return redirect_uri

    def cleanup_expired_states(self) -> int:
        now = self._now()
        with self._state_lock:
            stale = [key for key, (_, expires_at) in self._oauth_states.items() if expires_at <= now]
            for key in stale:
                self._oauth_states.pop(key, None)
        return len(stale)

    async def start_oauth(self, provider: str, redirect_uri: Optional[str] = None) -> dict:
        self.cleanup_expired_states()
        if provider not in OAUTH_PROVIDERS:
            raise ValidationError(f"Unsupported OAuth provider: {provider}")
        client_id, _ = self._get_oauth_credentials(provider)
        if not client_id:
            self.logger.warning("oauth_not_configured", provider=provider)
            raise ValidationError(f"OAuth provider {provider} is not configured")
        callback_uri = redirect_uri or self.settings.oauth_redirect_uri
        if not callback_uri:
            self.logger.error("oauth_no_redirect_uri_configured", provider=provider)
            raise ValidationError("No OAuth redirect URI configured")
        callback_uri = self._validate_redirect_uri(callback_uri)
        if not self.cache and not self.settings.test_mode:
            raise ServerError("OAuth state cache is required for multi-process safety")

        state = uuid.uuid4().hex
        expires_at = self._now() + timedelta(minutes=10)
        with self._state_lock:
            self._oauth_states[state] = (provider, expires_at)
        if self.cache:
            await self.cache.set_oauth_state(state, provider, expires_at)

        provider_config = OAUTH_PROVIDERS[provider]
        params = {
            "client_id": client_id,
            "redirect_uri": callback_uri,
            "response_type": "code",
            "scope": provider_config["scope"],
            "state": state,
        }
        if provider == "google":
            params["access_type"] = "offline"
            params["prompt"] = "consent"
        return {
            "authorization_url": f"{provider_config['auth_url']}?{urlencode(params)}",
            "state": state,
            "provider": provider,
        }

    def register_oauth_code(self, provider: str, code: str, payload: dict) -> None:
        """Record an exchanged OAuth identity for testing or offline flows."""

        self._oauth_code_registry[(provider, code)] = payload

    async def _exchange_oauth_code(self, provider: str, code: str) -> Optional[dict]:
        """Exchange an authorization code for the provider's user identity."""
        registered = self._oauth_code_registry.pop((provider, code), None)
        if registered:
            return registered

        client_id, client_secret = self._get_oauth_credentials(provider)
        redirect_uri = self.settings.oauth_redirect_uri
        if not client_id or not client_secret or not redirect_uri:
            self.logger.error("oauth_credentials_missing", provider=provider)
            return None
        provider_config = OAUTH_PROVIDERS[provider]

        try:
            async with httpx.AsyncClient(timeout=30.0, follow_redirects=False) as client:
                token_response = await client.post(
                    provider_config["token_url"],
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "code": code,
                        "redirect_uri": redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = token_result.get("access_token") if isinstance(token_result, dict) else None
                if not access_token:
                    self.logger.error("oauth_no_access_token", provider=provider)
                    return None

                userinfo_headers = {"Authorization": f"Bearer {access_token}"}
                if provider == "github":
                    userinfo_headers["Accept"] = "application/vnd.github+json"
                userinfo_response = await client.get(
                    provider_config["userinfo_url"], headers=userinfo_headers
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
                if not isinstance(userinfo, dict):
                    self.logger.error("oauth_userinfo_invalid_format", provider=provider)
                    return None
                identity = self._parse_oauth_userinfo(provider, userinfo)

                if provider == "github" and not identity.get("email"):
                    emails_response = await client.get(
                        "https://api.github.com/user/emails", headers=userinfo_headers
                    )
                    if emails_response.status_code == 200:
                        primary_email = next(
                            (
                                e["email"]
                                for e in emails_response.json()
                                if e.get("primary") and e.get("verified")
                            ),
                            None,
                        )
                        if primary_email:
                            identity["email"] = primary_email
        except httpx.HTTPStatusError as exc:
            self.logger.error(
                "oauth_exchange_http_error",
                provider=provider,
                status_code=exc.response.status_code,
                error=str(exc),
            )
            return None
        except (httpx.HTTPError, ValueError) as exc:
            self.logger.error("oauth_exchange_error", provider=provider, error=str(exc))
            return None

        if not identity.get("provider_uid") or not identity.get("email"):
            self.logger.error("oauth_identity_incomplete", provider=provider)
            return None
        self.logger.info("oauth_exchange_success", provider=provider)
        return identity

    def _parse_oauth_userinfo(self, provider: str, userinfo: dict) -> dict:
        """Normalize provider user info into provider_uid/email/name/picture."""
        if provider == "google":
            return {
                "provider_uid": userinfo.get("id"),
                "email": userinfo.get("email"),
                "name": userinfo.get("name"),
                "picture": userinfo.get("picture"),
            }
        if provider == "github":
            return {
                "provider_uid": str(userinfo["id"]) if userinfo.get("id") is not None else None,
                "email": userinfo.get("email"),
                "name": userinfo.get("name") or userinfo.get("login"),
                "picture": userinfo.get("avatar_url"),
            }
        return {
            "provider_uid": userinfo.get("id"),
            "email": userinfo.get("mail") or userinfo.get("userPrincipalName"),
            "name": userinfo.get("displayName"),
            "picture": None,
        }

    async def _pop_oauth_state(self, state: str) -> Optional[tuple[str, datetime]]:
        with self._state_lock:
            stored = self._oauth_states.pop(state, None)
        if self.cache:
            cached = await self.cache.pop_oauth_state(state)
            stored = cached or stored
        return stored

    async def complete_oauth(
        self,
        provider: str,
        code: str,
        state: str,
        *,
        ip: str,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        """Finish an authorization-code login; OAuth accounts skip the OTP step."""
        stored = await self._pop_oauth_state(state)
        if not stored or stored[0] != provider or stored[1] <= self._now():
            self.logger.warning("oauth_state_rejected", provider=provider)
            raise AuthenticationError("OAuth authentication failed")
        identity = await self._exchange_oauth_code(provider, code)
        if not identity:
            raise AuthenticationError("OAuth authentication failed")

        provider_uid = str(identity["provider_uid"])
        email = str(identity["email"]).strip().lower()
        name = identity.get("name") or email.split("@")[0]
        is_new_user = False
        user = self.store.get_user_by_provider(provider, provider_uid)
        if user is None:
            user = self.store.get_user_by_email(email)
            if user is not None:
                user = self.store.update_user(
                    user.id,
                    auth_provider=provider,
                    auth_provider_id=provider_uid,
                    photo_url=identity.get("picture") or user.photo_url,
                ) or user
                self.logger.info("oauth_account_linked", provider=provider, user_id=user.id)
            else:
                try:
                    user = self.store.create_user(
                        email,
                        name,
                        auth_provider=provider,
                        auth_provider_id=provider_uid,
                        photo_url=identity.get("picture"),
                        now=self._now(),
                    )
                except ConstraintViolation as exc:
                    raise ConflictError("An account with this email already exists") from exc
                self.store.assign_role(user.id, self.settings.default_role)
                is_new_user = True
        return self._authenticate_user(
            user, ip=ip, user_agent=user_agent, method=provider, is_new_user=is_new_user
        )

    # ------------------------------------------------------------------
    # access tokens
    # ------------------------------------------------------------------
    async def authenticate(
        self, authorization: Optional[str], *, required_role: Optional[str] = None
    ) -> Optional[AuthContext]:
        token = self.extract_bearer(authorization)
        if not token:
            return None
        payload = self._decode_jwt(token)
        if not payload or payload.get("token_type") != "access":
            return None
        jti = payload.get("jti")
        if jti and await self._is_access_denylisted(jti):
            self.logger.info("access_token_denylisted", jti=jti)
            return None
        user = self.store.get_user(str(payload.get("sub") or ""))
        if not user or user.is_blacklisted:
            return None
        roles = [str(role) for role in payload.get("roles") or []]
        if required_role and required_role not in roles:
            return None
        return AuthContext(
            user_id=user.id,
            email=user.email,
            roles=roles,
            jti=jti,
            expires_at=payload.get("exp"),
        )

    def extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected = self._sign(f"{header_b64}.{payload_b64}").encode()
        if not hmac.compare_digest(expected, sig_b64.encode("utf-8", "ignore")):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict) or payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._now().timestamp() - self._clock_skew_leeway.total_seconds():
            return None
        return payload


__all__ = [
    "AuthService",
    "AuthContext",
    "AuthResult",
    "LoginResult",
    "OtpDispatch",
    "TokenPair",
    "TwoFactorStatus",
    "OAUTH_PROVIDERS",
]
