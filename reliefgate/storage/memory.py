from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Set, Tuple

from reliefgate.logging import get_logger
from reliefgate.storage.errors import ConstraintViolation
from reliefgate.storage.models import (
    BackupCode,
    OtpAttempt,
    OtpCode,
    PasswordResetToken,
    RefreshToken,
    User,
)

_USER_FIELDS = {
    "name",
    "auth_provider",
    "auth_provider_id",
    "password_hash",
    "photo_url",
    "is_blacklisted",
    "two_factor_enabled",
    "backup_codes_remaining",
    "two_factor_last_used",
}


class MemoryStore:
    """In-process backing store used for tests and single-node development.

    Every method takes the data lock, so each call is one atomic unit with the
    same conditional-update semantics as the Postgres store. Records are
    copied on the way in and out so callers never alias stored state.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.roles: Dict[str, Set[str]] = {}
        self.otp_codes: Dict[str, OtpCode] = {}
        self.otp_attempts: List[OtpAttempt] = []
        self.backup_codes: Dict[str, BackupCode] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.reset_tokens: Dict[str, PasswordResetToken] = {}
        # RLock so helpers can be nested inside locked sections
        self._data_lock = threading.RLock()

    def ping(self) -> bool:
        return True

    # users
    def create_user(
        self,
        email: str,
        name: str = "",
        *,
        auth_provider: str = "email",
        auth_provider_id: Optional[str] = None,
        password_hash: Optional[str] = None,
        photo_url: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if auth_provider_id and self._find_by_provider(auth_provider, auth_provider_id):
                raise ConstraintViolation(
                    "provider identity already linked", {"field": "auth_provider_id"}
                )
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                name=name,
                auth_provider=auth_provider,
                auth_provider_id=auth_provider_id,
                password_hash=password_hash,
                photo_url=photo_url,
            )
            if now is not None:
                user.created_at = now
            self.users[user.id] = user
            return replace(user)

    def _find_by_provider(self, provider: str, provider_id: str) -> Optional[User]:
        return next(
            (
                u
                for u in self.users.values()
                if u.auth_provider == provider and u.auth_provider_id == provider_id
            ),
            None,
        )

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return replace(user) if user else None

    def get_user_by_provider(self, provider: str, provider_id: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_by_provider(provider, provider_id)
            return replace(user) if user else None

    def update_user(self, user_id: str, **fields) -> Optional[User]:
        unknown = set(fields) - _USER_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            provider = fields.get("auth_provider", user.auth_provider)
            provider_id = fields.get("auth_provider_id", user.auth_provider_id)
            if provider_id:
                owner = self._find_by_provider(provider, provider_id)
                if owner and owner.id != user_id:
                    raise ConstraintViolation(
                        "provider identity already linked", {"field": "auth_provider_id"}
                    )
            for key, value in fields.items():
                setattr(user, key, value)
            return replace(user)

    def set_password_hash(self, user_id: str, password_hash: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.password_hash = password_hash
            return True

    # roles
    def assign_role(self, user_id: str, role: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            self.roles.setdefault(user_id, set()).add(role)

    def list_roles(self, user_id: str) -> Set[str]:
        with self._data_lock:
            return set(self.roles.get(user_id, set()))

    # attempt ledger
    def add_otp_attempt(self, attempt: OtpAttempt) -> OtpAttempt:
        with self._data_lock:
            self.otp_attempts.append(replace(attempt))
            return attempt

    def _matching_attempts(
        self,
        *,
        user_id: Optional[str],
        ip_address: Optional[str],
        email: Optional[str],
        attempt_type: Optional[str],
        since: datetime,
        success: Optional[bool],
    ) -> List[OtpAttempt]:
        normalized_email = email.lower() if email else None
        return [
            attempt
            for attempt in self.otp_attempts
            if attempt.attempted_at >= since
            and (user_id is None or attempt.user_id == user_id)
            and (ip_address is None or attempt.ip_address == ip_address)
            and (normalized_email is None or attempt.email == normalized_email)
            and (attempt_type is None or attempt.attempt_type == attempt_type)
            and (success is None or attempt.success == success)
        ]

    def count_otp_attempts(
        self,
        *,
        since: datetime,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        email: Optional[str] = None,
        attempt_type: Optional[str] = None,
        success: Optional[bool] = None,
    ) -> int:
        with self._data_lock:
            return len(
                self._matching_attempts(
                    user_id=user_id,
                    ip_address=ip_address,
                    email=email,
                    attempt_type=attempt_type,
                    since=since,
                    success=success,
                )
            )

    def otp_attempt_bounds(
        self,
        *,
        since: datetime,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        email: Optional[str] = None,
        attempt_type: Optional[str] = None,
        success: Optional[bool] = None,
    ) -> Tuple[Optional[datetime], Optional[datetime]]:
        """Return the (oldest, newest) timestamps of the matching attempts."""
        with self._data_lock:
            stamps = [
                attempt.attempted_at
                for attempt in self._matching_attempts(
                    user_id=user_id,
                    ip_address=ip_address,
                    email=email,
                    attempt_type=attempt_type,
                    since=since,
                    success=success,
                )
            ]
        if not stamps:
            return None, None
        return min(stamps), max(stamps)

    def purge_otp_attempts(self, cutoff: datetime) -> int:
        with self._data_lock:
            before = len(self.otp_attempts)
            self.otp_attempts = [a for a in self.otp_attempts if a.attempted_at >= cutoff]
            return before - len(self.otp_attempts)

    # otp codes
    def add_otp_code(self, code: OtpCode) -> OtpCode:
        with self._data_lock:
            if code.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": code.user_id})
            self.otp_codes[code.id] = replace(code)
            return code

    def delete_otp_codes(self, user_id: str, code_type: Optional[str] = None) -> int:
        with self._data_lock:
            stale = [
                cid
                for cid, code in self.otp_codes.items()
                if code.user_id == user_id and (code_type is None or code.code_type == code_type)
            ]
            for cid in stale:
                self.otp_codes.pop(cid, None)
            return len(stale)

    def get_otp_code(self, code_id: str) -> Optional[OtpCode]:
        with self._data_lock:
            code = self.otp_codes.get(code_id)
            return replace(code) if code else None

    def get_active_otp_code(self, user_id: str, code_type: str) -> Optional[OtpCode]:
        """Newest unused code of the purpose; expiry is left to the caller."""
        with self._data_lock:
            candidates = [
                code
                for code in self.otp_codes.values()
                if code.user_id == user_id and code.code_type == code_type and code.used_at is None
            ]
            if not candidates:
                return None
            return replace(max(candidates, key=lambda c: c.created_at))

    def mark_otp_code_used(self, code_id: str, now: datetime, max_attempts: int) -> bool:
        with self._data_lock:
            code = self.otp_codes.get(code_id)
            if (
                not code
                or code.used_at is not None
                or code.expires_at <= now
                or code.attempt_count >= max_attempts
            ):
                return False
            code.used_at = now
            return True

    def increment_otp_attempts(self, code_id: str, max_attempts: int) -> Optional[int]:
        with self._data_lock:
            code = self.otp_codes.get(code_id)
            if not code or code.used_at is not None or code.attempt_count >= max_attempts:
                return None
            code.attempt_count += 1
            return code.attempt_count

    def purge_otp_codes(self, now: datetime) -> int:
        with self._data_lock:
            stale = [
                cid
                for cid, code in self.otp_codes.items()
                if code.used_at is not None or code.expires_at <= now
            ]
            for cid in stale:
                self.otp_codes.pop(cid, None)
            return len(stale)

    # backup codes
    def replace_backup_codes(self, user_id: str, codes: Sequence[BackupCode]) -> None:
        """Drop every existing code of the user and store the new batch."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            for cid in [c.id for c in self.backup_codes.values() if c.user_id == user_id]:
                self.backup_codes.pop(cid, None)
            for code in codes:
                self.backup_codes[code.id] = replace(code)
            user.backup_codes_remaining = len(codes)

    def list_unused_backup_codes(self, user_id: str) -> List[BackupCode]:
        with self._data_lock:
            return [
                replace(code)
                for code in sorted(self.backup_codes.values(), key=lambda c: c.created_at)
                if code.user_id == user_id and code.used_at is None
            ]

    def count_unused_backup_codes(self, user_id: str) -> int:
        with self._data_lock:
            return sum(
                1
                for code in self.backup_codes.values()
                if code.user_id == user_id and code.used_at is None
            )

    def mark_backup_code_used(self, code_id: str, now: datetime) -> bool:
        with self._data_lock:
            code = self.backup_codes.get(code_id)
            if not code or code.used_at is not None:
                return False
            code.used_at = now
            user = self.users.get(code.user_id)
            if user:
                user.backup_codes_remaining = max(0, user.backup_codes_remaining - 1)
            return True

    def delete_backup_codes(self, user_id: str) -> int:
        with self._data_lock:
            stale = [cid for cid, code in self.backup_codes.items() if code.user_id == user_id]
            for cid in stale:
                self.backup_codes.pop(cid, None)
            user = self.users.get(user_id)
            if user:
                user.backup_codes_remaining = 0
            return len(stale)

    # refresh tokens
    def add_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if token.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": token.user_id})
            if token.token in self.refresh_tokens:
                raise ConstraintViolation("refresh token collision", {"field": "token"})
            self.refresh_tokens[token.token] = replace(token)
            return token

    def get_refresh_token(self, value: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token = self.refresh_tokens.get(value)
            return replace(token) if token else None

    def take_refresh_token(self, value: str) -> Optional[RefreshToken]:
        """Remove and return the token; only one caller can ever receive it."""
        with self._data_lock:
            return self.refresh_tokens.pop(value, None)

    def delete_refresh_token(self, value: str) -> bool:
        with self._data_lock:
            return self.refresh_tokens.pop(value, None) is not None

    def delete_user_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            stale = [key for key, tok in self.refresh_tokens.items() if tok.user_id == user_id]
            for key in stale:
                self.refresh_tokens.pop(key, None)
            return len(stale)

    def purge_refresh_tokens(self, now: datetime) -> int:
        with self._data_lock:
            stale = [key for key, tok in self.refresh_tokens.items() if tok.expires_at <= now]
            for key in stale:
                self.refresh_tokens.pop(key, None)
            return len(stale)

    # password reset tokens
    def add_password_reset_token(self, token: PasswordResetToken) -> PasswordResetToken:
        with self._data_lock:
            if token.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": token.user_id})
            if token.token in self.reset_tokens:
                raise ConstraintViolation("reset token collision", {"field": "token"})
            self.reset_tokens[token.token] = replace(token)
            return token

    def get_password_reset_token(self, value: str) -> Optional[PasswordResetToken]:
        with self._data_lock:
            token = self.reset_tokens.get(value)
            return replace(token) if token else None

    def consume_password_reset_token(
        self, value: str, password_hash: str, now: datetime
    ) -> Optional[str]:
        """Mark the token used and store the new hash; returns the user id on success."""
        with self._data_lock:
            token = self.reset_tokens.get(value)
            if not token or token.is_used or token.expires_at <= now:
                return None
            user = self.users.get(token.user_id)
            if not user:
                return None
            token.is_used = True
            user.password_hash = password_hash
            return user.id

    def purge_password_reset_tokens(self, now: datetime) -> int:
        with self._data_lock:
            stale = [
                key
                for key, tok in self.reset_tokens.items()
                if tok.is_used or tok.expires_at <= now
            ]
            for key in stale:
                self.reset_tokens.pop(key, None)
            return len(stale)
