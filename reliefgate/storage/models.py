from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class User:
    id: str
    email: str
    name: str = ""
    auth_provider: str = "email"
    auth_provider_id: Optional[str] = None
    password_hash: Optional[str] = None
    photo_url: Optional[str] = None
    is_blacklisted: bool = False
    two_factor_enabled: bool = False
    backup_codes_remaining: int = 0
    two_factor_last_used: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_email_account(self) -> bool:
        return self.auth_provider == "email"

    @property
    def has_password(self) -> bool:
        return self.is_email_account and bool(self.password_hash)


@dataclass
class OtpCode:
    id: str
    user_id: str
    code: str
    code_type: str
    expires_at: datetime
    created_at: datetime
    used_at: Optional[datetime] = None
    attempt_count: int = 0

    @classmethod
    def new(
        cls, user_id: str, code: str, code_type: str, *, now: datetime, ttl_minutes: int = 5
    ) -> "OtpCode":
        return cls(
            id=_new_id(),
            user_id=user_id,
            code=code,
            code_type=code_type,
            expires_at=now + timedelta(minutes=ttl_minutes),
            created_at=now,
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_valid(self, now: datetime) -> bool:
        return self.used_at is None and not self.is_expired(now)

    def has_reached_max_attempts(self, max_attempts: int) -> bool:
        return self.attempt_count >= max_attempts


@dataclass
class OtpAttempt:
    id: str
    ip_address: str
    attempt_type: str
    attempted_at: datetime
    success: bool
    user_id: Optional[str] = None
    email: Optional[str] = None

    @classmethod
    def new(
        cls,
        *,
        ip_address: str,
        attempt_type: str,
        success: bool,
        now: datetime,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> "OtpAttempt":
        return cls(
            id=_new_id(),
            ip_address=ip_address,
            attempt_type=attempt_type,
            attempted_at=now,
            success=success,
            user_id=user_id,
            email=email.lower() if email else None,
        )


@dataclass
class BackupCode:
    id: str
    user_id: str
    code_hash: str
    created_at: datetime
    used_at: Optional[datetime] = None

    @classmethod
    def new(cls, user_id: str, code_hash: str, *, now: datetime) -> "BackupCode":
        return cls(id=_new_id(), user_id=user_id, code_hash=code_hash, created_at=now)

    @property
    def is_used(self) -> bool:
        return self.used_at is not None


@dataclass
class RefreshToken:
    id: str
    token: str
    user_id: str
    expires_at: datetime
    created_at: datetime

    @classmethod
    def new(cls, user_id: str, token: str, *, now: datetime, ttl_days: int = 30) -> "RefreshToken":
        return cls(
            id=_new_id(),
            token=token,
            user_id=user_id,
            expires_at=now + timedelta(days=ttl_days),
            created_at=now,
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class PasswordResetToken:
    id: str
    token: str
    user_id: str
    expires_at: datetime
    created_at: datetime
    is_used: bool = False

    @classmethod
    def new(
        cls, user_id: str, token: str, *, now: datetime, ttl_minutes: int = 60
    ) -> "PasswordResetToken":
        return cls(
            id=_new_id(),
            token=token,
            user_id=user_id,
            expires_at=now + timedelta(minutes=ttl_minutes),
            created_at=now,
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_valid(self, now: datetime) -> bool:
        return not self.is_used and not self.is_expired(now)


__all__ = [
    "utcnow",
    "User",
    "OtpCode",
    "OtpAttempt",
    "BackupCode",
    "RefreshToken",
    "PasswordResetToken",
]
