from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from reliefgate.logging import get_logger
from reliefgate.service.errors import ErrorKind, Outcome
from reliefgate.service.ports import AuditSink
from reliefgate.storage.models import OtpAttempt, utcnow

logger = get_logger(__name__)


class AttemptType(str, Enum):
    SEND_OTP = "send_otp"
    VERIFY_OTP = "verify_otp"
    LOGIN = "login"
    SETUP = "setup"
    DISABLE = "disable"


@dataclass(frozen=True)
class AttemptPolicy:
    """Thresholds applied over a sliding window."""

    send_limit: int = 3
    verify_limit: int = 10
    ip_limit: int = 20
    lockout_threshold: int = 5
    lockout_minutes: int = 60
    window: timedelta = timedelta(hours=1)

    @classmethod
    def from_settings(cls, settings) -> "AttemptPolicy":
        return cls(
            send_limit=settings.otp_send_limit_per_hour,
            verify_limit=settings.otp_verify_limit_per_hour,
            ip_limit=settings.ip_attempt_limit_per_hour,
            lockout_threshold=settings.lockout_failed_attempts,
            lockout_minutes=settings.lockout_duration_minutes,
        )

    @property
    def lockout_window(self) -> timedelta:
        return timedelta(minutes=self.lockout_minutes)


def _seconds_until(moment: Optional[datetime], now: datetime) -> int:
    if moment is None:
        return 0
    return max(0, math.ceil((moment - now).total_seconds()))


class AttemptLedger:
    """Append-only record of OTP, login and two-factor attempts.

    Rows are only ever inserted here; the sole delete path is
    ``purge_older_than``. All rate and lockout decisions are derived from
    counts over the stored rows, so every worker sharing a store sees the
    same limits.
    """

    def __init__(
        self,
        store,
        policy: Optional[AttemptPolicy] = None,
        *,
        audit: Optional[AuditSink] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.policy = policy or AttemptPolicy()
        self.audit = audit
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    def record(
        self,
        *,
        ip: str,
        attempt_type: AttemptType,
        success: bool,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> OtpAttempt:
        """Append one attempt. Storage failures propagate to the caller."""
        attempt = OtpAttempt.new(
            ip_address=ip,
            attempt_type=AttemptType(attempt_type).value,
            success=success,
            now=self._now(),
            user_id=user_id,
            email=email,
        )
        self.store.add_otp_attempt(attempt)
        if self.audit is not None:
            self.audit.record(
                f"attempt_{attempt.attempt_type}",
                "info" if success else "warning",
                user_id,
                f"{attempt.attempt_type} {'succeeded' if success else 'failed'}",
                ip,
            )
        return attempt

    def count_since(
        self,
        since: datetime,
        *,
        user_id: Optional[str] = None,
        ip: Optional[str] = None,
        email: Optional[str] = None,
        attempt_type: Optional[AttemptType] = None,
        success: Optional[bool] = None,
    ) -> int:
        return self.store.count_otp_attempts(
            since=since,
            user_id=user_id,
            ip_address=ip,
            email=email,
            attempt_type=AttemptType(attempt_type).value if attempt_type else None,
            success=success,
        )

    def purge_older_than(self, cutoff: datetime) -> int:
        removed = self.store.purge_otp_attempts(cutoff)
        if removed:
            logger.info("attempts_purged", removed=removed, cutoff=cutoff.isoformat())
        return removed

    # lockout
    def is_account_locked(self, user_id: str) -> bool:
        since = self._now() - self.policy.lockout_window
        failures = self.count_since(since, user_id=user_id, success=False)
        return failures >= self.policy.lockout_threshold

    def lockout_remaining(self, user_id: str) -> int:
        """Seconds until the newest failure leaves the lockout window."""
        now = self._now()
        if not self.is_account_locked(user_id):
            return 0
        _, newest = self.store.otp_attempt_bounds(
            since=now - self.policy.lockout_window, user_id=user_id, success=False
        )
        if newest is None:
            return 0
        return max(1, _seconds_until(newest + self.policy.lockout_window, now))

    def is_ip_blocked(self, ip: str) -> bool:
        since = self._now() - self.policy.window
        return self.count_since(since, ip=ip) >= self.policy.ip_limit * 2

    def _ip_retry_after(self, ip: str, attempt_type: Optional[AttemptType] = None) -> int:
        now = self._now()
        oldest, _ = self.store.otp_attempt_bounds(
            since=now - self.policy.window,
            ip_address=ip,
            attempt_type=AttemptType(attempt_type).value if attempt_type else None,
        )
        if oldest is None:
            return 1
        return max(1, _seconds_until(oldest + self.policy.window, now))

    def send_cooldown(self, *, user_id: Optional[str] = None, email: Optional[str] = None) -> int:
        """Seconds until the oldest counted send leaves the window."""
        now = self._now()
        oldest, _ = self.store.otp_attempt_bounds(
            since=now - self.policy.window,
            user_id=user_id,
            email=email,
            attempt_type=AttemptType.SEND_OTP.value,
            success=True,
        )
        if oldest is None:
            return 0
        return max(1, _seconds_until(oldest + self.policy.window, now))

    # decisions
    def _check_ip(self, ip: str, attempt_type: AttemptType) -> Outcome[None]:
        if self.is_ip_blocked(ip):
            logger.warning("ip_blocked", ip=ip)
            return Outcome.failure(
                ErrorKind.RATE_LIMITED, retry_after=self._ip_retry_after(ip), detail="ip_blocked"
            )
        since = self._now() - self.policy.window
        if self.count_since(since, ip=ip, attempt_type=attempt_type) >= self.policy.ip_limit:
            return Outcome.failure(
                ErrorKind.RATE_LIMITED,
                retry_after=self._ip_retry_after(ip, attempt_type),
                detail="ip_limit",
            )
        return Outcome.success(None)

    def _check_lock(self, user_id: Optional[str]) -> Outcome[None]:
        if user_id and self.is_account_locked(user_id):
            return Outcome.failure(
                ErrorKind.RATE_LIMITED,
                retry_after=self.lockout_remaining(user_id),
                detail="account_locked",
            )
        return Outcome.success(None)

    def check_send(
        self, *, ip: str, user_id: Optional[str] = None, email: Optional[str] = None
    ) -> Outcome[None]:
        """Decide whether another code may be sent to this user/address from this IP."""
        locked = self._check_lock(user_id)
        if not locked.ok:
            return locked
        since = self._now() - self.policy.window
        for subject in ({"user_id": user_id}, {"email": email}):
            if not any(subject.values()):
                continue
            sent = self.count_since(
                since, attempt_type=AttemptType.SEND_OTP, success=True, **subject
            )
            if sent >= self.policy.send_limit:
                return Outcome.failure(
                    ErrorKind.RATE_LIMITED,
                    retry_after=self.send_cooldown(**subject),
                    detail="send_limit",
                )
        return self._check_ip(ip, AttemptType.SEND_OTP)

    def check_verify(self, *, ip: str, user_id: str) -> Outcome[None]:
        locked = self._check_lock(user_id)
        if not locked.ok:
            return locked
        since = self._now() - self.policy.window
        verified = self.count_since(since, user_id=user_id, attempt_type=AttemptType.VERIFY_OTP)
        if verified >= self.policy.verify_limit:
            oldest, _ = self.store.otp_attempt_bounds(
                since=since, user_id=user_id, attempt_type=AttemptType.VERIFY_OTP.value
            )
            retry_after = 1
            if oldest is not None:
                retry_after = max(1, _seconds_until(oldest + self.policy.window, self._now()))
            return Outcome.failure(
                ErrorKind.RATE_LIMITED, retry_after=retry_after, detail="verify_limit"
            )
        return self._check_ip(ip, AttemptType.VERIFY_OTP)

    def check_login(self, *, ip: str, user_id: Optional[str] = None) -> Outcome[None]:
        locked = self._check_lock(user_id)
        if not locked.ok:
            return locked
        return self._check_ip(ip, AttemptType.LOGIN)


__all__ = ["AttemptLedger", "AttemptPolicy", "AttemptType"]
