from __future__ import annotations

import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from reliefgate.logging import get_logger
from reliefgate.service.attempts import AttemptLedger, AttemptType
from reliefgate.service.errors import ErrorKind, Outcome
from reliefgate.storage.models import OtpCode, utcnow

logger = get_logger(__name__)


class OtpPurpose(str, Enum):
    LOGIN = "login"
    EMAIL_LOGIN = "email_login"
    SETUP = "setup"
    DISABLE = "disable"
    BACKUP_GENERATE = "backup_generate"


@dataclass(frozen=True)
class IssuedOtp:
    code_id: str
    code: str
    expires_at: datetime


class OtpEngine:
    """Issues and verifies short numeric one-time codes.

    A code moves from active to exactly one terminal state (used, expired or
    attempts exhausted). The used and attempt-count transitions are
    conditional store updates, so two verifiers racing on one code cannot
    both succeed and the attempt cap cannot be overrun.
    """

    def __init__(
        self,
        store,
        ledger: AttemptLedger,
        *,
        expiry_minutes: int = 5,
        max_attempts: int = 3,
        code_length: int = 6,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.expiry_minutes = expiry_minutes
        self.max_attempts = max_attempts
        self.code_length = code_length
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    def _generate_code(self) -> str:
        return str(secrets.randbelow(10**self.code_length)).zfill(self.code_length)

    def issue(
        self,
        user_id: str,
        purpose: OtpPurpose,
        *,
        ip: str,
        email: Optional[str] = None,
    ) -> Outcome[IssuedOtp]:
        purpose = OtpPurpose(purpose)
        decision = self.ledger.check_send(ip=ip, user_id=user_id, email=email)
        if not decision.ok:
            self.ledger.record(
                ip=ip,
                attempt_type=AttemptType.SEND_OTP,
                success=False,
                user_id=user_id,
                email=email,
            )
            logger.warning(
                "otp_send_rejected",
                user_id=user_id,
                purpose=purpose.value,
                reason=decision.detail,
                retry_after=decision.retry_after,
            )
            return Outcome.failure(
                ErrorKind.RATE_LIMITED, retry_after=decision.retry_after, detail=decision.detail
            )

        self.store.delete_otp_codes(user_id, purpose.value)
        code = OtpCode.new(
            user_id,
            self._generate_code(),
            purpose.value,
            now=self._now(),
            ttl_minutes=self.expiry_minutes,
        )
        self.store.add_otp_code(code)
        self.ledger.record(
            ip=ip, attempt_type=AttemptType.SEND_OTP, success=True, user_id=user_id, email=email
        )
        logger.info("otp_issued", user_id=user_id, purpose=purpose.value, code_id=code.id)
        return Outcome.success(IssuedOtp(code_id=code.id, code=code.code, expires_at=code.expires_at))

    def verify(
        self,
        user_id: str,
        purpose: OtpPurpose,
        submitted: str,
        *,
        ip: str,
        expected_code_id: Optional[str] = None,
    ) -> Outcome[OtpCode]:
        """Check a submitted code; every call lands in the attempt ledger.

        ``expected_code_id`` pins verification to one issued code so that a
        caller holding a stale reference cannot verify against a newer code.
        """
        purpose = OtpPurpose(purpose)
        outcome = self._verify(user_id, purpose, submitted, ip=ip, expected_code_id=expected_code_id)
        self.ledger.record(
            ip=ip, attempt_type=AttemptType.VERIFY_OTP, success=outcome.ok, user_id=user_id
        )
        if not outcome.ok:
            logger.warning(
                "otp_verify_failed",
                user_id=user_id,
                purpose=purpose.value,
                reason=outcome.error.value,
            )
        return outcome

    def _verify(
        self,
        user_id: str,
        purpose: OtpPurpose,
        submitted: str,
        *,
        ip: str,
        expected_code_id: Optional[str],
    ) -> Outcome[OtpCode]:
        decision = self.ledger.check_verify(ip=ip, user_id=user_id)
        if not decision.ok:
            return decision

        code = self.store.get_active_otp_code(user_id, purpose.value)
        if code is None or (expected_code_id and code.id != expected_code_id):
            return Outcome.failure(ErrorKind.NOT_FOUND)
        now = self._now()
        if code.is_expired(now):
            return Outcome.failure(ErrorKind.EXPIRED)
        if code.has_reached_max_attempts(self.max_attempts):
            return Outcome.failure(ErrorKind.ATTEMPTS_EXHAUSTED)

        candidate = (submitted or "").strip()
        if hmac.compare_digest(code.code.encode(), candidate.encode()):
            if not self.store.mark_otp_code_used(code.id, now, self.max_attempts):
                return Outcome.failure(ErrorKind.CONFLICT)
            code.used_at = now
            return Outcome.success(code)

        count = self.store.increment_otp_attempts(code.id, self.max_attempts)
        if count is None:
            # Another verifier consumed or exhausted the code meanwhile
            return Outcome.failure(ErrorKind.CONFLICT)
        if count >= self.max_attempts:
            logger.warning("otp_attempts_exhausted", user_id=user_id, code_id=code.id)
        return Outcome.failure(ErrorKind.INVALID)

    def get_code(self, code_id: str) -> Optional[OtpCode]:
        return self.store.get_otp_code(code_id)

    def is_pending(self, code: Optional[OtpCode]) -> bool:
        """True while the code can still be verified."""
        return bool(
            code
            and code.is_valid(self._now())
            and not code.has_reached_max_attempts(self.max_attempts)
        )

    def invalidate(self, user_id: str, purpose: Optional[OtpPurpose] = None) -> int:
        return self.store.delete_otp_codes(user_id, OtpPurpose(purpose).value if purpose else None)


__all__ = ["OtpEngine", "OtpPurpose", "IssuedOtp"]
