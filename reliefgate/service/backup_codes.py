from __future__ import annotations

import secrets
import string
from datetime import datetime
from typing import Callable, List, Optional

from argon2 import PasswordHasher

from reliefgate.logging import get_logger
from reliefgate.service.errors import ErrorKind, Outcome
from reliefgate.service.passwords import build_hasher, hash_secret, verify_secret
from reliefgate.storage.models import BackupCode, utcnow

logger = get_logger(__name__)

BACKUP_CODE_ALPHABET = string.ascii_uppercase + string.digits
BACKUP_CODE_LENGTH = 8


def normalize_backup_code(raw: str) -> str:
    return (raw or "").strip().upper().replace("-", "").replace(" ", "")


class BackupCodeVault:
    """Single-use recovery codes, stored only as argon2id hashes."""

    def __init__(
        self,
        store,
        hasher: Optional[PasswordHasher] = None,
        *,
        count: int = 8,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.hasher = hasher or build_hasher()
        self.count = count
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    def _generate_code(self) -> str:
        return "".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(BACKUP_CODE_LENGTH))

    def generate_batch(self, user_id: str, count: Optional[int] = None) -> List[str]:
        """Store a fresh batch and return the plaintext codes, once.

        The batch replaces whatever codes the user held before, in a single
        store operation.
        """
        total = count or self.count
        now = self._now()
        plaintext: List[str] = []
        records: List[BackupCode] = []
        while len(plaintext) < total:
            code = self._generate_code()
            if code in plaintext:
                continue
            plaintext.append(code)
            records.append(BackupCode.new(user_id, hash_secret(self.hasher, code), now=now))
        self.store.replace_backup_codes(user_id, records)
        return plaintext

    def regenerate(self, user_id: str, count: Optional[int] = None) -> List[str]:
        codes = self.generate_batch(user_id, count)
        logger.info("backup_codes_regenerated", user_id=user_id, count=len(codes))
        return codes

    def consume(self, user_id: str, submitted: str) -> Outcome[BackupCode]:
        candidate = normalize_backup_code(submitted)
        unused = self.store.list_unused_backup_codes(user_id)
        if not unused:
            return Outcome.failure(ErrorKind.EXHAUSTED)
        if len(candidate) != BACKUP_CODE_LENGTH or not candidate.isalnum():
            return Outcome.failure(ErrorKind.INVALID)

        # Check every hash so timing does not reveal which code matched
        matched: Optional[BackupCode] = None
        for record in unused:
            if verify_secret(self.hasher, record.code_hash, candidate) and matched is None:
                matched = record
        if matched is None:
            return Outcome.failure(ErrorKind.INVALID)

        now = self._now()
        if not self.store.mark_backup_code_used(matched.id, now):
            logger.warning("backup_code_consume_conflict", user_id=user_id, code_id=matched.id)
            return Outcome.failure(ErrorKind.CONFLICT)
        matched.used_at = now
        logger.info("backup_code_consumed", user_id=user_id, code_id=matched.id)
        return Outcome.success(matched)

    def remaining(self, user_id: str) -> int:
        return self.store.count_unused_backup_codes(user_id)

    def invalidate_all(self, user_id: str) -> int:
        return self.store.delete_backup_codes(user_id)


__all__ = ["BackupCodeVault", "normalize_backup_code", "BACKUP_CODE_LENGTH"]
