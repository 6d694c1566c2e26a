from __future__ import annotations

import secrets
from datetime import datetime
from typing import Callable

from reliefgate.logging import get_logger
from reliefgate.service.errors import ErrorKind, Outcome
from reliefgate.storage.models import RefreshToken, utcnow

logger = get_logger(__name__)


class RefreshTokenManager:
    """Opaque refresh tokens; deleting the row is revocation."""

    def __init__(
        self, store, *, ttl_days: int = 30, clock: Callable[[], datetime] = utcnow
    ) -> None:
        self.store = store
        self.ttl_days = ttl_days
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    def issue(self, user_id: str) -> RefreshToken:
        token = RefreshToken.new(
            user_id, secrets.token_urlsafe(64), now=self._now(), ttl_days=self.ttl_days
        )
        self.store.add_refresh_token(token)
        return token

    def rotate(self, old_value: str) -> Outcome[RefreshToken]:
        """Exchange a token for a new one.

        The old row is removed before anything else happens, so it is dead
        even if issuing the replacement fails.
        """
        old = self.store.take_refresh_token(old_value) if old_value else None
        if old is None:
            return Outcome.failure(ErrorKind.NOT_FOUND)
        if old.is_expired(self._now()):
            return Outcome.failure(ErrorKind.EXPIRED)
        replacement = self.issue(old.user_id)
        logger.info("refresh_token_rotated", user_id=old.user_id, old_id=old.id, new_id=replacement.id)
        return Outcome.success(replacement)

    def revoke(self, value: str) -> bool:
        return bool(value) and self.store.delete_refresh_token(value)

    def revoke_all(self, user_id: str) -> int:
        removed = self.store.delete_user_refresh_tokens(user_id)
        if removed:
            logger.info("refresh_tokens_revoked", user_id=user_id, count=removed)
        return removed


__all__ = ["RefreshTokenManager"]
