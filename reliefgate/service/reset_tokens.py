from __future__ import annotations

import secrets
from datetime import datetime
from typing import Callable

from reliefgate.logging import get_logger
from reliefgate.service.errors import ErrorKind, Outcome
from reliefgate.storage.models import PasswordResetToken, utcnow

logger = get_logger(__name__)


class PasswordResetTokenManager:
    """Opaque, single-use password reset tokens.

    Creating a token leaves earlier tokens valid until they expire or are
    used. Consumption flips the used flag and writes the new hash in one
    store transaction.
    """

    def __init__(
        self, store, *, ttl_minutes: int = 60, clock: Callable[[], datetime] = utcnow
    ) -> None:
        self.store = store
        self.ttl_minutes = ttl_minutes
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    def create(self, user_id: str) -> PasswordResetToken:
        token = PasswordResetToken.new(
            user_id, secrets.token_urlsafe(32), now=self._now(), ttl_minutes=self.ttl_minutes
        )
        self.store.add_password_reset_token(token)
        logger.info("password_reset_token_created", user_id=user_id, token_id=token.id)
        return token

    def validate(self, value: str) -> Outcome[PasswordResetToken]:
        token = self.store.get_password_reset_token(value) if value else None
        if token is None:
            return Outcome.failure(ErrorKind.NOT_FOUND)
        if token.is_used:
            return Outcome.failure(ErrorKind.ALREADY_USED)
        if token.is_expired(self._now()):
            return Outcome.failure(ErrorKind.EXPIRED)
        return Outcome.success(token)

    def consume(self, value: str, new_password_hash: str) -> Outcome[str]:
        """Mark the token used and store the hash; returns the user id."""
        user_id = self.store.consume_password_reset_token(value, new_password_hash, self._now())
        if user_id is not None:
            return Outcome.success(user_id)
        # Lost the race or the token was never good; report why
        current = self.validate(value)
        if current.ok:
            return Outcome.failure(ErrorKind.CONFLICT)
        return Outcome.failure(current.error)


__all__ = ["PasswordResetTokenManager"]
