from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, Optional

from reliefgate.logging import get_logger
from reliefgate.storage.models import utcnow

logger = get_logger(__name__)


def purge_expired(
    store,
    *,
    now: Optional[datetime] = None,
    attempt_retention: timedelta = timedelta(hours=24),
) -> Dict[str, int]:
    """Delete credential rows that can no longer be used.

    Removes used or expired one-time codes, expired refresh tokens, used or
    expired reset tokens, and attempts older than ``attempt_retention``.
    Attempts must be kept at least as long as the widest limit window.
    """
    now = now or utcnow()
    counts = {
        "otp_codes": store.purge_otp_codes(now),
        "refresh_tokens": store.purge_refresh_tokens(now),
        "reset_tokens": store.purge_password_reset_tokens(now),
        "attempts": store.purge_otp_attempts(now - attempt_retention),
    }
    logger.info("credential_purge_completed", **counts)
    return counts


__all__ = ["purge_expired"]
