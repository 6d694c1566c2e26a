from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from reliefgate.logging import get_logger

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 100
SPECIAL_CHARACTERS = "@$!%*?&"

_STRENGTH_LABELS = {
    0: "Very weak",
    1: "Very weak",
    2: "Weak",
    3: "Fair",
    4: "Good",
    5: "Strong",
}


@dataclass
class PasswordCheck:
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    score: int = 0
    feedback: str = "Very weak"


def build_hasher(
    *, time_cost: int = 3, memory_cost: int = 65536, parallelism: int = 4
) -> PasswordHasher:
    """argon2id hasher shared by passwords and backup codes."""
    return PasswordHasher(
        time_cost=time_cost,
        memory_cost=memory_cost,
        parallelism=parallelism,
        type=Type.ID,
    )


def hash_secret(hasher: PasswordHasher, secret: str) -> str:
    return hasher.hash(secret)


def verify_secret(hasher: PasswordHasher, digest: str | None, secret: str) -> bool:
    if not digest:
        return False
    try:
        return hasher.verify(digest, secret)
    except (InvalidHash, VerificationError):
        return False


def validate_password(password: str) -> PasswordCheck:
    """Apply the account password policy and score its strength.

    Each satisfied requirement adds a point, a length of 12 or more adds one
    more, and the score is capped at 5.
    """
    errors: List[str] = []
    score = 0

    if len(password) < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    else:
        score += 1
    if len(password) > MAX_PASSWORD_LENGTH:
        errors.append(f"Password must not exceed {MAX_PASSWORD_LENGTH} characters")

    checks = [
        (r"[A-Z]", "Password must contain at least one uppercase letter"),
        (r"[a-z]", "Password must contain at least one lowercase letter"),
        (r"[0-9]", "Password must contain at least one number"),
        (
            f"[{re.escape(SPECIAL_CHARACTERS)}]",
            f"Password must contain at least one special character ({SPECIAL_CHARACTERS})",
        ),
    ]
    for pattern, message in checks:
        if re.search(pattern, password):
            score += 1
        else:
            errors.append(message)

    if len(password) >= 12:
        score += 1
    score = min(score, 5)

    return PasswordCheck(
        is_valid=not errors,
        errors=errors,
        score=score,
        feedback=_STRENGTH_LABELS[score],
    )


__all__ = [
    "PasswordCheck",
    "build_hasher",
    "hash_secret",
    "verify_secret",
    "validate_password",
    "MIN_PASSWORD_LENGTH",
    "MAX_PASSWORD_LENGTH",
]
