"""Tests for the password policy and argon2id hashing helpers."""

import pytest

from reliefgate.service.passwords import (
    MAX_PASSWORD_LENGTH,
    hash_secret,
    validate_password,
    verify_secret,
)


class TestPasswordPolicy:
    """Policy checks and strength scoring."""

    def test_strong_password_passes(self):
        check = validate_password("Relief@2024x")

        assert check.is_valid
        assert check.errors == []
        assert check.score == 5
        assert check.feedback == "Strong"

    @pytest.mark.parametrize(
        "password, fragment",
        [
            ("Rel@1x", "at least 8 characters"),
            ("relief@2024x", "uppercase"),
            ("RELIEF@2024X", "lowercase"),
            ("Relief@abcdx", "number"),
            ("Relief2024xx", "special character"),
        ],
    )
    def test_each_missing_requirement_is_reported(self, password, fragment):
        check = validate_password(password)

        assert not check.is_valid
        assert any(fragment in error for error in check.errors)

    def test_overlong_password_rejected(self):
        check = validate_password("Aa1@" + "x" * MAX_PASSWORD_LENGTH)

        assert not check.is_valid
        assert any("must not exceed" in error for error in check.errors)

    def test_weak_password_scores_low(self):
        check = validate_password("short")

        assert not check.is_valid
        assert check.score == 1
        assert check.feedback == "Very weak"

    def test_score_is_capped_at_five(self):
        check = validate_password("Relief@1")

        assert check.is_valid
        assert check.score == 5
        assert validate_password("Relief@12345").score == 5

    def test_length_bonus_lifts_partial_password(self):
        # length, lowercase and the 12+ bonus
        assert validate_password("reliefreliefx").score == 3


class TestSecretHashing:
    """argon2id hashing used for passwords and backup codes."""

    def test_hash_is_not_plaintext(self, hasher):
        digest = hash_secret(hasher, "Relief@2024x")

        assert digest != "Relief@2024x"
        assert digest.startswith("$argon2id$")

    def test_same_secret_produces_different_hashes(self, hasher):
        assert hash_secret(hasher, "Relief@2024x") != hash_secret(hasher, "Relief@2024x")

    def test_verify_accepts_correct_secret(self, hasher):
        digest = hash_secret(hasher, "Relief@2024x")

        assert verify_secret(hasher, digest, "Relief@2024x")
        assert not verify_secret(hasher, digest, "Relief@2024y")

    def test_verify_rejects_missing_or_malformed_hash(self, hasher):
        assert not verify_secret(hasher, None, "anything")
        assert not verify_secret(hasher, "", "anything")
        assert not verify_secret(hasher, "not-a-hash", "anything")
