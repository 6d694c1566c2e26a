"""Tests for the append-only attempt ledger and the limits derived from it."""

import pytest

from reliefgate.service.attempts import AttemptLedger, AttemptPolicy, AttemptType
from reliefgate.service.errors import ErrorKind


class RecordingAudit:
    def __init__(self):
        self.events = []

    def record(self, event_type, severity, user_id, description, ip=None, user_agent=None):
        self.events.append((event_type, severity, user_id))


@pytest.fixture
def audit():
    return RecordingAudit()


@pytest.fixture
def ledger(store, clock, audit):
    return AttemptLedger(store, AttemptPolicy(), audit=audit, clock=clock)


class TestRecording:
    """Appending and counting attempts."""

    def test_record_and_count(self, ledger, clock):
        start = clock()
        ledger.record(ip="10.0.0.1", attempt_type=AttemptType.LOGIN, success=False, user_id="u1")
        ledger.record(ip="10.0.0.1", attempt_type=AttemptType.LOGIN, success=True, user_id="u1")
        ledger.record(ip="10.0.0.2", attempt_type=AttemptType.SEND_OTP, success=True, user_id="u2")

        assert ledger.count_since(start, user_id="u1") == 2
        assert ledger.count_since(start, user_id="u1", success=False) == 1
        assert ledger.count_since(start, ip="10.0.0.2") == 1
        assert ledger.count_since(start, attempt_type=AttemptType.SEND_OTP) == 1

    def test_email_is_stored_lowercase(self, ledger, clock):
        ledger.record(
            ip="10.0.0.1",
            attempt_type=AttemptType.SEND_OTP,
            success=True,
            email="Responder@Example.ORG",
        )

        assert ledger.count_since(clock(), email="responder@example.org") == 1

    def test_unknown_attempt_type_rejected(self, ledger):
        with pytest.raises(ValueError):
            ledger.record(ip="10.0.0.1", attempt_type="teleport", success=True)

    def test_each_attempt_is_audited(self, ledger, audit):
        ledger.record(ip="10.0.0.1", attempt_type=AttemptType.LOGIN, success=False, user_id="u1")

        assert audit.events == [("attempt_login", "warning", "u1")]

    def test_purge_removes_only_old_rows(self, ledger, clock, store):
        ledger.record(ip="10.0.0.1", attempt_type=AttemptType.LOGIN, success=True)
        clock.advance(hours=25)
        ledger.record(ip="10.0.0.1", attempt_type=AttemptType.LOGIN, success=True)

        removed = ledger.purge_older_than(clock() - ledger.policy.window * 24)

        assert removed == 1
        assert len(store.otp_attempts) == 1


class TestSendLimit:
    """At most three successful sends per user in a sliding hour."""

    def test_fourth_send_in_window_is_refused(self, ledger, clock):
        for _ in range(3):
            assert ledger.check_send(ip="10.0.0.1", user_id="u1").ok
            ledger.record(ip="10.0.0.1", attempt_type=AttemptType.SEND_OTP, success=True, user_id="u1")
            clock.advance(minutes=10)

        decision = ledger.check_send(ip="10.0.0.1", user_id="u1")

        assert not decision.ok
        assert decision.error is ErrorKind.RATE_LIMITED
        assert decision.detail == "send_limit"
        # oldest send was 30 minutes ago
        assert decision.retry_after == 30 * 60

    def test_send_allowed_again_once_oldest_leaves_window(self, ledger, clock):
        for _ in range(3):
            ledger.record(ip="10.0.0.1", attempt_type=AttemptType.SEND_OTP, success=True, user_id="u1")
        clock.advance(minutes=60, seconds=1)

        assert ledger.check_send(ip="10.0.0.1", user_id="u1").ok

    def test_refused_sends_do_not_extend_the_window(self, ledger, clock):
        for _ in range(3):
            ledger.record(ip="10.0.0.1", attempt_type=AttemptType.SEND_OTP, success=True, user_id="u1")
        clock.advance(minutes=30)
        ledger.record(ip="10.0.0.1", attempt_type=AttemptType.SEND_OTP, success=False, user_id="u1")
        clock.advance(minutes=30, seconds=1)

        assert ledger.check_send(ip="10.0.0.1", user_id="u1").ok

    def test_limit_applies_per_email_address(self, ledger):
        for _ in range(3):
            ledger.record(
                ip="10.0.0.1",
                attempt_type=AttemptType.SEND_OTP,
                success=True,
                email="responder@example.org",
            )

        assert not ledger.check_send(ip="10.0.0.9", email="responder@example.org").ok
        assert ledger.check_send(ip="10.0.0.9", email="other@example.org").ok

    def test_send_cooldown_without_sends_is_zero(self, ledger):
        assert ledger.send_cooldown(user_id="nobody") == 0


class TestLockout:
    """Five failures of any kind within an hour lock the account."""

    def test_account_locks_after_threshold(self, ledger):
        for attempt_type in [AttemptType.LOGIN] * 3 + [AttemptType.VERIFY_OTP] * 2:
            ledger.record(ip="10.0.0.1", attempt_type=attempt_type, success=False, user_id="u1")

        assert ledger.is_account_locked("u1")
        assert ledger.lockout_remaining("u1") == 60 * 60
        decision = ledger.check_login(ip="10.0.0.1", user_id="u1")
        assert decision.error is ErrorKind.RATE_LIMITED
        assert decision.detail == "account_locked"

    def test_four_failures_do_not_lock(self, ledger):
        for _ in range(4):
            ledger.record(ip="10.0.0.1", attempt_type=AttemptType.LOGIN, success=False, user_id="u1")

        assert not ledger.is_account_locked("u1")
        assert ledger.lockout_remaining("u1") == 0
        assert ledger.check_login(ip="10.0.0.1", user_id="u1").ok

    def test_successes_do_not_count_towards_lockout(self, ledger):
        for _ in range(10):
            ledger.record(ip="10.0.0.1", attempt_type=AttemptType.LOGIN, success=True, user_id="u1")

        assert not ledger.is_account_locked("u1")

    def test_lock_expires_after_window(self, ledger, clock):
        for _ in range(5):
            ledger.record(ip="10.0.0.1", attempt_type=AttemptType.LOGIN, success=False, user_id="u1")
        clock.advance(minutes=30)
        assert ledger.lockout_remaining("u1") == 30 * 60

        clock.advance(minutes=30, seconds=1)

        assert not ledger.is_account_locked("u1")

    def test_locked_account_cannot_receive_codes(self, ledger):
        for _ in range(5):
            ledger.record(ip="10.0.0.1", attempt_type=AttemptType.LOGIN, success=False, user_id="u1")

        decision = ledger.check_send(ip="10.0.0.1", user_id="u1")

        assert decision.detail == "account_locked"


class TestIpLimits:
    """Per-IP caps apply across accounts."""

    def test_ip_limit_per_attempt_type(self, ledger):
        for index in range(20):
            ledger.record(
                ip="10.0.0.1", attempt_type=AttemptType.LOGIN, success=True, user_id=f"u{index}"
            )

        decision = ledger.check_login(ip="10.0.0.1", user_id="fresh")

        assert decision.error is ErrorKind.RATE_LIMITED
        assert decision.detail == "ip_limit"
        assert decision.retry_after == 60 * 60
        assert ledger.check_login(ip="10.0.0.2", user_id="fresh").ok

    def test_ip_blocked_across_attempt_types(self, ledger):
        for index in range(19):
            ledger.record(ip="10.0.0.1", attempt_type=AttemptType.LOGIN, success=True, user_id=f"u{index}")
        for index in range(19):
            ledger.record(
                ip="10.0.0.1", attempt_type=AttemptType.VERIFY_OTP, success=True, user_id=f"v{index}"
            )
        assert not ledger.is_ip_blocked("10.0.0.1")

        for index in range(2):
            ledger.record(ip="10.0.0.1", attempt_type=AttemptType.SEND_OTP, success=True, user_id=f"s{index}")

        assert ledger.is_ip_blocked("10.0.0.1")
        assert ledger.check_send(ip="10.0.0.1", user_id="fresh").detail == "ip_blocked"


class TestVerifyLimit:
    def test_verify_attempts_capped_per_user(self, ledger):
        for _ in range(10):
            ledger.record(ip="10.0.0.1", attempt_type=AttemptType.VERIFY_OTP, success=True, user_id="u1")

        decision = ledger.check_verify(ip="10.0.0.1", user_id="u1")

        assert decision.error is ErrorKind.RATE_LIMITED
        assert decision.detail == "verify_limit"
        assert decision.retry_after == 60 * 60
