"""Tests for the expired-row purge."""

from datetime import timedelta

from reliefgate.service.attempts import AttemptLedger, AttemptType
from reliefgate.service.maintenance import purge_expired
from reliefgate.service.otp import OtpEngine, OtpPurpose
from reliefgate.service.refresh_tokens import RefreshTokenManager
from reliefgate.service.reset_tokens import PasswordResetTokenManager


def test_purge_removes_only_dead_rows(store, clock, make_user):
    user = make_user()
    ledger = AttemptLedger(store, clock=clock)
    otp = OtpEngine(store, ledger, clock=clock)
    refresh = RefreshTokenManager(store, clock=clock)
    resets = PasswordResetTokenManager(store, clock=clock)

    used = otp.issue(user.id, OtpPurpose.SETUP, ip="10.3.0.1").value
    assert otp.verify(user.id, OtpPurpose.SETUP, used.code, ip="10.3.0.1").ok
    old_refresh = refresh.issue(user.id)
    old_reset = resets.create(user.id)

    clock.advance(days=31)
    live_code = otp.issue(user.id, OtpPurpose.LOGIN, ip="10.3.0.1").value
    live_refresh = refresh.issue(user.id)
    live_reset = resets.create(user.id)
    ledger.record(ip="10.3.0.1", attempt_type=AttemptType.LOGIN, success=True, user_id=user.id)

    counts = purge_expired(store, now=clock(), attempt_retention=timedelta(hours=24))

    assert counts == {"otp_codes": 1, "refresh_tokens": 1, "reset_tokens": 1, "attempts": 2}
    assert store.get_otp_code(live_code.code_id) is not None
    assert store.get_refresh_token(live_refresh.token) is not None
    assert store.get_refresh_token(old_refresh.token) is None
    assert store.get_password_reset_token(live_reset.token) is not None
    assert store.get_password_reset_token(old_reset.token) is None


def test_purge_on_empty_store(store):
    counts = purge_expired(store)

    assert counts == {"otp_codes": 0, "refresh_tokens": 0, "reset_tokens": 0, "attempts": 0}
