"""Tests for the backup-code vault."""

import threading

import pytest

from reliefgate.service.backup_codes import (
    BACKUP_CODE_LENGTH,
    BackupCodeVault,
    normalize_backup_code,
)
from reliefgate.service.errors import ErrorKind


@pytest.fixture
def vault(store, hasher, clock):
    return BackupCodeVault(store, hasher, clock=clock)


@pytest.fixture
def user(make_user):
    return make_user(two_factor=True)


class TestGeneration:
    def test_batch_has_eight_unique_codes(self, vault, user):
        codes = vault.generate_batch(user.id)

        assert len(codes) == 8
        assert len(set(codes)) == 8
        assert all(len(code) == BACKUP_CODE_LENGTH and code.isalnum() for code in codes)

    def test_only_hashes_are_stored(self, vault, user, store):
        codes = vault.generate_batch(user.id)

        stored = store.list_unused_backup_codes(user.id)
        assert len(stored) == 8
        assert not {record.code_hash for record in stored} & set(codes)
        assert all(record.code_hash.startswith("$argon2id$") for record in stored)

    def test_regenerate_replaces_previous_batch(self, vault, user, store):
        old_codes = vault.generate_batch(user.id)
        new_codes = vault.regenerate(user.id)

        assert vault.remaining(user.id) == 8
        assert store.get_user(user.id).backup_codes_remaining == 8
        assert vault.consume(user.id, old_codes[0]).error is ErrorKind.INVALID
        assert vault.consume(user.id, new_codes[0]).ok

    def test_custom_batch_size(self, vault, user):
        assert len(vault.generate_batch(user.id, count=3)) == 3


class TestConsumption:
    def test_code_is_single_use(self, vault, user, store):
        codes = vault.generate_batch(user.id)

        first = vault.consume(user.id, codes[2])
        second = vault.consume(user.id, codes[2])

        assert first.ok
        assert second.error is ErrorKind.INVALID
        assert vault.remaining(user.id) == 7
        assert store.get_user(user.id).backup_codes_remaining == 7

    def test_formatting_is_normalized(self, vault, user):
        code = vault.generate_batch(user.id)[0]
        formatted = f" {code[:4].lower()}-{code[4:].lower()} "

        assert vault.consume(user.id, formatted).ok

    def test_unknown_code_rejected(self, vault, user):
        vault.generate_batch(user.id)

        assert vault.consume(user.id, "ZZZZ-ZZZZ").error is ErrorKind.INVALID
        assert vault.consume(user.id, "short").error is ErrorKind.INVALID
        assert vault.remaining(user.id) == 8

    def test_exhausted_when_no_codes_remain(self, vault, user):
        codes = vault.generate_batch(user.id, count=2)
        for code in codes:
            assert vault.consume(user.id, code).ok

        assert vault.consume(user.id, codes[0]).error is ErrorKind.EXHAUSTED
        assert vault.remaining(user.id) == 0

    def test_user_without_codes_is_exhausted(self, vault, user):
        assert vault.consume(user.id, "ABCD1234").error is ErrorKind.EXHAUSTED

    def test_codes_are_not_shared_between_users(self, vault, user, make_user):
        other = make_user("other@example.org", two_factor=True)
        codes = vault.generate_batch(user.id)
        vault.generate_batch(other.id)

        assert vault.consume(other.id, codes[0]).error is ErrorKind.INVALID

    def test_invalidate_all(self, vault, user, store):
        vault.generate_batch(user.id)

        assert vault.invalidate_all(user.id) == 8
        assert vault.remaining(user.id) == 0
        assert store.get_user(user.id).backup_codes_remaining == 0

    def test_concurrent_consumers_of_one_code(self, vault, user):
        code = vault.generate_batch(user.id)[0]
        barrier = threading.Barrier(5)
        results = []
        results_lock = threading.Lock()

        def consume():
            barrier.wait()
            outcome = vault.consume(user.id, code)
            with results_lock:
                results.append(outcome.ok)

        threads = [threading.Thread(target=consume) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(True) == 1
        assert vault.remaining(user.id) == 7


def test_normalize_backup_code():
    assert normalize_backup_code(" ab12-cd34 ") == "AB12CD34"
    assert normalize_backup_code("AB12 CD34") == "AB12CD34"
    assert normalize_backup_code(None) == ""
