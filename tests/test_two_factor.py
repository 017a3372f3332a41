"""Unit tests for auth/two_factor.py and the backup-code path of check_second_factor().

Covers:
- TOTP accepted for the current step and one step either side, rejected two steps out
- Format rejection before the secret is touched (non-digits, wrong length)
- Corrupt secret fails closed
- Backup codes: shape, normalization, single use
"""

import re
from datetime import datetime, timedelta, timezone

import pyotp
import pytest

from auth.models import Identity
from auth.sessions import check_second_factor
from auth.two_factor import (
    BACKUP_CODE_COUNT,
    generate_backup_codes,
    generate_totp_secret,
    hash_backup_code,
    is_totp_code_format,
    normalize_backup_code,
    verify_totp_code,
)
from conftest import seed_identity

T = datetime(2026, 5, 4, 10, 0, 15, tzinfo=timezone.utc)


@pytest.fixture
def secret():
    return pyotp.random_base32()


def _code_at(secret: str, when: datetime) -> str:
    return pyotp.TOTP(secret).at(when)


class TestTotp:
    def test_generate_secret_and_uri(self):
        secret, uri = generate_totp_secret("someone@example.org")
        assert re.fullmatch(r"[A-Z2-7]{32}", secret)
        assert uri.startswith("otpauth://totp/")
        assert "secret=" + secret in uri
        assert "issuer=" in uri

    @pytest.mark.parametrize("offset", [-30, 0, 30])
    def test_adjacent_steps_accepted(self, secret, offset):
        code = _code_at(secret, T + timedelta(seconds=offset))
        assert verify_totp_code(secret, code, for_time=T)

    @pytest.mark.parametrize("offset", [-60, 60])
    def test_two_steps_away_rejected(self, secret, offset):
        code = _code_at(secret, T + timedelta(seconds=offset))
        assert not verify_totp_code(secret, code, for_time=T)

    @pytest.mark.parametrize("code", ["", "12345", "1234567", "12a456", " 123456", None])
    def test_bad_format_rejected(self, secret, code):
        assert not is_totp_code_format(code)
        assert not verify_totp_code(secret, code, for_time=T)

    def test_corrupt_secret_fails_closed(self):
        assert verify_totp_code("not base32 !!", "123456", for_time=T) is False


class TestBackupCodes:
    def test_generated_shape(self):
        codes = generate_backup_codes()
        assert len(codes) == BACKUP_CODE_COUNT
        assert all(re.fullmatch(r"[A-Z0-9]{8}", c) for c in codes)

    def test_normalization_ignores_case_and_separators(self):
        assert normalize_backup_code(" abcd-1234 ") == "ABCD1234"
        assert hash_backup_code("abcd-1234") == hash_backup_code("ABCD1234")

    def test_backup_code_works_once(self, components):
        store, box = components.store, components.secret_box
        identity_id = seed_identity(store, "twofa@example.org")
        store.enable_two_factor(identity_id, box.encrypt(pyotp.random_base32()), [hash_backup_code("ABCD1234")])
        identity = store.get_by_id(identity_id)

        assert check_second_factor(store, box, identity, "abcd-1234") == "backup_code"
        assert check_second_factor(store, box, identity, "ABCD1234") is None
        assert store.count_backup_codes(identity_id) == 0

    def test_totp_through_check_second_factor(self, components, secret):
        store, box = components.store, components.secret_box
        identity_id = seed_identity(store, "totp@example.org")
        store.enable_two_factor(identity_id, box.encrypt(secret), [])
        identity = store.get_by_id(identity_id)

        assert check_second_factor(store, box, identity, pyotp.TOTP(secret).now()) == "totp"
        assert check_second_factor(store, box, Identity(email="x@example.org", id=identity_id), "123456") is None
