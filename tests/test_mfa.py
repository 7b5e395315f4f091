"""Tests for TOTP factors and backup codes."""

import base64
import re
from urllib.parse import parse_qs, urlparse

import pytest

from vibeauth.service.errors import MfaFactorNotFoundError, UserNotFoundError
from vibeauth.service.mfa import (
    BACKUP_CODE_COUNT,
    generate_backup_codes,
    generate_secret,
    hash_backup_code,
    otpauth_uri,
    totp_at,
    verify_totp,
)

RFC_SECRET = b"12345678901234567890".hex()


class TestTotp:
    @pytest.mark.parametrize(
        "timestamp, expected",
        [
            (59, "287082"),
            (1111111109, "081804"),
            (1111111111, "050471"),
            (1234567890, "005924"),
            (2000000000, "279037"),
        ],
    )
    def test_rfc6238_sha1_vectors(self, timestamp, expected):
        assert totp_at(RFC_SECRET, timestamp) == expected

    def test_adjacent_steps_accepted(self):
        secret = generate_secret()
        t = 1_700_000_015
        code = totp_at(secret, t)

        assert verify_totp(secret, code, t)
        assert verify_totp(secret, code, t + 29)
        assert verify_totp(secret, code, t - 29)
        assert not verify_totp(secret, code, t + 61)

    def test_malformed_codes_rejected(self):
        secret = generate_secret()
        assert not verify_totp(secret, "", 0)
        assert not verify_totp(secret, "12345", 0)
        assert not verify_totp(secret, "abcdef", 0)

    def test_secret_is_twenty_bytes(self):
        assert len(bytes.fromhex(generate_secret())) == 20

    def test_otpauth_uri(self):
        uri = otpauth_uri(RFC_SECRET, "alice@example.com", "VibeKit")
        parsed = urlparse(uri)
        params = parse_qs(parsed.query)

        assert parsed.scheme == "otpauth"
        assert parsed.netloc == "totp"
        assert params["secret"] == [base64.b32encode(b"12345678901234567890").decode().rstrip("=")]
        assert params["issuer"] == ["VibeKit"]
        assert params["digits"] == ["6"]
        assert params["period"] == ["30"]


class TestBackupCodes:
    def test_format(self):
        codes = generate_backup_codes()
        assert len(codes) == BACKUP_CODE_COUNT
        assert len(set(codes)) == BACKUP_CODE_COUNT
        for code in codes:
            assert re.fullmatch(r"[0-9A-F]{4}-[0-9A-F]{4}-[0-9A-F]{4}", code)

    def test_hash_is_case_insensitive(self):
        assert hash_backup_code("abcd-ef01-2345") == hash_backup_code(" ABCD-EF01-2345 ")


@pytest.fixture
def user(provider):
    return provider.users.create("alice@example.com")


class TestMfaService:
    async def test_enroll_returns_secret_once(self, provider, user):
        enrollment = await provider.mfa.enroll(user.id)

        assert enrollment.otpauth_uri.startswith("otpauth://totp/VibeKit:")
        assert len(enrollment.backup_codes) == BACKUP_CODE_COUNT
        factors = await provider.mfa.list_factors(user.id)
        assert [f.id for f in factors] == [enrollment.factor_id]
        assert factors[0].verified is False
        assert not hasattr(factors[0], "secret")
        assert await provider.mfa.is_enabled(user.id) is False

    async def test_enroll_unknown_user(self, provider):
        with pytest.raises(UserNotFoundError):
            await provider.mfa.enroll("missing")

    async def test_totp_verification_marks_factor_verified(self, provider, user, clock):
        enrollment = await provider.mfa.enroll(user.id)
        code = totp_at(enrollment.secret, clock.now.timestamp())

        result = await provider.mfa.verify(user.id, enrollment.factor_id, code)
        assert result.verified is True
        assert result.method == "totp"
        assert await provider.mfa.is_enabled(user.id) is True

    async def test_wrong_code_reports_failure(self, provider, user):
        enrollment = await provider.mfa.enroll(user.id)

        result = await provider.mfa.verify(user.id, enrollment.factor_id, "not-a-code")
        assert result.verified is False
        events = provider.audit.list_events(action="mfa_verify")
        assert events[0].metadata["success"] is False

    async def test_each_backup_code_works_once(self, provider, user):
        enrollment = await provider.mfa.enroll(user.id)

        for code in enrollment.backup_codes:
            first = await provider.mfa.verify(user.id, enrollment.factor_id, code)
            assert first.verified is True
            assert first.method == "backup_code"
            again = await provider.mfa.verify(user.id, enrollment.factor_id, code)
            assert again.verified is False

        assert await provider.mfa.backup_codes_remaining(user.id, enrollment.factor_id) == 0

    async def test_backup_code_accepts_lowercase(self, provider, user):
        enrollment = await provider.mfa.enroll(user.id)

        result = await provider.mfa.verify(user.id, enrollment.factor_id, enrollment.backup_codes[0].lower())
        assert result.verified is True

    async def test_regenerate_invalidates_old_codes(self, provider, user):
        enrollment = await provider.mfa.enroll(user.id)

        fresh = await provider.mfa.regenerate_backup_codes(user.id, enrollment.factor_id)
        old = await provider.mfa.verify(user.id, enrollment.factor_id, enrollment.backup_codes[0])
        new = await provider.mfa.verify(user.id, enrollment.factor_id, fresh[0])
        assert old.verified is False
        assert new.verified is True
        assert await provider.mfa.backup_codes_remaining(user.id, enrollment.factor_id) == BACKUP_CODE_COUNT - 1

    async def test_factor_scoped_to_owner(self, provider, user):
        enrollment = await provider.mfa.enroll(user.id)
        other = provider.users.create("bob@example.com")

        with pytest.raises(MfaFactorNotFoundError) as excinfo:
            await provider.mfa.verify(other.id, enrollment.factor_id, "123456")
        assert excinfo.value.status_code == 404

    async def test_unenroll_removes_factor_and_codes(self, provider, user, db):
        enrollment = await provider.mfa.enroll(user.id)

        await provider.mfa.unenroll(user.id, enrollment.factor_id)
        assert await provider.mfa.list_factors(user.id) == []
        row = db.query_one("SELECT COUNT(*) AS total FROM vibekit_mfa_backup_codes")
        assert row["total"] == 0
        with pytest.raises(MfaFactorNotFoundError):
            await provider.mfa.unenroll(user.id, enrollment.factor_id)
