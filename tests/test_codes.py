"""Tests for email and SMS one-time codes.

Covers issuance limits, attempt limits, expiry, single use and the
sign-in outcome of a successful verification.
"""

import pytest

from vibeauth.service.codes import (
    CODE_TTL,
    MAX_ATTEMPTS,
    MAX_CODES_PER_WINDOW,
    email_code_store,
    generate_code,
)
from vibeauth.service.errors import (
    CodeExpiredError,
    CodeInvalidError,
    CodeMaxAttemptsError,
    CodeRateLimitedError,
    SignupDisabledError,
    UserBannedError,
    ValidationError,
)
from vibeauth.service.provider import IdentityProvider

from conftest import FakeDelivery


class TestGenerateCode:
    def test_codes_are_six_digits_in_range(self):
        for _ in range(500):
            code = generate_code()
            assert len(code) == 6
            assert code.isdigit()
            assert 100000 <= int(code) <= 999999


class TestSendCode:
    async def test_send_delivers_verification_template(self, provider, email_delivery):
        sent = await provider.send_code("  Alice@Example.COM ")

        assert sent.to == "alice@example.com"
        assert sent.delivered is True
        message = email_delivery.last
        assert message.to == "alice@example.com"
        assert message.template == "verification-code"
        assert message.data["expiresInMinutes"] == 10
        assert len(message.data["code"]) == 6

    async def test_code_is_stored_hashed(self, provider, db, email_delivery):
        await provider.send_code("alice@example.com")
        code = email_delivery.last.data["code"]

        row = db.query_one("SELECT code_hash FROM vibekit_auth_codes WHERE email = ?", ("alice@example.com",))
        assert row["code_hash"] != code
        assert row["code_hash"].startswith("$2")

    async def test_send_records_audit_event_without_address(self, provider):
        await provider.send_code("alice@example.com", ip_address="10.0.0.1")

        events = provider.audit.list_events(action="code_sent")
        assert len(events) == 1
        assert events[0].ip_address == "10.0.0.1"
        assert events[0].metadata["channel"] == "email"
        assert "alice@example.com" not in str(events[0].metadata)

    async def test_fourth_send_in_window_is_rate_limited(self, provider, clock):
        for _ in range(MAX_CODES_PER_WINDOW):
            await provider.send_code("alice@example.com")
            clock.advance(minutes=1)

        with pytest.raises(CodeRateLimitedError) as excinfo:
            await provider.send_code("alice@example.com")
        assert excinfo.value.status_code == 429
        assert excinfo.value.error_code == "AUTH_RATE_LIMITED"

    async def test_window_slides(self, provider, clock):
        for _ in range(MAX_CODES_PER_WINDOW):
            await provider.send_code("alice@example.com")
        clock.advance(minutes=15, seconds=1)

        sent = await provider.send_code("alice@example.com")
        assert sent.delivered

    async def test_rate_limit_is_per_identifier(self, provider):
        for _ in range(MAX_CODES_PER_WINDOW):
            await provider.send_code("alice@example.com")

        await provider.send_code("bob@example.com")

    async def test_invalid_email_rejected(self, provider):
        with pytest.raises(ValidationError):
            await provider.send_code("not-an-email")

    async def test_delivery_failure_keeps_code_valid(self, db, clock):
        broken = FakeDelivery(fail=True)
        provider = IdentityProvider(db, code_rounds=4, email_delivery=broken, clock=clock)

        sent = await provider.send_code("bob@example.com")

        assert sent.delivered is False
        row = db.query_one(
            "SELECT used FROM vibekit_auth_codes WHERE email = ?", ("bob@example.com",)
        )
        assert row is not None
        assert row["used"] == 0


class TestVerifyCode:
    async def test_first_verification_creates_verified_user(self, provider, email_delivery):
        await provider.send_code("alice@example.com")
        result = await provider.verify_code("alice@example.com", email_delivery.last.data["code"])

        assert result.is_new_user is True
        assert result.user.email == "alice@example.com"
        assert result.user.email_verified is True
        assert result.user.login_count == 1
        assert provider.sessions.validate(result.token).user_id == result.user.id

    async def test_second_sign_in_reuses_user(self, provider, email_delivery, clock):
        await provider.send_code("alice@example.com")
        first = await provider.verify_code("alice@example.com", email_delivery.last.data["code"])
        clock.advance(minutes=1)
        await provider.send_code("alice@example.com")
        second = await provider.verify_code("alice@example.com", email_delivery.last.data["code"])

        assert second.is_new_user is False
        assert second.user.id == first.user.id
        assert second.user.login_count == 2
        actions = [e.action for e in provider.audit.list_events(user_id=first.user.id)]
        assert actions.count("signup") == 1
        assert actions.count("login") == 1

    async def test_code_is_single_use(self, provider, email_delivery):
        await provider.send_code("alice@example.com")
        code = email_delivery.last.data["code"]
        await provider.verify_code("alice@example.com", code)

        with pytest.raises(CodeInvalidError):
            await provider.verify_code("alice@example.com", code)

    async def test_unknown_identifier_is_invalid(self, provider):
        with pytest.raises(CodeInvalidError) as excinfo:
            await provider.verify_code("nobody@example.com", "123456")
        assert excinfo.value.error_code == "AUTH_CODE_INVALID"
        assert excinfo.value.status_code == 400

    async def test_expired_code(self, provider, email_delivery, clock):
        await provider.send_code("alice@example.com")
        clock.advance(seconds=CODE_TTL.total_seconds())

        with pytest.raises(CodeExpiredError) as excinfo:
            await provider.verify_code("alice@example.com", email_delivery.last.data["code"])
        assert excinfo.value.error_code == "AUTH_CODE_EXPIRED"

    async def test_attempts_exhausted_blocks_correct_code(self, provider, email_delivery):
        await provider.send_code("alice@example.com")
        code = email_delivery.last.data["code"]
        wrong = "000000" if code != "000000" else "111111"

        for _ in range(MAX_ATTEMPTS):
            with pytest.raises(CodeInvalidError):
                await provider.verify_code("alice@example.com", wrong)

        with pytest.raises(CodeMaxAttemptsError) as excinfo:
            await provider.verify_code("alice@example.com", code)
        assert excinfo.value.error_code == "AUTH_CODE_MAX_ATTEMPTS"

    async def test_only_newest_code_counts(self, provider, email_delivery, clock):
        await provider.send_code("alice@example.com")
        older = email_delivery.last.data["code"]
        clock.advance(seconds=30)
        await provider.send_code("alice@example.com")
        newer = email_delivery.last.data["code"]

        if older != newer:
            with pytest.raises(CodeInvalidError):
                await provider.verify_code("alice@example.com", older)
        result = await provider.verify_code("alice@example.com", newer)
        assert result.token

    async def test_signup_disabled_blocks_new_users_only(self, db, clock, email_delivery):
        provider = IdentityProvider(
            db, code_rounds=4, allow_signup=False, email_delivery=email_delivery, clock=clock
        )
        provider.users.create("known@example.com")

        await provider.send_code("new@example.com")
        with pytest.raises(SignupDisabledError) as excinfo:
            await provider.verify_code("new@example.com", email_delivery.last.data["code"])
        assert excinfo.value.status_code == 403
        assert provider.users.get_by_email("new@example.com") is None

        await provider.send_code("known@example.com")
        result = await provider.verify_code("known@example.com", email_delivery.last.data["code"])
        assert result.is_new_user is False

    async def test_banned_user_gets_no_session(self, provider, email_delivery, db):
        user = provider.users.create("alice@example.com")
        await provider.ban_user(user.id, "spam")

        await provider.send_code("alice@example.com")
        with pytest.raises(UserBannedError) as excinfo:
            await provider.verify_code("alice@example.com", email_delivery.last.data["code"])
        assert excinfo.value.error_code == "AUTH_USER_BANNED"
        row = db.query_one("SELECT COUNT(*) AS total FROM vibekit_sessions")
        assert row["total"] == 0


class TestCleanup:
    def test_clean_expired_removes_only_expired(self, db, clock):
        store = email_code_store(db, rounds=4, clock=clock)
        store.issue("alice@example.com")
        clock.advance(minutes=11)
        store.issue("bob@example.com")

        assert store.clean_expired() == 1
        remaining = db.query("SELECT email FROM vibekit_auth_codes").rows
        assert [row["email"] for row in remaining] == ["bob@example.com"]
