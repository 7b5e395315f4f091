from datetime import timedelta

import pytest
from pydantic import ValidationError

from vibeauth.config import (
    DEFAULT_SESSION_DURATION,
    DatabaseBackend,
    Settings,
    get_settings,
    parse_session_duration,
    reset_settings_cache,
)


class TestSessionDuration:
    @pytest.mark.parametrize(
        "value, expected",
        [
            ("7d", timedelta(days=7)),
            ("12h", timedelta(hours=12)),
            ("45m", timedelta(minutes=45)),
            (" 1d ", timedelta(days=1)),
        ],
    )
    def test_valid(self, value, expected):
        assert parse_session_duration(value) == expected

    @pytest.mark.parametrize("value", [None, "", "30", "2w", "d7", "1.5h", "-1d"])
    def test_invalid_falls_back_to_thirty_days(self, value):
        assert parse_session_duration(value) == DEFAULT_SESSION_DURATION == timedelta(days=30)


class TestSettings:
    def test_defaults(self):
        settings = Settings()
        assert settings.database_backend is DatabaseBackend.SQLITE
        assert settings.session_ttl == timedelta(days=30)
        assert settings.allow_signup is True
        assert settings.webauthn_rp_id == "localhost"
        assert settings.webauthn_origin is None

    @pytest.mark.parametrize("url", ["postgres://u:p@db/app", "postgresql://db/app"])
    def test_postgres_backend(self, url):
        assert Settings(database_url=url).database_backend is DatabaseBackend.POSTGRES

    def test_base_url_trailing_slash_stripped(self):
        assert Settings(app_base_url="https://app.example.com/").app_base_url == "https://app.example.com"

    @pytest.mark.parametrize("rounds", [3, 32])
    def test_rounds_bounds(self, rounds):
        with pytest.raises(ValidationError):
            Settings(code_hash_rounds=rounds)

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("SESSION_DURATION", "12h")
        monkeypatch.setenv("ALLOW_SIGNUP", "false")
        monkeypatch.setenv("WEBAUTHN_ORIGIN", "https://app.example.com")
        monkeypatch.setenv("CODE_HASH_ROUNDS", "6")

        settings = Settings.from_env()
        assert settings.session_ttl == timedelta(hours=12)
        assert settings.allow_signup is False
        assert settings.webauthn_origin == "https://app.example.com"
        assert settings.code_hash_rounds == 6

    def test_get_settings_is_cached_until_reset(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first

        monkeypatch.setenv("MFA_ISSUER", "Acme")
        reset_settings_cache()
        assert get_settings().mfa_issuer == "Acme"
        reset_settings_cache()
