from __future__ import annotations

import os
import re
from datetime import timedelta
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from vibeauth.logging import get_logger

logger = get_logger(__name__)

DEFAULT_SESSION_DURATION = timedelta(days=30)
_DURATION_RE = re.compile(r"^(\d+)(d|h|m)$")


class DatabaseBackend(str, Enum):
    """Storage engines selectable through ``DATABASE_URL``."""

    SQLITE = "sqlite"
    POSTGRES = "postgres"


def parse_session_duration(value: str | None) -> timedelta:
    """Parse ``30d`` / ``12h`` / ``45m`` into a timedelta.

    Anything that does not match falls back to 30 days.
    """
    if not value:
        return DEFAULT_SESSION_DURATION
    match = _DURATION_RE.match(value.strip())
    if not match:
        logger.warning("session_duration_invalid", value=value)
        return DEFAULT_SESSION_DURATION
    amount = int(match.group(1))
    unit = match.group(2)
    if unit == "d":
        return timedelta(days=amount)
    if unit == "h":
        return timedelta(hours=amount)
    return timedelta(minutes=amount)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity core."""

    database_url: str = env_field("sqlite:///vibekit.db", "DATABASE_URL")
    session_duration: str = env_field(
        "30d",
        "SESSION_DURATION",
        description="Session lifetime as <n>d, <n>h or <n>m",
    )
    allow_signup: bool = env_field(
        True,
        "ALLOW_SIGNUP",
        description="Create accounts on first successful verification",
    )
    webauthn_rp_id: str = env_field("localhost", "WEBAUTHN_RP_ID")
    webauthn_rp_name: str = env_field("VibeKit App", "WEBAUTHN_RP_NAME")
    webauthn_origin: str | None = env_field(
        None,
        "WEBAUTHN_ORIGIN",
        description="Expected clientDataJSON origin; unchecked when unset",
    )
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")
    mfa_issuer: str = env_field("VibeKit", "MFA_ISSUER")
    code_hash_rounds: int = env_field(
        10,
        "CODE_HASH_ROUNDS",
        description="bcrypt cost factor for one-time codes",
    )
    dev_mode: bool = env_field(
        False,
        "DEV_MODE",
        description="Write codes and links to the diagnostic log instead of delivering them",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors such as runtime resets",
    )
    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("VibeKit", "EMAIL_FROM_NAME")
    # SMS delivery
    sms_webhook_url: str | None = env_field(None, "SMS_WEBHOOK_URL")
    sms_webhook_token: str | None = env_field(None, "SMS_WEBHOOK_TOKEN")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("code_hash_rounds")
    @classmethod
    def _validate_rounds(cls, value: int) -> int:
        # bcrypt only accepts cost factors in [4, 31]
        if value < 4 or value > 31:
            raise ValueError("CODE_HASH_ROUNDS must be between 4 and 31")
        return value

    @field_validator("app_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @property
    def session_ttl(self) -> timedelta:
        return parse_session_duration(self.session_duration)

    @property
    def database_backend(self) -> DatabaseBackend:
        if self.database_url.startswith(("postgres://", "postgresql://")):
            return DatabaseBackend.POSTGRES
        return DatabaseBackend.SQLITE


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
