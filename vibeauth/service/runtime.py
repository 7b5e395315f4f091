from __future__ import annotations

import threading
from typing import Optional, Tuple
from urllib.parse import urlparse

from vibeauth.config import DatabaseBackend, Settings, get_settings, reset_settings_cache
from vibeauth.logging import get_logger
from vibeauth.service.delivery import Delivery, EmailService, LoggingDelivery, WebhookSmsSender
from vibeauth.service.provider import IdentityProvider
from vibeauth.storage.adapter import DatabaseAdapter
from vibeauth.storage.postgres import PostgresAdapter
from vibeauth.storage.schema import SchemaMigrator
from vibeauth.storage.sqlite import SqliteAdapter

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Hide the password component of a DSN before it reaches the log."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    return url.replace(f":{parsed.password}@", ":***@", 1)


def build_adapter(settings: Settings) -> DatabaseAdapter:
    if settings.database_backend is DatabaseBackend.POSTGRES:
        return PostgresAdapter(settings.database_url)
    return SqliteAdapter.from_url(settings.database_url)


def build_deliveries(settings: Settings) -> Tuple[Delivery, Delivery]:
    """Email and SMS channels; in dev mode both only write to the log."""
    if settings.dev_mode:
        return LoggingDelivery("email"), LoggingDelivery("sms")
    email = EmailService(
        smtp_host=settings.smtp_host,
        smtp_port=settings.smtp_port,
        smtp_user=settings.smtp_user,
        smtp_password=settings.smtp_password,
        smtp_use_tls=settings.smtp_use_tls,
        from_email=settings.email_from_address,
        from_name=settings.email_from_name,
    )
    sms = WebhookSmsSender(
        settings.sms_webhook_url,
        token=settings.sms_webhook_token,
        app_name=settings.email_from_name,
    )
    return email, sms


class Runtime:
    """Holds the adapter and the identity provider for the process."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            database_backend=self.settings.database_backend.value,
            database_url=_mask_url_password(self.settings.database_url),
            dev_mode=self.settings.dev_mode,
            test_mode=self.settings.test_mode,
        )
        try:
            self.db = build_adapter(self.settings)
            self.migrator = SchemaMigrator(self.db)
            self.migrator.migrate()
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                database_backend=self.settings.database_backend.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.email, self.sms = build_deliveries(self.settings)
        self.auth = IdentityProvider.from_settings(
            self.db,
            self.settings,
            email_delivery=self.email,
            sms_delivery=self.sms,
        )
        logger.info(
            "runtime_init_completed",
            email_configured=getattr(self.email, "is_configured", True),
            sms_configured=getattr(self.sms, "is_configured", True),
        )

    def close(self) -> None:
        self.db.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the singleton from a fresh environment read. TEST_MODE only."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            runtime.close()
        runtime = Runtime(settings)
        return runtime
