from __future__ import annotations

import asyncio
import smtplib
import ssl
from dataclasses import dataclass, field
from email.message import EmailMessage
from email.utils import formataddr
from html import escape
from typing import Any, Dict, Optional, Protocol, Tuple

import httpx

from vibeauth.logging import get_logger, hash_identifier

logger = get_logger(__name__)

TEMPLATE_VERIFICATION_CODE = "verification-code"
TEMPLATE_MAGIC_LINK = "magic-link"
TEMPLATE_PASSWORD_RESET = "password-reset"
TEMPLATE_PHONE_CODE = "phone-code"


@dataclass
class DeliveryMessage:
    to: str
    template: str
    data: Dict[str, Any] = field(default_factory=dict)


class Delivery(Protocol):
    async def send(self, message: DeliveryMessage) -> bool: ...


def redact_address(address: str) -> str:
    """Redact an email address or phone number for logging."""
    if "@" in address:
        local, domain = address.split("@", 1)
        return f"{local[:2]}***@{domain}"
    if len(address) > 4:
        return f"***{address[-4:]}"
    return "redacted"


def render_template(message: DeliveryMessage, app_name: str = "VibeKit") -> Tuple[str, str]:
    """Return ``(subject, text_body)`` for a delivery template."""
    data = message.data
    if message.template == TEMPLATE_VERIFICATION_CODE:
        minutes = data.get("expiresInMinutes", 10)
        return (
            f"Your {app_name} verification code",
            f"Your verification code is {data['code']}.\n\nIt expires in {minutes} minutes.",
        )
    if message.template == TEMPLATE_MAGIC_LINK:
        return (
            f"Sign in to {app_name}",
            f"Click the link below to sign in:\n\n{data['url']}\n\n"
            "If you did not request this, you can ignore this email.",
        )
    if message.template == TEMPLATE_PASSWORD_RESET:
        minutes = data.get("expiresInMinutes", 60)
        url = data.get("url")
        body = f"Use this token to reset your password: {data['token']}"
        if url:
            body = f"Reset your password here:\n\n{url}"
        return (
            f"Reset your {app_name} password",
            f"{body}\n\nThis expires in {minutes} minutes.",
        )
    if message.template == TEMPLATE_PHONE_CODE:
        minutes = data.get("expiresInMinutes", 10)
        return (
            f"{app_name} code",
            f"Your {app_name} code is {data['code']}. It expires in {minutes} minutes.",
        )
    raise ValueError(f"unknown delivery template: {message.template}")


async def deliver(channel: Optional[Delivery], message: DeliveryMessage) -> bool:
    """Send through ``channel``; failures are logged and reported as False.

    Stored credentials stay valid when delivery fails so the caller can retry.
    """
    if channel is None:
        logger.warning(
            "delivery_channel_missing",
            template=message.template,
            to_hash=hash_identifier(message.to),
        )
        return False
    try:
        sent = await channel.send(message)
    except Exception as exc:
        logger.error(
            "delivery_failed",
            template=message.template,
            to_hash=hash_identifier(message.to),
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return False
    if not sent:
        logger.warning(
            "delivery_not_sent",
            template=message.template,
            to_hash=hash_identifier(message.to),
        )
    return bool(sent)


class LoggingDelivery:
    """Development channel: writes the message payload to the diagnostic log.

    This is the only place a plaintext code or link is ever logged.
    """

    def __init__(self, channel: str = "email") -> None:
        self.channel = channel

    async def send(self, message: DeliveryMessage) -> bool:
        logger.info(
            "dev_delivery",
            channel=self.channel,
            to=redact_address(message.to),
            template=message.template,
            code=message.data.get("code"),
            link=message.data.get("url"),
            reset=message.data.get("token") if message.template == TEMPLATE_PASSWORD_RESET else None,
        )
        return True


class EmailService:
    """SMTP delivery for transactional identity emails.

    ``smtp_use_tls`` selects STARTTLS on a plain connection; otherwise the
    connection is implicit SSL. Unconfigured services drop the message with a
    warning and report False.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "VibeKit",
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    async def send(self, message: DeliveryMessage) -> bool:
        if not self.is_configured:
            logger.warning("email_not_configured", to=redact_address(message.to), template=message.template)
            return False
        subject, text_body = render_template(message, self.from_name)
        return await asyncio.to_thread(self._deliver, self.build_message(message.to, subject, text_body))

    def build_message(self, to_email: str, subject: str, text_body: str) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = formataddr((self.from_name, self.from_email))
        msg["To"] = to_email
        msg.set_content(text_body)
        msg.add_alternative("<p>" + escape(text_body).replace("\n", "<br>") + "</p>", subtype="html")
        return msg

    def _connect(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout)
            server.starttls(context=context)
        else:
            server = smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=self.timeout)
        if self.smtp_user and self.smtp_password:
            try:
                server.login(self.smtp_user, self.smtp_password)
            except smtplib.SMTPException:
                server.close()
                raise
        return server

    def _deliver(self, msg: EmailMessage) -> bool:
        to = redact_address(msg["To"])
        try:
            with self._connect() as server:
                server.send_message(msg)
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("email_auth_failed", to=to, host=self.smtp_host, smtp_code=exc.smtp_code)
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_send_failed",
                to=to,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info("email_sent", to=to, subject=msg["Subject"])
        return True


class WebhookSmsSender:
    """Posts SMS messages to an HTTP gateway as JSON ``{to, body}``."""

    def __init__(
        self,
        webhook_url: Optional[str],
        *,
        token: Optional[str] = None,
        app_name: str = "VibeKit",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.webhook_url = webhook_url
        self.token = token
        self.app_name = app_name
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.webhook_url)

    async def send(self, message: DeliveryMessage) -> bool:
        if not self.is_configured:
            logger.warning("sms_not_configured", to=redact_address(message.to))
            return False
        _, body = render_template(message, self.app_name)
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(15.0, connect=5.0),
                transport=self._transport,
            ) as client:
                response = await client.post(
                    self.webhook_url,
                    json={"to": message.to, "body": body, "template": message.template},
                    headers=headers,
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "sms_webhook_rejected",
                to=redact_address(message.to),
                status_code=e.response.status_code,
            )
            return False
        except httpx.TimeoutException as e:
            logger.error("sms_webhook_timeout", to=redact_address(message.to), error=str(e))
            return False
        except httpx.HTTPError as e:
            logger.error(
                "sms_webhook_failed",
                to=redact_address(message.to),
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        logger.info("sms_sent", to=redact_address(message.to))
        return True
