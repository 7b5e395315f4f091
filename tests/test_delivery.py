"""Tests for delivery templates and the email/SMS channels."""

import json
import smtplib

import httpx
import pytest

from conftest import FakeDelivery
from vibeauth.service.delivery import (
    TEMPLATE_MAGIC_LINK,
    TEMPLATE_PASSWORD_RESET,
    TEMPLATE_PHONE_CODE,
    TEMPLATE_VERIFICATION_CODE,
    DeliveryMessage,
    EmailService,
    LoggingDelivery,
    WebhookSmsSender,
    deliver,
    redact_address,
    render_template,
)


class TestRenderTemplate:
    def test_verification_code(self):
        subject, body = render_template(
            DeliveryMessage("a@example.com", TEMPLATE_VERIFICATION_CODE, {"code": "123456", "expiresInMinutes": 10})
        )
        assert subject == "Your VibeKit verification code"
        assert "123456" in body
        assert "10 minutes" in body

    def test_magic_link(self):
        _, body = render_template(
            DeliveryMessage("a@example.com", TEMPLATE_MAGIC_LINK, {"url": "https://app.test/auth/verify?token=t"}),
            app_name="Acme",
        )
        assert "https://app.test/auth/verify?token=t" in body

    def test_password_reset_prefers_url(self):
        with_url = DeliveryMessage(
            "a@example.com", TEMPLATE_PASSWORD_RESET, {"token": "tok", "url": "https://app.test/reset?token=tok"}
        )
        without_url = DeliveryMessage("a@example.com", TEMPLATE_PASSWORD_RESET, {"token": "tok"})

        assert "https://app.test/reset?token=tok" in render_template(with_url)[1]
        assert "tok" in render_template(without_url)[1]
        assert "60 minutes" in render_template(without_url)[1]

    def test_phone_code(self):
        _, body = render_template(DeliveryMessage("+15551234567", TEMPLATE_PHONE_CODE, {"code": "654321"}))
        assert body == "Your VibeKit code is 654321. It expires in 10 minutes."

    def test_unknown_template(self):
        with pytest.raises(ValueError):
            render_template(DeliveryMessage("a@example.com", "welcome"))


@pytest.mark.parametrize(
    "address, expected",
    [
        ("alice@example.com", "al***@example.com"),
        ("+15551234567", "***4567"),
        ("123", "redacted"),
    ],
)
def test_redact_address(address, expected):
    assert redact_address(address) == expected


class TestDeliver:
    async def test_success(self):
        channel = FakeDelivery()
        message = DeliveryMessage("a@example.com", TEMPLATE_VERIFICATION_CODE, {"code": "1"})

        assert await deliver(channel, message) is True
        assert channel.last is message

    async def test_failure_is_reported_not_raised(self):
        message = DeliveryMessage("a@example.com", TEMPLATE_VERIFICATION_CODE, {"code": "1"})
        assert await deliver(FakeDelivery(fail=True), message) is False

    async def test_missing_channel(self):
        message = DeliveryMessage("a@example.com", TEMPLATE_VERIFICATION_CODE, {"code": "1"})
        assert await deliver(None, message) is False

    async def test_logging_delivery(self):
        message = DeliveryMessage("a@example.com", TEMPLATE_MAGIC_LINK, {"url": "https://app.test/x"})
        assert await LoggingDelivery("email").send(message) is True


class TestEmailService:
    async def test_unconfigured_drops_message(self):
        service = EmailService()
        assert service.is_configured is False

        message = DeliveryMessage("a@example.com", TEMPLATE_VERIFICATION_CODE, {"code": "123456"})
        assert await service.send(message) is False

    def test_from_email_defaults_to_smtp_user(self):
        service = EmailService(smtp_host="smtp.example.com", smtp_user="mailer@example.com")
        assert service.from_email == "mailer@example.com"
        assert service.is_configured is True

    def test_message_has_text_and_html_parts(self):
        service = EmailService(smtp_host="smtp.example.com", from_email="auth@example.com", from_name="Acme")
        msg = service.build_message("a@example.com", "Sign in", "Go here:\n<https://app.test>")

        assert msg["From"] == "Acme <auth@example.com>"
        assert [part.get_content_type() for part in msg.iter_parts()] == ["text/plain", "text/html"]
        assert "&lt;https://app.test&gt;" in msg.get_body(("html",)).get_content()

    async def test_starttls_login_and_send(self, monkeypatch):
        servers = []

        class FakeSMTP:
            def __init__(self, host, port, timeout=None):
                self.host, self.port = host, port
                self.calls = []
                servers.append(self)

            def starttls(self, context=None):
                self.calls.append("starttls")

            def login(self, user, password):
                self.calls.append(("login", user))

            def send_message(self, msg):
                self.calls.append(("send", msg["To"]))

            def close(self):
                self.calls.append("close")

            def __enter__(self):
                return self

            def __exit__(self, *exc):
                self.calls.append("quit")

        monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
        service = EmailService(
            smtp_host="smtp.example.com", smtp_user="mailer@example.com", smtp_password="pw"
        )
        message = DeliveryMessage("a@example.com", TEMPLATE_VERIFICATION_CODE, {"code": "123456"})

        assert await service.send(message) is True
        assert servers[0].calls == ["starttls", ("login", "mailer@example.com"), ("send", "a@example.com"), "quit"]

    async def test_smtp_failure_reported(self, monkeypatch):
        def refuse(*args, **kwargs):
            raise ConnectionRefusedError("no smtp here")

        monkeypatch.setattr(smtplib, "SMTP", refuse)
        service = EmailService(smtp_host="smtp.example.com", from_email="auth@example.com")
        message = DeliveryMessage("a@example.com", TEMPLATE_VERIFICATION_CODE, {"code": "123456"})

        assert await service.send(message) is False


class TestWebhookSmsSender:
    async def test_posts_rendered_body(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(202, json={"queued": True})

        sender = WebhookSmsSender(
            "https://sms.example.com/send",
            token="gateway-token",
            transport=httpx.MockTransport(handler),
        )
        message = DeliveryMessage("+15551234567", TEMPLATE_PHONE_CODE, {"code": "654321"})

        assert await sender.send(message) is True
        request = requests[0]
        assert request.headers["Authorization"] == "Bearer gateway-token"
        payload = json.loads(request.content)
        assert payload["to"] == "+15551234567"
        assert "654321" in payload["body"]
        assert payload["template"] == TEMPLATE_PHONE_CODE

    async def test_gateway_rejection(self):
        sender = WebhookSmsSender(
            "https://sms.example.com/send",
            transport=httpx.MockTransport(lambda request: httpx.Response(503)),
        )
        message = DeliveryMessage("+15551234567", TEMPLATE_PHONE_CODE, {"code": "654321"})
        assert await sender.send(message) is False

    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        sender = WebhookSmsSender("https://sms.example.com/send", transport=httpx.MockTransport(handler))
        message = DeliveryMessage("+15551234567", TEMPLATE_PHONE_CODE, {"code": "654321"})
        assert await sender.send(message) is False

    async def test_unconfigured(self):
        message = DeliveryMessage("+15551234567", TEMPLATE_PHONE_CODE, {"code": "654321"})
        assert await WebhookSmsSender(None).send(message) is False
