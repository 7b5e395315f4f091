from __future__ import annotations

import re
from typing import Optional

from vibeauth.logging import get_logger, hash_identifier
from vibeauth.service.audit import AuditLog
from vibeauth.service.codes import CODE_TTL, CodeSent, CodeStore
from vibeauth.service.delivery import TEMPLATE_PHONE_CODE, Delivery, DeliveryMessage, deliver
from vibeauth.service.errors import ValidationError
from vibeauth.service.users import SignInFlow
from vibeauth.storage.models import AuthResult

logger = get_logger(__name__)

_PHONE_STRIP = re.compile(r"[\s\-.()]")
_PHONE_RE = re.compile(r"^\+?\d{6,15}$")


def normalize_phone(phone: Optional[str]) -> str:
    normalized = _PHONE_STRIP.sub("", phone or "")
    if not _PHONE_RE.match(normalized):
        raise ValidationError("A valid phone number is required", detail={"field": "phone"})
    return normalized


class PhoneAuthService:
    """SMS one-time codes; shares issuance rules with email codes."""

    def __init__(
        self,
        codes: CodeStore,
        flow: SignInFlow,
        audit: AuditLog,
        *,
        delivery: Optional[Delivery] = None,
    ) -> None:
        self.codes = codes
        self.flow = flow
        self.audit = audit
        self.delivery = delivery

    async def send_code(
        self,
        phone: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> CodeSent:
        normalized = normalize_phone(phone)
        issued = self.codes.issue(normalized)
        self.audit.record(
            "code_sent",
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"channel": "sms", "phone_hash": hash_identifier(normalized)},
        )
        delivered = await deliver(
            self.delivery,
            DeliveryMessage(
                to=normalized,
                template=TEMPLATE_PHONE_CODE,
                data={"code": issued.code, "expiresInMinutes": int(CODE_TTL.total_seconds() // 60)},
            ),
        )
        return CodeSent(to=normalized, expires_at=issued.expires_at, delivered=delivered)

    async def verify_code(
        self,
        phone: str,
        code: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        normalized = normalize_phone(phone)
        self.codes.verify(normalized, code)
        user, is_new = self.flow.resolve_by_phone(normalized)
        return self.flow.complete(
            user,
            method="phone",
            is_new_user=is_new,
            ip_address=ip_address,
            user_agent=user_agent,
        )
