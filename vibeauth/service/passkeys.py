from __future__ import annotations

import hmac
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import cbor2
from pydantic import ValidationError as PydanticValidationError

from vibeauth.logging import get_logger
from vibeauth.service import webauthn
from vibeauth.service.audit import AuditLog
from vibeauth.service.errors import PasskeyError, UserNotFoundError
from vibeauth.service.users import SignInFlow
from vibeauth.service.webauthn import (
    AuthenticationCredential,
    ClientData,
    RegistrationCredential,
    WebAuthnFormatError,
)
from vibeauth.storage.adapter import DatabaseAdapter
from vibeauth.storage.errors import ConstraintViolation
from vibeauth.storage.models import AuthResult, PasskeyCredential, to_db_time, utcnow

logger = get_logger(__name__)

CHALLENGE_TTL = timedelta(minutes=5)
CHALLENGE_BYTES = 32
REGISTRATION = "registration"
AUTHENTICATION = "authentication"


class PasskeyService:
    """WebAuthn registration and sign-in.

    Each ceremony walks ``idle -> challenge-issued -> verified | expired |
    rejected``. A challenge is consumed by the first verification attempt
    that presents it, whatever the outcome.
    """

    def __init__(
        self,
        db: DatabaseAdapter,
        flow: SignInFlow,
        audit: AuditLog,
        *,
        rp_id: str = "localhost",
        rp_name: str = "VibeKit App",
        origin: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.db = db
        self.flow = flow
        self.audit = audit
        self.rp_id = rp_id
        self.rp_name = rp_name
        self.origin = origin
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    def _issue_challenge(self, kind: str, user_id: Optional[str]) -> str:
        challenge = webauthn.b64url_encode(secrets.token_bytes(CHALLENGE_BYTES))
        now = self._now()
        self.db.execute(
            "INSERT INTO vibekit_passkey_challenges "
            "(id, challenge, user_id, type, expires_at, used, created_at) "
            "VALUES (?, ?, ?, ?, ?, 0, ?)",
            (
                str(uuid.uuid4()),
                challenge,
                user_id,
                kind,
                to_db_time(now + CHALLENGE_TTL),
                to_db_time(now),
            ),
        )
        return challenge

    def _consume_challenge(self, challenge: str, kind: str, user_id: Optional[str]) -> None:
        """Atomically mark the challenge used; unknown, spent or expired ones are rejected."""
        sql = (
            "UPDATE vibekit_passkey_challenges SET used = 1 "
            "WHERE challenge = ? AND type = ? AND used = 0 AND expires_at > ?"
        )
        params: List[Any] = [challenge, kind, to_db_time(self._now())]
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(user_id)
        result = self.db.execute(sql, params)
        if result.row_count == 0:
            logger.warning("passkey_challenge_rejected", ceremony=kind, user_id=user_id)
            raise PasskeyError("Invalid or expired challenge", status_code=400)

    def _check_client_data(self, client_data: ClientData, expected_type: str) -> None:
        if client_data.type != expected_type:
            raise PasskeyError("Unexpected client data type", status_code=400)
        if self.origin and client_data.origin != self.origin:
            logger.warning("passkey_origin_mismatch", origin=client_data.origin)
            raise PasskeyError("Origin mismatch", status_code=400)

    def _check_authenticator(self, auth_data: webauthn.AuthenticatorData) -> None:
        if not hmac.compare_digest(auth_data.rp_id_hash, webauthn.rp_id_hash(self.rp_id)):
            raise PasskeyError("Relying party mismatch", status_code=400)
        if not auth_data.user_present:
            raise PasskeyError("User presence required", status_code=400)

    async def register_challenge(self, user_id: str) -> Dict[str, Any]:
        """Creation options for ``navigator.credentials.create``."""
        user = self.flow.users.get_by_id(user_id)
        if user is None:
            raise UserNotFoundError("User not found")
        existing = self.db.query(
            "SELECT credential_id FROM vibekit_passkeys WHERE user_id = ?", (user_id,)
        )
        challenge = self._issue_challenge(REGISTRATION, user_id)
        return {
            "challenge": challenge,
            "rp": {"id": self.rp_id, "name": self.rp_name},
            "user": {
                "id": webauthn.b64url_encode(user.id.encode()),
                "name": user.email,
                "displayName": user.name or user.email,
            },
            "pubKeyCredParams": [
                {"type": "public-key", "alg": alg} for alg in webauthn.SUPPORTED_ALGORITHMS
            ],
            "timeout": int(CHALLENGE_TTL.total_seconds() * 1000),
            "attestation": "none",
            "authenticatorSelection": {
                "residentKey": "preferred",
                "userVerification": "preferred",
            },
            "excludeCredentials": [
                {"type": "public-key", "id": row["credential_id"]} for row in existing.rows
            ],
        }

    async def verify_registration(
        self,
        user_id: str,
        credential: Union[RegistrationCredential, Mapping[str, Any]],
        *,
        friendly_name: Optional[str] = None,
    ) -> PasskeyCredential:
        try:
            parsed = (
                credential
                if isinstance(credential, RegistrationCredential)
                else RegistrationCredential.model_validate(credential)
            )
            client_data = webauthn.parse_client_data(parsed.response.client_data_json)
        except (PydanticValidationError, WebAuthnFormatError) as exc:
            raise PasskeyError("Malformed registration response", status_code=400) from exc

        self._consume_challenge(client_data.challenge, REGISTRATION, user_id)
        self._check_client_data(client_data, "webauthn.create")

        try:
            auth_data = webauthn.parse_attestation_object(parsed.response.attestation_object)
        except WebAuthnFormatError as exc:
            raise PasskeyError("Malformed attestation object", status_code=400) from exc
        self._check_authenticator(auth_data)
        attested = auth_data.attested
        if attested is None:
            raise PasskeyError("Attested credential data missing", status_code=400)
        credential_id = webauthn.b64url_encode(attested.credential_id)
        if credential_id != parsed.id:
            raise PasskeyError("Credential id mismatch", status_code=400)
        try:
            webauthn.load_cose_key(attested.public_key)
        except WebAuthnFormatError as exc:
            raise PasskeyError("Unsupported public key", status_code=400) from exc

        if self.db.query_one(
            "SELECT id FROM vibekit_passkeys WHERE credential_id = ?", (credential_id,)
        ):
            raise PasskeyError("Passkey already registered", status_code=409)

        now = self._now()
        stored = PasskeyCredential(
            id=str(uuid.uuid4()),
            credential_id=credential_id,
            user_id=user_id,
            public_key=webauthn.b64url_encode(attested.public_key_bytes),
            counter=0,
            device_type="multi_device" if auth_data.backup_eligible else "single_device",
            backed_up=auth_data.backed_up,
            friendly_name=friendly_name,
            created_at=now,
        )
        try:
            self.db.execute(
                "INSERT INTO vibekit_passkeys "
                "(id, credential_id, user_id, public_key, counter, device_type, backed_up, "
                "friendly_name, created_at) VALUES (?, ?, ?, ?, 0, ?, ?, ?, ?)",
                (
                    stored.id,
                    stored.credential_id,
                    user_id,
                    stored.public_key,
                    stored.device_type,
                    int(stored.backed_up),
                    friendly_name,
                    to_db_time(now),
                ),
            )
        except ConstraintViolation as exc:
            raise PasskeyError("Passkey already registered", status_code=409) from exc
        self.audit.record(
            "passkey_register",
            user_id=user_id,
            metadata={"credential_id": credential_id, "device_type": stored.device_type},
        )
        return stored

    async def login_challenge(self) -> Dict[str, Any]:
        """Request options for ``navigator.credentials.get`` (discoverable credentials)."""
        challenge = self._issue_challenge(AUTHENTICATION, None)
        return {
            "challenge": challenge,
            "rpId": self.rp_id,
            "timeout": int(CHALLENGE_TTL.total_seconds() * 1000),
            "userVerification": "preferred",
        }

    async def verify_login(
        self,
        credential: Union[AuthenticationCredential, Mapping[str, Any]],
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        try:
            parsed = (
                credential
                if isinstance(credential, AuthenticationCredential)
                else AuthenticationCredential.model_validate(credential)
            )
            client_data = webauthn.parse_client_data(parsed.response.client_data_json)
        except (PydanticValidationError, WebAuthnFormatError) as exc:
            raise PasskeyError("Malformed authentication response", status_code=400) from exc

        self._consume_challenge(client_data.challenge, AUTHENTICATION, None)
        self._check_client_data(client_data, "webauthn.get")

        row = self.db.query_one(
            "SELECT * FROM vibekit_passkeys WHERE credential_id = ?", (parsed.id,)
        )
        if not row:
            raise PasskeyError("Passkey not recognized", status_code=401)
        stored = PasskeyCredential.from_row(row)

        try:
            raw_auth_data = webauthn.b64url_decode(parsed.response.authenticator_data)
            auth_data = webauthn.parse_authenticator_data(raw_auth_data)
            signature = webauthn.b64url_decode(parsed.response.signature)
            cose_key = cbor2.loads(webauthn.b64url_decode(stored.public_key))
            valid = webauthn.verify_signature(
                cose_key,
                signature,
                webauthn.assertion_signed_data(raw_auth_data, client_data.raw),
            )
        except WebAuthnFormatError as exc:
            raise PasskeyError("Malformed assertion", status_code=400) from exc
        self._check_authenticator(auth_data)
        if not valid:
            logger.warning("passkey_signature_invalid", credential_id=stored.credential_id)
            raise PasskeyError("Passkey signature verification failed", status_code=401)

        if parsed.response.user_handle:
            try:
                handle = webauthn.b64url_decode(parsed.response.user_handle)
            except WebAuthnFormatError as exc:
                raise PasskeyError("Malformed user handle", status_code=400) from exc
            if handle != stored.user_id.encode():
                raise PasskeyError("User handle mismatch", status_code=401)

        if auth_data.sign_count > 0:
            if auth_data.sign_count <= stored.counter:
                logger.warning(
                    "passkey_counter_regression",
                    credential_id=stored.credential_id,
                    stored_counter=stored.counter,
                    reported_counter=auth_data.sign_count,
                )
                raise PasskeyError("Passkey counter did not advance", status_code=401)
            new_counter = auth_data.sign_count
        else:
            new_counter = stored.counter + 1
        updated = self.db.execute(
            "UPDATE vibekit_passkeys SET counter = ?, backed_up = ?, last_used_at = ? "
            "WHERE id = ? AND counter = ?",
            (
                new_counter,
                int(auth_data.backed_up),
                to_db_time(self._now()),
                stored.id,
                stored.counter,
            ),
        )
        if updated.row_count == 0:
            raise PasskeyError("Passkey counter did not advance", status_code=401)

        user = self.flow.users.get_by_id(stored.user_id)
        if user is None:
            raise PasskeyError("Passkey not recognized", status_code=401)
        return self.flow.complete(
            user,
            method="passkey",
            ip_address=ip_address,
            user_agent=user_agent,
        )

    async def list(self, user_id: str) -> List[PasskeyCredential]:
        result = self.db.query(
            "SELECT * FROM vibekit_passkeys WHERE user_id = ? ORDER BY created_at", (user_id,)
        )
        return [PasskeyCredential.from_row(row) for row in result.rows]

    async def remove(self, user_id: str, credential_id: str) -> None:
        result = self.db.execute(
            "DELETE FROM vibekit_passkeys WHERE user_id = ? AND credential_id = ?",
            (user_id, credential_id),
        )
        if result.row_count == 0:
            raise PasskeyError("Passkey not found", status_code=404, error_code="not_found")
        self.audit.record(
            "passkey_remove", user_id=user_id, metadata={"credential_id": credential_id}
        )

    def clean_expired(self) -> int:
        result = self.db.execute(
            "DELETE FROM vibekit_passkey_challenges WHERE expires_at < ? OR used = 1",
            (to_db_time(self._now()),),
        )
        return result.row_count
