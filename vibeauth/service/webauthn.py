"""WebAuthn wire decoding and assertion signature checks.

Only the pieces needed for ``none``-style attestation are implemented:
clientDataJSON, authenticator data, the attestation object envelope and COSE
public keys for ES256, RS256 and EdDSA.
"""
from __future__ import annotations

import base64
import hashlib
import io
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

import cbor2
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey
from pydantic import BaseModel, ConfigDict, Field

FLAG_USER_PRESENT = 0x01
FLAG_USER_VERIFIED = 0x04
FLAG_BACKUP_ELIGIBLE = 0x08
FLAG_BACKED_UP = 0x10
FLAG_ATTESTED_DATA = 0x40

COSE_ALG_ES256 = -7
COSE_ALG_EDDSA = -8
COSE_ALG_RS256 = -257
SUPPORTED_ALGORITHMS = (COSE_ALG_ES256, COSE_ALG_EDDSA, COSE_ALG_RS256)

# COSE key map labels
_KTY = 1
_ALG = 3
_CRV = -1
_X = -2
_Y = -3
_RSA_N = -1
_RSA_E = -2

_KTY_OKP = 1
_KTY_EC2 = 2
_KTY_RSA = 3
_CRV_P256 = 1
_CRV_ED25519 = 6


class WebAuthnFormatError(ValueError):
    """Malformed or unsupported WebAuthn payload."""


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def b64url_decode(value: str) -> bytes:
    if not isinstance(value, str):
        raise WebAuthnFormatError("expected base64url string")
    padding_len = "=" * ((4 - len(value) % 4) % 4)
    try:
        return base64.urlsafe_b64decode(value + padding_len)
    except (ValueError, TypeError) as exc:
        raise WebAuthnFormatError("invalid base64url") from exc


class AttestationResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    client_data_json: str = Field(alias="clientDataJSON")
    attestation_object: str = Field(alias="attestationObject")


class AssertionResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    client_data_json: str = Field(alias="clientDataJSON")
    authenticator_data: str = Field(alias="authenticatorData")
    signature: str
    user_handle: Optional[str] = Field(default=None, alias="userHandle")


class RegistrationCredential(BaseModel):
    """``PublicKeyCredential`` from ``navigator.credentials.create`` in JSON form."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    raw_id: Optional[str] = Field(default=None, alias="rawId")
    type: str = "public-key"
    response: AttestationResponse


class AuthenticationCredential(BaseModel):
    """``PublicKeyCredential`` from ``navigator.credentials.get`` in JSON form."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    raw_id: Optional[str] = Field(default=None, alias="rawId")
    type: str = "public-key"
    response: AssertionResponse


@dataclass
class ClientData:
    type: str
    challenge: str
    origin: Optional[str]
    raw: bytes


@dataclass
class AttestedCredential:
    aaguid: bytes
    credential_id: bytes
    public_key: Dict[int, Any]
    public_key_bytes: bytes


@dataclass
class AuthenticatorData:
    rp_id_hash: bytes
    flags: int
    sign_count: int
    raw: bytes
    attested: Optional[AttestedCredential] = None

    @property
    def user_present(self) -> bool:
        return bool(self.flags & FLAG_USER_PRESENT)

    @property
    def user_verified(self) -> bool:
        return bool(self.flags & FLAG_USER_VERIFIED)

    @property
    def backup_eligible(self) -> bool:
        return bool(self.flags & FLAG_BACKUP_ELIGIBLE)

    @property
    def backed_up(self) -> bool:
        return bool(self.flags & FLAG_BACKED_UP)


def parse_client_data(encoded: str) -> ClientData:
    raw = b64url_decode(encoded)
    try:
        payload = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise WebAuthnFormatError("clientDataJSON is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise WebAuthnFormatError("clientDataJSON must be an object")
    challenge = payload.get("challenge")
    ceremony = payload.get("type")
    if not isinstance(challenge, str) or not isinstance(ceremony, str):
        raise WebAuthnFormatError("clientDataJSON is missing type or challenge")
    origin = payload.get("origin")
    return ClientData(
        type=ceremony,
        challenge=challenge,
        origin=origin if isinstance(origin, str) else None,
        raw=raw,
    )


def parse_authenticator_data(raw: bytes) -> AuthenticatorData:
    if len(raw) < 37:
        raise WebAuthnFormatError("authenticator data too short")
    flags = raw[32]
    data = AuthenticatorData(
        rp_id_hash=raw[:32],
        flags=flags,
        sign_count=int.from_bytes(raw[33:37], "big"),
        raw=raw,
    )
    if flags & FLAG_ATTESTED_DATA:
        if len(raw) < 55:
            raise WebAuthnFormatError("attested credential data truncated")
        aaguid = raw[37:53]
        id_len = int.from_bytes(raw[53:55], "big")
        credential_id = raw[55 : 55 + id_len]
        if len(credential_id) != id_len:
            raise WebAuthnFormatError("credential id truncated")
        stream = io.BytesIO(raw[55 + id_len :])
        try:
            public_key = cbor2.load(stream)
        except Exception as exc:
            raise WebAuthnFormatError("credential public key is not valid CBOR") from exc
        if not isinstance(public_key, dict):
            raise WebAuthnFormatError("credential public key must be a COSE map")
        key_bytes = raw[55 + id_len : 55 + id_len + stream.tell()]
        data.attested = AttestedCredential(
            aaguid=aaguid,
            credential_id=credential_id,
            public_key=public_key,
            public_key_bytes=key_bytes,
        )
    return data


def parse_attestation_object(encoded: str) -> AuthenticatorData:
    """Decode the attestation envelope; the statement itself is not checked."""
    try:
        envelope = cbor2.loads(b64url_decode(encoded))
    except WebAuthnFormatError:
        raise
    except Exception as exc:
        raise WebAuthnFormatError("attestationObject is not valid CBOR") from exc
    if not isinstance(envelope, dict) or not isinstance(envelope.get("authData"), bytes):
        raise WebAuthnFormatError("attestationObject is missing authData")
    return parse_authenticator_data(envelope["authData"])


def load_cose_key(cose_key: Dict[int, Any]):
    """Convert a COSE key map into a ``cryptography`` public key."""
    kty = cose_key.get(_KTY)
    alg = cose_key.get(_ALG)
    try:
        if kty == _KTY_EC2 and alg == COSE_ALG_ES256:
            if cose_key.get(_CRV) != _CRV_P256:
                raise WebAuthnFormatError("unsupported EC curve")
            x = int.from_bytes(cose_key[_X], "big")
            y = int.from_bytes(cose_key[_Y], "big")
            return ec.EllipticCurvePublicNumbers(x, y, ec.SECP256R1()).public_key()
        if kty == _KTY_RSA and alg == COSE_ALG_RS256:
            n = int.from_bytes(cose_key[_RSA_N], "big")
            e = int.from_bytes(cose_key[_RSA_E], "big")
            return rsa.RSAPublicNumbers(e, n).public_key()
        if kty == _KTY_OKP and alg == COSE_ALG_EDDSA:
            if cose_key.get(_CRV) != _CRV_ED25519:
                raise WebAuthnFormatError("unsupported OKP curve")
            return Ed25519PublicKey.from_public_bytes(cose_key[_X])
    except (KeyError, TypeError, ValueError) as exc:
        if isinstance(exc, WebAuthnFormatError):
            raise
        raise WebAuthnFormatError("malformed COSE key") from exc
    raise WebAuthnFormatError(f"unsupported COSE key type {kty} / algorithm {alg}")


def verify_signature(cose_key: Dict[int, Any], signature: bytes, signed_data: bytes) -> bool:
    public_key = load_cose_key(cose_key)
    try:
        if isinstance(public_key, ec.EllipticCurvePublicKey):
            public_key.verify(signature, signed_data, ec.ECDSA(hashes.SHA256()))
        elif isinstance(public_key, rsa.RSAPublicKey):
            public_key.verify(signature, signed_data, padding.PKCS1v15(), hashes.SHA256())
        else:
            public_key.verify(signature, signed_data)
    except InvalidSignature:
        return False
    return True


def assertion_signed_data(authenticator_data: bytes, client_data_raw: bytes) -> bytes:
    return authenticator_data + hashlib.sha256(client_data_raw).digest()


def rp_id_hash(rp_id: str) -> bytes:
    return hashlib.sha256(rp_id.encode()).digest()
