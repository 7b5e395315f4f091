from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines an HTTP ``status_code`` and a stable
    ``error_code``. Generic codes are lower-case (``validation_error``,
    ``unauthorized``, ``forbidden``, ``not_found``, ``conflict``,
    ``rate_limited``, ``server_error``); authentication failures use the
    ``AUTH_*`` family so clients can branch on the exact cause.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


# One-time codes

class CodeRateLimitedError(RateLimitedError):
    error_code = "AUTH_RATE_LIMITED"


class CodeInvalidError(ValidationError):
    error_code = "AUTH_CODE_INVALID"


class CodeExpiredError(ValidationError):
    error_code = "AUTH_CODE_EXPIRED"


class CodeMaxAttemptsError(ValidationError):
    error_code = "AUTH_CODE_MAX_ATTEMPTS"


# Accounts

class SignupDisabledError(ForbiddenError):
    error_code = "AUTH_SIGNUP_DISABLED"


class UserBannedError(ForbiddenError):
    error_code = "AUTH_USER_BANNED"


class UserNotFoundError(NotFoundError):
    error_code = "AUTH_USER_NOT_FOUND"


class UnauthorizedError(AuthenticationError):
    error_code = "AUTH_UNAUTHORIZED"


# Passwords

class InvalidCredentialsError(AuthenticationError):
    error_code = "AUTH_INVALID_CREDENTIALS"


class WeakPasswordError(ValidationError):
    error_code = "AUTH_WEAK_PASSWORD"


class UserExistsError(ConflictError):
    error_code = "AUTH_USER_EXISTS"


class ResetTokenInvalidError(ValidationError):
    error_code = "AUTH_RESET_TOKEN_INVALID"


class ResetTokenExpiredError(ValidationError):
    error_code = "AUTH_RESET_TOKEN_EXPIRED"


# Magic links

class MagicLinkInvalidError(ValidationError):
    error_code = "AUTH_MAGIC_LINK_INVALID"


class MagicLinkExpiredError(ValidationError):
    error_code = "AUTH_MAGIC_LINK_EXPIRED"


class MagicLinkUsedError(ValidationError):
    error_code = "AUTH_MAGIC_LINK_USED"


# MFA and passkeys

class MfaFactorNotFoundError(NotFoundError):
    error_code = "AUTH_MFA_FACTOR_NOT_FOUND"


class PasskeyError(ServiceError):
    """WebAuthn ceremony failure; status varies with the cause."""
    status_code = 400
    error_code = "AUTH_PASSKEY_ERROR"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "CodeRateLimitedError",
    "CodeInvalidError",
    "CodeExpiredError",
    "CodeMaxAttemptsError",
    "SignupDisabledError",
    "UserBannedError",
    "UserNotFoundError",
    "UnauthorizedError",
    "InvalidCredentialsError",
    "WeakPasswordError",
    "UserExistsError",
    "ResetTokenInvalidError",
    "ResetTokenExpiredError",
    "MagicLinkInvalidError",
    "MagicLinkExpiredError",
    "MagicLinkUsedError",
    "MfaFactorNotFoundError",
    "PasskeyError",
]
