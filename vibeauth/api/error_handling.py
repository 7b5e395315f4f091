from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from vibeauth.api.schemas import Envelope, ErrorBody
from vibeauth.logging import get_correlation_id, get_logger, set_correlation_id
from vibeauth.service.errors import ServiceError
from vibeauth.storage.errors import ConstraintViolation

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
# Matches the rolling window of the one-time code limiter
RETRY_AFTER_SECONDS = 900

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    429: "rate_limited",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    body = ErrorBody(
        code=code or _error_code_for_status(status_code),
        message=message,
        details=details or None,
    )
    cid = get_correlation_id()
    envelope = Envelope(status="error", error=body, **({"request_id": cid} if cid else {}))
    headers: Dict[str, str] = {}
    if status_code == 429:
        headers["Retry-After"] = str(RETRY_AFTER_SECONDS)
    if cid:
        headers[REQUEST_ID_HEADER] = cid
    return JSONResponse(status_code=status_code, content=envelope.model_dump(), headers=headers or None)


def _request_fields(request: Request) -> Dict[str, Any]:
    return {"path": request.url.path, "method": request.method}


def _http_exception_parts(exc: HTTPException) -> tuple[str, Optional[dict]]:
    if isinstance(exc.detail, dict):
        message = exc.detail.get("message") or exc.detail.get("detail") or "http error"
        return str(message), exc.detail
    return (str(exc.detail) if exc.detail else "http error"), None


def register_request_id_middleware(app: FastAPI) -> None:
    """Bind ``X-Request-ID`` (or a fresh id) to the log context and echo it back."""

    @app.middleware("http")
    async def bind_request_id(request: Request, call_next):
        cid = set_correlation_id(request.headers.get(REQUEST_ID_HEADER))
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = cid
        return response


def register_exception_handlers(app: FastAPI) -> None:
    """Render identity errors, storage conflicts and stray exceptions as error envelopes."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning("constraint_violation", message=exc.message, **_request_fields(request))
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            "service_error",
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            **_request_fields(request),
        )
        return _error_response(exc.status_code, exc.message, exc.detail, code=exc.error_code)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message, details = _http_exception_parts(exc)
        if exc.status_code >= 500:
            logger.error("http_error", status_code=exc.status_code, message=message, **_request_fields(request))
        return _error_response(exc.status_code, message, details)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            error_type=type(exc).__name__,
            **_request_fields(request),
        )
        return _error_response(500, "internal server error", code="server_error")
