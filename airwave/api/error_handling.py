from __future__ import annotations

import traceback
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from airwave.api.deps import CSRF_HEADER
from airwave.api.schemas import Envelope, ErrorBody
from airwave.config import get_settings
from airwave.logging import get_correlation_id, get_logger
from airwave.service.errors import ServiceError, ServerError
from airwave.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "authentication_required",
    403: "permission_denied",
    404: "not_found",
    409: "conflict",
    500: "server_error",
}

_GENERIC_MESSAGES = {
    400: "The request contains invalid data.",
    401: "Authentication is required to access this resource.",
    403: "Permission denied. You do not have the necessary permissions.",
    404: "The requested resource was not found.",
    409: "The resource already exists.",
    500: ServerError.public_message,
}


def _error_code_for_status(status_code: int) -> str:
    if status_code in _STATUS_TO_CODE:
        return _STATUS_TO_CODE[status_code]
    return "validation_error" if status_code < 500 else "server_error"


def _expose_details() -> bool:
    return not get_settings().is_production


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    request: Request | None = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details or None)
    envelope = Envelope(status="error", error=error_body)
    cid = get_correlation_id()
    if cid:
        envelope.request_id = cid
    headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else {}
    csrf_token = getattr(request.state, "csrf_token", None) if request is not None else None
    if csrf_token:
        headers[CSRF_HEADER] = csrf_token
    return JSONResponse(
        status_code=status_code, content=envelope.model_dump(), headers=headers
    )


def _public_message(status_code: int, message: str, fallback: Optional[str] = None) -> str:
    if _expose_details():
        return message
    if fallback:
        return fallback
    return _GENERIC_MESSAGES.get(
        status_code, _GENERIC_MESSAGES[400 if status_code < 500 else 500]
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install envelope-producing handlers for service, storage and HTTP errors.

    Outside production the real message and details are returned; in
    production clients only see the generic text for the error code.
    """

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(
            exc.status_code,
            _public_message(exc.status_code, exc.message, exc.public_message),
            exc.detail if _expose_details() else None,
            code=exc.error_code,
            request=request,
        )

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(
            409,
            _public_message(409, exc.message),
            exc.detail if _expose_details() else None,
            code="conflict",
            request=request,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            errors=len(exc.errors()),
        )
        details = None
        if _expose_details():
            details = [
                {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
                for err in exc.errors()
            ]
        return _error_response(
            400, _public_message(400, "request validation failed"), details, request=request
        )

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        else:
            logger.warning(
                "http_client_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(
            exc.status_code, _public_message(exc.status_code, message), request=request
        )

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        details = None
        if _expose_details():
            details = {
                "error_type": type(exc).__name__,
                "traceback": traceback.format_exception(type(exc), exc, exc.__traceback__),
            }
        return _error_response(
            500, _public_message(500, str(exc) or "internal server error"), details
        )
