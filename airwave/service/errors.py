from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``.
    Credential problems map to 401, permission and CSRF failures to 403.
    ``public_message`` is what production clients see in place of ``message``.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    public_message: str = "The request could not be processed."

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.public_message
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
    public_message = "The request contains invalid data."


class AuthenticationRequired(ServiceError):
    """No credential was presented (401)."""
    status_code = 401
    error_code = "authentication_required"
    public_message = "Authentication is required to access this resource."


class InvalidCredentials(AuthenticationRequired):
    """Email/password login rejected (401)."""
    error_code = "invalid_credentials"
    public_message = "Invalid email or password."


class InvalidToken(ServiceError):
    """Signature, format, issuer or audience mismatch, or a revoked token (401)."""
    status_code = 401
    error_code = "invalid_token"
    public_message = "Invalid authentication token. Please log in again."


class TokenExpired(ServiceError):
    """Token signature is valid but it is past expiry (401).

    Sibling of ``InvalidToken``, not a subclass: clients react to this one by
    calling the refresh endpoint.
    """
    status_code = 401
    error_code = "token_expired"
    public_message = "Your session has expired. Please log in again."


class PermissionDenied(ServiceError):
    """Authenticated but lacking the required permission (403)."""
    status_code = 403
    error_code = "permission_denied"
    public_message = "Permission denied. You do not have the necessary permissions."


class Forbidden(ServiceError):
    """CSRF token missing or not bound to the caller's session (403)."""
    status_code = 403
    error_code = "invalid_csrf_token"
    public_message = "Invalid CSRF token. Please refresh the page and try again."


class ResourceNotFound(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"
    public_message = "The requested resource was not found."


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"
    public_message = "An unexpected error occurred. Our team has been notified."


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationRequired",
    "InvalidCredentials",
    "InvalidToken",
    "TokenExpired",
    "PermissionDenied",
    "Forbidden",
    "ResourceNotFound",
    "ServerError",
]
