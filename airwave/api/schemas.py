from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "authentication_required",
    "invalid_credentials",
    "invalid_token",
    "token_expired",
    "permission_denied",
    "invalid_csrf_token",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope shared by success and error responses."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_PERMISSION_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*:[a-z][a-z0-9_-]*$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)
    fingerprint: Optional[str] = Field(default=None, max_length=256)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"
    csrf_token: Optional[str] = None


class PrincipalResponse(BaseModel):
    user_id: str
    email: str
    role: str
    session_id: str
    issued_at: int


class PermissionsResponse(BaseModel):
    user_id: str
    role: str
    permissions: List[str]


class RoleResponse(BaseModel):
    name: str
    description: str = ""
    permissions: List[str] = Field(default_factory=list)


class SessionResponse(BaseModel):
    session_id: Optional[str] = None
    created_at: Optional[datetime] = None
    current: bool = False


class UpdateUserRoleRequest(BaseModel):
    role: str = Field(..., min_length=1, max_length=64)


class UpdateUserPermissionsRequest(BaseModel):
    permissions: List[str] = Field(default_factory=list, max_length=100)

    @field_validator("permissions")
    @classmethod
    def _validate_permissions(cls, value: List[str]) -> List[str]:
        for permission in value:
            if not _PERMISSION_PATTERN.match(permission):
                raise ValueError(f"invalid permission '{permission}'; expected resource:action")
        return value


class UserResponse(BaseModel):
    id: str
    email: str
    role: Optional[str] = None
    name: Optional[str] = None
    custom_permissions: List[str] = Field(default_factory=list)
    is_active: bool = True
