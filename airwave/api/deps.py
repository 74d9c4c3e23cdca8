"""FastAPI dependencies for authentication, CSRF and permission gates.

Order per request: ``get_principal`` (verify bearer or cookie, emit a CSRF
token) -> ``enforce_csrf`` (mutating verbs only) -> ``get_user`` -> optional gate from
``require_permission`` and friends.
"""

from __future__ import annotations

from typing import Annotated, Iterable, Optional

from fastapi import Depends, Header, Request, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from airwave.logging import get_logger
from airwave.service.auth import Principal
from airwave.service.errors import PermissionDenied
from airwave.service.runtime import get_runtime

logger = get_logger(__name__)

# Security scheme for the OpenAPI docs; missing headers are handled below
security = HTTPBearer(auto_error=False)

CSRF_HEADER = "X-CSRF-Token"
_MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def is_csrf_exempt(path: str, exempt_paths: Iterable[str]) -> bool:
    normalized = path.rstrip("/") or "/"
    return any(normalized == (p.rstrip("/") or "/") for p in exempt_paths)


async def get_principal(
    request: Request,
    response: Response,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> Principal:
    """Authenticate the caller from the bearer header, else the access-token cookie.

    Sets a fresh ``X-CSRF-Token`` response header bound to the session.
    """
    runtime = get_runtime()
    token = credentials.credentials if credentials else None
    if not token:
        token = request.cookies.get(runtime.settings.access_token_cookie)
    principal = await runtime.auth.authenticate(token, client_ip=_client_ip(request))
    request.state.principal = principal
    request.state.access_token = token
    # Also re-emitted on error responses by the envelope handlers
    request.state.csrf_token = runtime.auth.issue_csrf_token(principal)
    response.headers[CSRF_HEADER] = request.state.csrf_token
    return principal


async def enforce_csrf(
    request: Request,
    principal: Principal = Depends(get_principal),
    csrf_token: Optional[str] = Header(None, alias=CSRF_HEADER),
) -> Principal:
    """Require a session-bound CSRF token on mutating requests to non-exempt paths."""
    runtime = get_runtime()
    if request.method.upper() in _MUTATING_METHODS and not is_csrf_exempt(
        request.url.path, runtime.settings.csrf_exempt_paths
    ):
        runtime.auth.check_csrf(principal, csrf_token)
    return principal


async def get_user(principal: Principal = Depends(enforce_csrf)) -> Principal:
    return principal


CurrentUser = Annotated[Principal, Depends(get_user)]


def _deny(principal: Principal, message: str, required: list[str]) -> PermissionDenied:
    logger.warning(
        "permission_denied",
        user_id=principal.user_id,
        role=principal.role,
        required=required,
    )
    return PermissionDenied(message, detail={"required": required})


def require_permission(permission: str):
    async def _gate(principal: CurrentUser) -> Principal:
        if not await get_runtime().permissions.has_permission(principal.user_id, permission):
            raise _deny(
                principal,
                "You do not have permission to access this resource",
                [permission],
            )
        return principal

    return _gate


def require_all_permissions(*permissions: str):
    required = list(permissions)

    async def _gate(principal: CurrentUser) -> Principal:
        if not await get_runtime().permissions.has_all_permissions(
            principal.user_id, required
        ):
            raise _deny(
                principal,
                "You do not have all required permissions to access this resource",
                required,
            )
        return principal

    return _gate


def require_any_permission(*permissions: str):
    required = list(permissions)

    async def _gate(principal: CurrentUser) -> Principal:
        if not await get_runtime().permissions.has_any_permission(
            principal.user_id, required
        ):
            raise _deny(
                principal,
                "You need at least one of the required permissions to access this resource",
                required,
            )
        return principal

    return _gate


async def require_admin(principal: CurrentUser) -> Principal:
    # Role is re-read so a demotion applies before the access token expires
    role = get_runtime().permissions.get_user_role(principal.user_id)
    if role != "admin":
        raise _deny(principal, "Admin access required", ["role:admin"])
    return principal


AdminUser = Annotated[Principal, Depends(require_admin)]
