from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Path, Request, Response

from airwave.api.deps import (
    AdminUser,
    CurrentUser,
    get_principal,
    require_permission,
)
from airwave.api.schemas import (
    Envelope,
    LoginRequest,
    LogoutRequest,
    PermissionsResponse,
    PrincipalResponse,
    RoleResponse,
    SessionResponse,
    TokenPairResponse,
    TokenRefreshRequest,
    UpdateUserPermissionsRequest,
    UpdateUserRoleRequest,
    UserResponse,
)
from airwave.logging import get_logger
from airwave.service.auth import Principal, extract_bearer
from airwave.service.errors import ResourceNotFound
from airwave.service.runtime import get_runtime
from airwave.service.tokens import RequestContext, TokenPair
from airwave.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _request_context(request: Request, fingerprint: Optional[str] = None) -> RequestContext:
    return RequestContext(
        ip_address=request.client.host if request.client else None,
        fingerprint=fingerprint or request.headers.get("X-Client-Fingerprint"),
        user_agent=request.headers.get("User-Agent"),
    )


def _apply_access_cookie(response: Response, pair: TokenPair) -> None:
    settings = get_runtime().settings
    response.set_cookie(
        settings.access_token_cookie,
        pair.access_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=pair.expires_in,
        path="/",
    )


def _token_pair_response(pair: TokenPair) -> TokenPairResponse:
    return TokenPairResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        expires_in=pair.expires_in,
        token_type=pair.token_type,
        csrf_token=get_runtime().tokens.generate_csrf_token(pair.session_id),
    )


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        role=user.role,
        name=user.name,
        custom_permissions=list(user.custom_permissions),
        is_active=user.is_active,
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Returns a token pair plus a CSRF token and sets the access-token cookie.

    Raises:
        401: If credentials are invalid
    """
    runtime = get_runtime()
    _, pair = await runtime.auth.login(
        body.email, body.password, _request_context(request, body.fingerprint)
    )
    _apply_access_cookie(response, pair)
    response.headers["X-CSRF-Token"] = runtime.tokens.generate_csrf_token(pair.session_id)
    return Envelope(status="ok", data=_token_pair_response(pair))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request, response: Response):
    """Mint a new access token for the refresh token's session.

    Raises:
        401: If the refresh token is invalid, expired or revoked
    """
    runtime = get_runtime()
    pair = await runtime.tokens.refresh_access_token(
        body.refresh_token, _request_context(request)
    )
    _apply_access_cookie(response, pair)
    response.headers["X-CSRF-Token"] = runtime.tokens.generate_csrf_token(pair.session_id)
    return Envelope(status="ok", data=_token_pair_response(pair))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response, body: Optional[LogoutRequest] = None):
    """Deny the presented access token and revoke the given refresh token.

    Either token may be missing; logout is best effort and always succeeds.
    """
    runtime = get_runtime()
    access_token = extract_bearer(request.headers.get("Authorization")) or request.cookies.get(
        runtime.settings.access_token_cookie
    )
    refresh_token = body.refresh_token if body else None
    await runtime.auth.logout(access_token, refresh_token)
    response.delete_cookie(
        runtime.settings.access_token_cookie,
        path="/",
        secure=runtime.settings.cookie_secure,
        samesite="lax",
    )
    return Envelope(status="ok", data={"message": "logged out"})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(request: Request, response: Response, principal: CurrentUser):
    """Revoke every refresh token of the caller and deny the current access token."""
    runtime = get_runtime()
    revoked = await runtime.tokens.revoke_all_user_tokens(principal.user_id)
    await runtime.auth.logout(getattr(request.state, "access_token", None))
    response.delete_cookie(
        runtime.settings.access_token_cookie,
        path="/",
        secure=runtime.settings.cookie_secure,
        samesite="lax",
    )
    return Envelope(status="ok", data={"revoked": revoked})


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: CurrentUser):
    runtime = get_runtime()
    sessions = await runtime.tokens.list_user_sessions(principal.user_id)
    return Envelope(
        status="ok",
        data=[
            SessionResponse(
                session_id=item["session_id"],
                created_at=item["created_at"],
                current=item["session_id"] == principal.session_id,
            )
            for item in sessions
        ],
    )


@router.get("/me", response_model=Envelope, tags=["users"])
async def me(principal: Principal = Depends(get_principal)):
    return Envelope(
        status="ok",
        data=PrincipalResponse(
            user_id=principal.user_id,
            email=principal.email,
            role=principal.role,
            session_id=principal.session_id,
            issued_at=principal.issued_at,
        ),
    )


@router.get("/me/permissions", response_model=Envelope, tags=["users"])
async def my_permissions(principal: CurrentUser):
    runtime = get_runtime()
    permissions = await runtime.permissions.get_user_permissions(principal.user_id)
    return Envelope(
        status="ok",
        data=PermissionsResponse(
            user_id=principal.user_id,
            role=runtime.permissions.get_user_role(principal.user_id),
            permissions=permissions,
        ),
    )


@router.get("/roles", response_model=Envelope, tags=["users"])
async def list_roles(principal: Principal = Depends(require_permission("user:view"))):
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data=[
            RoleResponse(name=role.name, description=role.description, permissions=role.permissions)
            for role in runtime.permissions.get_all_roles()
        ],
    )


@router.put("/admin/users/{user_id}/role", response_model=Envelope, tags=["admin"])
async def update_user_role(
    body: UpdateUserRoleRequest,
    principal: Principal = Depends(require_permission("user:update")),
    user_id: str = Path(..., max_length=128),
):
    """Change a user's role; their cached permissions are dropped immediately.

    Raises:
        400: If the role is unknown
        404: If the user does not exist
    """
    runtime = get_runtime()
    user = await runtime.permissions.set_user_role(user_id, body.role)
    logger.info("admin_role_change", actor=principal.user_id, user_id=user_id, role=body.role)
    return Envelope(status="ok", data=_user_response(user))


@router.put("/admin/users/{user_id}/permissions", response_model=Envelope, tags=["admin"])
async def update_user_permissions(
    body: UpdateUserPermissionsRequest,
    principal: Principal = Depends(require_permission("user:update")),
    user_id: str = Path(..., max_length=128),
):
    runtime = get_runtime()
    user = await runtime.permissions.set_custom_permissions(user_id, body.permissions)
    logger.info(
        "admin_permissions_change",
        actor=principal.user_id,
        user_id=user_id,
        count=len(body.permissions),
    )
    return Envelope(status="ok", data=_user_response(user))


@router.post("/admin/users/{user_id}/revoke-sessions", response_model=Envelope, tags=["admin"])
async def admin_revoke_sessions(
    principal: AdminUser,
    user_id: str = Path(..., max_length=128),
):
    runtime = get_runtime()
    if not runtime.store.get_user(user_id):
        raise ResourceNotFound("User not found", detail={"user_id": user_id})
    revoked = await runtime.tokens.revoke_all_user_tokens(user_id)
    logger.info("admin_sessions_revoked", actor=principal.user_id, user_id=user_id, revoked=revoked)
    return Envelope(status="ok", data={"revoked": revoked})
