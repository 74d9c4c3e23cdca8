"""Tests for the FastAPI permission gates and CSRF exemptions."""

import asyncio

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from airwave.api.deps import (
    AdminUser,
    CurrentUser,
    is_csrf_exempt,
    require_all_permissions,
    require_any_permission,
    require_permission,
)
from airwave.api.error_handling import register_exception_handlers
from airwave.service.runtime import get_runtime


def _build_app() -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/assets", dependencies=[Depends(require_permission("asset:view"))])
    async def assets():
        return {"ok": True}

    @app.get(
        "/assets/publish",
        dependencies=[Depends(require_all_permissions("asset:update", "copy:approve"))],
    )
    async def publish():
        return {"ok": True}

    @app.get(
        "/assets/draft",
        dependencies=[Depends(require_any_permission("asset:create", "copy:generate"))],
    )
    async def draft():
        return {"ok": True}

    @app.get("/admin-only")
    async def admin_only(principal: AdminUser):
        return {"user_id": principal.user_id}

    @app.delete("/assets/{asset_id}")
    async def delete_asset(asset_id: str, principal: CurrentUser):
        return {"deleted": asset_id}

    @app.post("/v1/auth/logout")
    async def exempt(principal: CurrentUser):
        return {"ok": True}

    return app


@pytest.fixture
def gate_client():
    return TestClient(_build_app())


async def _headers_for(role: str, email: str) -> dict:
    runtime = get_runtime()
    user = runtime.auth.register(email, "TestPassword123!", role=role)
    pair = await runtime.tokens.generate_token_pair(user)
    return {
        "Authorization": f"Bearer {pair.access_token}",
        "X-CSRF-Token": runtime.tokens.generate_csrf_token(pair.session_id),
    }


def _headers(role: str, email: str = None) -> dict:
    return asyncio.run(_headers_for(role, email or f"{role}@example.com"))


class TestPermissionGates:
    def test_single_permission(self, gate_client):
        assert gate_client.get("/assets", headers=_headers("viewer")).status_code == 200

    def test_all_permissions(self, gate_client):
        assert gate_client.get("/assets/publish", headers=_headers("editor")).status_code == 403
        assert gate_client.get("/assets/publish", headers=_headers("manager")).status_code == 200

    def test_any_permission(self, gate_client):
        assert gate_client.get("/assets/draft", headers=_headers("viewer")).status_code == 403
        assert gate_client.get("/assets/draft", headers=_headers("editor")).status_code == 200

    def test_denial_body(self, gate_client):
        headers = _headers("viewer")
        response = gate_client.get("/assets/publish", headers=headers)

        assert response.headers["X-CSRF-Token"] == headers["X-CSRF-Token"]
        error = response.json()["error"]
        assert error["code"] == "permission_denied"
        assert error["details"] == {"required": ["asset:update", "copy:approve"]}

    def test_admin_gate(self, gate_client):
        assert gate_client.get("/admin-only", headers=_headers("manager")).status_code == 403
        assert gate_client.get("/admin-only", headers=_headers("admin")).status_code == 200

    def test_admin_gate_for_deleted_user(self, gate_client):
        headers = _headers("admin")
        runtime = get_runtime()
        runtime.store.delete_user(runtime.store.get_user_by_email("admin@example.com").id)

        assert gate_client.get("/admin-only", headers=headers).status_code == 404


class TestCsrfExemptions:
    def test_delete_requires_csrf(self, gate_client):
        headers = _headers("viewer")

        missing = gate_client.delete(
            "/assets/a1", headers={"Authorization": headers["Authorization"]}
        )
        assert missing.status_code == 403
        assert gate_client.delete("/assets/a1", headers=headers).status_code == 200

    def test_exempt_path_skips_csrf(self, gate_client):
        headers = _headers("viewer")

        response = gate_client.post(
            "/v1/auth/logout", headers={"Authorization": headers["Authorization"]}
        )

        assert response.status_code == 200

    def test_is_csrf_exempt_normalizes_trailing_slash(self):
        exempt = ["/v1/auth/login", "/v1/auth/refresh/"]

        assert is_csrf_exempt("/v1/auth/login/", exempt)
        assert is_csrf_exempt("/v1/auth/refresh", exempt)
        assert not is_csrf_exempt("/v1/auth/login/extra", exempt)
        assert not is_csrf_exempt("/v1/auth/logout-all", exempt)
