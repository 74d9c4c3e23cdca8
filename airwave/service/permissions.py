from __future__ import annotations

import time
from typing import Dict, Iterable, List, Optional

from airwave.logging import get_logger
from airwave.service.errors import ResourceNotFound, ServerError, ValidationError
from airwave.storage.common import CredentialStore, dedupe
from airwave.storage.models import Role, User
from airwave.storage.redis_cache import RedisCache

logger = get_logger(__name__)

PERMISSIONS: Dict[str, str] = {
    "USER_VIEW": "user:view",
    "USER_CREATE": "user:create",
    "USER_UPDATE": "user:update",
    "USER_DELETE": "user:delete",
    "CLIENT_VIEW": "client:view",
    "CLIENT_CREATE": "client:create",
    "CLIENT_UPDATE": "client:update",
    "CLIENT_DELETE": "client:delete",
    "ASSET_VIEW": "asset:view",
    "ASSET_CREATE": "asset:create",
    "ASSET_UPDATE": "asset:update",
    "ASSET_DELETE": "asset:delete",
    "CAMPAIGN_VIEW": "campaign:view",
    "CAMPAIGN_CREATE": "campaign:create",
    "CAMPAIGN_UPDATE": "campaign:update",
    "CAMPAIGN_DELETE": "campaign:delete",
    "SYSTEM_SETTINGS": "system:settings",
    "SYSTEM_LOGS": "system:logs",
    "COPY_GENERATE": "copy:generate",
    "COPY_APPROVE": "copy:approve",
}

ALL_PERMISSIONS: List[str] = list(PERMISSIONS.values())

DEFAULT_ROLE = "viewer"

# admin ⊇ manager ⊇ editor ⊇ viewer
DEFAULT_ROLES: Dict[str, List[str]] = {
    "admin": list(ALL_PERMISSIONS),
    "manager": [
        "user:view",
        "client:view",
        "client:update",
        "asset:view",
        "asset:create",
        "asset:update",
        "campaign:view",
        "campaign:create",
        "campaign:update",
        "copy:generate",
        "copy:approve",
    ],
    "editor": [
        "client:view",
        "asset:view",
        "asset:create",
        "asset:update",
        "campaign:view",
        "campaign:update",
        "copy:generate",
    ],
    "viewer": [
        "client:view",
        "asset:view",
        "campaign:view",
    ],
}


def permissions_cache_key(user_id: str) -> str:
    return f"user:{user_id}:permissions"


class PermissionService:
    """Resolve effective permissions: role defaults plus per-user overrides.

    Results are cached in the key-value store for ``cache_ttl`` seconds. The
    cache is advisory; when it is unreachable every call recomputes from the
    credential store.
    """

    def __init__(
        self,
        store: CredentialStore,
        cache: RedisCache,
        *,
        cache_ttl: int = 15 * 60,
    ) -> None:
        self.store = store
        self.cache = cache
        self.cache_ttl = cache_ttl

    def get_role_permissions(self, role: Optional[str]) -> List[str]:
        if not role:
            return []
        try:
            stored = self.store.get_role(role)
        except Exception as exc:
            logger.warning("role_lookup_failed", role=role, error=str(exc))
            stored = None
        if stored is not None:
            return list(stored.permissions)
        return list(DEFAULT_ROLES.get(role, []))

    def _load_user(self, user_id: str) -> User:
        try:
            user = self.store.get_user(user_id)
        except Exception as exc:
            logger.error("user_permissions_lookup_failed", user_id=user_id, error=str(exc))
            raise ServerError("Failed to retrieve user permissions")
        if not user:
            raise ResourceNotFound("User not found", detail={"user_id": user_id})
        return user

    async def _read_cache(self, user_id: str) -> Optional[List[str]]:
        entry = await self.cache.get_json(permissions_cache_key(user_id))
        if not isinstance(entry, dict):
            return None
        permissions = entry.get("permissions")
        timestamp = entry.get("timestamp")
        if not isinstance(permissions, list) or not isinstance(timestamp, (int, float)):
            return None
        if time.time() - timestamp >= self.cache_ttl:
            return None
        return [p for p in permissions if isinstance(p, str)]

    async def get_user_permissions(self, user_id: str) -> List[str]:
        cached = await self._read_cache(user_id)
        if cached is not None:
            return cached

        user = self._load_user(user_id)
        role = user.role or DEFAULT_ROLE
        permissions = dedupe(
            [*self.get_role_permissions(role), *(user.custom_permissions or [])]
        )
        if self.cache_ttl > 0:
            await self.cache.set_json(
                permissions_cache_key(user_id),
                {"permissions": permissions, "timestamp": time.time()},
                ex=self.cache_ttl,
            )
        return permissions

    async def has_permission(self, user_id: str, permission: str) -> bool:
        return permission in await self.get_user_permissions(user_id)

    async def has_all_permissions(self, user_id: str, permissions: Iterable[str]) -> bool:
        granted = set(await self.get_user_permissions(user_id))
        return all(p in granted for p in permissions)

    async def has_any_permission(self, user_id: str, permissions: Iterable[str]) -> bool:
        granted = set(await self.get_user_permissions(user_id))
        return any(p in granted for p in permissions)

    async def invalidate_user_permissions_cache(self, user_id: str) -> None:
        await self.cache.delete(permissions_cache_key(user_id))
        logger.info("permissions_cache_invalidated", user_id=user_id)

    def get_user_role(self, user_id: str) -> str:
        return self._load_user(user_id).role or DEFAULT_ROLE

    def get_all_roles(self) -> List[Role]:
        try:
            stored = self.store.list_roles()
        except Exception as exc:
            logger.warning("role_list_failed", error=str(exc))
            stored = []
        if stored:
            return stored
        return [
            Role(name=name, description=f"{name.capitalize()} role", permissions=list(perms))
            for name, perms in DEFAULT_ROLES.items()
        ]

    async def set_user_role(self, user_id: str, role: str) -> User:
        known = set(DEFAULT_ROLES) | {r.name for r in self.get_all_roles()}
        if role not in known:
            raise ValidationError(f"Unknown role: {role}", detail={"roles": sorted(known)})
        user = self.store.update_user_role(user_id, role)
        if not user:
            raise ResourceNotFound("User not found", detail={"user_id": user_id})
        await self.invalidate_user_permissions_cache(user_id)
        logger.info("user_role_updated", user_id=user_id, role=role)
        return user

    async def set_custom_permissions(self, user_id: str, permissions: List[str]) -> User:
        user = self.store.set_custom_permissions(user_id, permissions)
        if not user:
            raise ResourceNotFound("User not found", detail={"user_id": user_id})
        await self.invalidate_user_permissions_cache(user_id)
        logger.info(
            "user_permissions_updated", user_id=user_id, count=len(user.custom_permissions)
        )
        return user
