from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from airwave.logging import get_logger
from airwave.storage.common import dedupe, generate_uuid, normalize_email
from airwave.storage.errors import ConstraintViolation
from airwave.storage.models import Role, User, UserAuthCredential


class MemoryStore:
    """In-memory credential store for tests and local development.

    Records handed out are copies, so callers cannot mutate stored state
    without going through the store.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, UserAuthCredential] = {}
        self.roles: Dict[str, Role] = {}
        # RLock so helpers can nest acquisitions within one thread
        self._data_lock = threading.RLock()

    @staticmethod
    def _copy_user(user: Optional[User]) -> Optional[User]:
        if user is None:
            return None
        return replace(user, custom_permissions=list(user.custom_permissions))

    def create_user(
        self,
        email: str,
        *,
        role: str = "viewer",
        name: Optional[str] = None,
        custom_permissions: Optional[List[str]] = None,
    ) -> User:
        email = normalize_email(email)
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=generate_uuid(),
                email=email,
                role=role,
                name=name,
                custom_permissions=dedupe(custom_permissions or []),
            )
            self.users[user.id] = user
            return self._copy_user(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self._copy_user(self.users.get(user_id))

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = normalize_email(email)
        with self._data_lock:
            return self._copy_user(
                next((u for u in self.users.values() if u.email == email), None)
            )

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            return self._copy_user(user)

    def set_custom_permissions(
        self, user_id: str, permissions: List[str]
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.custom_permissions = dedupe(permissions)
            return self._copy_user(user)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            self.credentials.pop(user_id, None)
            return True

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            existing = self.credentials.get(user_id)
            self.credentials[user_id] = UserAuthCredential(
                user_id=user_id,
                password_hash=password_hash,
                password_algo=password_algo,
                created_at=existing.created_at if existing else datetime.utcnow(),
                last_updated_at=datetime.utcnow() if existing else None,
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            record = self.credentials.get(user_id)
            if not record or not record.password_hash or not record.password_algo:
                return None
            return record.password_hash, record.password_algo

    def upsert_role(
        self, name: str, permissions: List[str], description: str = ""
    ) -> Role:
        with self._data_lock:
            role = Role(name=name, description=description, permissions=dedupe(permissions))
            self.roles[name] = role
            self.logger.info("role_upserted", role=name, count=len(role.permissions))
            return replace(role, permissions=list(role.permissions))

    def get_role(self, name: str) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(name)
            if role is None:
                return None
            return replace(role, permissions=list(role.permissions))

    def list_roles(self) -> List[Role]:
        with self._data_lock:
            return [
                replace(role, permissions=list(role.permissions))
                for role in sorted(self.roles.values(), key=lambda r: r.name)
            ]
