"""Shared storage contracts and helpers for the memory and postgres backends.

Both backends implement :class:`CredentialStore`; the token and permission
services depend on that protocol only.
"""

from __future__ import annotations

import json
import uuid
from typing import Any, Iterable, List, Optional, Protocol

from airwave.storage.models import Role, User


class CredentialStore(Protocol):
    def create_user(
        self,
        email: str,
        *,
        role: str = "viewer",
        name: Optional[str] = None,
        custom_permissions: Optional[List[str]] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user_role(self, user_id: str, role: str) -> Optional[User]: ...

    def set_custom_permissions(
        self, user_id: str, permissions: List[str]
    ) -> Optional[User]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def get_role(self, name: str) -> Optional[Role]: ...

    def list_roles(self) -> List[Role]: ...


def normalize_email(email: str) -> str:
    return email.strip().lower()


def dedupe(values: Iterable[str]) -> List[str]:
    """Drop duplicates while keeping first-seen order."""
    seen: set[str] = set()
    result: List[str] = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result


def parse_permission_list(raw: Any) -> List[str]:
    """Parse a permission list stored as JSON text, a list, or NULL.

    Non-string entries are dropped and duplicates removed.
    """
    if raw is None:
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return []
    if not isinstance(raw, (list, tuple, set)):
        return []
    return dedupe(item for item in raw if isinstance(item, str) and item)


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Read ``key`` from a dict-like row, falling back to ``default``."""
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return default


def generate_uuid() -> str:
    return str(uuid.uuid4())
