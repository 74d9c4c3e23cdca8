from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from airwave.logging import get_logger
from airwave.storage.common import (
    dedupe,
    generate_uuid,
    normalize_email,
    parse_permission_list,
    safe_row_value,
)
from airwave.storage.errors import ConstraintViolation
from airwave.storage.models import Role, User

_REQUIRED_TABLES = ("users", "user_credentials", "roles")


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresStore:
    """Credential store over the ``users``, ``user_credentials`` and ``roles`` tables."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            self.logger.error("postgres_schema_missing", tables=sorted(missing))
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing))
                )
            )

    @staticmethod
    def _user_from_row(row: Any) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            role=safe_row_value(row, "role"),
            custom_permissions=parse_permission_list(
                safe_row_value(row, "custom_permissions")
            ),
            name=safe_row_value(row, "name"),
            is_active=bool(safe_row_value(row, "is_active", True)),
            created_at=safe_row_value(row, "created_at") or datetime.utcnow(),
        )

    @staticmethod
    def _role_from_row(row: Any) -> Role:
        return Role(
            name=row["name"],
            description=safe_row_value(row, "description") or "",
            permissions=parse_permission_list(safe_row_value(row, "permissions")),
        )

    def create_user(
        self,
        email: str,
        *,
        role: str = "viewer",
        name: Optional[str] = None,
        custom_permissions: Optional[List[str]] = None,
    ) -> User:
        user_id = generate_uuid()
        email = normalize_email(email)
        permissions = dedupe(custom_permissions or [])
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO users (id, email, name, role, custom_permissions)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, email, name, role, json.dumps(permissions)),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE users SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
                (role, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_custom_permissions(
        self, user_id: str, permissions: List[str]
    ) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE users SET custom_permissions = %s, updated_at = now()
                WHERE id = %s RETURNING *
                """,
                (json.dumps(dedupe(permissions)), user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        if not _is_uuid(user_id):
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_credentials (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_credentials WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    def get_role(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT name, description, permissions FROM roles WHERE name = %s",
                (name,),
            ).fetchone()
        return self._role_from_row(row) if row else None

    def list_roles(self) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT name, description, permissions FROM roles ORDER BY name"
            ).fetchall()
        return [self._role_from_row(row) for row in rows]
