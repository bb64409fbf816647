from __future__ import annotations

import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from benefitsai.logging import get_logger
from benefitsai.storage.errors import BackendUnavailable, ConstraintViolation
from benefitsai.storage.models import Company, User

_REQUIRED_TABLES = ("company", "app_user")


class PostgresStore:
    """Postgres-backed user and company directory."""

    def __init__(self, dsn: str, *, timeout: float = 5.0) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=timeout,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(1, int(timeout)),
            },
        )
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        # Pool exhaustion (PoolTimeout) and dropped connections are both OperationalError
        try:
            with self.pool.connection() as conn:
                yield conn
        except psycopg.OperationalError as exc:
            self.logger.error("postgres_unavailable", error_type=type(exc).__name__)
            raise BackendUnavailable("postgres", exc) from exc

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT table_name FROM information_schema.tables WHERE table_name = ANY(%s)",
                (list(_REQUIRED_TABLES),),
            ).fetchall()
        present = {row["table_name"] for row in rows}
        missing = [t for t in _REQUIRED_TABLES if t not in present]
        if missing:
            self.logger.error("postgres_schema_missing", tables=missing)
            raise RuntimeError(f"database schema missing tables: {', '.join(missing)}")

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        company_id = row.get("company_id")
        return User(
            id=str(row["id"]),
            email=row["email"],
            role=row.get("role") or "employee",
            company_id=str(company_id) if company_id else None,
            is_active=row.get("is_active", True),
            display_name=row.get("display_name"),
            created_at=row["created_at"],
        )

    def create_company(self, name: str, *, company_id: Optional[str] = None) -> Company:
        company = Company(id=company_id or str(uuid.uuid4()), name=name)
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO company (id, name, is_active) VALUES (%s, %s, %s)",
                    (company.id, company.name, company.is_active),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("company already exists", {"field": "id"})
        return company

    def get_company(self, company_id: str) -> Optional[Company]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM company WHERE id = %s", (company_id,)
            ).fetchone()
        if not row:
            return None
        return Company(
            id=str(row["id"]),
            name=row["name"],
            is_active=row.get("is_active", True),
            created_at=row["created_at"],
        )

    def create_user(
        self,
        email: Optional[str],
        *,
        user_id: Optional[str] = None,
        role: str = "employee",
        company_id: Optional[str] = None,
        display_name: Optional[str] = None,
        is_active: bool = True,
    ) -> User:
        new_id = user_id or str(uuid.uuid4())
        normalized_email = email.strip().lower() if email else None
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, role, company_id, display_name, is_active)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id, normalized_email, role, company_id, display_name, is_active),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def list_users(
        self, company_id: Optional[str] = None, limit: int = 100
    ) -> List[User]:
        with self._connect() as conn:
            if company_id:
                rows = conn.execute(
                    "SELECT * FROM app_user WHERE company_id = %s ORDER BY created_at DESC LIMIT %s",
                    (company_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s", (limit,)
                ).fetchall()
        return [self._user_from_row(row) for row in rows]

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s WHERE id = %s RETURNING *",
                (role, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_active = %s WHERE id = %s RETURNING *",
                (is_active, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def close(self) -> None:
        self.pool.close()
