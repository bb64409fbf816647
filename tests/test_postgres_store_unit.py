from contextlib import contextmanager
from datetime import datetime, timezone

import psycopg
import pytest
from psycopg import errors

from benefitsai.logging import get_logger
from benefitsai.storage.errors import BackendUnavailable, ConstraintViolation
from benefitsai.storage.postgres import PostgresStore


class DummyCursor:
    def __init__(self, rows):
        self._rows = rows

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class DummyConnection:
    def __init__(self, pool):
        self.pool = pool

    def execute(self, sql, params=None):
        self.pool.executed.append((" ".join(sql.split()), params))
        if self.pool.error is not None:
            raise self.pool.error
        return DummyCursor(self.pool.rows)


class DummyPool:
    def __init__(self, rows=None, error=None):
        self.rows = rows or []
        self.error = error
        self.executed = []

    @contextmanager
    def connection(self):
        yield DummyConnection(self)


def _store(pool):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.dsn = "postgresql://test"
    store.logger = get_logger("test")
    return store


def _row(**overrides):
    row = {
        "id": "user-1",
        "email": "pat@example.com",
        "role": "hr_admin",
        "company_id": "acme",
        "is_active": True,
        "display_name": None,
        "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
    }
    row.update(overrides)
    return row


def test_get_user_maps_row_to_model():
    pool = DummyPool(rows=[_row()])

    user = _store(pool).get_user("user-1")

    assert user.id == "user-1"
    assert user.role == "hr_admin"
    assert user.company_id == "acme"
    assert pool.executed == [("SELECT * FROM app_user WHERE id = %s", ("user-1",))]


def test_get_user_by_email_normalizes_address():
    pool = DummyPool(rows=[])

    assert _store(pool).get_user_by_email("  Pat@Example.COM ") is None
    assert pool.executed[0][1] == ("pat@example.com",)


def test_create_user_translates_unique_violation():
    pool = DummyPool(error=errors.UniqueViolation("duplicate key"))

    with pytest.raises(ConstraintViolation):
        _store(pool).create_user("pat@example.com", user_id="user-1")


def test_list_users_scopes_by_company():
    pool = DummyPool(rows=[_row(), _row(id="user-2", role=None)])

    users = _store(pool).list_users(company_id="acme", limit=10)

    assert [u.id for u in users] == ["user-1", "user-2"]
    assert users[1].role == "employee"
    sql, params = pool.executed[0]
    assert "WHERE company_id = %s" in sql
    assert params == ("acme", 10)


def test_update_role_and_active_flag_return_updated_rows():
    pool = DummyPool(rows=[_row(role="company_admin", is_active=False)])
    store = _store(pool)

    assert store.update_user_role("user-1", "company_admin").role == "company_admin"
    assert store.set_user_active("user-1", False).is_active is False
    assert pool.executed[0][1] == ("company_admin", "user-1")
    assert pool.executed[1][1] == (False, "user-1")


def test_missing_schema_fails_fast():
    pool = DummyPool(rows=[{"table_name": "company"}])

    with pytest.raises(RuntimeError, match="app_user"):
        _store(pool)._verify_required_schema()


def test_connection_failures_raise_backend_unavailable():
    pool = DummyPool(error=psycopg.OperationalError("server closed the connection unexpectedly"))
    store = _store(pool)

    with pytest.raises(BackendUnavailable) as excinfo:
        store.get_user("user-1")

    assert excinfo.value.operation == "postgres"
    assert isinstance(excinfo.value.__cause__, psycopg.OperationalError)
