from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import psycopg
import pytest
from psycopg import errors
from psycopg_pool import PoolTimeout

from shield.logging import get_logger
from shield.storage.errors import ConstraintViolation, StoreError
from shield.storage.postgres import PostgresStore

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, row):
        self.row = row

    def fetchone(self):
        return self.row


class FakeConnection:
    """Records statements and answers them from a scripted queue of rows."""

    def __init__(self, rows=(), fail_with=None):
        self.rows = list(rows)
        self.fail_with = fail_with
        self.statements = []
        self.committed = False
        self.rolled_back = False

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    @contextmanager
    def transaction(self):
        try:
            yield
        except BaseException:
            self.rolled_back = True
            raise
        self.committed = True

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if "set_config" in sql:
            return FakeCursor(None)
        if self.fail_with is not None:
            raise self.fail_with
        return FakeCursor(self.rows.pop(0) if self.rows else None)


class DummyPool:
    def __init__(self, conn=None, fail_with=None):
        self.conn = conn
        self.fail_with = fail_with

    def connection(self, timeout=None):
        if self.fail_with is not None:
            raise self.fail_with
        if self.conn is None:
            raise AssertionError("database access should be stubbed in unit tests")
        return self.conn

    def close(self):
        pass


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unit-test"
    store.timeout_seconds = 2.5
    store.logger = get_logger("test")
    store.pool = pool
    return store


def _session_row(updated_at=NOW):
    return {"id": "sess-1", "user_id": "user-1", "created_at": NOW, "updated_at": updated_at}


def test_transaction_applies_statement_timeout():
    conn = FakeConnection()
    store = _store(DummyPool(conn))

    with store.transaction():
        pass

    sql, params = conn.statements[0]
    assert "set_config('statement_timeout'" in sql
    assert params == ("2500",)
    assert conn.committed


def test_transaction_rolls_back_on_error():
    conn = FakeConnection()
    store = _store(DummyPool(conn))

    with pytest.raises(RuntimeError):
        with store.transaction():
            raise RuntimeError("abort")

    assert conn.rolled_back
    assert not conn.committed


@pytest.mark.parametrize(
    "exc",
    [psycopg.OperationalError("connection refused"), PoolTimeout("pool exhausted")],
)
def test_infrastructure_errors_become_store_error(exc):
    store = _store(DummyPool(fail_with=exc))

    with pytest.raises(StoreError) as excinfo:
        with store.transaction():
            pass
    assert excinfo.value.detail["error_type"] == type(exc).__name__


def test_statement_timeout_mid_transaction_becomes_store_error():
    conn = FakeConnection(fail_with=errors.QueryCanceled("canceling statement due to statement timeout"))
    store = _store(DummyPool(conn))

    with pytest.raises(StoreError):
        with store.transaction() as tx:
            tx.get_session("sess-1")
    assert conn.rolled_back


def test_get_and_touch_session_map_rows():
    later = NOW + timedelta(seconds=1)
    conn = FakeConnection(rows=[_session_row(), _session_row(later)])
    store = _store(DummyPool(conn))

    with store.transaction() as tx:
        session = tx.get_session("sess-1")
        touched = tx.touch_session("sess-1")

    assert session.id == "sess-1"
    assert session.user_id == "user-1"
    assert touched.updated_at == later
    assert "GREATEST(clock_timestamp()" in conn.statements[2][0]


def test_delete_missing_session_returns_none():
    conn = FakeConnection(rows=[None])
    store = _store(DummyPool(conn))

    with store.transaction() as tx:
        assert tx.delete_session("missing") is None
    assert conn.statements[1][0].startswith("DELETE FROM auth_session")


def test_create_session_for_missing_user():
    conn = FakeConnection(fail_with=errors.ForeignKeyViolation("fk"))
    store = _store(DummyPool(conn))

    with pytest.raises(ConstraintViolation):
        with store.transaction() as tx:
            tx.create_session("missing")
    assert conn.rolled_back


def test_get_user_by_email_normalizes():
    row = {
        "id": "user-1",
        "email": "a@x.com",
        "role": "admin",
        "tenant_id": "acme",
        "created_at": NOW,
        "is_active": True,
    }
    conn = FakeConnection(rows=[row])
    store = _store(DummyPool(conn))

    with store.transaction() as tx:
        user = tx.get_user_by_email("  A@X.com ")

    assert conn.statements[1][1] == ("a@x.com",)
    assert user.role == "admin"
    assert user.tenant_id == "acme"


def test_password_record_tuple():
    conn = FakeConnection(rows=[{"password_hash": "$argon2id$h", "password_algo": "argon2id"}])
    store = _store(DummyPool(conn))

    with store.transaction() as tx:
        assert tx.get_password_record("user-1") == ("$argon2id$h", "argon2id")


def test_missing_tables_reported():
    conn = FakeConnection(rows=[{"oid": "app_user"}, {"oid": None}, {"oid": None}])
    store = _store(DummyPool(conn))

    with pytest.raises(RuntimeError) as excinfo:
        store._verify_required_schema()
    assert "auth_session" in str(excinfo.value)
    assert "user_auth_credential" in str(excinfo.value)
