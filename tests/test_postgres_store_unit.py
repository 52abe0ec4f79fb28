import contextlib
from datetime import datetime, timezone

import psycopg
import pytest
from psycopg import errors

from tokenauth.logging import get_logger
from tokenauth.storage.errors import ConstraintViolation, StoreError
from tokenauth.storage.postgres import PostgresStore

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeResult:
    def __init__(self, row=None, rowcount=0):
        self._row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self._row


class FakeConnection:
    def __init__(self, result=None, error=None):
        self.result = result or FakeResult()
        self.error = error
        self.executed = []

    def execute(self, query, params=None):
        self.executed.append((" ".join(query.split()), params))
        if self.error is not None:
            raise self.error
        return self.result


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @contextlib.contextmanager
    def connection(self):
        yield self.conn


def _store(conn) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://test"
    store.logger = get_logger("tests.postgres")
    store.pool = FakePool(conn)
    return store


def _token_row(**overrides):
    row = {
        "id": 3,
        "user_id": 1,
        "device": "laptop",
        "hash": "h",
        "issued_at": NOW,
        "deleted_at": None,
    }
    row.update(overrides)
    return row


def test_ensure_schema_creates_tables():
    conn = FakeConnection()
    _store(conn)._ensure_schema()

    statements = [query for query, _ in conn.executed]
    assert any("CREATE TABLE IF NOT EXISTS app_user" in q for q in statements)
    assert any("CREATE TABLE IF NOT EXISTS user_token" in q for q in statements)


def test_find_refresh_token_filters_revoked():
    conn = FakeConnection(FakeResult(_token_row()))
    record = _store(conn).find_refresh_token(3)

    query, params = conn.executed[0]
    assert "deleted_at IS NULL" in query
    assert params == (3,)
    assert record.id == 3
    assert record.device == "laptop"
    assert record.issued_at == NOW


def test_find_refresh_token_missing():
    conn = FakeConnection(FakeResult(None))
    assert _store(conn).find_refresh_token(3) is None


def test_renew_without_previous_hash():
    conn = FakeConnection(FakeResult({"issued_at": NOW}))
    issued_at = _store(conn).renew_refresh_token(3, "new")

    query, params = conn.executed[0]
    assert issued_at == NOW
    assert query.endswith("RETURNING issued_at")
    assert "AND hash = %s" not in query
    assert params == ("new", 3)


def test_renew_with_previous_hash_compares_in_update():
    conn = FakeConnection(FakeResult({"issued_at": NOW}))
    _store(conn).renew_refresh_token(3, "new", previous_hash="old")

    query, params = conn.executed[0]
    assert "AND hash = %s" in query
    assert params == ("new", 3, "old")


def test_renew_lost_returns_none():
    conn = FakeConnection(FakeResult(None))
    assert _store(conn).renew_refresh_token(3, "new", previous_hash="old") is None


def test_revoke_user_refresh_tokens_returns_rowcount():
    conn = FakeConnection(FakeResult(rowcount=4))
    assert _store(conn).revoke_user_refresh_tokens(1) == 4


def test_connection_errors_become_store_errors():
    conn = FakeConnection(error=psycopg.OperationalError("connection refused"))

    with pytest.raises(StoreError) as excinfo:
        _store(conn).get_user(1)

    assert excinfo.value.detail == {"error_type": "OperationalError"}


def test_duplicate_username_is_constraint_violation():
    conn = FakeConnection(error=errors.UniqueViolation("duplicate key"))

    with pytest.raises(ConstraintViolation):
        _store(conn).create_user("alice")


def test_missing_user_is_constraint_violation():
    conn = FakeConnection(error=errors.ForeignKeyViolation("missing user"))

    with pytest.raises(ConstraintViolation):
        _store(conn).create_refresh_token(99, "", "h")


def test_user_row_mapping():
    row = {
        "id": 1,
        "username": "alice",
        "name": None,
        "avatar": "a.png",
        "created_at": NOW,
        "updated_at": NOW,
    }
    conn = FakeConnection(FakeResult(row))

    user = _store(conn).get_user_by_username("alice")

    assert user.name == ""
    assert user.avatar == "a.png"
