from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from psycopg import errors as pg_errors
from psycopg_pool import PoolTimeout

from account_service.domain.errors import (
    AccountNotFound,
    ConflictKind,
    HandleConflict,
    PhoneConflict,
    StorageFailure,
)
from account_service.repository import AccountRepository, classify_constraint
from account_service.telemetry.metrics import Metrics


def unique_violation(constraint: str | None) -> pg_errors.UniqueViolation:
    class _Violation(pg_errors.UniqueViolation):
        diag = SimpleNamespace(constraint_name=constraint)

    return _Violation("duplicate key value violates unique constraint")


class FakeCursor:
    def __init__(self, conn: "FakeConnection") -> None:
        self._conn = conn

    def __enter__(self) -> "FakeCursor":
        return self

    def __exit__(self, *exc) -> None:
        return None

    def execute(self, query, params=None) -> None:
        self._conn.statements.append((" ".join(query.split()), params))
        if self._conn.error is not None:
            raise self._conn.error

    def fetchone(self):
        return self._conn.row

    @property
    def rowcount(self) -> int:
        return self._conn.rowcount


class FakeConnection:
    def __init__(self, *, row=None, rowcount: int = 1, error: Exception | None = None) -> None:
        self.row = row
        self.rowcount = rowcount
        self.error = error
        self.statements: list[tuple[str, object]] = []
        self.settings: list[tuple] = []
        self.committed = False

    def cursor(self, row_factory=None) -> FakeCursor:
        return FakeCursor(self)

    def execute(self, query, params=None) -> None:
        self.settings.append(params)

    def commit(self) -> None:
        self.committed = True


class FakePool:
    def __init__(self, conn: FakeConnection | None = None, checkout_error: Exception | None = None) -> None:
        self.conn = conn or FakeConnection()
        self.checkout_error = checkout_error
        self.timeouts: list[float | None] = []

    @contextmanager
    def connection(self, timeout=None):
        self.timeouts.append(timeout)
        if self.checkout_error is not None:
            raise self.checkout_error
        yield self.conn


def make_row(account_id: uuid.UUID, handle: str = "@nick", deleted_at=None) -> tuple:
    now = datetime.now(timezone.utc)
    return (account_id, handle, "+15551234567", now, now, deleted_at)


def db_count(metrics: Metrics, method: str, status: str) -> float | None:
    return metrics.registry.get_sample_value(
        "account_db_queries_total", {"method": method, "status": status}
    )


@pytest.fixture
def metrics() -> Metrics:
    return Metrics()


def test_classify_constraint():
    assert classify_constraint("accounts_handle_key") is ConflictKind.handle
    assert classify_constraint("accounts_phone_key") is ConflictKind.phone
    assert classify_constraint("accounts_pkey") is ConflictKind.unknown
    assert classify_constraint(None) is ConflictKind.unknown


def test_create_returns_stored_account(metrics):
    account_id = uuid.uuid4()
    conn = FakeConnection(row=make_row(account_id, "@fresh"))
    repo = AccountRepository(FakePool(conn), metrics)

    account = repo.create(account_id, "@fresh", "+15551234567")

    assert account.account_id == account_id
    assert account.handle == "@fresh"
    assert account.is_active
    assert conn.committed
    query, params = conn.statements[0]
    assert query.startswith("INSERT INTO accounts (id, handle, phone)")
    assert params == (account_id, "@fresh", "+15551234567")
    assert db_count(metrics, "create", "ok") == 1.0
    assert metrics.registry.get_sample_value(
        "account_db_query_duration_seconds_count", {"method": "create", "status": "ok"}
    ) == 1.0


@pytest.mark.parametrize(
    ("constraint", "expected"),
    [
        ("accounts_handle_key", HandleConflict),
        ("accounts_phone_key", PhoneConflict),
        (None, HandleConflict),
        ("some_other_key", HandleConflict),
    ],
)
def test_create_maps_unique_violation_by_constraint(metrics, constraint, expected):
    conn = FakeConnection(error=unique_violation(constraint))
    repo = AccountRepository(FakePool(conn), metrics)

    with pytest.raises(expected) as excinfo:
        repo.create(uuid.uuid4(), "@nick", "+15551234567")

    assert isinstance(excinfo.value.__cause__, pg_errors.UniqueViolation)
    assert db_count(metrics, "create", "conflict") == 1.0


def test_create_wraps_other_database_errors(metrics):
    conn = FakeConnection(error=pg_errors.OperationalError("server closed the connection"))
    repo = AccountRepository(FakePool(conn), metrics)

    with pytest.raises(StorageFailure) as excinfo:
        repo.create(uuid.uuid4(), "@nick", "+15551234567")

    assert "server closed" not in str(excinfo.value)
    assert db_count(metrics, "create", "error") == 1.0


def test_pool_timeout_is_storage_failure(metrics):
    repo = AccountRepository(FakePool(checkout_error=PoolTimeout("couldn't get a connection")), metrics)

    with pytest.raises(StorageFailure):
        repo.get_by_id(uuid.uuid4(), timeout=0.01)
    assert db_count(metrics, "get_by_id", "error") == 1.0


def test_get_by_id_filters_deleted_rows(metrics):
    account_id = uuid.uuid4()
    conn = FakeConnection(row=make_row(account_id))
    repo = AccountRepository(FakePool(conn), metrics)

    account = repo.get_by_id(account_id)

    assert account.account_id == account_id
    query, params = conn.statements[0]
    assert "WHERE id = %s AND deleted_at IS NULL" in query
    assert params == (account_id,)
    assert db_count(metrics, "get_by_id", "ok") == 1.0


def test_get_by_id_missing_row_is_not_found(metrics):
    repo = AccountRepository(FakePool(FakeConnection(row=None)), metrics)

    with pytest.raises(AccountNotFound):
        repo.get_by_id(uuid.uuid4())
    assert db_count(metrics, "get_by_id", "not_found") == 1.0


def test_update_handle_only_touches_active_rows(metrics):
    account_id = uuid.uuid4()
    conn = FakeConnection(row=make_row(account_id, "@renamed"))
    repo = AccountRepository(FakePool(conn), metrics)

    account = repo.update_handle(account_id, "@renamed")

    assert account.handle == "@renamed"
    query, params = conn.statements[0]
    assert "updated_at = NOW()" in query
    assert "WHERE id = %s AND deleted_at IS NULL" in query
    assert params == ("@renamed", account_id)
    assert db_count(metrics, "update_handle", "ok") == 1.0


def test_update_handle_missing_row_is_not_found(metrics):
    repo = AccountRepository(FakePool(FakeConnection(row=None)), metrics)

    with pytest.raises(AccountNotFound):
        repo.update_handle(uuid.uuid4(), "@renamed")
    assert db_count(metrics, "update_handle", "not_found") == 1.0


def test_update_handle_conflict(metrics):
    conn = FakeConnection(error=unique_violation("accounts_handle_key"))
    repo = AccountRepository(FakePool(conn), metrics)

    with pytest.raises(HandleConflict):
        repo.update_handle(uuid.uuid4(), "@taken")
    assert db_count(metrics, "update_handle", "conflict") == 1.0


def test_delete_sets_deleted_at_on_active_row(metrics):
    account_id = uuid.uuid4()
    conn = FakeConnection(rowcount=1)
    repo = AccountRepository(FakePool(conn), metrics)

    assert repo.delete(account_id) is None

    query, params = conn.statements[0]
    assert "SET deleted_at = NOW(), updated_at = NOW()" in query
    assert "WHERE id = %s AND deleted_at IS NULL" in query
    assert params == (account_id,)
    assert conn.committed
    assert db_count(metrics, "delete", "ok") == 1.0


def test_delete_without_affected_rows_is_not_found(metrics):
    repo = AccountRepository(FakePool(FakeConnection(rowcount=0)), metrics)

    with pytest.raises(AccountNotFound):
        repo.delete(uuid.uuid4())
    assert db_count(metrics, "delete", "not_found") == 1.0


def test_timeout_bounds_checkout_and_statement():
    account_id = uuid.uuid4()
    pool = FakePool(FakeConnection(row=make_row(account_id)))
    repo = AccountRepository(pool)

    repo.get_by_id(account_id, timeout=1.5)

    assert pool.timeouts == [1.5]
    assert pool.conn.settings == [("1500ms",)]


def test_no_timeout_leaves_statement_timeout_alone():
    account_id = uuid.uuid4()
    pool = FakePool(FakeConnection(row=make_row(account_id)))
    repo = AccountRepository(pool)

    repo.get_by_id(account_id)

    assert pool.timeouts == [None]
    assert pool.conn.settings == []
