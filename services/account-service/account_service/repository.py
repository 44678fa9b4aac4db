"""Database repository for account identities."""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import contextmanager
from typing import Iterator

import psycopg
from opentelemetry import trace
from psycopg import errors as pg_errors
from psycopg.rows import tuple_row
from psycopg_pool import ConnectionPool

from .domain.account import Account
from .domain.errors import (
    AccountConflict,
    AccountNotFound,
    ConflictKind,
    StorageFailure,
    conflict_for,
)
from .telemetry.metrics import Metrics

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

HANDLE_CONSTRAINT = "accounts_handle_key"
PHONE_CONSTRAINT = "accounts_phone_key"

_COLUMNS = "id, handle, phone, created_at, updated_at, deleted_at"


def classify_constraint(constraint_name: str | None) -> ConflictKind:
    """Map the name of a violated unique constraint to a :class:`ConflictKind`."""
    if constraint_name == HANDLE_CONSTRAINT:
        return ConflictKind.handle
    if constraint_name == PHONE_CONSTRAINT:
        return ConflictKind.phone
    return ConflictKind.unknown


class AccountRepository:
    """Postgres-backed account persistence.

    Uniqueness of handle and phone is enforced by table constraints; the
    repository only reinterprets the store's rejection. Every public method
    records one outcome and one latency observation, and accepts an optional
    ``timeout`` (seconds) bounding both the pool checkout and the statement.
    """

    def __init__(self, pool: ConnectionPool, metrics: Metrics | None = None) -> None:
        """Store the connection pool and the metrics sink used by every call."""
        self._pool = pool
        self._metrics = metrics

    def create(
        self,
        account_id: uuid.UUID,
        handle: str,
        phone: str,
        *,
        timeout: float | None = None,
    ) -> Account:
        """Insert a new account row and return it as stored."""
        with self._observe("create"):
            with self._connection(timeout) as conn:
                with conn.cursor(row_factory=tuple_row) as cur:
                    cur.execute(
                        f"""
                        INSERT INTO accounts (id, handle, phone)
                        VALUES (%s, %s, %s)
                        RETURNING {_COLUMNS}
                        """,
                        (account_id, handle, phone),
                    )
                    row = cur.fetchone()
                conn.commit()
            return self._map_record(row)

    def get_by_id(self, account_id: uuid.UUID, *, timeout: float | None = None) -> Account:
        """Fetch an active account; deleted or missing rows raise ``AccountNotFound``."""
        with self._observe("get_by_id"):
            with self._connection(timeout) as conn:
                with conn.cursor(row_factory=tuple_row) as cur:
                    cur.execute(
                        f"""
                        SELECT {_COLUMNS}
                        FROM accounts
                        WHERE id = %s AND deleted_at IS NULL
                        """,
                        (account_id,),
                    )
                    row = cur.fetchone()
            if row is None:
                raise AccountNotFound()
            return self._map_record(row)

    def update_handle(
        self,
        account_id: uuid.UUID,
        handle: str,
        *,
        timeout: float | None = None,
    ) -> Account:
        """Change the handle of an active account and advance ``updated_at``."""
        with self._observe("update_handle"):
            with self._connection(timeout) as conn:
                with conn.cursor(row_factory=tuple_row) as cur:
                    cur.execute(
                        f"""
                        UPDATE accounts
                        SET handle = %s,
                            updated_at = NOW()
                        WHERE id = %s AND deleted_at IS NULL
                        RETURNING {_COLUMNS}
                        """,
                        (handle, account_id),
                    )
                    row = cur.fetchone()
                conn.commit()
            if row is None:
                raise AccountNotFound()
            return self._map_record(row)

    def delete(self, account_id: uuid.UUID, *, timeout: float | None = None) -> None:
        """Soft-delete an active account by stamping ``deleted_at``."""
        with self._observe("delete"):
            with self._connection(timeout) as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        UPDATE accounts
                        SET deleted_at = NOW(),
                            updated_at = NOW()
                        WHERE id = %s AND deleted_at IS NULL
                        """,
                        (account_id,),
                    )
                    affected = cur.rowcount
                conn.commit()
            if affected == 0:
                raise AccountNotFound()

    @contextmanager
    def _connection(self, timeout: float | None) -> Iterator[psycopg.Connection]:
        with self._pool.connection(timeout=timeout) as conn:
            if timeout is not None:
                conn.execute(
                    "SELECT set_config('statement_timeout', %s, true)",
                    (f"{max(int(timeout * 1000), 1)}ms",),
                )
            yield conn

    @contextmanager
    def _observe(self, operation: str) -> Iterator[None]:
        """Translate psycopg errors into domain errors and record the outcome."""
        status = "ok"
        start = time.perf_counter()
        with tracer.start_as_current_span(f"db.{operation}") as span:
            span.set_attribute("db.system", "postgresql")
            span.set_attribute("db.operation", operation)
            try:
                try:
                    yield
                except pg_errors.UniqueViolation as exc:
                    kind = classify_constraint(exc.diag.constraint_name)
                    raise conflict_for(kind) from exc
                except psycopg.Error as exc:
                    logger.warning("%s failed: %s", operation, exc)
                    raise StorageFailure() from exc
            except AccountConflict:
                status = "conflict"
                raise
            except AccountNotFound:
                status = "not_found"
                raise
            except BaseException:
                status = "error"
                raise
            finally:
                span.set_attribute("account.outcome", status)
                if self._metrics is not None:
                    self._metrics.observe_db(operation, status, time.perf_counter() - start)

    def _map_record(self, row: tuple) -> Account:
        """Convert a raw database tuple into the domain ``Account`` dataclass."""
        return Account(
            account_id=row[0],
            handle=row[1],
            phone=row[2],
            created_at=row[3],
            updated_at=row[4],
            deleted_at=row[5],
        )
