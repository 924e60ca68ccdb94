# Overview: Transaction helpers shared by every service that mutates stock, sales or loyalty state.

from __future__ import annotations

import time
from typing import Callable, TypeVar

from sqlalchemy import text
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import PersistenceError
from ..extensions import db

T = TypeVar("T")


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; there the write lock comes
    from begin_write_transaction() and the version_id columns.
    """
    return query.with_for_update()


def begin_write_transaction() -> None:
    """
    On SQLite, take the database write lock up front (BEGIN IMMEDIATE).

    Without it two writers can both read the same stock level and only
    collide at commit. No-op on other dialects and when the connection
    is already inside a transaction.
    """
    if db.session.get_bind().dialect.name != "sqlite":
        return
    dbapi_conn = db.session.connection().connection.dbapi_connection
    if not dbapi_conn.in_transaction:
        db.session.execute(text("BEGIN IMMEDIATE"))


def run_with_retry(func: Callable[[], T], *, attempts: int = 3, backoff_base: float = 0.1) -> T:
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts).
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc


def run_in_transaction(func: Callable[[], T], *, description: str, attempts: int = 3) -> T:
    """
    Run func as one all-or-nothing unit of work and commit it.

    Any exception rolls the session back. Lock and staleness errors are
    retried; once retries are exhausted they, like any other storage
    failure, surface as PersistenceError. Domain errors pass through.
    """
    def _op() -> T:
        try:
            begin_write_transaction()
            result = func()
            db.session.commit()
            return result
        except BaseException:
            db.session.rollback()
            raise

    try:
        return run_with_retry(_op, attempts=attempts)
    except (SQLAlchemyError, StaleDataError) as exc:
        raise PersistenceError(f"Failed to {description}") from exc
