# Overview: Locking and retry helpers shared by every write operation.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import ConsistencyConflict
from ..extensions import db


class RetryableConflict(Exception):
    """Raised inside an operation to ask run_with_retry for a fresh attempt."""


# Postgres: serialization_failure, deadlock_detected, lock_not_available
_RETRYABLE_PGCODES = {"40001", "40P01", "55P03"}
_RETRYABLE_MESSAGES = ("database is locked", "deadlock", "could not serialize")


def is_retryable(exc: Exception) -> bool:
    if isinstance(exc, (StaleDataError, RetryableConflict)):
        return True
    if isinstance(exc, OperationalError):
        pgcode = getattr(exc.orig, "pgcode", None)
        if pgcode in _RETRYABLE_PGCODES:
            return True
        message = str(exc.orig).lower()
        return any(marker in message for marker in _RETRYABLE_MESSAGES)
    return False


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; begin_serialized() covers it there.
    """
    return query.with_for_update()


def begin_serialized() -> None:
    """
    Take the database write lock up front on SQLite.

    pysqlite opens transactions lazily, so two writers could both read the
    same stock or return totals before either writes. BEGIN IMMEDIATE makes
    the second writer wait (busy timeout) instead. No-op on other backends,
    where lock_for_update() does the job.
    """
    connection = db.session.connection()
    if connection.dialect.name != "sqlite":
        return
    raw = connection.connection.driver_connection
    if not raw.in_transaction:
        connection.exec_driver_sql("BEGIN IMMEDIATE")


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float | None = None):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on lock contention, optimistic locking conflicts (StaleDataError)
    and RetryableConflict. Every failure rolls the session back so no partial
    write and no held write lock survives. When attempts run out the caller
    gets ConsistencyConflict; non-retryable errors propagate unchanged.
    """
    config = current_app.config
    if attempts is None:
        attempts = int(config.get("RETRY_ATTEMPTS", 3))
    if backoff_base is None:
        backoff_base = float(config.get("RETRY_BACKOFF_SECONDS", 0.1))

    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except Exception as exc:
            db.session.rollback()
            if not is_retryable(exc):
                raise
            last_exc = exc
            if attempt >= attempts - 1:
                break
            current_app.logger.warning(
                "Concurrent write conflict (attempt %s/%s): %s", attempt + 1, attempts, exc
            )
            time.sleep(backoff_base * (2 ** attempt))

    raise ConsistencyConflict(
        "Concurrent modification detected; retry the operation",
        {"attempts": attempts, "cause": type(last_exc).__name__},
    ) from last_exc
