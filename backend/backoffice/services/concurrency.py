# Overview: Locking and retry helpers shared by every mutating service.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import ConflictError, DependencyError
from ..extensions import db


class RetryableConflict(Exception):
    """A unique-key race that is resolved by re-running the whole operation."""


RETRYABLE_ERRORS = (OperationalError, StaleDataError, RetryableConflict)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; begin_write() covers it there.
    """
    return query.with_for_update()


def begin_write() -> None:
    """
    Take the database write lock up front on SQLite (BEGIN IMMEDIATE).

    Concurrent writers then queue on the lock instead of interleaving their
    read-validate-write sequences. No-op on other dialects, and when the
    connection already holds an open transaction.
    """
    if db.engine.dialect.name != "sqlite":
        return
    raw = db.session.connection().connection.driver_connection
    if not raw.in_transaction:
        db.session.execute(text("BEGIN IMMEDIATE"))


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float | None = None):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (locks), StaleDataError (optimistic version
    conflicts) and RetryableConflict (sequence races). Any other exception
    rolls the session back and propagates, so a failed call never leaves
    partial writes behind.
    """
    if attempts is None:
        attempts = current_app.config.get("DB_RETRY_ATTEMPTS", 3)
    if backoff_base is None:
        backoff_base = current_app.config.get("DB_RETRY_BACKOFF", 0.1)

    for attempt in range(attempts):
        try:
            return func()
        except RETRYABLE_ERRORS as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise _exhausted(exc) from exc
            current_app.logger.info(
                "Retrying after %s (attempt %d of %d)", type(exc).__name__, attempt + 1, attempts
            )
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise


def _exhausted(exc: Exception) -> Exception:
    if isinstance(exc, OperationalError):
        return DependencyError("Database unavailable, please retry", details={"cause": type(exc).__name__})
    return ConflictError(
        "The record was modified concurrently, please retry",
        details={"cause": type(exc).__name__},
    )
