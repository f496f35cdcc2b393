# Overview: Transaction, row-locking and retry helpers shared by every state-changing service.

from __future__ import annotations

import logging
import time

from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from .errors import OperationResult, ServiceError, TRANSACTION_ABORTED

logger = logging.getLogger(__name__)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    The version_id columns still catch lost updates there.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1, retry_on: tuple = ()):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts), plus any extra exception types in
    retry_on (e.g., IntegrityError when two writers create the same
    sequence row). func must be a complete unit of work: it is re-run
    from scratch after a rollback.
    """
    retryable = (OperationalError, StaleDataError) + tuple(retry_on)
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except retryable as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            logger.info("Retrying after %s (attempt %d/%d)", type(exc).__name__, attempt + 1, attempts)
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc


def run_transaction(func, *, attempts: int = 3, backoff_base: float = 0.1, retry_on: tuple = ()) -> OperationResult:
    """
    Run a unit of work and report the outcome as an OperationResult.

    - func commits on success and returns the success value
    - ServiceError -> rollback, failed result with the error kind
    - SQLAlchemyError (after retries) -> rollback, TRANSACTION_ABORTED, retryable
    - anything else -> rollback and re-raise
    """
    try:
        value = run_with_retry(func, attempts=attempts, backoff_base=backoff_base, retry_on=retry_on)
    except ServiceError as exc:
        db.session.rollback()
        logger.info("Operation rejected: %s (%s)", exc.message, exc.kind)
        return OperationResult.failure(exc.kind, exc.message)
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Transaction aborted")
        return OperationResult.failure(
            TRANSACTION_ABORTED,
            "The operation could not be completed, please retry",
            retryable=True,
        )
    except Exception:
        db.session.rollback()
        raise
    return OperationResult.success(value)
