# Overview: Transaction helpers; every mutation and its audit entry commit or roll back together.

from __future__ import annotations

import logging
import time

from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..validation import StorageError

logger = logging.getLogger(__name__)


def lock_for_update(query):
    """
    Apply row-level locking for read-then-check-then-write sequences.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; there the Order.version_id
    column catches the lost update instead.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). func must re-read whatever it checks.
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
            logger.info("Retrying after concurrency conflict (attempt %d): %s", attempt + 1, exc)
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc


def run_atomic(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Run func (which mutates, records audit and commits) as one unit.

    Any failure rolls the session back, so a mutation never commits
    without its audit entry. Store failures surface as StorageError.
    """
    try:
        return run_with_retry(func, attempts=attempts, backoff_base=backoff_base)
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("Storage failure, operation rolled back: %s", exc)
        raise StorageError("The operation could not be saved; nothing was changed") from exc
    except Exception:
        db.session.rollback()
        raise
