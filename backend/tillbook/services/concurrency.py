# Overview: Retry and unique-key helpers shared by the write paths.

from __future__ import annotations

import time

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (database locked, deadlocks) and
    StaleDataError. Every failed attempt is rolled back before the next one.
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


def is_unique_violation(exc: IntegrityError, *markers: str) -> bool:
    """
    True when an IntegrityError was raised by one of the named unique keys.

    Drivers word this differently: PostgreSQL names the constraint, SQLite
    lists the columns ("UNIQUE constraint failed: transactions.store_id,
    transactions.transaction_number"). Pass both forms as markers.
    """
    message = str(getattr(exc, "orig", exc)).lower()
    if "unique" not in message and "duplicate" not in message:
        return False
    return any(marker.lower() in message for marker in markers)
