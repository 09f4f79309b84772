# Overview: Allocates human-readable transaction numbers per store and business day.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import Transaction

# YYYYMMDD + daily sequence, zero-padded to 4 digits and widening past 9999
SEQUENCE_DIGITS = 4
NUMBER_LENGTH = 8 + SEQUENCE_DIGITS
# YYYYMMDD + 8 clock digits
FALLBACK_LENGTH = 16


def date_prefix(business_date: str) -> str:
    """'2024-01-01' -> '20240101'"""
    return business_date.replace("-", "")


def _last_sequence(store_id: int, prefix: str) -> int:
    # Longer sequences sort first, then the lexicographic max within a length
    # is the numeric max. Fallback numbers are FALLBACK_LENGTH long and never
    # take part.
    latest = (
        db.session.query(Transaction.transaction_number)
        .filter(
            Transaction.store_id == store_id,
            Transaction.transaction_number.like(f"{prefix}%"),
            func.length(Transaction.transaction_number) >= NUMBER_LENGTH,
            func.length(Transaction.transaction_number) < FALLBACK_LENGTH,
        )
        .order_by(
            func.length(Transaction.transaction_number).desc(),
            Transaction.transaction_number.desc(),
        )
        .limit(1)
        .scalar()
    )
    if not latest:
        return 0
    suffix = latest[len(prefix):]
    return int(suffix) if suffix.isdigit() else 0


def _number_taken(store_id: int, number: str) -> bool:
    return (
        db.session.query(Transaction.id)
        .filter_by(store_id=store_id, transaction_number=number)
        .first()
        is not None
    )


def fallback_number(prefix: str) -> str:
    """Date prefix plus the low 8 digits of the current millisecond clock."""
    millis = int(time.time() * 1000)
    return f"{prefix}{millis % 100_000_000:08d}"


def next_transaction_number(*, store_id: int, business_date: str) -> str:
    """
    Propose the next free transaction number for a store and business day.

    Tries up to TRANSACTION_NUMBER_ATTEMPTS candidates from max+1 with a short
    increasing delay, then falls back to a clock-derived number. The
    (store_id, transaction_number) unique key remains the final arbiter: a
    number returned here can still lose a race at insert time.
    """
    config = current_app.config
    attempts = max(1, int(config.get("TRANSACTION_NUMBER_ATTEMPTS", 10)))
    delay = float(config.get("TRANSACTION_NUMBER_RETRY_DELAY", 0.002))

    prefix = date_prefix(business_date)
    base = _last_sequence(store_id, prefix) + 1

    for attempt in range(attempts):
        if attempt and delay > 0:
            time.sleep(delay * attempt)
        candidate = f"{prefix}{base + attempt:0{SEQUENCE_DIGITS}d}"
        if not _number_taken(store_id, candidate):
            return candidate

    number = fallback_number(prefix)
    current_app.logger.warning(
        "Transaction number attempts exhausted for store %s on %s; using fallback %s",
        store_id,
        business_date,
        number,
    )
    return number
