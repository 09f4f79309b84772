# Overview: Day-operation gate; opens and closes business days and authorizes sale postings.

"""
Day-Operation Gate

A store may only post sales while it has an open DayOperation whose date
equals the sale's business date. The business date is the proposed sale
timestamp seen in the store's timezone, resolved in this order:

1. store.settings["timezone"]
2. DEFAULT_STORE_TIMEZONE config
3. CURRENCY_TIMEZONES[store.base_currency]
4. UTC

Unknown zone names are skipped. Gate rejections are ordinary 400 responses
with a machine-readable code; they are not logged as errors.
"""

from __future__ import annotations

from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import DayOperation, Store
from ..errors import NotFoundError, ServiceError
from ..validation import ConflictError
from tillbook.time_utils import local_date, utcnow
from .concurrency import is_unique_violation, run_with_retry
from .ledger_service import append_ledger_event


DAY_STATUSES = ("open", "closed")

# Sale totals land in the matching per-method column; anything else is "other"
_METHOD_COLUMNS = {
    "cash": "cash_sales_cents",
    "card": "card_sales_cents",
    "credit": "credit_sales_cents",
}


class DayGateError(ServiceError):
    """Sale rejected by the day-operation gate (DAY_NOT_OPEN, DATE_MISMATCH)."""
    status_code = 400
    default_code = "DAY_NOT_OPEN"


def _is_valid_zone(name: str) -> bool:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def resolve_store_timezone(store: Store) -> str:
    config = current_app.config
    currency_zones = config.get("CURRENCY_TIMEZONES") or {}
    candidates = [
        store.setting("timezone"),
        config.get("DEFAULT_STORE_TIMEZONE"),
        currency_zones.get((store.base_currency or "").upper()),
    ]
    for name in candidates:
        if isinstance(name, str) and name.strip() and _is_valid_zone(name.strip()):
            return name.strip()
    return "UTC"


def business_date(store: Store, at: datetime | None = None) -> str:
    """YYYY-MM-DD of `at` (UTC-naive, default now) in the store's timezone."""
    return local_date(at or utcnow(), resolve_store_timezone(store))


def get_store(store_id: int) -> Store:
    store = db.session.get(Store, store_id)
    if not store:
        raise NotFoundError("Store not found", details={"store_id": store_id})
    return store


def get_open_day(store_id: int) -> DayOperation | None:
    return (
        db.session.query(DayOperation)
        .filter_by(store_id=store_id, status="open")
        .order_by(DayOperation.id.desc())
        .first()
    )


def authorize_sale(store: Store, proposed_at: datetime | None = None) -> DayOperation:
    """
    Return the open DayOperation a sale at `proposed_at` may post against.

    Raises DayGateError when no day is open or the open day's date differs
    from the sale's business date.
    """
    tz_name = resolve_store_timezone(store)
    sale_date = local_date(proposed_at or utcnow(), tz_name)

    day = get_open_day(store.id)
    if day is None:
        raise DayGateError(
            "Day operation is not open. Please open the day before creating transactions.",
            code="DAY_NOT_OPEN",
            details={
                "action": "OPEN_DAY",
                "store_id": store.id,
                "transaction_date": sale_date,
                "timezone": tz_name,
            },
        )

    if day.date != sale_date:
        raise DayGateError(
            f"Open day is {day.date} but the transaction date is {sale_date}. "
            "Close the current day and open a new one.",
            code="DATE_MISMATCH",
            details={
                "open_day_date": day.date,
                "transaction_date": sale_date,
                "timezone": tz_name,
            },
        )

    return day


def open_day(
    *,
    store_id: int,
    date: str | None = None,
    opening_cash_cents: int | None = None,
    actor_user_id: int | None = None,
    notes: str | None = None,
) -> DayOperation:
    """
    Open a business day for a store.

    - Rejects when any day is still open for the store.
    - Rejects when a record already exists for the date (open or closed).
    - Missing opening cash carries over the previous day's closing cash.
    """
    def _op() -> DayOperation:
        store = get_store(store_id)
        day_date = date or business_date(store)

        current = get_open_day(store_id)
        if current is not None:
            raise ConflictError(
                "A day is already open for this store",
                code="DAY_ALREADY_OPEN",
                details={"day_operation_id": current.id, "date": current.date},
            )

        existing = db.session.query(DayOperation).filter_by(store_id=store_id, date=day_date).first()
        if existing is not None:
            raise ConflictError(
                f"Day operation already exists for {day_date}",
                code="DAY_ALREADY_EXISTS",
                details={"day_operation_id": existing.id, "status": existing.status},
            )

        opening = opening_cash_cents
        if opening is None:
            previous = (
                db.session.query(DayOperation)
                .filter(DayOperation.store_id == store_id, DayOperation.date < day_date)
                .order_by(DayOperation.date.desc())
                .first()
            )
            opening = (previous.closing_cash_cents or 0) if previous else 0

        day = DayOperation(
            store_id=store_id,
            date=day_date,
            status="open",
            opening_cash_cents=opening,
            opened_by_user_id=actor_user_id,
            opened_at=utcnow(),
            notes=notes,
        )
        db.session.add(day)
        try:
            db.session.flush()
        except IntegrityError as exc:
            db.session.rollback()
            if is_unique_violation(exc, "day_operations"):
                raise ConflictError(
                    "Day operation was opened concurrently",
                    code="DAY_ALREADY_OPEN",
                    details={"store_id": store_id, "date": day_date},
                )
            raise

        append_ledger_event(
            event_type="day.opened",
            event_category="day",
            entity_type="day_operation",
            entity_id=day.id,
            store_id=store_id,
            actor_user_id=actor_user_id,
            occurred_at=day.opened_at,
            payload={"date": day_date, "opening_cash_cents": opening},
        )
        db.session.commit()
        current_app.logger.info("Opened day %s for store %s", day_date, store_id)
        return day

    return run_with_retry(_op)


def close_day(
    *,
    day_id: int,
    closing_cash_cents: int | None = None,
    actor_user_id: int | None = None,
    notes: str | None = None,
) -> DayOperation:
    """Close an open day; expected cash is opening cash plus cash sales."""
    def _op() -> DayOperation:
        day = db.session.get(DayOperation, day_id)
        if not day:
            raise NotFoundError("Day operation not found", details={"day_operation_id": day_id})
        if day.status != "open":
            raise ConflictError("Day operation is already closed", code="DAY_ALREADY_CLOSED")

        expected = (day.opening_cash_cents or 0) + (day.cash_sales_cents or 0)
        difference = closing_cash_cents - expected if closing_cash_cents is not None else None
        closed_at = utcnow()

        values = {
            "status": "closed",
            "closing_cash_cents": closing_cash_cents,
            "expected_cash_cents": expected,
            "cash_difference_cents": difference,
            "closed_by_user_id": actor_user_id,
            "closed_at": closed_at,
        }
        if notes:
            values["notes"] = notes

        # Conditional on status so two closers cannot both succeed
        result = db.session.execute(
            update(DayOperation)
            .where(DayOperation.id == day_id, DayOperation.status == "open")
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            db.session.rollback()
            raise ConflictError("Day operation is already closed", code="DAY_ALREADY_CLOSED")

        append_ledger_event(
            event_type="day.closed",
            event_category="day",
            entity_type="day_operation",
            entity_id=day_id,
            store_id=day.store_id,
            actor_user_id=actor_user_id,
            occurred_at=closed_at,
            payload={"closing_cash_cents": closing_cash_cents, "expected_cash_cents": expected},
        )
        db.session.commit()
        current_app.logger.info("Closed day %s for store %s", day.date, day.store_id)
        return db.session.get(DayOperation, day_id)

    return run_with_retry(_op)


def list_days(*, store_id: int | None = None, status: str | None = None, limit: int = 50) -> list[DayOperation]:
    query = db.session.query(DayOperation)
    if store_id is not None:
        query = query.filter(DayOperation.store_id == store_id)
    if status:
        query = query.filter(DayOperation.status == status)
    return query.order_by(DayOperation.date.desc(), DayOperation.id.desc()).limit(limit).all()


def record_sale_totals(*, day_operation_id: int, payment_method: str, total_cents: int) -> None:
    """Atomically add one sale to the day's running aggregates."""
    column_name = _METHOD_COLUMNS.get(payment_method, "other_sales_cents")
    column = getattr(DayOperation, column_name)
    result = db.session.execute(
        update(DayOperation)
        .where(DayOperation.id == day_operation_id)
        .values({
            DayOperation.total_sales_cents: DayOperation.total_sales_cents + total_cents,
            column: column + total_cents,
            DayOperation.total_transactions: DayOperation.total_transactions + 1,
        })
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise NotFoundError("Day operation not found", details={"day_operation_id": day_operation_id})
