# Overview: Sale transaction lifecycle: create, complete, refund, void.

"""
Transaction Lifecycle

    pending -> completed -> refunded
                         -> voided

Create flow:
  validate (before any write) -> day gate -> allocate number -> persist
  transaction + items (the core write, committed) -> stock subtract per item
  -> credit charge -> day totals -> invoice.

Everything after the core write is a best-effort step (see side_effects):
a failing step is logged, recorded in the ledger and reported back in
`warnings`, and the sale stands.

Refund and void are one-shot. The status change is a conditional UPDATE on
status == 'completed', so of two concurrent refund/void requests exactly one
wins and stock is restored once.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Customer, Product, Transaction, TransactionItem
from ..errors import NotFoundError
from ..validation import (
    MAX_AMOUNT_CENTS,
    ConflictError,
    ValidationError,
    amount_cents,
    coerce_int,
    optional_date,
    optional_id,
    optional_text,
    require_id,
)
from tillbook.time_utils import as_utc_naive, parse_iso_datetime, to_utc_z, utcnow
from .concurrency import is_unique_violation
from .credit_service import record_credit_transaction
from .day_service import authorize_sale, get_store, record_sale_totals
from .invoice_service import render_invoice
from .ledger_service import append_ledger_event
from .sequence_service import date_prefix, next_transaction_number
from .side_effects import StepResult, run_step
from .stock_service import adjust_stock


PAYMENT_METHODS = ("cash", "card", "credit", "split", "other")
CREATE_STATUSES = ("pending", "completed")

# Both spellings of the store/number unique key (PostgreSQL name, SQLite columns)
NUMBER_KEY_MARKERS = ("uq_transactions_store_number", "transactions.transaction_number")


@dataclass
class TransactionResult:
    transaction: Transaction
    steps: list[StepResult] = field(default_factory=list)
    invoice: dict | None = None

    @property
    def warnings(self) -> list[dict]:
        warnings = [step.to_warning() for step in self.steps if not step.ok]
        for step in self.steps:
            adjustment = step.value
            if step.ok and adjustment is not None and getattr(adjustment, "mirror_ok", True) is False:
                warnings.append({
                    "step": "stock.mirror",
                    "error": adjustment.mirror_error,
                    "product_id": adjustment.product_id,
                })
        return warnings

    def to_dict(self) -> dict:
        return {
            "transaction": serialize_transaction(self.transaction),
            "warnings": self.warnings,
            "invoice": self.invoice,
        }


def serialize_transaction(tx: Transaction) -> dict:
    data = tx.to_dict()
    data["items"] = [item.to_dict() for item in tx.items]
    return data


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _parse_items(raw_items) -> list[dict]:
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("items must be a non-empty list")

    items = []
    for index, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise ValidationError(f"items[{index}] must be an object")
        quantity = coerce_int(raw.get("quantity"), f"items[{index}].quantity")
        if quantity < 0:
            raise ValidationError(
                f"items[{index}].quantity must be >= 0",
                details={"index": index, "quantity": quantity},
            )
        unit_price = amount_cents(raw, "unit_price_cents")
        total = quantity * unit_price
        if total > MAX_AMOUNT_CENTS:
            raise ValidationError(f"items[{index}] total exceeds {MAX_AMOUNT_CENTS}")
        items.append({
            "product_id": optional_id(raw, "product_id"),
            "name": optional_text(raw, "name"),
            "quantity": quantity,
            "unit_price_cents": unit_price,
            "total_cents": total,
        })

    product_ids = {item["product_id"] for item in items if item["product_id"] is not None}
    if product_ids:
        known = {
            pid for (pid,) in db.session.query(Product.id).filter(Product.id.in_(product_ids)).all()
        }
        unknown = sorted(product_ids - known)
        if unknown:
            raise ValidationError("Unknown product in items", details={"product_ids": unknown})

        names = dict(db.session.query(Product.id, Product.name).filter(Product.id.in_(product_ids)).all())
        for item in items:
            if item["product_id"] is not None and not item["name"]:
                item["name"] = names.get(item["product_id"])

    return items


def proposed_timestamp(payload: dict, field: str = "created_at") -> datetime | None:
    # A missing or unreadable client timestamp means "now"
    raw = payload.get(field)
    if not isinstance(raw, str) or not raw.strip():
        return None
    try:
        return parse_iso_datetime(raw)
    except ValueError:
        return None


def validate_create_payload(payload: dict) -> dict:
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")

    payment_method = payload.get("payment_method") or "cash"
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(f"payment_method must be one of {', '.join(PAYMENT_METHODS)}")

    status = payload.get("status") or "completed"
    if status not in CREATE_STATUSES:
        raise ValidationError(f"status must be one of {', '.join(CREATE_STATUSES)}")

    items = _parse_items(payload.get("items"))
    subtotal = amount_cents(payload, "subtotal_cents", default=sum(item["total_cents"] for item in items))
    tax = amount_cents(payload, "tax_cents")
    discount = amount_cents(payload, "discount_cents")

    total = amount_cents(payload, "total_cents", default=subtotal + tax - discount)
    if total < 0:
        raise ValidationError("discount_cents exceeds subtotal plus tax")
    if total > MAX_AMOUNT_CENTS:
        raise ValidationError(f"total_cents cannot exceed {MAX_AMOUNT_CENTS}")

    customer_id = optional_id(payload, "customer_id")
    if customer_id is not None and db.session.get(Customer, customer_id) is None:
        raise ValidationError("Customer not found", details={"customer_id": customer_id})

    return {
        "store_id": require_id(payload, "store_id"),
        "customer_id": customer_id,
        "cashier_id": optional_id(payload, "cashier_id"),
        "payment_method": payment_method,
        "status": status,
        "items": items,
        "subtotal_cents": subtotal,
        "tax_cents": tax,
        "discount_cents": discount,
        "total_cents": total,
        "proposed_at": proposed_timestamp(payload),
    }


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------

def _insert_transaction(data: dict) -> Transaction:
    """Gate, number and core write. Commits on success."""
    store = get_store(data["store_id"])
    day = authorize_sale(store, data["proposed_at"])

    # Any client-supplied number is ignored
    number = next_transaction_number(store_id=store.id, business_date=day.date)
    now = utcnow()

    tx = Transaction(
        store_id=store.id,
        customer_id=data["customer_id"],
        cashier_id=data["cashier_id"],
        day_operation_id=day.id,
        transaction_number=number,
        status=data["status"],
        payment_method=data["payment_method"],
        subtotal_cents=data["subtotal_cents"],
        tax_cents=data["tax_cents"],
        discount_cents=data["discount_cents"],
        total_cents=data["total_cents"],
        created_at=now,
        completed_at=now if data["status"] == "completed" else None,
    )
    db.session.add(tx)
    db.session.flush()

    for item in data["items"]:
        db.session.add(TransactionItem(transaction_id=tx.id, **item))

    append_ledger_event(
        event_type="transaction.created",
        event_category="sales",
        entity_type="transaction",
        entity_id=tx.id,
        store_id=store.id,
        actor_user_id=data["cashier_id"],
        transaction_id=tx.id,
        occurred_at=now,
        note=f"Transaction {number} ({data['status']})",
    )
    db.session.commit()
    return tx


def create_transaction(payload: dict) -> TransactionResult:
    """
    Create a sale. Validation and gate failures leave no rows behind.

    A transaction-number collision at insert time retries the whole flow with
    a fresh allocation, up to TRANSACTION_CREATE_RETRIES times.
    """
    data = validate_create_payload(payload)
    retries = max(0, int(current_app.config.get("TRANSACTION_CREATE_RETRIES", 3)))

    attempt = 0
    while True:
        try:
            tx = _insert_transaction(data)
            break
        except IntegrityError as exc:
            db.session.rollback()
            if not is_unique_violation(exc, *NUMBER_KEY_MARKERS):
                raise
            if attempt >= retries:
                raise ConflictError(
                    "Could not allocate a unique transaction number",
                    code="TRANSACTION_NUMBER_CONFLICT",
                    details={"attempts": attempt + 1},
                )
            attempt += 1
            current_app.logger.warning(
                "Transaction number collision for store %s, retrying (%s/%s)",
                data["store_id"],
                attempt,
                retries,
            )

    current_app.logger.info("Created transaction %s (id=%s)", tx.transaction_number, tx.id)

    result = TransactionResult(transaction=tx)
    if tx.status == "completed":
        result.steps.extend(_completion_steps(tx))
        invoice_step = run_step(
            "invoice.render",
            lambda: render_invoice(tx),
            store_id=tx.store_id,
            transaction_id=tx.id,
        )
        result.steps.append(invoice_step)
        result.invoice = invoice_step.value

    db.session.refresh(tx)
    return result


def _completion_steps(tx: Transaction) -> list[StepResult]:
    """Stock, credit and day-total effects of a completed sale."""
    steps = []
    tx_id, store_id = tx.id, tx.store_id
    cashier_id, customer_id = tx.cashier_id, tx.customer_id
    payment_method, total = tx.payment_method, tx.total_cents
    number, day_id = tx.transaction_number, tx.day_operation_id
    items = [(item.product_id, item.quantity) for item in tx.items]

    for product_id, quantity in items:
        if product_id is None or quantity <= 0:
            continue
        steps.append(run_step(
            "stock.subtract",
            lambda product_id=product_id, quantity=quantity: adjust_stock(
                store_id=store_id,
                product_id=product_id,
                quantity=quantity,
                op="subtract",
                transaction_id=tx_id,
                actor_user_id=cashier_id,
                commit=False,
            ),
            store_id=store_id,
            transaction_id=tx_id,
            context={"product_id": product_id, "quantity": quantity},
        ))

    if payment_method == "credit" and customer_id is not None and total > 0:
        steps.append(run_step(
            "credit.charge",
            lambda: record_credit_transaction(
                customer_id=customer_id,
                type="charge",
                amount_cents=total,
                transaction_id=tx_id,
                cashier_id=cashier_id,
                payment_method="credit",
                reference=number,
                description=f"Credit sale - Transaction #{number}",
                store_id=store_id,
                commit=False,
            ),
            store_id=store_id,
            transaction_id=tx_id,
            context={"customer_id": customer_id, "amount_cents": total},
        ))

    if day_id is not None:
        steps.append(run_step(
            "day.totals",
            lambda: record_sale_totals(
                day_operation_id=day_id,
                payment_method=payment_method,
                total_cents=total,
            ),
            store_id=store_id,
            transaction_id=tx_id,
        ))

    return steps


def _restock_and_compensate_steps(tx: Transaction, *, credit_amount_cents: int, reason: str, actor_user_id) -> list[StepResult]:
    """Put sold stock back and reverse a credit charge after refund or void."""
    steps = []
    tx_id, store_id = tx.id, tx.store_id
    payment_method, customer_id, number = tx.payment_method, tx.customer_id, tx.transaction_number
    items = [(item.product_id, item.quantity) for item in tx.items]

    for product_id, quantity in items:
        if product_id is None or quantity <= 0:
            continue
        steps.append(run_step(
            "stock.restock",
            lambda product_id=product_id, quantity=quantity: adjust_stock(
                store_id=store_id,
                product_id=product_id,
                quantity=quantity,
                op="add",
                transaction_id=tx_id,
                actor_user_id=actor_user_id,
                commit=False,
            ),
            store_id=store_id,
            transaction_id=tx_id,
            context={"product_id": product_id, "quantity": quantity},
        ))

    if payment_method == "credit" and customer_id is not None and credit_amount_cents > 0:
        steps.append(run_step(
            "credit.reverse",
            lambda: record_credit_transaction(
                customer_id=customer_id,
                type="payment",
                amount_cents=credit_amount_cents,
                transaction_id=tx_id,
                cashier_id=actor_user_id,
                payment_method="credit_reversal",
                reference=number,
                description=f"{reason} - Transaction #{number}",
                store_id=store_id,
                commit=False,
            ),
            store_id=store_id,
            transaction_id=tx_id,
            context={"customer_id": customer_id, "amount_cents": credit_amount_cents},
        ))

    return steps


# ---------------------------------------------------------------------------
# Complete / refund / void
# ---------------------------------------------------------------------------

def get_transaction(transaction_id: int) -> Transaction:
    tx = db.session.get(Transaction, transaction_id)
    if not tx:
        raise NotFoundError("Transaction not found", details={"transaction_id": transaction_id})
    return tx


def _raise_terminal(tx: Transaction) -> None:
    if tx.status == "refunded":
        raise ConflictError("Transaction already refunded", code="ALREADY_REFUNDED")
    if tx.status == "voided":
        raise ConflictError("Transaction already voided", code="ALREADY_VOIDED")
    raise ConflictError(
        f"Transaction is {tx.status}",
        code="INVALID_STATUS",
        details={"status": tx.status},
    )


def _transition(transaction_id: int, *, from_status: str, values: dict) -> bool:
    result = db.session.execute(
        update(Transaction)
        .where(Transaction.id == transaction_id, Transaction.status == from_status)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return bool(result.rowcount)


def complete_transaction(
    transaction_id: int,
    *,
    actor_user_id: int | None = None,
    proposed_at: datetime | None = None,
) -> TransactionResult:
    """
    Complete a pending transaction and apply its stock and credit effects.

    Completion is a sale posting and passes the day gate again. The sale is
    re-attached to the open day it posts against, so a closed day's totals
    never change.
    """
    tx = get_transaction(transaction_id)
    if tx.status != "pending":
        if tx.status == "completed":
            raise ConflictError("Transaction already completed", code="ALREADY_COMPLETED")
        _raise_terminal(tx)

    day = authorize_sale(get_store(tx.store_id), proposed_at)

    now = utcnow()
    values = {"status": "completed", "completed_at": now, "day_operation_id": day.id}
    if not _transition(transaction_id, from_status="pending", values=values):
        db.session.rollback()
        _raise_terminal(get_transaction(transaction_id))

    append_ledger_event(
        event_type="transaction.completed",
        event_category="sales",
        entity_type="transaction",
        entity_id=transaction_id,
        store_id=tx.store_id,
        actor_user_id=actor_user_id,
        transaction_id=transaction_id,
        occurred_at=now,
    )
    db.session.commit()

    tx = get_transaction(transaction_id)
    result = TransactionResult(transaction=tx, steps=_completion_steps(tx))
    invoice_step = run_step("invoice.render", lambda: render_invoice(tx), store_id=tx.store_id, transaction_id=tx.id)
    result.steps.append(invoice_step)
    result.invoice = invoice_step.value
    db.session.refresh(tx)
    return result


def refund_transaction(
    transaction_id: int,
    *,
    reason: str,
    amount_cents: int | None = None,
    actor_user_id: int | None = None,
) -> TransactionResult:
    """
    Refund a completed transaction.

    Full or partial amount; stock for every product line is restored in
    full. No age limit. Credit sales get a compensating payment entry for the
    refunded amount.
    """
    if not reason or not str(reason).strip():
        raise ValidationError("reason is required")

    tx = get_transaction(transaction_id)
    if tx.status != "completed":
        _raise_terminal(tx)

    amount = tx.total_cents if amount_cents is None else amount_cents
    if amount <= 0:
        raise ValidationError("Refund amount must be greater than 0", details={"amount_cents": amount})
    if amount > tx.total_cents:
        raise ValidationError(
            "Refund amount exceeds transaction total",
            code="REFUND_EXCEEDS_TOTAL",
            details={"amount_cents": amount, "total_cents": tx.total_cents},
        )

    now = utcnow()
    won = _transition(transaction_id, from_status="completed", values={
        "status": "refunded",
        "refund_reason": str(reason).strip()[:255],
        "refund_amount_cents": amount,
        "refunded_by_user_id": actor_user_id,
        "refunded_at": now,
    })
    if not won:
        db.session.rollback()
        _raise_terminal(get_transaction(transaction_id))

    append_ledger_event(
        event_type="transaction.refunded",
        event_category="sales",
        entity_type="transaction",
        entity_id=transaction_id,
        store_id=tx.store_id,
        actor_user_id=actor_user_id,
        transaction_id=transaction_id,
        occurred_at=now,
        note=str(reason).strip(),
        payload={"amount_cents": amount},
    )
    db.session.commit()
    current_app.logger.info("Refunded transaction %s (%s cents)", transaction_id, amount)

    tx = get_transaction(transaction_id)
    result = TransactionResult(
        transaction=tx,
        steps=_restock_and_compensate_steps(
            tx, credit_amount_cents=amount, reason="Refund", actor_user_id=actor_user_id
        ),
    )
    db.session.refresh(tx)
    return result


def void_transaction(
    transaction_id: int,
    *,
    reason: str,
    actor_user_id: int | None = None,
) -> TransactionResult:
    """
    Void a completed transaction younger than VOID_WINDOW_HOURS.

    Older transactions are rejected with VOID_WINDOW_EXPIRED and must be
    refunded instead.
    """
    if not reason or not str(reason).strip():
        raise ValidationError("reason is required")

    tx = get_transaction(transaction_id)
    if tx.status != "completed":
        _raise_terminal(tx)

    window = timedelta(hours=int(current_app.config.get("VOID_WINDOW_HOURS", 24)))
    now = utcnow()
    created_at = as_utc_naive(tx.created_at)
    if created_at is not None and now - created_at >= window:
        raise ConflictError(
            "Transaction is too old to void; refund it instead",
            code="VOID_WINDOW_EXPIRED",
            details={"created_at": to_utc_z(created_at), "action": "REFUND"},
        )

    won = _transition(transaction_id, from_status="completed", values={
        "status": "voided",
        "void_reason": str(reason).strip()[:255],
        "voided_by_user_id": actor_user_id,
        "voided_at": now,
    })
    if not won:
        db.session.rollback()
        _raise_terminal(get_transaction(transaction_id))

    append_ledger_event(
        event_type="transaction.voided",
        event_category="sales",
        entity_type="transaction",
        entity_id=transaction_id,
        store_id=tx.store_id,
        actor_user_id=actor_user_id,
        transaction_id=transaction_id,
        occurred_at=now,
        note=str(reason).strip(),
    )
    db.session.commit()
    current_app.logger.info("Voided transaction %s", transaction_id)

    tx = get_transaction(transaction_id)
    result = TransactionResult(
        transaction=tx,
        steps=_restock_and_compensate_steps(
            tx, credit_amount_cents=tx.total_cents, reason="Void", actor_user_id=actor_user_id
        ),
    )
    db.session.refresh(tx)
    return result


def list_transactions(
    *,
    store_id: int | None = None,
    date: str | None = None,
    status: str | None = None,
    limit: int = 100,
) -> list[Transaction]:
    """List transactions, newest first. `date` is the business date encoded in the number."""
    query = db.session.query(Transaction)
    if store_id is not None:
        query = query.filter(Transaction.store_id == store_id)
    if date:
        business_date = optional_date({"date": date}, "date")
        query = query.filter(Transaction.transaction_number.like(f"{date_prefix(business_date)}%"))
    if status:
        query = query.filter(Transaction.status == status)
    return query.order_by(Transaction.id.desc()).limit(limit).all()
