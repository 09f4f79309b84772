# Overview: Customer credit ledger; append-only entries with a derived running balance.

"""
Credit Ledger invariants

- CreditTransaction rows are append-only.
- Customer.credit_balance_cents == sum(charge) - sum(payment) at all times.
- The balance moves through one atomic UPDATE (balance +/- amount); the
  previous/new snapshot is read back inside the same DB transaction and the
  ledger row is written in that transaction too.
"""

from __future__ import annotations

from sqlalchemy import case, func, update

from ..extensions import db
from ..models import CreditTransaction, Customer
from ..errors import NotFoundError
from ..validation import ValidationError
from .ledger_service import append_ledger_event


CREDIT_TYPES = ("charge", "payment")


def get_customer(customer_id: int) -> Customer:
    customer = db.session.get(Customer, customer_id)
    if not customer:
        raise NotFoundError("Customer not found", details={"customer_id": customer_id})
    return customer


def record_credit_transaction(
    *,
    customer_id: int,
    type: str,
    amount_cents: int,
    transaction_id: int | None = None,
    cashier_id: int | None = None,
    payment_method: str | None = None,
    reference: str | None = None,
    description: str | None = None,
    store_id: int | None = None,
    commit: bool = True,
) -> CreditTransaction:
    if type not in CREDIT_TYPES:
        raise ValidationError(f"type must be one of {', '.join(CREDIT_TYPES)}")
    if not isinstance(amount_cents, int) or isinstance(amount_cents, bool) or amount_cents <= 0:
        raise ValidationError("amount_cents must be a positive integer")

    delta = amount_cents if type == "charge" else -amount_cents

    result = db.session.execute(
        update(Customer)
        .where(Customer.id == customer_id)
        .values(credit_balance_cents=Customer.credit_balance_cents + delta)
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        raise NotFoundError("Customer not found", details={"customer_id": customer_id})

    new_balance = (
        db.session.query(Customer.credit_balance_cents)
        .filter(Customer.id == customer_id)
        .scalar()
    )
    previous_balance = new_balance - delta

    entry = CreditTransaction(
        customer_id=customer_id,
        transaction_id=transaction_id,
        cashier_id=cashier_id,
        type=type,
        amount_cents=amount_cents,
        previous_balance_cents=previous_balance,
        new_balance_cents=new_balance,
        payment_method=payment_method,
        reference=reference,
        description=description,
    )
    db.session.add(entry)
    db.session.flush()

    append_ledger_event(
        event_type=f"credit.{type}",
        event_category="credit",
        entity_type="credit_transaction",
        entity_id=entry.id,
        store_id=store_id,
        actor_user_id=cashier_id,
        transaction_id=transaction_id,
        payload={
            "customer_id": customer_id,
            "amount_cents": amount_cents,
            "new_balance_cents": new_balance,
        },
    )

    if commit:
        db.session.commit()
    return entry


def record_payment(
    *,
    customer_id: int,
    amount_cents: int,
    payment_method: str | None = None,
    reference: str | None = None,
    cashier_id: int | None = None,
    description: str | None = None,
) -> CreditTransaction:
    """Customer pays down their balance."""
    get_customer(customer_id)
    return record_credit_transaction(
        customer_id=customer_id,
        type="payment",
        amount_cents=amount_cents,
        cashier_id=cashier_id,
        payment_method=payment_method or "cash",
        reference=reference,
        description=description or "Credit payment",
    )


def ledger_balance(customer_id: int) -> int:
    signed = case(
        (CreditTransaction.type == "charge", CreditTransaction.amount_cents),
        else_=-CreditTransaction.amount_cents,
    )
    total = (
        db.session.query(func.coalesce(func.sum(signed), 0))
        .filter(CreditTransaction.customer_id == customer_id)
        .scalar()
    )
    return int(total or 0)


def verify_balance(customer_id: int) -> dict:
    # Column read, not the identity map: the balance moves through bulk UPDATEs
    stored = (
        db.session.query(Customer.credit_balance_cents)
        .filter(Customer.id == customer_id)
        .scalar()
    )
    if stored is None:
        raise NotFoundError("Customer not found", details={"customer_id": customer_id})
    derived = ledger_balance(customer_id)
    return {
        "customer_id": customer_id,
        "stored_balance_cents": stored,
        "ledger_balance_cents": derived,
        "consistent": stored == derived,
    }


def verify_all_balances() -> list[dict]:
    ids = [row[0] for row in db.session.query(Customer.id).order_by(Customer.id).all()]
    return [verify_balance(customer_id) for customer_id in ids]


def list_credit_transactions(customer_id: int, *, limit: int = 100) -> list[CreditTransaction]:
    return (
        db.session.query(CreditTransaction)
        .filter(CreditTransaction.customer_id == customer_id)
        .order_by(CreditTransaction.id.desc())
        .limit(limit)
        .all()
    )
