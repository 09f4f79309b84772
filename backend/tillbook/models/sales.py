from __future__ import annotations

from ..extensions import db
from tillbook.time_utils import to_utc_z


class Transaction(db.Model):
    """
    Sale transaction.

    LIFECYCLE:
    - pending -> completed (most callers create directly as completed)
    - completed -> refunded
    - completed -> voided

    refunded and voided are terminal. Once terminal, stock or credit may only
    change through new compensating entries, never by editing this row.
    """
    __tablename__ = "transactions"
    __table_args__ = (
        # Final arbiter for concurrent number allocation
        db.UniqueConstraint("store_id", "transaction_number", name="uq_transactions_store_number"),
        db.Index("ix_transactions_number", "transaction_number"),
        db.Index("ix_transactions_store_status_created", "store_id", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)
    cashier_id = db.Column(db.Integer, nullable=True)
    day_operation_id = db.Column(db.Integer, db.ForeignKey("day_operations.id"), nullable=True, index=True)

    # Human-readable number, YYYYMMDDNNNN (server-assigned only)
    transaction_number = db.Column(db.String(32), nullable=False)

    status = db.Column(db.String(16), nullable=False, default="completed", index=True)
    payment_method = db.Column(db.String(16), nullable=False, default="cash")

    # All amounts in cents, non-negative
    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Refund audit trail
    refund_reason = db.Column(db.String(255), nullable=True)
    refund_amount_cents = db.Column(db.Integer, nullable=True)
    refunded_by_user_id = db.Column(db.Integer, nullable=True)
    refunded_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Void audit trail
    void_reason = db.Column(db.String(255), nullable=True)
    voided_by_user_id = db.Column(db.Integer, nullable=True)
    voided_at = db.Column(db.DateTime(timezone=True), nullable=True)

    store = db.relationship("Store", backref=db.backref("transactions", lazy=True))
    customer = db.relationship("Customer", backref=db.backref("transactions", lazy=True))

    @property
    def is_terminal(self) -> bool:
        return self.status in ("refunded", "voided")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "customer_id": self.customer_id,
            "cashier_id": self.cashier_id,
            "day_operation_id": self.day_operation_id,
            "transaction_number": self.transaction_number,
            "status": self.status,
            "payment_method": self.payment_method,
            "subtotal_cents": self.subtotal_cents,
            "tax_cents": self.tax_cents,
            "discount_cents": self.discount_cents,
            "total_cents": self.total_cents,
            "created_at": to_utc_z(self.created_at),
            "completed_at": to_utc_z(self.completed_at) if self.completed_at else None,
            "refund_reason": self.refund_reason,
            "refund_amount_cents": self.refund_amount_cents,
            "refunded_by_user_id": self.refunded_by_user_id,
            "refunded_at": to_utc_z(self.refunded_at) if self.refunded_at else None,
            "void_reason": self.void_reason,
            "voided_by_user_id": self.voided_by_user_id,
            "voided_at": to_utc_z(self.voided_at) if self.voided_at else None,
        }


class TransactionItem(db.Model):
    """Line item of a transaction. Immutable once written."""
    __tablename__ = "transaction_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey("transactions.id"), nullable=False, index=True)
    # Nullable: ad hoc items without a catalog product are allowed
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True, index=True)

    name = db.Column(db.String(255), nullable=True)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)

    transaction = db.relationship(
        "Transaction",
        backref=db.backref("items", lazy=True, order_by="TransactionItem.id"),
    )
    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "product_id": self.product_id,
            "name": self.name,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "total_cents": self.total_cents,
        }
