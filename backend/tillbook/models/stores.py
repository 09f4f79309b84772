from __future__ import annotations

from ..extensions import db
from tillbook.time_utils import to_utc_z


class Store(db.Model):
    """
    Store (trading location).

    Store codes are globally unique. The settings bag carries optional
    store-level configuration such as "timezone", which decides the business
    date used by the day-operation gate.
    """
    __tablename__ = "stores"
    __table_args__ = (
        db.UniqueConstraint("code", name="uq_stores_code"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    code = db.Column(db.String(32), nullable=False)

    base_currency = db.Column(db.String(3), nullable=False, default="QAR")
    settings = db.Column(db.JSON, nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<Store id={self.id} code={self.code!r}>"

    def setting(self, key: str, default=None):
        if isinstance(self.settings, dict):
            return self.settings.get(key, default)
        return default

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "base_currency": self.base_currency,
            "settings": self.settings or {},
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class DayOperation(db.Model):
    """
    Business-day record for a store.

    LIFECYCLE:
    - open: sales may post for this store when their business date matches
    - closed: day ended, cash counted

    One row per (store, date). At most one open row per store, enforced by a
    partial unique index in addition to the service check.
    """
    __tablename__ = "day_operations"
    __table_args__ = (
        db.UniqueConstraint("store_id", "date", name="uq_day_operations_store_date"),
        db.Index(
            "uq_day_operations_store_open",
            "store_id",
            unique=True,
            sqlite_where=db.text("status = 'open'"),
            postgresql_where=db.text("status = 'open'"),
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    # YYYY-MM-DD in the store's business timezone
    date = db.Column(db.String(10), nullable=False)
    status = db.Column(db.String(16), nullable=False, default="open", index=True)

    # Cash tracking (all amounts in cents)
    opening_cash_cents = db.Column(db.Integer, nullable=False, default=0)
    closing_cash_cents = db.Column(db.Integer, nullable=True)
    expected_cash_cents = db.Column(db.Integer, nullable=True)
    cash_difference_cents = db.Column(db.Integer, nullable=True)

    # Aggregates maintained by the transaction lifecycle
    total_sales_cents = db.Column(db.Integer, nullable=False, default=0)
    cash_sales_cents = db.Column(db.Integer, nullable=False, default=0)
    card_sales_cents = db.Column(db.Integer, nullable=False, default=0)
    credit_sales_cents = db.Column(db.Integer, nullable=False, default=0)
    other_sales_cents = db.Column(db.Integer, nullable=False, default=0)
    total_transactions = db.Column(db.Integer, nullable=False, default=0)

    opened_by_user_id = db.Column(db.Integer, nullable=True)
    closed_by_user_id = db.Column(db.Integer, nullable=True)
    opened_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    store = db.relationship("Store", backref=db.backref("day_operations", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "date": self.date,
            "status": self.status,
            "opening_cash_cents": self.opening_cash_cents,
            "closing_cash_cents": self.closing_cash_cents,
            "expected_cash_cents": self.expected_cash_cents,
            "cash_difference_cents": self.cash_difference_cents,
            "total_sales_cents": self.total_sales_cents,
            "cash_sales_cents": self.cash_sales_cents,
            "card_sales_cents": self.card_sales_cents,
            "credit_sales_cents": self.credit_sales_cents,
            "other_sales_cents": self.other_sales_cents,
            "total_transactions": self.total_transactions,
            "opened_by_user_id": self.opened_by_user_id,
            "closed_by_user_id": self.closed_by_user_id,
            "opened_at": to_utc_z(self.opened_at),
            "closed_at": to_utc_z(self.closed_at) if self.closed_at else None,
            "notes": self.notes,
        }
