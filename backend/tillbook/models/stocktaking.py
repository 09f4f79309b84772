from __future__ import annotations

from ..extensions import db
from tillbook.time_utils import to_utc_z


class StockTakingSession(db.Model):
    """
    One submitted physical count.

    Written once at submission together with its items; the stock
    corrections it carries are applied in the same request.
    """
    __tablename__ = "stock_taking_sessions"
    __table_args__ = (
        db.Index("ix_stock_taking_sessions_store_date", "store_id", "session_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=True, index=True)
    session_date = db.Column(db.String(10), nullable=False)
    status = db.Column(db.String(16), nullable=False, default="in_progress")

    total_items = db.Column(db.Integer, nullable=False, default=0)
    new_products = db.Column(db.Integer, nullable=False, default=0)
    updated_products = db.Column(db.Integer, nullable=False, default=0)
    skipped_items = db.Column(db.Integer, nullable=False, default=0)
    total_variance_value_cents = db.Column(db.Integer, nullable=False, default=0)
    notes = db.Column(db.Text, nullable=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "session_date": self.session_date,
            "status": self.status,
            "total_items": self.total_items,
            "new_products": self.new_products,
            "updated_products": self.updated_products,
            "skipped_items": self.skipped_items,
            "total_variance_value_cents": self.total_variance_value_cents,
            "notes": self.notes,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "completed_at": to_utc_z(self.completed_at) if self.completed_at else None,
        }


class StockTakingItem(db.Model):
    __tablename__ = "stock_taking_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(
        db.Integer,
        db.ForeignKey("stock_taking_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True, index=True)

    sku = db.Column(db.String(64), nullable=False)
    barcode = db.Column(db.String(64), nullable=True)
    name = db.Column(db.String(255), nullable=False)
    uom = db.Column(db.String(16), nullable=False, default="pcs")

    # Snapshot of book stock when the count was committed
    system_qty = db.Column(db.Integer, nullable=False, default=0)
    counted_qty = db.Column(db.Integer, nullable=False, default=0)
    variance = db.Column(db.Integer, nullable=False, default=0)
    cost_cents = db.Column(db.Integer, nullable=False, default=0)
    variance_value_cents = db.Column(db.Integer, nullable=False, default=0)

    is_new_product = db.Column(db.Boolean, nullable=False, default=False)
    notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    session = db.relationship(
        "StockTakingSession",
        backref=db.backref("items", lazy=True, order_by="StockTakingItem.id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "product_id": self.product_id,
            "sku": self.sku,
            "barcode": self.barcode,
            "name": self.name,
            "uom": self.uom,
            "system_qty": self.system_qty,
            "counted_qty": self.counted_qty,
            "variance": self.variance,
            "cost_cents": self.cost_cents,
            "variance_value_cents": self.variance_value_cents,
            "is_new_product": self.is_new_product,
            "notes": self.notes,
        }
