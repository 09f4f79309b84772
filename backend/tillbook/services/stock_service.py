# Overview: Stock ledger over the store-scoped override and the global product figures.

"""
Stock Ledger

Two representations of on-hand stock:

- StoreProductStock.stock: authoritative for a store where the row exists.
- Product.stock / Product.quantity: global mirror, also the fallback figure
  for stores without an override row.

Every write is a single conditional UPDATE; subtract clamps at zero
(new = max(0, old - qty)). Nothing is read, computed and written back from
application memory.

Mirror policy (STOCK_MIRROR_MODE):
- best_effort: the mirror write runs in a savepoint. A failure is logged,
  recorded as stock.mirror_failed and never undoes the store write.
- atomic: a mirror failure propagates to the caller.
"""

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app
from sqlalchemy import case, update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Product, StoreProductStock
from ..errors import NotFoundError
from ..validation import ValidationError, coerce_int
from .ledger_service import append_ledger_event


STOCK_OPS = ("add", "subtract", "set")
MIRROR_MODES = ("best_effort", "atomic")


@dataclass
class StockAdjustment:
    store_id: int | None
    product_id: int
    op: str
    quantity: int
    store_stock: int | None
    product_stock: int | None
    mirror_ok: bool = True
    mirror_error: str | None = None

    def to_dict(self) -> dict:
        return {
            "store_id": self.store_id,
            "product_id": self.product_id,
            "op": self.op,
            "quantity": self.quantity,
            "store_stock": self.store_stock,
            "product_stock": self.product_stock,
            "mirror_ok": self.mirror_ok,
            "mirror_error": self.mirror_error,
        }


def _next_value(column, op: str, quantity: int):
    if op == "add":
        return column + quantity
    if op == "subtract":
        return case((column > quantity, column - quantity), else_=0)
    return quantity


def _validate(op: str, quantity) -> int:
    if op not in STOCK_OPS:
        raise ValidationError(f"op must be one of {', '.join(STOCK_OPS)}")
    qty = coerce_int(quantity, "quantity")
    if qty < 0:
        raise ValidationError("quantity must be >= 0")
    return qty


def _write_store_stock(store_id: int, product_id: int, op: str, quantity: int) -> int | None:
    """Write 1. Returns the new override figure, or None when no override row exists."""
    stmt = (
        update(StoreProductStock)
        .where(
            StoreProductStock.store_id == store_id,
            StoreProductStock.product_id == product_id,
        )
        .values(stock=_next_value(StoreProductStock.stock, op, quantity))
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)

    if not result.rowcount:
        if op != "set":
            # add/subtract leave a missing override absent; the global figure stands in
            return None
        nested = db.session.begin_nested()
        try:
            db.session.add(StoreProductStock(store_id=store_id, product_id=product_id, stock=quantity))
            db.session.flush()
            nested.commit()
        except IntegrityError:
            # Inserted concurrently; fall back to the update
            nested.rollback()
            db.session.execute(stmt)

    return (
        db.session.query(StoreProductStock.stock)
        .filter_by(store_id=store_id, product_id=product_id)
        .scalar()
    )


def _write_product_mirror(product_id: int, op: str, quantity: int) -> int | None:
    """Write 2. Product.stock and Product.quantity move together."""
    result = db.session.execute(
        update(Product)
        .where(Product.id == product_id)
        .values(
            stock=_next_value(Product.stock, op, quantity),
            quantity=_next_value(Product.quantity, op, quantity),
        )
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        raise NotFoundError("Product not found", details={"product_id": product_id})
    return db.session.query(Product.stock).filter_by(id=product_id).scalar()


def adjust_stock(
    *,
    store_id: int | None,
    product_id: int,
    quantity: int,
    op: str,
    mirror_mode: str | None = None,
    transaction_id: int | None = None,
    actor_user_id: int | None = None,
    commit: bool = True,
) -> StockAdjustment:
    """
    Apply add / subtract / set to a product's stock for a store.

    With store_id None only the global figures are written, and they are
    the primary write (no best-effort handling).
    """
    qty = _validate(op, quantity)
    mode = mirror_mode or current_app.config.get("STOCK_MIRROR_MODE", "best_effort")
    if mode not in MIRROR_MODES:
        raise ValidationError(f"STOCK_MIRROR_MODE must be one of {', '.join(MIRROR_MODES)}")

    if store_id is None:
        product_stock = _write_product_mirror(product_id, op, qty)
        if commit:
            db.session.commit()
        return StockAdjustment(None, product_id, op, qty, None, product_stock)

    store_stock = _write_store_stock(store_id, product_id, op, qty)
    adjustment = StockAdjustment(store_id, product_id, op, qty, store_stock, None)

    if mode == "atomic":
        adjustment.product_stock = _write_product_mirror(product_id, op, qty)
    else:
        nested = db.session.begin_nested()
        try:
            adjustment.product_stock = _write_product_mirror(product_id, op, qty)
            nested.commit()
        except Exception as exc:
            nested.rollback()
            adjustment.mirror_ok = False
            adjustment.mirror_error = str(exc)
            current_app.logger.warning(
                "Stock mirror write failed for product %s (store %s, %s %s): %s",
                product_id,
                store_id,
                op,
                qty,
                exc,
            )
            append_ledger_event(
                event_type="stock.mirror_failed",
                event_category="stock",
                entity_type="product",
                entity_id=product_id,
                store_id=store_id,
                actor_user_id=actor_user_id,
                transaction_id=transaction_id,
                note=f"Mirror {op} {qty} failed",
                payload={"op": op, "quantity": qty, "store_stock": store_stock, "error": str(exc)},
            )

    if commit:
        db.session.commit()
    return adjustment


def get_stock(*, store_id: int, product_id: int) -> dict:
    """
    Authoritative stock for a store: the override where present, else the
    global figure. Both raw values are returned for drift inspection.
    """
    product = db.session.get(Product, product_id)
    if not product:
        raise NotFoundError("Product not found", details={"product_id": product_id})

    override = (
        db.session.query(StoreProductStock.stock)
        .filter_by(store_id=store_id, product_id=product_id)
        .scalar()
    )
    return {
        "store_id": store_id,
        "product_id": product_id,
        "stock": override if override is not None else product.stock,
        "source": "store" if override is not None else "product",
        "store_stock": override,
        "product_stock": product.stock,
        "product_quantity": product.quantity,
    }


def authoritative_stock_map(store_id: int | None, product_ids: list[int] | None = None) -> dict[int, int]:
    """product_id -> authoritative stock for many products in two queries."""
    query = db.session.query(Product.id, Product.stock)
    if product_ids is not None:
        query = query.filter(Product.id.in_(product_ids))
    stock = {pid: value for pid, value in query.all()}

    if store_id is not None and stock:
        overrides = (
            db.session.query(StoreProductStock.product_id, StoreProductStock.stock)
            .filter(
                StoreProductStock.store_id == store_id,
                StoreProductStock.product_id.in_(list(stock.keys())),
            )
            .all()
        )
        for pid, value in overrides:
            stock[pid] = value
    return stock
