# Overview: Stock-taking reconciliation; compares physical counts to book stock and commits corrections.

"""
Stock-taking

- variance = counted - system (negative = shrinkage)
- variance value = variance * unit cost (cents)

Classification per comparison row:
- counted: product was counted
- missing: active product with no count for the date (counted 0)
- extra: only under the report_extra policy; counted item absent from the
  catalog, or counted above the system figure

Counts are not gated by the day operation. Corrections are applied only by
an explicit commit or zero_missing call, through the stock ledger.
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Product, StockTakingItem, StockTakingSession
from ..errors import NotFoundError
from ..validation import ConflictError, ValidationError, amount_cents, coerce_int, optional_id, optional_text
from tillbook.time_utils import utcnow
from .concurrency import is_unique_violation, run_with_retry
from .day_service import business_date, get_store
from .ledger_service import append_ledger_event
from .stock_service import adjust_stock, authoritative_stock_map


UNMATCHED_POLICIES = ("create_product", "report_extra")


def _policy(policy: str | None) -> str:
    value = policy or current_app.config.get("STOCK_TAKING_UNMATCHED_POLICY", "create_product")
    if value not in UNMATCHED_POLICIES:
        raise ValidationError(f"policy must be one of {', '.join(UNMATCHED_POLICIES)}")
    return value


def _session_date(store_id: int | None, session_date: str | None) -> str:
    if session_date:
        return session_date
    if store_id is not None:
        return business_date(get_store(store_id))
    return utcnow().date().isoformat()


def _parse_count_items(raw_items) -> list[dict]:
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("items must be a non-empty list")

    items = []
    for index, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise ValidationError(f"items[{index}] must be an object")
        counted = coerce_int(raw.get("counted_qty", raw.get("quantity")), f"items[{index}].counted_qty")
        if counted < 0:
            raise ValidationError(f"items[{index}].counted_qty must be >= 0")

        item = {
            "product_id": optional_id(raw, "product_id"),
            "sku": optional_text(raw, "sku", max_length=64),
            "barcode": optional_text(raw, "barcode", max_length=64),
            "name": optional_text(raw, "name"),
            "uom": optional_text(raw, "uom", max_length=16) or "pcs",
            "counted_qty": counted,
            "cost_cents": amount_cents(raw, "cost_cents", default=None),
            "notes": optional_text(raw, "notes", max_length=1000),
        }
        if not (item["product_id"] or item["sku"] or item["barcode"]):
            raise ValidationError(f"items[{index}] needs product_id, sku or barcode")
        items.append(item)
    return items


def _match_product(item: dict) -> Product | None:
    """Match by product id, then barcode, then SKU."""
    if item["product_id"]:
        product = db.session.get(Product, item["product_id"])
        if product:
            return product
    if item["barcode"]:
        product = db.session.query(Product).filter_by(barcode=item["barcode"]).order_by(Product.id).first()
        if product:
            return product
    if item["sku"]:
        return db.session.query(Product).filter_by(sku=item["sku"]).first()
    return None


def _create_counted_product(item: dict, session_date: str) -> Product:
    cost = item["cost_cents"] or 0
    sku = item["sku"] or item["barcode"]
    product = Product(
        sku=sku,
        barcode=item["barcode"],
        name=item["name"] or item["sku"] or item["barcode"],
        description=f"Product created during stock taking on {session_date}",
        price_cents=cost,
        cost_cents=cost,
        stock=0,
        quantity=0,
        is_active=True,
        created_from_count=True,
    )
    db.session.add(product)
    try:
        db.session.flush()
    except IntegrityError as exc:
        db.session.rollback()
        if is_unique_violation(exc, "sku"):
            raise ConflictError(
                "SKU already exists",
                code="DUPLICATE_SKU",
                details={"sku": sku},
            )
        raise
    return product


def _line_key(item: dict, product: Product | None):
    if product is not None:
        return product.id
    return ("unmatched", item["sku"] or item["barcode"])


def commit_stock_taking(
    *,
    items,
    store_id: int | None = None,
    session_date: str | None = None,
    notes: str | None = None,
    actor_user_id: int | None = None,
    policy: str | None = None,
) -> dict:
    """
    Record a count session and set stock to the counted quantities.

    Unmatched items become new products (create_product) or are skipped and
    kept only as session rows (report_extra). System quantity and cost are
    snapshot here, not taken from the client. When one submission counts the
    same product more than once the last line wins; earlier lines are
    reported as duplicate_items.
    """
    parsed = _parse_count_items(items)
    mode = _policy(policy)
    day = _session_date(store_id, session_date)

    def _op() -> dict:
        session = StockTakingSession(
            store_id=store_id,
            session_date=day,
            status="in_progress",
            notes=notes,
            created_by_user_id=actor_user_id,
        )
        db.session.add(session)
        db.session.flush()

        new_products = updated_products = skipped = duplicates = 0
        total_value = 0

        # Match and snapshot every line before any stock is set
        matched = [(item, _match_product(item)) for item in parsed]
        last_line = {_line_key(item, product): index for index, (item, product) in enumerate(matched)}
        system = authoritative_stock_map(
            store_id, sorted({product.id for _, product in matched if product is not None})
        )

        for index, (item, product) in enumerate(matched):
            if last_line[_line_key(item, product)] != index:
                duplicates += 1
                continue
            is_new = False

            if product is None:
                if mode == "report_extra":
                    skipped += 1
                    db.session.add(StockTakingItem(
                        session_id=session.id,
                        product_id=None,
                        sku=item["sku"] or item["barcode"],
                        barcode=item["barcode"],
                        name=item["name"] or item["sku"] or item["barcode"],
                        uom=item["uom"],
                        system_qty=0,
                        counted_qty=item["counted_qty"],
                        variance=item["counted_qty"],
                        cost_cents=item["cost_cents"] or 0,
                        variance_value_cents=item["counted_qty"] * (item["cost_cents"] or 0),
                        is_new_product=False,
                        notes=item["notes"],
                    ))
                    continue
                product = _create_counted_product(item, day)
                is_new = True
                new_products += 1
                system_qty = 0
            else:
                system_qty = system.get(product.id, 0)
                updated_products += 1

            cost = item["cost_cents"] if item["cost_cents"] is not None else (product.cost_cents or 0)
            variance = item["counted_qty"] - system_qty
            value = variance * cost
            total_value += value

            adjust_stock(
                store_id=store_id,
                product_id=product.id,
                quantity=item["counted_qty"],
                op="set",
                actor_user_id=actor_user_id,
                commit=False,
            )

            db.session.add(StockTakingItem(
                session_id=session.id,
                product_id=product.id,
                sku=product.sku,
                barcode=product.barcode,
                name=product.name,
                uom=item["uom"],
                system_qty=system_qty,
                counted_qty=item["counted_qty"],
                variance=variance,
                cost_cents=cost,
                variance_value_cents=value,
                is_new_product=is_new,
                notes=item["notes"],
            ))

        session.total_items = len(parsed)
        session.new_products = new_products
        session.updated_products = updated_products
        session.skipped_items = skipped
        session.total_variance_value_cents = total_value
        session.status = "completed"
        session.completed_at = utcnow()

        append_ledger_event(
            event_type="stocktaking.committed",
            event_category="counts",
            entity_type="stock_taking_session",
            entity_id=session.id,
            store_id=store_id,
            actor_user_id=actor_user_id,
            payload={
                "total_items": len(parsed),
                "new_products": new_products,
                "updated_products": updated_products,
                "skipped_items": skipped,
                "duplicate_items": duplicates,
            },
        )

        db.session.commit()

        current_app.logger.info(
            "Committed stock taking session %s: %s items, %s new, %s updated, %s skipped, %s duplicate",
            session.id,
            len(parsed),
            new_products,
            updated_products,
            skipped,
            duplicates,
        )
        return {
            "session": session.to_dict(),
            "items": [row.to_dict() for row in session.items],
            "total_items": len(parsed),
            "new_products": new_products,
            "updated_products": updated_products,
            "skipped_items": skipped,
            "duplicate_items": duplicates,
        }

    return run_with_retry(_op)


def _comparison_row(*, product_id, sku, barcode, name, system_qty, counted_qty, cost_cents, status, is_new=False) -> dict:
    variance = counted_qty - system_qty
    return {
        "product_id": product_id,
        "sku": sku,
        "barcode": barcode,
        "name": name,
        "system_qty": system_qty,
        "counted_qty": counted_qty,
        "variance": variance,
        "cost_cents": cost_cents,
        "variance_value_cents": variance * cost_cents,
        "status": status,
        "is_new_product": is_new,
    }


def compare(*, store_id: int | None = None, session_date: str | None = None, policy: str | None = None) -> dict:
    """
    Comparison report for a date: every count recorded that day (latest count
    of a product wins) plus every active product nobody counted.
    """
    mode = _policy(policy)
    day = _session_date(store_id, session_date)

    query = (
        db.session.query(StockTakingItem)
        .join(StockTakingSession, StockTakingItem.session_id == StockTakingSession.id)
        .filter(StockTakingSession.session_date == day)
    )
    if store_id is not None:
        query = query.filter(StockTakingSession.store_id == store_id)
    counted_rows = query.order_by(StockTakingSession.id.asc(), StockTakingItem.id.asc()).all()

    latest: dict = {}
    for row in counted_rows:
        key = row.product_id if row.product_id is not None else ("sku", row.sku)
        latest[key] = row

    rows = []
    for row in latest.values():
        status = "counted"
        if mode == "report_extra" and (row.product_id is None or row.counted_qty > row.system_qty):
            status = "extra"
        rows.append(_comparison_row(
            product_id=row.product_id,
            sku=row.sku,
            barcode=row.barcode,
            name=row.name,
            system_qty=row.system_qty,
            counted_qty=row.counted_qty,
            cost_cents=row.cost_cents,
            status=status,
            is_new=row.is_new_product,
        ))

    counted_ids = {row.product_id for row in latest.values() if row.product_id is not None}
    active = (
        db.session.query(Product)
        .filter(Product.is_active.is_(True))
        .order_by(Product.name.asc(), Product.id.asc())
        .all()
    )
    uncounted = [product for product in active if product.id not in counted_ids]
    stock = authoritative_stock_map(store_id, [product.id for product in uncounted]) if uncounted else {}
    for product in uncounted:
        rows.append(_comparison_row(
            product_id=product.id,
            sku=product.sku,
            barcode=product.barcode,
            name=product.name,
            system_qty=stock.get(product.id, product.stock),
            counted_qty=0,
            cost_cents=product.cost_cents or 0,
            status="missing",
        ))

    summary = {
        "counted": sum(1 for row in rows if row["status"] == "counted"),
        "missing": sum(1 for row in rows if row["status"] == "missing"),
        "extra": sum(1 for row in rows if row["status"] == "extra"),
        "total_variance_value_cents": sum(row["variance_value_cents"] for row in rows),
    }
    return {"store_id": store_id, "date": day, "policy": mode, "items": rows, "summary": summary}


def zero_missing(*, product_ids, store_id: int | None = None, actor_user_id: int | None = None) -> int:
    """Explicitly set stock to 0 for the given (uncounted) products."""
    if not isinstance(product_ids, list) or not product_ids:
        raise ValidationError("product_ids must be a non-empty list")
    ids = []
    for index, raw in enumerate(product_ids):
        value = optional_id({"id": raw}, "id")
        if value is None:
            raise ValidationError(f"product_ids[{index}] must be an id")
        ids.append(value)

    def _op() -> int:
        existing = [
            pid for (pid,) in db.session.query(Product.id).filter(Product.id.in_(ids)).order_by(Product.id).all()
        ]
        for product_id in existing:
            adjust_stock(
                store_id=store_id,
                product_id=product_id,
                quantity=0,
                op="set",
                actor_user_id=actor_user_id,
                commit=False,
            )
        append_ledger_event(
            event_type="stocktaking.zeroed_missing",
            event_category="counts",
            entity_type="product",
            store_id=store_id,
            actor_user_id=actor_user_id,
            payload={"product_ids": existing},
        )
        db.session.commit()
        return len(existing)

    return run_with_retry(_op)


def list_sessions(*, store_id: int | None = None, limit: int = 50) -> list[StockTakingSession]:
    query = db.session.query(StockTakingSession)
    if store_id is not None:
        query = query.filter(StockTakingSession.store_id == store_id)
    return query.order_by(StockTakingSession.id.desc()).limit(limit).all()


def get_session(session_id: int) -> StockTakingSession:
    session = db.session.get(StockTakingSession, session_id)
    if not session:
        raise NotFoundError("Stock taking session not found", details={"session_id": session_id})
    return session
