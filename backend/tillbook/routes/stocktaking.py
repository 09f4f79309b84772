# backend/tillbook/routes/stocktaking.py
"""Stock-taking (physical count) routes."""

from flask import Blueprint, request, jsonify, current_app

from ..extensions import db
from ..errors import ServiceError
from ..services import stocktaking_service
from ..validation import optional_date, optional_id, optional_text


stocktaking_bp = Blueprint("stocktaking", __name__, url_prefix="/api/stock-taking")


@stocktaking_bp.post("")
def submit_stock_taking_route():
    """
    Submit a count and apply it.

    Request body:
    {
        "store_id": int (optional),
        "date": "YYYY-MM-DD" (optional),
        "items": [{"product_id"?, "sku"?, "barcode"?, "name"?, "counted_qty": int, "cost_cents"?, "uom"?}],
        "notes": str (optional),
        "policy": "create_product" | "report_extra" (optional),
        "user_id": int (optional)
    }

    Returns:
        201: {"session", "items", "total_items", "new_products", "updated_products", "skipped_items"}
        400: Invalid request
        409: SKU conflict while creating a product
    """
    try:
        data = request.get_json(silent=True) or {}
        result = stocktaking_service.commit_stock_taking(
            items=data.get("items"),
            store_id=optional_id(data, "store_id"),
            session_date=optional_date(data, "date"),
            notes=optional_text(data, "notes", max_length=1000),
            actor_user_id=optional_id(data, "user_id"),
            policy=optional_text(data, "policy", max_length=32),
        )
        return jsonify(result), 201

    except ServiceError as e:
        db.session.rollback()
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to submit stock taking")
        return jsonify({"error": "Internal server error"}), 500


@stocktaking_bp.get("/comparison")
def comparison_route():
    """Counted vs book stock for ?store_id=&date= (missing products included)."""
    try:
        report = stocktaking_service.compare(
            store_id=optional_id(request.args, "store_id"),
            session_date=optional_date(request.args, "date"),
            policy=request.args.get("policy"),
        )
        return jsonify(report), 200
    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code


@stocktaking_bp.post("/zero-missing")
def zero_missing_route():
    """
    Set stock to 0 for products that were not counted.

    Request body:
    {
        "product_ids": [int],
        "store_id": int (optional),
        "user_id": int (optional)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        updated = stocktaking_service.zero_missing(
            product_ids=data.get("product_ids"),
            store_id=optional_id(data, "store_id"),
            actor_user_id=optional_id(data, "user_id"),
        )
        return jsonify({"updated_count": updated}), 200

    except ServiceError as e:
        db.session.rollback()
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to zero missing products")
        return jsonify({"error": "Internal server error"}), 500


@stocktaking_bp.get("/sessions")
def list_sessions_route():
    try:
        sessions = stocktaking_service.list_sessions(
            store_id=optional_id(request.args, "store_id"),
            limit=min(request.args.get("limit", 50, type=int), 500),
        )
        return jsonify({"sessions": [s.to_dict() for s in sessions]}), 200
    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code


@stocktaking_bp.get("/sessions/<int:session_id>")
def get_session_route(session_id: int):
    try:
        session = stocktaking_service.get_session(session_id)
        return jsonify({
            "session": session.to_dict(),
            "items": [item.to_dict() for item in session.items],
        }), 200
    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code
