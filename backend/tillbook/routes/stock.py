# backend/tillbook/routes/stock.py
"""Stock ledger routes."""

from flask import Blueprint, request, jsonify, current_app

from ..extensions import db
from ..errors import ServiceError
from ..services import stock_service
from ..validation import ValidationError, require_id, optional_id


stock_bp = Blueprint("stock", __name__, url_prefix="/api/stock")


@stock_bp.get("/<int:store_id>/<int:product_id>")
def get_stock_route(store_id: int, product_id: int):
    """Authoritative stock for a store plus the raw store and product figures."""
    try:
        return jsonify(stock_service.get_stock(store_id=store_id, product_id=product_id)), 200
    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code


@stock_bp.post("/adjust")
def adjust_stock_route():
    """
    Manual stock adjustment.

    Request body:
    {
        "store_id": int,
        "product_id": int,
        "op": "add" | "subtract" | "set",
        "quantity": int (>= 0),
        "user_id": int (optional)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        if "quantity" not in data:
            raise ValidationError("Missing required field: quantity")
        store_id = require_id(data, "store_id")
        product_id = require_id(data, "product_id")
        adjustment = stock_service.adjust_stock(
            store_id=store_id,
            product_id=product_id,
            quantity=data["quantity"],
            op=data.get("op") or "",
            actor_user_id=optional_id(data, "user_id"),
        )
        body = adjustment.to_dict()
        body["stock"] = stock_service.get_stock(store_id=store_id, product_id=product_id)["stock"]
        return jsonify(body), 200

    except ServiceError as e:
        db.session.rollback()
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to adjust stock")
        return jsonify({"error": "Internal server error"}), 500
