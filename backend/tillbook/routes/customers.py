# backend/tillbook/routes/customers.py
"""Customer credit ledger routes."""

from flask import Blueprint, request, jsonify, current_app

from ..extensions import db
from ..errors import ServiceError
from ..services import credit_service
from ..validation import amount_cents, optional_id, optional_text


customers_bp = Blueprint("customers", __name__, url_prefix="/api/customers")


@customers_bp.get("/<int:customer_id>/credit")
def get_credit_route(customer_id: int):
    """Customer balance, ledger entries (newest first) and a consistency check."""
    try:
        customer = credit_service.get_customer(customer_id)
        entries = credit_service.list_credit_transactions(
            customer_id,
            limit=min(request.args.get("limit", 100, type=int), 500),
        )
        return jsonify({
            "customer": customer.to_dict(),
            "credit_transactions": [entry.to_dict() for entry in entries],
            "verification": credit_service.verify_balance(customer_id),
        }), 200
    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code


@customers_bp.post("/<int:customer_id>/credit/payments")
def record_payment_route(customer_id: int):
    """
    Record a customer payment against their credit balance.

    Request body:
    {
        "amount_cents": int (> 0),
        "payment_method": str (optional, default "cash"),
        "reference": str (optional),
        "description": str (optional),
        "user_id": int (optional)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        entry = credit_service.record_payment(
            customer_id=customer_id,
            amount_cents=amount_cents(data, "amount_cents", required=True),
            payment_method=optional_text(data, "payment_method", max_length=32),
            reference=optional_text(data, "reference", max_length=128),
            description=optional_text(data, "description"),
            cashier_id=optional_id(data, "user_id"),
        )
        return jsonify({"credit_transaction": entry.to_dict()}), 201

    except ServiceError as e:
        db.session.rollback()
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to record credit payment")
        return jsonify({"error": "Internal server error"}), 500
