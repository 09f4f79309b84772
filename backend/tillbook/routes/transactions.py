# backend/tillbook/routes/transactions.py
"""Sale transaction routes: create, complete, refund, void, read."""

from flask import Blueprint, request, jsonify, current_app

from ..extensions import db
from ..errors import ServiceError
from ..services import ledger_service, transaction_service
from ..validation import ValidationError, amount_cents, optional_date, optional_id, optional_text


transactions_bp = Blueprint("transactions", __name__, url_prefix="/api/transactions")

TRANSACTION_STATUSES = ("pending", "completed", "refunded", "voided")


@transactions_bp.post("")
def create_transaction_route():
    """
    Create a sale.

    Request body:
    {
        "store_id": int,
        "customer_id": int (optional),
        "cashier_id": int (optional),
        "payment_method": "cash" | "card" | "credit" | "split" | "other",
        "status": "completed" | "pending" (default "completed"),
        "created_at": ISO-8601 (optional, decides the business date),
        "items": [{"product_id": int?, "name": str?, "quantity": int, "unit_price_cents": int}],
        "subtotal_cents" / "tax_cents" / "discount_cents" / "total_cents": int (optional)
    }

    Any transaction_number in the body is ignored.

    Returns:
        201: {"transaction", "warnings", "invoice"}
        400: Validation error, DAY_NOT_OPEN, DATE_MISMATCH
        404: Store not found
    """
    try:
        data = request.get_json(silent=True) or {}
        result = transaction_service.create_transaction(data)
        return jsonify(result.to_dict()), 201

    except ServiceError as e:
        db.session.rollback()
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to create transaction")
        return jsonify({"error": "Internal server error"}), 500


@transactions_bp.get("")
def list_transactions_route():
    """List transactions (?store_id=&date=YYYY-MM-DD&status=&limit=)."""
    try:
        status = request.args.get("status")
        if status and status not in TRANSACTION_STATUSES:
            raise ValidationError(f"status must be one of {', '.join(TRANSACTION_STATUSES)}")
        transactions = transaction_service.list_transactions(
            store_id=optional_id(request.args, "store_id"),
            date=optional_date(request.args, "date"),
            status=status,
            limit=min(request.args.get("limit", 100, type=int), 500),
        )
        return jsonify({"transactions": [tx.to_dict() for tx in transactions]}), 200

    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code


@transactions_bp.get("/<int:transaction_id>")
def get_transaction_route(transaction_id: int):
    """Transaction with its items and ledger events."""
    try:
        tx = transaction_service.get_transaction(transaction_id)
        events = ledger_service.list_ledger_events(transaction_id=transaction_id)
        return jsonify({
            "transaction": transaction_service.serialize_transaction(tx),
            "events": [event.to_dict() for event in events],
        }), 200
    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code


@transactions_bp.post("/<int:transaction_id>/complete")
def complete_transaction_route(transaction_id: int):
    """
    Complete a pending transaction.

    Request body:
    {
        "completed_at": ISO-8601 (optional, decides the business date),
        "user_id": int (optional)
    }

    Returns:
        200: Completed
        400: DAY_NOT_OPEN, DATE_MISMATCH
        409: Not pending
    """
    try:
        data = request.get_json(silent=True) or {}
        result = transaction_service.complete_transaction(
            transaction_id,
            actor_user_id=optional_id(data, "user_id"),
            proposed_at=transaction_service.proposed_timestamp(data, "completed_at"),
        )
        return jsonify(result.to_dict()), 200

    except ServiceError as e:
        db.session.rollback()
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to complete transaction")
        return jsonify({"error": "Internal server error"}), 500


@transactions_bp.post("/<int:transaction_id>/refund")
def refund_transaction_route(transaction_id: int):
    """
    Refund a completed transaction.

    Request body:
    {
        "reason": str,
        "amount_cents": int (optional, defaults to the full total),
        "user_id": int (optional)
    }

    Returns:
        200: Refunded
        400: Validation error (missing reason, amount above total)
        404: Transaction not found
        409: Already refunded or voided
    """
    try:
        data = request.get_json(silent=True) or {}
        amount = amount_cents(data, "amount_cents") if data.get("amount_cents") is not None else None
        result = transaction_service.refund_transaction(
            transaction_id,
            reason=optional_text(data, "reason"),
            amount_cents=amount,
            actor_user_id=optional_id(data, "user_id"),
        )
        return jsonify(result.to_dict()), 200

    except ServiceError as e:
        db.session.rollback()
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to refund transaction")
        return jsonify({"error": "Internal server error"}), 500


@transactions_bp.post("/<int:transaction_id>/void")
def void_transaction_route(transaction_id: int):
    """
    Void a completed transaction (same business day only).

    Request body:
    {
        "reason": str,
        "user_id": int (optional)
    }

    Returns:
        200: Voided
        404: Transaction not found
        409: Already refunded/voided, or VOID_WINDOW_EXPIRED
    """
    try:
        data = request.get_json(silent=True) or {}
        result = transaction_service.void_transaction(
            transaction_id,
            reason=optional_text(data, "reason"),
            actor_user_id=optional_id(data, "user_id"),
        )
        return jsonify(result.to_dict()), 200

    except ServiceError as e:
        db.session.rollback()
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to void transaction")
        return jsonify({"error": "Internal server error"}), 500
