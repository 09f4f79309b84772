# backend/tillbook/routes/day_operations.py
"""Business-day open/close routes."""

from flask import Blueprint, request, jsonify, current_app

from ..extensions import db
from ..errors import ServiceError
from ..services import day_service
from ..validation import ValidationError, amount_cents, optional_date, optional_id, optional_text, require_id


day_operations_bp = Blueprint("day_operations", __name__, url_prefix="/api/day-operations")


def _optional_cash(data: dict, field: str):
    if data.get(field) is None:
        return None
    return amount_cents(data, field)


@day_operations_bp.post("/open")
def open_day_route():
    """
    Open the business day for a store.

    Request body:
    {
        "store_id": int,
        "date": "YYYY-MM-DD" (optional, defaults to today in store timezone),
        "opening_cash_cents": int (optional, defaults to previous closing cash),
        "user_id": int (optional),
        "notes": str (optional)
    }

    Returns:
        201: Day opened
        400: Invalid request
        404: Store not found
        409: A day is already open, or the date already has a record
    """
    try:
        data = request.get_json(silent=True) or {}
        day = day_service.open_day(
            store_id=require_id(data, "store_id"),
            date=optional_date(data, "date"),
            opening_cash_cents=_optional_cash(data, "opening_cash_cents"),
            actor_user_id=optional_id(data, "user_id"),
            notes=optional_text(data, "notes", max_length=1000),
        )
        return jsonify({"day_operation": day.to_dict()}), 201

    except ServiceError as e:
        db.session.rollback()
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to open day")
        return jsonify({"error": "Internal server error"}), 500


@day_operations_bp.post("/<int:day_id>/close")
def close_day_route(day_id: int):
    """
    Close an open day.

    Request body:
    {
        "closing_cash_cents": int (optional),
        "user_id": int (optional),
        "notes": str (optional)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        day = day_service.close_day(
            day_id=day_id,
            closing_cash_cents=_optional_cash(data, "closing_cash_cents"),
            actor_user_id=optional_id(data, "user_id"),
            notes=optional_text(data, "notes", max_length=1000),
        )
        return jsonify({"day_operation": day.to_dict()}), 200

    except ServiceError as e:
        db.session.rollback()
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to close day")
        return jsonify({"error": "Internal server error"}), 500


@day_operations_bp.get("/open")
def get_open_day_route():
    """Current open day for ?store_id= (null when none is open)."""
    try:
        store_id = require_id(request.args, "store_id")
        store = day_service.get_store(store_id)
        day = day_service.get_open_day(store_id)
        return jsonify({
            "day_operation": day.to_dict() if day else None,
            "business_date": day_service.business_date(store),
            "timezone": day_service.resolve_store_timezone(store),
        }), 200

    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code


@day_operations_bp.get("")
def list_days_route():
    """List day operations (?store_id=&status=&limit=)."""
    try:
        store_id = optional_id(request.args, "store_id")
        status = request.args.get("status")
        if status and status not in day_service.DAY_STATUSES:
            raise ValidationError(f"status must be one of {', '.join(day_service.DAY_STATUSES)}")
        limit = min(request.args.get("limit", 50, type=int), 500)
        days = day_service.list_days(store_id=store_id, status=status, limit=limit)
        return jsonify({"day_operations": [d.to_dict() for d in days]}), 200

    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code
