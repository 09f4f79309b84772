# backend/tillbook/routes/barcodes.py
"""Barcode enrichment route."""

from flask import Blueprint, jsonify

from ..errors import ServiceError
from ..services import barcode_service


barcodes_bp = Blueprint("barcodes", __name__, url_prefix="/api/barcodes")


@barcodes_bp.get("/<barcode>")
def lookup_barcode_route(barcode: str):
    """
    Returns:
        200: {"found": true, "product": {...}} or {"found": false, "product": null}
        400: Malformed barcode
    """
    try:
        hit = barcode_service.lookup_barcode(barcode)
        return jsonify({"found": hit is not None, "product": hit}), 200
    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code
