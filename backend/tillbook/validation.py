from __future__ import annotations
from datetime import datetime
from typing import Any

from tillbook.errors import ServiceError


# Maximum money amount: 9,999,999.99 (999,999,999 cents)
# This prevents database overflow issues and nonsensical totals
MAX_AMOUNT_CENTS = 999_999_999

# Upper bound of a 32-bit signed integer primary key
MAX_ID = 2_147_483_647


class ValidationError(ServiceError, ValueError):
    """400-level input problem."""
    status_code = 400
    default_code = "VALIDATION_ERROR"


class ConflictError(ServiceError, ValueError):
    """409-level business rule conflict (e.g., day already open)."""
    status_code = 409
    default_code = "CONFLICT"


def coerce_int(value: Any, field: str) -> int:
    """
    Strict integer coercion for JSON input.

    Rejects floats, booleans, scientific notation and decimal strings so
    amounts in cents and quantities never silently truncate.
    """
    # Already an int (but not bool which is a subclass of int)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        # Reject scientific notation (e.g., "1e15", "1E10")
        if 'e' in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        # Reject decimal points (e.g., "12.5")
        if '.' in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    if isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")
    raise ValidationError(f"{field} must be an integer")


def require_id(payload: dict, field: str) -> int:
    if field not in payload or payload[field] is None:
        raise ValidationError(f"Missing required field: {field}")
    return optional_id(payload, field)


def optional_id(payload: dict, field: str) -> int | None:
    raw = payload.get(field)
    if raw is None or raw == "":
        return None
    value = coerce_int(raw, field)
    if value <= 0 or value > MAX_ID:
        raise ValidationError(f"{field} must be an integer between 1 and {MAX_ID}")
    return value


def amount_cents(payload: dict, field: str, *, required: bool = False, default: int | None = 0) -> int | None:
    """Non-negative money amount in cents."""
    raw = payload.get(field)
    if raw is None:
        if required:
            raise ValidationError(f"Missing required field: {field}")
        return default
    value = coerce_int(raw, field)
    if value < 0:
        raise ValidationError(f"{field} must be >= 0")
    if value > MAX_AMOUNT_CENTS:
        raise ValidationError(f"{field} cannot exceed {MAX_AMOUNT_CENTS}")
    return value


def optional_date(payload: dict, field: str) -> str | None:
    """YYYY-MM-DD business date string."""
    raw = payload.get(field)
    if raw is None or raw == "":
        return None
    if not isinstance(raw, str):
        raise ValidationError(f"{field} must be a YYYY-MM-DD date")
    try:
        return datetime.strptime(raw.strip(), "%Y-%m-%d").date().isoformat()
    except ValueError:
        raise ValidationError(f"{field} must be a YYYY-MM-DD date")


def optional_text(payload: dict, field: str, max_length: int = 255) -> str | None:
    raw = payload.get(field)
    if raw is None:
        return None
    value = str(raw).strip()
    if not value:
        return None
    if len(value) > max_length:
        raise ValidationError(f"{field} exceeds max length {max_length}")
    return value
