# backend/tillbook/config.py
from __future__ import annotations
import os


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/tillbook.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///tillbook.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Business-day timezone resolution: store setting, then this, then currency table, then UTC
    DEFAULT_STORE_TIMEZONE = os.environ.get("DEFAULT_STORE_TIMEZONE", "").strip() or None
    CURRENCY_TIMEZONES = {
        "QAR": "Asia/Qatar",
        "AED": "Asia/Dubai",
        "SAR": "Asia/Riyadh",
        "KWD": "Asia/Kuwait",
        "BHD": "Asia/Bahrain",
        "OMR": "Asia/Muscat",
    }

    # Transaction numbers: YYYYMMDD + 4-digit sequence
    TRANSACTION_NUMBER_ATTEMPTS = _env_int("TRANSACTION_NUMBER_ATTEMPTS", 10)
    TRANSACTION_NUMBER_RETRY_DELAY = _env_float("TRANSACTION_NUMBER_RETRY_DELAY", 0.002)
    TRANSACTION_CREATE_RETRIES = _env_int("TRANSACTION_CREATE_RETRIES", 3)

    # Older transactions must be refunded instead of voided
    VOID_WINDOW_HOURS = _env_int("VOID_WINDOW_HOURS", 24)

    # "best_effort": product mirror failures are logged, never fail the sale
    # "atomic": mirror failures propagate to the caller
    STOCK_MIRROR_MODE = os.environ.get("STOCK_MIRROR_MODE", "best_effort")

    # "create_product": unmatched counted items become new products
    # "report_extra": unmatched or over-counted items are reported as extra and not created
    STOCK_TAKING_UNMATCHED_POLICY = os.environ.get("STOCK_TAKING_UNMATCHED_POLICY", "create_product")

    INVOICE_BASE_URL = os.environ.get("INVOICE_BASE_URL", "http://localhost:5000/static/invoices")

    BARCODE_LOOKUP_ENABLED = os.environ.get("BARCODE_LOOKUP_ENABLED", "true").lower() == "true"
    BARCODE_LOOKUP_TIMEOUT = _env_float("BARCODE_LOOKUP_TIMEOUT", 5.0)
