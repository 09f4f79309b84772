# Overview: Barcode enrichment against public product catalogs.

"""
Looks up a barcode against third-party catalogs in order and returns the
first hit as {"barcode", "name", "description", "brand", "source"}.

Lookups never raise for upstream trouble: timeouts, HTTP errors and
malformed bodies are logged and the next provider is tried. No hit from any
provider returns None.
"""

from __future__ import annotations

import re

import httpx
from flask import current_app

from ..validation import ValidationError

OPEN_FOOD_FACTS_URL = "https://world.openfoodfacts.org/api/v0/product/{barcode}.json"
UPCITEMDB_URL = "https://api.upcitemdb.com/prod/trial/lookup"

BARCODE_PATTERN = re.compile(r"^\d{6,14}$")


def normalize_barcode(raw) -> str:
    barcode = str(raw or "").strip()
    if not BARCODE_PATTERN.match(barcode):
        raise ValidationError("barcode must be 6 to 14 digits", details={"barcode": barcode})
    return barcode


def _open_food_facts(client: httpx.Client, barcode: str) -> dict | None:
    response = client.get(OPEN_FOOD_FACTS_URL.format(barcode=barcode))
    response.raise_for_status()
    data = response.json()
    if data.get("status") != 1:
        return None
    product = data.get("product") or {}
    name = product.get("product_name") or product.get("generic_name")
    if not name:
        return None
    return {
        "name": name,
        "description": product.get("generic_name") or None,
        "brand": product.get("brands") or None,
    }


def _upcitemdb(client: httpx.Client, barcode: str) -> dict | None:
    response = client.get(UPCITEMDB_URL, params={"upc": barcode})
    response.raise_for_status()
    data = response.json()
    if data.get("code") != "OK" or not data.get("items"):
        return None
    item = data["items"][0]
    if not item.get("title"):
        return None
    return {
        "name": item["title"],
        "description": item.get("description") or None,
        "brand": item.get("brand") or None,
    }


PROVIDERS = (
    ("openfoodfacts", _open_food_facts),
    ("upcitemdb", _upcitemdb),
)


def lookup_barcode(raw_barcode, *, client: httpx.Client | None = None) -> dict | None:
    barcode = normalize_barcode(raw_barcode)
    if not current_app.config.get("BARCODE_LOOKUP_ENABLED", True):
        return None

    owns_client = client is None
    if owns_client:
        client = httpx.Client(
            timeout=current_app.config.get("BARCODE_LOOKUP_TIMEOUT", 5.0),
            headers={"User-Agent": "tillbook/1.0"},
        )

    try:
        for source, provider in PROVIDERS:
            try:
                hit = provider(client, barcode)
            except (httpx.HTTPError, ValueError) as exc:
                current_app.logger.warning("Barcode lookup via %s failed for %s: %s", source, barcode, exc)
                continue
            if hit:
                return {"barcode": barcode, "source": source, **hit}
        return None
    finally:
        if owns_client:
            client.close()
