# Overview: Invoice rendering hook for completed transactions.

"""
Document rendering lives outside this service. The app holds one renderer
object in app.extensions["tillbook.invoice_renderer"] with a
render(transaction, items) -> {"document_url", "share_link"} method; swap it
to plug in a PDF service. Rendering runs as a best-effort side effect and
never fails a sale.
"""

from __future__ import annotations

import re
from urllib.parse import quote

from flask import current_app

EXTENSION_KEY = "tillbook.invoice_renderer"


class LinkInvoiceRenderer:
    """Builds a document URL under INVOICE_BASE_URL and a WhatsApp share link."""

    def __init__(self, base_url: str):
        self.base_url = base_url.rstrip("/")

    def render(self, transaction, items) -> dict:
        document_url = f"{self.base_url}/{transaction.transaction_number}.pdf"
        text = quote(f"Invoice {transaction.transaction_number}: {document_url}")

        phone = ""
        if transaction.customer is not None and transaction.customer.phone:
            phone = re.sub(r"\D", "", transaction.customer.phone)

        share_link = f"https://wa.me/{phone}?text={text}" if phone else f"https://wa.me/?text={text}"
        return {"document_url": document_url, "share_link": share_link, "item_count": len(items)}


def install_renderer(app, renderer=None) -> None:
    app.extensions[EXTENSION_KEY] = renderer or LinkInvoiceRenderer(app.config["INVOICE_BASE_URL"])


def get_renderer():
    renderer = current_app.extensions.get(EXTENSION_KEY)
    if renderer is None:
        renderer = LinkInvoiceRenderer(current_app.config["INVOICE_BASE_URL"])
    return renderer


def render_invoice(transaction) -> dict:
    return get_renderer().render(transaction, list(transaction.items))
