# Overview: Pytest coverage for the sale transaction lifecycle.

"""
Transaction lifecycle tests

- create: numbering, stock decrement on both figures, credit charge
- refund / void: one-shot, restock exactly once, credit compensation
- best-effort side effects: failures reported as warnings, sale stands
- number collisions: whole flow retried with a fresh number
"""

from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from tillbook.extensions import db
from tillbook.models import CreditTransaction, DayOperation, LedgerEvent, Transaction, TransactionItem
from tillbook.services import credit_service, day_service, stock_service, transaction_service
from tillbook.services.invoice_service import EXTENSION_KEY
from tillbook.time_utils import utcnow
from tillbook.validation import ConflictError

from conftest import SALE_TIMESTAMP, product_stock, sale_payload, store_stock


def _create(client, payload):
    response = client.post("/api/transactions", json=payload)
    assert response.status_code == 201, response.json
    return response.json


class TestCreateTransaction:

    def test_cash_sale_scenario(self, client, db_session, store, product, open_day):
        """Open day 2024-01-01, 2 x P at 3.00 -> 202401010001, stock 10 -> 8, total 6.00."""
        body = _create(client, sale_payload(store, product, quantity=2))

        tx = body["transaction"]
        assert tx["transaction_number"] == "202401010001"
        assert tx["status"] == "completed"
        assert tx["total_cents"] == 600
        assert tx["subtotal_cents"] == 600
        assert tx["day_operation_id"] == open_day.id
        assert tx["items"][0]["name"] == "Product P"
        assert tx["items"][0]["total_cents"] == 600
        assert body["warnings"] == []

        assert store_stock(store.id, product.id) == 8
        assert product_stock(product.id) == (8, 8)

    def test_numbers_increment(self, client, db_session, store, product, open_day):
        numbers = [
            _create(client, sale_payload(store, product, quantity=1))["transaction"]["transaction_number"]
            for _ in range(3)
        ]
        assert numbers == ["202401010001", "202401010002", "202401010003"]

    def test_client_number_is_ignored(self, client, db_session, store, product, open_day):
        body = _create(client, sale_payload(store, product, transaction_number="HACKED-1"))
        assert body["transaction"]["transaction_number"] == "202401010001"

    def test_stock_clamps_at_zero(self, client, db_session, store, product, open_day):
        _create(client, sale_payload(store, product, quantity=15))
        assert store_stock(store.id, product.id) == 0
        assert product_stock(product.id) == (0, 0)

    def test_zero_quantity_and_ad_hoc_items_skip_stock(self, client, db_session, store, product, open_day):
        payload = sale_payload(store)
        payload["items"] = [
            {"product_id": product.id, "quantity": 0, "unit_price_cents": 300},
            {"name": "Gift wrap", "quantity": 1, "unit_price_cents": 250},
        ]
        body = _create(client, payload)
        assert body["transaction"]["total_cents"] == 250
        assert len(body["transaction"]["items"]) == 2
        assert store_stock(store.id, product.id) == 10

    def test_totals_with_tax_and_discount(self, client, db_session, store, product, open_day):
        body = _create(client, sale_payload(store, product, quantity=2, tax_cents=30, discount_cents=100))
        assert body["transaction"]["total_cents"] == 530

    @pytest.mark.parametrize("mutate", [
        lambda p: p["items"][0].update(quantity=-1),
        lambda p: p["items"][0].update(product_id=999999),
        lambda p: p["items"][0].update(quantity=1.5),
        lambda p: p.update(payment_method="barter"),
        lambda p: p.update(items=[]),
        lambda p: p.update(discount_cents=100000),
    ])
    def test_invalid_payload_writes_nothing(self, client, db_session, store, product, open_day, mutate):
        payload = sale_payload(store, product, quantity=1)
        mutate(payload)
        response = client.post("/api/transactions", json=payload)
        assert response.status_code == 400
        assert response.json["code"] == "VALIDATION_ERROR"
        assert db_session.query(Transaction).count() == 0
        assert store_stock(store.id, product.id) == 10

    def test_unreadable_timestamp_means_now(self, client, db_session, store, product):
        from tillbook.services.day_service import business_date, open_day as open_business_day

        open_business_day(store_id=store.id, date=business_date(store))
        body = _create(client, sale_payload(store, product, created_at="not-a-date"))
        assert body["transaction"]["transaction_number"].startswith(business_date(store).replace("-", ""))

    def test_credit_sale_charges_customer(self, client, db_session, store, product, open_day, customer):
        body = _create(client, sale_payload(
            store, product, quantity=2, payment_method="credit", customer_id=customer.id,
        ))
        entry = db_session.query(CreditTransaction).filter_by(customer_id=customer.id).one()
        assert entry.type == "charge"
        assert entry.amount_cents == 600
        assert entry.previous_balance_cents == 0
        assert entry.new_balance_cents == 600
        assert entry.transaction_id == body["transaction"]["id"]
        assert entry.description == "Credit sale - Transaction #202401010001"

    def test_pending_then_complete(self, client, db_session, store, product, open_day):
        body = _create(client, sale_payload(store, product, quantity=3, status="pending"))
        tx_id = body["transaction"]["id"]
        assert body["transaction"]["status"] == "pending"
        assert store_stock(store.id, product.id) == 10

        response = client.post(f"/api/transactions/{tx_id}/complete", json={"completed_at": SALE_TIMESTAMP})
        assert response.status_code == 200
        assert response.json["transaction"]["status"] == "completed"
        assert response.json["transaction"]["day_operation_id"] == open_day.id
        assert store_stock(store.id, product.id) == 7

        response = client.post(f"/api/transactions/{tx_id}/complete", json={"completed_at": SALE_TIMESTAMP})
        assert response.status_code == 409

    def test_complete_after_day_closed_is_gated(self, client, db_session, store, product, open_day):
        tx_id = _create(client, sale_payload(store, product, quantity=2, status="pending"))["transaction"]["id"]
        day_service.close_day(day_id=open_day.id, closing_cash_cents=0)

        response = client.post(f"/api/transactions/{tx_id}/complete", json={"completed_at": SALE_TIMESTAMP})

        assert response.status_code == 400
        assert response.json["code"] == "DAY_NOT_OPEN"
        assert db_session.get(Transaction, tx_id).status == "pending"
        assert store_stock(store.id, product.id) == 10
        closed = db_session.get(DayOperation, open_day.id)
        assert closed.total_sales_cents == 0
        assert closed.total_transactions == 0

    def test_complete_posts_to_the_current_open_day(self, client, db_session, store, product, open_day):
        tx_id = _create(client, sale_payload(store, product, quantity=2, status="pending"))["transaction"]["id"]
        day_service.close_day(day_id=open_day.id, closing_cash_cents=0)
        next_day = day_service.open_day(store_id=store.id, date="2024-01-02")

        response = client.post(f"/api/transactions/{tx_id}/complete", json={"completed_at": "2024-01-02T09:00:00Z"})

        assert response.status_code == 200
        assert response.json["transaction"]["day_operation_id"] == next_day.id
        assert db_session.get(DayOperation, next_day.id).total_sales_cents == 600
        assert db_session.get(DayOperation, open_day.id).total_sales_cents == 0
        assert store_stock(store.id, product.id) == 8

    def test_complete_on_other_date_is_rejected(self, client, db_session, store, product, open_day):
        tx_id = _create(client, sale_payload(store, product, quantity=2, status="pending"))["transaction"]["id"]

        response = client.post(f"/api/transactions/{tx_id}/complete", json={"completed_at": "2024-01-02T09:00:00Z"})

        assert response.status_code == 400
        assert response.json["code"] == "DATE_MISMATCH"
        assert store_stock(store.id, product.id) == 10

    def test_get_and_list(self, client, db_session, store, product, open_day):
        tx_id = _create(client, sale_payload(store, product))["transaction"]["id"]

        response = client.get(f"/api/transactions/{tx_id}")
        assert response.status_code == 200
        assert len(response.json["transaction"]["items"]) == 1
        assert response.json["events"][0]["event_type"] == "transaction.created"

        response = client.get(f"/api/transactions?store_id={store.id}&date=2024-01-01")
        assert [t["id"] for t in response.json["transactions"]] == [tx_id]

        response = client.get(f"/api/transactions?store_id={store.id}&date=2024-01-02")
        assert response.json["transactions"] == []

        assert client.get("/api/transactions/424242").status_code == 404


class TestSideEffects:

    def test_mirror_failure_does_not_fail_sale(self, client, db_session, store, product, open_day, monkeypatch):
        def broken_mirror(product_id, op, quantity):
            raise OperationalError("UPDATE products", {}, Exception("database disk image is malformed"))

        monkeypatch.setattr(stock_service, "_write_product_mirror", broken_mirror)

        body = _create(client, sale_payload(store, product, quantity=2))

        assert body["transaction"]["status"] == "completed"
        assert [w["step"] for w in body["warnings"]] == ["stock.mirror"]
        assert store_stock(store.id, product.id) == 8
        assert product_stock(product.id) == (10, 10)
        assert db_session.query(LedgerEvent).filter_by(event_type="stock.mirror_failed").count() == 1

    def test_invoice_failure_is_a_warning(self, client, app, db_session, store, product, open_day, monkeypatch):
        class BrokenRenderer:
            def render(self, transaction, items):
                raise RuntimeError("renderer offline")

        monkeypatch.setitem(app.extensions, EXTENSION_KEY, BrokenRenderer())

        body = _create(client, sale_payload(store, product))

        assert body["invoice"] is None
        assert body["warnings"] == [{"step": "invoice.render", "error": "renderer offline"}]
        event = db_session.query(LedgerEvent).filter_by(event_type="side_effect.failed").one()
        assert event.transaction_id == body["transaction"]["id"]
        assert event.payload["step"] == "invoice.render"
        assert store_stock(store.id, product.id) == 8

    def test_default_invoice_links(self, client, db_session, store, product, open_day, customer):
        body = _create(client, sale_payload(store, product, customer_id=customer.id))
        assert body["invoice"]["document_url"] == "https://invoices.test/202401010001.pdf"
        assert body["invoice"]["share_link"].startswith("https://wa.me/97455512345?text=")

    def test_credit_failure_keeps_sale_and_stock(self, client, db_session, store, product, open_day, customer, monkeypatch):
        def broken_credit(**kwargs):
            raise OperationalError("UPDATE customers", {}, Exception("database is locked"))

        monkeypatch.setattr(transaction_service, "record_credit_transaction", broken_credit)

        body = _create(client, sale_payload(
            store, product, quantity=1, payment_method="credit", customer_id=customer.id,
        ))
        assert [w["step"] for w in body["warnings"]] == ["credit.charge"]
        assert store_stock(store.id, product.id) == 9
        assert db_session.query(CreditTransaction).count() == 0
        assert db_session.query(Transaction).count() == 1


class TestNumberCollisionRetry:

    def test_collision_retries_with_fresh_number(self, client, db_session, store, product, open_day, monkeypatch):
        _create(client, sale_payload(store, product, quantity=1))

        real_next = transaction_service.next_transaction_number
        calls = []

        def stale_then_real(**kwargs):
            calls.append(kwargs)
            if len(calls) == 1:
                return "202401010001"
            return real_next(**kwargs)

        monkeypatch.setattr(transaction_service, "next_transaction_number", stale_then_real)

        body = _create(client, sale_payload(store, product, quantity=1))
        assert body["transaction"]["transaction_number"] == "202401010002"
        assert len(calls) == 2
        assert db_session.query(Transaction).count() == 2
        assert store_stock(store.id, product.id) == 8

    def test_gives_up_after_configured_retries(self, client, db_session, store, product, open_day, monkeypatch):
        _create(client, sale_payload(store, product, quantity=1))
        calls = []

        def always_taken(**kwargs):
            calls.append(kwargs)
            return "202401010001"

        monkeypatch.setattr(transaction_service, "next_transaction_number", always_taken)

        response = client.post("/api/transactions", json=sale_payload(store, product, quantity=1))
        assert response.status_code == 409
        assert response.json["code"] == "TRANSACTION_NUMBER_CONFLICT"
        assert len(calls) == 4
        assert db_session.query(Transaction).count() == 1
        assert db_session.query(TransactionItem).count() == 1


class TestRefund:

    def test_refund_scenario(self, client, db_session, store, product, open_day):
        """Refund 6.00 of the 2 x P sale -> refunded, stock back to 10."""
        tx_id = _create(client, sale_payload(store, product, quantity=2))["transaction"]["id"]

        response = client.post(f"/api/transactions/{tx_id}/refund", json={
            "reason": "Customer changed mind",
            "amount_cents": 600,
            "user_id": 5,
        })
        assert response.status_code == 200
        tx = response.json["transaction"]
        assert tx["status"] == "refunded"
        assert tx["refund_amount_cents"] == 600
        assert tx["refund_reason"] == "Customer changed mind"
        assert tx["refunded_by_user_id"] == 5
        assert tx["refunded_at"] is not None

        assert store_stock(store.id, product.id) == 10
        assert product_stock(product.id) == (10, 10)

    def test_refund_defaults_to_total(self, client, db_session, store, product, open_day):
        tx_id = _create(client, sale_payload(store, product, quantity=2))["transaction"]["id"]
        response = client.post(f"/api/transactions/{tx_id}/refund", json={"reason": "Damaged"})
        assert response.json["transaction"]["refund_amount_cents"] == 600

    def test_refund_twice_restocks_once(self, client, db_session, store, product, open_day):
        tx_id = _create(client, sale_payload(store, product, quantity=2))["transaction"]["id"]
        client.post(f"/api/transactions/{tx_id}/refund", json={"reason": "first"})

        response = client.post(f"/api/transactions/{tx_id}/refund", json={"reason": "second"})
        assert response.status_code == 409
        assert response.json["code"] == "ALREADY_REFUNDED"
        assert store_stock(store.id, product.id) == 10

    def test_refund_above_total_rejected(self, client, db_session, store, product, open_day):
        tx_id = _create(client, sale_payload(store, product, quantity=2))["transaction"]["id"]
        response = client.post(f"/api/transactions/{tx_id}/refund", json={"reason": "x", "amount_cents": 601})
        assert response.status_code == 400
        assert response.json["code"] == "REFUND_EXCEEDS_TOTAL"
        assert db_session.get(Transaction, tx_id).status == "completed"

    def test_zero_refund_rejected(self, client, db_session, store, product, open_day):
        tx_id = _create(client, sale_payload(store, product, quantity=2))["transaction"]["id"]
        response = client.post(f"/api/transactions/{tx_id}/refund", json={"reason": "x", "amount_cents": 0})
        assert response.status_code == 400
        assert response.json["code"] == "VALIDATION_ERROR"
        assert db_session.get(Transaction, tx_id).status == "completed"
        assert store_stock(store.id, product.id) == 8

    def test_refund_requires_reason(self, client, db_session, store, product, open_day):
        tx_id = _create(client, sale_payload(store, product))["transaction"]["id"]
        response = client.post(f"/api/transactions/{tx_id}/refund", json={})
        assert response.status_code == 400

    def test_refund_of_old_transaction_allowed(self, client, db_session, store, product, open_day):
        tx_id = _create(client, sale_payload(store, product))["transaction"]["id"]
        db_session.query(Transaction).filter_by(id=tx_id).update({"created_at": utcnow() - timedelta(days=30)})
        db_session.commit()

        response = client.post(f"/api/transactions/{tx_id}/refund", json={"reason": "late return"})
        assert response.status_code == 200

    def test_refund_unknown_transaction(self, client, db_session):
        response = client.post("/api/transactions/999/refund", json={"reason": "x"})
        assert response.status_code == 404

    def test_credit_refund_compensates_balance(self, client, db_session, store, product, open_day, customer):
        tx_id = _create(client, sale_payload(
            store, product, quantity=2, payment_method="credit", customer_id=customer.id,
        ))["transaction"]["id"]

        client.post(f"/api/transactions/{tx_id}/refund", json={"reason": "return", "amount_cents": 400})

        entries = (
            db_session.query(CreditTransaction)
            .filter_by(customer_id=customer.id)
            .order_by(CreditTransaction.id)
            .all()
        )
        assert [(e.type, e.amount_cents) for e in entries] == [("charge", 600), ("payment", 400)]
        assert credit_service.verify_balance(customer.id)["stored_balance_cents"] == 200
        assert credit_service.verify_balance(customer.id)["consistent"] is True


class TestVoid:

    def test_void_restocks(self, client, db_session, store, product, open_day):
        tx_id = _create(client, sale_payload(store, product, quantity=3))["transaction"]["id"]

        response = client.post(f"/api/transactions/{tx_id}/void", json={"reason": "Wrong item", "user_id": 2})
        assert response.status_code == 200
        tx = response.json["transaction"]
        assert tx["status"] == "voided"
        assert tx["void_reason"] == "Wrong item"
        assert tx["voided_by_user_id"] == 2
        assert store_stock(store.id, product.id) == 10

    def test_void_after_refund_rejected(self, client, db_session, store, product, open_day):
        tx_id = _create(client, sale_payload(store, product, quantity=2))["transaction"]["id"]
        client.post(f"/api/transactions/{tx_id}/refund", json={"reason": "refund"})

        response = client.post(f"/api/transactions/{tx_id}/void", json={"reason": "void"})
        assert response.status_code == 409
        assert response.json["code"] == "ALREADY_REFUNDED"
        assert store_stock(store.id, product.id) == 10

    def test_refund_after_void_rejected(self, client, db_session, store, product, open_day):
        tx_id = _create(client, sale_payload(store, product, quantity=2))["transaction"]["id"]
        client.post(f"/api/transactions/{tx_id}/void", json={"reason": "void"})

        response = client.post(f"/api/transactions/{tx_id}/refund", json={"reason": "refund"})
        assert response.status_code == 409
        assert response.json["code"] == "ALREADY_VOIDED"
        assert store_stock(store.id, product.id) == 10

    def test_void_twice_rejected(self, client, db_session, store, product, open_day):
        tx_id = _create(client, sale_payload(store, product, quantity=2))["transaction"]["id"]
        client.post(f"/api/transactions/{tx_id}/void", json={"reason": "void"})
        response = client.post(f"/api/transactions/{tx_id}/void", json={"reason": "again"})
        assert response.status_code == 409
        assert response.json["code"] == "ALREADY_VOIDED"
        assert store_stock(store.id, product.id) == 10

    def test_void_window_expired(self, client, db_session, store, product, open_day):
        tx_id = _create(client, sale_payload(store, product, quantity=2))["transaction"]["id"]
        db_session.query(Transaction).filter_by(id=tx_id).update({"created_at": utcnow() - timedelta(hours=25)})
        db_session.commit()

        response = client.post(f"/api/transactions/{tx_id}/void", json={"reason": "too late"})
        assert response.status_code == 409
        assert response.json["code"] == "VOID_WINDOW_EXPIRED"
        assert response.json["details"]["action"] == "REFUND"
        assert db_session.get(Transaction, tx_id).status == "completed"
        assert store_stock(store.id, product.id) == 8

        response = client.post(f"/api/transactions/{tx_id}/refund", json={"reason": "refund instead"})
        assert response.status_code == 200

    def test_credit_void_reverses_full_total(self, client, db_session, store, product, open_day, customer):
        tx_id = _create(client, sale_payload(
            store, product, quantity=2, payment_method="credit", customer_id=customer.id,
        ))["transaction"]["id"]

        client.post(f"/api/transactions/{tx_id}/void", json={"reason": "void"})
        result = credit_service.verify_balance(customer.id)
        assert result["stored_balance_cents"] == 0
        assert result["ledger_balance_cents"] == 0

    def test_refund_losing_race_to_void_does_not_restock(self, db_session, store, product, open_day, monkeypatch):
        result = transaction_service.create_transaction(sale_payload(store, product, quantity=2))
        tx_id = result.transaction.id
        real_transition = transaction_service._transition

        # A concurrent void commits between the refund's status read and its update
        def void_first(transaction_id, *, from_status, values):
            db.session.query(Transaction).filter_by(id=transaction_id).update(
                {"status": "voided"}, synchronize_session=False
            )
            db.session.commit()
            return real_transition(transaction_id, from_status=from_status, values=values)

        monkeypatch.setattr(transaction_service, "_transition", void_first)

        with pytest.raises(ConflictError) as excinfo:
            transaction_service.refund_transaction(tx_id, reason="race")

        assert excinfo.value.code == "ALREADY_VOIDED"
        assert store_stock(store.id, product.id) == 8
        assert product_stock(product.id) == (8, 8)
