# Overview: Pytest coverage for the dual stock ledger.

import pytest
from sqlalchemy.exc import OperationalError

from tillbook.models import LedgerEvent, Product, StoreProductStock
from tillbook.services import stock_service
from tillbook.validation import ValidationError

from conftest import product_stock, store_stock


class TestAdjustStock:

    def test_subtract_moves_both_figures(self, db_session, store, product):
        adjustment = stock_service.adjust_stock(store_id=store.id, product_id=product.id, quantity=3, op="subtract")
        assert adjustment.store_stock == 7
        assert adjustment.product_stock == 7
        assert store_stock(store.id, product.id) == 7
        assert product_stock(product.id) == (7, 7)

    def test_subtract_clamps_at_zero(self, db_session, store, product):
        stock_service.adjust_stock(store_id=store.id, product_id=product.id, quantity=25, op="subtract")
        assert store_stock(store.id, product.id) == 0
        assert product_stock(product.id) == (0, 0)

    def test_add(self, db_session, store, product):
        stock_service.adjust_stock(store_id=store.id, product_id=product.id, quantity=5, op="add")
        assert store_stock(store.id, product.id) == 15
        assert product_stock(product.id) == (15, 15)

    def test_set(self, db_session, store, product):
        stock_service.adjust_stock(store_id=store.id, product_id=product.id, quantity=4, op="set")
        assert store_stock(store.id, product.id) == 4
        assert product_stock(product.id) == (4, 4)

    def test_set_creates_missing_override(self, db_session, store):
        product = Product(sku="NEW-1", name="New", stock=2, quantity=2)
        db_session.add(product)
        db_session.commit()

        stock_service.adjust_stock(store_id=store.id, product_id=product.id, quantity=9, op="set")
        assert store_stock(store.id, product.id) == 9
        assert product_stock(product.id) == (9, 9)

    def test_add_without_override_leaves_it_absent(self, db_session, store):
        product = Product(sku="NEW-2", name="New", stock=2, quantity=2)
        db_session.add(product)
        db_session.commit()

        adjustment = stock_service.adjust_stock(store_id=store.id, product_id=product.id, quantity=3, op="add")
        assert adjustment.store_stock is None
        assert db_session.query(StoreProductStock).filter_by(product_id=product.id).count() == 0
        assert product_stock(product.id) == (5, 5)

    def test_global_only_when_no_store(self, db_session, store, product):
        stock_service.adjust_stock(store_id=None, product_id=product.id, quantity=1, op="set")
        assert product_stock(product.id) == (1, 1)
        assert store_stock(store.id, product.id) == 10

    @pytest.mark.parametrize("op,quantity", [("multiply", 1), ("add", -1), ("set", 1.5)])
    def test_rejects_bad_input(self, db_session, store, product, op, quantity):
        with pytest.raises(ValidationError):
            stock_service.adjust_stock(store_id=store.id, product_id=product.id, quantity=quantity, op=op)


class TestMirrorPolicy:

    @staticmethod
    def _broken_mirror(product_id, op, quantity):
        raise OperationalError("UPDATE products", {}, Exception("disk I/O error"))

    def test_best_effort_keeps_store_write(self, db_session, app, store, product, monkeypatch):
        monkeypatch.setattr(stock_service, "_write_product_mirror", self._broken_mirror)

        adjustment = stock_service.adjust_stock(store_id=store.id, product_id=product.id, quantity=2, op="subtract")

        assert adjustment.mirror_ok is False
        assert "disk I/O error" in adjustment.mirror_error
        assert store_stock(store.id, product.id) == 8
        assert product_stock(product.id) == (10, 10)

        event = db_session.query(LedgerEvent).filter_by(event_type="stock.mirror_failed").one()
        assert event.entity_id == product.id
        assert event.payload["op"] == "subtract"

    def test_atomic_mode_propagates(self, db_session, store, product, monkeypatch):
        monkeypatch.setattr(stock_service, "_write_product_mirror", self._broken_mirror)

        with pytest.raises(OperationalError):
            stock_service.adjust_stock(
                store_id=store.id, product_id=product.id, quantity=2, op="subtract", mirror_mode="atomic"
            )
        db_session.rollback()
        assert store_stock(store.id, product.id) == 10


class TestGetStock:

    def test_override_is_authoritative(self, db_session, store, product):
        db_session.query(Product).filter_by(id=product.id).update({"stock": 99})
        db_session.commit()
        stock = stock_service.get_stock(store_id=store.id, product_id=product.id)
        assert stock["stock"] == 10
        assert stock["source"] == "store"
        assert stock["product_stock"] == 99

    def test_global_figure_without_override(self, db_session, store):
        product = Product(sku="G-1", name="Global", stock=4, quantity=4)
        db_session.add(product)
        db_session.commit()
        stock = stock_service.get_stock(store_id=store.id, product_id=product.id)
        assert stock["stock"] == 4
        assert stock["source"] == "product"

    def test_stock_routes(self, client, db_session, store, product):
        response = client.post("/api/stock/adjust", json={
            "store_id": store.id,
            "product_id": product.id,
            "op": "subtract",
            "quantity": 4,
        })
        assert response.status_code == 200
        assert response.json["stock"] == 6

        response = client.get(f"/api/stock/{store.id}/{product.id}")
        assert response.json["store_stock"] == 6
        assert response.json["product_stock"] == 6

        response = client.post("/api/stock/adjust", json={
            "store_id": store.id,
            "product_id": product.id,
            "op": "subtract",
            "quantity": -4,
        })
        assert response.status_code == 400
        assert response.json["code"] == "VALIDATION_ERROR"
