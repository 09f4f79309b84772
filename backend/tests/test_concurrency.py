# Overview: Threaded tests for number allocation and one-shot refund/void on a file database.

import threading

import pytest

from tillbook import create_app
from tillbook.extensions import db
from tillbook.models import DayOperation, Product, Store, StoreProductStock, Transaction
from tillbook.services import transaction_service
from tillbook.time_utils import utcnow

from conftest import SALE_DATE, SALE_TIMESTAMP


@pytest.fixture
def file_app(tmp_path):
    """Separate app on a temp-file SQLite database so threads get their own connections."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'concurrency.db'}",
        'SQLALCHEMY_ENGINE_OPTIONS': {"connect_args": {"timeout": 30}},
        'DEFAULT_STORE_TIMEZONE': None,
        'TRANSACTION_NUMBER_RETRY_DELAY': 0,
        'TRANSACTION_CREATE_RETRIES': 10,
        'INVOICE_BASE_URL': 'https://invoices.test',
    })
    with app.app_context():
        db.create_all()

        store = Store(name="Concurrency Store", code="CONC", settings={"timezone": "UTC"})
        db.session.add(store)
        db.session.flush()
        product = Product(sku="C-001", name="Contended", price_cents=100, cost_cents=50, stock=10, quantity=10)
        db.session.add(product)
        db.session.flush()
        db.session.add(StoreProductStock(store_id=store.id, product_id=product.id, stock=10))
        db.session.add(DayOperation(store_id=store.id, date=SALE_DATE, status="open", opened_at=utcnow()))
        db.session.commit()

        app.config["TEST_STORE_ID"] = store.id
        app.config["TEST_PRODUCT_ID"] = product.id

    yield app

    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


def _run_threads(app, target, count):
    results = []
    lock = threading.Lock()

    def worker(*args):
        with app.app_context():
            try:
                value = target(*args)
                with lock:
                    results.append(value)
            except Exception as exc:
                with lock:
                    results.append(exc)
            finally:
                db.session.remove()

    threads = [threading.Thread(target=worker, args=(index,)) for index in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results


def _stock(app):
    with app.app_context():
        store_stock = (
            db.session.query(StoreProductStock.stock)
            .filter_by(store_id=app.config["TEST_STORE_ID"], product_id=app.config["TEST_PRODUCT_ID"])
            .scalar()
        )
        global_stock = db.session.query(Product.stock).filter_by(id=app.config["TEST_PRODUCT_ID"]).scalar()
        db.session.remove()
    return store_stock, global_stock


def _sale(app):
    return {
        "store_id": app.config["TEST_STORE_ID"],
        "payment_method": "cash",
        "created_at": SALE_TIMESTAMP,
        "items": [{"product_id": app.config["TEST_PRODUCT_ID"], "quantity": 1, "unit_price_cents": 100}],
    }


def test_concurrent_sales_get_distinct_numbers(file_app):
    def create(_index):
        result = transaction_service.create_transaction(_sale(file_app))
        return result.transaction.transaction_number

    results = _run_threads(file_app, create, 5)

    errors = [r for r in results if isinstance(r, Exception)]
    assert not errors
    assert len(set(results)) == 5
    assert all(number.startswith("20240101") for number in results)
    assert _stock(file_app) == (5, 5)


def test_concurrent_refund_and_void_restock_once(file_app):
    with file_app.app_context():
        sale = _sale(file_app)
        sale["items"][0]["quantity"] = 2
        tx_id = transaction_service.create_transaction(sale).transaction.id
        db.session.remove()
    assert _stock(file_app) == (8, 8)

    def refund_or_void(index):
        if index == 0:
            transaction_service.refund_transaction(tx_id, reason="Concurrent refund")
            return "refunded"
        transaction_service.void_transaction(tx_id, reason="Concurrent void")
        return "voided"

    results = _run_threads(file_app, refund_or_void, 2)

    winners = [r for r in results if r in ("refunded", "voided")]
    assert len(winners) == 1
    losers = [r for r in results if isinstance(r, Exception)]
    assert len(losers) == 1
    assert isinstance(losers[0], transaction_service.ConflictError)

    with file_app.app_context():
        assert db.session.get(Transaction, tx_id).status == winners[0]
        db.session.remove()
    assert _stock(file_app) == (10, 10)
