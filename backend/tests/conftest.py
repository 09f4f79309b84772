"""
Pytest fixtures for tillbook backend tests.

Provides an in-memory database, a test client, and store / product /
customer fixtures with an open business day.
"""

import pytest
from tillbook import create_app
from tillbook.extensions import db
from tillbook.models import Store, Product, StoreProductStock, Customer, DayOperation
from tillbook.time_utils import utcnow


SALE_DATE = "2024-01-01"
SALE_TIMESTAMP = "2024-01-01T10:00:00Z"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'DEFAULT_STORE_TIMEZONE': None,
        'TRANSACTION_NUMBER_RETRY_DELAY': 0,
        'STOCK_MIRROR_MODE': 'best_effort',
        'STOCK_TAKING_UNMATCHED_POLICY': 'create_product',
        'BARCODE_LOOKUP_ENABLED': True,
        'INVOICE_BASE_URL': 'https://invoices.test',
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def store(db_session):
    """Store on UTC so business dates equal UTC dates."""
    store = Store(name="Main Store", code="MAIN", base_currency="QAR", settings={"timezone": "UTC"})
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def product(db_session, store):
    """Product P: price 3.00, cost 1.50, stock 10 globally and in the store."""
    product = Product(
        sku="P-001",
        barcode="6291041500213",
        name="Product P",
        price_cents=300,
        cost_cents=150,
        stock=10,
        quantity=10,
    )
    db_session.add(product)
    db_session.flush()
    db_session.add(StoreProductStock(store_id=store.id, product_id=product.id, stock=10))
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def customer(db_session, store):
    customer = Customer(store_id=store.id, name="Credit Customer", phone="+974 5551 2345", credit_limit_cents=100000)
    db_session.add(customer)
    db_session.commit()
    return customer


@pytest.fixture(scope='function')
def open_day(db_session, store):
    """Open business day 2024-01-01 for the store."""
    day = DayOperation(store_id=store.id, date=SALE_DATE, status="open", opening_cash_cents=0, opened_at=utcnow())
    db_session.add(day)
    db_session.commit()
    return day


def sale_payload(store, product=None, quantity=2, **overrides) -> dict:
    """Cash sale of `quantity` x product at its list price on 2024-01-01."""
    items = []
    if product is not None:
        items.append({
            "product_id": product.id,
            "quantity": quantity,
            "unit_price_cents": product.price_cents,
        })
    payload = {
        "store_id": store.id,
        "payment_method": "cash",
        "created_at": SALE_TIMESTAMP,
        "items": items,
    }
    payload.update(overrides)
    return payload


def store_stock(store_id: int, product_id: int) -> int | None:
    return (
        db.session.query(StoreProductStock.stock)
        .filter_by(store_id=store_id, product_id=product_id)
        .scalar()
    )


def product_stock(product_id: int) -> tuple[int, int]:
    row = db.session.query(Product.stock, Product.quantity).filter_by(id=product_id).one()
    return tuple(row)
