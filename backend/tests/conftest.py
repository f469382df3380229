"""
Pytest fixtures for salesflow backend tests.

Provides the in-memory application, a cleared database per test, the test
client, and factories for products and orders.
"""

import pytest

from salesflow import create_app
from salesflow.extensions import db
from salesflow.models import Product
from salesflow.services import order_service, stock_ledger_service


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'PRIVILEGED_ROLES': {'admin', 'manager'},
        'CLI_RETRY_BACKOFF': 0,
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
def make_product(db_session):
    """
    Product factory. Opening stock is booked as a stock_entry movement so the
    counter and the ledger agree from the start.
    """
    def _make(name="Widget", stock=0, internal_code=None, barcode=None):
        product = Product(name=name, internal_code=internal_code, barcode=barcode, stock=0)
        db_session.add(product)
        db_session.commit()
        if stock:
            stock_ledger_service.receive_stock(product.id, stock, "seed", notes="opening stock")
        return product

    return _make


@pytest.fixture(scope='function')
def make_order(db_session):
    """Order factory: make_order([(product, quantity), ...])."""
    def _make(lines, created_by="seller", unit_price_cents=1000, budget_id=None):
        items = [
            {"product_id": product.id, "quantity": quantity, "unit_price_cents": unit_price_cents}
            for product, quantity in lines
        ]
        return order_service.create_order(created_by, items, budget_id=budget_id)

    return _make


def actor_headers(actor: str = "ana", roles: str = "") -> dict:
    """Headers the upstream auth proxy forwards."""
    headers = {"X-Actor-Id": actor}
    if roles:
        headers["X-Actor-Roles"] = roles
    return headers


def fresh(model, pk):
    """Reload a row, discarding anything cached in the session."""
    db.session.expire_all()
    return db.session.get(model, pk)
