"""
Pytest fixtures for pharmapos backend tests.

Provides an in-memory application, a clean database per test, a test client
and small catalogue factories.
"""

from datetime import date

import pytest

from pharmapos import create_app
from pharmapos.extensions import db
from pharmapos.services import inventory_service
from pharmapos.services.settlement_service import CartLine, Cashier, SettlementRequest


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'SETTLEMENT_LOCK_TIMEOUT_SECONDS': 1.0,
        'SETTLEMENT_RETRY_BACKOFF_SECONDS': 0.01,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app, db_session):
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
    """Factory: make_product(sku, quantity=0, **kwargs) -> Product."""
    counter = {"n": 0}

    def _make(sku=None, name=None, unit_price_cents=1000, initial_quantity=0, **kwargs):
        counter["n"] += 1
        sku = sku or f"SKU-{counter['n']}"
        return inventory_service.create_product(
            sku=sku,
            name=name or f"Product {counter['n']}",
            unit_price_cents=unit_price_cents,
            initial_quantity=initial_quantity,
            **kwargs,
        )

    return _make


@pytest.fixture(scope='function')
def batched_product(make_product):
    """
    Paracetamol with two batches:
    B1: 3 units, expires 2025-01-01
    B2: 10 units, expires 2025-06-01
    """
    product = make_product(
        sku="PARA-500",
        name="Paracetamol 500mg",
        unit_price_cents=250,
        initial_quantity=3,
        batch_number="B1",
        expiry_date=date(2025, 1, 1),
    )
    inventory_service.receive_batch(
        product_id=product.id,
        batch_number="B2",
        quantity=10,
        expiry_date=date(2025, 6, 1),
    )
    return product


@pytest.fixture
def make_request():
    """Factory for SettlementRequest from (product_id, quantity) pairs."""

    def _make(txid, lines, **kwargs):
        items = tuple(
            line if isinstance(line, CartLine) else CartLine(product_id=line[0], quantity=line[1])
            for line in lines
        )
        kwargs.setdefault("cashier", Cashier(id="7", name="Ada Cashier", email="ada@example.com"))
        return SettlementRequest(client_transaction_id=txid, items=items, **kwargs)

    return _make
