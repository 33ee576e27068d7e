"""
Pytest fixtures for storefront backend tests.

Provides test database setup, catalog/voucher factories, and test client.
"""

from datetime import timedelta

import pytest

from storefront import create_app
from storefront.extensions import db
from storefront.models import Category, Product, User, Voucher
from storefront.services import settings_service
from storefront.time_utils import utcnow


TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    'LOG_LEVEL': 'DEBUG',
}


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TEST_CONFIG)

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    # Clear all data but keep schema
    meta = db.metadata
    for table in reversed(meta.sorted_tables):
        db.session.execute(table.delete())
    db.session.commit()

    yield db.session

    # Cleanup after test
    db.session.rollback()


@pytest.fixture(scope='function')
def make_category(db_session):
    def _make(name="Shirts"):
        category = Category(name=name)
        db_session.add(category)
        db_session.commit()
        return category
    return _make


@pytest.fixture(scope='function')
def make_product(db_session):
    def _make(name="Linen Shirt", price_cents=1000, stock=10, currency="PKR", categories=(), is_active=True):
        product = Product(
            name=name,
            price_cents=price_cents,
            stock_quantity=stock,
            currency=currency,
            is_active=is_active,
        )
        product.categories = list(categories)
        db_session.add(product)
        db_session.commit()
        return product
    return _make


@pytest.fixture(scope='function')
def make_user(db_session):
    counter = {"n": 0}

    def _make(name="Staff Member"):
        counter["n"] += 1
        user = User(name=name, email=f"user{counter['n']}@store.test")
        db_session.add(user)
        db_session.commit()
        return user
    return _make


@pytest.fixture(scope='function')
def make_voucher(db_session):
    def _make(code="SAVE10", type="PERCENTAGE", value=10, **overrides):
        now = utcnow()
        fields = {
            "code": code,
            "type": type,
            "value": value,
            "min_order_value_cents": 0,
            "start_date": now - timedelta(days=1),
            "expiry_date": now + timedelta(days=30),
            "is_active": True,
        }
        fields.update(overrides)
        voucher = Voucher(**fields)
        db_session.add(voucher)
        db_session.commit()
        return voucher
    return _make


@pytest.fixture(scope='function')
def set_delivery(db_session):
    def _set(cents):
        settings_service.set_delivery_charge_cents(cents)
        db_session.commit()
    return _set


def checkout_payload(items, **overrides) -> dict:
    """Helper to build a minimal valid checkout body."""
    payload = {
        "customer_email": "buyer@example.com",
        "customer_phone": "+92 300 1234567",
        "customer_name": "Ayesha Khan",
        "shipping_city": "Lahore",
        "items": items,
    }
    payload.update(overrides)
    return payload
