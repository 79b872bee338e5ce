"""
Pytest fixtures for stockledger backend tests.

Provides test database setup, a small catalog, and order factories.
"""

import pytest

from stockledger import create_app
from stockledger.extensions import db
from stockledger.models import Order, OrderItem, Product, Variant


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


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
def cli_runner(app):
    return app.test_cli_runner()


@pytest.fixture(scope='function')
def product(db_session):
    """Product with 50 units of product-level stock."""
    product = Product(name="Classic Tee", price_cents=1999, stock=50)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def variant(db_session, product):
    """Variant of `product` with its own 30 units."""
    variant = Variant(product_id=product.id, name="Medium", stock=30)
    db_session.add(variant)
    db_session.commit()
    return variant


@pytest.fixture(scope='function')
def other_product(db_session):
    product = Product(name="Enamel Mug", price_cents=1250, stock=3)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def make_order(db_session):
    """Factory: make_order([(product_id, quantity, variant_id?), ...], status='PENDING')."""
    def _make(lines, status="PENDING", user_id=None):
        order = Order(status=status, user_id=user_id)
        for line in lines:
            product_id, quantity = line[0], line[1]
            variant_id = line[2] if len(line) > 2 else None
            order.items.append(OrderItem(product_id=product_id, variant_id=variant_id, quantity=quantity))
        db_session.add(order)
        db_session.commit()
        return order

    return _make
