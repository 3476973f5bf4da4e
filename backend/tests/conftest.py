"""
Pytest fixtures for back office tests.

Provides test database setup, factory fixtures for users, suppliers and
products, and a test client.
"""

import pytest
from backoffice import create_app
from backoffice.extensions import db
from backoffice.models import Product, Supplier, User
from backoffice.services import order_service, purchase_order_service


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'DB_RETRY_BACKOFF': 0,
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
def user(db_session):
    """Active staff member used as actor."""
    user = User(username="clerk", first_name="Casey", last_name="Clerk", email="clerk@backoffice.test")
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def other_user(db_session):
    user = User(username="packer", first_name="Robin", last_name="Packer", email="packer@backoffice.test")
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def inactive_user(db_session):
    user = User(username="former", is_active=False)
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def supplier(db_session):
    supplier = Supplier(name="Acme Wholesale", code="ACME", payment_terms="net_45")
    db_session.add(supplier)
    db_session.commit()
    return supplier


@pytest.fixture(scope='function')
def make_product(db_session):
    """Factory: make_product(sku, stock=0, price_cents=1000, cost_price_cents=400)."""
    def _make(sku="SKU-1", *, stock=0, price_cents=1000, cost_price_cents=400, name=None):
        product = Product(
            sku=sku,
            name=name or f"Product {sku}",
            price_cents=price_cents,
            cost_price_cents=cost_price_cents,
            stock_quantity=stock,
        )
        db_session.add(product)
        db_session.commit()
        return product

    return _make


@pytest.fixture(scope='function')
def product(make_product):
    return make_product("WIDGET-1", stock=5)


@pytest.fixture(scope='function')
def make_purchase_order(user, supplier):
    """Factory: purchase order with the given [(product, ordered, unit_cost)] lines, sent by default."""
    def _make(lines, *, send=True):
        po = purchase_order_service.create_purchase_order(
            supplier_id=supplier.id,
            items=[
                {"product_id": p.id, "quantity": ordered, "unit_cost_cents": unit_cost}
                for p, ordered, unit_cost in lines
            ],
            created_by=user.id,
        )
        if send:
            po = purchase_order_service.send_purchase_order(po.id, actor_id=user.id)
        return po

    return _make


@pytest.fixture(scope='function')
def make_order(user):
    """Factory: pending order for [(product, quantity)] lines."""
    def _make(lines, **kwargs):
        return order_service.create_order(
            customer_info={"first_name": "Jamie", "last_name": "Buyer", "email": "jamie@example.com"},
            items=[{"product_id": p.id, "quantity": qty} for p, qty in lines],
            actor_id=user.id,
            **kwargs,
        )

    return _make
