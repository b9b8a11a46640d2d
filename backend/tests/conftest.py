"""
Pytest fixtures for codledger backend tests.

Provides test database setup, store/carrier/product/order factories and
the test client.
"""

import pytest

from codledger import create_app
from codledger.extensions import db
from codledger.models import Carrier, CarrierRate, Product, Store
from codledger.models.carriers import RATE_SCOPE_CITY, RATE_SCOPE_ZONE
from codledger.services import order_service


SHIP_PATH = ("confirmed", "ready_to_ship", "shipped")


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
        db.session.info.clear()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def store(db_session):
    """Create the store every test works in."""
    store = Store(name="Tienda Uno", code="T1")
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def other_store(db_session):
    """Create a second store for isolation checks."""
    store = Store(name="Tienda Dos", code="T2", settlement_code_prefix="ABC")
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def make_carrier(db_session):
    """Factory: carrier with optional {name: rate} city and zone tables."""
    def _make(store, name="Rapido", failed_attempt_fee_percent=50, cities=None, zones=None):
        carrier = Carrier(store_id=store.id, name=name, failed_attempt_fee_percent=failed_attempt_fee_percent)
        db_session.add(carrier)
        db_session.flush()
        for scope, table in ((RATE_SCOPE_CITY, cities or {}), (RATE_SCOPE_ZONE, zones or {})):
            for scope_name, rate in table.items():
                db_session.add(CarrierRate(
                    store_id=store.id,
                    carrier_id=carrier.id,
                    scope=scope,
                    scope_name=scope_name,
                    rate=rate,
                ))
        db_session.commit()
        return carrier

    return _make


@pytest.fixture(scope='function')
def carrier(store, make_carrier):
    """Carrier with an Asuncion city rate and two zone rates."""
    return make_carrier(
        store,
        cities={"Asuncion": 25000, "San Lorenzo": 30000},
        zones={"Central": 35000, "Interior": 45000},
    )


@pytest.fixture(scope='function')
def make_product(db_session):
    def _make(store, sku="SKU-1", name="Remera", stock=10):
        product = Product(store_id=store.id, sku=sku, name=name, stock=stock)
        db_session.add(product)
        db_session.commit()
        return product

    return _make


@pytest.fixture(scope='function')
def product(store, make_product):
    return make_product(store)


@pytest.fixture(scope='function')
def make_order(db_session):
    """
    Factory: order created through the ingestion boundary, optionally walked
    through the state machine to `status`.
    """
    def _make(
        store,
        carrier=None,
        lines=(),
        total_price=100000,
        payment_method="cash",
        prepaid_method=None,
        city="Asuncion",
        zone=None,
        status="pending",
    ):
        order = order_service.create_order(
            store_id=store.id,
            courier_id=carrier.id if carrier is not None else None,
            payment_method=payment_method,
            prepaid_method=prepaid_method,
            total_price=total_price,
            shipping_city=city,
            delivery_zone=zone,
            line_items=[
                {"product_id": p.id, "sku": p.sku, "product_name": p.name, "quantity": qty, "unit_price": 1000}
                for p, qty in lines
            ],
        )
        for step in _path_to(status):
            order_service.transition_order(order.id, step, store_id=store.id)
        return order

    return _make


def _path_to(status):
    if status == "pending":
        return ()
    if status == "confirmed":
        return ("confirmed",)
    if status == "ready_to_ship":
        return SHIP_PATH[:2]
    if status == "shipped":
        return SHIP_PATH
    if status in ("in_transit", "delivered", "not_delivered", "incident"):
        return SHIP_PATH + ((status,) if status == "in_transit" else ("in_transit", status))
    raise ValueError(f"no factory path to {status}")


@pytest.fixture(scope='function')
def headers(store):
    """Store context headers as sent by the gateway."""
    user_id = 7
    return {'X-Store-Id': str(store.id), 'X-User-Id': str(user_id)}
