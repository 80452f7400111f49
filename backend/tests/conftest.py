"""
Pytest fixtures for khatabook backend tests.

Provides test database setup, an in-memory notification transport,
role-specific users, a store with listings, and a test client.
"""

import itertools

import pytest

from khatabook import create_app
from khatabook.extensions import db, notifier
from khatabook.models import Listing, RetailerDeliveryBoy, Store, User
from khatabook.models.users import ROLE_ADMIN, ROLE_DELIVERY_BOY, ROLE_RETAILER, ROLE_SHOP_OWNER
from khatabook.services import order_service, session_service


_emails = itertools.count(1)


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'NOTIFICATION_TRANSPORT': 'memory',
        'PAYMENT_CHANGE_MAX_REQUESTS': 3,
        'PAYMENT_CHANGE_REQUEST_TTL_MINUTES': 120,
        'LOG_LEVEL': 'WARNING',
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
def transport(app):
    """The app's InMemoryTransport, emptied for this test."""
    current = notifier.transport
    current.clear()
    yield current
    current.clear()


def make_user(db_session, role: str, name: str, phone: str | None = None) -> User:
    user = User(
        email=f"user{next(_emails)}@khatabook.test",
        full_name=name,
        role=role,
        phone=phone,
    )
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def retailer(db_session):
    return make_user(db_session, ROLE_RETAILER, "Ravi Traders", "9800000001")


@pytest.fixture(scope='function')
def owner(db_session):
    return make_user(db_session, ROLE_SHOP_OWNER, "Sharma General Store", "9800000002")


@pytest.fixture(scope='function')
def courier(db_session):
    return make_user(db_session, ROLE_DELIVERY_BOY, "Arjun", "9800000003")


@pytest.fixture(scope='function')
def admin(db_session):
    return make_user(db_session, ROLE_ADMIN, "Platform Admin")


@pytest.fixture(scope='function')
def store(db_session, retailer):
    """Retailer's store."""
    store = Store(owner_id=retailer.id, name="Ravi Wholesale", city="Pune")
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def listing(db_session, store):
    """Listing priced at ₹500.00."""
    listing = Listing(store_id=store.id, name="Basmati Rice 25kg", unit="bag", price_retail_cents=50000)
    db_session.add(listing)
    db_session.commit()
    return listing


@pytest.fixture(scope='function')
def linked_courier(db_session, retailer, courier):
    """Courier with an ACTIVE link to the retailer."""
    link = RetailerDeliveryBoy(retailer_id=retailer.id, delivery_boy_id=courier.id, status="ACTIVE")
    db_session.add(link)
    db_session.commit()
    return courier


@pytest.fixture(scope='function')
def place_order(owner, store, listing):
    """Factory placing an order of `qty` x ₹500.00 from the owner to the store."""
    def _place(qty: int = 2):
        return order_service.create_order(owner.id, store.id, [{"listing_id": listing.id, "qty": qty}])
    return _place


@pytest.fixture(scope='function')
def out_for_delivery_order(place_order, retailer, linked_courier):
    """₹1,000.00 order, accepted, assigned, READY then OUT_FOR_DELIVERY."""
    order = place_order(2)
    order_service.accept_order(order.id, retailer.id)
    order_service.assign_courier(order.id, retailer.id, linked_courier.id)
    order_service.advance_status(order.id, retailer.id, "READY")
    order_service.advance_status_by_courier(order.id, linked_courier.id, "OUT_FOR_DELIVERY")
    return order


def get_auth_token(user: User) -> str:
    """Helper to issue a bearer token for a user."""
    _session, token = session_service.create_session(user.id)
    return token


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture(scope='function')
def headers_for(db_session):
    """Factory returning Authorization headers for a user."""
    def _headers(user: User) -> dict:
        return auth_headers(get_auth_token(user))
    return _headers
