"""
Pytest fixtures for Stockline backend tests.

Provides an in-memory database, test client, staff users with tokens and
catalogue factories.
"""

import pytest

from stockline import create_app
from stockline.extensions import db
from stockline.models import Customer, Product, User, Variant
from stockline.services.auth_service import hash_password
from stockline.services.notification_service import get_relay


PASSWORD = "Password123!"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'NOTIFICATION_RELAY': 'memory',
        'BCRYPT_ROUNDS': 4,
        'TAX_RATE_BPS': 800,
        'INVOICE_PREFIX': 'INV',
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
    # Clear all data but keep schema
    meta = db.metadata
    for table in reversed(meta.sorted_tables):
        db.session.execute(table.delete())
    db.session.commit()
    get_relay().clear()

    yield db.session

    # Cleanup after test
    db.session.rollback()


@pytest.fixture(scope='function')
def relay(app, db_session):
    return get_relay()


def _make_user(session, username: str, role: str) -> User:
    user = User(
        username=username,
        email=f"{username}@stockline.test",
        password_hash=hash_password(PASSWORD),
        role=role,
        first_name=username.capitalize(),
    )
    session.add(user)
    session.commit()
    return user


@pytest.fixture(scope='function')
def admin_user(db_session):
    return _make_user(db_session, "admin", "ADMIN")


@pytest.fixture(scope='function')
def manager_user(db_session):
    return _make_user(db_session, "manager", "MANAGER")


@pytest.fixture(scope='function')
def cashier_user(db_session):
    return _make_user(db_session, "cashier", "CASHIER")


def get_auth_token(client, username: str, password: str = PASSWORD) -> str:
    """Helper to get auth token for a user."""
    response = client.post('/api/auth/login', json={
        'username': username,
        'password': password
    })
    if response.status_code == 200:
        return response.json.get('token')
    return None


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture(scope='function')
def cashier_headers(client, cashier_user):
    return auth_headers(get_auth_token(client, "cashier"))


@pytest.fixture(scope='function')
def admin_headers(client, admin_user):
    return auth_headers(get_auth_token(client, "admin"))


@pytest.fixture(scope='function')
def manager_headers(client, manager_user):
    return auth_headers(get_auth_token(client, "manager"))


@pytest.fixture(scope='function')
def make_product(db_session):
    """Factory: products are inserted directly, bypassing the ledger."""
    counter = {"n": 0}

    def _make(**overrides) -> Product:
        counter["n"] += 1
        fields = {
            "sku": f"SKU-{counter['n']:03d}",
            "name": f"Product {counter['n']}",
            "price_cents": 1000,
            "stock_quantity": 0,
            "min_stock_level": 0,
        }
        fields.update(overrides)
        product = Product(**fields)
        db_session.add(product)
        db_session.commit()
        return product

    return _make


@pytest.fixture(scope='function')
def make_variant(db_session):
    counter = {"n": 0}

    def _make(product: Product, **overrides) -> Variant:
        counter["n"] += 1
        fields = {
            "sku": f"{product.sku}-V{counter['n']}",
            "name": f"{product.name} variant {counter['n']}",
            "stock_quantity": 0,
            "min_stock_level": 0,
        }
        fields.update(overrides)
        variant = Variant(product_id=product.id, **fields)
        db_session.add(variant)
        db_session.flush()
        # keep the parent aggregate consistent with its active variants
        product.stock_quantity = sum(
            v.stock_quantity
            for v in db_session.query(Variant).filter_by(product_id=product.id, is_active=True)
        )
        db_session.commit()
        return variant

    return _make


@pytest.fixture(scope='function')
def make_customer(db_session):
    counter = {"n": 0}

    def _make(**overrides) -> Customer:
        counter["n"] += 1
        fields = {
            "first_name": "Ada",
            "last_name": f"Customer{counter['n']}",
            "email": f"customer{counter['n']}@stockline.test",
            "loyalty_points": 0,
        }
        fields.update(overrides)
        customer = Customer(**fields)
        db_session.add(customer)
        db_session.commit()
        return customer

    return _make


@pytest.fixture(scope='function')
def login(client):
    """Fixture form of get_auth_token for tests that log in themselves."""
    def _login(username: str, password: str = PASSWORD):
        return get_auth_token(client, username, password)
    return _login
