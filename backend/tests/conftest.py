"""
Pytest fixtures for override authority tests.

Provides an app on in-memory SQLite, a clean database per test, staff
accounts with manager PINs, a discount threshold and auth headers.
"""

from datetime import datetime

import pytest

from override_authority import create_app
from override_authority.extensions import db
from override_authority.services import auth_service, credential_service, threshold_service
from override_authority.services.rate_limit_service import EXTENSION_KEY, RateLimiter
from override_authority.services.verification_service import ClientInfo


PASSWORD = "Password123"
MANAGER_PIN = "4821"
SHIFT_LEAD_PIN = "3917"
ADMIN_PIN = "5820"

# A Wednesday, mid-morning
NOW = datetime(2025, 6, 4, 10, 30)


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'BCRYPT_ROUNDS': 4,
        'OVERRIDE_PIN_MAX_ATTEMPTS': 3,
        'OVERRIDE_PIN_LOCKOUT_MINUTES': 15,
        'OVERRIDE_PIN_WINDOW_MINUTES': 15,
        'OVERRIDE_AUDIT_WRITE_ATTEMPTS': 2,
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
    """Fresh database and fresh lockout counters for each test."""
    with app.app_context():
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        app.extensions[EXTENSION_KEY] = RateLimiter.from_config(app.config)

        yield db.session

        db.session.rollback()


@pytest.fixture(scope='function')
def origin():
    return ClientInfo(ip_address="10.0.0.5", user_agent="pytest", device_id="REG-01")


def _make_user(username, role, first_name=None):
    return auth_service.create_user(
        username=username,
        password=PASSWORD,
        role=role,
        first_name=first_name,
        last_name="Tester" if first_name else None,
    )


@pytest.fixture(scope='function')
def cashier(db_session):
    return _make_user("cashier", "cashier", "Casey")


@pytest.fixture(scope='function')
def manager(db_session):
    user = _make_user("manager", "manager", "Morgan")
    credential_service.set_manager_pin(user.id, MANAGER_PIN, "manager")
    return user


@pytest.fixture(scope='function')
def shift_lead(db_session):
    user = _make_user("lead", "manager", "Lee")
    credential_service.set_manager_pin(user.id, SHIFT_LEAD_PIN, "shift_lead")
    return user


@pytest.fixture(scope='function')
def admin(db_session):
    user = _make_user("admin", "admin", "Ada")
    credential_service.set_manager_pin(user.id, ADMIN_PIN, "admin")
    return user


@pytest.fixture(scope='function')
def discount_threshold(db_session):
    """discount_percent ladder: shift_lead <= 15, manager <= 35, admin unlimited."""
    return threshold_service.create_threshold({
        "override_type": "discount_percent",
        "name": "Discount Percentage",
        "threshold_value": 15,
        "default_approval_level": "manager",
        "approval_levels": [
            {"approval_level": "shift_lead", "max_value": 15},
            {"approval_level": "manager", "max_value": 35},
            {"approval_level": "admin", "is_unlimited": True},
        ],
    })


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
def cashier_headers(client, cashier):
    return auth_headers(get_auth_token(client, cashier.username))


@pytest.fixture(scope='function')
def manager_headers(client, manager):
    return auth_headers(get_auth_token(client, manager.username))


@pytest.fixture(scope='function')
def admin_headers(client, admin):
    return auth_headers(get_auth_token(client, admin.username))
