"""
Pytest fixtures for StageTrack backend tests.

Provides test database setup, staff users with bearer tokens, and a test client.
"""

import pytest
from stagetrack import create_app
from stagetrack.extensions import db
from stagetrack.models import Account, User, ROLE_ADMIN, ROLE_AGENT
from stagetrack.services import session_service, order_service
from stagetrack.services.session_service import Actor


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

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def admin_user(db_session):
    user = User(name="Alex Admin", email="admin@stagetrack.test", role=ROLE_ADMIN, is_active=True)
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def agent_user(db_session):
    user = User(name="Sam Agent", email="agent@stagetrack.test", role=ROLE_AGENT, is_active=True)
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def admin(admin_user):
    """Elevated actor for direct service calls."""
    return Actor.from_user(admin_user)


@pytest.fixture(scope='function')
def agent(agent_user):
    """Staff actor for direct service calls."""
    return Actor.from_user(agent_user)


@pytest.fixture(scope='function')
def account(db_session, admin):
    return order_service.create_account({"name": "Acme Fabrication"}, admin)


@pytest.fixture(scope='function')
def order_with_items(account, agent):
    """Order at MANUFACTURING with two items."""
    return order_service.create_order({
        "account_id": account.id,
        "po_number": "PO-1001",
        "sales_rep": "Jordan",
        "items": [
            {"product_code": "LASER-60W", "qty": 1, "serial_number": "SN-1"},
            {"product_code": "ROTARY-ATTACH", "qty": 2},
        ],
    }, agent)


@pytest.fixture(scope='function')
def admin_headers(admin_user):
    _, token = session_service.create_session(admin_user.id)
    return auth_headers(token)


@pytest.fixture(scope='function')
def agent_headers(agent_user):
    _, token = session_service.create_session(agent_user.id)
    return auth_headers(token)


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}
