"""
Pytest fixtures for minimarket backend tests.

Provides the Flask server of record on an in-memory database, staff users
with bearer tokens, an offline LocalStore, and an httpx transport that
hands offline-client requests to the Flask test client.
"""

import httpx
import pytest

from minimarket import create_app
from minimarket.extensions import db
from minimarket.offline import LocalStore
from minimarket.services.auth_service import create_user
from minimarket.services.session_service import create_session


PASSWORD = "Password123!"


@pytest.fixture(scope='function')
def app():
    """Create application for testing with a fresh schema."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'BCRYPT_ROUNDS': 4,
    })

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
def admin_user(app):
    return create_user(username="admin", email="admin@minimarket.local", password=PASSWORD, role="admin")


@pytest.fixture(scope='function')
def cashier_user(app):
    return create_user(username="cashier", email="cashier@minimarket.local", password=PASSWORD, role="cashier")


@pytest.fixture(scope='function')
def admin_token(admin_user):
    _, token = create_session(admin_user.id)
    return token


@pytest.fixture(scope='function')
def cashier_token(cashier_user):
    _, token = create_session(cashier_user.id)
    return token


@pytest.fixture(scope='function')
def admin_headers(admin_token):
    return {"Authorization": f"Bearer {admin_token}"}


@pytest.fixture(scope='function')
def cashier_headers(cashier_token):
    return {"Authorization": f"Bearer {cashier_token}"}


@pytest.fixture(scope='function')
def store():
    """Offline store on a private in-memory database."""
    local = LocalStore("sqlite://").init()
    yield local
    local.close()


FORWARDED_HEADERS = ("authorization", "accept", "content-type")


def flask_handler(client):
    """httpx request handler that answers through the Flask test client."""
    def handler(request: httpx.Request) -> httpx.Response:
        response = client.open(
            request.url.raw_path.decode("ascii"),
            method=request.method,
            headers=[(k, v) for k, v in request.headers.items() if k.lower() in FORWARDED_HEADERS],
            data=request.content,
        )
        return httpx.Response(
            response.status_code,
            headers=[(k, v) for k, v in response.headers.items() if k.lower() != "content-length"],
            content=response.get_data(),
        )
    return handler


@pytest.fixture(scope='function')
def server_transport(client):
    """Mock transport routing offline-client HTTP calls to the Flask app."""
    return httpx.MockTransport(flask_handler(client))
