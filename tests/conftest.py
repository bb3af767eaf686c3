import pytest

from pharmacy import create_app
from pharmacy.database import get_session
from pharmacy.services.browser_storage import MemoryStorage
from tests.fakes import (
    ADMIN, CUSTOMER, FakeAdminApi, FakeBackend, FakeCache, FakeCartApi, FakeWholesaleApi
)


@pytest.fixture(scope='function')
def app():
    """Create application instance for testing."""
    app = create_app('config.TestConfig')
    yield app


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def session(app):
    """Browser storage database session."""
    session = get_session()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def cart_api():
    return FakeCartApi()


@pytest.fixture
def wholesale_api():
    return FakeWholesaleApi()


@pytest.fixture
def admin_api():
    return FakeAdminApi()


@pytest.fixture
def fake_cache():
    return FakeCache()


@pytest.fixture
def backend(mocker):
    """Every requests.Session.request call goes to a FakeBackend."""
    fake = FakeBackend()
    mocker.patch('requests.Session.request', side_effect=fake)
    return fake


@pytest.fixture
def login_routes(backend):
    """Backend accepts customer@example.com / secret and admin@example.com."""
    def handle_login(call):
        body = call.get('json') or {}
        if body.get('email') == ADMIN['email']:
            return 200, {'token': 'admin-token', 'refresh_token': 'admin-refresh', 'user': ADMIN}
        if body.get('email') == CUSTOMER['email'] and body.get('password') == 'secret':
            return 200, {'token': 'client-token', 'refresh_token': 'client-refresh', 'user': CUSTOMER}
        return 401, {'message': 'Invalid credentials'}

    backend.route('POST', '/auth/login', handle_login)
    backend.route('POST', '/auth/logout', (204, None))
    backend.route('GET', '/cart', (200, {'data': {'items': []}}))
    return backend


@pytest.fixture
def logged_in_client(client, login_routes):
    response = client.post('/login', json={'identifier': CUSTOMER['email'], 'password': 'secret'})
    assert response.status_code == 200
    return client


@pytest.fixture
def admin_client(client, login_routes):
    response = client.post('/admin/login', json={'identifier': ADMIN['email'], 'password': 'secret'})
    assert response.status_code == 200
    return client
