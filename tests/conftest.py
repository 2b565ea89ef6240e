"""
Pytest configuration and shared fixtures for all tests.
"""
import pytest

from app import create_app
from core.database_models import db
from services import auth as auth_service

ADMIN_EMAIL = 'admin@polrydian.com'
USER_EMAIL = 'reader@example.com'
PASSWORD = 'correct-horse-battery'


class ManualScheduler:
    """
    Timer scheduler driven by the test instead of the wall clock.

    schedule()/cancel() match the interface the session timeout guard
    expects; advance() moves virtual time and fires due callbacks in order.
    """

    def __init__(self):
        self.now = 0.0
        self._pending = {}
        self._next_handle = 0

    def schedule(self, delay_seconds, callback):
        handle = self._next_handle
        self._next_handle += 1
        self._pending[handle] = (self.now + delay_seconds, callback)
        return handle

    def cancel(self, handle):
        self._pending.pop(handle, None)

    @property
    def pending(self):
        return len(self._pending)

    def advance(self, seconds):
        target = self.now + seconds
        while True:
            due = [(when, handle) for handle, (when, _) in self._pending.items() if when <= target]
            if not due:
                break
            when, handle = min(due)
            _, callback = self._pending.pop(handle)
            self.now = when
            callback()
        self.now = target


class FakeClock:
    """Millisecond clock for the rate limiter"""

    def __init__(self, start=1_000_000.0):
        self.value = start

    def __call__(self):
        return self.value

    def advance(self, ms):
        self.value += ms


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def app(tmp_path, scheduler):
    """Application in testing mode with in-memory SQLite"""
    app = create_app('testing', overrides={
        'STORAGE_ROOT': str(tmp_path / 'storage'),
        'SESSION_TIMER_SCHEDULER': scheduler,
    })
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin_user(app):
    user = auth_service.create_user(ADMIN_EMAIL, PASSWORD, roles=['admin'])
    return {'id': user.id, 'email': user.email, 'password': PASSWORD}


@pytest.fixture
def regular_user(app):
    user = auth_service.create_user(USER_EMAIL, PASSWORD)
    return {'id': user.id, 'email': user.email, 'password': PASSWORD}


def login(client, account):
    response = client.post('/api/auth/login', json={
        'email': account['email'],
        'password': account['password'],
    })
    assert response.status_code == 200, response.get_json()
    return response.get_json()


@pytest.fixture
def admin_session(client, admin_user):
    """Signed-in admin: returns the login payload (csrf_token, access_token)"""
    return login(client, admin_user)


@pytest.fixture
def admin_bearer(admin_session):
    return {'Authorization': f"Bearer {admin_session['access_token']}"}


@pytest.fixture
def user_bearer(app, regular_user):
    with app.test_client() as other:
        payload = login(other, regular_user)
    return {'Authorization': f"Bearer {payload['access_token']}"}
