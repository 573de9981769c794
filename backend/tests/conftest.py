from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from quiz_api.database import EntityStore
from quiz_api.main import create_app
from quiz_api.schemas import Caller
from quiz_api.services import AttemptService, AuthService, CatalogService


class FakeClock:
    """Controllable UTC clock injected into the attempt service."""

    def __init__(self, start=None):
        self.now = start or datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def store():
    """A fresh in-memory store per test."""
    s = EntityStore()
    s.create_all()
    yield s
    s.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def attempts(store, clock):
    return AttemptService(store, clock=clock)


@pytest.fixture
def catalog(store, attempts):
    return CatalogService(store, attempts)


@pytest.fixture
def admin(store):
    user = AuthService(store).ensure_admin("admin", "admin")
    return Caller(user_id=user.id, username=user.username, is_admin=True)


@pytest.fixture
def make_user(store):
    def _make(username, password="pw"):
        user = AuthService(store).register(username, password)
        return Caller(user_id=user.id, username=user.username, is_admin=False)
    return _make


@pytest.fixture
def alice(make_user):
    return make_user("alice")


@pytest.fixture
def two_question_quiz(catalog, admin):
    """Quiz worth 25: question one is worth 10, question two 15.

    Returns (quiz, [q1, q2]) where each question carries its options and
    the first option of each question is the correct one.
    """
    quiz = catalog.create_quiz(admin, "Python basics", duration=1, total_score=25)
    q1 = catalog.add_question(admin, quiz.id, "Type of 1/2?", 10, [
        {"text": "float", "is_correct": True},
        {"text": "int", "is_correct": False},
    ])
    q2 = catalog.add_question(admin, quiz.id, "Immutable type?", 15, [
        {"text": "tuple", "is_correct": True},
        {"text": "list", "is_correct": False},
        {"text": "dict", "is_correct": False},
    ])
    return quiz, [q1, q2]


@pytest.fixture
def client(store, clock):
    app = create_app(store, clock=clock)
    with TestClient(app) as c:
        yield c


@pytest.fixture
def login(client):
    def _login(username, password="pw", register=True):
        if register:
            client.post('/auth/register', json={'username': username, 'password': password})
        r = client.post('/auth/login', json={'username': username, 'password': password})
        assert r.status_code == 200
        return {'Authorization': f"Bearer {r.json()['access_token']}"}
    return _login
