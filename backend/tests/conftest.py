import os
import tempfile
from pathlib import Path

# Point the app at a throwaway database before any `chrono` module is imported.
_TMP_DIR = Path(tempfile.mkdtemp(prefix="chrono-tests-"))
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP_DIR / 'test.db'}"
os.environ["CHRONO_AUTH_TOKEN"] = "test-secret"
os.environ["COMPLETION_STRATEGY"] = "local"

import pytest
from sqlmodel import SQLModel, Session

from chrono import models, repositories, services
from chrono.database import engine


@pytest.fixture(autouse=True)
def reset_db():
    """Start every test from empty tables."""
    SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)
    yield


@pytest.fixture
def session():
    with Session(engine) as s:
        yield s


@pytest.fixture
def make_user(session):
    def _make(username: str, moderator: bool = False, password: str = "pass123") -> models.User:
        user = services.AuthService(session).register(username, password)
        if moderator:
            repositories.UserRepository(session).set_moderator(user)
        return user
    return _make


@pytest.fixture
def make_layer(session):
    def _make(name: str, year_from: int, year_to: int, words: str, status: str = models.LAYER_ACTIVE) -> models.Layer:
        layer = models.Layer(name=name, year_from=year_from, year_to=year_to, words=words, status=status)
        return repositories.LayerRepository(session).create(layer)
    return _make


@pytest.fixture
def make_request(session):
    def _make(user: models.User, status: str = models.STATUS_DRAFT, text: str | None = None, purpose: str | None = None) -> models.ResearchRequest:
        req = models.ResearchRequest(user_id=user.id, status=status, text_for_analysis=text, purpose=purpose)
        session.add(req)
        session.commit()
        session.refresh(req)
        return req
    return _make
