from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from pecsboard.config import Settings
from pecsboard.db import Board, Card, init_db, make_engine, make_session_factory
from pecsboard.main import create_app


class FakeAuthorizer:
    def __init__(self, admins=()):
        self.admins = set(admins)
        self.calls = []

    def is_admin(self, user_id, email=None):
        self.calls.append(user_id)
        return user_id in self.admins


class RecordingBlobStore:
    def __init__(self, fail=False):
        self.deleted = []
        self.fail = fail

    def delete(self, urls):
        if self.fail:
            raise RuntimeError("blob store down")
        self.deleted.extend(urls)


class Clock:
    def __init__(self, now=None):
        self.now = now or datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


def auth(user_id, email=None):
    headers = {"Authorization": f"Bearer {user_id}"}
    if email:
        headers["X-User-Email"] = email
    return headers


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        rate_limit_cleanup_probability=0.0,
    )


@pytest.fixture
def session_factory(settings):
    engine = make_engine(settings.database_url)
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def session(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture
def authorizer():
    return FakeAuthorizer(admins={"admin"})


@pytest.fixture
def blob_store():
    return RecordingBlobStore()


@pytest.fixture
def app(settings, authorizer, blob_store):
    return create_app(settings=settings, authorizer=authorizer, blob_store=blob_store)


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


@pytest.fixture
def make_board(session):
    def factory(board_id, owner="alice", is_public=False, name="Board"):
        board = Board(id=board_id, user_id=owner, name=name, is_public=is_public)
        session.add(board)
        session.commit()
        return board

    return factory


@pytest.fixture
def make_card(session):
    def factory(card_id, board_id, label="", order=0, **fields):
        card = Card(id=card_id, board_id=board_id, label=label, order=order, **fields)
        session.add(card)
        session.commit()
        return card

    return factory
