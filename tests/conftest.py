"""
Shared fixtures: an in-memory SQLite database per test, seeded catalog rows
and a FastAPI TestClient whose get_db points at that database.
"""
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import models
from db import Base
from feed import feed


@pytest.fixture(autouse=True)
def clean_feed():
    yield
    feed._subs.clear()


@pytest.fixture
def engine():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


def add_catalog(db):
    """S1 owns paid card C1 (videos V1, V2) and free card C2 (video V3)."""
    db.add_all([
        models.User(id="U1", email="u1@example.com", name="User One", hashed_password="x"),
        models.User(id="U2", email="u2@example.com", name="User Two", hashed_password="x"),
        models.Subject(id="S1", name="Web Development"),
        models.CourseCard(id="C1", subject_id="S1", name="January 2025", price=2500, is_free=False),
        models.CourseCard(id="C2", subject_id="S1", name="Free Preview", price=0, is_free=True),
        models.Video(id="V1", course_card_id="C1", position=0, title="Intro", max_plays=3),
        models.Video(id="V2", course_card_id="C1", position=1, title="Advanced", max_plays=3),
        models.Video(id="V3", course_card_id="C2", position=0, title="Preview", max_plays=1),
    ])
    db.commit()


@pytest.fixture
def seeded(db_session):
    add_catalog(db_session)
    return db_session


@pytest.fixture
def client(session_factory):
    from fastapi.testclient import TestClient

    from db import get_db
    from main import app

    def _get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _get_db
    yield TestClient(app)
    app.dependency_overrides.clear()
