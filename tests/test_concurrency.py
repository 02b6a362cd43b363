import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

import models
from db import Base
from entitlements import record_play
from errors import NoPlaysRemaining

WORKERS = 8


@pytest.fixture
def file_sessions(tmp_path):
    # threads need real separate connections, so use a file database
    engine = create_engine(
        f"sqlite:///{tmp_path / 'plays.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    with Session() as db:
        db.add_all([
            models.User(id="U1", email="u1@example.com", hashed_password="x"),
            models.Subject(id="S1", name="Web"),
            models.CourseCard(id="C1", subject_id="S1", name="January 2025", price=0, is_free=True),
            models.Video(id="V1", course_card_id="C1", title="Intro", max_plays=3),
        ])
        db.commit()
    yield Session
    engine.dispose()


def _race(Session, user_id, video_id):
    barrier = threading.Barrier(WORKERS)

    def attempt(_):
        db = Session()
        try:
            barrier.wait()
            record_play(db, user_id, video_id)
            return "ok"
        except NoPlaysRemaining:
            return "rejected"
        finally:
            db.close()

    with ThreadPoolExecutor(WORKERS) as pool:
        return list(pool.map(attempt, range(WORKERS)))


def _plays(Session):
    with Session() as db:
        return db.execute(select(models.UserProgress.plays_used)).scalars().all()


def test_one_play_left_only_one_concurrent_call_wins(file_sessions):
    with file_sessions() as db:
        db.add(models.UserProgress(user_id="U1", video_id="V1", plays_used=2))
        db.commit()

    results = _race(file_sessions, "U1", "V1")

    assert results.count("ok") == 1
    assert results.count("rejected") == WORKERS - 1
    assert _plays(file_sessions) == [3]


def test_concurrent_first_plays_share_one_progress_row(file_sessions):
    results = _race(file_sessions, "U1", "V1")

    assert results.count("ok") == 3
    assert results.count("rejected") == WORKERS - 3
    assert _plays(file_sessions) == [3]
    with file_sessions() as db:
        assert db.execute(select(func.count()).select_from(models.UserProgress)).scalar_one() == 1
