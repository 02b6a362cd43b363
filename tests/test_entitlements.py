from datetime import datetime

import pytest
from sqlalchemy import func, select

import entitlements
from entitlements import (
    create_purchase,
    delete_course_card,
    delete_subject,
    delete_video,
    get_progress,
    list_completed_purchases,
    play_video,
    record_play,
    set_purchase_status,
    sweep_stale_purchases,
)
from errors import CardLocked, InvalidTransition, NoPlaysRemaining, NotFound
from models import CourseCard, Purchase, PurchaseStatus, Subject, UserProgress, Video


def count(db, model, *where):
    return db.execute(select(func.count()).select_from(model).where(*where)).scalar_one()


# --- plays ---
def test_first_play_creates_progress(seeded):
    progress = record_play(seeded, "U1", "V1")
    assert progress.plays_used == 1
    assert progress.last_watched_at is not None


def test_plays_increment_by_one(seeded):
    record_play(seeded, "U1", "V1")
    assert record_play(seeded, "U1", "V1").plays_used == 2


def test_play_rejected_at_ceiling_and_count_unchanged(seeded):
    for _ in range(3):
        record_play(seeded, "U1", "V1")

    with pytest.raises(NoPlaysRemaining) as exc:
        record_play(seeded, "U1", "V1")

    assert exc.value.plays_used == 3
    assert exc.value.max_plays == 3
    assert get_progress(seeded, "U1", "V1").plays_used == 3


def test_progress_is_unique_per_user_and_video(seeded):
    for _ in range(3):
        record_play(seeded, "U1", "V1")
    record_play(seeded, "U1", "V2")
    record_play(seeded, "U2", "V1")

    assert count(seeded, UserProgress, UserProgress.user_id == "U1", UserProgress.video_id == "V1") == 1
    assert count(seeded, UserProgress) == 3


def test_plays_are_per_user(seeded):
    record_play(seeded, "U1", "V1")
    record_play(seeded, "U1", "V1")
    assert record_play(seeded, "U2", "V1").plays_used == 1
    assert seeded.get(Video, "V1").max_plays == 3


def test_record_play_unknown_video(seeded):
    with pytest.raises(NotFound):
        record_play(seeded, "U1", "nope")


def test_play_video_rejects_locked_card(seeded):
    with pytest.raises(CardLocked):
        play_video(seeded, "U1", "V1")
    assert get_progress(seeded, "U1", "V1") is None


def test_play_video_on_free_card(seeded):
    assert play_video(seeded, "U1", "V3").plays_used == 1
    with pytest.raises(NoPlaysRemaining):
        play_video(seeded, "U1", "V3")


def test_play_video_after_purchase(seeded):
    pid = create_purchase(seeded, "U1", "C1", 2500, "ORDER_1_C1")
    set_purchase_status(seeded, pid, PurchaseStatus.COMPLETED)
    assert play_video(seeded, "U1", "V1").plays_used == 1


# --- purchases ---
def test_pending_purchase_grants_nothing(seeded):
    pid = create_purchase(seeded, "U1", "C1", 2500, "ORDER_1_C1")
    assert seeded.get(Purchase, pid).status == PurchaseStatus.PENDING
    assert list_completed_purchases(seeded, "U1") == set()


def test_completing_purchase_grants_card(seeded):
    pid = create_purchase(seeded, "U1", "C1", 2500, "ORDER_1_C1")
    assert set_purchase_status(seeded, pid, PurchaseStatus.COMPLETED, "pi_123") is True
    assert list_completed_purchases(seeded, "U1") == {"C1"}
    assert list_completed_purchases(seeded, "U2") == set()
    assert seeded.get(Purchase, pid).payment_ref == "pi_123"


def test_same_status_twice_is_a_no_op(seeded):
    pid = create_purchase(seeded, "U1", "C1", 2500, "ORDER_1_C1")
    set_purchase_status(seeded, pid, PurchaseStatus.COMPLETED)
    assert set_purchase_status(seeded, pid, PurchaseStatus.COMPLETED) is False


@pytest.mark.parametrize(
    "first,second",
    [
        (PurchaseStatus.COMPLETED, PurchaseStatus.FAILED),
        (PurchaseStatus.FAILED, PurchaseStatus.COMPLETED),
        (PurchaseStatus.COMPLETED, PurchaseStatus.PENDING),
    ],
)
def test_terminal_states_do_not_move(seeded, first, second):
    pid = create_purchase(seeded, "U1", "C1", 2500, "ORDER_1_C1")
    set_purchase_status(seeded, pid, first)
    with pytest.raises(InvalidTransition):
        set_purchase_status(seeded, pid, second)
    assert seeded.get(Purchase, pid).status == first


def test_create_purchase_unknown_card(seeded):
    with pytest.raises(NotFound):
        create_purchase(seeded, "U1", "C404", 100, "ORDER_1_C404")


def test_set_status_unknown_purchase(seeded):
    with pytest.raises(NotFound):
        set_purchase_status(seeded, "missing", PurchaseStatus.COMPLETED)


def test_sweep_fails_only_old_pending(seeded):
    old = create_purchase(seeded, "U1", "C1", 2500, "ORDER_1_C1")
    fresh = create_purchase(seeded, "U2", "C1", 2500, "ORDER_2_C1")
    done = create_purchase(seeded, "U2", "C1", 2500, "ORDER_3_C1")
    set_purchase_status(seeded, done, PurchaseStatus.COMPLETED)
    seeded.get(Purchase, old).purchased_at = datetime(2020, 1, 1, 0, 0)
    seeded.get(Purchase, fresh).purchased_at = datetime(2020, 1, 2, 11, 0)
    seeded.get(Purchase, done).purchased_at = datetime(2020, 1, 1, 0, 0)
    seeded.commit()

    assert sweep_stale_purchases(seeded, now=datetime(2020, 1, 2, 12, 0), ttl_hours=24) == 1

    assert seeded.get(Purchase, old).status == PurchaseStatus.FAILED
    assert seeded.get(Purchase, fresh).status == PurchaseStatus.PENDING
    assert seeded.get(Purchase, done).status == PurchaseStatus.COMPLETED


# --- cascade deletes ---
def _entitle_everything(db):
    pid = create_purchase(db, "U1", "C1", 2500, "ORDER_1_C1")
    set_purchase_status(db, pid, PurchaseStatus.COMPLETED)
    create_purchase(db, "U2", "C1", 2500, "ORDER_2_C1")
    for user in ("U1", "U2"):
        record_play(db, user, "V1")
        record_play(db, user, "V3")
    record_play(db, "U1", "V2")


def test_delete_subject_removes_everything_under_it(seeded):
    seeded.add(Subject(id="S2", name="Other"))
    seeded.add(CourseCard(id="C9", subject_id="S2", name="Other card", price=10))
    seeded.add(Video(id="V9", course_card_id="C9", title="Other video", max_plays=3))
    seeded.commit()
    _entitle_everything(seeded)
    record_play(seeded, "U1", "V9")

    delete_subject(seeded, "S1")

    assert seeded.get(Subject, "S1") is None
    assert count(seeded, CourseCard, CourseCard.subject_id == "S1") == 0
    assert count(seeded, Video, Video.course_card_id.in_(["C1", "C2"])) == 0
    assert count(seeded, UserProgress, UserProgress.video_id.in_(["V1", "V2", "V3"])) == 0
    assert count(seeded, Purchase, Purchase.course_card_id.in_(["C1", "C2"])) == 0
    # untouched sibling subject
    assert seeded.get(Video, "V9") is not None
    assert count(seeded, UserProgress) == 1


def test_delete_card_removes_videos_progress_and_purchases(seeded):
    _entitle_everything(seeded)

    delete_course_card(seeded, "C1")

    assert seeded.get(CourseCard, "C1") is None
    assert count(seeded, Video, Video.course_card_id == "C1") == 0
    assert count(seeded, Purchase) == 0
    assert {p.video_id for p in seeded.execute(select(UserProgress)).scalars()} == {"V3"}


def test_delete_video_removes_its_progress(seeded):
    _entitle_everything(seeded)

    delete_video(seeded, "V1")

    assert seeded.get(Video, "V1") is None
    assert count(seeded, UserProgress, UserProgress.video_id == "V1") == 0
    assert count(seeded, UserProgress, UserProgress.video_id == "V2") == 1
    assert list_completed_purchases(seeded, "U1") == {"C1"}


def test_delete_unknown_raises_not_found(seeded):
    with pytest.raises(NotFound):
        delete_subject(seeded, "S404")
    with pytest.raises(NotFound):
        delete_course_card(seeded, "C404")
    with pytest.raises(NotFound):
        delete_video(seeded, "V404")


def test_failed_cascade_commits_nothing(seeded, monkeypatch):
    _entitle_everything(seeded)
    real_purge = entitlements._purge

    def purge_then_fail(db, card_ids, video_ids):
        real_purge(db, card_ids, video_ids)
        raise RuntimeError("connection lost")

    monkeypatch.setattr(entitlements, "_purge", purge_then_fail)

    with pytest.raises(RuntimeError):
        delete_subject(seeded, "S1")

    assert seeded.get(Subject, "S1") is not None
    assert count(seeded, CourseCard) == 2
    assert count(seeded, Video) == 3
    assert count(seeded, Purchase) == 2
    assert count(seeded, UserProgress) == 5


def test_sweep_skips_purchases_the_release_hook_keeps(seeded):
    kept = create_purchase(seeded, "U1", "C1", 2500, "ORDER_1_C1")
    dropped = create_purchase(seeded, "U2", "C1", 2500, "ORDER_2_C1")
    for pid in (kept, dropped):
        seeded.get(Purchase, pid).purchased_at = datetime(2020, 1, 1, 0, 0)
    seeded.commit()
    asked = []

    def release(purchase):
        asked.append(purchase.id)
        return purchase.id != kept

    assert sweep_stale_purchases(seeded, now=datetime(2020, 1, 3), release=release) == 1

    assert sorted(asked) == sorted([kept, dropped])
    assert seeded.get(Purchase, kept).status == PurchaseStatus.PENDING
    assert seeded.get(Purchase, dropped).status == PurchaseStatus.FAILED


def test_sweep_with_nothing_stale_asks_nobody(seeded):
    create_purchase(seeded, "U1", "C1", 2500, "ORDER_1_C1")
    assert sweep_stale_purchases(seeded, now=datetime(2000, 1, 1), release=lambda p: pytest.fail("asked")) == 0
