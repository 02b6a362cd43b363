# entitlements.py
"""Durable entitlement state: per-video play counts and course-card purchases.

Every mutation here is a single store-side statement or one transaction, so the
database arbitrates concurrent callers:

- ``record_play`` increments with ``plays_used < max_plays`` in the WHERE clause,
  so N concurrent plays with one play left produce exactly one increment.
- ``set_purchase_status`` only moves a purchase out of ``pending``; the status
  check is part of the UPDATE, so two reconcilers cannot both complete it.
- cascade deletes remove the subtree and every progress/purchase row that points
  into it in one transaction, or nothing at all.

Committed changes are announced on ``feed.feed`` for live views.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from access import is_card_unlocked
from errors import CardLocked, InvalidTransition, LMSError, NoPlaysRemaining, NotFound
from feed import COURSE_CARDS, SUBJECTS, feed, progress_topic, purchases_topic
from models import CourseCard, Purchase, PurchaseStatus, Subject, UserProgress, Video
from settings import PENDING_PURCHASE_TTL_HOURS

logger = logging.getLogger("lms.entitlements")

# terminal states have no entry
_TRANSITIONS = {
    PurchaseStatus.PENDING: {PurchaseStatus.COMPLETED, PurchaseStatus.FAILED},
}

_PLAY_ATTEMPTS = 3


# === PROGRESS ===
def get_progress(db: Session, user_id: str, video_id: str) -> Optional[UserProgress]:
    return db.execute(
        select(UserProgress).where(UserProgress.user_id == user_id, UserProgress.video_id == video_id)
    ).scalar_one_or_none()


def list_progress(db: Session, user_id: str) -> list[UserProgress]:
    return list(db.execute(select(UserProgress).where(UserProgress.user_id == user_id)).scalars())


def record_play(db: Session, user_id: str, video_id: str) -> UserProgress:
    """Count one play of ``video_id`` for ``user_id``.

    Creates the progress row on the first play, otherwise increments it in
    place. Raises ``NoPlaysRemaining`` without touching the row when the
    ceiling is already reached.
    """
    video = db.get(Video, video_id)
    if video is None:
        raise NotFound("Video", video_id)
    max_plays = video.max_plays
    ceiling = select(Video.max_plays).where(Video.id == video_id).scalar_subquery()

    for _ in range(_PLAY_ATTEMPTS):
        result = db.execute(
            update(UserProgress)
            .where(
                UserProgress.user_id == user_id,
                UserProgress.video_id == video_id,
                UserProgress.plays_used < ceiling,
            )
            .values(plays_used=UserProgress.plays_used + 1, last_watched_at=func.now())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            db.commit()
            break

        used = db.execute(
            select(UserProgress.plays_used).where(
                UserProgress.user_id == user_id, UserProgress.video_id == video_id
            )
        ).scalar_one_or_none()
        if used is not None:
            db.rollback()
            logger.info("play.rejected user=%s video=%s plays=%s/%s", user_id, video_id, used, max_plays)
            raise NoPlaysRemaining(video_id, used, max_plays)

        db.add(UserProgress(user_id=user_id, video_id=video_id, plays_used=1))
        try:
            db.commit()
            break
        except IntegrityError:
            # a concurrent first play inserted the row; go round as an increment
            db.rollback()
    else:
        raise LMSError(f"Could not record play for video '{video_id}'")

    progress = get_progress(db, user_id, video_id)
    logger.info("play.recorded user=%s video=%s plays=%s/%s", user_id, video_id, progress.plays_used, max_plays)
    feed.publish(progress_topic(user_id))
    return progress


def play_video(db: Session, user_id: str, video_id: str) -> UserProgress:
    """Re-check card entitlement, then ``record_play``."""
    video = db.get(Video, video_id)
    if video is None:
        raise NotFound("Video", video_id)
    card = db.get(CourseCard, video.course_card_id)
    if card is None:
        raise NotFound("CourseCard", video.course_card_id)
    if not is_card_unlocked(card, list_completed_purchases(db, user_id)):
        logger.info("play.locked user=%s video=%s card=%s", user_id, video_id, card.id)
        raise CardLocked(f"Course card '{card.id}' is not unlocked")
    return record_play(db, user_id, video_id)


# === PURCHASES ===
def create_purchase(
    db: Session,
    user_id: str,
    course_card_id: str,
    amount: int,
    order_id: str,
    payment_ref: Optional[str] = None,
) -> str:
    """Insert a pending purchase and return its id. Grants nothing by itself."""
    if db.get(CourseCard, course_card_id) is None:
        raise NotFound("CourseCard", course_card_id)
    purchase = Purchase(
        user_id=user_id,
        course_card_id=course_card_id,
        amount=amount,
        order_id=order_id,
        payment_ref=payment_ref,
        status=PurchaseStatus.PENDING,
    )
    db.add(purchase)
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("purchase.created id=%s user=%s card=%s order=%s", purchase.id, user_id, course_card_id, order_id)
    return purchase.id


def get_purchase(db: Session, purchase_id: str) -> Purchase:
    purchase = db.get(Purchase, purchase_id)
    if purchase is None:
        raise NotFound("Purchase", purchase_id)
    return purchase


def get_purchase_by_order(db: Session, order_id: str) -> Optional[Purchase]:
    return db.execute(select(Purchase).where(Purchase.order_id == order_id)).scalar_one_or_none()


def set_purchase_status(
    db: Session, purchase_id: str, status: PurchaseStatus, payment_ref: Optional[str] = None
) -> bool:
    """Move a pending purchase to ``status``.

    Returns True when this call made the change, False when the purchase was
    already in ``status``. Any other move out of a terminal state raises
    ``InvalidTransition``.
    """
    status = PurchaseStatus(status)
    values = {"status": status}
    if payment_ref:
        values["payment_ref"] = payment_ref
    allowed_from = [cur for cur, targets in _TRANSITIONS.items() if status in targets]

    result = db.execute(
        update(Purchase)
        .where(Purchase.id == purchase_id, Purchase.status.in_(allowed_from))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        db.commit()
        purchase = get_purchase(db, purchase_id)
        logger.info("purchase.%s id=%s user=%s card=%s", status.value, purchase.id, purchase.user_id, purchase.course_card_id)
        if status == PurchaseStatus.COMPLETED:
            feed.publish(purchases_topic(purchase.user_id))
        return True

    db.rollback()
    purchase = get_purchase(db, purchase_id)
    if purchase.status == status:
        return False
    raise InvalidTransition(purchase.status.value, status.value)


def list_completed_purchases(db: Session, user_id: str) -> set[str]:
    rows = db.execute(
        select(Purchase.course_card_id).where(
            Purchase.user_id == user_id, Purchase.status == PurchaseStatus.COMPLETED
        )
    ).scalars()
    return set(rows)


def attach_checkout_session(db: Session, purchase_id: str, session_id: str) -> None:
    """Remember the provider checkout session opened for a purchase."""
    purchase = get_purchase(db, purchase_id)
    purchase.checkout_session_id = session_id
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise


def sweep_stale_purchases(
    db: Session,
    now: Optional[datetime] = None,
    ttl_hours: int = PENDING_PURCHASE_TTL_HOURS,
    release: Optional[Callable[[Purchase], bool]] = None,
) -> int:
    """Fail every pending purchase older than ``ttl_hours``; return how many.

    ``release`` is asked first for each candidate and may veto it by returning
    False, e.g. when the provider reports the checkout as already paid.
    """
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(hours=ttl_hours)
    stale = db.execute(
        select(Purchase).where(Purchase.status == PurchaseStatus.PENDING, Purchase.purchased_at < cutoff)
    ).scalars().all()
    if release is not None:
        stale = [p for p in stale if release(p)]
    if not stale:
        db.rollback()
        return 0
    result = db.execute(
        update(Purchase)
        .where(Purchase.id.in_([p.id for p in stale]), Purchase.status == PurchaseStatus.PENDING)
        .values(status=PurchaseStatus.FAILED)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount:
        logger.info("purchase.sweep failed=%s cutoff=%s", result.rowcount, cutoff.isoformat())
    return result.rowcount


# === CASCADE DELETES ===
def _purge(db: Session, card_ids: Iterable[str], video_ids: Iterable[str]) -> set[str]:
    """Delete videos, progress and purchases under the given ids; return affected user ids."""
    card_ids = list(card_ids)
    video_ids = list(video_ids)
    users: set[str] = set()
    if video_ids:
        users.update(db.execute(select(UserProgress.user_id).where(UserProgress.video_id.in_(video_ids))).scalars())
        db.execute(
            delete(UserProgress).where(UserProgress.video_id.in_(video_ids)).execution_options(synchronize_session=False)
        )
        db.execute(delete(Video).where(Video.id.in_(video_ids)).execution_options(synchronize_session=False))
    if card_ids:
        users.update(db.execute(select(Purchase.user_id).where(Purchase.course_card_id.in_(card_ids))).scalars())
        db.execute(
            delete(Purchase).where(Purchase.course_card_id.in_(card_ids)).execution_options(synchronize_session=False)
        )
        db.execute(delete(CourseCard).where(CourseCard.id.in_(card_ids)).execution_options(synchronize_session=False))
    return users


def _announce(users: set[str], *topics: str) -> None:
    feed.publish(*topics)
    for user_id in users:
        feed.publish(progress_topic(user_id), purchases_topic(user_id))


def delete_video(db: Session, video_id: str) -> None:
    if db.get(Video, video_id) is None:
        raise NotFound("Video", video_id)
    try:
        users = _purge(db, [], [video_id])
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("cascade.video id=%s users=%s", video_id, len(users))
    _announce(users, COURSE_CARDS)


def delete_course_card(db: Session, card_id: str) -> None:
    if db.get(CourseCard, card_id) is None:
        raise NotFound("CourseCard", card_id)
    try:
        video_ids = db.execute(select(Video.id).where(Video.course_card_id == card_id)).scalars().all()
        users = _purge(db, [card_id], video_ids)
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("cascade.card id=%s videos=%s users=%s", card_id, len(video_ids), len(users))
    _announce(users, COURSE_CARDS)


def delete_subject(db: Session, subject_id: str) -> None:
    if db.get(Subject, subject_id) is None:
        raise NotFound("Subject", subject_id)
    try:
        card_ids = db.execute(select(CourseCard.id).where(CourseCard.subject_id == subject_id)).scalars().all()
        video_ids = (
            db.execute(select(Video.id).where(Video.course_card_id.in_(card_ids))).scalars().all() if card_ids else []
        )
        users = _purge(db, card_ids, video_ids)
        db.execute(delete(Subject).where(Subject.id == subject_id).execution_options(synchronize_session=False))
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("cascade.subject id=%s cards=%s videos=%s", subject_id, len(card_ids), len(video_ids))
    _announce(users, SUBJECTS, COURSE_CARDS)
