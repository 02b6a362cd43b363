# catalog.py
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from db import SessionLocal
from entitlements import list_completed_purchases, list_progress
from errors import NotFound, ValidationError
from feed import COURSE_CARDS, SUBJECTS, ChangeFeed, Subscription, feed, progress_topic, purchases_topic
from models import CourseCard, Subject, Video
from settings import DEFAULT_MAX_PLAYS

logger = logging.getLogger("lms.catalog")


# === SNAPSHOTS ===
@dataclass(frozen=True)
class SubjectView:
    id: str
    name: str
    description: Optional[str] = None


@dataclass(frozen=True)
class VideoView:
    id: str
    course_card_id: str
    title: str
    description: str = ""
    media_ref: Optional[str] = None
    duration: str = ""
    max_plays: int = DEFAULT_MAX_PLAYS
    plays_used: int = 0


@dataclass(frozen=True)
class CardView:
    id: str
    subject_id: str
    name: str
    price: int
    is_free: bool
    description: Optional[str] = None
    videos: tuple[VideoView, ...] = field(default_factory=tuple)
    is_purchased: bool = False


@dataclass(frozen=True)
class ProgressView:
    video_id: str
    plays_used: int
    last_watched_at: Optional[datetime] = None


def subject_view(s: Subject) -> SubjectView:
    return SubjectView(id=s.id, name=s.name, description=s.description)


def video_view(v: Video) -> VideoView:
    return VideoView(
        id=v.id,
        course_card_id=v.course_card_id,
        title=v.title,
        description=v.description or "",
        media_ref=v.media_ref,
        duration=v.duration or "",
        max_plays=v.max_plays,
    )


def card_view(c: CourseCard) -> CardView:
    return CardView(
        id=c.id,
        subject_id=c.subject_id,
        name=c.name,
        description=c.description,
        price=c.price,
        is_free=c.is_free,
        videos=tuple(video_view(v) for v in c.videos),
    )


def load_subjects(db: Session) -> list[SubjectView]:
    rows = db.execute(select(Subject).order_by(Subject.name.asc())).scalars()
    return [subject_view(s) for s in rows]


def load_course_cards(db: Session) -> list[CardView]:
    rows = db.execute(
        select(CourseCard).options(selectinload(CourseCard.videos)).order_by(CourseCard.created_at.desc())
    ).scalars()
    return [card_view(c) for c in rows]


def load_progress(db: Session, user_id: str) -> list[ProgressView]:
    return [ProgressView(p.video_id, p.plays_used, p.last_watched_at) for p in list_progress(db, user_id)]


class CatalogProvider:
    """One-shot reads and push subscriptions over the catalog and a user's entitlement state.

    Each ``subscribe_*`` call delivers the current snapshot immediately and again
    after every committed change on its topic. The returned ``Subscription`` is
    the only way to stop delivery.
    """

    def __init__(self, session_factory=SessionLocal, change_feed: ChangeFeed = feed) -> None:
        self.session_factory = session_factory
        self.feed = change_feed

    def _read(self, loader, *args):
        db = self.session_factory()
        try:
            return loader(db, *args)
        finally:
            db.close()

    def list_subjects(self) -> list[SubjectView]:
        return self._read(load_subjects)

    def list_course_cards(self) -> list[CardView]:
        return self._read(load_course_cards)

    def list_progress(self, user_id: str) -> list[ProgressView]:
        return self._read(load_progress, user_id)

    def list_completed_purchases(self, user_id: str) -> frozenset[str]:
        return frozenset(self._read(list_completed_purchases, user_id))

    def _subscribe(self, topic: str, fetch: Callable[[], object], callback: Callable) -> Subscription:
        # fetch and delivery are one step per subscription, so a slow reader can
        # never hand over its snapshot after a newer one
        lock = threading.Lock()

        def deliver():
            with lock:
                callback(fetch())

        sub = self.feed.subscribe(topic, deliver)
        deliver()
        return sub

    def subscribe_subjects(self, callback: Callable[[list[SubjectView]], None]) -> Subscription:
        return self._subscribe(SUBJECTS, self.list_subjects, callback)

    def subscribe_course_cards(self, callback: Callable[[list[CardView]], None]) -> Subscription:
        return self._subscribe(COURSE_CARDS, self.list_course_cards, callback)

    def subscribe_progress(self, user_id: str, callback: Callable[[list[ProgressView]], None]) -> Subscription:
        return self._subscribe(progress_topic(user_id), lambda: self.list_progress(user_id), callback)

    def subscribe_purchases(self, user_id: str, callback: Callable[[frozenset[str]], None]) -> Subscription:
        return self._subscribe(purchases_topic(user_id), lambda: self.list_completed_purchases(user_id), callback)


# === ADMIN CRUD ===
def _commit(db: Session, *topics: str) -> None:
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    feed.publish(*topics)


def _check_price(price: int, is_free: bool) -> None:
    if price < 0:
        raise ValidationError("price must be non-negative")
    if is_free and price != 0:
        raise ValidationError("a free course card must have price 0")


def _check_max_plays(max_plays: int) -> None:
    if max_plays < 1:
        raise ValidationError("max_plays must be a positive integer")


def get_subject(db: Session, subject_id: str) -> Subject:
    subject = db.get(Subject, subject_id)
    if subject is None:
        raise NotFound("Subject", subject_id)
    return subject


def get_course_card(db: Session, card_id: str) -> CourseCard:
    card = db.get(CourseCard, card_id)
    if card is None:
        raise NotFound("CourseCard", card_id)
    return card


def get_video(db: Session, video_id: str) -> Video:
    video = db.get(Video, video_id)
    if video is None:
        raise NotFound("Video", video_id)
    return video


def create_subject(db: Session, name: str, description: Optional[str] = None) -> Subject:
    subject = Subject(name=name, description=description)
    db.add(subject)
    _commit(db, SUBJECTS)
    logger.info("subject.created id=%s", subject.id)
    return subject


def update_subject(db: Session, subject_id: str, **updates) -> Subject:
    subject = get_subject(db, subject_id)
    for key in ("name", "description"):
        if updates.get(key) is not None:
            setattr(subject, key, updates[key])
    _commit(db, SUBJECTS)
    return subject


def create_course_card(
    db: Session,
    subject_id: str,
    name: str,
    price: int = 0,
    is_free: bool = False,
    description: Optional[str] = None,
) -> CourseCard:
    get_subject(db, subject_id)
    _check_price(price, is_free)
    card = CourseCard(subject_id=subject_id, name=name, price=price, is_free=is_free, description=description)
    db.add(card)
    _commit(db, COURSE_CARDS)
    logger.info("card.created id=%s subject=%s free=%s price=%s", card.id, subject_id, is_free, price)
    return card


def update_course_card(db: Session, card_id: str, **updates) -> CourseCard:
    card = get_course_card(db, card_id)
    if updates.get("subject_id") is not None:
        get_subject(db, updates["subject_id"])
    price = updates["price"] if updates.get("price") is not None else card.price
    is_free = updates["is_free"] if updates.get("is_free") is not None else card.is_free
    _check_price(price, is_free)
    for key in ("subject_id", "name", "description", "price", "is_free"):
        if updates.get(key) is not None:
            setattr(card, key, updates[key])
    _commit(db, COURSE_CARDS)
    return card


def add_video(
    db: Session,
    card_id: str,
    title: str,
    description: str = "",
    media_ref: Optional[str] = None,
    duration: str = "",
    max_plays: int = DEFAULT_MAX_PLAYS,
) -> Video:
    get_course_card(db, card_id)
    _check_max_plays(max_plays)
    position = db.execute(
        select(func.coalesce(func.max(Video.position), -1) + 1).where(Video.course_card_id == card_id)
    ).scalar_one()
    video = Video(
        course_card_id=card_id,
        position=position,
        title=title,
        description=description,
        media_ref=media_ref,
        duration=duration,
        max_plays=max_plays,
    )
    db.add(video)
    _commit(db, COURSE_CARDS)
    logger.info("video.created id=%s card=%s", video.id, card_id)
    return video


def update_video(db: Session, video_id: str, **updates) -> Video:
    video = get_video(db, video_id)
    if updates.get("max_plays") is not None:
        _check_max_plays(updates["max_plays"])
    for key in ("title", "description", "media_ref", "duration", "max_plays"):
        if updates.get(key) is not None:
            setattr(video, key, updates[key])
    _commit(db, COURSE_CARDS)
    return video
