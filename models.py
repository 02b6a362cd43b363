# models.py
import enum
import uuid

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import relationship

from db import Base
from settings import DEFAULT_MAX_PLAYS


def new_id() -> str:
    return uuid.uuid4().hex


class PurchaseStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class User(Base):
    __tablename__ = "users"
    id = Column(String(32), primary_key=True, default=new_id)
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=False, default="")
    hashed_password = Column(String, nullable=False)
    is_admin = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Subject(Base):
    __tablename__ = "subjects"
    id = Column(String(32), primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    cards = relationship("CourseCard", back_populates="subject")


class CourseCard(Base):
    __tablename__ = "course_cards"
    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_course_cards_price_non_negative"),
        CheckConstraint("NOT is_free OR price = 0", name="ck_course_cards_free_has_no_price"),
    )
    id = Column(String(32), primary_key=True, default=new_id)
    subject_id = Column(String(32), ForeignKey("subjects.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Integer, nullable=False, default=0)
    is_free = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    subject = relationship("Subject", back_populates="cards")
    videos = relationship("Video", back_populates="card", order_by="Video.position")


class Video(Base):
    __tablename__ = "videos"
    __table_args__ = (CheckConstraint("max_plays > 0", name="ck_videos_max_plays_positive"),)
    id = Column(String(32), primary_key=True, default=new_id)
    course_card_id = Column(String(32), ForeignKey("course_cards.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=False, default="")
    media_ref = Column(String, nullable=True)   # hosted video id (youtube)
    duration = Column(String, nullable=False, default="")
    max_plays = Column(Integer, nullable=False, default=DEFAULT_MAX_PLAYS)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    card = relationship("CourseCard", back_populates="videos")


class UserProgress(Base):
    __tablename__ = "user_progress"
    __table_args__ = (UniqueConstraint("user_id", "video_id", name="uq_user_progress_user_video"),)
    id = Column(String(32), primary_key=True, default=new_id)
    user_id = Column(String(32), ForeignKey("users.id"), nullable=False, index=True)
    video_id = Column(String(32), ForeignKey("videos.id"), nullable=False, index=True)
    plays_used = Column(Integer, nullable=False, default=0)
    last_watched_at = Column(DateTime(timezone=True), server_default=func.now())


class Purchase(Base):
    __tablename__ = "purchases"
    id = Column(String(32), primary_key=True, default=new_id)
    user_id = Column(String(32), ForeignKey("users.id"), nullable=False, index=True)
    course_card_id = Column(String(32), ForeignKey("course_cards.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    order_id = Column(String, unique=True, nullable=False)
    payment_ref = Column(String, nullable=True)   # provider payment id
    checkout_session_id = Column(String, nullable=True)
    status = Column(
        Enum(PurchaseStatus, values_callable=lambda e: [m.value for m in e], native_enum=False),
        nullable=False,
        default=PurchaseStatus.PENDING,
    )
    purchased_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
