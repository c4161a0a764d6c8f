"""SQLAlchemy models for TeamUp."""

from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.types import TypeDecorator

from .temporal import Instant, now, resolve
from .utils import utcnow

Base = declarative_base()


class Role(str, enum.Enum):
    ORGANIZER = "organizer"
    PARTICIPANT = "participant"
    OBSERVER = "observer"


class InstantType(TypeDecorator):
    """Store :class:`Instant` values as naive UTC datetimes.

    Anything bound to the column is passed through the resolver first, so raw
    wire shapes never reach the database.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return resolve(value).to_naive_utc()

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, str):
            return resolve(value)
        return Instant.from_datetime(value)


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> Instant:
    return now()


def _received() -> datetime:
    return utcnow()


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    api_token = Column(String(128), nullable=False, unique=True)
    name = Column(String(120), nullable=False)
    email = Column(String(255), nullable=True, unique=True)
    profile_picture_url = Column(String(512), nullable=True)
    number_event_created = Column(Integer, default=0, nullable=False)
    number_event_joined = Column(Integer, default=0, nullable=False)
    number_message_sent = Column(Integer, default=0, nullable=False)
    created_at = Column(InstantType, default=_now, nullable=False)
    updated_at = Column(InstantType, default=_now, onupdate=_now, nullable=False)


class Event(Base):
    __tablename__ = "events"
    __table_args__ = (Index("ix_events_visibility_type", "visibility", "type"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    created_by = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    type = Column(String(32), nullable=False, default="other")
    description = Column(Text, nullable=True)
    level_needed = Column(String(32), nullable=True)
    location_name = Column(String(255), nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    picture_url = Column(String(512), nullable=True)
    competent_trainer = Column(Boolean, default=False, nullable=False)
    # Raw wire shape as received; read through ``scheduled_at``.
    date = Column(JSON, nullable=False)
    max_participants = Column(Integer, nullable=True)
    visibility = Column(String(16), nullable=False, default="public")
    participant_count = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False)
    created_at = Column(InstantType, default=_now, nullable=False)
    updated_at = Column(InstantType, default=_now, onupdate=_now, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    organizer = relationship("User")
    participations = relationship(
        "Participation",
        back_populates="event",
        cascade="all, delete-orphan",
    )
    messages = relationship(
        "Message",
        back_populates="event",
        cascade="all, delete-orphan",
    )

    @property
    def scheduled_at(self) -> Instant:
        return resolve(self.date)

    @property
    def is_full(self) -> bool:
        if self.max_participants is None:
            return False
        return self.participant_count >= self.max_participants


class Participation(Base):
    __tablename__ = "user_events"
    __table_args__ = (
        UniqueConstraint("event_id", "user_id", name="uq_user_events_event_user"),
        Index(
            "uq_user_events_one_organizer",
            "event_id",
            unique=True,
            sqlite_where=text("role = 'organizer'"),
            postgresql_where=text("role = 'organizer'"),
        ),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    role = Column(String(16), nullable=False, default=Role.PARTICIPANT.value)
    joined_at = Column(InstantType, default=_now, nullable=False)
    updated_at = Column(InstantType, default=_now, onupdate=_now, nullable=False)

    event = relationship("Event", back_populates="participations")
    user = relationship("User")


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (Index("ix_messages_event_sent", "event_id", "sent_at"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    author_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    content = Column(Text, nullable=False)
    sent_at = Column(InstantType, default=_now, nullable=False)
    # Server receipt time, microsecond resolution; breaks ties between equal sent_at.
    received_at = Column(DateTime, default=_received, nullable=False)
    edited_at = Column(InstantType, nullable=True)
    from_organizer = Column(Boolean, default=False, nullable=False)

    event = relationship("Event", back_populates="messages")
    author = relationship("User")
