"""SQLAlchemy models for EventDesk."""

from __future__ import annotations

import enum
import secrets
import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

from .utils import utcnow

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return utcnow()


def _token() -> str:
    return secrets.token_urlsafe(32)


class RegistrationStatus(str, enum.Enum):
    REGISTERED = "REGISTERED"
    WAITLISTED = "WAITLISTED"
    CHECKED_IN = "CHECKED_IN"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"


# Statuses that occupy a seat.
SEATED_STATUSES = (RegistrationStatus.REGISTERED, RegistrationStatus.CHECKED_IN)
# Statuses that block a second registration for the same participant.
ACTIVE_STATUSES = (
    RegistrationStatus.REGISTERED,
    RegistrationStatus.WAITLISTED,
    RegistrationStatus.CHECKED_IN,
)


class MemberRole(str, enum.Enum):
    STAFF = "STAFF"
    MODERATOR = "MODERATOR"
    VIEWER = "VIEWER"


class InteractionType(str, enum.Enum):
    COMMENT = "COMMENT"
    LIKE = "LIKE"
    SHARE = "SHARE"
    PHOTO = "PHOTO"
    SURVEY_RESPONSE = "SURVEY_RESPONSE"
    FEEDBACK = "FEEDBACK"


class Event(Base):
    __tablename__ = "events"
    __table_args__ = (
        CheckConstraint(
            "max_attendees IS NULL OR max_attendees >= 1",
            name="ck_events_max_attendees_positive",
        ),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    owner_id = Column(String(64), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    location = Column(String(200), nullable=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=True)
    is_public = Column(Boolean, default=True, nullable=False)
    max_attendees = Column(Integer, nullable=True)
    allow_waitlist = Column(Boolean, default=False, nullable=False)
    registration_deadline = Column(DateTime, nullable=True)
    registration_version = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)
    last_modified = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    registrations = relationship(
        "Registration", back_populates="event", cascade="all, delete-orphan"
    )
    members = relationship(
        "EventMember", back_populates="event", cascade="all, delete-orphan"
    )
    tags = relationship(
        "EventTag",
        back_populates="event",
        cascade="all, delete-orphan",
        order_by="EventTag.tag",
    )
    interactions = relationship(
        "Interaction", back_populates="event", cascade="all, delete-orphan"
    )

    @property
    def tag_names(self) -> list[str]:
        return [tag.tag for tag in self.tags]

    @property
    def is_unlimited(self) -> bool:
        return self.max_attendees is None


class Participant(Base):
    __tablename__ = "participants"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(100), nullable=False)
    email = Column(String(254), nullable=True, index=True)
    phone = Column(String(20), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)
    last_modified = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    registrations = relationship("Registration", back_populates="participant")


class Registration(Base):
    __tablename__ = "registrations"
    __table_args__ = (
        UniqueConstraint(
            "event_id", "participant_id", name="uq_registrations_event_participant"
        ),
        Index("ix_registrations_event_status", "event_id", "status"),
        Index("ix_registrations_event_waitlist", "event_id", "waitlist_position"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    participant_id = Column(
        String(36), ForeignKey("participants.id"), nullable=False, index=True
    )
    status = Column(
        String(16), nullable=False, default=RegistrationStatus.REGISTERED.value
    )
    waitlist_position = Column(Integer, nullable=True)
    rsvp_at = Column(DateTime, default=_now, nullable=False)
    check_in_at = Column(DateTime, nullable=True)
    source = Column(String(32), default="web", nullable=False)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(255), nullable=True)
    # Secret handed to the registrant; proves ownership for self-service cancel.
    registration_token = Column(
        String(64), nullable=False, unique=True, index=True, default=_token
    )
    created_at = Column(DateTime, default=_now, nullable=False)
    last_modified = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    event = relationship("Event", back_populates="registrations")
    participant = relationship("Participant", back_populates="registrations")


class EventMember(Base):
    __tablename__ = "event_members"
    __table_args__ = (
        UniqueConstraint("event_id", "user_id", name="uq_event_members_event_user"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    user_id = Column(String(64), nullable=False, index=True)
    role = Column(String(16), nullable=False, default=MemberRole.STAFF.value)
    added_by = Column(String(64), nullable=False)
    added_at = Column(DateTime, default=_now, nullable=False)

    event = relationship("Event", back_populates="members")


class EventTag(Base):
    __tablename__ = "event_tags"
    __table_args__ = (
        UniqueConstraint("event_id", "tag", name="uq_event_tags_event_tag"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    tag = Column(String(50), nullable=False, index=True)

    event = relationship("Event", back_populates="tags")


class Interaction(Base):
    __tablename__ = "interactions"
    __table_args__ = (
        Index("ix_interactions_event_type", "event_id", "type"),
        Index("ix_interactions_event_created", "event_id", "created_at"),
        Index("ix_interactions_event_moderated", "event_id", "is_moderated"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    participant_id = Column(
        String(36), ForeignKey("participants.id"), nullable=True, index=True
    )
    user_id = Column(String(64), nullable=True, index=True)
    type = Column(String(32), nullable=False)
    content = Column(Text, nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(255), nullable=True)
    is_moderated = Column(Boolean, default=False, nullable=False)
    moderated_by = Column(String(64), nullable=True)
    moderated_at = Column(DateTime, nullable=True)
    moderation_reason = Column(String(200), nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)
    last_modified = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    event = relationship("Event", back_populates="interactions")
    participant = relationship("Participant")
