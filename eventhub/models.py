"""SQLAlchemy models for EventHub."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

from .utils import utcnow

Base = declarative_base()

TEAM_ROLES = ("owner", "admin", "member")
INVITABLE_ROLES = ("admin", "member")
INVITATION_STATUSES = ("pending", "accepted", "expired")
EVENT_TYPES = ("music", "art", "workshop", "performance", "exhibition", "other")
EVENT_STATUSES = ("draft", "published", "cancelled")
THREAD_TYPES = ("team", "event", "ai")
PARTICIPANT_ROLES = ("admin", "participant")
MESSAGE_TYPES = ("text", "system", "ai")


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return utcnow()


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(120), nullable=True)
    email = Column(String(255), nullable=True, unique=True)
    email_verified_at = Column(DateTime, nullable=True)
    phone = Column(String(64), nullable=True)
    phone_verified_at = Column(DateTime, nullable=True)
    image = Column(String(255), nullable=True)
    favorite_color = Column(String(32), nullable=True)
    is_anonymous = Column(Boolean, default=False, nullable=False)
    # Selected team; not an ownership link, so no foreign key.
    current_team_id = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)

    memberships = relationship(
        "TeamMember", back_populates="user", cascade="all, delete-orphan"
    )
    sessions = relationship(
        "AuthSession", back_populates="user", cascade="all, delete-orphan"
    )

    @property
    def display_name(self) -> str:
        return self.name or self.email or self.phone or "Anonymous"


class AuthSession(Base):
    __tablename__ = "auth_sessions"

    id = Column(String(36), primary_key=True, default=_uuid)
    token = Column(String(128), nullable=False, unique=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)
    last_used_at = Column(DateTime, default=_now, nullable=False)

    user = relationship("User", back_populates="sessions")


class Team(Base):
    __tablename__ = "teams"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    slug = Column(String(128), nullable=False, unique=True)
    description = Column(Text, nullable=True)
    owner_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    logo = Column(String(255), nullable=True)
    primary_color = Column(String(7), nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)

    owner = relationship("User", foreign_keys=[owner_id])
    members = relationship(
        "TeamMember",
        back_populates="team",
        cascade="all, delete-orphan",
        order_by="TeamMember.joined_at",
    )
    invitations = relationship(
        "TeamInvitation", back_populates="team", cascade="all, delete-orphan"
    )
    events = relationship("Event", back_populates="team", cascade="all, delete-orphan")
    threads = relationship(
        "Thread",
        back_populates="team",
        cascade="all, delete-orphan",
        foreign_keys="Thread.team_id",
    )


class TeamMember(Base):
    __tablename__ = "team_members"
    __table_args__ = (
        UniqueConstraint("team_id", "user_id", name="uq_team_members_team_user"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    team_id = Column(String(36), ForeignKey("teams.id"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    role = Column(String(16), nullable=False, default="member")
    joined_at = Column(DateTime, default=_now, nullable=False)

    team = relationship("Team", back_populates="members")
    user = relationship("User", back_populates="memberships")


class TeamInvitation(Base):
    __tablename__ = "team_invitations"

    id = Column(String(36), primary_key=True, default=_uuid)
    team_id = Column(String(36), ForeignKey("teams.id"), nullable=False, index=True)
    invited_by = Column(String(36), ForeignKey("users.id"), nullable=False)
    email = Column(String(255), nullable=False, index=True)
    token = Column(String(128), nullable=False, unique=True)
    role = Column(String(16), nullable=False, default="member")
    status = Column(String(16), nullable=False, default="pending")
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)

    team = relationship("Team", back_populates="invitations")
    inviter = relationship("User", foreign_keys=[invited_by])

    def is_expired(self, *, now: datetime | None = None) -> bool:
        return self.expires_at < (now or utcnow())


class Event(Base):
    __tablename__ = "events"

    id = Column(String(36), primary_key=True, default=_uuid)
    title = Column(String(255), nullable=False)
    slug = Column(String(128), nullable=False, unique=True)
    description = Column(Text, nullable=False)
    venue = Column(String(255), nullable=False)
    start_time = Column(DateTime, nullable=False, index=True)
    end_time = Column(DateTime, nullable=False)
    timezone = Column(String(64), nullable=False, default="Europe/Copenhagen")
    team_id = Column(String(36), ForeignKey("teams.id"), nullable=False, index=True)
    organizer_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    event_type = Column(String(16), nullable=False, default="other")
    max_capacity = Column(Integer, nullable=True)
    registration_deadline = Column(DateTime, nullable=True)
    status = Column(String(16), nullable=False, default="draft", index=True)
    event_image_id = Column(String(255), nullable=True)
    social_image_id = Column(String(255), nullable=True)
    registration_count = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    team = relationship("Team", back_populates="events")
    organizer = relationship("User", foreign_keys=[organizer_id])
    registrations = relationship(
        "EventRegistration",
        back_populates="event",
        cascade="all, delete-orphan",
        order_by="desc(EventRegistration.registered_at)",
    )
    threads = relationship(
        "Thread",
        back_populates="event",
        cascade="all, delete-orphan",
        foreign_keys="Thread.event_id",
    )

    @property
    def seats_left(self) -> int | None:
        if self.max_capacity is None:
            return None
        return max(self.max_capacity - (self.registration_count or 0), 0)


class EventRegistration(Base):
    __tablename__ = "event_registrations"
    __table_args__ = (
        UniqueConstraint(
            "event_id", "attendee_email", name="uq_event_registrations_event_email"
        ),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(String(36), ForeignKey("events.id"), nullable=False, index=True)
    attendee_name = Column(String(120), nullable=False)
    attendee_email = Column(String(255), nullable=False, index=True)
    attendee_phone = Column(String(64), nullable=True)
    registered_at = Column(DateTime, default=_now, nullable=False)
    confirmation_sent = Column(Boolean, default=False, nullable=False)

    event = relationship("Event", back_populates="registrations")


class Thread(Base):
    __tablename__ = "threads"

    id = Column(String(36), primary_key=True, default=_uuid)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    thread_type = Column(String(16), nullable=False, default="team")
    team_id = Column(String(36), ForeignKey("teams.id"), nullable=True, index=True)
    event_id = Column(String(36), ForeignKey("events.id"), nullable=True, index=True)
    ai_agent_name = Column(String(120), nullable=True)
    created_by = Column(String(36), ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)
    last_message_at = Column(DateTime, nullable=True)
    is_archived = Column(Boolean, default=False, nullable=False)

    team = relationship("Team", back_populates="threads", foreign_keys=[team_id])
    event = relationship("Event", back_populates="threads", foreign_keys=[event_id])
    participants = relationship(
        "ThreadParticipant", back_populates="thread", cascade="all, delete-orphan"
    )
    messages = relationship(
        "ThreadMessage",
        back_populates="thread",
        cascade="all, delete-orphan",
        order_by="ThreadMessage.created_at",
    )


class ThreadParticipant(Base):
    __tablename__ = "thread_participants"
    __table_args__ = (
        UniqueConstraint(
            "thread_id", "user_id", name="uq_thread_participants_thread_user"
        ),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    thread_id = Column(String(36), ForeignKey("threads.id"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    role = Column(String(16), nullable=False, default="participant")
    joined_at = Column(DateTime, default=_now, nullable=False)
    last_read_at = Column(DateTime, nullable=True)

    thread = relationship("Thread", back_populates="participants")
    user = relationship("User")


class ThreadMessage(Base):
    __tablename__ = "thread_messages"

    id = Column(String(36), primary_key=True, default=_uuid)
    thread_id = Column(String(36), ForeignKey("threads.id"), nullable=False, index=True)
    author_id = Column(String(36), ForeignKey("users.id"), nullable=True)
    content = Column(Text, nullable=False)
    message_type = Column(String(16), nullable=False, default="text")
    reply_to_id = Column(
        String(36), ForeignKey("thread_messages.id"), nullable=True, index=True
    )
    edited_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False, index=True)

    thread = relationship("Thread", back_populates="messages")
    author = relationship("User")
    reply_to = relationship("ThreadMessage", remote_side=[id], back_populates="replies")
    replies = relationship(
        "ThreadMessage",
        back_populates="reply_to",
        cascade="all, delete-orphan",
        order_by="ThreadMessage.created_at",
    )
