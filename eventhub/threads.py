"""Team and event discussion threads."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from .auth import get_current_team_id, get_membership, require_team, require_user
from .errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationFailedError
from .models import (
    PARTICIPANT_ROLES,
    Event,
    EventRegistration,
    TeamMember,
    Thread,
    ThreadMessage,
    ThreadParticipant,
    User,
)
from .utils import normalize_email, utcnow


@dataclass
class ThreadOverview:
    thread: Thread
    message_count: int
    unread_count: int
    role: str | None


def get_participation(
    session: Session, thread_id: str, user_id: str
) -> ThreadParticipant | None:
    stmt = select(ThreadParticipant).where(
        ThreadParticipant.thread_id == thread_id,
        ThreadParticipant.user_id == user_id,
    )
    return session.scalars(stmt).first()


def add_participant(
    session: Session, thread: Thread, user_id: str, *, role: str = "participant"
) -> ThreadParticipant:
    """Add ``user_id`` to ``thread`` unless already present."""
    existing = get_participation(session, thread.id, user_id)
    if existing:
        return existing
    participant = ThreadParticipant(
        thread=thread, user_id=user_id, role=role, joined_at=utcnow()
    )
    session.add(participant)
    session.flush()
    return participant


def create_thread(
    session: Session,
    *,
    title: str,
    thread_type: str,
    created_by: str,
    description: str | None = None,
    team_id: str | None = None,
    event_id: str | None = None,
    ai_agent_name: str | None = None,
) -> Thread:
    cleaned_title = (title or "").strip()
    if not cleaned_title:
        raise ValidationFailedError("Thread title is required")
    thread = Thread(
        title=cleaned_title,
        description=description,
        thread_type=thread_type,
        team_id=team_id,
        event_id=event_id,
        ai_agent_name=ai_agent_name,
        created_by=created_by,
        created_at=utcnow(),
        is_archived=False,
    )
    session.add(thread)
    session.flush()
    add_participant(session, thread, created_by, role="admin")
    return thread


def _add_team_members(session: Session, thread: Thread, team_id: str) -> None:
    stmt = select(TeamMember.user_id).where(TeamMember.team_id == team_id)
    for user_id in session.scalars(stmt).all():
        add_participant(session, thread, user_id)


def create_team_thread(
    session: Session,
    *,
    user: User | None,
    team_id: str,
    title: str,
    description: str | None = None,
) -> Thread:
    user = require_user(user)
    if get_membership(session, team_id, user.id) is None:
        raise PermissionDeniedError("Not a team member")
    thread = create_thread(
        session,
        title=title,
        description=description,
        thread_type="team",
        team_id=team_id,
        created_by=user.id,
    )
    _add_team_members(session, thread, team_id)
    return thread


def create_team_thread_for_current_team(
    session: Session, *, user: User | None, title: str, description: str | None = None
) -> Thread:
    user, team_id = require_team(session, user)
    return create_team_thread(
        session, user=user, team_id=team_id, title=title, description=description
    )


def _ensure_event(session: Session, event_id: str) -> Event:
    event = session.get(Event, event_id)
    if not event:
        raise NotFoundError("Event not found")
    return event


def _is_organizer_or_member(session: Session, event: Event, user_id: str) -> bool:
    if event.organizer_id == user_id:
        return True
    return get_membership(session, event.team_id, user_id) is not None


def create_event_thread(
    session: Session,
    *,
    user: User | None,
    event_id: str,
    title: str,
    description: str | None = None,
) -> Thread:
    user = require_user(user)
    event = _ensure_event(session, event_id)
    if not _is_organizer_or_member(session, event, user.id):
        raise PermissionDeniedError("Not authorized to create event thread")
    thread = create_thread(
        session,
        title=title,
        description=description,
        thread_type="event",
        event_id=event.id,
        created_by=user.id,
    )
    if event.organizer_id != user.id:
        add_participant(session, thread, event.organizer_id, role="admin")
    return thread


def create_ai_thread(
    session: Session,
    *,
    user: User | None,
    title: str,
    ai_agent_name: str,
    team_id: str | None = None,
    event_id: str | None = None,
) -> Thread:
    user = require_user(user)
    if team_id and get_membership(session, team_id, user.id) is None:
        raise PermissionDeniedError("Not a team member")
    if event_id:
        event = _ensure_event(session, event_id)
        if not _is_organizer_or_member(session, event, user.id):
            raise PermissionDeniedError(
                "Not authorized to create AI thread for this event"
            )
    return create_thread(
        session,
        title=title,
        description=f"AI conversation with {ai_agent_name}",
        thread_type="ai",
        team_id=team_id,
        event_id=event_id,
        ai_agent_name=ai_agent_name,
        created_by=user.id,
    )


def _overview(session: Session, thread: Thread, user_id: str) -> ThreadOverview:
    participation = get_participation(session, thread.id, user_id)
    message_count = (
        session.scalar(
            select(func.count())
            .select_from(ThreadMessage)
            .where(ThreadMessage.thread_id == thread.id)
        )
        or 0
    )
    unread_stmt = (
        select(func.count())
        .select_from(ThreadMessage)
        .where(ThreadMessage.thread_id == thread.id)
    )
    if participation and participation.last_read_at:
        unread_stmt = unread_stmt.where(
            ThreadMessage.created_at > participation.last_read_at
        )
    return ThreadOverview(
        thread=thread,
        message_count=message_count,
        unread_count=session.scalar(unread_stmt) or 0,
        role=participation.role if participation else None,
    )


def _paginate_threads(
    session: Session, *, filters: list, user_id: str, page: int, per_page: int
) -> tuple[list[ThreadOverview], int]:
    count_stmt = select(func.count()).select_from(Thread)
    stmt = select(Thread).order_by(Thread.created_at.desc())
    for condition in filters:
        count_stmt = count_stmt.where(condition)
        stmt = stmt.where(condition)
    total = session.scalar(count_stmt) or 0
    page = max(page, 1)
    threads = session.scalars(stmt.offset((page - 1) * per_page).limit(per_page)).all()
    return [_overview(session, thread, user_id) for thread in threads], total


def get_my_team_threads(
    session: Session, *, user: User | None, page: int = 1, per_page: int = 20
) -> tuple[list[ThreadOverview], int]:
    """Non-archived threads of the current team, newest first."""
    user = require_user(user)
    team_id = get_current_team_id(session, user)
    if not team_id:
        return [], 0
    return _paginate_threads(
        session,
        filters=[Thread.team_id == team_id, Thread.is_archived.is_(False)],
        user_id=user.id,
        page=page,
        per_page=per_page,
    )


def get_threads_for_team(
    session: Session,
    *,
    user: User | None,
    team_id: str,
    page: int = 1,
    per_page: int = 20,
) -> tuple[list[ThreadOverview], int]:
    """Team threads plus the threads of the team's events."""
    user = require_user(user)
    if get_membership(session, team_id, user.id) is None:
        raise PermissionDeniedError("Not a team member")
    team_event_ids = select(Event.id).where(Event.team_id == team_id)
    return _paginate_threads(
        session,
        filters=[
            or_(Thread.team_id == team_id, Thread.event_id.in_(team_event_ids)),
            Thread.is_archived.is_(False),
        ],
        user_id=user.id,
        page=page,
        per_page=per_page,
    )


def _is_registered_attendee(session: Session, event: Event, user: User) -> bool:
    if not user.email:
        return False
    stmt = select(EventRegistration.id).where(
        EventRegistration.event_id == event.id,
        EventRegistration.attendee_email == normalize_email(user.email),
    )
    return session.scalars(stmt).first() is not None


def get_threads_for_event(
    session: Session,
    *,
    user: User | None,
    event_id: str,
    page: int = 1,
    per_page: int = 20,
) -> tuple[list[ThreadOverview], int]:
    user = require_user(user)
    event = _ensure_event(session, event_id)
    if not (
        _is_organizer_or_member(session, event, user.id)
        or _is_registered_attendee(session, event, user)
    ):
        raise PermissionDeniedError("Not authorized to view event threads")
    return _paginate_threads(
        session,
        filters=[Thread.event_id == event.id, Thread.is_archived.is_(False)],
        user_id=user.id,
        page=page,
        per_page=per_page,
    )


def _ensure_thread(session: Session, thread_id: str) -> Thread:
    thread = session.get(Thread, thread_id)
    if not thread:
        raise NotFoundError("Thread not found")
    return thread


def add_user_to_thread(
    session: Session,
    *,
    user: User | None,
    thread_id: str,
    user_id: str,
    role: str = "participant",
) -> ThreadParticipant:
    user = require_user(user)
    if role not in PARTICIPANT_ROLES:
        raise ValidationFailedError("Invalid participant role")
    thread = _ensure_thread(session, thread_id)
    current = get_participation(session, thread.id, user.id)
    if not current or current.role != "admin":
        raise PermissionDeniedError("Not authorized to add users to this thread")
    if session.get(User, user_id) is None:
        raise NotFoundError("User not found")
    if get_participation(session, thread.id, user_id):
        raise ConflictError("User is already a participant in this thread")
    return add_participant(session, thread, user_id, role=role)


def archive_thread(session: Session, *, user: User | None, thread_id: str) -> Thread:
    user = require_user(user)
    thread = _ensure_thread(session, thread_id)
    participation = get_participation(session, thread.id, user.id)
    if not participation or participation.role != "admin":
        raise PermissionDeniedError("Not authorized to archive this thread")
    thread.is_archived = True
    session.add(thread)
    session.flush()
    return thread


def mark_thread_as_read(
    session: Session, *, user: User | None, thread_id: str
) -> ThreadParticipant:
    user = require_user(user)
    participation = get_participation(session, thread_id, user.id)
    if not participation:
        raise PermissionDeniedError("Not a participant in this thread")
    participation.last_read_at = utcnow()
    session.add(participation)
    session.flush()
    return participation
