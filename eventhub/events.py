"""Event lifecycle and capacity-safe registration."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .auth import get_current_team_id, get_membership, require_team, require_user, MANAGER_ROLES
from .config import settings
from .errors import (
    ConflictError,
    EventFullError,
    NotFoundError,
    PermissionDeniedError,
    ValidationFailedError,
)
from .messages import send_system_message
from .models import (
    EVENT_STATUSES,
    EVENT_TYPES,
    Event,
    EventRegistration,
    TeamMember,
    User,
)
from .threads import add_participant, create_thread
from .utils import (
    is_valid_email,
    is_valid_timezone,
    normalize_email,
    to_naive_utc,
    unique_slug,
    utcnow,
)

EVENT_SLUG_MAX_LENGTH = 60
DUPLICATE_REGISTRATION = "This email address is already registered for this event"
UPDATABLE_FIELDS = {
    "title",
    "description",
    "venue",
    "start_time",
    "end_time",
    "timezone",
    "event_type",
    "max_capacity",
    "registration_deadline",
    "status",
    "event_image_id",
    "social_image_id",
}


def _clean_title(value: str | None) -> str:
    title = (value or "").strip()
    if len(title) < 3:
        raise ValidationFailedError("Event title must be at least 3 characters long")
    return title


def _clean_description(value: str | None) -> str:
    description = (value or "").strip()
    if len(description) < 10:
        raise ValidationFailedError(
            "Event description must be at least 10 characters long"
        )
    return description


def _clean_venue(value: str | None) -> str:
    venue = (value or "").strip()
    if len(venue) < 3:
        raise ValidationFailedError("Venue must be at least 3 characters long")
    return venue


def _check_future_start(start_time: datetime) -> None:
    if start_time <= utcnow():
        raise ValidationFailedError("Event must be scheduled for the future")


def _check_window(start_time: datetime, end_time: datetime) -> None:
    if end_time <= start_time:
        raise ValidationFailedError("End time must be after start time")


def _check_capacity(max_capacity: int | None) -> None:
    if max_capacity is not None and max_capacity <= 0:
        raise ValidationFailedError("Maximum capacity must be a positive number")


def _check_timezone(timezone: str) -> None:
    if not is_valid_timezone(timezone):
        raise ValidationFailedError(
            "Invalid timezone. Please use a valid IANA timezone identifier"
        )


def _check_choice(value: str, choices: tuple[str, ...], label: str) -> None:
    if value not in choices:
        raise ValidationFailedError(f"Invalid {label}: {value}")


def can_manage_event(session: Session, event: Event, user: User | None) -> bool:
    """Organizers and team owners/admins may manage an event."""
    if user is None:
        return False
    if event.organizer_id == user.id:
        return True
    membership = get_membership(session, event.team_id, user.id)
    return membership is not None and membership.role in MANAGER_ROLES


def _ensure_event(session: Session, event_id: str) -> Event:
    event = session.get(Event, event_id)
    if not event:
        raise NotFoundError("Event not found")
    return event


def _require_manage(session: Session, user: User | None, event_id: str) -> tuple[User, Event]:
    user = require_user(user)
    event = _ensure_event(session, event_id)
    if not can_manage_event(session, event, user):
        raise PermissionDeniedError("Insufficient permissions to manage this event")
    return user, event


def _open_discussion(session: Session, event: Event, organizer: User) -> None:
    thread = create_thread(
        session,
        title="Event Discussion",
        description=f"Discussion thread for {event.title}",
        thread_type="event",
        event_id=event.id,
        created_by=organizer.id,
    )
    stmt = select(TeamMember.user_id).where(TeamMember.team_id == event.team_id)
    for member_id in session.scalars(stmt).all():
        add_participant(session, thread, member_id)
    send_system_message(
        session,
        thread=thread,
        content=(
            f"Welcome to the discussion thread for {event.title}! Use this space "
            "to coordinate with attendees and organizers."
        ),
    )


def create_event(
    session: Session,
    *,
    user: User | None,
    team_id: str,
    title: str,
    description: str,
    venue: str,
    start_time: datetime,
    end_time: datetime,
    event_type: str = "other",
    timezone: str | None = None,
    max_capacity: int | None = None,
    registration_deadline: datetime | None = None,
    status: str | None = None,
    event_image_id: str | None = None,
    social_image_id: str | None = None,
) -> Event:
    """Create an event in ``team_id`` with its discussion thread."""
    user = require_user(user)
    cleaned_title = _clean_title(title)
    cleaned_description = _clean_description(description)
    cleaned_venue = _clean_venue(venue)
    start_time = to_naive_utc(start_time)
    end_time = to_naive_utc(end_time)
    if start_time is None:
        raise ValidationFailedError("Start time is required")
    if end_time is None:
        raise ValidationFailedError("End time is required")
    _check_window(start_time, end_time)
    _check_future_start(start_time)
    _check_capacity(max_capacity)
    timezone = timezone or settings.default_timezone
    _check_timezone(timezone)
    _check_choice(event_type, EVENT_TYPES, "event type")
    status = status or "draft"
    _check_choice(status, EVENT_STATUSES, "event status")

    if get_membership(session, team_id, user.id) is None:
        raise PermissionDeniedError("You must be a team member to create events")

    now = utcnow()
    event = Event(
        title=cleaned_title,
        slug=unique_slug(
            session,
            Event,
            cleaned_title,
            max_length=EVENT_SLUG_MAX_LENGTH,
            fallback="event",
        ),
        description=cleaned_description,
        venue=cleaned_venue,
        start_time=start_time,
        end_time=end_time,
        timezone=timezone,
        team_id=team_id,
        organizer_id=user.id,
        event_type=event_type,
        max_capacity=max_capacity,
        registration_deadline=to_naive_utc(registration_deadline),
        status=status,
        event_image_id=event_image_id,
        social_image_id=social_image_id,
        registration_count=0,
        created_at=now,
        updated_at=now,
    )
    session.add(event)
    session.flush()
    _open_discussion(session, event, user)
    return event


def create_event_for_current_team(session: Session, *, user: User | None, **fields: Any) -> Event:
    user, team_id = require_team(session, user)
    return create_event(session, user=user, team_id=team_id, **fields)


def update_event(
    session: Session, *, user: User | None, event_id: str, **changes: Any
) -> Event:
    """Apply a partial update; only keys present in ``changes`` are touched."""
    _, event = _require_manage(session, user, event_id)
    unknown = set(changes) - UPDATABLE_FIELDS
    if unknown:
        raise ValidationFailedError(f"Unknown event fields: {', '.join(sorted(unknown))}")

    if "title" in changes:
        title = _clean_title(changes["title"])
        if title != event.title:
            event.slug = unique_slug(
                session,
                Event,
                title,
                exclude_id=event.id,
                max_length=EVENT_SLUG_MAX_LENGTH,
                fallback="event",
            )
        event.title = title
    if "description" in changes:
        event.description = _clean_description(changes["description"])
    if "venue" in changes:
        event.venue = _clean_venue(changes["venue"])
    start_time = event.start_time
    if "start_time" in changes:
        start_time = to_naive_utc(changes["start_time"])
        if start_time is None:
            raise ValidationFailedError("Start time is required")
        _check_future_start(start_time)
        event.start_time = start_time
    if "end_time" in changes:
        end_time = to_naive_utc(changes["end_time"])
        if end_time is None:
            raise ValidationFailedError("End time is required")
        _check_window(start_time, end_time)
        event.end_time = end_time
    elif "start_time" in changes:
        _check_window(start_time, event.end_time)
    if "timezone" in changes:
        _check_timezone(changes["timezone"])
        event.timezone = changes["timezone"]
    if "event_type" in changes:
        _check_choice(changes["event_type"], EVENT_TYPES, "event type")
        event.event_type = changes["event_type"]
    if "max_capacity" in changes:
        max_capacity = changes["max_capacity"]
        _check_capacity(max_capacity)
        if max_capacity is not None and max_capacity < event.registration_count:
            raise ValidationFailedError(
                "Maximum capacity cannot be lower than the current number of "
                f"registrations ({event.registration_count})"
            )
        event.max_capacity = max_capacity
    if "registration_deadline" in changes:
        event.registration_deadline = to_naive_utc(changes["registration_deadline"])
    if "status" in changes:
        _check_choice(changes["status"], EVENT_STATUSES, "event status")
        event.status = changes["status"]
    if "event_image_id" in changes:
        event.event_image_id = changes["event_image_id"]
    if "social_image_id" in changes:
        event.social_image_id = changes["social_image_id"]

    event.updated_at = utcnow()
    session.add(event)
    session.flush()
    return event


def delete_event(session: Session, *, user: User | None, event_id: str) -> None:
    """Delete an event together with its registrations and threads."""
    _, event = _require_manage(session, user, event_id)
    session.delete(event)
    session.flush()


def _visible(session: Session, event: Event | None, user: User | None) -> Event | None:
    if event is None:
        return None
    if event.status != "published" and not can_manage_event(session, event, user):
        return None
    return event


def get_event(session: Session, *, user: User | None, event_id: str) -> Event | None:
    return _visible(session, session.get(Event, event_id), user)


def get_event_by_slug(session: Session, *, user: User | None, slug: str) -> Event | None:
    stmt = select(Event).where(Event.slug == (slug or "").strip().lower())
    return _visible(session, session.scalars(stmt).first(), user)


def get_my_events(session: Session, *, user: User | None) -> list[Event]:
    user = require_user(user)
    team_id = get_current_team_id(session, user)
    if not team_id:
        return []
    stmt = select(Event).where(Event.team_id == team_id).order_by(Event.created_at.desc())
    return list(session.scalars(stmt).all())


def get_team_events(session: Session, *, user: User | None, team_id: str) -> list[Event]:
    user = require_user(user)
    if get_membership(session, team_id, user.id) is None:
        raise PermissionDeniedError("Not a member of this team")
    stmt = select(Event).where(Event.team_id == team_id).order_by(Event.created_at.desc())
    return list(session.scalars(stmt).all())


def published_event_filters(*, now: datetime | None = None, event_type: str | None = None):
    """Filters for the public listing: published and not yet started."""
    filters = [Event.status == "published", Event.start_time > (now or utcnow())]
    if event_type:
        filters.append(Event.event_type == event_type)
    return filters


def list_published_events(
    session: Session,
    *,
    page: int = 1,
    per_page: int = 20,
    event_type: str | None = None,
) -> tuple[list[Event], int]:
    filters = published_event_filters(event_type=event_type)
    total = session.scalar(select(func.count()).select_from(Event).where(*filters)) or 0
    page = max(page, 1)
    stmt = (
        select(Event)
        .where(*filters)
        .order_by(Event.start_time.asc())
        .offset((page - 1) * per_page)
        .limit(per_page)
    )
    return list(session.scalars(stmt).all()), total


def _registration_exists(session: Session, event_id: str, email: str) -> bool:
    stmt = select(EventRegistration.id).where(
        EventRegistration.event_id == event_id,
        EventRegistration.attendee_email == email,
    )
    return session.scalars(stmt).first() is not None


def _claim_seat(session: Session, event_id: str) -> None:
    """Atomically take one seat, or raise ``EventFullError``."""
    stmt = (
        update(Event)
        .where(Event.id == event_id)
        .where(
            or_(
                Event.max_capacity.is_(None),
                Event.registration_count < Event.max_capacity,
            )
        )
        .values(
            registration_count=Event.registration_count + 1,
            updated_at=Event.updated_at,
        )
        .execution_options(synchronize_session=False)
    )
    if session.execute(stmt).rowcount != 1:
        raise EventFullError()


def _release_seat(session: Session, event_id: str) -> None:
    stmt = (
        update(Event)
        .where(Event.id == event_id, Event.registration_count > 0)
        .values(
            registration_count=Event.registration_count - 1,
            updated_at=Event.updated_at,
        )
        .execution_options(synchronize_session=False)
    )
    session.execute(stmt)


def register_for_event(
    session: Session,
    *,
    event_id: str,
    attendee_name: str,
    attendee_email: str,
    attendee_phone: str | None = None,
) -> EventRegistration:
    name = (attendee_name or "").strip()
    if len(name) < 2:
        raise ValidationFailedError("Name must be at least 2 characters long")
    email = normalize_email(attendee_email)
    if not is_valid_email(email):
        raise ValidationFailedError("Please provide a valid email address")

    event = _ensure_event(session, event_id)
    if event.status != "published":
        raise ValidationFailedError("This event is not accepting registrations")
    now = utcnow()
    if event.start_time <= now:
        raise ValidationFailedError("Cannot register for events that have already started")
    if event.registration_deadline and event.registration_deadline <= now:
        raise ValidationFailedError("Registration deadline has passed")
    if _registration_exists(session, event.id, email):
        raise ConflictError(DUPLICATE_REGISTRATION)

    # Seat claim and insert share a savepoint so a duplicate also returns the seat.
    try:
        with session.begin_nested():
            _claim_seat(session, event.id)
            registration = EventRegistration(
                event_id=event.id,
                attendee_name=name,
                attendee_email=email,
                attendee_phone=(attendee_phone or "").strip() or None,
                registered_at=now,
                confirmation_sent=False,
            )
            session.add(registration)
            session.flush()
    except IntegrityError as exc:
        raise ConflictError(DUPLICATE_REGISTRATION) from exc
    session.expire(event, ["registration_count", "registrations"])
    return registration


def get_event_registrations(
    session: Session, *, user: User | None, event_id: str
) -> list[EventRegistration]:
    _, event = _require_manage(session, user, event_id)
    stmt = (
        select(EventRegistration)
        .where(EventRegistration.event_id == event.id)
        .order_by(EventRegistration.registered_at.desc())
    )
    return list(session.scalars(stmt).all())


def get_event_registration_count(session: Session, *, event_id: str) -> int:
    return (
        session.scalar(
            select(func.count())
            .select_from(EventRegistration)
            .where(EventRegistration.event_id == event_id)
        )
        or 0
    )


def remove_registration(
    session: Session, *, user: User | None, registration_id: str
) -> None:
    user = require_user(user)
    registration = session.get(EventRegistration, registration_id)
    if registration is None:
        raise NotFoundError("Registration not found")
    _, event = _require_manage(session, user, registration.event_id)
    session.delete(registration)
    session.flush()
    _release_seat(session, event.id)
    session.expire(event, ["registration_count", "registrations"])
