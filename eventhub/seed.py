"""Development helpers for populating fake teams and events."""

from __future__ import annotations

import random
from datetime import datetime, timedelta

from faker import Faker
from sqlalchemy.orm import Session

from .database import get_session
from .emails import OUTBOX_KEY
from .errors import ConflictError, EventFullError
from .events import create_event, register_for_event
from .models import EVENT_TYPES, Event, Team, User
from .storage import init_db
from .teams import accept_invitation, create_team, invite_by_email
from .utils import utcnow

_team_suffixes = [
    "Collective",
    "Arts Society",
    "Music Club",
    "Workshop Crew",
    "Gallery",
    "Ensemble",
    "Studio",
]
_event_titles = {
    "music": ["Live Session", "Open Jam", "Album Release"],
    "art": ["Open Studio", "Sketch Night", "Mural Day"],
    "workshop": ["Hands-on Workshop", "Masterclass", "Bootcamp"],
    "performance": ["Showcase", "Stand-up Night", "Dance Evening"],
    "exhibition": ["Vernissage", "Exhibition Opening", "Pop-up Show"],
    "other": ["Meetup", "Social", "Summer Party"],
}


def seed_fake_data(
    *,
    team_count: int = 3,
    members_per_team: int = 4,
    max_events_per_team: int = 3,
    max_registrations_per_event: int = 5,
) -> dict[str, int]:
    """Populate the database with synthetic teams, members and events."""
    if team_count < 0:
        raise ValueError("team_count must be >= 0")
    if members_per_team < 0:
        raise ValueError("members_per_team must be >= 0")
    if max_events_per_team < 1:
        raise ValueError("max_events_per_team must be >= 1")
    if max_registrations_per_event < 0:
        raise ValueError("max_registrations_per_event must be >= 0")

    init_db()
    fake = Faker()
    stats = {"teams": 0, "members": 0, "events": 0, "registrations": 0}

    with get_session() as session:
        for _ in range(team_count):
            owner = _create_user(session, fake)
            team = _create_team(session, fake, owner)
            stats["teams"] += 1
            for _ in range(members_per_team):
                _add_member(session, fake, owner, team)
                stats["members"] += 1
            for _ in range(random.randint(1, max_events_per_team)):
                event = _create_event(session, fake, owner, team)
                stats["events"] += 1
                stats["registrations"] += _create_registrations(
                    session, fake, event, max_registrations_per_event
                )

    return stats


def _create_user(session: Session, fake: Faker) -> User:
    user = User(
        name=fake.name_nonbinary(),
        email=fake.unique.email().lower(),
        email_verified_at=utcnow(),
        is_anonymous=False,
        created_at=utcnow(),
    )
    session.add(user)
    session.flush()
    return user


def _create_team(session: Session, fake: Faker, owner: User) -> Team:
    for _ in range(20):
        name = f"{fake.city()} {random.choice(_team_suffixes)}"
        try:
            with session.begin_nested():
                return create_team(
                    session,
                    user=owner,
                    name=name,
                    description=fake.catch_phrase(),
                )
        except ConflictError:
            continue
    raise RuntimeError("Failed to create a unique team name")


def _add_member(session: Session, fake: Faker, owner: User, team: Team) -> None:
    member = _create_user(session, fake)
    role = random.choice(["member", "member", "member", "admin"])
    invitation = invite_by_email(
        session, user=owner, team_id=team.id, email=member.email, role=role
    )
    accept_invitation(session, user=member, token=invitation.token)
    # Seeded members accept straight away; never email fake addresses.
    session.info.pop(OUTBOX_KEY, None)


def _random_start_time() -> datetime:
    now = utcnow()
    day_offset = random.randint(1, 45)
    minute_offset = random.randint(0, 23 * 60)
    return (now + timedelta(days=day_offset, minutes=minute_offset)).replace(
        second=0, microsecond=0
    )


def _create_event(session: Session, fake: Faker, owner: User, team: Team) -> Event:
    event_type = random.choice(EVENT_TYPES)
    start_time = _random_start_time()
    end_time = start_time + timedelta(hours=random.randint(1, 6))
    deadline = start_time - timedelta(hours=random.randint(1, 24))
    return create_event(
        session,
        user=owner,
        team_id=team.id,
        title=f"{fake.city()} {random.choice(_event_titles[event_type])}",
        description="\n\n".join(fake.paragraphs(nb=2)),
        venue=fake.address().replace("\n", ", "),
        start_time=start_time,
        end_time=end_time,
        event_type=event_type,
        max_capacity=random.choice([None, 10, 25, 50]),
        registration_deadline=deadline if deadline > utcnow() else None,
        status=random.choice(["published", "published", "published", "draft"]),
    )


def _create_registrations(
    session: Session, fake: Faker, event: Event, max_registrations: int
) -> int:
    if max_registrations <= 0 or event.status != "published":
        return 0
    created = 0
    for _ in range(random.randint(0, max_registrations)):
        try:
            register_for_event(
                session,
                event_id=event.id,
                attendee_name=fake.name_nonbinary(),
                attendee_email=fake.unique.email(),
                attendee_phone=fake.phone_number() if random.random() < 0.4 else None,
            )
        except EventFullError:
            break
        created += 1
    return created
