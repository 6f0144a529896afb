from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select

from eventhub.errors import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationFailedError,
)
from eventhub.events import register_for_event
from eventhub.messages import send_message
from eventhub.models import Thread, ThreadMessage, ThreadParticipant
from eventhub.teams import accept_invitation, invite_by_email
from eventhub.threads import (
    add_user_to_thread,
    archive_thread,
    create_ai_thread,
    create_event_thread,
    create_team_thread,
    create_team_thread_for_current_team,
    get_my_team_threads,
    get_participation,
    get_threads_for_event,
    get_threads_for_team,
    mark_thread_as_read,
)
from eventhub.utils import utcnow


def _join(session, owner, team, user, role="member"):
    invitation = invite_by_email(
        session, user=owner, team_id=team.id, email=user.email, role=role
    )
    accept_invitation(session, user=user, token=invitation.token)


def _participants(session, thread):
    stmt = select(ThreadParticipant.user_id, ThreadParticipant.role).where(
        ThreadParticipant.thread_id == thread.id
    )
    return dict(session.execute(stmt).all())


def test_team_thread_includes_all_members(session, owner, team, make_user):
    member = make_user("member@example.com", "Mia")
    _join(session, owner, team, member)

    thread = create_team_thread(
        session, user=member, team_id=team.id, title="  Set list  ", description="Songs"
    )

    assert thread.title == "Set list"
    assert thread.thread_type == "team"
    assert _participants(session, thread) == {member.id: "admin", owner.id: "participant"}


def test_team_thread_validation(session, owner, team, make_user):
    with pytest.raises(ValidationFailedError, match="Thread title is required"):
        create_team_thread(session, user=owner, team_id=team.id, title="  ")
    outsider = make_user("outsider@example.com", "Otto")
    with pytest.raises(PermissionDeniedError, match="Not a team member"):
        create_team_thread(session, user=outsider, team_id=team.id, title="Sneaky")
    with pytest.raises(ValidationFailedError, match="No team selected"):
        create_team_thread_for_current_team(session, user=outsider, title="Sneaky")


def test_current_team_thread(session, owner, team):
    thread = create_team_thread_for_current_team(session, user=owner, title="Logistics")
    assert thread.team_id == team.id


def test_event_thread_adds_organizer(session, owner, team, make_user, make_event):
    member = make_user("member@example.com", "Mia")
    _join(session, owner, team, member)
    event = make_event(owner, team)

    thread = create_event_thread(session, user=member, event_id=event.id, title="Carpool")

    assert thread.event_id == event.id
    assert _participants(session, thread) == {member.id: "admin", owner.id: "admin"}

    outsider = make_user("outsider@example.com", "Otto")
    with pytest.raises(PermissionDeniedError, match="Not authorized to create event thread"):
        create_event_thread(session, user=outsider, event_id=event.id, title="Nope")
    with pytest.raises(NotFoundError, match="Event not found"):
        create_event_thread(session, user=member, event_id="missing", title="Nope")


def test_ai_thread(session, owner, team, make_user, make_event):
    thread = create_ai_thread(
        session, user=owner, title="Plan with AI", ai_agent_name="Planner", team_id=team.id
    )
    assert thread.thread_type == "ai"
    assert thread.ai_agent_name == "Planner"
    assert thread.description == "AI conversation with Planner"
    assert _participants(session, thread) == {owner.id: "admin"}

    event = make_event(owner, team)
    outsider = make_user("outsider@example.com", "Otto")
    with pytest.raises(PermissionDeniedError, match="Not a team member"):
        create_ai_thread(
            session, user=outsider, title="AI", ai_agent_name="Bot", team_id=team.id
        )
    with pytest.raises(PermissionDeniedError, match="AI thread for this event"):
        create_ai_thread(
            session, user=outsider, title="AI", ai_agent_name="Bot", event_id=event.id
        )


def test_my_team_threads_skip_archived_and_count_unread(session, owner, team, make_user):
    member = make_user("member@example.com", "Mia")
    _join(session, owner, team, member)
    general = session.scalars(select(Thread).where(Thread.team_id == team.id)).one()
    archived = create_team_thread(session, user=owner, team_id=team.id, title="Old news")
    archive_thread(session, user=owner, thread_id=archived.id)

    welcome = session.scalars(
        select(ThreadMessage).where(ThreadMessage.thread_id == general.id)
    ).one()
    welcome.created_at = utcnow() - timedelta(hours=2)
    participation = get_participation(session, general.id, member.id)
    participation.last_read_at = utcnow() - timedelta(hours=1)
    session.flush()
    send_message(session, user=owner, thread_id=general.id, content="Soundcheck at 6")

    overviews, total = get_my_team_threads(session, user=member)

    assert total == 1
    assert [o.thread.id for o in overviews] == [general.id]
    assert overviews[0].message_count == 2
    assert overviews[0].unread_count == 1
    assert overviews[0].role == "participant"

    mark_thread_as_read(session, user=member, thread_id=general.id)
    overviews, _ = get_my_team_threads(session, user=member)
    assert overviews[0].unread_count == 0


def test_my_team_threads_without_team(session, make_user):
    loner = make_user("loner@example.com", "Lou")
    assert get_my_team_threads(session, user=loner) == ([], 0)


def test_threads_for_team_include_event_threads(session, owner, team, make_user, make_event):
    event = make_event(owner, team)

    overviews, total = get_threads_for_team(session, user=owner, team_id=team.id)

    assert total == 2
    assert {o.thread.title for o in overviews} == {"General Discussion", "Event Discussion"}
    assert all(o.role == "admin" for o in overviews)
    outsider = make_user("outsider@example.com", "Otto")
    with pytest.raises(PermissionDeniedError):
        get_threads_for_team(session, user=outsider, team_id=team.id)

    overviews, total = get_threads_for_team(
        session, user=owner, team_id=team.id, page=2, per_page=1
    )
    assert total == 2
    assert len(overviews) == 1


def test_registered_attendees_can_view_event_threads(session, owner, team, make_user, make_event):
    event = make_event(owner, team)
    attendee = make_user("attendee@example.com", "Ari")
    stranger = make_user("stranger@example.com", "Sam")
    register_for_event(
        session,
        event_id=event.id,
        attendee_name="Ari",
        attendee_email="Attendee@example.com",
    )

    overviews, total = get_threads_for_event(session, user=attendee, event_id=event.id)

    assert total == 1
    assert overviews[0].thread.title == "Event Discussion"
    assert overviews[0].role is None
    with pytest.raises(PermissionDeniedError, match="Not authorized to view event threads"):
        get_threads_for_event(session, user=stranger, event_id=event.id)


def test_add_user_to_thread(session, owner, team, make_user):
    member = make_user("member@example.com", "Mia")
    guest = make_user("guest@example.com", "Gus")
    _join(session, owner, team, member)
    thread = create_team_thread(session, user=owner, team_id=team.id, title="Backstage")

    with pytest.raises(PermissionDeniedError, match="Not authorized to add users"):
        add_user_to_thread(session, user=member, thread_id=thread.id, user_id=guest.id)
    with pytest.raises(ValidationFailedError, match="Invalid participant role"):
        add_user_to_thread(
            session, user=owner, thread_id=thread.id, user_id=guest.id, role="owner"
        )
    with pytest.raises(NotFoundError, match="User not found"):
        add_user_to_thread(session, user=owner, thread_id=thread.id, user_id="missing")
    with pytest.raises(ConflictError, match="already a participant"):
        add_user_to_thread(session, user=owner, thread_id=thread.id, user_id=member.id)

    added = add_user_to_thread(
        session, user=owner, thread_id=thread.id, user_id=guest.id, role="admin"
    )
    assert added.role == "admin"
    with pytest.raises(NotFoundError, match="Thread not found"):
        add_user_to_thread(session, user=owner, thread_id="missing", user_id=guest.id)


def test_archive_requires_admin(session, owner, team, make_user):
    member = make_user("member@example.com", "Mia")
    _join(session, owner, team, member)
    thread = create_team_thread(session, user=owner, team_id=team.id, title="Backstage")

    with pytest.raises(PermissionDeniedError, match="Not authorized to archive"):
        archive_thread(session, user=member, thread_id=thread.id)
    assert archive_thread(session, user=owner, thread_id=thread.id).is_archived is True


def test_mark_read_requires_participation(session, owner, team, make_user):
    general = session.scalars(select(Thread).where(Thread.team_id == team.id)).one()
    outsider = make_user("outsider@example.com", "Otto")
    with pytest.raises(PermissionDeniedError, match="Not a participant"):
        mark_thread_as_read(session, user=outsider, thread_id=general.id)

    participation = mark_thread_as_read(session, user=owner, thread_id=general.id)
    assert participation.last_read_at is not None
