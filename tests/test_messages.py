from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select

from eventhub.errors import NotFoundError, PermissionDeniedError, ValidationFailedError
from eventhub.messages import (
    author_name,
    delete_message,
    edit_message,
    get_thread_messages,
    send_message,
)
from eventhub.models import Thread, ThreadMessage
from eventhub.teams import accept_invitation, invite_by_email
from eventhub.threads import archive_thread, create_team_thread


@pytest.fixture()
def general(session, team):
    return session.scalars(select(Thread).where(Thread.team_id == team.id)).one()


@pytest.fixture()
def member(session, owner, team, make_user):
    user = make_user("member@example.com", "Mia")
    invitation = invite_by_email(session, user=owner, team_id=team.id, email=user.email)
    accept_invitation(session, user=user, token=invitation.token)
    return user


def test_send_message_updates_thread(session, owner, general):
    message = send_message(
        session, user=owner, thread_id=general.id, content="  Doors open at 7  "
    )

    assert message.content == "Doors open at 7"
    assert message.message_type == "text"
    assert general.last_message_at == message.created_at
    assert author_name(message) == "Olivia Owner"


def test_send_message_rules(session, owner, team, general, make_user):
    outsider = make_user("outsider@example.com", "Otto")
    with pytest.raises(PermissionDeniedError, match="Not a participant"):
        send_message(session, user=outsider, thread_id=general.id, content="Hi")
    with pytest.raises(ValidationFailedError, match="cannot be empty"):
        send_message(session, user=owner, thread_id=general.id, content="   ")
    with pytest.raises(ValidationFailedError, match="Invalid reply target"):
        send_message(
            session, user=owner, thread_id=general.id, content="Hi", reply_to_id="missing"
        )

    other = create_team_thread(session, user=owner, team_id=team.id, title="Other")
    foreign = send_message(session, user=owner, thread_id=other.id, content="Elsewhere")
    with pytest.raises(ValidationFailedError, match="Invalid reply target"):
        send_message(
            session, user=owner, thread_id=general.id, content="Hi", reply_to_id=foreign.id
        )

    archive_thread(session, user=owner, thread_id=other.id)
    with pytest.raises(ValidationFailedError, match="archived thread"):
        send_message(session, user=owner, thread_id=other.id, content="Still here?")


def test_messages_listed_newest_first_with_replies(session, owner, member, general):
    welcome = session.scalars(
        select(ThreadMessage).where(ThreadMessage.thread_id == general.id)
    ).one()
    first = send_message(session, user=owner, thread_id=general.id, content="First")
    second = send_message(session, user=member, thread_id=general.id, content="Second")
    reply = send_message(
        session, user=member, thread_id=general.id, content="Reply", reply_to_id=first.id
    )
    welcome.created_at = first.created_at - timedelta(seconds=2)
    second.created_at = first.created_at + timedelta(seconds=1)
    reply.created_at = first.created_at + timedelta(seconds=2)
    session.flush()

    messages, total = get_thread_messages(session, user=member, thread_id=general.id)

    assert total == 3
    assert [m.content for m in messages] == ["Second", "First", welcome.content]
    assert [r.id for r in messages[1].replies] == [reply.id]
    assert author_name(messages[2]) == "System"

    page, _ = get_thread_messages(
        session, user=member, thread_id=general.id, page=2, per_page=2
    )
    assert [m.id for m in page] == [welcome.id]


def test_get_messages_requires_participation(session, general, make_user):
    outsider = make_user("outsider@example.com", "Otto")
    with pytest.raises(PermissionDeniedError):
        get_thread_messages(session, user=outsider, thread_id=general.id)


def test_edit_message(session, owner, member, general):
    message = send_message(session, user=member, thread_id=general.id, content="Tpyo")

    with pytest.raises(PermissionDeniedError, match="Not authorized to edit"):
        edit_message(session, user=owner, message_id=message.id, content="Fixed")
    with pytest.raises(ValidationFailedError, match="cannot be empty"):
        edit_message(session, user=member, message_id=message.id, content="")

    edited = edit_message(session, user=member, message_id=message.id, content="Typo")
    assert edited.content == "Typo"
    assert edited.edited_at is not None

    welcome = session.scalars(
        select(ThreadMessage).where(ThreadMessage.message_type == "system")
    ).first()
    with pytest.raises(PermissionDeniedError):
        edit_message(session, user=owner, message_id=welcome.id, content="Changed")
    with pytest.raises(NotFoundError, match="Message not found"):
        edit_message(session, user=owner, message_id="missing", content="Hi")


def test_delete_message_removes_replies(session, owner, member, general):
    parent = send_message(session, user=member, thread_id=general.id, content="Parent")
    send_message(
        session, user=owner, thread_id=general.id, content="Child", reply_to_id=parent.id
    )
    parent_id = parent.id

    delete_message(session, user=member, message_id=parent_id)

    remaining = session.scalars(
        select(ThreadMessage.content).where(ThreadMessage.thread_id == general.id)
    ).all()
    assert "Parent" not in remaining
    assert "Child" not in remaining


def test_delete_message_permissions(session, owner, member, general):
    by_owner = send_message(session, user=owner, thread_id=general.id, content="Owner")
    by_member = send_message(session, user=member, thread_id=general.id, content="Member")

    with pytest.raises(PermissionDeniedError, match="Not authorized to delete"):
        delete_message(session, user=member, message_id=by_owner.id)

    # Thread admins may moderate other people's messages.
    delete_message(session, user=owner, message_id=by_member.id)
    assert session.get(ThreadMessage, by_member.id) is None
