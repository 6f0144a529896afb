"""Thread messages: listing, sending, editing and deleting."""

from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .auth import require_user
from .errors import NotFoundError, PermissionDeniedError, ValidationFailedError
from .models import MESSAGE_TYPES, Thread, ThreadMessage, User
from .threads import get_participation
from .utils import utcnow

SYSTEM_AUTHOR_NAMES = {"system": "System", "ai": "AI Assistant"}


def author_name(message: ThreadMessage) -> str | None:
    if message.author is not None:
        return message.author.display_name
    return SYSTEM_AUTHOR_NAMES.get(message.message_type)


def _require_participant(session: Session, thread_id: str, user: User):
    participation = get_participation(session, thread_id, user.id)
    if not participation:
        raise PermissionDeniedError("Not a participant in this thread")
    return participation


def get_thread_messages(
    session: Session,
    *,
    user: User | None,
    thread_id: str,
    page: int = 1,
    per_page: int = 50,
) -> tuple[list[ThreadMessage], int]:
    """Top-level messages newest first; each keeps its replies oldest first."""
    user = require_user(user)
    _require_participant(session, thread_id, user)
    filters = [
        ThreadMessage.thread_id == thread_id,
        ThreadMessage.reply_to_id.is_(None),
    ]
    total = (
        session.scalar(select(func.count()).select_from(ThreadMessage).where(*filters))
        or 0
    )
    page = max(page, 1)
    stmt = (
        select(ThreadMessage)
        .where(*filters)
        .order_by(ThreadMessage.created_at.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
    )
    return list(session.scalars(stmt).all()), total


def _touch_thread(thread: Thread, message: ThreadMessage) -> None:
    thread.last_message_at = message.created_at


def send_message(
    session: Session,
    *,
    user: User | None,
    thread_id: str,
    content: str,
    reply_to_id: str | None = None,
) -> ThreadMessage:
    user = require_user(user)
    _require_participant(session, thread_id, user)
    thread = session.get(Thread, thread_id)
    if not thread:
        raise NotFoundError("Thread not found")
    if thread.is_archived:
        raise ValidationFailedError("Cannot send messages to archived thread")
    body = (content or "").strip()
    if not body:
        raise ValidationFailedError("Message content cannot be empty")
    if reply_to_id:
        parent = session.get(ThreadMessage, reply_to_id)
        if not parent or parent.thread_id != thread.id:
            raise ValidationFailedError("Invalid reply target")
    message = ThreadMessage(
        thread=thread,
        author_id=user.id,
        content=body,
        message_type="text",
        reply_to_id=reply_to_id,
        created_at=utcnow(),
    )
    session.add(message)
    _touch_thread(thread, message)
    session.flush()
    return message


def send_system_message(
    session: Session, *, thread: Thread, content: str, message_type: str = "system"
) -> ThreadMessage:
    """Post an author-less message such as a welcome note."""
    if message_type not in MESSAGE_TYPES or message_type == "text":
        raise ValueError(f"Unsupported system message type: {message_type}")
    message = ThreadMessage(
        thread=thread,
        author_id=None,
        content=content,
        message_type=message_type,
        created_at=utcnow(),
    )
    session.add(message)
    _touch_thread(thread, message)
    session.flush()
    return message


def _ensure_message(session: Session, message_id: str) -> ThreadMessage:
    message = session.get(ThreadMessage, message_id)
    if not message:
        raise NotFoundError("Message not found")
    return message


def edit_message(
    session: Session, *, user: User | None, message_id: str, content: str
) -> ThreadMessage:
    user = require_user(user)
    message = _ensure_message(session, message_id)
    if message.author_id != user.id:
        raise PermissionDeniedError("Not authorized to edit this message")
    if message.message_type != "text":
        raise ValidationFailedError("Cannot edit system or AI messages")
    body = (content or "").strip()
    if not body:
        raise ValidationFailedError("Message content cannot be empty")
    message.content = body
    message.edited_at = utcnow()
    session.add(message)
    session.flush()
    return message


def delete_message(session: Session, *, user: User | None, message_id: str) -> None:
    """Delete a message and its replies (author or thread admin only)."""
    user = require_user(user)
    message = _ensure_message(session, message_id)
    if message.author_id != user.id:
        participation = get_participation(session, message.thread_id, user.id)
        if not participation or participation.role != "admin":
            raise PermissionDeniedError("Not authorized to delete this message")
    session.delete(message)
    session.flush()
