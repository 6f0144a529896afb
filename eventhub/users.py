"""User accounts, profiles and the selected team."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .auth import create_session, get_current_team_id, get_membership, require_user
from .errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationFailedError
from .models import AuthSession, Team, User
from .teams import create_default_team
from .utils import is_valid_email, normalize_email, utcnow

_UNSET = object()


@dataclass
class CurrentTeam:
    team: Team
    user_role: str


def get_user_by_email(session: Session, email: str) -> User | None:
    normalized = normalize_email(email)
    if not normalized:
        return None
    stmt = select(User).where(func.lower(User.email) == normalized)
    return session.scalars(stmt).first()


def sign_in_with_email(
    session: Session, *, email: str, name: str | None = None
) -> tuple[User, AuthSession]:
    """Find or create the user for ``email`` and open a session.

    New users get a personal team so they land somewhere useful.
    """
    normalized = normalize_email(email)
    if not is_valid_email(normalized):
        raise ValidationFailedError("Please provide a valid email address")
    user = get_user_by_email(session, normalized)
    if user is None:
        user = User(
            email=normalized,
            name=(name or "").strip() or None,
            email_verified_at=utcnow(),
            is_anonymous=False,
            created_at=utcnow(),
        )
        session.add(user)
        session.flush()
        create_default_team(session, user=user)
    return user, create_session(session, user)


def sign_in_anonymously(session: Session) -> tuple[User, AuthSession]:
    user = User(is_anonymous=True, created_at=utcnow())
    session.add(user)
    session.flush()
    return user, create_session(session, user)


def viewer(user: User | None) -> User | None:
    return user


def get_current_team(session: Session, *, user: User | None) -> CurrentTeam | None:
    if user is None:
        return None
    team_id = get_current_team_id(session, user)
    if not team_id:
        return None
    team = session.get(Team, team_id)
    membership = get_membership(session, team_id, user.id)
    if team is None or membership is None:
        return None
    return CurrentTeam(team=team, user_role=membership.role)


def set_current_team(session: Session, *, user: User | None, team_id: str) -> Team:
    user = require_user(user)
    if not team_id:
        raise ValidationFailedError("Team ID is required")
    team = session.get(Team, team_id)
    if team is None:
        raise NotFoundError("Team not found")
    if get_membership(session, team.id, user.id) is None:
        raise PermissionDeniedError("You are not a member of this team")
    user.current_team_id = team.id
    session.add(user)
    session.flush()
    return team


def clear_current_team(session: Session, *, user: User | None) -> None:
    user = require_user(user)
    user.current_team_id = None
    session.add(user)
    session.flush()


def _optional(value: str | None) -> str | None:
    cleaned = (value or "").strip()
    return cleaned or None


def update_profile(
    session: Session,
    *,
    user: User | None,
    name=_UNSET,
    email=_UNSET,
    phone=_UNSET,
    favorite_color=_UNSET,
) -> User:
    """Update the caller's own profile; omitted fields are left alone."""
    user = require_user(user)
    if name is not _UNSET:
        user.name = _optional(name)
    if email is not _UNSET:
        new_email = normalize_email(email) or None
        if new_email and not is_valid_email(new_email):
            raise ValidationFailedError("Invalid email format")
        if new_email != user.email:
            if new_email:
                other = get_user_by_email(session, new_email)
                if other is not None and other.id != user.id:
                    raise ConflictError("Email address is already in use")
            user.email = new_email
            user.email_verified_at = None
    if phone is not _UNSET:
        new_phone = _optional(phone)
        if new_phone != user.phone:
            user.phone = new_phone
            user.phone_verified_at = None
    if favorite_color is not _UNSET:
        user.favorite_color = _optional(favorite_color)
    session.add(user)
    session.flush()
    return user


def update_avatar(session: Session, *, user: User | None, storage_id: str | None) -> User:
    user = require_user(user)
    user.image = _optional(storage_id)
    session.add(user)
    session.flush()
    return user
