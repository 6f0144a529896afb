"""Session tokens and team role checks."""

from __future__ import annotations

import secrets

from sqlalchemy import select
from sqlalchemy.orm import Session

from .errors import NotAuthenticatedError, PermissionDeniedError, ValidationFailedError
from .models import AuthSession, TeamMember, User
from .utils import utcnow

ROLE_RANK = {"member": 1, "admin": 2, "owner": 3}
MANAGER_ROLES = {"owner", "admin"}


def create_session(session: Session, user: User) -> AuthSession:
    auth_session = AuthSession(
        token=secrets.token_urlsafe(32),
        user=user,
        created_at=utcnow(),
        last_used_at=utcnow(),
    )
    session.add(auth_session)
    session.flush()
    return auth_session


def resolve_session(session: Session, token: str | None) -> AuthSession | None:
    if not token:
        return None
    stmt = select(AuthSession).where(AuthSession.token == token)
    return session.scalars(stmt).first()


def revoke_session(session: Session, token: str | None) -> bool:
    auth_session = resolve_session(session, token)
    if not auth_session:
        return False
    session.delete(auth_session)
    session.flush()
    return True


def get_current_user(session: Session, token: str | None) -> User | None:
    """Return the user behind a bearer token, touching the session."""
    auth_session = resolve_session(session, token)
    if not auth_session:
        return None
    auth_session.last_used_at = utcnow()
    return auth_session.user


def require_user(user: User | None) -> User:
    if user is None:
        raise NotAuthenticatedError("Not authenticated")
    return user


def get_membership(session: Session, team_id: str | None, user_id: str) -> TeamMember | None:
    if not team_id:
        return None
    stmt = select(TeamMember).where(
        TeamMember.team_id == team_id, TeamMember.user_id == user_id
    )
    return session.scalars(stmt).first()


def get_current_team_id(session: Session, user: User) -> str | None:
    """Return the user's selected team, clearing it if membership was lost."""
    if not user.current_team_id:
        return None
    if get_membership(session, user.current_team_id, user.id) is None:
        user.current_team_id = None
        session.add(user)
        session.flush()
        return None
    return user.current_team_id


def require_team(session: Session, user: User | None) -> tuple[User, str]:
    user = require_user(user)
    team_id = get_current_team_id(session, user)
    if not team_id:
        raise ValidationFailedError("No team selected. Please select a team first.")
    return user, team_id


def role_allows(role: str | None, required_role: str) -> bool:
    if role is None:
        return False
    return ROLE_RANK.get(role, 0) >= ROLE_RANK[required_role]


def has_team_permission(
    session: Session, user_id: str, team_id: str, required_role: str = "member"
) -> bool:
    membership = get_membership(session, team_id, user_id)
    return membership is not None and role_allows(membership.role, required_role)


def require_team_permission(
    session: Session, user_id: str, team_id: str, required_role: str = "member"
) -> TeamMember:
    membership = get_membership(session, team_id, user_id)
    if membership is None:
        raise PermissionDeniedError("Not a member of the selected team")
    if not role_allows(membership.role, required_role):
        raise PermissionDeniedError(
            f"Insufficient permissions. {required_role} role required."
        )
    return membership


def require_manager(
    session: Session, user_id: str, team_id: str, message: str
) -> TeamMember:
    """Require an owner or admin membership, raising ``message`` otherwise."""
    membership = get_membership(session, team_id, user_id)
    if membership is None or membership.role not in MANAGER_ROLES:
        raise PermissionDeniedError(message)
    return membership
