"""Teams, memberships and invitations."""

from __future__ import annotations

import secrets
from dataclasses import dataclass

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from .auth import (
    ROLE_RANK,
    get_current_team_id,
    get_membership,
    require_manager,
    require_user,
)
from .config import settings
from .emails import queue_invitation_email
from .errors import (
    ConflictError,
    InvitationExpiredError,
    NotFoundError,
    PermissionDeniedError,
    ValidationFailedError,
)
from .messages import send_system_message
from .models import (
    INVITABLE_ROLES,
    Team,
    TeamInvitation,
    TeamMember,
    Thread,
    ThreadParticipant,
    User,
)
from .threads import add_participant, create_thread
from .utils import (
    is_valid_email,
    is_valid_hex_color,
    normalize_email,
    slugify,
    unique_slug,
    utcnow,
)

DEFAULT_TEAM_NAME = "My Team"
TEAM_NAME_TAKEN = "Team name already exists. Please choose a different name."


@dataclass
class TeamOverview:
    team: Team
    role: str
    member_count: int
    is_current_team: bool


def _team_slug_taken(session: Session, slug: str, *, exclude_id: str | None = None) -> bool:
    stmt = select(Team.id).where(Team.slug == slug)
    if exclude_id is not None:
        stmt = stmt.where(Team.id != exclude_id)
    return session.scalars(stmt).first() is not None


def _add_member(session: Session, team: Team, user_id: str, role: str) -> TeamMember:
    member = TeamMember(team=team, user_id=user_id, role=role, joined_at=utcnow())
    session.add(member)
    session.flush()
    return member


def _bootstrap_team(session: Session, team: Team, owner: User) -> Team:
    """Owner membership, general thread and welcome message for a new team."""
    session.add(team)
    session.flush()
    _add_member(session, team, owner.id, "owner")
    thread = create_thread(
        session,
        title="General Discussion",
        description="Team-wide discussions and announcements",
        thread_type="team",
        team_id=team.id,
        created_by=owner.id,
    )
    send_system_message(
        session,
        thread=thread,
        content=f"Welcome to {team.name}! This is your team's general discussion thread.",
    )
    owner.current_team_id = team.id
    session.add(owner)
    session.flush()
    return team


def create_team(
    session: Session,
    *,
    user: User | None,
    name: str,
    description: str | None = None,
) -> Team:
    user = require_user(user)
    cleaned_name = (name or "").strip()
    if not cleaned_name:
        raise ValidationFailedError("Team name is required")
    slug = slugify(cleaned_name)
    if not slug:
        raise ValidationFailedError("Team name must contain letters or numbers")
    if _team_slug_taken(session, slug):
        raise ConflictError(TEAM_NAME_TAKEN)
    team = Team(
        name=cleaned_name,
        slug=slug,
        description=(description or "").strip() or None,
        owner_id=user.id,
        created_at=utcnow(),
    )
    return _bootstrap_team(session, team, user)


def create_default_team(session: Session, *, user: User) -> Team:
    """Give a freshly signed-up user a personal team."""
    team = Team(
        name=DEFAULT_TEAM_NAME,
        slug=unique_slug(session, Team, DEFAULT_TEAM_NAME),
        owner_id=user.id,
        created_at=utcnow(),
    )
    return _bootstrap_team(session, team, user)


def get_my_teams(session: Session, *, user: User | None) -> list[TeamOverview]:
    user = require_user(user)
    current_team_id = user.current_team_id
    member_counts = (
        select(TeamMember.team_id, func.count().label("member_count"))
        .group_by(TeamMember.team_id)
        .subquery()
    )
    stmt = (
        select(Team, TeamMember.role, member_counts.c.member_count)
        .join(TeamMember, TeamMember.team_id == Team.id)
        .join(member_counts, member_counts.c.team_id == Team.id)
        .where(TeamMember.user_id == user.id)
        .order_by(TeamMember.joined_at.asc())
    )
    return [
        TeamOverview(
            team=team,
            role=role,
            member_count=member_count,
            is_current_team=team.id == current_team_id,
        )
        for team, role, member_count in session.execute(stmt).all()
    ]


def get_team(session: Session, *, user: User | None, team_id: str) -> Team | None:
    """Return the team, or None when the caller is not a member."""
    user = require_user(user)
    if get_membership(session, team_id, user.id) is None:
        return None
    return session.get(Team, team_id)


def _ensure_team(session: Session, team_id: str) -> Team:
    team = session.get(Team, team_id)
    if not team:
        raise NotFoundError("Team not found")
    return team


def update_team(
    session: Session,
    *,
    user: User | None,
    team_id: str,
    name: str | None = None,
    description: str | None = None,
) -> Team:
    user = require_user(user)
    require_manager(session, user.id, team_id, "Insufficient permissions to update team")
    team = _ensure_team(session, team_id)
    if name is not None:
        cleaned_name = name.strip()
        if not cleaned_name:
            raise ValidationFailedError("Team name is required")
        if cleaned_name != team.name:
            slug = slugify(cleaned_name)
            if not slug:
                raise ValidationFailedError("Team name must contain letters or numbers")
            if _team_slug_taken(session, slug, exclude_id=team.id):
                raise ConflictError(TEAM_NAME_TAKEN)
            team.name = cleaned_name
            team.slug = slug
    if description is not None:
        team.description = description.strip() or None
    session.add(team)
    session.flush()
    return team


def update_team_branding(
    session: Session,
    *,
    user: User | None,
    team_id: str,
    primary_color: str | None = None,
    logo: str | None = None,
) -> Team:
    user = require_user(user)
    require_manager(
        session, user.id, team_id, "Insufficient permissions to update team branding"
    )
    team = _ensure_team(session, team_id)
    if primary_color is not None:
        if not is_valid_hex_color(primary_color):
            raise ValidationFailedError(
                "Primary color must be a valid hex color (e.g., #3b82f6)"
            )
        team.primary_color = primary_color
    if logo is not None:
        team.logo = logo or None
    session.add(team)
    session.flush()
    return team


def get_team_members(
    session: Session, *, user: User | None, team_id: str
) -> list[TeamMember]:
    user = require_user(user)
    if get_membership(session, team_id, user.id) is None:
        raise PermissionDeniedError("Not a member of this team")
    rank = case(ROLE_RANK, value=TeamMember.role, else_=0)
    stmt = (
        select(TeamMember)
        .where(TeamMember.team_id == team_id)
        .order_by(rank.desc(), TeamMember.joined_at.asc())
    )
    return list(session.scalars(stmt).all())


def _detach_member(session: Session, membership: TeamMember) -> None:
    """Drop a membership plus everything that hangs off it inside the team."""
    team_id = membership.team_id
    user_id = membership.user_id
    team_threads = select(Thread.id).where(Thread.team_id == team_id)
    stmt = select(ThreadParticipant).where(
        ThreadParticipant.user_id == user_id,
        ThreadParticipant.thread_id.in_(team_threads),
    )
    for participation in session.scalars(stmt).all():
        session.delete(participation)
    member_user = session.get(User, user_id)
    if member_user and member_user.current_team_id == team_id:
        member_user.current_team_id = None
        session.add(member_user)
    session.delete(membership)
    session.flush()


def remove_member(
    session: Session, *, user: User | None, team_id: str, member_user_id: str
) -> None:
    user = require_user(user)
    actor = require_manager(
        session, user.id, team_id, "Insufficient permissions to remove team members"
    )
    target = get_membership(session, team_id, member_user_id)
    if target is None:
        raise NotFoundError("User is not a member of this team")
    if target.role == "owner":
        raise PermissionDeniedError("Cannot remove team owner")
    if actor.role == "admin" and target.role == "admin":
        raise PermissionDeniedError("Admins cannot remove other admins")
    _detach_member(session, target)


def leave_team(session: Session, *, user: User | None, team_id: str) -> None:
    user = require_user(user)
    membership = get_membership(session, team_id, user.id)
    if membership is None:
        raise NotFoundError("Not a member of this team")
    if membership.role == "owner":
        raise PermissionDeniedError(
            "Team owners cannot leave their team. "
            "Transfer ownership first or delete the team."
        )
    _detach_member(session, membership)


def _pending_invitation(session: Session, team_id: str, email: str) -> TeamInvitation | None:
    stmt = select(TeamInvitation).where(
        TeamInvitation.team_id == team_id,
        TeamInvitation.email == email,
        TeamInvitation.status == "pending",
    )
    return session.scalars(stmt).first()


def invite_by_email(
    session: Session,
    *,
    user: User | None,
    team_id: str,
    email: str,
    role: str = "member",
) -> TeamInvitation:
    """Create a pending invitation and queue its email for after commit."""
    user = require_user(user)
    require_manager(
        session, user.id, team_id, "Insufficient permissions to invite team members"
    )
    team = _ensure_team(session, team_id)
    if role not in INVITABLE_ROLES:
        raise ValidationFailedError("Role must be admin or member")
    normalized = normalize_email(email)
    if not is_valid_email(normalized):
        raise ValidationFailedError("Please provide a valid email address")

    existing_user = session.scalars(
        select(User).where(func.lower(User.email) == normalized)
    ).first()
    if existing_user and get_membership(session, team.id, existing_user.id):
        raise ConflictError("User is already a member of this team")

    pending = _pending_invitation(session, team.id, normalized)
    if pending and not pending.is_expired():
        raise ConflictError("Invitation already sent to this email")
    if pending:
        pending.status = "expired"
        session.add(pending)

    now = utcnow()
    invitation = TeamInvitation(
        team=team,
        invited_by=user.id,
        inviter=user,
        email=normalized,
        token=secrets.token_urlsafe(32),
        role=role,
        status="pending",
        expires_at=now + settings.invitation_ttl,
        created_at=now,
    )
    session.add(invitation)
    session.flush()
    queue_invitation_email(session, invitation)
    return invitation


def get_invitation_by_token(session: Session, token: str) -> TeamInvitation | None:
    if not token:
        return None
    stmt = select(TeamInvitation).where(TeamInvitation.token == token)
    return session.scalars(stmt).first()


def accept_invitation(session: Session, *, user: User | None, token: str) -> Team:
    """Join the invitation's team as the invited user.

    An invitation past its expiry is flagged ``expired`` before
    ``InvitationExpiredError`` is raised; callers commit that status.
    """
    user = require_user(user)
    invitation = get_invitation_by_token(session, token)
    if invitation is None:
        raise NotFoundError("Invitation not found")
    if invitation.status != "pending":
        raise ValidationFailedError("This invitation has already been used or expired")
    if invitation.is_expired():
        invitation.status = "expired"
        session.add(invitation)
        session.flush()
        raise InvitationExpiredError()
    if normalize_email(user.email) != invitation.email:
        raise PermissionDeniedError("This invitation was sent to a different email address")

    team = invitation.team
    if get_membership(session, team.id, user.id) is None:
        _add_member(session, team, user.id, invitation.role)
        open_threads = select(Thread).where(
            Thread.team_id == team.id, Thread.is_archived.is_(False)
        )
        for thread in session.scalars(open_threads).all():
            add_participant(session, thread, user.id)

    invitation.status = "accepted"
    session.add(invitation)
    if not get_current_team_id(session, user):
        user.current_team_id = team.id
        session.add(user)
    session.flush()
    return team


def get_pending_invitations(
    session: Session, *, user: User | None, team_id: str
) -> list[TeamInvitation]:
    user = require_user(user)
    if get_membership(session, team_id, user.id) is None:
        raise PermissionDeniedError("Not a member of this team")
    stmt = (
        select(TeamInvitation)
        .where(
            TeamInvitation.team_id == team_id,
            TeamInvitation.status == "pending",
            TeamInvitation.expires_at >= utcnow(),
        )
        .order_by(TeamInvitation.created_at.desc())
    )
    return list(session.scalars(stmt).all())


def cancel_invitation(session: Session, *, user: User | None, invitation_id: str) -> None:
    user = require_user(user)
    invitation = session.get(TeamInvitation, invitation_id)
    if invitation is None:
        raise NotFoundError("Invitation not found")
    require_manager(
        session,
        user.id,
        invitation.team_id,
        "Insufficient permissions to cancel invitations",
    )
    if invitation.status != "pending":
        raise ValidationFailedError("Can only cancel pending invitations")
    session.delete(invitation)
    session.flush()
