"""Invitation emails delivered through Resend.

Emails are queued on the SQLAlchemy session while a request runs and only
handed to the scheduler once that session's transaction commits. A rolled back
transaction drops its queue, so nobody is invited to a team that was never
saved.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import resend
from jinja2 import Environment, FileSystemLoader, select_autoescape
from sqlalchemy import event
from sqlalchemy.orm import Session

from .config import settings
from .models import TeamInvitation
from .scheduler import run_soon

logger = logging.getLogger("uvicorn.error")

OUTBOX_KEY = "eventhub.pending_emails"
DEFAULT_ACCENT_COLOR = "#2563eb"

_templates = Environment(
    loader=FileSystemLoader(str(Path(__file__).parent / "templates")),
    autoescape=select_autoescape(["html"]),
)


@dataclass(frozen=True)
class InvitationEmail:
    to: str
    team_name: str
    inviter_name: str | None
    role: str
    token: str
    expires_at: datetime
    accent_color: str = DEFAULT_ACCENT_COLOR

    @property
    def invite_url(self) -> str:
        return f"{settings.site_url.rstrip('/')}/invite/{self.token}"

    @property
    def subject(self) -> str:
        return f"You've been invited to join {self.team_name}"


def build_invitation_email(invitation: TeamInvitation) -> InvitationEmail:
    team = invitation.team
    inviter = invitation.inviter
    return InvitationEmail(
        to=invitation.email,
        team_name=team.name,
        inviter_name=(inviter.name or inviter.email) if inviter else None,
        role=invitation.role,
        token=invitation.token,
        expires_at=invitation.expires_at,
        accent_color=team.primary_color or DEFAULT_ACCENT_COLOR,
    )


def render_invitation_email(message: InvitationEmail) -> str:
    template = _templates.get_template("team_invitation.html")
    return template.render(
        team_name=message.team_name,
        inviter_name=message.inviter_name,
        role=message.role,
        role_description="an administrator" if message.role == "admin" else "a member",
        invite_url=message.invite_url,
        accent_color=message.accent_color,
        expires_on=message.expires_at.strftime("%d %B %Y"),
    )


def send_invitation_email(message: InvitationEmail) -> bool:
    """Deliver one invitation. Returns False when delivery was skipped or failed."""
    if not settings.resend_api_key:
        logger.info(
            "Resend API key not configured; skipping invitation email to %s (%s)",
            message.to,
            message.invite_url,
        )
        return False

    resend.api_key = settings.resend_api_key
    params: resend.Emails.SendParams = {
        "from": settings.email_from,
        "to": [message.to],
        "subject": message.subject,
        "html": render_invitation_email(message),
    }
    try:
        response = resend.Emails.send(params)
    except resend.exceptions.ResendError:
        logger.exception("Failed to send invitation email to %s", message.to)
        return False
    logger.info("Sent invitation email to %s (id=%s)", message.to, response["id"])
    return True


def queue_invitation_email(session: Session, invitation: TeamInvitation) -> None:
    session.info.setdefault(OUTBOX_KEY, []).append(build_invitation_email(invitation))


@event.listens_for(Session, "after_commit")
def _dispatch_outbox(session: Session) -> None:
    # Releasing a savepoint also fires after_commit.
    if session.in_nested_transaction():
        return
    for message in session.info.pop(OUTBOX_KEY, None) or []:
        run_soon(send_invitation_email, message)


@event.listens_for(Session, "after_transaction_end")
def _discard_outbox(session: Session, transaction) -> None:
    if transaction.parent is None:
        session.info.pop(OUTBOX_KEY, None)
