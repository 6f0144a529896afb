"""FastAPI application for EventHub."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from importlib.metadata import PackageNotFoundError, version as pkg_version
from pathlib import Path
import tomllib

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from .auth import get_current_user, revoke_session
from .config import settings
from .database import SessionLocal
from .errors import EventFullError, EventHubError, InvitationExpiredError, NotFoundError
from .events import (
    can_manage_event,
    create_event,
    create_event_for_current_team,
    delete_event,
    get_event,
    get_event_by_slug,
    get_event_registration_count,
    get_event_registrations,
    get_my_events,
    get_team_events,
    list_published_events,
    register_for_event,
    remove_registration,
    update_event,
)
from .messages import (
    author_name,
    delete_message,
    edit_message,
    get_thread_messages,
    send_message,
)
from .models import (
    Event,
    EventRegistration,
    Team,
    TeamInvitation,
    TeamMember,
    Thread,
    ThreadMessage,
    ThreadParticipant,
    User,
)
from .scheduler import start_scheduler, stop_scheduler
from .storage import init_db
from .teams import (
    accept_invitation,
    cancel_invitation,
    create_team,
    get_invitation_by_token,
    get_my_teams,
    get_pending_invitations,
    get_team,
    get_team_members,
    invite_by_email,
    leave_team,
    remove_member,
    update_team,
    update_team_branding,
)
from .threads import (
    ThreadOverview,
    add_user_to_thread,
    archive_thread,
    create_ai_thread,
    create_event_thread,
    create_team_thread,
    create_team_thread_for_current_team,
    get_my_team_threads,
    get_threads_for_event,
    get_threads_for_team,
    mark_thread_as_read,
)
from .users import (
    clear_current_team,
    get_current_team,
    set_current_team,
    sign_in_anonymously,
    sign_in_with_email,
    update_avatar,
    update_profile,
    viewer,
)
from .utils import isoformat

# Use uvicorn's error logger so messages get the level prefix in the default log
# format.
logger = logging.getLogger("uvicorn.error")

EVENT_FULL_ERROR = {
    "error": "EventFull",
    "message": EventFullError.default_message,
}


def _load_app_version() -> str:
    """Return the current package version, falling back to pyproject for dev runs."""
    try:
        return pkg_version("eventhub")
    except PackageNotFoundError:
        pyproject_path = Path(__file__).resolve().parent.parent / "pyproject.toml"
        if pyproject_path.exists():
            data = tomllib.loads(pyproject_path.read_text())
            project = data.get("project") or {}
            return str(project.get("version") or "dev")
    return "dev"


APP_VERSION = _load_app_version()


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    start_scheduler()
    try:
        yield
    finally:
        stop_scheduler()


app = FastAPI(title="EventHub", version=APP_VERSION, lifespan=lifespan)

EVENTS_PER_PAGE = settings.events_per_page
THREADS_PER_PAGE = settings.threads_per_page
MESSAGES_PER_PAGE = settings.messages_per_page


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def _get_bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("authorization") or ""
    if not auth_header.lower().startswith("bearer "):
        return None
    token = auth_header.split(" ", 1)[1].strip()
    return token or None


def current_user(request: Request, db: Session = Depends(get_db)) -> User | None:
    """Resolve the bearer token to a user; anonymous requests get None."""
    return get_current_user(db, _get_bearer_token(request))


def _parse_datetime(name: str, raw: str | None) -> datetime | None:
    if raw is None:
        return None
    if isinstance(raw, str) and not raw.strip():
        return None
    try:
        return datetime.fromisoformat(raw)
    except ValueError as exc:
        raise HTTPException(
            status_code=400, detail=f"Invalid {name}; use ISO8601 format"
        ) from exc


@app.exception_handler(EventFullError)
async def event_full_handler(request: Request, exc: EventFullError):
    return JSONResponse(EVENT_FULL_ERROR, status_code=exc.status_code)


@app.exception_handler(EventHubError)
async def eventhub_error_handler(request: Request, exc: EventHubError):
    return JSONResponse({"detail": exc.message}, status_code=exc.status_code)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        {"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers
    )


@app.exception_handler(OperationalError)
async def operational_error_handler(request: Request, exc: OperationalError):
    raw = str(exc.orig) if getattr(exc, "orig", None) else str(exc)
    lower = raw.lower()
    if "database is locked" in lower:
        logger.error(
            "SQLite database is locked while handling %s %s",
            request.method,
            request.url.path,
        )
        detail = "The database is busy at the moment. Please wait a few seconds and try again."
        status = 503
    else:
        logger.error(
            "Operational database error on %s %s: %s",
            request.method,
            request.url.path,
            raw,
        )
        detail = "We hit a database issue. Please try again."
        status = 500
    return JSONResponse({"detail": detail}, status_code=status)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse({"detail": exc.errors()}, status_code=422)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Gracefully handle unexpected errors."""
    logger.exception(
        "Unhandled error while processing %s %s", request.method, request.url.path
    )
    return JSONResponse({"detail": "Internal server error"}, status_code=500)


def _build_pagination(*, page: int, per_page: int, total: int):
    total_pages = max(1, (total + per_page - 1) // per_page) if total else 1
    page = max(1, min(page, total_pages)) if total else 1
    return {
        "page": page,
        "per_page": per_page,
        "total_pages": total_pages,
        "total": total,
        "has_prev": page > 1,
        "has_next": page < total_pages and total > 0,
        "prev_page": page - 1 if page > 1 else None,
        "next_page": page + 1 if page < total_pages and total > 0 else None,
    }


# -------- serializers --------


def _serialize_user(user: User, *, include_private: bool = False):
    payload = {
        "id": user.id,
        "name": user.name,
        "display_name": user.display_name,
        "image": user.image,
        "is_anonymous": user.is_anonymous,
    }
    if include_private:
        payload.update(
            {
                "email": user.email,
                "email_verified_at": isoformat(user.email_verified_at),
                "phone": user.phone,
                "phone_verified_at": isoformat(user.phone_verified_at),
                "favorite_color": user.favorite_color,
                "current_team_id": user.current_team_id,
                "created_at": isoformat(user.created_at),
            }
        )
    return payload


def _serialize_team(
    team: Team,
    *,
    role: str | None = None,
    member_count: int | None = None,
    is_current_team: bool | None = None,
):
    payload = {
        "id": team.id,
        "name": team.name,
        "slug": team.slug,
        "description": team.description,
        "owner_id": team.owner_id,
        "logo": team.logo,
        "primary_color": team.primary_color,
        "created_at": isoformat(team.created_at),
    }
    if role is not None:
        payload["role"] = role
    if member_count is not None:
        payload["member_count"] = member_count
    if is_current_team is not None:
        payload["is_current_team"] = is_current_team
    return payload


def _serialize_member(member: TeamMember):
    user = member.user
    return {
        "user_id": member.user_id,
        "name": user.display_name,
        "email": user.email,
        "image": user.image,
        "role": member.role,
        "joined_at": isoformat(member.joined_at),
    }


def _serialize_invitation(invitation: TeamInvitation):
    return {
        "id": invitation.id,
        "team_id": invitation.team_id,
        "email": invitation.email,
        "role": invitation.role,
        "status": invitation.status,
        "invited_by": invitation.invited_by,
        "expires_at": isoformat(invitation.expires_at),
        "created_at": isoformat(invitation.created_at),
    }


def _serialize_public_invitation(invitation: TeamInvitation):
    expired = invitation.is_expired()
    inviter = invitation.inviter
    return {
        "team_name": invitation.team.name,
        "team_logo": invitation.team.logo,
        "inviter_name": inviter.display_name if inviter else None,
        "role": invitation.role,
        "email": invitation.email,
        "status": invitation.status,
        "expires_at": isoformat(invitation.expires_at),
        "is_expired": expired,
        "is_valid": invitation.status == "pending" and not expired,
    }


def _serialize_event(event: Event, *, can_manage: bool | None = None):
    team = event.team
    organizer = event.organizer
    payload = {
        "id": event.id,
        "title": event.title,
        "slug": event.slug,
        "description": event.description,
        "venue": event.venue,
        "start_time": isoformat(event.start_time),
        "end_time": isoformat(event.end_time),
        "timezone": event.timezone,
        "event_type": event.event_type,
        "status": event.status,
        "max_capacity": event.max_capacity,
        "registration_deadline": isoformat(event.registration_deadline),
        "registration_count": event.registration_count,
        "seats_left": event.seats_left,
        "event_image_id": event.event_image_id,
        "social_image_id": event.social_image_id,
        "team": {
            "id": team.id,
            "name": team.name,
            "slug": team.slug,
            "logo": team.logo,
            "primary_color": team.primary_color,
        },
        "organizer": {
            "id": organizer.id,
            "name": organizer.display_name,
            "image": organizer.image,
        },
        "created_at": isoformat(event.created_at),
        "updated_at": isoformat(event.updated_at),
        "links": {
            "public": f"/events/{event.slug}",
        },
    }
    if can_manage is not None:
        payload["can_manage"] = can_manage
    return payload


def _serialize_registration(registration: EventRegistration):
    return {
        "id": registration.id,
        "event_id": registration.event_id,
        "attendee_name": registration.attendee_name,
        "attendee_email": registration.attendee_email,
        "attendee_phone": registration.attendee_phone,
        "registered_at": isoformat(registration.registered_at),
        "confirmation_sent": registration.confirmation_sent,
    }


def _serialize_thread(thread: Thread, *, overview: ThreadOverview | None = None):
    payload = {
        "id": thread.id,
        "title": thread.title,
        "description": thread.description,
        "thread_type": thread.thread_type,
        "team_id": thread.team_id,
        "event_id": thread.event_id,
        "ai_agent_name": thread.ai_agent_name,
        "created_by": thread.created_by,
        "created_at": isoformat(thread.created_at),
        "last_message_at": isoformat(thread.last_message_at),
        "is_archived": thread.is_archived,
    }
    if overview is not None:
        payload["message_count"] = overview.message_count
        payload["unread_count"] = overview.unread_count
        payload["role"] = overview.role
    return payload


def _serialize_participant(participant: ThreadParticipant):
    return {
        "id": participant.id,
        "thread_id": participant.thread_id,
        "user_id": participant.user_id,
        "role": participant.role,
        "joined_at": isoformat(participant.joined_at),
        "last_read_at": isoformat(participant.last_read_at),
    }


def _serialize_message(message: ThreadMessage, *, include_replies: bool = False):
    payload = {
        "id": message.id,
        "thread_id": message.thread_id,
        "author_id": message.author_id,
        "author_name": author_name(message),
        "content": message.content,
        "message_type": message.message_type,
        "reply_to_id": message.reply_to_id,
        "edited_at": isoformat(message.edited_at),
        "created_at": isoformat(message.created_at),
    }
    if include_replies:
        payload["replies"] = [_serialize_message(reply) for reply in message.replies]
    return payload


def _thread_page(overviews: list[ThreadOverview], total: int, page: int, per_page: int):
    return {
        "threads": [_serialize_thread(o.thread, overview=o) for o in overviews],
        "pagination": _build_pagination(page=page, per_page=per_page, total=total),
    }


# -------- payloads --------


class SignInPayload(BaseModel):
    email: EmailStr
    name: str | None = None


class ProfileUpdatePayload(BaseModel):
    name: str | None = None
    email: EmailStr | None = None
    phone: str | None = None
    favorite_color: str | None = None


class AvatarPayload(BaseModel):
    storage_id: str | None = None


class CurrentTeamPayload(BaseModel):
    team_id: str


class TeamCreatePayload(BaseModel):
    name: str
    description: str | None = None


class TeamUpdatePayload(BaseModel):
    name: str | None = None
    description: str | None = None


class TeamBrandingPayload(BaseModel):
    primary_color: str | None = None
    logo: str | None = None


class InvitationCreatePayload(BaseModel):
    email: EmailStr
    role: str = "member"


class EventCreatePayload(BaseModel):
    title: str
    description: str
    venue: str
    start_time: str = Field(..., description="ISO datetime string")
    end_time: str = Field(..., description="ISO datetime string after start_time")
    event_type: str = "other"
    timezone: str | None = None
    max_capacity: int | None = Field(
        None, description="Maximum number of registrations allowed"
    )
    registration_deadline: str | None = Field(
        None, description="Optional ISO datetime string"
    )
    status: str | None = None
    event_image_id: str | None = None
    social_image_id: str | None = None


class EventUpdatePayload(BaseModel):
    title: str | None = None
    description: str | None = None
    venue: str | None = None
    start_time: str | None = Field(None, description="ISO datetime string")
    end_time: str | None = Field(None, description="ISO datetime string")
    event_type: str | None = None
    timezone: str | None = None
    max_capacity: int | None = None
    registration_deadline: str | None = None
    status: str | None = None
    event_image_id: str | None = None
    social_image_id: str | None = None


class RegistrationCreatePayload(BaseModel):
    attendee_name: str
    attendee_email: EmailStr
    attendee_phone: str | None = None


class ThreadCreatePayload(BaseModel):
    title: str
    description: str | None = None


class AIThreadCreatePayload(BaseModel):
    title: str
    ai_agent_name: str
    team_id: str | None = None
    event_id: str | None = None


class ParticipantCreatePayload(BaseModel):
    user_id: str
    role: str = "participant"


class MessageCreatePayload(BaseModel):
    content: str
    reply_to_id: str | None = None


class MessageUpdatePayload(BaseModel):
    content: str


DATETIME_FIELDS = ("start_time", "end_time", "registration_deadline")


def _event_fields(data: dict) -> dict:
    """Parse ISO strings in an event payload into datetimes."""
    fields = dict(data)
    for name in DATETIME_FIELDS:
        if name in fields:
            fields[name] = _parse_datetime(name, fields[name])
    return fields


# -------- JSON API (v1): auth and profile --------


@app.post("/api/v1/auth/anonymous", status_code=201)
def api_sign_in_anonymously(db: Session = Depends(get_db)):
    user, auth_session = sign_in_anonymously(db)
    return {
        "token": auth_session.token,
        "user": _serialize_user(user, include_private=True),
    }


@app.post("/api/v1/auth/sign-in")
def api_sign_in(payload: SignInPayload, db: Session = Depends(get_db)):
    if not settings.allow_email_signin:
        raise HTTPException(status_code=403, detail="Email sign-in is disabled")
    user, auth_session = sign_in_with_email(db, email=payload.email, name=payload.name)
    return {
        "token": auth_session.token,
        "user": _serialize_user(user, include_private=True),
    }


@app.post("/api/v1/auth/sign-out", status_code=204)
def api_sign_out(request: Request, db: Session = Depends(get_db)):
    token = _get_bearer_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    revoke_session(db, token)
    return Response(status_code=204)


@app.get("/api/v1/me")
def api_viewer(user: User | None = Depends(current_user)):
    user = viewer(user)
    return {"user": _serialize_user(user, include_private=True) if user else None}


@app.patch("/api/v1/me")
def api_update_profile(
    payload: ProfileUpdatePayload,
    user: User | None = Depends(current_user),
    db: Session = Depends(get_db),
):
    data = payload.model_dump(exclude_unset=True)
    user = update_profile(db, user=user, **data)
    return {"user": _serialize_user(user, include_private=True)}


@app.put("/api/v1/me/avatar")
def api_update_avatar(
    payload: AvatarPayload,
    user: User | None = Depends(current_user),
    db: Session = Depends(get_db),
):
    user = update_avatar(db, user=user, storage_id=payload.storage_id)
    return {"user": _serialize_user(user, include_private=True)}


@app.get("/api/v1/me/team")
def api_get_current_team(
    user: User | None = Depends(current_user), db: Session = Depends(get_db)
):
    current = get_current_team(db, user=user)
    if current is None:
        return {"team": None, "user_role": None}
    return {"team": _serialize_team(current.team), "user_role": current.user_role}


@app.put("/api/v1/me/team")
def api_set_current_team(
    payload: CurrentTeamPayload,
    user: User | None = Depends(current_user),
    db: Session = Depends(get_db),
):
    team = set_current_team(db, user=user, team_id=payload.team_id)
    return {"team": _serialize_team(team)}


@app.delete("/api/v1/me/team", status_code=204)
def api_clear_current_team(
    user: User | None = Depends(current_user), db: Session = Depends(get_db)
):
    clear_current_team(db, user=user)
    return Response(status_code=204)


# -------- JSON API (v1): teams and invitations --------


@app.post("/api/v1/teams", status_code=201)
def api_create_team(
    payload: TeamCreatePayload,
    user: User | None = Depends(current_user),
    db: Session = Depends(get_db),
):
    team = create_team(db, user=user, name=payload.name, description=payload.description)
    return {"team": _serialize_team(team, role="owner", member_count=1)}


@app.get("/api/v1/teams")
def api_list_my_teams(
    user: User | None = Depends(current_user), db: Session = Depends(get_db)
):
    overviews = get_my_teams(db, user=user)
    return {
        "teams": [
            _serialize_team(
                o.team,
                role=o.role,
                member_count=o.member_count,
                is_current_team=o.is_current_team,
            )
            for o in overviews
        ]
    }


@app.get("/api/v1/teams/{team_id}")
def api_get_team(
    team_id: str,
    user: User | None = Depends(current_user),
    db: Session = Depends(get_db),
):
    team = get_team(db, user=user, team_id=team_id)
    if team is None:
        raise HTTPException(status_code=404, detail="Team not found")
    return {"team": _serialize_team(team)}


@app.patch("/api/v1/teams/{team_id}")
def api_update_team(
    team_id: str,
    payload: TeamUpdatePayload,
    user: User | None = Depends(current_user),
    db: Session = Depends(get_db),
):
    team = update_team(
        db,
        user=user,
        team_id=team_id,
        name=payload.name,
        description=payload.description,
    )
    return {"team": _serialize_team(team)}


@app.patch("/api/v1/teams/{team_id}/branding")
def api_update_team_branding(
    team_id: str,
    payload: TeamBrandingPayload,
    user: User | None = Depends(current_user),
    db: Session = Depends(get_db),
):
    team = update_team_branding(
        db,
        user=user,
        team_id=team_id,
        primary_color=payload.primary_color,
        logo=payload.logo,
    )
    return {"team": _serialize_team(team)}


@app.get("/api/v1/teams/{team_id}/members")
def api_list_team_members(
    team_id: str,
    user: User | None = Depends(current_user),
    db: Session = Depends(get_db),
):
    members = get_team_members(db, user=user, team_id=team_id)
    return {"members": [_serialize_member(m) for m in members]}


@app.delete("/api/v1/teams/{team_id}/members/{member_user_id}", status_code=204)
def api_remove_team_member(
    team_id: str,
    member_user_id: str,
    user: User | None = Depends(current_user),
    db: Session = Depends(get_db),
):
    remove_member(db, user=user, team_id=team_id, member_user_id=member_user_id)
    return Response(status_code=204)


@app.post("/api/v1/teams/{team_id}/leave", status_code=204)
def api_leave_team(
    team_id: str,
    user: User | None = Depends(current_user),
    db: Session = Depends(get_db),
):
    leave_team(db, user=user, team_id=team_id)
    return Response(status_code=204)


@app.post("/api/v1/teams/{team_id}/invitations", status_code=201)
def api_invite_member(
    team_id: str,
    payload: InvitationCreatePayload,
    user: User | None = Depends(current_user),
    db: Session = Depends(get_db),
):
    invitation = invite_by_email(
        db, user=user, team_id=team_id, email=payload.email, role=payload.role
    )
    return {"invitation": _serialize_invitation(invitation)}


@app.get("/api/v1/teams/{team_id}/invitations")
def api_list_pending_invitations(
    team_id: str,
    user: User | None = Depends(current_user),
    db: Session = Depends(get_db),
):
    invitations = get_pending_invitations(db, user=user, team_id=team_id)
    return {"invitations": [_serialize_invitation(i) for i in invitations]}


@app.delete("/api/v1/invitations/{invitation_id}", status_code=204)
def api_cancel_invitation(
    invitation_id: str,
    user: User | None = Depends(current_user),
    db: Session = Depends(get_db),
):
    cancel_invitation(db, user=user, invitation_id=invitation_id)
    return Response(status_code=204)


@app.get("/api/v1/invitations/{token}")
def api_get_invitation(token: str, db: Session = Depends(get_db)):
    invitation = get_invitation_by_token(db, token)
    if invitation is None:
        raise NotFoundError("Invitation not found")
    return {"invitation": _serialize_public_invitation(invitation)}


@app.post("/api/v1/invitations/{token}/accept")
def api_accept_invitation(
    token: str,
    user: User | None = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        team = accept_invitation(db, user=user, token=token)
    except InvitationExpiredError:
        db.commit()
        raise
    return {"team": _serialize_team(team)}


# -------- JSON API (v1): events and registrations --------


@app.get("/api/v1/events")
def api_list_published_events(
    page: int = Query(1, ge=1),
    per_page: int = Query(EVENTS_PER_PAGE, ge=1, le=100),
    event_type: str | None = Query(None),
    db: Session = Depends(get_db),
):
    events, total = list_published_events(
        db, page=page, per_page=per_page, event_type=event_type
    )
    return {
        "events": [_serialize_event(e) for e in events],
        "pagination": _build_pagination(page=page, per_page=per_page, total=total),
    }


@app.post("/api/v1/events", status_code=201)
def api_create_event_for_current_team(
    payload: EventCreatePayload,
    user: User | None = Depends(current_user),
    db: Session = Depends(get_db),
):
    fields = _event_fields(payload.model_dump())
    event = create_event_for_current_team(db, user=user, **fields)
    return {"event": _serialize_event(event, can_manage=True)}


@app.get("/api/v1/events/mine")
def api_list_my_events(
    user: User | None = Depends(current_user), db: Session = Depends(get_db)
):
    events = get_my_events(db, user=user)
    return {
        "events": [
            _serialize_event(e, can_manage=can_manage_event(db, e, user))
            for e in events
        ]
    }


@app.get("/api/v1/events/by-slug/{slug}")
def api_get_event_by_slug(
    slug: str,
    user: User | None = Depends(current_user),
    db: Session = Depends(get_db),
):
    event = get_event_by_slug(db, user=user, slug=slug)
    if event is None:
        raise HTTPException(status_code=404, detail="Event not found")
    return {"event": _serialize_event(event, can_manage=can_manage_event(db, event, user))}


@app.get("/api/v1/events/{event_id}")
def api_get_event(
    event_id: str,
    user: User | None = Depends(current_user),
    db: Session = Depends(get_db),
):
    event = get_event(db, user=user, event_id=event_id)
    if event is None:
        raise HTTPException(status_code=404, detail="Event not found")
    return {"event": _serialize_event(event, can_manage=can_manage_event(db, event, user))}


@app.patch("/api/v1/events/{event_id}")
def api_update_event(
    event_id: str,
    payload: EventUpdatePayload,
    user: User | None = Depends(current_user),
    db: Session = Depends(get_db),
):
    changes = _event_fields(payload.model_dump(exclude_unset=True))
    event = update_event(db, user=user, event_id=event_id, **changes)
    return {"event": _serialize_event(event, can_manage=True)}


@app.delete("/api/v1/events/{event_id}", status_code=204)
def api_delete_event(
    event_id: str,
    user: User | None = Depends(current_user),
    db: Session = Depends(get_db),
):
    delete_event(db, user=user, event_id=event_id)
    return Response(status_code=204)


@app.post("/api/v1/teams/{team_id}/events", status_code=201)
def api_create_team_event(
    team_id: str,
    payload: EventCreatePayload,
    user: User | None = Depends(current_user),
    db: Session = Depends(get_db),
):
    fields = _event_fields(payload.model_dump())
    event = create_event(db, user=user, team_id=team_id, **fields)
    return {"event": _serialize_event(event, can_manage=True)}


@app.get("/api/v1/teams/{team_id}/events")
def api_list_team_events(
    team_id: str,
    user: User | None = Depends(current_user),
    db: Session = Depends(get_db),
):
    events = get_team_events(db, user=user, team_id=team_id)
    return {
        "events": [
            _serialize_event(e, can_manage=can_manage_event(db, e, user))
            for e in events
        ]
    }


@app.get("/api/v1/events/{event_id}/registrations")
def api_list_registrations(
    event_id: str,
    user: User | None = Depends(current_user),
    db: Session = Depends(get_db),
):
    registrations = get_event_registrations(db, user=user, event_id=event_id)
    return {"registrations": [_serialize_registration(r) for r in registrations]}


@app.post("/api/v1/events/{event_id}/registrations", status_code=201)
def api_register_for_event(
    event_id: str,
    payload: RegistrationCreatePayload,
    db: Session = Depends(get_db),
):
    registration = register_for_event(
        db,
        event_id=event_id,
        attendee_name=payload.attendee_name,
        attendee_email=payload.attendee_email,
        attendee_phone=payload.attendee_phone,
    )
    return {"registration": _serialize_registration(registration)}


@app.get("/api/v1/events/{event_id}/registrations/count")
def api_registration_count(event_id: str, db: Session = Depends(get_db)):
    return {"count": get_event_registration_count(db, event_id=event_id)}


@app.delete("/api/v1/registrations/{registration_id}", status_code=204)
def api_remove_registration(
    registration_id: str,
    user: User | None = Depends(current_user),
    db: Session = Depends(get_db),
):
    remove_registration(db, user=user, registration_id=registration_id)
    return Response(status_code=204)


# -------- JSON API (v1): threads and messages --------


@app.get("/api/v1/threads")
def api_list_my_team_threads(
    page: int = Query(1, ge=1),
    per_page: int = Query(THREADS_PER_PAGE, ge=1, le=100),
    user: User | None = Depends(current_user),
    db: Session = Depends(get_db),
):
    overviews, total = get_my_team_threads(db, user=user, page=page, per_page=per_page)
    return _thread_page(overviews, total, page, per_page)


@app.post("/api/v1/threads", status_code=201)
def api_create_current_team_thread(
    payload: ThreadCreatePayload,
    user: User | None = Depends(current_user),
    db: Session = Depends(get_db),
):
    thread = create_team_thread_for_current_team(
        db, user=user, title=payload.title, description=payload.description
    )
    return {"thread": _serialize_thread(thread)}


@app.post("/api/v1/threads/ai", status_code=201)
def api_create_ai_thread(
    payload: AIThreadCreatePayload,
    user: User | None = Depends(current_user),
    db: Session = Depends(get_db),
):
    thread = create_ai_thread(
        db,
        user=user,
        title=payload.title,
        ai_agent_name=payload.ai_agent_name,
        team_id=payload.team_id,
        event_id=payload.event_id,
    )
    return {"thread": _serialize_thread(thread)}


@app.get("/api/v1/teams/{team_id}/threads")
def api_list_team_threads(
    team_id: str,
    page: int = Query(1, ge=1),
    per_page: int = Query(THREADS_PER_PAGE, ge=1, le=100),
    user: User | None = Depends(current_user),
    db: Session = Depends(get_db),
):
    overviews, total = get_threads_for_team(
        db, user=user, team_id=team_id, page=page, per_page=per_page
    )
    return _thread_page(overviews, total, page, per_page)


@app.post("/api/v1/teams/{team_id}/threads", status_code=201)
def api_create_team_thread(
    team_id: str,
    payload: ThreadCreatePayload,
    user: User | None = Depends(current_user),
    db: Session = Depends(get_db),
):
    thread = create_team_thread(
        db,
        user=user,
        team_id=team_id,
        title=payload.title,
        description=payload.description,
    )
    return {"thread": _serialize_thread(thread)}


@app.get("/api/v1/events/{event_id}/threads")
def api_list_event_threads(
    event_id: str,
    page: int = Query(1, ge=1),
    per_page: int = Query(THREADS_PER_PAGE, ge=1, le=100),
    user: User | None = Depends(current_user),
    db: Session = Depends(get_db),
):
    overviews, total = get_threads_for_event(
        db, user=user, event_id=event_id, page=page, per_page=per_page
    )
    return _thread_page(overviews, total, page, per_page)


@app.post("/api/v1/events/{event_id}/threads", status_code=201)
def api_create_event_thread(
    event_id: str,
    payload: ThreadCreatePayload,
    user: User | None = Depends(current_user),
    db: Session = Depends(get_db),
):
    thread = create_event_thread(
        db,
        user=user,
        event_id=event_id,
        title=payload.title,
        description=payload.description,
    )
    return {"thread": _serialize_thread(thread)}


@app.post("/api/v1/threads/{thread_id}/participants", status_code=201)
def api_add_thread_participant(
    thread_id: str,
    payload: ParticipantCreatePayload,
    user: User | None = Depends(current_user),
    db: Session = Depends(get_db),
):
    participant = add_user_to_thread(
        db, user=user, thread_id=thread_id, user_id=payload.user_id, role=payload.role
    )
    return {"participant": _serialize_participant(participant)}


@app.post("/api/v1/threads/{thread_id}/archive")
def api_archive_thread(
    thread_id: str,
    user: User | None = Depends(current_user),
    db: Session = Depends(get_db),
):
    thread = archive_thread(db, user=user, thread_id=thread_id)
    return {"thread": _serialize_thread(thread)}


@app.post("/api/v1/threads/{thread_id}/read")
def api_mark_thread_read(
    thread_id: str,
    user: User | None = Depends(current_user),
    db: Session = Depends(get_db),
):
    participant = mark_thread_as_read(db, user=user, thread_id=thread_id)
    return {"participant": _serialize_participant(participant)}


@app.get("/api/v1/threads/{thread_id}/messages")
def api_list_thread_messages(
    thread_id: str,
    page: int = Query(1, ge=1),
    per_page: int = Query(MESSAGES_PER_PAGE, ge=1, le=200),
    user: User | None = Depends(current_user),
    db: Session = Depends(get_db),
):
    messages, total = get_thread_messages(
        db, user=user, thread_id=thread_id, page=page, per_page=per_page
    )
    return {
        "messages": [_serialize_message(m, include_replies=True) for m in messages],
        "pagination": _build_pagination(page=page, per_page=per_page, total=total),
    }


@app.post("/api/v1/threads/{thread_id}/messages", status_code=201)
def api_send_message(
    thread_id: str,
    payload: MessageCreatePayload,
    user: User | None = Depends(current_user),
    db: Session = Depends(get_db),
):
    message = send_message(
        db,
        user=user,
        thread_id=thread_id,
        content=payload.content,
        reply_to_id=payload.reply_to_id,
    )
    return {"message": _serialize_message(message)}


@app.patch("/api/v1/messages/{message_id}")
def api_edit_message(
    message_id: str,
    payload: MessageUpdatePayload,
    user: User | None = Depends(current_user),
    db: Session = Depends(get_db),
):
    message = edit_message(db, user=user, message_id=message_id, content=payload.content)
    return {"message": _serialize_message(message)}


@app.delete("/api/v1/messages/{message_id}", status_code=204)
def api_delete_message(
    message_id: str,
    user: User | None = Depends(current_user),
    db: Session = Depends(get_db),
):
    delete_message(db, user=user, message_id=message_id)
    return Response(status_code=204)
