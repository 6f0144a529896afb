from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from eventhub import api, database, emails
from eventhub.models import Event, TeamInvitation
from eventhub.utils import utcnow


@pytest.fixture()
def outbox(monkeypatch):
    sent = []
    monkeypatch.setattr(emails, "send_invitation_email", sent.append)
    return sent


@pytest.fixture()
def client(monkeypatch, outbox):
    """FastAPI test client with the scheduler disabled."""

    monkeypatch.setattr(api, "start_scheduler", lambda: None)
    monkeypatch.setattr(api, "stop_scheduler", lambda: None)
    with TestClient(api.app) as test_client:
        yield test_client


def _sign_in(client, email: str, name: str | None = None) -> dict:
    response = client.post("/api/v1/auth/sign-in", json={"email": email, "name": name})
    assert response.status_code == 200
    body = response.json()
    return {"Authorization": f"Bearer {body['token']}", "user": body["user"]}


def _headers(auth: dict) -> dict:
    return {"Authorization": auth["Authorization"]}


def _iso(dt) -> str:
    return dt.replace(microsecond=0).isoformat()


def _event_payload(**overrides) -> dict:
    start = utcnow() + timedelta(days=3)
    payload = {
        "title": "Summer Concert",
        "description": "An evening of live music in the park.",
        "venue": "City Park Stage",
        "start_time": _iso(start),
        "end_time": _iso(start + timedelta(hours=2)),
        "event_type": "music",
        "status": "published",
    }
    payload.update(overrides)
    return payload


def _create_event(client, auth, **overrides) -> dict:
    response = client.post(
        "/api/v1/events", json=_event_payload(**overrides), headers=_headers(auth)
    )
    assert response.status_code == 201, response.text
    return response.json()["event"]


def test_sign_in_returns_token_and_profile(client):
    auth = _sign_in(client, "Nora@Example.com", "Nora")

    assert auth["user"]["email"] == "nora@example.com"
    me = client.get("/api/v1/me", headers=_headers(auth)).json()
    assert me["user"]["display_name"] == "Nora"
    team = client.get("/api/v1/me/team", headers=_headers(auth)).json()
    assert team["team"]["name"] == "My Team"
    assert team["user_role"] == "owner"

    malformed = client.post("/api/v1/auth/sign-in", json={"email": "nora@example"})
    assert malformed.status_code == 422
    assert malformed.json()["detail"][0]["loc"] == ["body", "email"]


def test_anonymous_session_and_sign_out(client):
    response = client.post("/api/v1/auth/anonymous")
    assert response.status_code == 201
    headers = {"Authorization": f"Bearer {response.json()['token']}"}
    assert client.get("/api/v1/me", headers=headers).json()["user"]["is_anonymous"] is True

    assert client.post("/api/v1/auth/sign-out", headers=headers).status_code == 204
    assert client.get("/api/v1/me", headers=headers).json() == {"user": None}
    assert client.post("/api/v1/auth/sign-out").status_code == 401


def test_email_sign_in_can_be_disabled(client, monkeypatch):
    import dataclasses

    monkeypatch.setattr(
        api, "settings", dataclasses.replace(api.settings, allow_email_signin=False)
    )
    response = client.post("/api/v1/auth/sign-in", json={"email": "a@example.com"})
    assert response.status_code == 403
    assert response.json() == {"detail": "Email sign-in is disabled"}


def test_error_mapping(client):
    assert client.post("/api/v1/teams", json={"name": "Ghosts"}).json() == {
        "detail": "Not authenticated"
    }
    assert client.post("/api/v1/teams", json={"name": "Ghosts"}).status_code == 401

    owner = _sign_in(client, "owner@example.com", "Olivia")
    outsider = _sign_in(client, "outsider@example.com", "Otto")
    team = client.post(
        "/api/v1/teams", json={"name": "Night Owls"}, headers=_headers(owner)
    ).json()["team"]

    denied = client.patch(
        f"/api/v1/teams/{team['id']}", json={"name": "Mine"}, headers=_headers(outsider)
    )
    assert denied.status_code == 403
    hidden = client.get(f"/api/v1/teams/{team['id']}", headers=_headers(outsider))
    assert hidden.status_code == 404
    assert hidden.json() == {"detail": "Team not found"}
    duplicate = client.post(
        "/api/v1/teams", json={"name": "night owls"}, headers=_headers(outsider)
    )
    assert duplicate.status_code == 409
    invalid = client.post("/api/v1/teams", json={"name": " "}, headers=_headers(owner))
    assert invalid.status_code == 400
    assert client.post("/api/v1/teams", json={}, headers=_headers(owner)).status_code == 422


def test_profile_update_and_current_team(client):
    auth = _sign_in(client, "nora@example.com", "Nora")
    response = client.patch(
        "/api/v1/me", json={"name": "Nora N", "phone": "+4512345678"}, headers=_headers(auth)
    )
    assert response.status_code == 200
    user = response.json()["user"]
    assert user["name"] == "Nora N"
    assert user["email"] == "nora@example.com"

    side = client.post(
        "/api/v1/teams", json={"name": "Side Project"}, headers=_headers(auth)
    ).json()["team"]
    teams = client.get("/api/v1/teams", headers=_headers(auth)).json()["teams"]
    assert {t["name"] for t in teams} == {"My Team", "Side Project"}
    assert [t["is_current_team"] for t in teams if t["id"] == side["id"]] == [True]

    assert client.delete("/api/v1/me/team", headers=_headers(auth)).status_code == 204
    assert client.get("/api/v1/me/team", headers=_headers(auth)).json() == {
        "team": None,
        "user_role": None,
    }
    response = client.put(
        "/api/v1/me/team", json={"team_id": side["id"]}, headers=_headers(auth)
    )
    assert response.json()["team"]["id"] == side["id"]


def test_invitation_flow(client, outbox):
    owner = _sign_in(client, "owner@example.com", "Olivia")
    team_id = client.get("/api/v1/me/team", headers=_headers(owner)).json()["team"]["id"]

    response = client.post(
        f"/api/v1/teams/{team_id}/invitations",
        json={"email": "Guest@example.com", "role": "admin"},
        headers=_headers(owner),
    )
    assert response.status_code == 201
    assert [message.to for message in outbox] == ["guest@example.com"]
    token = outbox[0].token

    public = client.get(f"/api/v1/invitations/{token}").json()["invitation"]
    assert public["team_name"] == "My Team"
    assert public["inviter_name"] == "Olivia"
    assert public["is_valid"] is True
    assert client.get("/api/v1/invitations/nope").status_code == 404

    guest = _sign_in(client, "guest@example.com", "Gus")
    accepted = client.post(f"/api/v1/invitations/{token}/accept", headers=_headers(guest))
    assert accepted.status_code == 200
    assert accepted.json()["team"]["id"] == team_id

    members = client.get(f"/api/v1/teams/{team_id}/members", headers=_headers(guest))
    assert [m["role"] for m in members.json()["members"]] == ["owner", "admin"]


def test_expired_invitation_status_survives_failed_accept(client, outbox):
    owner = _sign_in(client, "owner@example.com", "Olivia")
    team_id = client.get("/api/v1/me/team", headers=_headers(owner)).json()["team"]["id"]
    client.post(
        f"/api/v1/teams/{team_id}/invitations",
        json={"email": "guest@example.com"},
        headers=_headers(owner),
    )
    token = outbox[0].token
    session = database.SessionLocal()
    invitation = session.query(TeamInvitation).filter_by(token=token).one()
    invitation.expires_at = utcnow() - timedelta(minutes=1)
    session.commit()
    session.close()

    guest = _sign_in(client, "guest@example.com", "Gus")
    response = client.post(f"/api/v1/invitations/{token}/accept", headers=_headers(guest))

    assert response.status_code == 400
    assert response.json() == {"detail": "Invitation has expired"}
    public = client.get(f"/api/v1/invitations/{token}").json()["invitation"]
    assert public["status"] == "expired"
    assert public["is_valid"] is False


def test_event_lifecycle(client):
    owner = _sign_in(client, "owner@example.com", "Olivia")
    event = _create_event(client, owner, max_capacity=10)

    assert event["slug"] == "summer-concert"
    assert event["seats_left"] == 10
    assert event["can_manage"] is True
    assert event["links"]["public"] == "/events/summer-concert"

    by_slug = client.get("/api/v1/events/by-slug/summer-concert")
    assert by_slug.status_code == 200
    assert by_slug.json()["event"]["can_manage"] is False

    updated = client.patch(
        f"/api/v1/events/{event['id']}",
        json={"title": "Winter Concert", "max_capacity": 20},
        headers=_headers(owner),
    ).json()["event"]
    assert updated["slug"] == "winter-concert"
    assert updated["max_capacity"] == 20
    assert updated["venue"] == "City Park Stage"

    mine = client.get("/api/v1/events/mine", headers=_headers(owner)).json()["events"]
    assert [e["id"] for e in mine] == [event["id"]]

    assert client.delete(
        f"/api/v1/events/{event['id']}", headers=_headers(owner)
    ).status_code == 204
    assert client.get(f"/api/v1/events/{event['id']}").status_code == 404


def test_event_validation_errors(client):
    owner = _sign_in(client, "owner@example.com", "Olivia")
    bad_time = client.post(
        "/api/v1/events",
        json=_event_payload(start_time="next tuesday"),
        headers=_headers(owner),
    )
    assert bad_time.status_code == 400
    assert bad_time.json() == {"detail": "Invalid start_time; use ISO8601 format"}

    blank_time = client.post(
        "/api/v1/events", json=_event_payload(start_time=""), headers=_headers(owner)
    )
    assert blank_time.status_code == 400
    assert blank_time.json() == {"detail": "Start time is required"}

    short = client.post(
        "/api/v1/events", json=_event_payload(title="Hi"), headers=_headers(owner)
    )
    assert short.status_code == 400
    assert "at least 3 characters" in short.json()["detail"]


def test_draft_events_hidden_from_public(client):
    owner = _sign_in(client, "owner@example.com", "Olivia")
    draft = _create_event(client, owner, status="draft")

    assert client.get(f"/api/v1/events/{draft['id']}").status_code == 404
    assert client.get(
        f"/api/v1/events/{draft['id']}", headers=_headers(owner)
    ).status_code == 200
    listing = client.get("/api/v1/events").json()
    assert listing["events"] == []
    assert listing["pagination"]["total"] == 0


def test_public_listing_paginates(client):
    owner = _sign_in(client, "owner@example.com", "Olivia")
    for index in range(3):
        _create_event(client, owner, title=f"Concert {index}")

    page = client.get("/api/v1/events", params={"per_page": 2, "page": 2}).json()

    assert len(page["events"]) == 1
    assert page["pagination"]["total"] == 3
    assert page["pagination"]["total_pages"] == 2
    assert page["pagination"]["has_prev"] is True
    assert page["pagination"]["has_next"] is False


def test_registration_capacity_returns_event_full(client):
    owner = _sign_in(client, "owner@example.com", "Olivia")
    event = _create_event(client, owner, max_capacity=1)
    url = f"/api/v1/events/{event['id']}/registrations"

    first = client.post(url, json={"attendee_name": "Ann", "attendee_email": "ann@example.com"})
    assert first.status_code == 201
    duplicate = client.post(
        url, json={"attendee_name": "Ann", "attendee_email": "ANN@example.com"}
    )
    assert duplicate.status_code == 409
    full = client.post(url, json={"attendee_name": "Bob", "attendee_email": "bob@example.com"})

    assert full.status_code == 409
    assert full.json() == api.EVENT_FULL_ERROR
    assert client.get(f"{url}/count").json() == {"count": 1}

    session = database.SessionLocal()
    assert session.get(Event, event["id"]).registration_count == 1
    session.close()

    registrations = client.get(url, headers=_headers(owner)).json()["registrations"]
    assert [r["attendee_email"] for r in registrations] == ["ann@example.com"]
    removed = client.delete(
        f"/api/v1/registrations/{registrations[0]['id']}", headers=_headers(owner)
    )
    assert removed.status_code == 204
    again = client.post(url, json={"attendee_name": "Bob", "attendee_email": "bob@example.com"})
    assert again.status_code == 201


def test_threads_and_messages(client):
    owner = _sign_in(client, "owner@example.com", "Olivia")
    threads = client.get("/api/v1/threads", headers=_headers(owner)).json()
    assert [t["title"] for t in threads["threads"]] == ["General Discussion"]
    assert threads["threads"][0]["role"] == "admin"
    thread_id = threads["threads"][0]["id"]

    sent = client.post(
        f"/api/v1/threads/{thread_id}/messages",
        json={"content": "Soundcheck at 6"},
        headers=_headers(owner),
    )
    assert sent.status_code == 201
    message = sent.json()["message"]
    assert message["author_name"] == "Olivia"

    reply = client.post(
        f"/api/v1/threads/{thread_id}/messages",
        json={"content": "On it", "reply_to_id": message["id"]},
        headers=_headers(owner),
    )
    assert reply.status_code == 201

    listing = client.get(
        f"/api/v1/threads/{thread_id}/messages", headers=_headers(owner)
    ).json()
    assert listing["pagination"]["total"] == 2
    top = [m for m in listing["messages"] if m["id"] == message["id"]][0]
    assert [r["content"] for r in top["replies"]] == ["On it"]

    edited = client.patch(
        f"/api/v1/messages/{message['id']}",
        json={"content": "Soundcheck at 7"},
        headers=_headers(owner),
    )
    assert edited.json()["message"]["edited_at"] is not None

    outsider = _sign_in(client, "outsider@example.com", "Otto")
    forbidden = client.get(
        f"/api/v1/threads/{thread_id}/messages", headers=_headers(outsider)
    )
    assert forbidden.status_code == 403

    read = client.post(f"/api/v1/threads/{thread_id}/read", headers=_headers(owner))
    assert read.json()["participant"]["last_read_at"] is not None
    assert client.delete(
        f"/api/v1/messages/{message['id']}", headers=_headers(owner)
    ).status_code == 204
