from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from teamup import api
from teamup.ledger import ParticipationLedger
from teamup.models import Event, Participation, User


@pytest.fixture()
def client(monkeypatch):
    """FastAPI test client with the scheduler disabled."""

    monkeypatch.setattr(api, "start_scheduler", lambda: None)
    monkeypatch.setattr(api, "stop_scheduler", lambda: None)
    with TestClient(api.app) as test_client:
        yield test_client


def _auth(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {user.api_token}"}


def test_me_requires_token(client, make_user):
    assert client.get("/me").status_code == 401
    assert client.get("/me", headers={"Authorization": "Bearer wrong"}).status_code == 401

    user = make_user("Sam Runner")
    response = client.get("/me", headers=_auth(user))
    assert response.status_code == 200
    body = response.json()["user"]
    assert body["name"] == "Sam Runner"
    assert body["number_event_created"] == 0


def test_create_event_enrolls_organizer(client, session, make_user):
    organizer = make_user("Olive Organizer")
    payload = {
        "name": "Beach volley",
        "date": {"_seconds": 1903860180, "_nanoseconds": 0},
        "type": "volleyball",
        "max_participants": "",
        "level_needed": "debutant",
    }

    response = client.post("/events", json=payload, headers=_auth(organizer))

    assert response.status_code == 201
    event = response.json()["event"]
    assert event["date"] == "2030-05-01T10:03:00.000Z"
    assert event["max_participants"] is None
    assert event["created_by"] == organizer.id

    stats = client.get(f"/events/{event['id']}/stats", headers=_auth(organizer)).json()
    assert stats["organizer"]["user_id"] == organizer.id
    assert stats["userRole"] == "organizer"
    assert stats["totalParticipants"] == 1


def test_create_event_rejects_bad_input(client, make_user):
    organizer = make_user()
    response = client.post(
        "/events",
        json={"name": "Match", "date": "2030-01-01", "type": "quidditch"},
        headers=_auth(organizer),
    )
    assert response.status_code == 400
    assert client.post("/events", json={"name": "No date"}, headers=_auth(organizer)).status_code == 422


def test_out_of_range_dates_are_rejected_and_never_break_listing(
    client, session, make_user, make_event
):
    organizer = make_user()
    for bad in (1e20, -1e20, "1e20"):
        response = client.post(
            "/events",
            json={"name": "Match", "date": bad, "type": "football"},
            headers=_auth(organizer),
        )
        assert response.status_code == 400

    legacy = make_event(organizer, name="Legacy row")
    legacy.date = 1e20
    session.commit()

    listed = client.get("/events")
    assert listed.status_code == 200
    (event,) = listed.json()["events"]
    assert event["name"] == "Legacy row"
    assert event["date"].endswith("Z")
    assert client.get(f"/events/{legacy.id}").status_code == 200


def test_list_events_and_created_by_me(client, make_user, make_event):
    alice, bob = make_user("Alice"), make_user("Bob")
    make_event(alice, name="Alice public", date="2030-01-02T10:00:00Z")
    make_event(alice, name="Alice private", visibility="private")
    make_event(bob, name="Bob public", date="2030-01-01T10:00:00Z")

    public = client.get("/events").json()["events"]
    assert [e["name"] for e in public] == ["Bob public", "Alice public"]

    mine = client.get("/events", params={"createdBy": "me"}, headers=_auth(alice)).json()
    assert {e["name"] for e in mine["events"]} == {"Alice public", "Alice private"}

    seen_by_bob = client.get(
        "/events", params={"createdBy": alice.id}, headers=_auth(bob)
    ).json()["events"]
    assert [e["name"] for e in seen_by_bob] == ["Alice public"]

    assert client.get("/events", params={"createdBy": "me"}).status_code == 401


def test_join_and_leave_flow(client, session, make_user, make_event):
    organizer, player = make_user("Olive"), make_user("Pat")
    event = make_event(organizer)

    joined = client.post(f"/events/{event.id}/join", headers=_auth(player))
    assert joined.status_code == 200
    assert joined.json()["success"] is True
    assert joined.json()["participation"]["role"] == "participant"

    again = client.post(f"/events/{event.id}/join", headers=_auth(player))
    assert again.status_code == 400
    assert again.json()["error"] == "AlreadyRegistered"

    left = client.delete(
        "/userEvents", params={"eventId": event.id, "userId": player.id}, headers=_auth(player)
    )
    assert left.status_code == 200

    session.expire_all()
    assert session.get(User, player.id).number_event_joined == 0
    rows = session.scalars(select(Participation).where(Participation.event_id == event.id)).all()
    assert [row.user_id for row in rows] == [organizer.id]


def test_join_unknown_event(client, make_user):
    response = client.post("/events/nope/join", headers=_auth(make_user()))
    assert response.status_code == 404
    assert response.json()["error"] == "EventNotFound"


def test_join_full_event(client, make_user, make_event):
    organizer = make_user("Olive")
    event = make_event(organizer, max_participants=1)
    assert client.post(f"/events/{event.id}/join", headers=_auth(make_user("A"))).status_code == 200

    response = client.post(f"/events/{event.id}/join", headers=_auth(make_user("B")))

    assert response.status_code == 400
    assert response.json()["error"] == "CapacityExceeded"


def test_organizer_cannot_leave(client, make_user, make_event):
    organizer = make_user("Olive")
    event = make_event(organizer)

    response = client.post(f"/events/{event.id}/leave", headers=_auth(organizer))

    assert response.status_code == 409
    assert response.json()["error"] == "OrganizerCannotLeave"


def test_cannot_cancel_someone_else(client, session, make_user, make_event):
    organizer, player = make_user("Olive"), make_user("Pat")
    event = make_event(organizer)
    ParticipationLedger(session).join(event.id, player.id)

    response = client.delete(
        "/userEvents", params={"eventId": event.id, "userId": player.id}, headers=_auth(organizer)
    )

    assert response.status_code == 403
    assert response.json()["error"] == "Unauthorized"


def test_user_events_listing(client, session, make_user, make_event):
    organizer, player = make_user("Olive"), make_user("Pat")
    event = make_event(organizer, name="Padel")
    ParticipationLedger(session).join(event.id, player.id)

    by_event = client.get("/userEvents", params={"eventId": event.id}, headers=_auth(player))
    roles = {row["user_id"]: row["role"] for row in by_event.json()["userEvents"]}
    assert roles == {organizer.id: "organizer", player.id: "participant"}

    by_user = client.get("/userEvents", params={"userId": player.id}, headers=_auth(player))
    (row,) = by_user.json()["userEvents"]
    assert row["event"]["name"] == "Padel"

    assert client.get("/userEvents", headers=_auth(player)).status_code == 400


def test_role_change_by_organizer_only(client, session, make_user, make_event):
    organizer, player = make_user("Olive"), make_user("Pat")
    event = make_event(organizer)
    ParticipationLedger(session).join(event.id, player.id)
    body = {"eventId": event.id, "userId": player.id, "role": "observer"}

    assert client.put("/userEvents", json=body, headers=_auth(player)).status_code == 403

    response = client.put("/userEvents", json=body, headers=_auth(organizer))
    assert response.status_code == 200
    assert response.json()["participation"]["role"] == "observer"

    stats = client.get(
        f"/events/{event.id}/stats", params={"userId": player.id}, headers=_auth(organizer)
    ).json()
    assert stats["userRole"] == "observer"
    assert stats["participants"] == []

    promote = {**body, "role": "organizer"}
    conflict = client.put("/userEvents", json=promote, headers=_auth(organizer))
    assert conflict.status_code == 409
    assert conflict.json()["error"] == "DuplicateOrganizer"


def test_stats_repairs_missing_organizer(client, session, make_user, make_event):
    organizer = make_user("Olive")
    event = make_event(organizer)
    session.query(Participation).filter(Participation.event_id == event.id).delete()
    session.commit()

    stats = client.get(f"/events/{event.id}/stats", headers=_auth(organizer)).json()

    assert stats["userRole"] == "organizer"
    assert stats["organizer"]["user_id"] == organizer.id


def test_update_and_delete_event(client, session, make_user, make_event):
    organizer, intruder = make_user("Olive"), make_user("Ivan")
    event = make_event(organizer)

    forbidden = client.put(f"/events/{event.id}", json={"name": "Mine"}, headers=_auth(intruder))
    assert forbidden.status_code == 403

    updated = client.put(
        f"/events/{event.id}", json={"name": "Renamed", "max_participants": 0}, headers=_auth(organizer)
    )
    assert updated.status_code == 200
    assert updated.json()["event"]["name"] == "Renamed"
    assert updated.json()["event"]["max_participants"] is None

    assert client.delete(f"/events/{event.id}", headers=_auth(intruder)).status_code == 403
    assert client.delete(f"/events/{event.id}", headers=_auth(organizer)).status_code == 204
    assert client.get(f"/events/{event.id}").status_code == 404
    session.expire_all()
    assert session.get(Event, event.id) is None


def test_message_lifecycle(client, session, make_user, make_event):
    organizer, player, outsider = make_user("Olive"), make_user("Pat"), make_user("Stranger")
    event = make_event(organizer)
    ParticipationLedger(session).join(event.id, player.id)

    denied = client.post(
        "/messages", json={"id_event": event.id, "content": "hi"}, headers=_auth(outsider)
    )
    assert denied.status_code == 403

    empty = client.post(
        "/messages", json={"id_event": event.id, "content": "   "}, headers=_auth(player)
    )
    assert empty.status_code == 400
    assert empty.json()["error"] == "EmptyContent"

    sent = client.post(
        "/messages",
        json={"id_event": event.id, "content": "Who brings the ball?"},
        headers=_auth(player),
    )
    assert sent.status_code == 200
    message_id = sent.json()["messageId"]
    assert sent.json()["message"]["sent_at"].endswith("Z")

    listed = client.get("/messages", params={"eventId": event.id}).json()["messages"]
    assert [m["id"] for m in listed] == [message_id]
    assert listed[0]["author_role"] == "participant"
    assert listed[0]["user"]["name"] == "Pat"

    edit = {"id": message_id, "content": "I bring it"}
    assert client.put("/messages", json=edit, headers=_auth(outsider)).status_code == 403
    edited = client.put("/messages", json=edit, headers=_auth(player))
    assert edited.json()["message"]["content"] == "I bring it"

    removed = client.delete("/messages", params={"id": message_id}, headers=_auth(organizer))
    assert removed.status_code == 200
    assert client.get("/messages", params={"eventId": event.id}).json()["messages"] == []


def test_forged_sent_at_falls_back_to_server_time(client, make_user, make_event):
    organizer = make_user("Olive")
    event = make_event(organizer)

    client.post(
        "/messages", json={"id_event": event.id, "content": "first real"}, headers=_auth(organizer)
    )
    forged = client.post(
        "/messages",
        json={"id_event": event.id, "content": "forged", "sent_at": "1970-01-02T00:00:00Z"},
        headers=_auth(organizer),
    )
    assert forged.status_code == 200
    assert not forged.json()["message"]["sent_at"].startswith("1970")

    listed = client.get("/messages", params={"eventId": event.id}).json()["messages"]
    assert [m["content"] for m in listed] == ["forged", "first real"]


def test_messages_requires_event_id(client):
    assert client.get("/messages").status_code == 400
    missing = client.get("/messages", params={"eventId": "nope"})
    assert missing.status_code == 404
    assert missing.json()["error"] == "EventNotFound"


def test_cannot_post_as_someone_else(client, make_user, make_event):
    organizer, other = make_user("Olive"), make_user("Other")
    event = make_event(organizer)

    response = client.post(
        "/messages",
        json={"id_event": event.id, "id_user": other.id, "content": "hi"},
        headers=_auth(organizer),
    )

    assert response.status_code == 403


def test_websocket_pushes_full_list_on_change(client, make_user, make_event):
    organizer = make_user("Olive")
    event = make_event(organizer)

    with client.websocket_connect(f"/ws/events/{event.id}/messages") as ws:
        first = ws.receive_json()
        assert first == {"type": "messages", "messages": []}

        client.post(
            "/messages",
            json={"id_event": event.id, "content": "Kick-off at ten"},
            headers=_auth(organizer),
        )
        update = ws.receive_json()

    assert update["type"] == "messages"
    (message,) = update["messages"]
    assert message["content"] == "Kick-off at ten"
    assert message["is_organizer"] is True


def test_websocket_reports_missing_event(client):
    with client.websocket_connect("/ws/events/nope/messages") as ws:
        payload = ws.receive_json()

    assert payload["type"] == "error"
    assert payload["error"] == "EventNotFound"
