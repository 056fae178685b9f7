from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from eventdesk import api
from eventdesk.crud import add_event_member
from eventdesk.models import Participant, Registration
from eventdesk.utils import utcnow

ADMIN = {"X-User-Id": "admin-1", "X-User-Role": "ADMIN"}
OWNER = {"X-User-Id": "owner-1", "X-User-Role": "OWNER"}
OTHER_OWNER = {"X-User-Id": "owner-2", "X-User-Role": "OWNER"}
STAFF = {"X-User-Id": "staff-1", "X-User-Role": "STAFF"}


@pytest.fixture()
def client(monkeypatch):
    """FastAPI test client without running migrations on startup."""

    monkeypatch.setattr(api, "init_db", lambda: None)
    with TestClient(api.app) as test_client:
        yield test_client


def _rsvp(client, event, name, **extra):
    payload = {
        "event_id": event.id,
        "name": name,
        "email": f"{name.lower()}@example.com",
        **extra,
    }
    return client.post("/api/v1/rsvp", json=payload)


def _participant_id(response) -> str:
    return response.json()["participant"]["id"]


def test_rsvp_registers_then_waitlists(client, make_event):
    event = make_event(max_attendees=1, allow_waitlist=True)

    first = _rsvp(client, event, "Ann")
    second = _rsvp(client, event, "Ben")

    assert first.status_code == 201
    assert first.json()["status"] == "REGISTERED"
    assert "waitlist_position" not in first.json()
    assert second.status_code == 201
    body = second.json()
    assert body["status"] == "WAITLISTED"
    assert body["waitlist_position"] == 1
    assert body["registration"]["waitlist_position"] == 1
    assert body["participant"]["email"] == "ben@example.com"


def test_rsvp_event_full(client, make_event):
    event = make_event(max_attendees=1)
    _rsvp(client, event, "Ann")

    response = _rsvp(client, event, "Ben")

    assert response.status_code == 400
    assert response.json()["error"] == "EventFull"


def test_rsvp_duplicate_email_is_rejected(client, make_event):
    event = make_event()
    assert _rsvp(client, event, "Ann").status_code == 201

    response = _rsvp(client, event, "Ann")

    assert response.status_code == 400
    assert response.json()["error"] == "DuplicateRegistration"


def test_rsvp_after_deadline(client, make_event):
    event = make_event(registration_deadline=utcnow() - timedelta(hours=1))

    response = _rsvp(client, event, "Ann")

    assert response.status_code == 400
    assert response.json()["error"] == "DeadlineExpired"


def test_rsvp_private_event_forbidden(client, make_event):
    event = make_event(is_public=False)

    response = _rsvp(client, event, "Ann")

    assert response.status_code == 403
    assert response.json()["error"] == "Forbidden"


def test_rsvp_unknown_event(client):
    response = client.post(
        "/api/v1/rsvp",
        json={"event_id": "missing", "name": "Ann", "email": "ann@example.com"},
    )

    assert response.status_code == 404
    assert response.json()["error"] == "NotFound"


def test_rsvp_validation(client, make_event):
    event = make_event()

    response = client.post(
        "/api/v1/rsvp",
        json={"event_id": event.id, "name": "", "email": "not-an-email"},
    )

    assert response.status_code == 422


def test_each_rsvp_gets_its_own_participant(client, session, make_event):
    first_event = make_event(title="First")
    second_event = make_event(title="Second")

    one = _rsvp(client, first_event, "Ann")
    two = client.post(
        "/api/v1/rsvp",
        json={"event_id": second_event.id, "name": "Mallory", "email": "ANN@example.com"},
    )

    assert two.status_code == 201
    assert _participant_id(one) != _participant_id(two)
    session.expire_all()
    original = session.get(Participant, _participant_id(one))
    assert original.name == "Ann"
    assert session.query(Participant).count() == 2


def test_rejected_duplicate_rsvp_writes_nothing(client, session, make_event):
    event = make_event()
    ann = _participant_id(_rsvp(client, event, "Ann"))

    response = client.post(
        "/api/v1/rsvp",
        json={"event_id": event.id, "name": "Mallory", "email": "ann@example.com"},
    )

    assert response.status_code == 400
    assert response.json()["error"] == "DuplicateRegistration"
    session.expire_all()
    assert session.get(Participant, ann).name == "Ann"
    assert session.query(Participant).count() == 1
    assert session.query(Registration).count() == 1


def test_rsvp_returns_registration_token(client, make_event):
    event = make_event()

    body = _rsvp(client, event, "Ann").json()

    assert len(body["registration_token"]) >= 32
    assert "registration_token" not in body["registration"]


def test_cancel_promotes_from_waitlist(client, make_event):
    event = make_event(max_attendees=1, allow_waitlist=True)
    ann_response = _rsvp(client, event, "Ann")
    ann = _participant_id(ann_response)
    ben = _participant_id(_rsvp(client, event, "Ben"))
    token = {"token": ann_response.json()["registration_token"]}

    response = client.post(f"/api/v1/events/{event.id}/rsvp/{ann}/cancel", json=token)

    assert response.status_code == 200
    assert response.json()["status"] == "CANCELLED"
    assert response.json()["promoted_participant_id"] == ben

    again = client.post(f"/api/v1/events/{event.id}/rsvp/{ann}/cancel", json=token)
    assert again.status_code == 400
    assert again.json()["error"] == "RegistrationNotEligible"


def test_cancel_requires_the_registration_token(client, session, make_event):
    event = make_event(max_attendees=1, allow_waitlist=True)
    ann = _participant_id(_rsvp(client, event, "Ann"))
    ben_token = _rsvp(client, event, "Ben").json()["registration_token"]
    url = f"/api/v1/events/{event.id}/rsvp/{ann}/cancel"

    assert client.post(url).status_code == 422
    wrong = client.post(url, json={"token": ben_token})

    assert wrong.status_code == 403
    assert wrong.json()["error"] == "Forbidden"
    session.expire_all()
    seated = session.query(Registration).filter_by(participant_id=ann).one()
    assert seated.status == "REGISTERED"


def test_check_in_requires_principal(client, make_event):
    event = make_event()
    ann = _participant_id(_rsvp(client, event, "Ann"))

    response = client.post(
        "/api/v1/checkin", json={"event_id": event.id, "participant_id": ann}
    )

    assert response.status_code == 401


def test_owner_checks_in_own_event_only(client, make_event):
    event = make_event(owner_id="owner-1")
    ann = _participant_id(_rsvp(client, event, "Ann"))
    payload = {"event_id": event.id, "participant_id": ann}

    denied = client.post("/api/v1/checkin", json=payload, headers=OTHER_OWNER)
    assert denied.status_code == 403

    allowed = client.post("/api/v1/checkin", json=payload, headers=OWNER)
    assert allowed.status_code == 200
    assert allowed.json()["status"] == "CHECKED_IN"
    assert allowed.json()["registration"]["check_in_at"] is not None

    repeat = client.post("/api/v1/checkin", json=payload, headers=OWNER)
    assert repeat.status_code == 400
    assert repeat.json()["error"] == "RegistrationNotEligible"


def test_staff_needs_event_membership(client, session, make_event):
    event = make_event()
    ann = _participant_id(_rsvp(client, event, "Ann"))
    payload = {"event_id": event.id, "participant_id": ann}

    assert client.post("/api/v1/checkin", json=payload, headers=STAFF).status_code == 403

    add_event_member(session, event=event, user_id="staff-1", added_by="owner-1")
    session.commit()

    assert client.post("/api/v1/checkin", json=payload, headers=STAFF).status_code == 200


def test_check_out_marks_no_show(client, make_event):
    event = make_event()
    ann = _participant_id(_rsvp(client, event, "Ann"))
    payload = {"event_id": event.id, "participant_id": ann}

    not_checked_in = client.post("/api/v1/checkout", json=payload, headers=ADMIN)
    assert not_checked_in.status_code == 400

    client.post("/api/v1/checkin", json=payload, headers=ADMIN)
    response = client.post("/api/v1/checkout", json=payload, headers=ADMIN)

    assert response.status_code == 200
    assert response.json()["status"] == "NO_SHOW"


def test_bulk_check_in_isolates_failures(client, make_event):
    event = make_event()
    ann = _participant_id(_rsvp(client, event, "Ann"))
    ben = _participant_id(_rsvp(client, event, "Ben"))

    response = client.post(
        "/api/v1/checkin/bulk",
        json={"event_id": event.id, "participant_ids": [ann, "ghost", ben]},
        headers=ADMIN,
    )

    assert response.status_code == 200
    results = response.json()["results"]
    assert [item["success"] for item in results] == [True, False, True]
    assert results[1]["error"] == "NotFound"


def test_bulk_check_in_limit(client, make_event, monkeypatch):
    event = make_event()
    monkeypatch.setattr(api, "settings", replace(api.settings, bulk_checkin_limit=2))

    response = client.post(
        "/api/v1/checkin/bulk",
        json={"event_id": event.id, "participant_ids": ["a", "b", "c"]},
        headers=ADMIN,
    )

    assert response.status_code == 400


def test_stats_registrations_and_waitlist(client, make_event):
    event = make_event(max_attendees=1, allow_waitlist=True)
    ann = _participant_id(_rsvp(client, event, "Ann"))
    ben = _participant_id(_rsvp(client, event, "Ben"))
    client.post(
        "/api/v1/checkin",
        json={"event_id": event.id, "participant_id": ann},
        headers=OWNER,
    )

    stats = client.get(
        "/api/v1/checkin/stats", params={"event_id": event.id}, headers=OWNER
    )
    assert stats.status_code == 200
    assert stats.json()["checked_in_count"] == 1
    assert stats.json()["waitlisted_count"] == 1
    assert stats.json()["check_in_rate"] == 50.0

    seated = client.get(f"/api/v1/events/{event.id}/registrations", headers=OWNER)
    assert [r["participant_id"] for r in seated.json()["registrations"]] == [ann]

    everyone = client.get(
        f"/api/v1/events/{event.id}/registrations",
        params={"include_waitlist": "true"},
        headers=OWNER,
    )
    assert {r["participant_id"] for r in everyone.json()["registrations"]} == {ann, ben}

    queue = client.get(f"/api/v1/events/{event.id}/waitlist", headers=OWNER)
    assert queue.status_code == 200
    assert [
        (r["participant_id"], r["waitlist_position"]) for r in queue.json()["waitlist"]
    ] == [(ben, 1)]


def test_reads_are_forbidden_to_strangers(client, make_event):
    event = make_event()

    response = client.get(f"/api/v1/events/{event.id}/waitlist", headers=OTHER_OWNER)

    assert response.status_code == 403


def test_unknown_role_is_unauthorized(client, make_event):
    event = make_event()

    response = client.get(
        f"/api/v1/events/{event.id}/waitlist",
        headers={"X-User-Id": "x", "X-User-Role": "JANITOR"},
    )

    assert response.status_code == 401


def test_viewer_member_can_read_but_not_check_in(client, session, make_event):
    event = make_event()
    ann = _participant_id(_rsvp(client, event, "Ann"))
    add_event_member(
        session, event=event, user_id="staff-1", added_by="owner-1", role="VIEWER"
    )
    session.commit()

    checkin = client.post(
        "/api/v1/checkin",
        json={"event_id": event.id, "participant_id": ann},
        headers=STAFF,
    )
    assert checkin.status_code == 403
    assert client.get(f"/api/v1/events/{event.id}/waitlist", headers=STAFF).status_code == 200


# -------- interactions --------


def _interactions_url(event) -> str:
    return f"/api/v1/events/{event.id}/interactions"


def test_anonymous_visitors_may_only_like_or_share(client, make_event):
    event = make_event()

    liked = client.post(_interactions_url(event), json={"type": "LIKE"})
    comment = client.post(
        _interactions_url(event), json={"type": "COMMENT", "content": "Hi"}
    )

    assert liked.status_code == 201
    assert liked.json()["interaction"]["user_id"] is None
    assert comment.status_code == 401
    assert comment.json()["error"] == "Unauthorized"


def test_registrant_comments_with_registration_token(client, make_event):
    event = make_event()
    rsvp = _rsvp(client, event, "Ann").json()

    response = client.post(
        _interactions_url(event),
        json={
            "type": "COMMENT",
            "content": "See you there",
            "registration_token": rsvp["registration_token"],
        },
    )

    assert response.status_code == 201
    assert response.json()["interaction"]["participant_id"] == rsvp["participant"]["id"]

    forged = client.post(
        _interactions_url(event),
        json={"type": "COMMENT", "content": "x", "registration_token": "nope"},
    )
    assert forged.status_code == 403


def test_moderation_hides_interactions_from_the_public(client, make_event):
    event = make_event()
    created = client.post(
        _interactions_url(event),
        json={"type": "COMMENT", "content": "Buy now!"},
        headers=OTHER_OWNER,
    ).json()["interaction"]

    denied = client.patch(
        f"{_interactions_url(event)}/{created['id']}",
        json={"action": "reject"},
        headers=OTHER_OWNER,
    )
    assert denied.status_code == 403

    rejected = client.patch(
        f"{_interactions_url(event)}/{created['id']}",
        json={"action": "reject"},
        headers=OWNER,
    )
    assert rejected.status_code == 200
    assert rejected.json()["interaction"]["moderation_reason"] == "Content violation"

    assert client.get(_interactions_url(event)).json()["interactions"] == []
    assert client.get(
        _interactions_url(event), params={"include_moderated": "true"}
    ).status_code == 401
    moderated = client.get(
        _interactions_url(event), params={"include_moderated": "true"}, headers=OWNER
    )
    assert [i["id"] for i in moderated.json()["interactions"]] == [created["id"]]

    stats = client.get(f"{_interactions_url(event)}/stats").json()
    assert stats["total_interactions"] == 1
    assert stats["moderated_interactions"] == 1
    assert stats["moderation_rate"] == 100.0


def test_bulk_moderation_reports_unknown_ids(client, make_event):
    event = make_event()
    like = client.post(_interactions_url(event), json={"type": "LIKE"}).json()

    response = client.post(
        f"{_interactions_url(event)}/moderate",
        json={
            "interaction_ids": [like["interaction"]["id"], "ghost"],
            "action": "reject",
            "reason": "spam",
        },
        headers=ADMIN,
    )

    assert response.status_code == 200
    results = response.json()["results"]
    assert results[0] == {
        "interaction_id": like["interaction"]["id"],
        "success": True,
        "is_moderated": True,
    }
    assert results[1]["error"] == "NotFound"


def test_only_admins_and_authors_delete_comments(client, make_event):
    event = make_event()
    comment = client.post(
        _interactions_url(event),
        json={"type": "COMMENT", "content": "Great"},
        headers=OTHER_OWNER,
    ).json()["interaction"]
    url = f"{_interactions_url(event)}/{comment['id']}"

    assert client.delete(url, headers=OWNER).status_code == 403
    assert client.delete(url, headers=OTHER_OWNER).status_code == 200
    assert client.delete(url, headers=ADMIN).status_code == 404


# -------- public events and admin analytics --------


def test_public_search_filters_and_paginates(client, make_event):
    make_event(title="Jazz Night", tags=["music"], location="Lisbon")
    make_event(title="Rust Meetup", tags=["tech"], location="Porto")
    make_event(title="Secret Jazz", is_public=False)

    found = client.get("/api/v1/public/events/search", params={"q": "jazz"}).json()
    assert [e["title"] for e in found["events"]] == ["Jazz Night"]
    assert found["total_events"] == 1

    tagged = client.get("/api/v1/public/events/search", params={"tags": "tech,food"})
    assert [e["title"] for e in tagged.json()["events"]] == ["Rust Meetup"]

    paged = client.get("/api/v1/public/events/search", params={"limit": 1}).json()
    assert paged["total_pages"] == 2
    assert paged["has_more"] is True


def test_public_event_detail_and_stats(client, make_event):
    event = make_event(max_attendees=2, allow_waitlist=True)
    _rsvp(client, event, "Ann")
    _rsvp(client, event, "Ben")
    _rsvp(client, event, "Cat")

    detail = client.get(f"/api/v1/public/events/{event.id}").json()["event"]
    assert detail["current_registrations"] == 2
    assert detail["is_full"] is True
    assert detail["available_spots"] == 0
    assert detail["is_registration_open"] is True

    stats = client.get(f"/api/v1/public/events/{event.id}/stats").json()
    assert stats["waitlisted_count"] == 1
    assert stats["total_registrations"] == 3

    private = make_event(is_public=False)
    assert client.get(f"/api/v1/public/events/{private.id}").status_code == 403
    assert client.get(f"/api/v1/public/events/{private.id}/stats").status_code == 404


def test_event_analytics_is_admin_only(client, make_event):
    event = make_event(max_attendees=1, allow_waitlist=True)
    _rsvp(client, event, "Ann")
    _rsvp(client, event, "Ben")
    client.post(_interactions_url(event), json={"type": "SHARE"})
    url = f"/api/v1/admin/events/{event.id}/analytics"

    assert client.get(url, headers=OWNER).status_code == 403

    body = client.get(url, headers=ADMIN).json()
    assert body["total_registrations"] == 2
    assert body["waitlist_count"] == 1
    assert body["interaction_stats"] == [{"type": "SHARE", "count": 1}]
    assert client.get("/api/v1/admin/events/missing/analytics", headers=ADMIN).status_code == 404

    system = client.get("/api/v1/admin/stats", headers=ADMIN).json()
    assert system["total_events"] == 1
    assert system["total_interactions"] == 1
