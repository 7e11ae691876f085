from .conftest import TestingSessionLocal, auth_headers, client, make_user
from circlewatch import models


def test_invite_accept_and_remove_supporter(client):
    checker = make_user("Ana")
    supporter = make_user("Sam", is_checker=False)
    headers = auth_headers(checker)

    invite = client.post(
        "/api/circle/members",
        json={"supporter_id": str(supporter.id), "alert_priority": 2, "alert_via_sms": True},
        headers=headers,
    )
    assert invite.status_code == 200
    link = invite.json()
    assert link["accepted_at"] is None
    assert link["alert_priority"] == 2

    pending = client.get("/api/circle/supporting", headers=auth_headers(supporter))
    assert [row["id"] for row in pending.json()] == [link["id"]]

    stranger = make_user("Eve", is_checker=False)
    assert client.post(f"/api/circle/members/{link['id']}/accept", headers=auth_headers(stranger)).status_code == 404

    accepted = client.post(f"/api/circle/members/{link['id']}/accept", headers=auth_headers(supporter))
    assert accepted.status_code == 200
    assert accepted.json()["accepted_at"] is not None

    duplicate = client.post("/api/circle/members", json={"supporter_id": str(supporter.id)}, headers=headers)
    assert duplicate.status_code == 409

    updated = client.patch(f"/api/circle/members/{link['id']}", json={"can_see_location": True}, headers=headers)
    assert updated.json()["can_see_location"] is True
    assert updated.json()["alert_via_sms"] is True

    removed = client.delete(f"/api/circle/members/{link['id']}", headers=headers)
    assert removed.status_code == 200
    assert client.get("/api/circle", headers=headers).json() == []


def test_reinviting_removed_supporter_starts_pending_invite(client):
    checker = make_user("Ana")
    supporter = make_user("Sam", is_checker=False)
    headers = auth_headers(checker)
    link = client.post("/api/circle/members", json={"supporter_id": str(supporter.id)}, headers=headers).json()
    client.post(f"/api/circle/members/{link['id']}/accept", headers=auth_headers(supporter))
    client.delete(f"/api/circle/members/{link['id']}", headers=headers)

    again = client.post(
        "/api/circle/members",
        json={"supporter_id": str(supporter.id), "alert_priority": 3},
        headers=headers,
    )
    assert again.status_code == 200
    body = again.json()
    assert body["id"] == link["id"]
    assert body["is_active"] is True
    assert body["accepted_at"] is None
    assert body["alert_priority"] == 3


def test_contact_only_supporter_is_accepted_immediately(client):
    checker = make_user("Ana")
    resp = client.post(
        "/api/circle/members",
        json={"supporter_display_name": "Neighbour", "supporter_phone": "+15550000003", "alert_via_sms": True},
        headers=auth_headers(checker),
    )
    assert resp.status_code == 200
    assert resp.json()["supporter_id"] is None
    assert resp.json()["accepted_at"] is not None


def test_circle_member_validation(client):
    checker = make_user("Ana")
    headers = auth_headers(checker)
    assert client.post("/api/circle/members", json={}, headers=headers).status_code == 422
    assert client.post("/api/circle/members", json={"supporter_id": str(checker.id)}, headers=headers).status_code == 400
    unknown = client.post(
        "/api/circle/members",
        json={"supporter_id": "00000000-0000-0000-0000-000000000000"},
        headers=headers,
    )
    assert unknown.status_code == 404


def test_replacing_schedule_keeps_one_active_row(client):
    checker = make_user("Ana")
    headers = auth_headers(checker)
    assert client.get("/api/users/me/schedule", headers=headers).status_code == 404

    first = client.put("/api/users/me/schedule", json={"timezone_identifier": "Europe/Berlin"}, headers=headers)
    assert first.status_code == 200
    second = client.put(
        "/api/users/me/schedule",
        json={"window_start_hour": 8, "window_end_hour": 11, "active_days": [5, 1, 1, 3]},
        headers=headers,
    )
    assert second.status_code == 200
    assert second.json()["active_days"] == [1, 3, 5]

    current = client.get("/api/users/me/schedule", headers=headers).json()
    assert current["id"] == second.json()["id"]
    assert current["window_end_hour"] == 11

    db = TestingSessionLocal()
    try:
        rows = db.query(models.Schedule).filter(models.Schedule.user_id == checker.id).all()
        assert sorted(row.is_active for row in rows) == [False, True]
    finally:
        db.close()


def test_schedule_validation(client):
    headers = auth_headers(make_user("Ana"))
    bad_zone = client.put("/api/users/me/schedule", json={"timezone_identifier": "Mars/Base"}, headers=headers)
    assert bad_zone.status_code == 422
    backwards = client.put(
        "/api/users/me/schedule",
        json={"window_start_hour": 10, "window_end_hour": 9},
        headers=headers,
    )
    assert backwards.status_code == 422
    past_midnight = client.put(
        "/api/users/me/schedule",
        json={"window_start_hour": 22, "window_end_hour": 23, "window_end_minute": 30, "grace_period_minutes": 60},
        headers=headers,
    )
    assert past_midnight.status_code == 422
    after_last_tick = client.put(
        "/api/users/me/schedule",
        json={"window_start_hour": 22, "window_end_hour": 23, "window_end_minute": 15, "grace_period_minutes": 30},
        headers=headers,
    )
    assert after_last_tick.status_code == 422
    latest = client.put(
        "/api/users/me/schedule",
        json={"window_start_hour": 22, "window_end_hour": 23, "window_end_minute": 14, "grace_period_minutes": 30},
        headers=headers,
    )
    assert latest.status_code == 200
    bad_day =client.put("/api/users/me/schedule", json={"active_days": [7]}, headers=headers)
    assert bad_day.status_code == 422


def test_push_token_register_and_remove(client):
    user = make_user("Ana")
    headers = auth_headers(user)
    for _ in range(2):
        resp = client.post(
            "/api/users/me/push-token",
            json={"token": "abc123", "device_id": "iphone"},
            headers=headers,
        )
        assert resp.json() == {"status": "registered"}

    db = TestingSessionLocal()
    try:
        assert db.query(models.PushToken).filter(models.PushToken.user_id == user.id).count() == 1
    finally:
        db.close()

    removed = client.request("DELETE", "/api/users/me/push-token", json={"token": "abc123"}, headers=headers)
    assert removed.json() == {"status": "removed", "removed": 1}


def test_profile(client):
    user = make_user("Ana", email="ana@example.com")
    resp = client.get("/api/users/me", headers=auth_headers(user))
    assert resp.status_code == 200
    assert resp.json()["email"] == "ana@example.com"
    assert resp.json()["is_checker"] is True
