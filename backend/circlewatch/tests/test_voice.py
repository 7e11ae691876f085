import uuid
from datetime import datetime, timedelta, timezone

from twilio.request_validator import RequestValidator

from circlewatch import config, models
from circlewatch.services import alert_store

from .conftest import TestingSessionLocal, client, link_supporter, load_alerts, make_user


def open_alert(checker):
    now = datetime.now(timezone.utc)
    missed = now - timedelta(hours=37)
    db = TestingSessionLocal()
    try:
        user = db.get(models.User, checker.id)
        alert = alert_store.create_alert(
            db, user, level="hard", alert_day=missed.date(), missed_window_at=missed, now=now
        )
        db.expunge(alert)
        return alert
    finally:
        db.close()


def setup_call():
    checker = make_user("Ana", phone="+15551234567", address="12 Harbour St")
    supporter = make_user("Sam", phone="+15550000002", is_checker=False)
    link_supporter(checker, supporter)
    return checker, supporter, open_alert(checker)


def call_logs(alert):
    db = TestingSessionLocal()
    try:
        return db.query(models.CallLog).filter(models.CallLog.alert_id == alert.id).all()
    finally:
        db.close()


def test_alert_call_plays_message_and_gathers_digit(client):
    checker, supporter, alert = setup_call()

    resp = client.post(f"/voice/alert/{alert.id}", params={"supporter_id": str(supporter.id)})

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/xml")
    assert "This is an urgent wellness alert from CircleWatch." in resp.text
    assert "Ana has not checked in for 37 hours." in resp.text
    assert f'action="/voice/response/{alert.id}?supporter_id={supporter.id}"' in resp.text
    assert 'numDigits="1"' in resp.text
    assert "Polly.Joanna" in resp.text


def test_call_for_closed_or_unknown_alert_hangs_up(client):
    checker, supporter, alert = setup_call()
    db = TestingSessionLocal()
    try:
        alert_store.cancel(db, alert.id, checker.id, datetime.now(timezone.utc))
    finally:
        db.close()

    for alert_id in (alert.id, uuid.uuid4()):
        resp = client.post(f"/voice/alert/{alert_id}")
        assert "Sorry, this alert is no longer active. Goodbye." in resp.text
        assert "<Hangup />" in resp.text


def test_pressing_one_acknowledges(client):
    checker, supporter, alert = setup_call()

    resp = client.post(
        f"/voice/response/{alert.id}",
        params={"supporter_id": str(supporter.id)},
        data={"Digits": "1", "CallSid": "CA123"},
    )

    assert "The alert has been acknowledged" in resp.text
    [stored] = load_alerts(checker)
    assert stored.status == "acknowledged"
    assert stored.acknowledged_by == supporter.id
    [log] = call_logs(alert)
    assert log.call_sid == "CA123"
    assert log.status == "acknowledged"
    assert log.supporter_id == supporter.id


def test_pressing_one_twice_keeps_first_acknowledgment(client):
    checker, supporter, alert = setup_call()
    params = {"supporter_id": str(supporter.id)}
    client.post(f"/voice/response/{alert.id}", params=params, data={"Digits": "1", "CallSid": "CA1"})

    again = client.post(f"/voice/response/{alert.id}", params=params, data={"Digits": "1", "CallSid": "CA2"})

    assert again.status_code == 200
    assert "The alert has been acknowledged" in again.text
    assert len(call_logs(alert)) == 2


def test_pressing_two_reads_contact_details(client):
    checker, supporter, alert = setup_call()

    resp = client.post(f"/voice/response/{alert.id}", data={"Digits": "2"})

    assert "Ana's phone number is 5 5 5, 1 2 3, 4 5 6 7." in resp.text
    assert "Their last known location was 12 Harbour St." in resp.text
    assert f"<Redirect>/voice/alert/{alert.id}</Redirect>" in resp.text


def test_other_digits_replay_message(client):
    _, supporter, alert = setup_call()
    resp = client.post(
        f"/voice/response/{alert.id}",
        params={"supporter_id": str(supporter.id)},
        data={"Digits": "9"},
    )
    assert f"<Redirect>/voice/alert/{alert.id}?supporter_id={supporter.id}</Redirect>" in resp.text


def test_status_callback_updates_call_log(client):
    _, supporter, alert = setup_call()
    url = f"/voice/status/{alert.id}"

    client.post(url, data={"CallSid": "CA9", "CallStatus": "ringing", "Called": "+15550000002"})
    resp = client.post(url, data={"CallSid": "CA9", "CallStatus": "completed", "CallDuration": "42"})

    assert resp.json() == {"received": True}
    [log] = call_logs(alert)
    assert log.status == "completed"
    assert log.duration_seconds == 42
    assert log.supporter_id == supporter.id


def test_signature_required_when_token_configured(client, monkeypatch):
    _, _, alert = setup_call()
    monkeypatch.setenv("TWILIO_AUTH_TOKEN", "twilio-secret")
    form = {"CallSid": "CA7", "CallStatus": "completed"}
    path = f"/voice/status/{alert.id}"

    unsigned = client.post(path, data=form)
    assert unsigned.status_code == 403

    signature = RequestValidator("twilio-secret").compute_signature(f"{config.API_URL}{path}", form)
    signed = client.post(path, data=form, headers={"X-Twilio-Signature": signature})
    assert signed.status_code == 200
    assert [log.call_sid for log in call_logs(alert)] == ["CA7"]


def test_pressing_one_without_known_supporter_is_not_recorded(client):
    checker, _, alert = setup_call()
    stranger = make_user("Kim", phone="+15550000077", is_checker=False)

    for params, data in (
        ({}, {"Digits": "1", "CallSid": "CA1"}),
        ({"supporter_id": str(uuid.uuid4())}, {"Digits": "1", "CallSid": "CA2"}),
        ({"supporter_id": str(stranger.id)}, {"Digits": "1", "CallSid": "CA3"}),
    ):
        resp = client.post(f"/voice/response/{alert.id}", params=params, data=data)
        assert "could not record your acknowledgment" in resp.text
        assert "has been acknowledged" not in resp.text

    [stored] = load_alerts(checker)
    assert stored.status == "pending"
    assert call_logs(alert) == []


def test_pressing_one_for_unknown_alert_is_not_recorded(client):
    _, supporter, _ = setup_call()
    resp = client.post(
        f"/voice/response/{uuid.uuid4()}",
        params={"supporter_id": str(supporter.id)},
        data={"Digits": "1"},
    )
    assert "could not record your acknowledgment" in resp.text
