import logging
import threading
from types import SimpleNamespace

import pytest

from circlewatch import config, models, notify
from circlewatch.services import alert_store, fanout

from .conftest import add_checkin, link_supporter, make_user, utc

MISSED = utc(2026, 3, 2, 10, 30)


class Unconfigured:
    configured = False

    def send(self, *args, **kwargs):
        raise AssertionError("unconfigured channel was called")

    initiate_call = send


def open_alert(db, checker, level="reminder"):
    user = db.get(models.User, checker.id)
    return alert_store.create_alert(
        db, user, level=level, alert_day=MISSED.date(), missed_window_at=MISSED, now=MISSED
    )


def deliveries(db, alert):
    return (
        db.query(models.AlertDelivery)
        .filter(models.AlertDelivery.alert_id == alert.id)
        .order_by(models.AlertDelivery.channel.asc())
        .all()
    )


@pytest.fixture
def checker():
    return make_user("Ana", phone="+15550000001", address="12 Harbour St")


def test_select_recipients_by_level():
    links = [
        SimpleNamespace(alert_priority=2, is_active=True, accepted_at=MISSED, name="b"),
        SimpleNamespace(alert_priority=1, is_active=True, accepted_at=MISSED, name="a"),
        SimpleNamespace(alert_priority=1, is_active=True, accepted_at=None, name="pending"),
        SimpleNamespace(alert_priority=1, is_active=False, accepted_at=MISSED, name="removed"),
    ]
    assert fanout.select_recipients("reminder", links) == []
    assert [link.name for link in fanout.select_recipients("soft", links)] == ["a"]
    assert [link.name for link in fanout.select_recipients("hard", links)] == ["a", "b"]
    assert [link.name for link in fanout.select_recipients("escalation", links)] == ["a", "b"]


def test_reminder_goes_to_checker_only(db, checker):
    link_supporter(checker, make_user("Sam", email="sam@example.com", is_checker=False), alert_via_email=True)
    alert = open_alert(db, checker)

    results = fanout.dispatch(db, alert, "reminder", notify.Channels(), MISSED)

    assert [(r.channel, r.outcome, r.supporter_key) for r in results] == [("push", "sent", None)]
    assert [entry[0] for entry in notify.PUSH_OUTBOX] == [str(checker.id)]
    assert notify.PUSH_OUTBOX[0][3]["type"] == "checkin_reminder"
    assert notify.EMAIL_OUTBOX == []
    alert = alert_store.get_alert(db, alert.id)
    assert alert.notified_supporter_ids == []
    assert alert.notified_level == "reminder"


def test_sms_only_from_hard_level(db, checker):
    supporter = make_user("Lee", phone="+15550000002", is_checker=False)
    link_supporter(checker, supporter, alert_via_sms=True, alert_via_push=False)
    alert = open_alert(db, checker)

    fanout.dispatch(db, alert, "soft", notify.Channels(), utc(2026, 3, 3, 11, 0))
    assert notify.SMS_OUTBOX == []

    fanout.dispatch(db, alert, "hard", notify.Channels(), utc(2026, 3, 3, 22, 45))
    fanout.dispatch(db, alert, "escalation", notify.Channels(), utc(2026, 3, 4, 10, 45))
    assert [to for to, _ in notify.SMS_OUTBOX] == ["+15550000002", "+15550000002"]


def test_voice_only_at_hard_level_and_only_with_phone(db, checker):
    link_supporter(checker, make_user("Lee", phone="+15550000002", is_checker=False), alert_via_push=False)
    link_supporter(checker, make_user("Sam", email="sam@example.com", is_checker=False), alert_via_push=False)
    alert = open_alert(db, checker)

    fanout.dispatch(db, alert, "hard", notify.Channels(), utc(2026, 3, 3, 22, 45))
    assert [to for to, _ in notify.CALL_OUTBOX] == ["+15550000002"]

    fanout.dispatch(db, alert, "escalation", notify.Channels(), utc(2026, 3, 4, 10, 45))
    assert len(notify.CALL_OUTBOX) == 1


def test_pending_and_removed_links_are_not_notified(db, checker):
    link_supporter(checker, make_user("Pending", is_checker=False), accepted=False)
    link_supporter(checker, make_user("Removed", is_checker=False), is_active=False)
    alert = open_alert(db, checker)

    results = fanout.dispatch(db, alert, "hard", notify.Channels(), utc(2026, 3, 3, 22, 45))

    assert results == []
    assert notify.PUSH_OUTBOX == []


def test_provider_failure_is_isolated(db, checker, monkeypatch, caplog):
    supporter = make_user("Lee", phone="+15550000002", email="lee@example.com", is_checker=False)
    link_supporter(checker, supporter, alert_via_sms=True, alert_via_email=True)
    alert = open_alert(db, checker)
    channels = notify.Channels()

    def broken_sms(to_e164, body):
        raise notify.NotificationError("Twilio rejected Messages request: 500")

    monkeypatch.setattr(channels.sms, "send", broken_sms)

    with caplog.at_level(logging.WARNING, logger="circlewatch.services.fanout"):
        results = fanout.dispatch(db, alert, "hard", channels, utc(2026, 3, 3, 22, 45))

    outcomes = {r.channel: r.outcome for r in results}
    assert outcomes == {"push": "sent", "email": "sent", "sms": "failed", "voice": "sent"}
    assert "sms delivery to supporter" in caplog.text
    assert len(notify.EMAIL_OUTBOX) == 1
    assert len(notify.CALL_OUTBOX) == 1

    rows = {row.channel: row for row in deliveries(db, alert)}
    assert rows["sms"].outcome == "failed"
    assert "500" in rows["sms"].error
    assert rows["voice"].provider_id.startswith("CA")
    alert = alert_store.get_alert(db, alert.id)
    assert alert.notified_supporter_ids == [str(supporter.id)]
    assert alert.notified_level == "hard"


def test_hung_provider_times_out_without_blocking_others(db, checker, monkeypatch):
    link_supporter(checker, make_user("Sam", email="sam@example.com", is_checker=False), alert_via_email=True)
    alert = open_alert(db, checker)
    channels = notify.Channels()
    release = threading.Event()

    def hung_email(to_address, content):
        release.wait(5)
        return notify.EmailResult(message_id="late")

    monkeypatch.setattr(channels.email, "send", hung_email)
    monkeypatch.setattr(config, "NOTIFICATION_TIMEOUT_SECONDS", 0.1)

    try:
        results = fanout.dispatch(db, alert, "soft", channels, utc(2026, 3, 3, 11, 0))
    finally:
        release.set()

    by_channel = {r.channel: r for r in results}
    assert by_channel["push"].outcome == "sent"
    assert by_channel["email"].outcome == "failed"
    assert by_channel["email"].error == "timed out after 0.1s"


def test_contact_only_supporter_is_keyed_by_link(db, checker):
    link = link_supporter(
        checker,
        None,
        supporter_display_name="Neighbour",
        supporter_phone="(555) 000-0003",
        supporter_email="neighbour@example.com",
        alert_via_sms=True,
        alert_via_email=True,
    )
    alert = open_alert(db, checker)

    results = fanout.dispatch(db, alert, "hard", notify.Channels(), utc(2026, 3, 3, 22, 45))

    assert sorted(r.channel for r in results) == ["email", "sms", "voice"]
    assert {r.supporter_key for r in results} == {str(link.id)}
    assert notify.SMS_OUTBOX[0][0] == "+15550000003"
    assert notify.CALL_OUTBOX[0][1] == f"{config.API_URL}/voice/alert/{alert.id}"
    assert notify.EMAIL_OUTBOX[0][2].startswith("Hi Neighbour,")
    alert = alert_store.get_alert(db, alert.id)
    assert alert.notified_supporter_ids == [str(link.id)]


def test_notified_supporters_accumulate_across_levels(db, checker):
    primary = make_user("Sam", is_checker=False)
    secondary = make_user("Lee", is_checker=False)
    link_supporter(checker, primary, alert_priority=1)
    link_supporter(checker, secondary, alert_priority=2)
    alert = open_alert(db, checker)

    fanout.dispatch(db, alert, "soft", notify.Channels(), utc(2026, 3, 3, 11, 0))
    assert alert_store.get_alert(db, alert.id).notified_supporter_ids == [str(primary.id)]

    fanout.dispatch(db, alert, "hard", notify.Channels(), utc(2026, 3, 3, 22, 45))
    assert alert_store.get_alert(db, alert.id).notified_supporter_ids == [str(primary.id), str(secondary.id)]


def test_email_respects_circle_visibility(db, checker):
    add_checkin(checker, utc(2026, 3, 1, 8, 15), scores=(2, 3, 4))
    link_supporter(
        checker,
        make_user("Sam", email="sam@example.com", is_checker=False),
        alert_via_email=True,
        can_see_location=True,
        can_see_mood=False,
    )
    alert = open_alert(db, checker)

    fanout.dispatch(db, alert, "soft", notify.Channels(), utc(2026, 3, 3, 11, 0))

    [(to, subject, body)] = notify.EMAIL_OUTBOX
    assert subject == "Ana missed their check-in window"
    assert "Last known location: 12 Harbour St" in body
    assert "Last check-in: Sun Mar 01 at 08:15 UTC" in body
    assert "Last mood" not in body


def test_unconfigured_channels_are_skipped_and_logged_once(db, checker, caplog):
    for name, phone in (("Sam", "+15550000002"), ("Lee", "+15550000003")):
        link_supporter(checker, make_user(name, phone=phone, is_checker=False), alert_via_sms=True)
    alert = open_alert(db, checker)
    channels = notify.Channels(push=Unconfigured(), sms=Unconfigured(), email=Unconfigured(), voice=Unconfigured())
    notices = set()

    with caplog.at_level(logging.INFO, logger="circlewatch.services.fanout"):
        results = fanout.dispatch(db, alert, "hard", channels, utc(2026, 3, 3, 22, 45), notices)

    assert {r.outcome for r in results} == {"skipped"}
    assert sorted(r.channel for r in results) == ["push", "push", "sms", "sms", "voice", "voice"]
    assert notices == {"push", "sms", "voice"}
    assert caplog.text.count("sms channel is not configured") == 1
    alert = alert_store.get_alert(db, alert.id)
    assert alert.notified_supporter_ids == []
    assert {row.outcome for row in deliveries(db, alert)} == {"skipped"}


def test_push_without_devices_is_skipped():
    class NoDevices:
        configured = True

        def send(self, *args, **kwargs):
            return []

    call = fanout.push_call(SimpleNamespace(push=NoDevices()), "user-1", "key-1", {"title": "t", "body": "b"}, {})
    result = call()
    assert result.outcome == "skipped"
    assert not result.attempted
