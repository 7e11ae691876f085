from circlewatch import models, notify
from circlewatch.services import alert_store, detection, escalation, resolution

from .conftest import (
    TestingSessionLocal,
    add_checkin,
    link_supporter,
    load_alerts,
    make_schedule,
    make_user,
    utc,
)


def tick(now):
    return escalation.run_tick(TestingSessionLocal, now=now, channels=notify.Channels(), max_workers=1)


def test_on_time_checkin_creates_no_alert():
    checker = make_user("Ana")
    make_schedule(checker)
    link_supporter(checker, make_user("Sam", is_checker=False), alert_via_email=True)
    add_checkin(checker, utc(2026, 3, 2, 9, 0))

    report = tick(utc(2026, 3, 2, 10, 35))

    assert report.created == 0
    assert load_alerts(checker) == []
    assert notify.PUSH_OUTBOX == []


def test_missed_window_opens_reminder_alert_for_checker_only():
    checker = make_user("Ana", address="12 Harbour St")
    make_schedule(checker)
    supporter = make_user("Sam", email="sam@example.com", is_checker=False)
    link_supporter(checker, supporter, alert_via_email=True)
    add_checkin(checker, utc(2026, 3, 1, 8, 15))

    report = tick(utc(2026, 3, 2, 10, 35))

    assert report.created == 1
    [alert] = load_alerts(checker)
    assert alert.level == "reminder"
    assert alert.status == "pending"
    assert alert.alert_day.isoformat() == "2026-03-02"
    assert alert_store.as_utc(alert.missed_window_at) == utc(2026, 3, 2, 10, 30)
    assert alert_store.as_utc(alert.last_checkin_at) == utc(2026, 3, 1, 8, 15)
    assert alert.last_known_location == "12 Harbour St"
    assert alert.notified_level == "reminder"
    assert alert.notified_supporter_ids == []
    assert [entry[0] for entry in notify.PUSH_OUTBOX] == [str(checker.id)]
    assert notify.EMAIL_OUTBOX == []
    assert notify.SMS_OUTBOX == []


def test_overlapping_detection_does_not_duplicate():
    checker = make_user("Ana")
    make_schedule(checker)

    tick(utc(2026, 3, 2, 10, 35))
    tick(utc(2026, 3, 2, 10, 35))
    tick(utc(2026, 3, 2, 10, 50))

    assert len(load_alerts(checker)) == 1


def test_unique_index_decides_concurrent_inserts():
    checker = make_user("Ana")
    first = TestingSessionLocal()
    second = TestingSessionLocal()
    try:
        user_a = first.get(models.User, checker.id)
        user_b = second.get(models.User, checker.id)
        now = utc(2026, 3, 2, 10, 35)
        day = now.date()
        created = alert_store.create_alert(
            first, user_a, level="reminder", alert_day=day, missed_window_at=now, now=now
        )
        lost = alert_store.create_alert(
            second, user_b, level="reminder", alert_day=day, missed_window_at=now, now=now
        )
    finally:
        first.close()
        second.close()
    assert created is not None
    assert lost is None
    assert len(load_alerts(checker)) == 1


def test_inactive_day_is_skipped():
    checker = make_user("Ana")
    # 2 March 2026 is a Monday
    make_schedule(checker, active_days=[0, 2, 3, 4, 5, 6])

    report = tick(utc(2026, 3, 2, 12, 0))

    assert report.created == 0
    assert load_alerts(checker) == []


def test_supporters_are_not_evaluated_as_checkers():
    supporter = make_user("Sam", is_checker=False)
    make_schedule(supporter)

    report = tick(utc(2026, 3, 2, 12, 0))

    assert report.checked == 0
    assert load_alerts(supporter) == []


def test_pre_window_reminder_is_sent_once_per_day():
    checker = make_user("Ana")
    make_schedule(checker)

    tick(utc(2026, 3, 2, 9, 45))
    tick(utc(2026, 3, 2, 9, 55))

    assert [entry[0] for entry in notify.PUSH_OUTBOX] == [str(checker.id)]
    assert notify.PUSH_OUTBOX[0][1] == "Time to Check In"
    assert load_alerts(checker) == []
    db = TestingSessionLocal()
    try:
        schedule = alert_store.active_schedule_for(db, checker.id)
        assert schedule.last_reminded_on.isoformat() == "2026-03-02"
    finally:
        db.close()

    tick(utc(2026, 3, 3, 9, 45))
    assert len(notify.PUSH_OUTBOX) == 2


def test_pre_window_reminder_skipped_after_checkin():
    checker = make_user("Ana")
    make_schedule(checker)
    add_checkin(checker, utc(2026, 3, 2, 7, 30))

    report = tick(utc(2026, 3, 2, 9, 45))

    assert report.reminders == 0
    assert notify.PUSH_OUTBOX == []


def test_manually_resolved_day_is_not_realerted():
    checker = make_user("Ana")
    make_schedule(checker)
    tick(utc(2026, 3, 2, 10, 35))
    [alert] = load_alerts(checker)

    db = TestingSessionLocal()
    try:
        alert_store.cancel(db, alert.id, checker.id, utc(2026, 3, 2, 11, 0))
    finally:
        db.close()

    report = tick(utc(2026, 3, 2, 11, 15))
    assert report.created == 0
    assert len(load_alerts(checker)) == 1


def test_open_alert_from_previous_day_does_not_block_new_day():
    checker = make_user("Ana")
    make_schedule(checker)
    tick(utc(2026, 3, 2, 10, 35))
    notify.PUSH_OUTBOX.clear()

    report = tick(utc(2026, 3, 3, 10, 45))

    assert report.created == 1
    alerts = load_alerts(checker)
    assert [a.alert_day.isoformat() for a in alerts] == ["2026-03-02", "2026-03-03"]
    assert [a.level for a in alerts] == ["soft", "reminder"]
    assert str(checker.id) in [entry[0] for entry in notify.PUSH_OUTBOX]


def test_new_day_after_checkin_resolution_gets_new_alert():
    checker = make_user("Ana")
    make_schedule(checker)
    tick(utc(2026, 3, 2, 10, 35))
    db = TestingSessionLocal()
    try:
        user = db.get(models.User, checker.id)
        resolution.on_check_in(db, user, utc(2026, 3, 2, 18, 0))
    finally:
        db.close()
    add_checkin(checker, utc(2026, 3, 2, 18, 0))

    tick(utc(2026, 3, 3, 10, 45))

    alerts = load_alerts(checker)
    assert [a.alert_day.isoformat() for a in alerts] == ["2026-03-02", "2026-03-03"]
    assert [a.status for a in alerts] == ["resolved", "pending"]


def test_detect_for_schedule_reports_race_loss(monkeypatch):
    checker = make_user("Ana")
    make_schedule(checker)
    monkeypatch.setattr(alert_store, "create_alert", lambda *args, **kwargs: None)

    db = TestingSessionLocal()
    try:
        [schedule] = detection.checker_schedules(db)
        outcome = detection.detect_for_schedule(db, schedule, notify.Channels(), utc(2026, 3, 2, 10, 35))
    finally:
        db.close()

    assert outcome.race_lost
    assert outcome.alert_id is None
