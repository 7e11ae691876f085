"""Missed check-in detection and pre-window reminders."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.orm import Session, contains_eager

from .. import models
from ..notify import Channels, templates
from . import alert_store, fanout, schedule_eval

logger = logging.getLogger(__name__)

# purpose: open a reminder-level alert for each checker whose window and grace have elapsed unanswered
# status: active
# depends_on: circlewatch.services.schedule_eval, circlewatch.services.alert_store


@dataclass
class DetectionOutcome:
    checker_id: UUID
    alert_id: UUID | None = None
    reminded: bool = False
    race_lost: bool = False
    deliveries: list[alert_store.DeliveryResult] = field(default_factory=list)


def checker_schedules(db: Session) -> list[models.Schedule]:
    """Active schedules of users who check in, with the user loaded."""

    return (
        db.query(models.Schedule)
        .join(models.User, models.Schedule.user_id == models.User.id)
        .options(contains_eager(models.Schedule.user))
        .filter(models.Schedule.is_active.is_(True), models.User.is_checker.is_(True))
        .all()
    )


def _claim_reminder(db: Session, schedule_id: UUID, day) -> bool:
    """Mark today's reminder as sent; only one caller per local day wins."""

    updated = (
        db.query(models.Schedule)
        .filter(
            models.Schedule.id == schedule_id,
            sa.or_(
                models.Schedule.last_reminded_on.is_(None),
                models.Schedule.last_reminded_on != day,
            ),
        )
        .update({models.Schedule.last_reminded_on: day}, synchronize_session=False)
    )
    db.commit()
    return updated == 1


def send_pre_window_reminder(
    db: Session,
    schedule: models.Schedule,
    channels: Channels,
    now: datetime,
    notices: set[str],
) -> bool:
    if not schedule_eval.is_reminder_due(schedule, now):
        return False
    if alert_store.has_checked_in_today(db, schedule.user_id, schedule.timezone_identifier, now):
        return False
    if not channels.push.configured:
        fanout.note_unconfigured("push", notices)
        return False
    if not _claim_reminder(db, schedule.id, schedule_eval.local_day(schedule, now)):
        return False
    message = templates.reminder_push()
    data = {"type": "checkin_reminder"}
    [result] = fanout.execute_sends(
        [
            fanout.PlannedSend(
                "push",
                None,
                str(schedule.user_id),
                fanout.push_call(channels, schedule.user_id, None, message, data),
            )
        ]
    )
    if result.outcome == "failed":
        logger.warning("Check-in reminder to %s failed: %s", schedule.user_id, result.error)
    return True


def detect_for_schedule(
    db: Session,
    schedule: models.Schedule,
    channels: Channels,
    now: datetime,
    notices: set[str] | None = None,
) -> DetectionOutcome:
    """Evaluate one checker: reminder if due, reminder-level alert if missed."""

    notices = notices if notices is not None else set()
    checker = schedule.user
    outcome = DetectionOutcome(checker_id=checker.id)
    if not schedule_eval.is_active_day(schedule, now):
        return outcome

    outcome.reminded = send_pre_window_reminder(db, schedule, channels, now, notices)

    if not schedule_eval.is_window_missed(schedule, now):
        return outcome
    if alert_store.has_checked_in_today(db, checker.id, schedule.timezone_identifier, now):
        return outcome
    day = schedule_eval.local_day(schedule, now)
    if alert_store.has_blocking_alert(db, checker.id, day):
        return outcome

    alert = alert_store.create_alert(
        db,
        checker,
        level="reminder",
        alert_day=day,
        missed_window_at=schedule_eval.missed_deadline(schedule, now),
        now=now,
    )
    if alert is None:
        logger.info("Alert for checker %s on %s was created by a concurrent tick", checker.id, day)
        outcome.race_lost = True
        return outcome

    logger.info("Created reminder alert %s for checker %s (day %s)", alert.id, checker.id, day)
    outcome.alert_id = alert.id
    outcome.deliveries = fanout.dispatch(db, alert, "reminder", channels, now, notices)
    return outcome
