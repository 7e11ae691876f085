"""Out-of-band alert transitions: check-in, acknowledgment, resolve, cancel, manual trigger."""

from __future__ import annotations

import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy.orm import Session

from .. import models
from ..notify import Channels
from . import alert_store, fanout, schedule_eval
from .alert_store import DuplicateOpenAlert, NotCircleMember

logger = logging.getLogger(__name__)

# purpose: close or annotate alerts in response to user actions; closing always wins over a later tick
# status: active


def on_check_in(db: Session, checker: models.User, now: datetime) -> list[UUID]:
    """Resolve every open alert of ``checker``; returns the resolved ids."""

    resolved = alert_store.resolve_open_for_checker(
        db, checker.id, now, resolution="checked_in", resolved_by=checker.id
    )
    for alert_id in resolved:
        logger.info("Alert %s resolved by check-in from %s", alert_id, checker.id)
    return resolved


def circle_link_for(db: Session, checker_id: UUID, supporter_id: UUID) -> models.CircleLink | None:
    return (
        db.query(models.CircleLink)
        .filter(
            models.CircleLink.checker_id == checker_id,
            models.CircleLink.supporter_id == supporter_id,
            models.CircleLink.is_active.is_(True),
            models.CircleLink.accepted_at.isnot(None),
        )
        .first()
    )


def ensure_can_view(db: Session, alert: models.AlertEvent, user: models.User) -> None:
    if alert.checker_id == user.id:
        return
    if circle_link_for(db, alert.checker_id, user.id) is None:
        raise NotCircleMember("You are not in this person's circle")


def acknowledge(db: Session, alert_id: UUID, supporter: models.User, now: datetime) -> models.AlertEvent:
    alert = alert_store.get_alert(db, alert_id)
    if circle_link_for(db, alert.checker_id, supporter.id) is None:
        raise NotCircleMember("Only circle members can acknowledge an alert")
    alert = alert_store.acknowledge(db, alert_id, supporter.id, now)
    logger.info("Alert %s acknowledged by %s", alert_id, supporter.id)
    return alert


def resolve_manually(
    db: Session,
    alert_id: UUID,
    user: models.User,
    resolution: str,
    notes: str | None,
    now: datetime,
) -> models.AlertEvent:
    alert = alert_store.get_alert(db, alert_id)
    ensure_can_view(db, alert, user)
    alert = alert_store.resolve(db, alert_id, user.id, resolution, notes, now)
    logger.info("Alert %s resolved by %s (%s)", alert_id, user.id, resolution)
    return alert


def cancel(db: Session, alert_id: UUID, checker: models.User, now: datetime) -> models.AlertEvent:
    alert = alert_store.get_alert(db, alert_id)
    if alert.checker_id != checker.id:
        raise NotCircleMember("Only the person checking in can cancel their alert")
    alert = alert_store.cancel(db, alert_id, checker.id, now)
    logger.info("Alert %s cancelled by its checker", alert_id)
    return alert


def trigger(
    db: Session,
    checker: models.User,
    level: str,
    now: datetime,
    channels: Channels,
) -> models.AlertEvent:
    """Open an alert directly at ``level`` and fan it out immediately."""

    if level not in models.ALERT_LEVELS:
        raise ValueError(f"Unknown alert level {level!r}")
    schedule = alert_store.active_schedule_for(db, checker.id)
    zone = schedule.timezone_identifier if schedule is not None else "UTC"
    day = schedule_eval.local_day(schedule, now) if schedule is not None else now.date()
    if alert_store.open_alert_for_day(db, checker.id, day) is not None:
        raise DuplicateOpenAlert(f"An alert is already open for {day}")

    alert = alert_store.create_alert(
        db,
        checker,
        level=level,
        alert_day=day,
        missed_window_at=now,
        now=now,
    )
    if alert is None:
        raise DuplicateOpenAlert(f"An alert is already open for {day}")
    logger.info("Alert %s manually triggered at %s for %s (%s)", alert.id, level, checker.id, zone)
    fanout.dispatch(db, alert, level, channels, now)
    return alert_store.get_alert(db, alert.id)
