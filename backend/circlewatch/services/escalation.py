"""The periodic escalation tick.

One tick runs three passes over the shared store:

1. detection, one unit per active checker schedule;
2. escalation, one unit per open alert, advancing its level through a
   compare-and-swap and fanning out only from the branch that won it;
3. recovery, re-running fan-out for alerts whose level changed in a tick
   that died before recording its deliveries.

Units in a pass touch disjoint rows and each gets its own session, so they
run on a bounded pool. Store errors propagate out of ``run_tick``.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, TypeVar
from uuid import UUID

from prometheus_client import Counter, Histogram
from sqlalchemy.orm import Session

from .. import config, models
from ..database import SessionLocal
from ..notify import Channels, default_channels
from . import alert_store, detection, fanout
from .alert_store import DeliveryResult, as_utc, level_rank

logger = logging.getLogger(__name__)

# purpose: advance open alerts through reminder, soft, hard and escalation exactly once per crossing
# status: active
# depends_on: circlewatch.services.detection, circlewatch.services.fanout

ALERTS_CREATED = Counter("circlewatch_alerts_created_total", "Reminder alerts opened by detection")
ESCALATIONS = Counter("circlewatch_escalations_total", "Level transitions won by a tick", ["level"])
RACE_LOSSES = Counter("circlewatch_race_losses_total", "Conditional updates lost to a concurrent writer")
TICK_LATENCY = Histogram("circlewatch_tick_seconds", "Wall time of one escalation tick")

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class EscalationOutcome:
    alert_id: UUID
    from_level: str | None = None
    to_level: str | None = None
    race_lost: bool = False
    deliveries: list[DeliveryResult] = field(default_factory=list)


@dataclass
class TickReport:
    now: datetime
    checked: int = 0
    created: int = 0
    reminders: int = 0
    escalated: int = 0
    recovered: int = 0
    race_losses: int = 0
    delivered: int = 0
    failed: int = 0
    skipped: int = 0

    def count_deliveries(self, results: Iterable[DeliveryResult]) -> None:
        for result in results:
            if result.outcome == "sent":
                self.delivered += 1
            elif result.outcome == "failed":
                self.failed += 1
            else:
                self.skipped += 1


def target_level(hours_since_missed: float, thresholds: config.EscalationThresholds | None = None) -> str:
    """Highest level whose threshold ``hours_since_missed`` has reached."""

    thresholds = thresholds or config.THRESHOLDS
    if hours_since_missed >= thresholds.escalation:
        return "escalation"
    if hours_since_missed >= thresholds.hard:
        return "hard"
    if hours_since_missed >= thresholds.soft:
        return "soft"
    return "reminder"


def hours_since_missed(alert: models.AlertEvent, now: datetime) -> float:
    return (now - as_utc(alert.missed_window_at)).total_seconds() / 3600


def _dispatch_if_open(
    db: Session,
    alert_id: UUID,
    level: str,
    channels: Channels,
    now: datetime,
    notices: set[str],
) -> list[DeliveryResult]:
    alert = alert_store.get_alert(db, alert_id)
    if not alert.is_open:
        logger.info("Alert %s was closed before its %s fan-out; nothing sent", alert_id, level)
        return []
    return fanout.dispatch(db, alert, level, channels, now, notices)


def escalate_alert(
    db: Session,
    alert_id: UUID,
    now: datetime,
    channels: Channels,
    thresholds: config.EscalationThresholds | None = None,
    notices: set[str] | None = None,
) -> EscalationOutcome:
    """Evaluate one open alert and, if a threshold was newly crossed, advance and notify."""

    notices = notices if notices is not None else set()
    alert = alert_store.get_alert(db, alert_id)
    outcome = EscalationOutcome(alert_id=alert_id, from_level=alert.level)
    if not alert.is_open:
        return outcome

    target = target_level(hours_since_missed(alert, now), thresholds)
    if level_rank(target) <= level_rank(alert.level):
        return outcome
    if level_rank(target) - level_rank(alert.level) > 1:
        logger.warning(
            "Alert %s jumped from %s to %s; intermediate levels were crossed between ticks",
            alert_id,
            alert.level,
            target,
        )

    if not alert_store.try_advance(db, alert_id, alert.level, target, now):
        logger.info("Alert %s already advanced or closed by another writer", alert_id)
        RACE_LOSSES.inc()
        outcome.race_lost = True
        return outcome

    logger.info("Alert %s escalated %s -> %s", alert_id, outcome.from_level, target)
    ESCALATIONS.labels(target).inc()
    outcome.to_level = target
    outcome.deliveries = _dispatch_if_open(db, alert_id, target, channels, now, notices)
    return outcome


def recover_stale_dispatches(
    db: Session,
    now: datetime,
    channels: Channels,
    lease: timedelta | None = None,
    notices: set[str] | None = None,
) -> list[EscalationOutcome]:
    """Finish fan-outs whose lease lapsed without a recorded dispatch."""

    notices = notices if notices is not None else set()
    lease = lease if lease is not None else timedelta(minutes=config.DISPATCH_LEASE_MINUTES)
    outcomes = []
    for alert in alert_store.stale_dispatches(db, now, lease):
        alert_id, level, seen_claim = alert.id, alert.level, alert.dispatch_claimed_at
        if not alert_store.claim_stale_dispatch(db, alert_id, level, seen_claim, now):
            RACE_LOSSES.inc()
            continue
        logger.warning("Re-running %s fan-out for alert %s after an interrupted dispatch", level, alert_id)
        outcomes.append(
            EscalationOutcome(
                alert_id=alert_id,
                from_level=level,
                to_level=level,
                deliveries=_dispatch_if_open(db, alert_id, level, channels, now, notices),
            )
        )
    return outcomes


def _run_units(fn: Callable[[T], R], items: list[T], max_workers: int) -> list[R]:
    if max_workers <= 1 or len(items) <= 1:
        return [fn(item) for item in items]
    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="tick") as pool:
        return list(pool.map(fn, items))


def run_tick(
    session_factory: Callable[[], Session] = SessionLocal,
    now: datetime | None = None,
    channels: Channels | None = None,
    thresholds: config.EscalationThresholds | None = None,
    max_workers: int | None = None,
) -> TickReport:
    """Run detection, escalation and recovery once; raises on store failure."""

    now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    channels = channels or default_channels(session_factory)
    thresholds = thresholds or config.THRESHOLDS
    max_workers = max_workers or config.ESCALATION_MAX_WORKERS
    notices: set[str] = set()
    report = TickReport(now=now)
    logger.info("Escalation tick started at %s", now.isoformat())

    def detect_unit(schedule_id: UUID) -> detection.DetectionOutcome | None:
        db = session_factory()
        try:
            schedule = db.get(models.Schedule, schedule_id)
            if schedule is None or not schedule.is_active:
                return None
            return detection.detect_for_schedule(db, schedule, channels, now, notices)
        finally:
            db.close()

    def escalate_unit(alert_id: UUID) -> EscalationOutcome:
        db = session_factory()
        try:
            return escalate_alert(db, alert_id, now, channels, thresholds, notices)
        finally:
            db.close()

    with TICK_LATENCY.time():
        db = session_factory()
        try:
            schedule_ids = [schedule.id for schedule in detection.checker_schedules(db)]
        finally:
            db.close()
        report.checked = len(schedule_ids)

        for outcome in _run_units(detect_unit, schedule_ids, max_workers):
            if outcome is None:
                continue
            report.reminders += int(outcome.reminded)
            report.race_losses += int(outcome.race_lost)
            if outcome.alert_id is not None:
                report.created += 1
                ALERTS_CREATED.inc()
            report.count_deliveries(outcome.deliveries)

        db = session_factory()
        try:
            alert_ids = [alert.id for alert in alert_store.open_alerts(db)]
        finally:
            db.close()

        for outcome in _run_units(escalate_unit, alert_ids, max_workers):
            report.race_losses += int(outcome.race_lost)
            if outcome.to_level is not None:
                report.escalated += 1
            report.count_deliveries(outcome.deliveries)

        db = session_factory()
        try:
            for outcome in recover_stale_dispatches(db, now, channels, notices=notices):
                report.recovered += 1
                report.count_deliveries(outcome.deliveries)
        finally:
            db.close()

    logger.info(
        "Escalation tick finished: %d schedules, %d created, %d reminders, %d escalated, "
        "%d recovered, %d race losses, deliveries %d sent / %d failed / %d skipped",
        report.checked,
        report.created,
        report.reminders,
        report.escalated,
        report.recovered,
        report.race_losses,
        report.delivered,
        report.failed,
        report.skipped,
    )
    return report
