"""Persistence primitives for alert events.

All coordination between overlapping ticks and out-of-band resolution is
expressed as conditional UPDATEs here; callers treat a ``False`` return as
a lost race and move on.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from .. import models
from . import schedule_eval

# purpose: single source of truth for alert identity, level, status and fan-out bookkeeping
# status: active


class AlertError(RuntimeError):
    """Base error for alert lifecycle operations."""


class AlertNotFound(AlertError):
    """Raised when an alert cannot be located."""


class AlertStateConflict(AlertError):
    """Raised when an alert is not in a state that allows the transition."""


class NotCircleMember(AlertError):
    """Raised when a user acts on an alert outside their circle."""


class DuplicateOpenAlert(AlertError):
    """Raised when a checker already has an open alert for the day."""


@dataclass
class DeliveryResult:
    """Outcome of one channel send to one recipient."""

    channel: str
    outcome: str  # sent, failed, skipped
    supporter_key: str | None = None
    recipient: str | None = None
    provider_id: str | None = None
    error: str | None = None

    @property
    def attempted(self) -> bool:
        return self.outcome in {"sent", "failed"}


def as_utc(value: datetime | None) -> datetime | None:
    """Normalise datetimes read back from stores that drop tzinfo."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def level_rank(level: str | None) -> int:
    """Rank of a level; ``None`` ranks below reminder."""

    if level is None:
        return -1
    return models.ALERT_LEVELS.index(level)


# ---------------------------------------------------------------------------
# collaborator queries
# ---------------------------------------------------------------------------


def active_schedule_for(db: Session, checker_id: UUID) -> models.Schedule | None:
    return (
        db.query(models.Schedule)
        .filter(models.Schedule.user_id == checker_id, models.Schedule.is_active.is_(True))
        .order_by(models.Schedule.created_at.desc())
        .first()
    )


def active_supporters_for(db: Session, checker_id: UUID) -> list[models.CircleLink]:
    """Accepted, active circle links ordered by alert priority."""

    return (
        db.query(models.CircleLink)
        .options(joinedload(models.CircleLink.supporter))
        .filter(
            models.CircleLink.checker_id == checker_id,
            models.CircleLink.is_active.is_(True),
            models.CircleLink.accepted_at.isnot(None),
        )
        .order_by(models.CircleLink.alert_priority.asc(), models.CircleLink.created_at.asc())
        .all()
    )


def has_checked_in_today(
    db: Session, checker_id: UUID, timezone_identifier: str | None, now: datetime
) -> bool:
    start, end = schedule_eval.day_bounds_utc(timezone_identifier, now)
    return (
        db.query(models.CheckIn.id)
        .filter(
            models.CheckIn.user_id == checker_id,
            models.CheckIn.timestamp >= start,
            models.CheckIn.timestamp < end,
        )
        .first()
        is not None
    )


def last_check_in(db: Session, checker_id: UUID) -> models.CheckIn | None:
    return (
        db.query(models.CheckIn)
        .filter(models.CheckIn.user_id == checker_id)
        .order_by(models.CheckIn.timestamp.desc())
        .first()
    )


def open_alert_for_day(db: Session, checker_id: UUID, day) -> models.AlertEvent | None:
    return (
        db.query(models.AlertEvent)
        .filter(
            models.AlertEvent.checker_id == checker_id,
            models.AlertEvent.alert_day == day,
            models.AlertEvent.status.in_(models.OPEN_ALERT_STATUSES),
        )
        .first()
    )


def has_blocking_alert(db: Session, checker_id: UUID, day) -> bool:
    """True if the checker already has an alert for ``day``, whatever its status.

    A day whose alert was resolved or cancelled is not re-alerted. Alerts
    still open from earlier days escalate on their own and do not block.
    """

    return (
        db.query(models.AlertEvent.id)
        .filter(
            models.AlertEvent.checker_id == checker_id,
            models.AlertEvent.alert_day == day,
        )
        .first()
        is not None
    )


def open_alerts(db: Session) -> list[models.AlertEvent]:
    return (
        db.query(models.AlertEvent)
        .filter(
            models.AlertEvent.status.in_(models.OPEN_ALERT_STATUSES),
            models.AlertEvent.resolved_at.is_(None),
        )
        .order_by(models.AlertEvent.missed_window_at.asc())
        .all()
    )


def get_alert(db: Session, alert_id: UUID) -> models.AlertEvent:
    alert = db.get(models.AlertEvent, alert_id, populate_existing=True)
    if alert is None:
        raise AlertNotFound(f"Alert {alert_id} not found")
    return alert


# ---------------------------------------------------------------------------
# creation and compare-and-swap transitions
# ---------------------------------------------------------------------------


def create_alert(
    db: Session,
    checker: models.User,
    *,
    level: str,
    alert_day,
    missed_window_at: datetime,
    now: datetime,
) -> models.AlertEvent | None:
    """Insert an open alert for the checker's day.

    Returns ``None`` when another writer already holds the open alert for
    that day; the partial unique index decides the race. The new row is
    born holding the dispatch lease for its initial level.
    """

    last = last_check_in(db, checker.id)
    alert = models.AlertEvent(
        checker_id=checker.id,
        checker_name=checker.name,
        level=level,
        status="pending",
        alert_day=alert_day,
        triggered_at=now,
        missed_window_at=missed_window_at,
        last_checkin_at=last.timestamp if last else None,
        last_known_location=checker.last_known_address,
        notified_supporter_ids=[],
        dispatch_claimed_at=now,
    )
    db.add(alert)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return None
    db.refresh(alert)
    return alert


def try_advance(
    db: Session,
    alert_id: UUID,
    expected_level: str,
    new_level: str,
    now: datetime,
) -> bool:
    """Move an open alert from ``expected_level`` to ``new_level``.

    Succeeds only if the stored level still equals ``expected_level`` and
    the alert is unresolved. The winner also takes the dispatch lease, so
    fan-out for ``new_level`` belongs to exactly one caller.
    """

    if level_rank(new_level) <= level_rank(expected_level):
        return False
    updated = (
        db.query(models.AlertEvent)
        .filter(
            models.AlertEvent.id == alert_id,
            models.AlertEvent.level == expected_level,
            models.AlertEvent.resolved_at.is_(None),
            models.AlertEvent.status.in_(models.OPEN_ALERT_STATUSES),
        )
        .update(
            {
                models.AlertEvent.level: new_level,
                # acknowledgment survives escalation; otherwise the alert is now sent
                models.AlertEvent.status: sa.case(
                    (models.AlertEvent.status == "acknowledged", "acknowledged"),
                    else_="sent",
                ),
                models.AlertEvent.escalated_at: now,
                models.AlertEvent.dispatch_claimed_at: now,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    return updated == 1


def stale_dispatches(db: Session, now: datetime, lease: timedelta) -> list[models.AlertEvent]:
    """Open alerts whose current level was never fully notified and whose lease lapsed."""

    cutoff = now - lease
    return (
        db.query(models.AlertEvent)
        .filter(
            models.AlertEvent.status.in_(models.OPEN_ALERT_STATUSES),
            models.AlertEvent.resolved_at.is_(None),
            sa.or_(
                models.AlertEvent.notified_level.is_(None),
                models.AlertEvent.notified_level != models.AlertEvent.level,
            ),
            sa.or_(
                models.AlertEvent.dispatch_claimed_at.is_(None),
                models.AlertEvent.dispatch_claimed_at < cutoff,
            ),
        )
        .all()
    )


def claim_stale_dispatch(
    db: Session,
    alert_id: UUID,
    level: str,
    seen_claim: datetime | None,
    now: datetime,
) -> bool:
    """Take over a lapsed dispatch lease; compare-and-swap on the lease value."""

    claim_column = models.AlertEvent.dispatch_claimed_at
    claim_filter = claim_column.is_(None) if seen_claim is None else claim_column == seen_claim
    updated = (
        db.query(models.AlertEvent)
        .filter(
            models.AlertEvent.id == alert_id,
            models.AlertEvent.level == level,
            models.AlertEvent.resolved_at.is_(None),
            claim_filter,
        )
        .update({claim_column: now}, synchronize_session=False)
    )
    db.commit()
    return updated == 1


def record_dispatch(
    db: Session,
    alert_id: UUID,
    level: str,
    results: Iterable[DeliveryResult],
    now: datetime,
) -> models.AlertEvent:
    """Persist one fan-out pass: delivery rows, notified supporters and notified level."""

    alert = get_alert(db, alert_id)
    results = list(results)
    notified = list(alert.notified_supporter_ids or [])
    for result in results:
        if result.supporter_key and result.attempted and result.supporter_key not in notified:
            notified.append(result.supporter_key)
        db.add(
            models.AlertDelivery(
                alert_id=alert.id,
                level=level,
                channel=result.channel,
                supporter_key=result.supporter_key,
                recipient=result.recipient,
                outcome=result.outcome,
                provider_id=result.provider_id,
                error=result.error,
                created_at=now,
            )
        )
    alert.notified_supporter_ids = notified
    if level_rank(level) > level_rank(alert.notified_level):
        alert.notified_level = level
    db.commit()
    db.refresh(alert)
    return alert


# ---------------------------------------------------------------------------
# resolution transitions
# ---------------------------------------------------------------------------


def resolve_open_for_checker(
    db: Session,
    checker_id: UUID,
    now: datetime,
    *,
    resolution: str = "checked_in",
    resolved_by: UUID | None = None,
) -> list[UUID]:
    """Resolve every open alert for a checker; returns the ids that changed."""

    open_ids = [
        row.id
        for row in db.query(models.AlertEvent.id).filter(
            models.AlertEvent.checker_id == checker_id,
            models.AlertEvent.status.in_(models.OPEN_ALERT_STATUSES),
            models.AlertEvent.resolved_at.is_(None),
        )
    ]
    if not open_ids:
        return []
    (
        db.query(models.AlertEvent)
        .filter(
            models.AlertEvent.id.in_(open_ids),
            models.AlertEvent.resolved_at.is_(None),
        )
        .update(
            {
                models.AlertEvent.status: "resolved",
                models.AlertEvent.resolved_at: now,
                models.AlertEvent.resolved_by: resolved_by,
                models.AlertEvent.resolution: resolution,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    return open_ids


def _conditional_transition(
    db: Session,
    alert_id: UUID,
    allowed_statuses: Iterable[str],
    values: dict,
) -> models.AlertEvent:
    updated = (
        db.query(models.AlertEvent)
        .filter(
            models.AlertEvent.id == alert_id,
            models.AlertEvent.status.in_(tuple(allowed_statuses)),
            models.AlertEvent.resolved_at.is_(None),
        )
        .update(values, synchronize_session=False)
    )
    db.commit()
    alert = get_alert(db, alert_id)
    if updated != 1:
        raise AlertStateConflict(f"Alert {alert_id} is already {alert.status}")
    return alert


def acknowledge(db: Session, alert_id: UUID, supporter_id: UUID, now: datetime) -> models.AlertEvent:
    get_alert(db, alert_id)
    return _conditional_transition(
        db,
        alert_id,
        ("pending", "sent"),
        {
            models.AlertEvent.status: "acknowledged",
            models.AlertEvent.acknowledged_at: now,
            models.AlertEvent.acknowledged_by: supporter_id,
        },
    )


def resolve(
    db: Session,
    alert_id: UUID,
    resolved_by: UUID,
    resolution: str,
    notes: str | None,
    now: datetime,
) -> models.AlertEvent:
    if resolution not in models.RESOLUTION_REASONS:
        raise ValueError(f"Unknown resolution {resolution!r}")
    get_alert(db, alert_id)
    return _conditional_transition(
        db,
        alert_id,
        models.OPEN_ALERT_STATUSES,
        {
            models.AlertEvent.status: "resolved",
            models.AlertEvent.resolved_at: now,
            models.AlertEvent.resolved_by: resolved_by,
            models.AlertEvent.resolution: resolution,
            models.AlertEvent.resolution_notes: notes,
        },
    )


def cancel(db: Session, alert_id: UUID, cancelled_by: UUID, now: datetime) -> models.AlertEvent:
    get_alert(db, alert_id)
    return _conditional_transition(
        db,
        alert_id,
        models.OPEN_ALERT_STATUSES,
        {
            models.AlertEvent.status: "cancelled",
            models.AlertEvent.resolved_at: now,
            models.AlertEvent.resolved_by: cancelled_by,
        },
    )
