"""Pokes: a supporter nudging a checker to check in."""

from __future__ import annotations

import logging
from datetime import datetime
from uuid import UUID

from prometheus_client import Counter
from sqlalchemy.orm import Session

from .. import models
from ..notify import Channels, templates
from .alert_store import DeliveryResult
from .fanout import PlannedSend, email_call, execute_sends, push_call, sms_call
from .resolution import circle_link_for

logger = logging.getLogger(__name__)

# purpose: send and track pokes between circle members
# status: active
# depends_on: circlewatch.services.fanout

POKE_COUNT = Counter("circlewatch_pokes_total", "Pokes sent between circle members")


class PokeNotAllowed(Exception):
    """Raised when the sender has no accepted, poke-enabled link to the recipient."""


class PokeNotFound(Exception):
    """Raised when a poke does not exist for the current recipient."""


def _planned_sends(
    channels: Channels,
    link: models.CircleLink,
    sender: models.User,
    recipient: models.User,
    poke: models.Poke,
) -> list[PlannedSend]:
    key = str(recipient.id)
    data = {"type": "poke", "poke_id": str(poke.id), "from_user_id": str(sender.id)}
    sends = []
    if channels.push.configured:
        message = templates.poke_push(sender.name, poke.message)
        sends.append(PlannedSend("push", key, key, push_call(channels, recipient.id, key, message, data)))
    if link.alert_via_sms and recipient.phone_number and channels.sms.configured:
        body = templates.poke_sms(sender.name, poke.message)
        sends.append(
            PlannedSend("sms", key, recipient.phone_number, sms_call(channels, key, recipient.phone_number, body))
        )
    if link.alert_via_email and recipient.email and channels.email.configured:
        content = templates.poke_email(recipient.name, sender.name, poke.message)
        sends.append(PlannedSend("email", key, recipient.email, email_call(channels, key, recipient.email, content)))
    return sends


def send_poke(
    db: Session,
    sender: models.User,
    to_user_id: UUID,
    message: str | None,
    now: datetime,
    channels: Channels,
) -> tuple[models.Poke, list[DeliveryResult]]:
    """Record a poke and notify the checker; delivery failures never undo the poke."""

    link = circle_link_for(db, to_user_id, sender.id)
    if link is None or not link.can_poke:
        raise PokeNotAllowed("You cannot poke this user")
    recipient = db.get(models.User, to_user_id)

    poke = models.Poke(from_user_id=sender.id, to_user_id=to_user_id, message=message, sent_at=now)
    db.add(poke)
    db.commit()
    db.refresh(poke)
    POKE_COUNT.inc()

    results = execute_sends(_planned_sends(channels, link, sender, recipient, poke))
    for result in results:
        if result.outcome == "failed":
            logger.warning("Poke %s %s delivery failed: %s", poke.id, result.channel, result.error)
    return poke, results


def received_pokes(db: Session, user_id: UUID, limit: int = 20) -> list[models.Poke]:
    return (
        db.query(models.Poke)
        .filter(models.Poke.to_user_id == user_id)
        .order_by(models.Poke.sent_at.desc())
        .limit(limit)
        .all()
    )


def unseen_count(db: Session, user_id: UUID) -> int:
    return (
        db.query(models.Poke)
        .filter(models.Poke.to_user_id == user_id, models.Poke.seen_at.is_(None))
        .count()
    )


def _own_poke(db: Session, poke_id: UUID, user_id: UUID) -> models.Poke:
    poke = db.get(models.Poke, poke_id)
    if poke is None or poke.to_user_id != user_id:
        raise PokeNotFound(f"Poke {poke_id} not found")
    return poke


def mark_seen(db: Session, poke_id: UUID, user_id: UUID, now: datetime) -> models.Poke:
    poke = _own_poke(db, poke_id, user_id)
    if poke.seen_at is None:
        poke.seen_at = now
        db.commit()
    return poke


def mark_responded(db: Session, poke_id: UUID, user_id: UUID, now: datetime) -> models.Poke:
    poke = _own_poke(db, poke_id, user_id)
    poke.seen_at = poke.seen_at or now
    poke.responded_at = now
    db.commit()
    return poke


def mark_all_seen(db: Session, user_id: UUID, now: datetime) -> int:
    updated = (
        db.query(models.Poke)
        .filter(models.Poke.to_user_id == user_id, models.Poke.seen_at.is_(None))
        .update({models.Poke.seen_at: now}, synchronize_session=False)
    )
    db.commit()
    return updated
