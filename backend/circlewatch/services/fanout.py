"""Notification fan-out for an alert that just reached a level.

A fan-out pass is planned in the calling thread (all database reads happen
there), executed on a short-lived thread pool, then joined and written back
with a single ``record_dispatch`` call. Every send is wrapped so that an
exception or a hung provider becomes a failed ``DeliveryResult`` for that
one recipient and channel.
"""

from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable

from prometheus_client import Counter, Histogram
from sqlalchemy.orm import Session

from .. import config, models
from ..notify import Channels, templates
from .alert_store import DeliveryResult, active_supporters_for, as_utc, last_check_in, record_dispatch

logger = logging.getLogger(__name__)

# purpose: decide who hears about an alert level and over which channels, then deliver concurrently
# status: active
# depends_on: circlewatch.notify, circlewatch.services.alert_store

FANOUT_MAX_WORKERS = 16

DELIVERY_COUNT = Counter(
    "circlewatch_deliveries_total",
    "Alert notification attempts by channel and outcome",
    ["channel", "outcome"],
)
FANOUT_LATENCY = Histogram(
    "circlewatch_fanout_seconds",
    "Wall time of one alert fan-out pass",
    ["level"],
)

SMS_LEVELS = ("hard", "escalation")
VOICE_LEVELS = ("hard",)


@dataclass
class PlannedSend:
    channel: str
    supporter_key: str | None
    recipient: str
    call: Callable[[], DeliveryResult]


def select_recipients(level: str, links: Iterable[models.CircleLink]) -> list[models.CircleLink]:
    """Supporters to contact for ``level``, in alert-priority order.

    Reminders never reach the circle; soft alerts go to primary contacts only.
    Links that are inactive or still pending acceptance are never returned.
    """

    eligible = [link for link in links if link.is_active and link.accepted_at is not None]
    eligible.sort(key=lambda link: link.alert_priority)
    if level == "soft":
        return [link for link in eligible if link.alert_priority == 1]
    if level in ("hard", "escalation"):
        return eligible
    return []


def note_unconfigured(channel: str, notices: set[str]) -> None:
    if channel not in notices:
        notices.add(channel)
        logger.info("%s channel is not configured; skipping its sends this tick", channel)


def _skipped(channel: str, supporter_key: str | None, recipient: str | None, reason: str) -> DeliveryResult:
    return DeliveryResult(
        channel=channel,
        outcome="skipped",
        supporter_key=supporter_key,
        recipient=recipient,
        error=reason,
    )


def push_call(channels: Channels, user_id, supporter_key, message: dict, data: dict):
    def run() -> DeliveryResult:
        results = channels.push.send(
            user_id,
            message["title"],
            message["body"],
            data,
            category=message.get("category"),
            interruption_level=message.get("interruption_level"),
        )
        recipient = str(user_id)
        if not results:
            return _skipped("push", supporter_key, recipient, "no registered devices")
        delivered = [r for r in results if r.success]
        if delivered:
            return DeliveryResult(
                channel="push",
                outcome="sent",
                supporter_key=supporter_key,
                recipient=recipient,
                provider_id=delivered[0].apns_id,
            )
        return DeliveryResult(
            channel="push",
            outcome="failed",
            supporter_key=supporter_key,
            recipient=recipient,
            error="; ".join(r.error or "unknown" for r in results),
        )

    return run


def sms_call(channels: Channels, supporter_key, to_e164: str, body: str):
    def run() -> DeliveryResult:
        sid = channels.sms.send(to_e164, body)
        return DeliveryResult("sms", "sent", supporter_key, to_e164, provider_id=sid)

    return run


def email_call(channels: Channels, supporter_key, to_address: str, content: dict):
    def run() -> DeliveryResult:
        result = channels.email.send(to_address, content)
        return DeliveryResult("email", "sent", supporter_key, to_address, provider_id=result.message_id)

    return run


def _voice_call(channels: Channels, supporter_key, to_e164: str, callback_url: str, status_url: str):
    def run() -> DeliveryResult:
        sid = channels.voice.initiate_call(to_e164, callback_url, status_url)
        if sid is None:
            return _skipped("voice", supporter_key, to_e164, "voice not configured")
        return DeliveryResult("voice", "sent", supporter_key, to_e164, provider_id=sid)

    return run


def _voice_urls(alert: models.AlertEvent, link: models.CircleLink) -> tuple[str, str]:
    query = f"?supporter_id={link.supporter_id}" if link.supporter_id else ""
    return (
        f"{config.API_URL}/voice/alert/{alert.id}{query}",
        f"{config.API_URL}/voice/status/{alert.id}{query}",
    )


def plan_sends(
    db: Session,
    alert: models.AlertEvent,
    level: str,
    channels: Channels,
    now: datetime,
    notices: set[str],
) -> tuple[list[PlannedSend], list[DeliveryResult]]:
    """Build the send list for one level; returns (sends, pre-skipped results)."""

    sends: list[PlannedSend] = []
    skipped: list[DeliveryResult] = []

    if level == "reminder":
        if not channels.push.configured:
            note_unconfigured("push", notices)
            return sends, [_skipped("push", None, str(alert.checker_id), "push not configured")]
        message = templates.reminder_push()
        data = {"type": "checkin_reminder", "alert_id": str(alert.id)}
        sends.append(
            PlannedSend("push", None, str(alert.checker_id), push_call(channels, alert.checker_id, None, message, data))
        )
        return sends, skipped

    checker = db.get(models.User, alert.checker_id)
    checker_phone = checker.phone_number if checker is not None else None
    last = last_check_in(db, alert.checker_id)
    last_mood = (
        {"mental": last.mental_score, "body": last.body_score, "mood": last.mood_score}
        if last is not None
        else None
    )
    last_seen = as_utc(alert.last_checkin_at)
    missed_at = as_utc(alert.missed_window_at)
    hours_since_missed = max((now - missed_at).total_seconds() / 3600, 0)

    for link in select_recipients(level, active_supporters_for(db, alert.checker_id)):
        key = link.supporter_key
        location = alert.last_known_location if link.can_see_location else None

        if link.alert_via_push and link.supporter_id is not None:
            if channels.push.configured:
                message = templates.alert_push(level, alert.checker_name, hours_since_missed)
                data = {"type": "alert", "alert_id": str(alert.id), "level": level}
                sends.append(
                    PlannedSend("push", key, str(link.supporter_id), push_call(channels, link.supporter_id, key, message, data))
                )
            else:
                note_unconfigured("push", notices)
                skipped.append(_skipped("push", key, str(link.supporter_id), "push not configured"))

        email_address = link.contact_email
        if link.alert_via_email and email_address:
            if channels.email.configured:
                content = templates.email_content(
                    level,
                    alert.checker_name,
                    link.display_name,
                    last_check_in=last_seen,
                    last_location=location,
                    last_mood=last_mood if link.can_see_mood else None,
                )
                sends.append(PlannedSend("email", key, email_address, email_call(channels, key, email_address, content)))
            else:
                note_unconfigured("email", notices)
                skipped.append(_skipped("email", key, email_address, "email not configured"))

        phone = link.contact_phone
        if not phone:
            continue
        to_e164 = templates.format_phone_e164(phone)

        if link.alert_via_sms and level in SMS_LEVELS:
            if channels.sms.configured:
                body = templates.sms_body(
                    level,
                    alert.checker_name,
                    address=location,
                    phone=checker_phone,
                    last_check_in=last_seen,
                    ack_url=f"{config.API_URL}/alerts/{alert.id}",
                )
                sends.append(PlannedSend("sms", key, to_e164, sms_call(channels, key, to_e164, body)))
            else:
                note_unconfigured("sms", notices)
                skipped.append(_skipped("sms", key, to_e164, "sms not configured"))

        if level in VOICE_LEVELS:
            if channels.voice.configured:
                callback_url, status_url = _voice_urls(alert, link)
                sends.append(
                    PlannedSend("voice", key, to_e164, _voice_call(channels, key, to_e164, callback_url, status_url))
                )
            else:
                note_unconfigured("voice", notices)
                skipped.append(_skipped("voice", key, to_e164, "voice not configured"))

    return sends, skipped


def _guarded(send: PlannedSend) -> DeliveryResult:
    try:
        return send.call()
    except Exception as exc:  # every provider failure is a result, not a crash
        return DeliveryResult(send.channel, "failed", send.supporter_key, send.recipient, error=str(exc) or type(exc).__name__)


def execute_sends(sends: list[PlannedSend], timeout: float | None = None) -> list[DeliveryResult]:
    """Run sends concurrently and join them; unfinished sends fail with a timeout."""

    if not sends:
        return []
    timeout = config.NOTIFICATION_TIMEOUT_SECONDS if timeout is None else timeout
    workers = min(len(sends), FANOUT_MAX_WORKERS)
    budget = timeout * math.ceil(len(sends) / workers)
    pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="fanout")
    try:
        futures = [pool.submit(_guarded, send) for send in sends]
        wait(futures, timeout=budget)
        results = []
        for send, future in zip(sends, futures):
            if future.done():
                results.append(future.result())
            else:
                future.cancel()
                results.append(
                    DeliveryResult(
                        send.channel,
                        "failed",
                        send.supporter_key,
                        send.recipient,
                        error=f"timed out after {timeout:g}s",
                    )
                )
        return results
    finally:
        # hung provider calls are abandoned, not awaited
        pool.shutdown(wait=False, cancel_futures=True)


def dispatch(
    db: Session,
    alert: models.AlertEvent,
    level: str,
    channels: Channels,
    now: datetime,
    notices: set[str] | None = None,
) -> list[DeliveryResult]:
    """Fan out ``level`` for ``alert`` and persist the joined results."""

    notices = notices if notices is not None else set()
    with FANOUT_LATENCY.labels(level).time():
        sends, skipped = plan_sends(db, alert, level, channels, now, notices)
        results = skipped + execute_sends(sends)

    for result in results:
        DELIVERY_COUNT.labels(result.channel, result.outcome).inc()
        if result.outcome == "failed":
            logger.warning(
                "Alert %s %s delivery to supporter %s failed: %s",
                alert.id,
                result.channel,
                result.supporter_key or "checker",
                result.error,
            )
    record_dispatch(db, alert.id, level, results, now)
    return results
