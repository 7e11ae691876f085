"""Twilio voice webhooks for hard-level alert calls.

The call plays the alert, then gathers one DTMF digit: 1 acknowledges, 2
reads the checker's contact details, anything else replays the message.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from sqlalchemy.orm import Session
from twilio.request_validator import RequestValidator
from twilio.twiml.voice_response import VoiceResponse

from ..database import get_db
from ..notify import templates
from ..services import alert_store, resolution
from .. import config, models

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/voice", tags=["voice"])

VOICE = "Polly.Joanna"


async def verify_twilio_signature(request: Request) -> dict:
    """Return the posted form; rejects unsigned requests when a Twilio token is configured."""

    form = dict(await request.form())
    auth_token = os.getenv("TWILIO_AUTH_TOKEN")
    if not auth_token:
        return form
    url = f"{config.API_URL}{request.url.path}"
    if request.url.query:
        url += f"?{request.url.query}"
    provided = request.headers.get("X-Twilio-Signature", "")
    if not RequestValidator(auth_token).validate(url, form, provided):
        raise HTTPException(status_code=403, detail="Invalid Twilio signature")
    return form


def twiml_response(twiml: VoiceResponse) -> Response:
    return Response(content=str(twiml), media_type="text/xml")


def _suffix(supporter_id: Optional[UUID]) -> str:
    return f"?supporter_id={supporter_id}" if supporter_id else ""


def _find_alert(db: Session, alert_id: UUID) -> Optional[models.AlertEvent]:
    try:
        return alert_store.get_alert(db, alert_id)
    except alert_store.AlertNotFound:
        return None


@router.post("/alert/{alert_id}")
async def alert_call(
    alert_id: UUID,
    supporter_id: Optional[UUID] = None,
    form: dict = Depends(verify_twilio_signature),
    db: Session = Depends(get_db),
):
    twiml = VoiceResponse()
    alert = _find_alert(db, alert_id)
    if alert is None or not alert.is_open:
        twiml.say("Sorry, this alert is no longer active. Goodbye.", voice=VOICE)
        twiml.hangup()
        return twiml_response(twiml)

    missed_at = alert_store.as_utc(alert.missed_window_at)
    hours = round((datetime.now(timezone.utc) - missed_at).total_seconds() / 3600)
    twiml.say("This is an urgent wellness alert from CircleWatch.", voice=VOICE)
    twiml.pause(length=1)
    twiml.say(
        f"{alert.checker_name or 'Your loved one'} has not checked in for {hours} hours. "
        "Please check on them immediately.",
        voice=VOICE,
    )
    twiml.pause(length=1)
    gather = twiml.gather(num_digits=1, action=f"/voice/response/{alert_id}{_suffix(supporter_id)}", timeout=10)
    gather.say(
        "Press 1 to acknowledge this alert. Press 2 to hear contact information. "
        "Press 9 to repeat this message.",
        voice=VOICE,
    )
    twiml.redirect(f"/voice/alert/{alert_id}{_suffix(supporter_id)}")
    return twiml_response(twiml)


def _caller_supporter(db: Session, supporter_id: Optional[UUID], called: Optional[str]) -> Optional[models.User]:
    if supporter_id is not None:
        return db.get(models.User, supporter_id)
    if called:
        return db.query(models.User).filter(models.User.phone_number == called).first()
    return None


def _upsert_call_log(
    db: Session,
    alert_id: UUID,
    call_sid: str,
    status: str,
    supporter_id: Optional[UUID] = None,
    duration: Optional[int] = None,
) -> models.CallLog:
    log = db.query(models.CallLog).filter(models.CallLog.call_sid == call_sid).first()
    if log is None:
        log = models.CallLog(alert_id=alert_id, call_sid=call_sid, status=status, supporter_id=supporter_id)
        db.add(log)
    else:
        log.status = status
        if supporter_id is not None:
            log.supporter_id = supporter_id
    if duration is not None:
        log.duration_seconds = duration
    db.commit()
    return log


def _acknowledge_by_phone(db: Session, alert: Optional[models.AlertEvent], supporter: Optional[models.User]) -> bool:
    """True when the alert is acknowledged, by this press or an earlier one."""

    if supporter is None or alert is None:
        return False
    try:
        resolution.acknowledge(db, alert.id, supporter, datetime.now(timezone.utc))
    except alert_store.NotCircleMember as exc:
        db.rollback()
        logger.info("Voice acknowledgment of alert %s not applied: %s", alert.id, exc)
        return False
    except alert_store.AlertStateConflict as exc:
        db.rollback()
        current = _find_alert(db, alert.id)
        if current is None or current.status != "acknowledged":
            logger.info("Voice acknowledgment of alert %s not applied: %s", alert.id, exc)
            return False
    return True


@router.post("/response/{alert_id}")
async def gather_response(
    alert_id: UUID,
    supporter_id: Optional[UUID] = None,
    form: dict = Depends(verify_twilio_signature),
    db: Session = Depends(get_db),
):
    digit = form.get("Digits")
    twiml = VoiceResponse()
    alert = _find_alert(db, alert_id)
    replay = f"/voice/alert/{alert_id}{_suffix(supporter_id)}"

    if digit == "1":
        supporter = _caller_supporter(db, supporter_id, form.get("Called"))
        if _acknowledge_by_phone(db, alert, supporter):
            _upsert_call_log(db, alert_id, form.get("CallSid") or "unknown", "acknowledged", supporter.id)
            twiml.say(
                "Thank you. The alert has been acknowledged. Please check on them as soon as possible. Goodbye.",
                voice=VOICE,
            )
        else:
            twiml.say(
                "Sorry, we could not record your acknowledgment. "
                "Please open the CircleWatch app to respond to this alert. Goodbye.",
                voice=VOICE,
            )
        twiml.hangup()
    elif digit == "2":
        checker = db.get(models.User, alert.checker_id) if alert is not None else None
        if checker is not None:
            spoken = templates.phone_for_speech(checker.phone_number)
            twiml.say(f"{checker.name}'s phone number is {spoken}.", voice=VOICE)
            twiml.pause(length=1)
            twiml.say(f"I repeat, {spoken}.", voice=VOICE)
            if checker.last_known_address:
                twiml.pause(length=1)
                twiml.say(f"Their last known location was {checker.last_known_address}.", voice=VOICE)
        else:
            twiml.say("Contact information is not available.", voice=VOICE)
        twiml.redirect(replay)
    else:
        twiml.redirect(replay)
    return twiml_response(twiml)


@router.post("/status/{alert_id}")
async def call_status(
    alert_id: UUID,
    supporter_id: Optional[UUID] = None,
    form: dict = Depends(verify_twilio_signature),
    db: Session = Depends(get_db),
):
    call_sid = form.get("CallSid")
    call_status = form.get("CallStatus") or "unknown"
    if not call_sid:
        return {"received": True}
    if _find_alert(db, alert_id) is None:
        return {"received": True, "error": "Unknown alert"}
    supporter = _caller_supporter(db, supporter_id, form.get("Called"))
    duration = form.get("CallDuration")
    logger.info("Voice call %s for alert %s is %s", call_sid, alert_id, call_status)
    _upsert_call_log(
        db,
        alert_id,
        call_sid,
        call_status,
        supporter.id if supporter is not None else None,
        int(duration) if duration and duration.isdigit() else None,
    )
    return {"received": True}
