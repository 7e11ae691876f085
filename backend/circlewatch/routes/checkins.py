from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from ..database import get_db
from ..auth import get_current_user
from ..ratelimit import rate_limit
from ..services import alert_store, resolution, schedule_eval
from .. import models, schemas, pubsub

router = APIRouter(prefix="/api/checkins", tags=["checkins"])


@router.post("", response_model=schemas.CheckInResult)
@rate_limit("30/minute")
async def create_checkin(
    request: Request,
    payload: schemas.CheckInCreate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    now = datetime.now(timezone.utc)
    checkin = models.CheckIn(user_id=user.id, timestamp=now, **payload.model_dump())
    db.add(checkin)
    if payload.latitude is not None and payload.longitude is not None:
        user.last_known_latitude = payload.latitude
        user.last_known_longitude = payload.longitude
        user.last_known_address = payload.address or payload.location_name
        user.last_known_location_at = now
    db.commit()
    db.refresh(checkin)

    resolved = resolution.on_check_in(db, user, now)
    await pubsub.publish_circle_event(
        user.id,
        {
            "type": "checkin_recorded",
            "data": {"checkin_id": checkin.id, "average_score": round(checkin.average_score, 2)},
            "timestamp": now,
        },
    )
    for alert_id in resolved:
        await pubsub.publish_circle_event(
            user.id,
            {"type": "alert_resolved", "data": {"alert_id": alert_id, "resolution": "checked_in"}, "timestamp": now},
        )
    return schemas.CheckInResult(
        checkin=schemas.CheckInOut.model_validate(checkin),
        resolved_alert_ids=resolved,
    )


@router.get("/today", response_model=list[schemas.CheckInOut])
async def todays_checkins(
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    schedule = alert_store.active_schedule_for(db, user.id)
    tz = schedule.timezone_identifier if schedule else "UTC"
    start, end = schedule_eval.day_bounds_utc(tz, datetime.now(timezone.utc))
    return (
        db.query(models.CheckIn)
        .filter(
            models.CheckIn.user_id == user.id,
            models.CheckIn.timestamp >= start,
            models.CheckIn.timestamp < end,
        )
        .order_by(models.CheckIn.timestamp.desc())
        .all()
    )


@router.get("", response_model=list[schemas.CheckInOut])
async def checkin_history(
    limit: int = Query(30, ge=1, le=200),
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return (
        db.query(models.CheckIn)
        .filter(models.CheckIn.user_id == user.id)
        .order_by(models.CheckIn.timestamp.desc())
        .limit(limit)
        .all()
    )
