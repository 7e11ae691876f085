from datetime import datetime, timezone
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from ..database import get_db
from ..auth import get_current_user
from ..notify import Channels, default_channels
from ..ratelimit import rate_limit
from ..services import alert_store, resolution
from .. import models, schemas, pubsub

router = APIRouter(prefix="/api/alerts", tags=["alerts"])


def get_channels() -> Channels:
    return default_channels()


def _http_error(db: Session, exc: Exception) -> HTTPException:
    db.rollback()
    if isinstance(exc, alert_store.AlertNotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, alert_store.NotCircleMember):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
    if isinstance(exc, (alert_store.AlertStateConflict, alert_store.DuplicateOpenAlert)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


async def _publish(alert: models.AlertEvent, event_type: str, **data) -> None:
    await pubsub.publish_circle_event(
        alert.checker_id,
        {
            "type": event_type,
            "data": {"alert_id": alert.id, "level": alert.level, "status": alert.status, **data},
            "timestamp": datetime.now(timezone.utc),
        },
    )


@router.get("/mine", response_model=list[schemas.AlertOut])
async def my_alerts(
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return (
        db.query(models.AlertEvent)
        .filter(models.AlertEvent.checker_id == user.id)
        .order_by(models.AlertEvent.triggered_at.desc())
        .limit(limit)
        .all()
    )


@router.get("", response_model=list[schemas.AlertOut])
async def circle_alerts(
    open_only: bool = Query(False, description="Only pending, sent or acknowledged alerts"),
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    checker_ids = [
        row.checker_id
        for row in db.query(models.CircleLink.checker_id)
        .filter(
            models.CircleLink.supporter_id == user.id,
            models.CircleLink.is_active.is_(True),
            models.CircleLink.accepted_at.isnot(None),
        )
    ]
    query = db.query(models.AlertEvent).filter(models.AlertEvent.checker_id.in_(checker_ids))
    if open_only:
        query = query.filter(models.AlertEvent.status.in_(models.OPEN_ALERT_STATUSES))
    return query.order_by(models.AlertEvent.triggered_at.desc()).limit(limit).all()


@router.post("/trigger", response_model=schemas.AlertOut)
@rate_limit("5/minute")
async def trigger_alert(
    request: Request,
    payload: schemas.AlertTriggerIn,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    channels: Channels = Depends(get_channels),
):
    try:
        alert = await run_in_threadpool(
            resolution.trigger, db, user, payload.level, datetime.now(timezone.utc), channels
        )
    except alert_store.AlertError as exc:
        raise _http_error(db, exc) from exc
    await _publish(alert, "alert_triggered")
    return alert


@router.get("/{alert_id}", response_model=schemas.AlertDetailOut)
async def read_alert(
    alert_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    try:
        alert = alert_store.get_alert(db, alert_id)
        resolution.ensure_can_view(db, alert, user)
    except alert_store.AlertError as exc:
        raise _http_error(db, exc) from exc
    return alert


@router.post("/{alert_id}/acknowledge", response_model=schemas.AlertOut)
async def acknowledge_alert(
    alert_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    try:
        alert = resolution.acknowledge(db, alert_id, user, datetime.now(timezone.utc))
    except alert_store.AlertError as exc:
        raise _http_error(db, exc) from exc
    await _publish(alert, "alert_acknowledged", acknowledged_by=user.id)
    return alert


@router.post("/{alert_id}/resolve", response_model=schemas.AlertOut)
async def resolve_alert(
    alert_id: UUID,
    payload: schemas.AlertResolveIn,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    try:
        alert = resolution.resolve_manually(
            db, alert_id, user, payload.resolution, payload.notes, datetime.now(timezone.utc)
        )
    except alert_store.AlertError as exc:
        raise _http_error(db, exc) from exc
    await _publish(alert, "alert_resolved", resolution=payload.resolution)
    return alert


@router.post("/{alert_id}/cancel", response_model=schemas.AlertOut)
async def cancel_alert(
    alert_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    try:
        alert = resolution.cancel(db, alert_id, user, datetime.now(timezone.utc))
    except alert_store.AlertError as exc:
        raise _http_error(db, exc) from exc
    await _publish(alert, "alert_cancelled")
    return alert
