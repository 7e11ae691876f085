from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..database import get_db
from .. import models, schemas, auth
from ..services import alert_store

router = APIRouter(prefix="/api/users", tags=["users"])


@router.get("/me", response_model=schemas.UserOut)
async def read_profile(current_user: models.User = Depends(auth.get_current_user)):
    return current_user


@router.get("/me/schedule", response_model=schemas.ScheduleOut)
async def read_schedule(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    schedule = alert_store.active_schedule_for(db, current_user.id)
    if schedule is None:
        raise HTTPException(status_code=404, detail="No active schedule")
    return schedule


@router.put("/me/schedule", response_model=schemas.ScheduleOut)
async def replace_schedule(
    payload: schemas.ScheduleIn,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    # the old row is kept for history; only one row may be active
    (
        db.query(models.Schedule)
        .filter(models.Schedule.user_id == current_user.id, models.Schedule.is_active.is_(True))
        .update({models.Schedule.is_active: False}, synchronize_session=False)
    )
    db.flush()
    schedule = models.Schedule(user_id=current_user.id, is_active=True, **payload.model_dump())
    db.add(schedule)
    db.commit()
    db.refresh(schedule)
    return schedule


@router.post("/me/push-token")
async def register_push_token(
    payload: schemas.PushTokenIn,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    existing = (
        db.query(models.PushToken)
        .filter(models.PushToken.user_id == current_user.id, models.PushToken.token == payload.token)
        .first()
    )
    if existing:
        existing.platform = payload.platform
        existing.device_id = payload.device_id
        existing.updated_at = datetime.now(timezone.utc)
    else:
        db.add(
            models.PushToken(
                user_id=current_user.id,
                token=payload.token,
                platform=payload.platform,
                device_id=payload.device_id,
            )
        )
    db.commit()
    return {"status": "registered"}


@router.delete("/me/push-token")
async def remove_push_token(
    payload: schemas.PushTokenDelete,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    deleted = (
        db.query(models.PushToken)
        .filter(models.PushToken.user_id == current_user.id, models.PushToken.token == payload.token)
        .delete(synchronize_session=False)
    )
    db.commit()
    return {"status": "removed", "removed": deleted}
