from datetime import datetime, timezone
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..database import get_db
from ..auth import get_current_user
from ..ratelimit import rate_limit
from .. import models, schemas, pubsub

router = APIRouter(prefix="/api/circle", tags=["circle"])


def _owned_link(db: Session, link_id: UUID, user: models.User) -> models.CircleLink:
    link = db.get(models.CircleLink, link_id)
    if link is None or link.checker_id != user.id:
        raise HTTPException(status_code=404, detail="Circle member not found")
    return link


@router.get("", response_model=list[schemas.CircleLinkOut])
async def list_circle(
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return (
        db.query(models.CircleLink)
        .filter(models.CircleLink.checker_id == user.id, models.CircleLink.is_active.is_(True))
        .order_by(models.CircleLink.alert_priority.asc(), models.CircleLink.created_at.asc())
        .all()
    )


@router.get("/supporting", response_model=list[schemas.CircleLinkOut])
async def list_supporting(
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return (
        db.query(models.CircleLink)
        .filter(models.CircleLink.supporter_id == user.id, models.CircleLink.is_active.is_(True))
        .order_by(models.CircleLink.created_at.asc())
        .all()
    )


@router.post("/members", response_model=schemas.CircleLinkOut)
@rate_limit("20/minute")
async def add_member(
    request: Request,
    payload: schemas.CircleMemberCreate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    if payload.supporter_id is not None:
        if payload.supporter_id == user.id:
            raise HTTPException(status_code=400, detail="You cannot support yourself")
        if db.get(models.User, payload.supporter_id) is None:
            raise HTTPException(status_code=404, detail="Supporter not found")
        removed = (
            db.query(models.CircleLink)
            .filter(
                models.CircleLink.checker_id == user.id,
                models.CircleLink.supporter_id == payload.supporter_id,
                models.CircleLink.is_active.is_(False),
            )
            .first()
        )
        if removed is not None:
            # re-inviting a removed supporter starts a fresh pending invite
            for key, value in payload.model_dump().items():
                setattr(removed, key, value)
            removed.is_active = True
            removed.accepted_at = None
            removed.invited_at = datetime.now(timezone.utc)
            db.commit()
            db.refresh(removed)
            return removed
    link = models.CircleLink(checker_id=user.id, **payload.model_dump())
    if payload.supporter_id is None:
        # contact-only supporters have no app to accept from
        link.accepted_at = datetime.now(timezone.utc)
    db.add(link)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Already in your circle")
    db.refresh(link)
    if link.supporter_id is not None:
        await pubsub.publish_circle_event(
            user.id,
            {"type": "circle_invite", "data": {"link_id": link.id, "supporter_id": link.supporter_id}},
        )
    return link


@router.patch("/members/{link_id}", response_model=schemas.CircleLinkOut)
async def update_member(
    link_id: UUID,
    payload: schemas.CircleMemberUpdate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    link = _owned_link(db, link_id, user)
    for key, value in payload.model_dump(exclude_unset=True).items():
        setattr(link, key, value)
    db.commit()
    db.refresh(link)
    return link


@router.delete("/members/{link_id}")
async def remove_member(
    link_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    link = _owned_link(db, link_id, user)
    link.is_active = False
    db.commit()
    return {"status": "removed"}


@router.post("/members/{link_id}/accept", response_model=schemas.CircleLinkOut)
async def accept_invite(
    link_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    link = db.get(models.CircleLink, link_id)
    if link is None or link.supporter_id != user.id or not link.is_active:
        raise HTTPException(status_code=404, detail="Invite not found")
    if link.accepted_at is None:
        link.accepted_at = datetime.now(timezone.utc)
        db.commit()
        db.refresh(link)
    return link
