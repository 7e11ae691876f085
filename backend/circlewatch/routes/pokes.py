from datetime import datetime, timezone
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from ..database import get_db
from ..auth import get_current_user
from ..notify import Channels
from ..ratelimit import rate_limit
from ..services import pokes
from .. import models, schemas, pubsub
from .alerts import get_channels

router = APIRouter(prefix="/api/pokes", tags=["pokes"])


@router.post("", response_model=schemas.PokeOut, status_code=201)
@rate_limit("20/minute")
async def send_poke(
    request: Request,
    payload: schemas.PokeCreate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    channels: Channels = Depends(get_channels),
):
    now = datetime.now(timezone.utc)
    try:
        poke, _ = await run_in_threadpool(
            pokes.send_poke, db, user, payload.to_user_id, payload.message, now, channels
        )
    except pokes.PokeNotAllowed as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    await pubsub.publish_circle_event(
        payload.to_user_id,
        {"type": "poke_sent", "data": {"poke_id": poke.id, "from_user_id": user.id}, "timestamp": now},
    )
    return poke


@router.get("", response_model=list[schemas.PokeOut])
async def list_pokes(
    limit: int = Query(20, ge=1, le=50),
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return pokes.received_pokes(db, user.id, limit)


@router.get("/unseen/count", response_model=schemas.UnseenPokes)
async def unseen_pokes(
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return schemas.UnseenPokes(count=pokes.unseen_count(db, user.id))


@router.post("/seen/all")
async def mark_all_seen(
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return {"updated": pokes.mark_all_seen(db, user.id, datetime.now(timezone.utc))}


@router.post("/{poke_id}/seen", response_model=schemas.PokeOut)
async def mark_seen(
    poke_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    try:
        return pokes.mark_seen(db, poke_id, user.id, datetime.now(timezone.utc))
    except pokes.PokeNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.post("/{poke_id}/responded", response_model=schemas.PokeOut)
async def mark_responded(
    poke_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    try:
        return pokes.mark_responded(db, poke_id, user.id, datetime.now(timezone.utc))
    except pokes.PokeNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
