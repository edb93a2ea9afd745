"""Pallet router — consolidate cold-room boxes into pallets and back.

Endpoints:
  POST /api/pallets/                       Consolidate boxes into a new pallet
  GET  /api/pallets/                       List pallets (paginated)
  GET  /api/pallets/{pallet_id}            Single pallet with its boxes
  POST /api/pallets/{pallet_id}/dissolve   Return boxes to the room, archive pallet
"""

from fastapi import APIRouter, Depends, Query, status as http_status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from coldroom.database import get_db
from coldroom.middleware.exceptions import ResourceNotFoundError
from coldroom.models.pallet import Pallet
from coldroom.schemas.common import PaginatedResponse
from coldroom.schemas.pallet import (
    ConsolidateRequest,
    ConsolidateResult,
    DissolveResult,
    PalletDetail,
    PalletSummary,
)
from coldroom.services.pallets import consolidate_pallet, dissolve_pallet, load_pallet
from coldroom.utils.cache import invalidate_cache

router = APIRouter()


# ── POST /api/pallets/ ───────────────────────────────────────

@router.post(
    "/",
    response_model=ConsolidateResult,
    status_code=http_status.HTTP_201_CREATED,
)
async def create_pallet(
    body: ConsolidateRequest,
    db: AsyncSession = Depends(get_db),
):
    result = await consolidate_pallet(db, body, actor=body.actor)
    await invalidate_cache("stats:*")
    return result


# ── GET /api/pallets/ ────────────────────────────────────────

@router.get("/", response_model=PaginatedResponse[PalletSummary])
async def list_pallets(
    status: str | None = None,
    cold_room_id: str | None = None,
    search: str | None = Query(None),
    limit: int = Query(50, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    base = select(Pallet)
    if status:
        base = base.where(Pallet.status == status)
    if cold_room_id:
        base = base.where(Pallet.cold_room_id == cold_room_id)
    if search:
        q = f"%{search}%"
        base = base.where(Pallet.pallet_number.ilike(q) | Pallet.name.ilike(q))

    total = await db.scalar(select(func.count()).select_from(base.subquery())) or 0
    result = await db.execute(
        base.order_by(Pallet.created_at.desc()).limit(limit).offset(offset)
    )
    return PaginatedResponse(
        items=[PalletSummary.model_validate(p) for p in result.scalars().all()],
        total=total,
        limit=limit,
        offset=offset,
    )


# ── GET /api/pallets/{pallet_id} ─────────────────────────────

@router.get("/{pallet_id}", response_model=PalletDetail)
async def get_pallet(
    pallet_id: str,
    db: AsyncSession = Depends(get_db),
):
    pallet = await load_pallet(db, pallet_id)
    if pallet is None:
        raise ResourceNotFoundError("Pallet", pallet_id)
    return PalletDetail.model_validate(pallet)


# ── POST /api/pallets/{pallet_id}/dissolve ───────────────────

@router.post("/{pallet_id}/dissolve", response_model=DissolveResult)
async def dissolve(
    pallet_id: str,
    actor: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
):
    result = await dissolve_pallet(db, pallet_id, actor=actor)
    await invalidate_cache("stats:*")
    return result
