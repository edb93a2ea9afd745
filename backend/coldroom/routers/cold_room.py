"""Cold-room inventory views.

Endpoints:
  GET /api/cold-room/         Configured rooms with occupancy
  GET /api/cold-room/boxes    Box inventory (?cold_room_id=&available=true)
  GET /api/cold-room/stats    Per-room and overall statistics (cached)
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from coldroom.config import settings
from coldroom.database import get_db
from coldroom.middleware.exceptions import ResourceNotFoundError
from coldroom.schemas.cold_room import ColdRoomOut, ColdRoomStats
from coldroom.schemas.common import PaginatedResponse
from coldroom.schemas.loading import ColdRoomBoxOut
from coldroom.services import inventory

router = APIRouter()


def _known_room(cold_room_id: str | None) -> str | None:
    if cold_room_id and cold_room_id not in settings.cold_room_ids:
        raise ResourceNotFoundError("Cold room", cold_room_id)
    return cold_room_id


@router.get("/", response_model=list[ColdRoomOut])
async def list_cold_rooms(db: AsyncSession = Depends(get_db)):
    return await inventory.list_cold_rooms(db)


@router.get("/boxes", response_model=PaginatedResponse[ColdRoomBoxOut])
async def list_boxes(
    cold_room_id: str | None = None,
    available: bool = False,
    counting_record_id: str | None = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    return await inventory.list_boxes(
        db,
        cold_room_id=_known_room(cold_room_id),
        available_only=available,
        counting_record_id=counting_record_id,
        limit=limit,
        offset=offset,
    )


@router.get("/stats", response_model=ColdRoomStats)
async def cold_room_stats(
    cold_room_id: str | None = None,
    db: AsyncSession = Depends(get_db),
):
    """Box and pallet totals (TTL: 1 minute, invalidated on inventory change)."""
    return await inventory.cold_room_stats(db=db, cold_room_id=_known_room(cold_room_id))
