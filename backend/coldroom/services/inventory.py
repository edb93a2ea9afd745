"""Read-only cold-room inventory views: room catalogue, box listing, stats."""

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from coldroom.config import settings
from coldroom.models.cold_room_box import ColdRoomBox
from coldroom.models.pallet import Pallet
from coldroom.schemas.cold_room import BreakdownRow, ColdRoomOut, ColdRoomStats, RoomStats
from coldroom.schemas.common import PaginatedResponse
from coldroom.schemas.loading import ColdRoomBoxOut
from coldroom.services.pallets import default_boxes_per_pallet
from coldroom.utils.cache import cached


def pallet_equivalent(box_type: str, quantity: int) -> int:
    """Complete pallets a single box row could fill; 0 for unknown box types."""
    per_pallet = default_boxes_per_pallet(box_type)
    return quantity // per_pallet if per_pallet else 0


async def _active_pallets(db: AsyncSession) -> dict[str, int]:
    result = await db.execute(
        select(Pallet.cold_room_id, func.count(Pallet.id))
        .where(Pallet.status == "active")
        .group_by(Pallet.cold_room_id)
    )
    return {room: count for room, count in result.all()}


async def list_cold_rooms(db: AsyncSession) -> list[ColdRoomOut]:
    rooms = {room: ColdRoomOut(id=room) for room in settings.cold_room_ids}

    result = await db.execute(
        select(
            ColdRoomBox.cold_room_id,
            ColdRoomBox.box_type,
            ColdRoomBox.is_in_pallet,
            ColdRoomBox.quantity,
        ).where(ColdRoomBox.cold_room_id.in_(list(rooms)))
    )
    for room_id, box_type, in_pallet, quantity in result.all():
        room = rooms[room_id]
        room.total_boxes += quantity
        if in_pallet:
            room.palletized_boxes += quantity
        else:
            room.available_boxes += quantity
        room.estimated_pallets += pallet_equivalent(box_type, quantity)

    for room_id, count in (await _active_pallets(db)).items():
        if room_id in rooms:
            rooms[room_id].active_pallets = count
    return list(rooms.values())


async def list_boxes(
    db: AsyncSession,
    *,
    cold_room_id: str | None = None,
    available_only: bool = False,
    counting_record_id: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> PaginatedResponse[ColdRoomBoxOut]:
    base = select(ColdRoomBox)
    if cold_room_id:
        base = base.where(ColdRoomBox.cold_room_id == cold_room_id)
    if available_only:
        base = base.where(ColdRoomBox.is_in_pallet == False)  # noqa: E712
    if counting_record_id:
        base = base.where(ColdRoomBox.source_counting_record_id == counting_record_id)

    total = await db.scalar(select(func.count()).select_from(base.subquery())) or 0
    result = await db.execute(
        base.order_by(ColdRoomBox.created_at.desc(), ColdRoomBox.id).limit(limit).offset(offset)
    )
    return PaginatedResponse(
        items=[ColdRoomBoxOut.model_validate(b) for b in result.scalars().all()],
        total=total,
        limit=limit,
        offset=offset,
    )


def _accumulate(stats: RoomStats, breakdown: dict, box_type: str, variety: str,
                grade: str, in_pallet: bool, quantity: int) -> None:
    stats.total_boxes += quantity
    if in_pallet:
        stats.palletized_boxes += quantity
    else:
        stats.available_boxes += quantity
    stats.boxes_by_type[box_type] = stats.boxes_by_type.get(box_type, 0) + quantity
    pallets = pallet_equivalent(box_type, quantity)
    stats.pallet_equivalents[box_type] = stats.pallet_equivalents.get(box_type, 0) + pallets
    stats.total_pallet_equivalents += pallets
    key = (variety, grade, box_type)
    breakdown[key] = breakdown.get(key, 0) + quantity


@cached(ttl=60, prefix="stats")
async def cold_room_stats(
    db: AsyncSession = None,
    cold_room_id: str | None = None,
) -> ColdRoomStats:
    """Per-room and overall totals by box type, pallet equivalents and fruit."""
    room_ids = [cold_room_id] if cold_room_id else settings.cold_room_ids
    rooms = {room: RoomStats(cold_room_id=room) for room in room_ids}
    overall = RoomStats(cold_room_id="all")
    breakdowns: dict[str, dict] = {room: {} for room in room_ids}
    overall_breakdown: dict = {}

    result = await db.execute(
        select(
            ColdRoomBox.cold_room_id,
            ColdRoomBox.box_type,
            ColdRoomBox.variety,
            ColdRoomBox.grade,
            ColdRoomBox.is_in_pallet,
            ColdRoomBox.quantity,
        ).where(ColdRoomBox.cold_room_id.in_(room_ids))
    )
    for room_id, box_type, variety, grade, in_pallet, quantity in result.all():
        _accumulate(rooms[room_id], breakdowns[room_id],
                    box_type, variety, grade, in_pallet, quantity)
        _accumulate(overall, overall_breakdown,
                    box_type, variety, grade, in_pallet, quantity)

    for room_id, count in (await _active_pallets(db)).items():
        if room_id in rooms:
            rooms[room_id].active_pallets = count
            overall.active_pallets += count

    def rows(breakdown: dict) -> list[BreakdownRow]:
        return [
            BreakdownRow(variety=v, grade=g, box_type=bt, quantity=q)
            for (v, g, bt), q in sorted(breakdown.items())
        ]

    for room_id, stats in rooms.items():
        stats.breakdown = rows(breakdowns[room_id])
    overall.breakdown = rows(overall_breakdown)

    return ColdRoomStats(rooms=list(rooms.values()), overall=overall)
