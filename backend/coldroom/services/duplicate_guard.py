"""Duplicate / overrun guard — runs right before each load is committed.

A load is a duplicate when the target cold room already holds at least the
requested quantity for the same bucket of the same counting record.  Rows
that were split off into pallets still count: they are the same physical
boxes.  Retries, double submits and reload-then-resubmit therefore find
their own earlier boxes and are skipped instead of inserted twice.
"""

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from coldroom.models.cold_room_box import ColdRoomBox
from coldroom.schemas.loading import DuplicateCheckResult, SizeGroupLoad


async def existing_quantity(db: AsyncSession, load: SizeGroupLoad) -> int:
    result = await db.scalar(
        select(func.coalesce(func.sum(ColdRoomBox.quantity), 0)).where(
            ColdRoomBox.variety == load.variety,
            ColdRoomBox.box_type == load.box_type,
            ColdRoomBox.grade == load.grade,
            ColdRoomBox.size == load.size,
            ColdRoomBox.source_counting_record_id == load.counting_record_id,
            ColdRoomBox.cold_room_id == load.target_cold_room,
        )
    )
    return int(result or 0)


async def check_duplicate(db: AsyncSession, load: SizeGroupLoad) -> DuplicateCheckResult:
    existing = await existing_quantity(db, load)
    return DuplicateCheckResult(
        unique_key=load.unique_key,
        target_cold_room=load.target_cold_room,
        requested_quantity=load.quantity,
        existing_quantity=existing,
        already_exists=existing > 0 and existing >= load.quantity,
    )


async def check_duplicates(
    db: AsyncSession, loads: list[SizeGroupLoad]
) -> list[DuplicateCheckResult]:
    return [await check_duplicate(db, load) for load in loads]
