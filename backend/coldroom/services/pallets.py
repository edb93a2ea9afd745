"""Pallet consolidation and dissolution.

Consolidation claims quantities from unpalletized ColdRoomBox rows in one
cold room.  Taking a whole row links it to the pallet; taking part of a row
splits it:

    box A (qty 300, unpalletized)  --take 120-->  box A  (qty 180, unpalletized)
                                                  box A' (qty 120, pallet P,
                                                          split_from_id = A)

Dissolution walks the pallet's rows back into the unpalletized pool.  A row
whose identity already has an unpalletized sibling in the room is merged
into it (sibling += qty, row deleted); otherwise the row is simply unlinked.
The pallet itself is archived, never deleted.

Both operations flush but do not commit: the request session commits when
the handler returns.
"""

import logging
import math
import re
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from coldroom.config import settings
from coldroom.middleware.exceptions import (
    DataIntegrityError,
    LoadValidationError,
    ResourceNotFoundError,
)
from coldroom.models.cold_room_box import ColdRoomBox
from coldroom.models.pallet import Pallet
from coldroom.schemas.pallet import (
    ConsolidateRequest,
    ConsolidateResult,
    DissolveResult,
    PalletDetail,
)
from coldroom.utils.activity import log_activity
from coldroom.utils.numbering import generate_pallet_number

logger = logging.getLogger(__name__)

_WEIGHT_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*kg$", re.IGNORECASE)


# ── Box-type rules ───────────────────────────────────────────

def per_box_weight(box_type: str) -> float:
    """Net kilograms per box for a box type such as "4kg" or "10kg"."""
    match = _WEIGHT_RE.match(box_type.strip())
    if not match:
        raise LoadValidationError(
            f"Cannot derive box weight from box type {box_type!r}",
            details={"box_type": box_type},
        )
    return float(match.group(1))


def default_boxes_per_pallet(box_type: str) -> int | None:
    return {
        "4kg": settings.boxes_per_pallet_4kg,
        "10kg": settings.boxes_per_pallet_10kg,
    }.get(box_type.strip().lower())


def split_box(box: ColdRoomBox, take: int) -> ColdRoomBox:
    """Move `take` boxes off `box` into a new row with the same identity."""
    original = box.quantity
    if take <= 0 or take >= original:
        raise DataIntegrityError(
            f"Cannot split {take} box(es) off a row holding {original}",
            details={"cold_room_box_id": box.id, "take": take, "quantity": original},
        )
    taken = ColdRoomBox(
        variety=box.variety,
        box_type=box.box_type,
        grade=box.grade,
        size=box.size,
        unique_key=box.unique_key,
        quantity=take,
        cold_room_id=box.cold_room_id,
        supplier_name=box.supplier_name,
        region=box.region,
        source_counting_record_id=box.source_counting_record_id,
        split_from_id=box.id,
    )
    box.quantity = original - take
    return taken


async def load_pallet(
    db: AsyncSession, pallet_id: str, *, lock: bool = False
) -> Pallet | None:
    """Fetch a pallet with its boxes eagerly loaded."""
    stmt = (
        select(Pallet)
        .where(Pallet.id == pallet_id)
        .options(selectinload(Pallet.boxes))
        .execution_options(populate_existing=True)
    )
    if lock:
        stmt = stmt.with_for_update()
    return (await db.execute(stmt)).scalar_one_or_none()


# ── Consolidate ──────────────────────────────────────────────

async def consolidate_pallet(
    db: AsyncSession,
    request: ConsolidateRequest,
    actor: str | None = None,
) -> ConsolidateResult:
    name = request.name.strip()
    if not name:
        raise LoadValidationError("Pallet name is required")
    if request.cold_room_id not in settings.cold_room_ids:
        raise LoadValidationError(
            f"Unknown cold room: {request.cold_room_id}",
            details={"allowed": settings.cold_room_ids},
        )

    # Aggregate per box so two selections of the same row are checked together
    wanted: dict[str, int] = {}
    for selection in request.boxes:
        if selection.quantity < 0:
            raise LoadValidationError(
                f"Quantity for box {selection.cold_room_box_id} cannot be negative"
            )
        wanted[selection.cold_room_box_id] = (
            wanted.get(selection.cold_room_box_id, 0) + selection.quantity
        )
    wanted = {box_id: qty for box_id, qty in wanted.items() if qty > 0}
    total = sum(wanted.values())
    if total < 1:
        raise LoadValidationError("Select at least one box for the pallet")

    result = await db.execute(
        select(ColdRoomBox)
        .where(ColdRoomBox.id.in_(list(wanted)))
        .with_for_update()
    )
    boxes = {box.id: box for box in result.scalars().all()}

    for box_id, qty in wanted.items():
        box = boxes.get(box_id)
        if box is None:
            raise LoadValidationError(
                f"Cold-room box {box_id} not found",
                details={"cold_room_box_id": box_id},
            )
        if box.cold_room_id != request.cold_room_id:
            raise LoadValidationError(
                f"Box {box_id} is in {box.cold_room_id}, not {request.cold_room_id}",
                details={"cold_room_box_id": box_id},
            )
        if box.is_in_pallet:
            raise LoadValidationError(
                f"Box {box_id} is already on a pallet",
                details={"cold_room_box_id": box_id, "pallet_id": box.pallet_id},
            )
        if qty > box.available_quantity:
            raise LoadValidationError(
                f"Box {box_id}: requested {qty}, only {box.available_quantity} available",
                details={
                    "cold_room_box_id": box_id,
                    "requested": qty,
                    "available": box.available_quantity,
                },
            )

    selected = [boxes[box_id] for box_id in wanted]
    box_types = {box.box_type for box in selected}
    boxes_per_pallet = request.boxes_per_pallet
    if boxes_per_pallet is None:
        defaults = {default_boxes_per_pallet(bt) for bt in box_types}
        if len(defaults) != 1 or None in defaults:
            raise LoadValidationError(
                "boxes_per_pallet is required for mixed or unknown box types",
                details={"box_types": sorted(box_types)},
            )
        boxes_per_pallet = defaults.pop()

    total_weight = sum(wanted[box.id] * per_box_weight(box.box_type) for box in selected)

    full_pallets = total // boxes_per_pallet
    remainder = total % boxes_per_pallet
    max_pallets = math.ceil(total / boxes_per_pallet)
    confirmed = request.confirmed_pallet_count or 0
    if confirmed > max_pallets:
        raise LoadValidationError(
            f"{total} box(es) cannot fill {confirmed} pallet(s) of {boxes_per_pallet}",
            details={"max_pallets": max_pallets},
        )

    first = selected[0]
    pallet = Pallet(
        pallet_number=await generate_pallet_number(db),
        name=name,
        cold_room_id=request.cold_room_id,
        boxes_per_pallet=boxes_per_pallet,
        pallet_count=max(full_pallets, confirmed),
        variety=first.variety,
        box_type=first.box_type,
        grade=first.grade,
        size=first.size,
        total_boxes=total,
        total_weight_kg=round(total_weight, 2),
        status="active",
        notes=request.notes,
        created_by=actor,
    )
    db.add(pallet)
    await db.flush()

    split_ids: list[str] = []
    for box in selected:
        take = wanted[box.id]
        if take == box.quantity:
            linked = box
        else:
            linked = split_box(box, take)
            db.add(linked)
            split_ids.append(box.id)
        linked.is_in_pallet = True
        linked.pallet_id = pallet.id
    await db.flush()

    await log_activity(
        db, actor,
        action="consolidated",
        entity_type="pallet",
        entity_id=pallet.id,
        entity_code=pallet.pallet_number,
        summary=f"Consolidated {total} box(es) into {pallet.pallet_number}",
        details={
            "cold_room_id": pallet.cold_room_id,
            "boxes": wanted,
            "split_box_ids": split_ids,
        },
    )

    pallet = await load_pallet(db, pallet.id)
    message = f"{pallet.pallet_number}: {full_pallets} full pallet(s) of {boxes_per_pallet}"
    if remainder:
        message += f" + {remainder} box(es) on a partial pallet"

    logger.info(f"Consolidated {total} boxes into {pallet.pallet_number} ({pallet.cold_room_id})")
    return ConsolidateResult(
        pallet=PalletDetail.model_validate(pallet),
        full_pallets=full_pallets,
        remainder_boxes=remainder,
        split_box_ids=split_ids,
        message=message,
    )


# ── Dissolve ─────────────────────────────────────────────────

async def dissolve_pallet(
    db: AsyncSession,
    pallet_id: str,
    actor: str | None = None,
) -> DissolveResult:
    pallet = await load_pallet(db, pallet_id, lock=True)
    if pallet is None:
        raise ResourceNotFoundError("Pallet", pallet_id)
    if pallet.status != "active":
        raise LoadValidationError(
            f"Pallet {pallet.pallet_number} is already {pallet.status}",
            details={"pallet_id": pallet.id, "status": pallet.status},
        )

    linked = list(pallet.boxes)
    returned = sum(box.quantity for box in linked)
    if returned != pallet.total_boxes:
        logger.error(
            f"Pallet {pallet.pallet_number} holds {returned} box(es) "
            f"but records {pallet.total_boxes}"
        )
        raise DataIntegrityError(
            f"Pallet {pallet.pallet_number} box count mismatch: "
            f"linked {returned}, recorded {pallet.total_boxes}",
            details={
                "pallet_id": pallet.id,
                "linked_boxes": returned,
                "total_boxes": pallet.total_boxes,
            },
        )

    siblings: dict[tuple, ColdRoomBox] = {}
    if linked:
        result = await db.execute(
            select(ColdRoomBox)
            .where(
                ColdRoomBox.cold_room_id == pallet.cold_room_id,
                ColdRoomBox.is_in_pallet == False,  # noqa: E712
                ColdRoomBox.source_counting_record_id.in_(
                    sorted({box.source_counting_record_id for box in linked})
                ),
            )
            .order_by(ColdRoomBox.created_at)
            .with_for_update()
        )
        for box in result.scalars().all():
            siblings.setdefault(box.identity, box)

    merged: list[str] = []
    restored: list[str] = []
    for box in linked:
        pallet.boxes.remove(box)
        box.is_in_pallet = False
        box.pallet_id = None
        sibling = siblings.get(box.identity)
        if sibling is not None:
            sibling.quantity += box.quantity
            await db.delete(box)
            merged.append(sibling.id)
        else:
            siblings[box.identity] = box
            restored.append(box.id)

    pallet.status = "dissolved"
    pallet.dissolved_at = datetime.utcnow()
    pallet.boxes_returned = returned

    await log_activity(
        db, actor,
        action="dissolved",
        entity_type="pallet",
        entity_id=pallet.id,
        entity_code=pallet.pallet_number,
        summary=f"Dissolved {pallet.pallet_number}, {returned} box(es) returned",
        details={"merged_into": merged, "restored": restored},
    )
    await db.flush()

    logger.info(f"Dissolved {pallet.pallet_number}: {returned} boxes returned to {pallet.cold_room_id}")
    return DissolveResult(
        pallet_id=pallet.id,
        pallet_number=pallet.pallet_number,
        boxes_returned=returned,
        merged_box_ids=sorted(set(merged)),
        restored_box_ids=restored,
    )
