"""Load Committer — move staged size-group loads into cold-room inventory.

Each load is its own transaction:

  1. structural validation (quantity, cold room, record, bucket)
  2. duplicate guard against boxes already in the target room
  3. ledger update under the per-key lock, held until the commit
  4. one ColdRoomBox row for the loaded quantity
  5. commit, then drop the mirrored balance

A failure on one load is reported on that item and never undoes another.
Once the batch is done, every touched counting record gets its
`has_remaining_boxes` flag recomputed from its size-groups.
"""

import asyncio
import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from coldroom.config import settings
from coldroom.middleware.exceptions import (
    DuplicateLoadError,
    LoadValidationError,
    PersistenceError,
)
from coldroom.models.cold_room_box import ColdRoomBox
from coldroom.models.counting_record import CountingRecord
from coldroom.schemas.loading import (
    ColdRoomBoxOut,
    CommitResult,
    LedgerEntryOut,
    LoadItemResult,
    SizeGroupLoad,
)
from coldroom.services.balance_store import BalanceStore
from coldroom.services.duplicate_guard import check_duplicate
from coldroom.services.size_groups import (
    derive_for_records,
    parse_quantity_map,
    record_size_keys,
)
from coldroom.utils.activity import log_activity
from coldroom.utils.cache import invalidate_cache
from coldroom.utils.locks import balance_locks
from coldroom.utils.retry import with_retries

logger = logging.getLogger(__name__)


async def _validated_record(db: AsyncSession, load: SizeGroupLoad) -> CountingRecord:
    """Structural checks that need no balance information."""
    if load.quantity <= 0:
        raise LoadValidationError(
            f"Loading quantity must be positive, got {load.quantity}",
            details={"unique_key": load.unique_key},
        )
    if load.target_cold_room not in settings.cold_room_ids:
        raise LoadValidationError(
            f"Unknown cold room: {load.target_cold_room}",
            details={"allowed": settings.cold_room_ids},
        )

    record = await db.scalar(
        select(CountingRecord)
        .where(CountingRecord.id == load.counting_record_id)
        .execution_options(populate_existing=True)
    )
    if record is None:
        raise LoadValidationError(
            f"Counting record not found: {load.counting_record_id}",
            details={"counting_record_id": load.counting_record_id},
        )
    if load.key not in record_size_keys(record):
        raise LoadValidationError(
            f"{load.key.as_field()} has no remaining boxes on record {record.id}",
            details={"unique_key": load.unique_key},
        )
    return record


async def _commit_one(
    db: AsyncSession, load: SizeGroupLoad, actor: str | None
) -> LoadItemResult:
    store = BalanceStore(db)

    async def apply() -> LoadItemResult:
        record = await _validated_record(db, load)

        duplicate = await check_duplicate(db, load)
        if duplicate.already_exists:
            raise DuplicateLoadError(
                load.unique_key, load.target_cold_room, duplicate.existing_quantity
            )

        totals = parse_quantity_map(record.counting_totals)
        entry = await store.record_load(
            unique_key=load.unique_key,
            counting_record_id=record.id,
            total_quantity=totals.get(load.key, 0),
            quantity=load.quantity,
            target_cold_room=load.target_cold_room,
        )

        box = ColdRoomBox(
            variety=load.variety,
            box_type=load.box_type,
            grade=load.grade,
            size=load.size,
            unique_key=load.unique_key,
            quantity=load.quantity,
            cold_room_id=load.target_cold_room,
            supplier_name=record.supplier_name,
            region=record.region,
            source_counting_record_id=record.id,
            is_in_pallet=False,
        )
        db.add(box)
        await log_activity(
            db, actor,
            action="loaded",
            entity_type="size_group",
            entity_id=load.unique_key,
            summary=f"Loaded {load.quantity} box(es) into {load.target_cold_room}",
            details={
                "quantity": load.quantity,
                "target_cold_room": load.target_cold_room,
                "remaining_quantity": entry.remaining_quantity,
            },
        )
        await db.flush()
        await store.commit()

        return LoadItemResult(
            unique_key=load.unique_key,
            target_cold_room=load.target_cold_room,
            quantity=load.quantity,
            status="committed",
            box=ColdRoomBoxOut.model_validate(box),
            ledger=LedgerEntryOut.model_validate(entry),
        )

    async def attempt() -> LoadItemResult:
        try:
            async with balance_locks.hold(load.unique_key):
                return await apply()
        except asyncio.TimeoutError as exc:
            raise PersistenceError(
                f"Timed out waiting for balance lock on {load.unique_key}"
            ) from exc

    base = dict(
        unique_key=load.unique_key,
        target_cold_room=load.target_cold_room,
        quantity=load.quantity,
    )
    try:
        return await with_retries(
            attempt, label=f"Load {load.unique_key}", on_retry=store.rollback
        )
    except DuplicateLoadError as e:
        await store.rollback()
        logger.warning(f"Skipping duplicate load: {e.message}")
        return LoadItemResult(
            **base,
            status="skipped_duplicate",
            error_code=e.error_code,
            message=e.message,
            existing_quantity=e.existing_quantity,
        )
    except LoadValidationError as e:
        await store.rollback()
        logger.info(f"Rejected load {load.unique_key}: {e.message}")
        return LoadItemResult(
            **base, status="invalid", error_code=e.error_code, message=e.message
        )
    except PersistenceError as e:
        await store.rollback()
        logger.error(f"Load {load.unique_key} failed: {e.message}")
        return LoadItemResult(
            **base, status="failed", error_code=e.error_code, message=e.message
        )
    except SQLAlchemyError as e:
        await store.rollback()
        logger.error(f"Load {load.unique_key} failed: {e}")
        return LoadItemResult(
            **base,
            status="failed",
            error_code="PERSISTENCE_ERROR",
            message="Database error while committing load",
        )


async def refresh_remaining_flags(db: AsyncSession, record_ids: list[str]) -> list[str]:
    """Recompute `has_remaining_boxes`; returns the ids that are now exhausted."""
    if not record_ids:
        return []

    groups = await derive_for_records(db, record_ids, use_mirror=False)
    loadable = {g.counting_record_id for g in groups if g.loadable}

    exhausted: list[str] = []
    result = await db.execute(
        select(CountingRecord).where(CountingRecord.id.in_(record_ids))
    )
    for record in result.scalars().all():
        record.has_remaining_boxes = record.id in loadable
        if not record.has_remaining_boxes:
            exhausted.append(record.id)
    await db.commit()
    return sorted(exhausted)


def _overall_status(committed: int, skipped: int, total: int) -> str:
    if committed == total:
        return "success"
    if committed == 0 and skipped == 0:
        return "failed"
    return "partial"


async def commit_loads(
    db: AsyncSession,
    loads: list[SizeGroupLoad],
    actor: str | None = None,
) -> CommitResult:
    """Commit a batch of loads, one transaction per size-group."""
    items: list[LoadItemResult] = []
    for load in loads:
        items.append(await _commit_one(db, load, actor))

    committed = [item for item in items if item.status == "committed"]
    touched = list(dict.fromkeys(
        load.counting_record_id
        for load, item in zip(loads, items)
        if item.status == "committed"
    ))

    exhausted: list[str] = []
    if touched:
        try:
            exhausted = await refresh_remaining_flags(db, touched)
        except SQLAlchemyError as e:
            await db.rollback()
            logger.warning(f"Could not refresh remaining flags for {touched}: {e}")
        await invalidate_cache("stats:*")

    skipped = sum(1 for item in items if item.status == "skipped_duplicate")
    invalid = sum(1 for item in items if item.status == "invalid")
    failed = sum(1 for item in items if item.status == "failed")
    status = _overall_status(len(committed), skipped, len(items))

    message = f"{len(committed)} of {len(items)} load(s) committed"
    if skipped:
        message += f", {skipped} skipped as duplicate"
    if invalid:
        message += f", {invalid} invalid"
    if failed:
        message += f", {failed} failed"

    logger.info(f"Commit batch: {message}")
    return CommitResult(
        status=status,
        committed_count=len(committed),
        skipped_count=skipped,
        invalid_count=invalid,
        failed_count=failed,
        items=items,
        committed_boxes=[item.box for item in committed if item.box],
        updated_ledger_entries=[item.ledger for item in committed if item.ledger],
        exhausted_record_ids=exhausted,
        message=message,
    )
