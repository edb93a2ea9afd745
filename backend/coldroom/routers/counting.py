"""Counting-record intake — the hand-off point from the counting stage.

Endpoints:
  POST /api/counting-records/            Register a counted delivery
  GET  /api/counting-records/            List records (?loadable=true)
  GET  /api/counting-records/{id}        Single record
"""

from datetime import datetime

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from coldroom.database import get_db
from coldroom.middleware.exceptions import BusinessLogicError, ResourceNotFoundError
from coldroom.models.counting_record import CountingRecord
from coldroom.schemas.common import PaginatedResponse
from coldroom.schemas.counting import CountingRecordCreate, CountingRecordOut
from coldroom.services.size_groups import parse_quantity_map, record_size_keys

router = APIRouter()


# ── POST /api/counting-records/ ──────────────────────────────

@router.post("/", response_model=CountingRecordOut, status_code=status.HTTP_201_CREATED)
async def create_counting_record(
    body: CountingRecordCreate,
    db: AsyncSession = Depends(get_db),
):
    if body.id and await db.get(CountingRecord, body.id):
        raise BusinessLogicError(
            f"Counting record {body.id} already exists",
            error_code="DUPLICATE_RECORD",
        )

    record = CountingRecord(
        supplier_name=body.supplier_name.strip(),
        region=body.region,
        counting_totals=body.counting_totals,
        remaining_boxes=body.remaining_boxes,
        submitted_at=body.submitted_at or datetime.utcnow(),
    )
    if body.id:
        record.id = body.id

    totals = parse_quantity_map(record.counting_totals)
    record.has_remaining_boxes = any(
        totals.get(key, 0) > 0 for key in record_size_keys(record)
    )
    db.add(record)
    await db.flush()
    return record


# ── GET /api/counting-records/ ───────────────────────────────

@router.get("/", response_model=PaginatedResponse[CountingRecordOut])
async def list_counting_records(
    loadable: bool | None = None,
    supplier: str | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    base = select(CountingRecord)
    if loadable is not None:
        base = base.where(CountingRecord.has_remaining_boxes == loadable)
    if supplier:
        base = base.where(CountingRecord.supplier_name.ilike(f"%{supplier}%"))

    total = await db.scalar(select(func.count()).select_from(base.subquery())) or 0
    result = await db.execute(
        base.order_by(CountingRecord.submitted_at.desc()).limit(limit).offset(offset)
    )
    return PaginatedResponse(
        items=[CountingRecordOut.model_validate(r) for r in result.scalars().all()],
        total=total,
        limit=limit,
        offset=offset,
    )


# ── GET /api/counting-records/{record_id} ────────────────────

@router.get("/{record_id}", response_model=CountingRecordOut)
async def get_counting_record(
    record_id: str,
    db: AsyncSession = Depends(get_db),
):
    record = await db.get(CountingRecord, record_id)
    if record is None:
        raise ResourceNotFoundError("Counting record", record_id)
    return record
