"""Cold-room loading — size-groups, duplicate checks, commits, balances.

Endpoints:
  POST   /api/loading/size-groups              Derive size-groups for records
  POST   /api/loading/check-duplicates         Dry-run the duplicate guard
  POST   /api/loading/commit                   Commit loads (per-group txns)
  GET    /api/loading/balances/{unique_key}    Ledger entry for one group
  POST   /api/loading/balances/reset           Reset one group to 0 loaded
  DELETE /api/loading/balances?confirm=true    Wipe the ledger
  POST   /api/loading/balances/rebuild         Rebuild ledger from inventory
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from coldroom.database import get_db
from coldroom.middleware.exceptions import LoadValidationError, ResourceNotFoundError
from coldroom.schemas.loading import (
    ClearBalancesResult,
    CommitResult,
    DeriveSizeGroupsRequest,
    DuplicateCheckResult,
    LedgerEntryOut,
    LoadBatchRequest,
    RebuildBalancesRequest,
    RebuildBalancesResult,
    RebuiltBalanceOut,
    ResetBalanceRequest,
    SizeGroupOut,
)
from coldroom.services.balance_store import BalanceStore
from coldroom.services.duplicate_guard import check_duplicates
from coldroom.services.loading import commit_loads
from coldroom.services.size_groups import derive_for_records

router = APIRouter()


# ── Size groups ──────────────────────────────────────────────

@router.post("/size-groups", response_model=list[SizeGroupOut])
async def derive_size_groups(
    body: DeriveSizeGroupsRequest,
    db: AsyncSession = Depends(get_db),
):
    groups = await derive_for_records(db, body.counting_record_ids)
    if body.loadable_only:
        groups = [g for g in groups if g.loadable]
    return [
        SizeGroupOut(
            unique_key=g.unique_key,
            counting_record_id=g.counting_record_id,
            supplier_name=g.supplier_name,
            region=g.region,
            variety=g.variety,
            box_type=g.box_type,
            grade=g.grade,
            size=g.size,
            total_quantity=g.total_quantity,
            loaded_quantity=g.loaded_quantity,
            remaining_quantity=g.remaining_quantity,
            loadable=g.loadable,
            loading_history=g.loading_history,
        )
        for g in groups
    ]


# ── Loads ────────────────────────────────────────────────────

@router.post("/check-duplicates", response_model=list[DuplicateCheckResult])
async def check_load_duplicates(
    body: LoadBatchRequest,
    db: AsyncSession = Depends(get_db),
):
    return await check_duplicates(db, body.loads)


@router.post("/commit", response_model=CommitResult)
async def commit_load_batch(
    body: LoadBatchRequest,
    db: AsyncSession = Depends(get_db),
):
    """Commit a batch; per-item outcomes are in the body, never an HTTP error."""
    return await commit_loads(db, body.loads, actor=body.actor)


# ── Balance administration ──────────────────────────────────

@router.get("/balances/{unique_key:path}", response_model=LedgerEntryOut)
async def get_balance(
    unique_key: str,
    db: AsyncSession = Depends(get_db),
):
    entry = await BalanceStore(db).get(unique_key)
    if entry is None:
        raise ResourceNotFoundError("Balance", unique_key)
    return LedgerEntryOut.model_validate(entry)


@router.post("/balances/reset", response_model=LedgerEntryOut)
async def reset_balance(
    body: ResetBalanceRequest,
    db: AsyncSession = Depends(get_db),
):
    store = BalanceStore(db)
    entry = await store.reset(body.unique_key, actor=body.actor)
    if entry is None:
        raise ResourceNotFoundError("Balance", body.unique_key)
    await store.commit()
    return LedgerEntryOut.model_validate(entry)


@router.delete("/balances", response_model=ClearBalancesResult)
async def clear_balances(
    confirm: bool = Query(False),
    actor: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
):
    if not confirm:
        raise LoadValidationError("Clearing every balance requires confirm=true")
    store = BalanceStore(db)
    cleared = await store.clear_all(actor=actor)
    await store.commit()
    return ClearBalancesResult(cleared=cleared)


@router.post("/balances/rebuild", response_model=RebuildBalancesResult)
async def rebuild_balances(
    body: RebuildBalancesRequest,
    db: AsyncSession = Depends(get_db),
):
    store = BalanceStore(db)
    report = await store.rebuild_from_inventory(body.counting_record_ids, actor=body.actor)
    await store.commit()
    items = [RebuiltBalanceOut.model_validate(item) for item in report]
    return RebuildBalancesResult(
        rebuilt=len(items),
        changed=sum(1 for item in items if item.changed),
        items=items,
    )
