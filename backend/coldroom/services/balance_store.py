"""Balance Store — durable loaded/remaining balance per size-group.

The `balance_ledger` table is the system of record.  Redis holds a
read-through mirror (see utils/cache.py) that is never written to directly:
reads fill it, commits invalidate it.

Write path (`record_load`):
    per-key asyncio lock
      → SELECT … FOR UPDATE on the ledger row
      → validate quantity against remaining
      → put_all([new entry])  (UPDATE guarded by the row version)

Read failures degrade to "no prior balance" so derivation keeps working
while the database or Redis is struggling; write failures propagate.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from coldroom.middleware.exceptions import (
    LoadValidationError,
    PersistenceError,
    StaleBalanceError,
)
from coldroom.models.balance_ledger import BalanceLedgerEntry
from coldroom.models.cold_room_box import ColdRoomBox
from coldroom.models.counting_record import CountingRecord
from coldroom.services.size_groups import (
    make_unique_key,
    parse_quantity_map,
    record_size_keys,
)
from coldroom.utils.activity import log_activity
from coldroom.utils.cache import (
    MirrorRead,
    mirror_fill,
    mirror_get_many,
    mirror_invalidate,
)
from coldroom.utils.locks import balance_locks

logger = logging.getLogger(__name__)


@dataclass
class LedgerEntry:
    """Detached snapshot of one ledger row."""
    unique_key: str
    counting_record_id: str
    total_quantity: int
    loaded_quantity: int
    remaining_quantity: int
    loading_history: list[dict] = field(default_factory=list)
    version: int | None = None

    @classmethod
    def from_row(cls, row: BalanceLedgerEntry) -> LedgerEntry:
        return cls(
            unique_key=row.unique_key,
            counting_record_id=row.counting_record_id,
            total_quantity=row.total_quantity,
            loaded_quantity=row.loaded_quantity,
            remaining_quantity=row.remaining_quantity,
            loading_history=list(row.loading_history or []),
            version=row.version,
        )

    def with_load(self, quantity: int, target_cold_room: str, at: datetime) -> LedgerEntry:
        loaded = self.loaded_quantity + quantity
        return LedgerEntry(
            unique_key=self.unique_key,
            counting_record_id=self.counting_record_id,
            total_quantity=self.total_quantity,
            loaded_quantity=loaded,
            remaining_quantity=max(0, self.total_quantity - loaded),
            loading_history=self.loading_history + [{
                "quantity": quantity,
                "target_cold_room": target_cold_room,
                "timestamp": at.isoformat(),
            }],
            version=self.version,
        )


@dataclass
class RebuiltBalance:
    unique_key: str
    previous_loaded: int | None
    rebuilt_loaded: int
    total_quantity: int

    @property
    def changed(self) -> bool:
        return self.previous_loaded != self.rebuilt_loaded

    @property
    def over_loaded(self) -> bool:
        return self.rebuilt_loaded > self.total_quantity


class BalanceStore:
    """Ledger access bound to one session."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self._written: set[str] = set()
        self._cleared = False

    # ── Reads ────────────────────────────────────────────────

    async def get(self, unique_key: str) -> LedgerEntry | None:
        entries = await self.get_many([unique_key])
        return entries.get(unique_key)

    async def get_many(
        self, unique_keys: list[str], *, use_mirror: bool = True
    ) -> dict[str, LedgerEntry]:
        """Mirror first, database for the misses; failures read as empty.

        `use_mirror=False` reads the ledger rows only, for callers that
        persist decisions derived from the balance.
        """
        keys = list(dict.fromkeys(unique_keys))
        if not keys:
            return {}

        read = await mirror_get_many(keys) if use_mirror else MirrorRead()
        entries = {key: LedgerEntry(**payload) for key, payload in read.hits.items()}
        missing = [k for k in keys if k not in entries]
        if not missing:
            return entries

        try:
            result = await self.db.execute(
                select(BalanceLedgerEntry)
                .where(BalanceLedgerEntry.unique_key.in_(missing))
                .execution_options(populate_existing=True)
            )
            rows = result.scalars().all()
        except SQLAlchemyError as e:
            logger.warning(f"Balance read failed, treating {len(missing)} key(s) as empty: {e}")
            return entries

        loaded = {row.unique_key: LedgerEntry.from_row(row) for row in rows}
        await mirror_fill({key: asdict(entry) for key, entry in loaded.items()}, read)
        entries.update(loaded)
        return entries

    # ── Writes ───────────────────────────────────────────────

    async def put_all(self, entries: list[LedgerEntry]) -> None:
        """Bulk upsert.

        An entry carrying a `version` must still match the stored row;
        otherwise the row changed since it was read and StaleBalanceError is
        raised.  Entries without a version overwrite unconditionally
        (administrative writes: reset, rebuild).
        """
        for entry in entries:
            row = await self.db.scalar(
                select(BalanceLedgerEntry)
                .where(BalanceLedgerEntry.unique_key == entry.unique_key)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            if row is None:
                if entry.version is not None:
                    raise StaleBalanceError(entry.unique_key)
                row = BalanceLedgerEntry(
                    unique_key=entry.unique_key,
                    counting_record_id=entry.counting_record_id,
                )
                self.db.add(row)
            elif entry.version is not None and row.version != entry.version:
                raise StaleBalanceError(entry.unique_key)

            row.total_quantity = entry.total_quantity
            row.loaded_quantity = entry.loaded_quantity
            row.remaining_quantity = entry.remaining_quantity
            row.loading_history = list(entry.loading_history)
            self._written.add(entry.unique_key)

        await self.db.flush()

    async def record_load(
        self,
        *,
        unique_key: str,
        counting_record_id: str,
        total_quantity: int,
        quantity: int,
        target_cold_room: str,
        at: datetime | None = None,
    ) -> LedgerEntry:
        """Apply one load to the ledger inside the per-key critical section.

        Raises LoadValidationError if `quantity` exceeds what is left.
        """
        try:
            async with balance_locks.hold(unique_key):
                current = await self._locked_entry(unique_key, counting_record_id, total_quantity)
                if quantity <= 0:
                    raise LoadValidationError(
                        f"Loading quantity must be positive, got {quantity}",
                        details={"unique_key": unique_key},
                    )
                if quantity > current.remaining_quantity:
                    raise LoadValidationError(
                        f"Cannot load {quantity} box(es): only "
                        f"{current.remaining_quantity} remaining for {unique_key}",
                        details={
                            "unique_key": unique_key,
                            "remaining_quantity": current.remaining_quantity,
                        },
                    )
                updated = current.with_load(quantity, target_cold_room, at or datetime.utcnow())
                await self.put_all([updated])
                return updated
        except asyncio.TimeoutError as exc:
            raise PersistenceError(f"Timed out waiting for balance lock on {unique_key}") from exc

    async def _locked_entry(
        self, unique_key: str, counting_record_id: str, total_quantity: int
    ) -> LedgerEntry:
        row = await self.db.scalar(
            select(BalanceLedgerEntry)
            .where(BalanceLedgerEntry.unique_key == unique_key)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if row is None:
            return LedgerEntry(
                unique_key=unique_key,
                counting_record_id=counting_record_id,
                total_quantity=total_quantity,
                loaded_quantity=0,
                remaining_quantity=total_quantity,
            )
        entry = LedgerEntry.from_row(row)
        # Counted totals are authoritative; keep the row in step with them
        entry.total_quantity = total_quantity
        entry.remaining_quantity = max(0, total_quantity - entry.loaded_quantity)
        return entry

    async def reset(self, unique_key: str, actor: str | None = None) -> LedgerEntry | None:
        """Administrative override: loaded → 0, history cleared."""
        row = await self.db.scalar(
            select(BalanceLedgerEntry)
            .where(BalanceLedgerEntry.unique_key == unique_key)
            .with_for_update()
        )
        if row is None:
            return None

        previous_loaded = row.loaded_quantity
        entry = LedgerEntry(
            unique_key=row.unique_key,
            counting_record_id=row.counting_record_id,
            total_quantity=row.total_quantity,
            loaded_quantity=0,
            remaining_quantity=row.total_quantity,
        )
        await self.put_all([entry])

        record = await self.db.get(CountingRecord, row.counting_record_id)
        if record is not None and entry.remaining_quantity > 0:
            record.has_remaining_boxes = True

        await log_activity(
            self.db, actor,
            action="balance_reset",
            entity_type="balance_ledger",
            entity_id=unique_key,
            summary=f"Reset balance for {unique_key} (was {previous_loaded} loaded)",
            details={"previous_loaded": previous_loaded},
        )
        logger.info("Balance reset for %s (was %d loaded)", unique_key, previous_loaded)
        return entry

    async def clear_all(self, actor: str | None = None) -> int:
        """Wipe the whole ledger ("start over")."""
        count = await self.db.scalar(select(func.count()).select_from(BalanceLedgerEntry))
        await self.db.execute(delete(BalanceLedgerEntry))
        self._cleared = True

        records = (await self.db.execute(select(CountingRecord))).scalars().all()
        for record in records:
            totals = parse_quantity_map(record.counting_totals)
            record.has_remaining_boxes = any(
                totals.get(key, 0) > 0 for key in record_size_keys(record)
            )

        await log_activity(
            self.db, actor,
            action="balances_cleared",
            entity_type="balance_ledger",
            summary=f"Cleared {count or 0} balance entries",
        )
        logger.warning("Balance ledger cleared (%d entries)", count or 0)
        return int(count or 0)

    async def rebuild_from_inventory(
        self,
        record_ids: list[str] | None = None,
        actor: str | None = None,
    ) -> list[RebuiltBalance]:
        """Recompute loaded quantities from ColdRoomBox presence.

        Maintenance repair path for a lost or corrupted ledger.  Loaded is
        the sum of every box row (palletized or not) traced to the bucket;
        history is rebuilt as one entry per cold room.
        """
        stmt = select(CountingRecord)
        if record_ids:
            stmt = stmt.where(CountingRecord.id.in_(record_ids))
        records = (await self.db.execute(stmt)).scalars().all()

        report: list[RebuiltBalance] = []
        for record in records:
            totals = parse_quantity_map(record.counting_totals)
            keys = record_size_keys(record)
            if not keys:
                continue

            box_rows = await self.db.execute(
                select(
                    ColdRoomBox.unique_key,
                    ColdRoomBox.cold_room_id,
                    func.coalesce(func.sum(ColdRoomBox.quantity), 0),
                    func.min(ColdRoomBox.created_at),
                )
                .where(ColdRoomBox.source_counting_record_id == record.id)
                .group_by(ColdRoomBox.unique_key, ColdRoomBox.cold_room_id)
            )
            per_key: dict[str, list[tuple[str, int, datetime | None]]] = {}
            for unique_key, room, quantity, first_at in box_rows.all():
                per_key.setdefault(unique_key, []).append((room, int(quantity), first_at))

            unique_keys = [make_unique_key(record.id, key) for key in keys]
            existing = await self.get_many(unique_keys)

            entries: list[LedgerEntry] = []
            for key, unique_key in zip(keys, unique_keys):
                placements = sorted(per_key.get(unique_key, []), key=lambda p: p[0])
                loaded = sum(q for _, q, _ in placements)
                total = totals.get(key, 0)
                previous = existing.get(unique_key)
                item = RebuiltBalance(
                    unique_key=unique_key,
                    previous_loaded=previous.loaded_quantity if previous else None,
                    rebuilt_loaded=loaded,
                    total_quantity=total,
                )
                if item.over_loaded:
                    logger.warning(
                        "Inventory holds %d box(es) for %s but only %d were counted",
                        loaded, unique_key, total,
                    )
                report.append(item)
                entries.append(LedgerEntry(
                    unique_key=unique_key,
                    counting_record_id=record.id,
                    total_quantity=total,
                    loaded_quantity=loaded,
                    remaining_quantity=max(0, total - loaded),
                    loading_history=[
                        {
                            "quantity": quantity,
                            "target_cold_room": room,
                            "timestamp": (first_at or datetime.utcnow()).isoformat(),
                            "rebuilt": True,
                        }
                        for room, quantity, first_at in placements
                    ],
                ))
            await self.put_all(entries)

            record.has_remaining_boxes = any(
                e.remaining_quantity > 0 for e in entries
            )

        changed = [item for item in report if item.changed]
        await log_activity(
            self.db, actor,
            action="balances_rebuilt",
            entity_type="balance_ledger",
            summary=f"Rebuilt {len(report)} balance(s) from inventory, {len(changed)} changed",
            details={"changed": [item.unique_key for item in changed]},
        )
        logger.info("Rebuilt %d balances from inventory (%d changed)", len(report), len(changed))
        return report

    # ── Transaction boundary ─────────────────────────────────

    async def commit(self) -> None:
        """Commit the session, then drop mirrored copies of written keys."""
        await self.db.commit()
        if self._cleared:
            await mirror_invalidate(None)
        else:
            await mirror_invalidate(sorted(self._written))
        self._written.clear()
        self._cleared = False

    async def rollback(self) -> None:
        await self.db.rollback()
        self._written.clear()
        self._cleared = False
