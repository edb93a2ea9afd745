"""Size-group derivation — counting records + balance ledger → SizeGroups.

A size-group is one bucket of boxes (variety × box type × grade × size)
scoped to one counting record.  Counting records carry their buckets as
flat string keys such as `fuerte_4kg_class1_size24`; those keys are parsed
exactly once, here, into a typed `SizeKey`, and nothing downstream handles
the raw strings.

`derive_size_groups()` is a pure function of its inputs: the same records
and ledger always produce the same groups in the same order.  Callers
re-derive after each commit to pick up the new balance.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from coldroom.models.counting_record import CountingRecord

logger = logging.getLogger(__name__)

_SIZE_RE = re.compile(r"^(?:size)?(\d+)$", re.IGNORECASE)


# ── Keys ─────────────────────────────────────────────────────


def normalize_size(token: str) -> str | None:
    """Return the canonical `sizeNN` form, or None if not a size token.

    >>> normalize_size("24"), normalize_size("size24"), normalize_size("size_24")
    ('size24', 'size24', 'size24')
    """
    match = _SIZE_RE.match(token.replace("_", "").strip())
    if not match:
        return None
    return f"size{int(match.group(1))}"


@dataclass(frozen=True, order=True)
class SizeKey:
    variety: str
    box_type: str
    grade: str
    size: str

    @classmethod
    def parse(cls, raw: str) -> SizeKey | None:
        """Parse `{variety}_{boxType}_{grade}_size{N}`; None when malformed."""
        parts = [p for p in raw.strip().split("_") if p]
        if len(parts) < 4:
            return None
        size = normalize_size("".join(parts[3:]))
        if size is None:
            return None
        return cls(
            variety=parts[0].lower(),
            box_type=parts[1].lower(),
            grade=parts[2].lower(),
            size=size,
        )

    def as_field(self) -> str:
        """Canonical counting-record field name."""
        return f"{self.variety}_{self.box_type}_{self.grade}_{self.size}"


def make_unique_key(counting_record_id: str, key: SizeKey) -> str:
    """Deterministic size-group identity."""
    return f"{counting_record_id}|{key.variety}|{key.box_type}|{key.grade}|{key.size}"


def parse_quantity_map(raw: Mapping[str, object] | None) -> dict[SizeKey, int]:
    """Parse a `{field: quantity}` map into `{SizeKey: quantity}`.

    When a bucket appears under both spellings (`..._24` and `..._size24`),
    the canonical spelling wins.
    """
    parsed: dict[SizeKey, int] = {}
    canonical: set[SizeKey] = set()
    for field_name, value in (raw or {}).items():
        key = SizeKey.parse(field_name)
        if key is None:
            continue
        try:
            quantity = int(value or 0)
        except (TypeError, ValueError):
            logger.warning("Ignoring non-numeric quantity %r for %s", value, field_name)
            continue
        is_canonical = field_name.strip().lower() == key.as_field()
        if key in canonical and not is_canonical:
            continue
        parsed[key] = max(0, quantity)
        if is_canonical:
            canonical.add(key)
    return parsed


# ── Size groups ──────────────────────────────────────────────


class CountingSource(Protocol):
    id: str
    supplier_name: str
    region: str | None
    counting_totals: Mapping[str, object]
    remaining_boxes: Mapping[str, object]


class LedgerView(Protocol):
    loaded_quantity: int
    loading_history: list


@dataclass
class SizeGroup:
    unique_key: str
    counting_record_id: str
    supplier_name: str
    region: str | None
    key: SizeKey
    total_quantity: int
    loaded_quantity: int
    remaining_quantity: int
    loading_history: list[dict] = field(default_factory=list)

    @property
    def variety(self) -> str:
        return self.key.variety

    @property
    def box_type(self) -> str:
        return self.key.box_type

    @property
    def grade(self) -> str:
        return self.key.grade

    @property
    def size(self) -> str:
        return self.key.size

    @property
    def loadable(self) -> bool:
        return self.remaining_quantity > 0


def build_size_group(
    record: CountingSource,
    key: SizeKey,
    totals: Mapping[SizeKey, int],
    ledger_entry: LedgerView | None,
) -> SizeGroup:
    """Merge one bucket of a counting record with its ledger entry."""
    original = totals.get(key, 0)
    loaded = ledger_entry.loaded_quantity if ledger_entry else 0
    return SizeGroup(
        unique_key=make_unique_key(record.id, key),
        counting_record_id=record.id,
        supplier_name=record.supplier_name,
        region=record.region,
        key=key,
        total_quantity=original,
        loaded_quantity=loaded,
        remaining_quantity=max(0, original - loaded),
        loading_history=list(ledger_entry.loading_history) if ledger_entry else [],
    )


def record_size_keys(record: CountingSource) -> list[SizeKey]:
    """Buckets of a record that still had boxes when it was counted."""
    remaining = parse_quantity_map(record.remaining_boxes)
    return sorted(key for key, quantity in remaining.items() if quantity > 0)


def derive_size_groups(
    records: Iterable[CountingSource],
    ledger: Mapping[str, LedgerView],
) -> list[SizeGroup]:
    """Build the current SizeGroups for the given records.

    Buckets whose original quantity cannot be found in `counting_totals`
    (stale or renamed keys) come back with zero remaining and are never
    loadable.
    """
    groups: list[SizeGroup] = []
    for record in records:
        totals = parse_quantity_map(record.counting_totals)
        for key in record_size_keys(record):
            if key not in totals:
                logger.warning(
                    "Counting record %s has remaining boxes for %s but no counted total",
                    record.id, key.as_field(),
                )
            unique_key = make_unique_key(record.id, key)
            groups.append(build_size_group(record, key, totals, ledger.get(unique_key)))

    groups.sort(key=lambda g: (-g.remaining_quantity, g.size, g.unique_key))
    return groups


def size_group_keys(records: Iterable[CountingSource]) -> list[str]:
    return [
        make_unique_key(record.id, key)
        for record in records
        for key in record_size_keys(record)
    ]


async def load_counting_records(
    db: AsyncSession, record_ids: list[str]
) -> list[CountingRecord]:
    """Load records in request order, silently skipping unknown ids."""
    if not record_ids:
        return []
    result = await db.execute(
        select(CountingRecord).where(CountingRecord.id.in_(record_ids))
    )
    by_id = {record.id: record for record in result.scalars().all()}
    return [by_id[rid] for rid in dict.fromkeys(record_ids) if rid in by_id]


async def derive_for_records(
    db: AsyncSession, record_ids: list[str], *, use_mirror: bool = True
) -> list[SizeGroup]:
    """Load records + ledger and derive their size-groups."""
    from coldroom.services.balance_store import BalanceStore  # deferred to avoid circular

    records = await load_counting_records(db, record_ids)
    ledger = await BalanceStore(db).get_many(size_group_keys(records), use_mirror=use_mirror)
    return derive_size_groups(records, ledger)
