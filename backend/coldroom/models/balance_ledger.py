"""BalanceLedgerEntry — durable loaded/remaining balance per size-group.

Keyed by the deterministic size-group `unique_key`.  SizeGroups are rebuilt
from CountingRecord + this table on every derivation pass, so this table is
the system of record for "how much of this bucket has already been moved".

`version` is an optimistic concurrency counter managed by SQLAlchemy: an
UPDATE issued against a stale row raises StaleDataError instead of silently
overwriting a concurrent increment.
"""

from datetime import datetime

from sqlalchemy import DateTime, Integer, JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from coldroom.database import Base


class BalanceLedgerEntry(Base):
    __tablename__ = "balance_ledger"

    unique_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    counting_record_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # ── Balance ──────────────────────────────────────────────
    total_quantity: Mapped[int] = mapped_column(Integer, default=0)
    loaded_quantity: Mapped[int] = mapped_column(Integer, default=0)
    remaining_quantity: Mapped[int] = mapped_column(Integer, default=0)

    # JSON list: [{"quantity": 200, "target_cold_room": "coldroom1",
    #              "timestamp": "2026-03-01T08:15:00"}, ...]
    loading_history: Mapped[list] = mapped_column(JSON, default=list)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __mapper_args__ = {"version_id_col": version}
