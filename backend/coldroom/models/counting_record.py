"""CountingRecord — one supplier delivery's classification result.

Created by the counting stage on the warehouse floor.  Box quantities are
keyed by `{variety}_{boxType}_{grade}_size{N}` strings, e.g.
`fuerte_4kg_class1_size24`:

  counting_totals  → originally counted quantity per bucket
  remaining_boxes  → quantity not yet loaded into any cold room, as
                     snapshotted by the counting stage

The loading engine never rewrites either map.  It only recomputes
`has_remaining_boxes` after each commit so fully loaded records drop out of
the loadable list while their history stays inspectable.
"""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from coldroom.database import Base


class CountingRecord(Base):
    __tablename__ = "counting_records"

    id: Mapped[str] = mapped_column(
        String(64), primary_key=True, default=lambda: str(uuid.uuid4())
    )

    # ── Supplier ─────────────────────────────────────────────
    supplier_name: Mapped[str] = mapped_column(String(255), nullable=False)
    region: Mapped[str | None] = mapped_column(String(100))

    # ── Counting result ──────────────────────────────────────
    counting_totals: Mapped[dict] = mapped_column(JSON, default=dict)
    remaining_boxes: Mapped[dict] = mapped_column(JSON, default=dict)

    # ── Loading state ────────────────────────────────────────
    has_remaining_boxes: Mapped[bool] = mapped_column(
        Boolean, default=True, index=True
    )

    # ── Metadata ─────────────────────────────────────────────
    submitted_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
