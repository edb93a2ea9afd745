"""Pallet — a consolidation of one or more ColdRoomBox quantities.

Pallets are built in the cold room from unpalletized box rows.  The
capacity (`boxes_per_pallet`) comes from the box type: 288 for 4kg boxes,
120 for 10kg crates.  A pallet may carry a non-full remainder; the number
of complete pallets is floor(total_boxes / boxes_per_pallet).

Dissolving a pallet returns every constituent box to the unpalletized pool
and archives the record rather than deleting it.

Lifecycle:  active → dissolved
"""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from coldroom.database import Base


class Pallet(Base):
    __tablename__ = "pallets"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    pallet_number: Mapped[str] = mapped_column(
        String(50), unique=True, nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)

    # ── Location & capacity ──────────────────────────────────
    cold_room_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    boxes_per_pallet: Mapped[int] = mapped_column(Integer, default=288)
    pallet_count: Mapped[int] = mapped_column(Integer, default=0)

    # ── Fruit identification (from first box, for fast queries) ──
    variety: Mapped[str | None] = mapped_column(String(50))
    box_type: Mapped[str | None] = mapped_column(String(20))
    grade: Mapped[str | None] = mapped_column(String(20))
    size: Mapped[str | None] = mapped_column(String(20))

    # ── Aggregates ───────────────────────────────────────────
    total_boxes: Mapped[int] = mapped_column(Integer, default=0)
    total_weight_kg: Mapped[float] = mapped_column(Float, default=0.0)

    # ── Status ───────────────────────────────────────────────
    # active | dissolved
    status: Mapped[str] = mapped_column(String(30), default="active", index=True)
    dissolved_at: Mapped[datetime | None] = mapped_column(DateTime)
    boxes_returned: Mapped[int | None] = mapped_column(Integer)

    # ── Metadata ─────────────────────────────────────────────
    notes: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[str | None] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    # ── Relationships ────────────────────────────────────────
    boxes = relationship("ColdRoomBox", back_populates="pallet")
