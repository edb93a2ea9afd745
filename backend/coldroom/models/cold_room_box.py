"""ColdRoomBox — a physical batch of boxes sitting in a cold room.

One row is written per committed size-group load.  Consolidation either
links the whole row to a pallet or splits it: the residual stays
unpalletized and a new pallet-linked row (with `split_from_id` pointing at
the original) carries the taken quantity.  Dissolution merges pallet rows
back into an unpalletized sibling with the same identity:

  {variety, box_type, grade, size, source_counting_record_id, cold_room_id}
"""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from coldroom.database import Base


class ColdRoomBox(Base):
    __tablename__ = "cold_room_boxes"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )

    # ── Bucket identity ──────────────────────────────────────
    variety: Mapped[str] = mapped_column(String(50), nullable=False)
    box_type: Mapped[str] = mapped_column(String(20), nullable=False)
    grade: Mapped[str] = mapped_column(String(20), nullable=False)
    size: Mapped[str] = mapped_column(String(20), nullable=False)
    unique_key: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    # ── Quantity & location ──────────────────────────────────
    quantity: Mapped[int] = mapped_column(Integer, default=0)
    cold_room_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)

    # ── Traceability ─────────────────────────────────────────
    supplier_name: Mapped[str | None] = mapped_column(String(255))
    region: Mapped[str | None] = mapped_column(String(100))
    source_counting_record_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("counting_records.id"), nullable=False, index=True
    )
    split_from_id: Mapped[str | None] = mapped_column(String(36))

    # ── Pallet linkage ───────────────────────────────────────
    is_in_pallet: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    pallet_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("pallets.id"), index=True
    )

    # ── Metadata ─────────────────────────────────────────────
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    # ── Relationships ────────────────────────────────────────
    pallet = relationship("Pallet", back_populates="boxes")

    @property
    def available_quantity(self) -> int:
        """Boxes that can still be claimed by a pallet."""
        return 0 if self.is_in_pallet else self.quantity

    @property
    def identity(self) -> tuple[str, str, str, str, str, str]:
        return (
            self.variety,
            self.box_type,
            self.grade,
            self.size,
            self.source_counting_record_id,
            self.cold_room_id,
        )
