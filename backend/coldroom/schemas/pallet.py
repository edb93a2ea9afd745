"""Pydantic schemas for pallet consolidation and dissolution."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from coldroom.schemas.loading import ColdRoomBoxOut


# ── Consolidate boxes into a pallet ──────────────────────────

class BoxSelection(BaseModel):
    """One cold-room box's contribution to a pallet."""
    cold_room_box_id: str
    quantity: int = Field(..., description="Boxes to take (quantityToTake)")


class ConsolidateRequest(BaseModel):
    """Payload for POST /api/pallets/."""
    name: str
    cold_room_id: str
    boxes: list[BoxSelection] = Field(..., min_length=1)
    boxes_per_pallet: int | None = Field(None, ge=1)  # None = from box type
    confirmed_pallet_count: int | None = Field(None, ge=0)
    notes: str | None = None
    actor: str | None = None


# ── Response ─────────────────────────────────────────────────

class PalletSummary(BaseModel):
    id: str
    pallet_number: str
    name: str
    cold_room_id: str
    boxes_per_pallet: int
    pallet_count: int
    variety: str | None
    box_type: str | None
    grade: str | None
    size: str | None
    total_boxes: int
    total_weight_kg: float
    status: str
    created_at: datetime

    model_config = {"from_attributes": True}


class PalletDetail(PalletSummary):
    notes: str | None = None
    created_by: str | None = None
    dissolved_at: datetime | None = None
    boxes_returned: int | None = None
    updated_at: datetime
    boxes: list[ColdRoomBoxOut] = []

    model_config = {"from_attributes": True}


class ConsolidateResult(BaseModel):
    status: Literal["success"] = "success"
    pallet: PalletDetail
    full_pallets: int
    remainder_boxes: int
    split_box_ids: list[str] = []
    message: str


class DissolveResult(BaseModel):
    """Response for POST /api/pallets/{pallet_id}/dissolve."""
    status: Literal["success"] = "success"
    pallet_id: str
    pallet_number: str
    boxes_returned: int
    merged_box_ids: list[str] = []
    restored_box_ids: list[str] = []
