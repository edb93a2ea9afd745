"""Pydantic schemas for cold-room inventory views."""

from pydantic import BaseModel


class ColdRoomOut(BaseModel):
    """One configured cold room with its current occupancy."""
    id: str
    total_boxes: int = 0
    available_boxes: int = 0
    palletized_boxes: int = 0
    active_pallets: int = 0
    estimated_pallets: int = 0


class BreakdownRow(BaseModel):
    variety: str
    grade: str
    box_type: str
    quantity: int


class RoomStats(BaseModel):
    cold_room_id: str
    total_boxes: int = 0
    available_boxes: int = 0
    palletized_boxes: int = 0
    boxes_by_type: dict[str, int] = {}
    pallet_equivalents: dict[str, int] = {}
    total_pallet_equivalents: int = 0
    active_pallets: int = 0
    breakdown: list[BreakdownRow] = []


class ColdRoomStats(BaseModel):
    """Response for GET /api/cold-room/stats."""
    rooms: list[RoomStats]
    overall: RoomStats
