"""Pydantic schemas for size-group derivation, duplicate checks and loading."""

from typing import Literal

from pydantic import BaseModel, Field, field_validator

from coldroom.services.size_groups import SizeKey, make_unique_key, normalize_size


# ── Size groups ──────────────────────────────────────────────

class DeriveSizeGroupsRequest(BaseModel):
    """Payload for POST /api/loading/size-groups."""
    counting_record_ids: list[str] = Field(..., min_length=1)
    loadable_only: bool = False


class LoadingHistoryEntry(BaseModel):
    quantity: int
    target_cold_room: str
    timestamp: str
    rebuilt: bool = False


class SizeGroupOut(BaseModel):
    unique_key: str
    counting_record_id: str
    supplier_name: str
    region: str | None
    variety: str
    box_type: str
    grade: str
    size: str
    total_quantity: int
    loaded_quantity: int
    remaining_quantity: int
    loadable: bool
    loading_history: list[LoadingHistoryEntry] = []

    model_config = {"from_attributes": True}


# ── Loads ────────────────────────────────────────────────────

class SizeGroupLoad(BaseModel):
    """One size-group staged for loading into a cold room."""
    counting_record_id: str
    variety: str
    box_type: str
    grade: str
    size: str
    quantity: int = Field(..., description="Boxes to move (loadingQuantity)")
    target_cold_room: str

    @field_validator("variety", "box_type", "grade")
    @classmethod
    def _lower(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("size")
    @classmethod
    def _canonical_size(cls, value: str) -> str:
        size = normalize_size(value)
        if size is None:
            raise ValueError(f"Invalid size token: {value!r}")
        return size

    @property
    def key(self) -> SizeKey:
        return SizeKey(self.variety, self.box_type, self.grade, self.size)

    @property
    def unique_key(self) -> str:
        return make_unique_key(self.counting_record_id, self.key)


class LoadBatchRequest(BaseModel):
    """Payload for POST /api/loading/check-duplicates and /commit."""
    loads: list[SizeGroupLoad] = Field(..., min_length=1)
    actor: str | None = None


class DuplicateCheckResult(BaseModel):
    unique_key: str
    target_cold_room: str
    requested_quantity: int
    existing_quantity: int
    already_exists: bool


# ── Commit ───────────────────────────────────────────────────

LoadItemStatus = Literal["committed", "skipped_duplicate", "invalid", "failed"]


class ColdRoomBoxOut(BaseModel):
    id: str
    variety: str
    box_type: str
    grade: str
    size: str
    quantity: int
    cold_room_id: str
    supplier_name: str | None
    region: str | None
    source_counting_record_id: str
    unique_key: str
    is_in_pallet: bool
    pallet_id: str | None
    split_from_id: str | None = None

    model_config = {"from_attributes": True}


class LedgerEntryOut(BaseModel):
    unique_key: str
    counting_record_id: str
    total_quantity: int
    loaded_quantity: int
    remaining_quantity: int
    loading_history: list[LoadingHistoryEntry] = []

    model_config = {"from_attributes": True}


class LoadItemResult(BaseModel):
    unique_key: str
    target_cold_room: str
    quantity: int
    status: LoadItemStatus
    error_code: str | None = None
    message: str | None = None
    existing_quantity: int | None = None
    box: ColdRoomBoxOut | None = None
    ledger: LedgerEntryOut | None = None


class CommitResult(BaseModel):
    """Response for POST /api/loading/commit."""
    status: Literal["success", "partial", "failed"]
    committed_count: int
    skipped_count: int
    invalid_count: int
    failed_count: int
    items: list[LoadItemResult]
    committed_boxes: list[ColdRoomBoxOut] = []
    updated_ledger_entries: list[LedgerEntryOut] = []
    exhausted_record_ids: list[str] = []
    message: str


# ── Balance administration ──────────────────────────────────

class ResetBalanceRequest(BaseModel):
    unique_key: str
    actor: str | None = None


class ClearBalancesResult(BaseModel):
    status: Literal["success"] = "success"
    cleared: int


class RebuildBalancesRequest(BaseModel):
    counting_record_ids: list[str] | None = None
    actor: str | None = None


class RebuiltBalanceOut(BaseModel):
    unique_key: str
    previous_loaded: int | None
    rebuilt_loaded: int
    total_quantity: int
    changed: bool
    over_loaded: bool

    model_config = {"from_attributes": True}


class RebuildBalancesResult(BaseModel):
    status: Literal["success"] = "success"
    rebuilt: int
    changed: int
    items: list[RebuiltBalanceOut]
