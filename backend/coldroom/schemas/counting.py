"""Pydantic schemas for counting-record intake."""

from datetime import datetime

from pydantic import BaseModel, Field, field_validator, model_validator

from coldroom.services.size_groups import SizeKey


def _check_quantity_map(value: dict[str, int]) -> dict[str, int]:
    bad = [k for k in value if SizeKey.parse(k) is None]
    if bad:
        raise ValueError(f"Unrecognised box keys: {', '.join(sorted(bad))}")
    negative = [k for k, qty in value.items() if qty < 0]
    if negative:
        raise ValueError(f"Negative quantities for: {', '.join(sorted(negative))}")
    return value


class CountingRecordCreate(BaseModel):
    """Payload for POST /api/counting-records/.

    Keys look like `fuerte_4kg_class1_size24`.  When `remaining_boxes` is
    omitted every counted box is considered still to be loaded.
    """
    id: str | None = Field(None, max_length=64)
    supplier_name: str = Field(..., min_length=1)
    region: str | None = None
    counting_totals: dict[str, int] = Field(..., min_length=1)
    remaining_boxes: dict[str, int] | None = None
    submitted_at: datetime | None = None

    @field_validator("counting_totals")
    @classmethod
    def _totals(cls, value: dict[str, int]) -> dict[str, int]:
        return _check_quantity_map(value)

    @field_validator("remaining_boxes")
    @classmethod
    def _remaining(cls, value: dict[str, int] | None) -> dict[str, int] | None:
        return None if value is None else _check_quantity_map(value)

    @model_validator(mode="after")
    def _default_remaining(self):
        if self.remaining_boxes is None:
            self.remaining_boxes = dict(self.counting_totals)
        return self


class CountingRecordOut(BaseModel):
    id: str
    supplier_name: str
    region: str | None
    counting_totals: dict[str, int]
    remaining_boxes: dict[str, int]
    has_remaining_boxes: bool
    submitted_at: datetime
    created_at: datetime

    model_config = {"from_attributes": True}
