"""Pallet consolidation and dissolution tests."""

import pytest
from sqlalchemy import func, select

from coldroom.middleware.exceptions import (
    DataIntegrityError,
    LoadValidationError,
    ResourceNotFoundError,
)
from coldroom.models.cold_room_box import ColdRoomBox
from coldroom.models.pallet import Pallet
from coldroom.schemas.pallet import BoxSelection, ConsolidateRequest
from coldroom.services.pallets import (
    consolidate_pallet,
    default_boxes_per_pallet,
    dissolve_pallet,
    per_box_weight,
    split_box,
)

FIELD_4KG = "fuerte_4kg_class1_size24"
FIELD_10KG = "hass_10kg_class1_size16"


def request(boxes, name="Fuerte C1 24", room="coldroom1", **extra):
    return ConsolidateRequest(
        name=name,
        cold_room_id=room,
        boxes=[BoxSelection(cold_room_box_id=box_id, quantity=qty) for box_id, qty in boxes],
        **extra,
    )


async def room_total(db, room="coldroom1") -> int:
    return int(await db.scalar(
        select(func.coalesce(func.sum(ColdRoomBox.quantity), 0))
        .where(ColdRoomBox.cold_room_id == room)
    ))


@pytest.mark.unit
class TestBoxTypeRules:
    """Weights and default capacities by box type."""

    def test_weights(self):
        assert per_box_weight("4kg") == 4.0
        assert per_box_weight("10kg") == 10.0
        assert per_box_weight("2.5kg") == 2.5

    def test_unknown_weight(self):
        with pytest.raises(LoadValidationError):
            per_box_weight("crate")

    def test_default_capacity(self):
        assert default_boxes_per_pallet("4kg") == 288
        assert default_boxes_per_pallet("10kg") == 120
        assert default_boxes_per_pallet("2.5kg") is None

    @pytest.mark.parametrize("take", [0, -5, 40, 41])
    def test_split_outside_row_rejected(self, take):
        """A split must leave boxes on both rows."""
        box = ColdRoomBox(
            id="box-1", variety="fuerte", box_type="4kg", grade="class1", size="size24",
            unique_key="R1|fuerte|4kg|class1|size24", quantity=40, cold_room_id="coldroom1",
        )
        with pytest.raises(DataIntegrityError):
            split_box(box, take)
        assert box.quantity == 40

    def test_split_moves_quantity(self):
        box = ColdRoomBox(
            id="box-1", variety="fuerte", box_type="4kg", grade="class1", size="size24",
            unique_key="R1|fuerte|4kg|class1|size24", quantity=40, cold_room_id="coldroom1",
        )
        taken = split_box(box, 15)
        assert (box.quantity, taken.quantity) == (25, 15)
        assert taken.split_from_id == "box-1"
        assert taken.unique_key == box.unique_key


@pytest.mark.asyncio
class TestConsolidate:
    """consolidate_pallet()"""

    async def test_full_take_links_box(self, db_session, make_record, make_box):
        """Taking a whole row links it to the pallet without splitting."""
        record = await make_record({FIELD_4KG: 500})
        box = await make_box(record, FIELD_4KG, 288)

        result = await consolidate_pallet(db_session, request([(box.id, 288)]))

        pallet = result.pallet
        assert pallet.pallet_number.startswith("PAL-")
        assert pallet.boxes_per_pallet == 288
        assert pallet.total_boxes == 288
        assert pallet.total_weight_kg == 1152.0
        assert pallet.pallet_count == 1
        assert result.full_pallets == 1
        assert result.remainder_boxes == 0
        assert result.split_box_ids == []
        assert [b.id for b in pallet.boxes] == [box.id]
        assert box.is_in_pallet and box.pallet_id == pallet.id

    async def test_partial_take_splits_box(self, db_session, make_record, make_box):
        """Taking part of a row leaves the residual unpalletized."""
        record = await make_record({FIELD_4KG: 500})
        box = await make_box(record, FIELD_4KG, 300)

        result = await consolidate_pallet(db_session, request([(box.id, 120)]))

        assert result.split_box_ids == [box.id]
        assert box.quantity == 180
        assert not box.is_in_pallet
        linked = result.pallet.boxes
        assert len(linked) == 1
        assert linked[0].quantity == 120
        assert linked[0].split_from_id == box.id
        assert linked[0].unique_key == box.unique_key
        assert await room_total(db_session) == 300
        assert result.full_pallets == 0
        assert result.remainder_boxes == 120
        assert "120 box(es) on a partial pallet" in result.message

    async def test_selections_aggregate_per_box(self, db_session, make_record, make_box):
        """Two selections of one row are checked against its quantity together."""
        record = await make_record({FIELD_4KG: 500})
        box = await make_box(record, FIELD_4KG, 100)

        with pytest.raises(LoadValidationError):
            await consolidate_pallet(db_session, request([(box.id, 60), (box.id, 60)]))

    async def test_confirmed_pallet_count(self, db_session, make_record, make_box):
        """A confirmed count up to ceil(total / capacity) is accepted."""
        record = await make_record({FIELD_10KG: 200})
        box = await make_box(record, FIELD_10KG, 200)

        result = await consolidate_pallet(
            db_session, request([(box.id, 200)], confirmed_pallet_count=2)
        )
        assert result.full_pallets == 1
        assert result.remainder_boxes == 80
        assert result.pallet.pallet_count == 2
        assert result.pallet.boxes_per_pallet == 120

    async def test_confirmed_pallet_count_too_high(self, db_session, make_record, make_box):
        record = await make_record({FIELD_10KG: 200})
        box = await make_box(record, FIELD_10KG, 200)
        with pytest.raises(LoadValidationError):
            await consolidate_pallet(
                db_session, request([(box.id, 200)], confirmed_pallet_count=3)
            )

    @pytest.mark.parametrize("kwargs", [
        {"name": "   "},
        {"room": "freezer9"},
    ])
    async def test_request_validation(self, db_session, make_record, make_box, kwargs):
        """Blank names and unknown rooms are rejected."""
        record = await make_record({FIELD_4KG: 500})
        box = await make_box(record, FIELD_4KG, 10)
        with pytest.raises(LoadValidationError):
            await consolidate_pallet(db_session, request([(box.id, 10)], **kwargs))

    async def test_box_must_be_available(self, db_session, make_record, make_box):
        """Unknown boxes, other rooms, over-takes and zero totals are rejected."""
        record = await make_record({FIELD_4KG: 500})
        box = await make_box(record, FIELD_4KG, 10, "coldroom2")

        for boxes in ([("missing", 1)], [(box.id, 5)], [(box.id, 0)]):
            with pytest.raises(LoadValidationError):
                await consolidate_pallet(db_session, request(boxes))
        with pytest.raises(LoadValidationError):
            await consolidate_pallet(db_session, request([(box.id, 11)], room="coldroom2"))

    async def test_palletized_box_rejected(self, db_session, make_record, make_box):
        """A row already on a pallet cannot be claimed again."""
        record = await make_record({FIELD_4KG: 500})
        box = await make_box(record, FIELD_4KG, 50)
        await consolidate_pallet(db_session, request([(box.id, 50)]))
        await db_session.commit()

        with pytest.raises(LoadValidationError):
            await consolidate_pallet(db_session, request([(box.id, 50)], name="Again"))

    async def test_mixed_box_types_need_capacity(self, db_session, make_record, make_box):
        """Mixed 4kg and 10kg rows need an explicit boxes_per_pallet."""
        record = await make_record({FIELD_4KG: 500, FIELD_10KG: 100})
        small = await make_box(record, FIELD_4KG, 100)
        large = await make_box(record, FIELD_10KG, 20)

        with pytest.raises(LoadValidationError):
            await consolidate_pallet(db_session, request([(small.id, 100), (large.id, 20)]))

        result = await consolidate_pallet(
            db_session,
            request([(small.id, 100), (large.id, 20)], boxes_per_pallet=200),
        )
        assert result.pallet.total_boxes == 120
        assert result.pallet.total_weight_kg == 600.0


@pytest.mark.asyncio
class TestDissolve:
    """dissolve_pallet()"""

    async def test_round_trip_restores_room(self, db_session, make_record, make_box):
        """Consolidate then dissolve leaves room totals unchanged."""
        record = await make_record({FIELD_4KG: 500, FIELD_10KG: 100})
        a = await make_box(record, FIELD_4KG, 300)
        b = await make_box(record, FIELD_10KG, 100)
        before = await room_total(db_session)

        created = await consolidate_pallet(
            db_session, request([(a.id, 120), (b.id, 100)], boxes_per_pallet=240)
        )
        await db_session.commit()

        result = await dissolve_pallet(db_session, created.pallet.id, actor="ops")
        await db_session.commit()

        assert result.status == "success"
        assert result.boxes_returned == 220
        assert await room_total(db_session) == before

        available = (await db_session.execute(
            select(ColdRoomBox).where(ColdRoomBox.is_in_pallet == False)  # noqa: E712
        )).scalars().all()
        assert sum(box.quantity for box in available) == before
        # The split row merged back into its origin; the whole row was unlinked
        assert a.quantity == 300
        assert a.id in result.merged_box_ids
        assert b.id in result.restored_box_ids
        assert not b.is_in_pallet and b.pallet_id is None

        pallet = await db_session.get(Pallet, created.pallet.id)
        assert pallet.status == "dissolved"
        assert pallet.boxes_returned == 220
        assert pallet.dissolved_at is not None

    async def test_dissolve_twice_rejected(self, db_session, make_record, make_box):
        record = await make_record({FIELD_4KG: 500})
        box = await make_box(record, FIELD_4KG, 50)
        created = await consolidate_pallet(db_session, request([(box.id, 50)]))
        await dissolve_pallet(db_session, created.pallet.id)

        with pytest.raises(LoadValidationError):
            await dissolve_pallet(db_session, created.pallet.id)

    async def test_missing_pallet(self, db_session):
        with pytest.raises(ResourceNotFoundError):
            await dissolve_pallet(db_session, "no-such-pallet")

    async def test_count_mismatch_blocks_dissolve(self, db_session, make_record, make_box):
        """A pallet whose rows no longer add up is left untouched."""
        record = await make_record({FIELD_4KG: 500})
        box = await make_box(record, FIELD_4KG, 50)
        created = await consolidate_pallet(db_session, request([(box.id, 50)]))
        box.quantity = 40
        await db_session.commit()

        with pytest.raises(DataIntegrityError):
            await dissolve_pallet(db_session, created.pallet.id)

        pallet = await db_session.get(Pallet, created.pallet.id)
        assert pallet.status == "active"
        assert box.is_in_pallet
