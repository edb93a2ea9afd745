"""Aggregate model imports for Alembic auto-detection."""

from coldroom.models.counting_record import CountingRecord  # noqa: F401
from coldroom.models.cold_room_box import ColdRoomBox  # noqa: F401
from coldroom.models.pallet import Pallet  # noqa: F401
from coldroom.models.balance_ledger import BalanceLedgerEntry  # noqa: F401
from coldroom.models.activity_log import ActivityLog  # noqa: F401

__all__ = [
    "CountingRecord", "ColdRoomBox", "Pallet",
    "BalanceLedgerEntry", "ActivityLog",
]
