"""Initial cold-room schema: counting records, boxes, pallets, ledger, activity.

Revision ID: 0001
Revises:
Create Date: 2026-03-02
"""

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

from alembic import op
import sqlalchemy as sa


def upgrade() -> None:
    # ── counting_records ─────────────────────────────────────
    op.create_table(
        "counting_records",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("supplier_name", sa.String(255), nullable=False),
        sa.Column("region", sa.String(100)),
        sa.Column("counting_totals", sa.JSON()),
        sa.Column("remaining_boxes", sa.JSON()),
        sa.Column("has_remaining_boxes", sa.Boolean(), server_default=sa.true()),
        sa.Column("submitted_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_counting_records_has_remaining_boxes", "counting_records", ["has_remaining_boxes"]
    )

    # ── pallets ──────────────────────────────────────────────
    op.create_table(
        "pallets",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("pallet_number", sa.String(50), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("cold_room_id", sa.String(50), nullable=False),
        sa.Column("boxes_per_pallet", sa.Integer(), server_default="288"),
        sa.Column("pallet_count", sa.Integer(), server_default="0"),
        sa.Column("variety", sa.String(50)),
        sa.Column("box_type", sa.String(20)),
        sa.Column("grade", sa.String(20)),
        sa.Column("size", sa.String(20)),
        sa.Column("total_boxes", sa.Integer(), server_default="0"),
        sa.Column("total_weight_kg", sa.Float(), server_default="0"),
        sa.Column("status", sa.String(30), server_default="active"),
        sa.Column("dissolved_at", sa.DateTime()),
        sa.Column("boxes_returned", sa.Integer()),
        sa.Column("notes", sa.Text()),
        sa.Column("created_by", sa.String(100)),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_pallets_pallet_number", "pallets", ["pallet_number"], unique=True)
    op.create_index("ix_pallets_cold_room_id", "pallets", ["cold_room_id"])
    op.create_index("ix_pallets_status", "pallets", ["status"])

    # ── cold_room_boxes ──────────────────────────────────────
    op.create_table(
        "cold_room_boxes",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("variety", sa.String(50), nullable=False),
        sa.Column("box_type", sa.String(20), nullable=False),
        sa.Column("grade", sa.String(20), nullable=False),
        sa.Column("size", sa.String(20), nullable=False),
        sa.Column("unique_key", sa.String(255), nullable=False),
        sa.Column("quantity", sa.Integer(), server_default="0"),
        sa.Column("cold_room_id", sa.String(50), nullable=False),
        sa.Column("supplier_name", sa.String(255)),
        sa.Column("region", sa.String(100)),
        sa.Column(
            "source_counting_record_id", sa.String(64),
            sa.ForeignKey("counting_records.id"), nullable=False,
        ),
        sa.Column("split_from_id", sa.String(36)),
        sa.Column("is_in_pallet", sa.Boolean(), server_default=sa.false()),
        sa.Column("pallet_id", sa.String(36), sa.ForeignKey("pallets.id")),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_cold_room_boxes_unique_key", "cold_room_boxes", ["unique_key"])
    op.create_index("ix_cold_room_boxes_cold_room_id", "cold_room_boxes", ["cold_room_id"])
    op.create_index(
        "ix_cold_room_boxes_source_counting_record_id",
        "cold_room_boxes", ["source_counting_record_id"],
    )
    op.create_index("ix_cold_room_boxes_is_in_pallet", "cold_room_boxes", ["is_in_pallet"])
    op.create_index("ix_cold_room_boxes_pallet_id", "cold_room_boxes", ["pallet_id"])

    # ── balance_ledger ───────────────────────────────────────
    op.create_table(
        "balance_ledger",
        sa.Column("unique_key", sa.String(255), primary_key=True),
        sa.Column("counting_record_id", sa.String(64), nullable=False),
        sa.Column("total_quantity", sa.Integer(), server_default="0"),
        sa.Column("loaded_quantity", sa.Integer(), server_default="0"),
        sa.Column("remaining_quantity", sa.Integer(), server_default="0"),
        sa.Column("loading_history", sa.JSON()),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_balance_ledger_counting_record_id", "balance_ledger", ["counting_record_id"]
    )

    # ── activity_logs ────────────────────────────────────────
    op.create_table(
        "activity_logs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("actor", sa.String(200), nullable=False),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("entity_id", sa.String(255)),
        sa.Column("entity_code", sa.String(100)),
        sa.Column("summary", sa.Text()),
        sa.Column("details", sa.JSON()),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_activity_logs_action", "activity_logs", ["action"])
    op.create_index("ix_activity_logs_entity_type", "activity_logs", ["entity_type"])
    op.create_index("ix_activity_logs_created_at", "activity_logs", ["created_at"])


def downgrade() -> None:
    op.drop_table("activity_logs")
    op.drop_table("balance_ledger")
    op.drop_table("cold_room_boxes")
    op.drop_table("pallets")
    op.drop_table("counting_records")
