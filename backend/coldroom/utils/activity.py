"""Lightweight helper for recording activity log entries.

Usage:
    await log_activity(
        db, "warehouse-1", action="consolidated", entity_type="pallet",
        entity_id=pallet.id, entity_code=pallet.pallet_number,
        summary="Consolidated 288 box(es) into PAL-20260301-001",
    )

The row is added to the current session and committed with the
enclosing transaction — no extra flush is performed.
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from coldroom.models.activity_log import ActivityLog


async def log_activity(
    db: AsyncSession,
    actor: str | None,
    *,
    action: str,
    entity_type: str,
    entity_id: str | None = None,
    entity_code: str | None = None,
    summary: str | None = None,
    details: dict | None = None,
) -> None:
    """Append an activity log entry to the current DB session."""
    entry = ActivityLog(
        actor=actor or "system",
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        entity_code=entity_code,
        summary=summary,
        details=details,
    )
    db.add(entry)
