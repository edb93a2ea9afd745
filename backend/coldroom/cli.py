"""Maintenance CLI for the balance ledger.

Usage:
    python -m coldroom.cli rebuild-balances [RECORD_ID ...]  # Ledger from inventory
    python -m coldroom.cli clear-balances --yes              # Wipe the ledger
    python -m coldroom.cli reset-balance UNIQUE_KEY          # One group back to 0
"""

import asyncio
import sys

from coldroom.database import async_session, engine
from coldroom.services.balance_store import BalanceStore
from coldroom.utils.cache import close_redis

ACTOR = "cli"


async def rebuild_balances(record_ids: list[str]) -> int:
    async with async_session() as db:
        store = BalanceStore(db)
        report = await store.rebuild_from_inventory(record_ids or None, actor=ACTOR)
        await store.commit()

    for item in report:
        marker = "*" if item.changed else " "
        flag = "  OVER-LOADED" if item.over_loaded else ""
        print(
            f" {marker} {item.unique_key}: {item.previous_loaded} -> "
            f"{item.rebuilt_loaded} / {item.total_quantity}{flag}"
        )
    changed = sum(1 for item in report if item.changed)
    print(f"\n{len(report)} balance(s) rebuilt, {changed} changed")
    return 0


async def clear_balances(confirmed: bool) -> int:
    if not confirmed:
        print("Refusing to clear the ledger without --yes")
        return 1
    async with async_session() as db:
        store = BalanceStore(db)
        cleared = await store.clear_all(actor=ACTOR)
        await store.commit()
    print(f"Cleared {cleared} balance(s)")
    return 0


async def reset_balance(unique_key: str) -> int:
    async with async_session() as db:
        store = BalanceStore(db)
        entry = await store.reset(unique_key, actor=ACTOR)
        if entry is None:
            print(f"No balance found for {unique_key}")
            return 1
        await store.commit()
    print(f"Reset {unique_key}: {entry.remaining_quantity} remaining")
    return 0


async def _run(argv: list[str]) -> int:
    cmd = argv[0] if argv else ""
    try:
        if cmd == "rebuild-balances":
            return await rebuild_balances(argv[1:])
        if cmd == "clear-balances":
            return await clear_balances("--yes" in argv[1:])
        if cmd == "reset-balance" and len(argv) == 2:
            return await reset_balance(argv[1])
        print(__doc__)
        return 2
    finally:
        await close_redis()
        await engine.dispose()


def main() -> None:
    sys.exit(asyncio.run(_run(sys.argv[1:])))


if __name__ == "__main__":
    main()
