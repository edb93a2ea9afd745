"""Per-key critical sections for balance updates.

A load holds the lock for its `unique_key` from validation through commit,
so two loads of the same size-group in one process apply one after the
other.  Across processes the ledger row lock and version check in
BalanceStore take over.  Re-entering a lock from the task that holds it
is a no-op.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field


@dataclass
class _KeyLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0
    owner: asyncio.Task | None = None


@dataclass
class KeyedLocks:
    """Registry of asyncio locks keyed by string; idle locks are dropped."""
    _locks: dict[str, _KeyLock] = field(default_factory=dict)

    @asynccontextmanager
    async def hold(self, key: str, timeout: float | None = 10.0):
        task = asyncio.current_task()
        current = self._locks.get(key)
        if current is not None and current.owner is task:
            yield
            return

        entry = self._locks.setdefault(key, _KeyLock())
        entry.holders += 1
        try:
            if timeout is None:
                await entry.lock.acquire()
            else:
                await asyncio.wait_for(entry.lock.acquire(), timeout)
            entry.owner = task
            try:
                yield
            finally:
                entry.owner = None
                entry.lock.release()
        finally:
            entry.holders -= 1
            if entry.holders == 0 and self._locks.get(key) is entry:
                del self._locks[key]

    def is_held(self, key: str) -> bool:
        entry = self._locks.get(key)
        return bool(entry and entry.lock.locked())

    def __len__(self) -> int:
        return len(self._locks)


balance_locks = KeyedLocks()
