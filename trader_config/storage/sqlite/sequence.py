"""Durable per-family id counters in the ``counters`` table."""

import sqlite3
from contextlib import asynccontextmanager
from typing import AsyncContextManager, Callable

import aiosqlite

from ...exceptions import ConcurrencyConflict, StoreError

NEXT_SQL = """
INSERT INTO counters (name, seq) VALUES (?, 1)
ON CONFLICT(name) DO UPDATE SET seq = seq + 1
RETURNING seq
"""

AT_LEAST_SQL = """
INSERT INTO counters (name, seq) VALUES (?, ?)
ON CONFLICT(name) DO UPDATE SET seq = MAX(seq, excluded.seq)
"""

Acquire = Callable[[], AsyncContextManager[aiosqlite.Connection]]


class SqliteSequenceAllocator:
    """
    Allocates strictly increasing ids with a single upsert statement.

    The statement increments and returns the counter atomically, so
    concurrent callers on different pooled connections never see the same
    value.
    """

    def __init__(self, acquire: Acquire):
        self._acquire = acquire

    @classmethod
    def bound_to(cls, conn: aiosqlite.Connection) -> "SqliteSequenceAllocator":
        """Allocator that reuses ``conn`` (e.g. inside an open transaction)."""

        @asynccontextmanager
        async def fixed():
            yield conn

        return cls(fixed)

    async def next(self, family: str) -> int:
        async with self._acquire() as conn:
            try:
                rows = await conn.execute_fetchall(NEXT_SQL, (family,))
            except sqlite3.OperationalError as e:
                if "locked" in str(e) or "busy" in str(e):
                    raise ConcurrencyConflict(f"Counter {family!r} contended: {e}") from e
                raise StoreError(f"Counter {family!r} allocation failed: {e}") from e
        rows = list(rows)
        if not rows:
            raise ConcurrencyConflict(f"Counter {family!r} returned no value")
        return int(rows[0][0])

    async def ensure_at_least(self, family: str, value: int) -> None:
        """Raise the counter to ``value`` if it is lower."""
        async with self._acquire() as conn:
            await conn.execute(AT_LEAST_SQL, (family, int(value)))

    async def current(self, family: str) -> int:
        async with self._acquire() as conn:
            rows = await conn.execute_fetchall(
                "SELECT seq FROM counters WHERE name = ?", (family,)
            )
        rows = list(rows)
        return int(rows[0][0]) if rows else 0
