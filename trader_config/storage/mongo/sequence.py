"""Durable per-family id counters in the ``counters`` collection."""

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from ...exceptions import ConcurrencyConflict


class MongoSequenceAllocator:
    """Allocates strictly increasing ids with an atomic ``$inc`` upsert."""

    def __init__(self, counters):
        self._counters = counters

    async def _increment(self, family: str):
        return await self._counters.find_one_and_update(
            {"_id": family},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )

    async def next(self, family: str) -> int:
        try:
            doc = await self._increment(family)
        except DuplicateKeyError:
            # Lost the race to create the counter; it exists now
            try:
                doc = await self._increment(family)
            except DuplicateKeyError as e:
                raise ConcurrencyConflict(f"Counter {family!r} contended: {e}") from e
        if doc is None:
            raise ConcurrencyConflict(f"Counter {family!r} returned no value")
        return int(doc["seq"])

    async def ensure_at_least(self, family: str, value: int) -> None:
        """Raise the counter to ``value`` if it is lower."""
        await self._counters.update_one(
            {"_id": family}, {"$max": {"seq": int(value)}}, upsert=True
        )

    async def current(self, family: str) -> int:
        doc = await self._counters.find_one({"_id": family})
        return int(doc["seq"]) if doc else 0
