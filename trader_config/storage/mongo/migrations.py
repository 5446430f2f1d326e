"""
Schema manager for the document-store backend.

Documents are rewritten one at a time. Every rewrite is idempotent (a
document that already carries an integer id keeps it), so an interrupted
migration completes on the next open. Unique indexes are built only after
the re-key, since legacy documents use string ids.
"""

from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from bson import json_util
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError

from ...exceptions import IntegrityError, SchemaError
from ...logger import get_logger
from ...models import DEFAULT_OWNER
from ..migration import (
    BASELINE_GENERATION,
    REKEY_GENERATION,
    REQUIRED_FIELDS,
    IntegrityReport,
    KeyMap,
    KeyMapping,
    LegacyExchangeRow,
    LegacyModelRow,
    MigrationStep,
    SchemaManager,
    TraderLink,
)
from .sequence import MongoSequenceAllocator

logger = get_logger(__name__)

COLLECTIONS = (
    "users",
    "ai_models",
    "exchanges",
    "traders",
    "user_signal_sources",
    "system_config",
    "beta_codes",
    "counters",
    "decision_logs",
    "schema_migrations",
)

UNIQUE_INDEXES = [
    ("users", [("id", ASCENDING)]),
    ("users", [("email", ASCENDING)]),
    ("ai_models", [("id", ASCENDING)]),
    ("ai_models", [("model_id", ASCENDING), ("user_id", ASCENDING)]),
    ("exchanges", [("id", ASCENDING)]),
    ("exchanges", [("exchange_id", ASCENDING), ("user_id", ASCENDING)]),
    ("traders", [("id", ASCENDING)]),
    ("user_signal_sources", [("user_id", ASCENDING)]),
    ("system_config", [("key", ASCENDING)]),
    ("beta_codes", [("code", ASCENDING)]),
    ("schema_migrations", [("version", ASCENDING)]),
]

LOOKUP_INDEXES = [
    ("traders", [("user_id", ASCENDING), ("created_at", DESCENDING)]),
    ("decision_logs", [("user_id", ASCENDING), ("trader_id", ASCENDING)]),
]


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class MongoSchemaManager(SchemaManager):
    """Brings a Mongo config database to the current generation."""

    def __init__(
        self,
        db,
        allocator: MongoSequenceAllocator,
        database_name: str,
        backup_dir: Optional[Path] = None,
    ):
        super().__init__(backup_dir)
        self.db = db
        self.database_name = database_name
        self.allocator = allocator

    def steps(self) -> List[MigrationStep]:
        return [
            MigrationStep(
                version=BASELINE_GENERATION,
                name="baseline",
                description="Baseline collections",
                destructive=False,
                detect=self._always,
                transform=self._noop,
            ),
            MigrationStep(
                version=REKEY_GENERATION,
                name="integer_rekey",
                description="Integer ids for AI models and exchanges",
                destructive=True,
                detect=self._rekey_in_effect,
                transform=self._rekey,
            ),
        ]

    async def _docs(self, collection: str, filter: Optional[Dict] = None, projection=None):
        cursor = self.db[collection].find(filter or {}, projection, sort=[("_id", ASCENDING)])
        return await cursor.to_list(length=None)

    # ------------------------------------------------------------------
    # Driver hooks
    # ------------------------------------------------------------------

    async def prepare(self) -> None:
        # Documents are schemaless; fields added later are filled on read
        try:
            for collection, keys in LOOKUP_INDEXES:
                await self.db[collection].create_index(keys)
        except PyMongoError as e:
            raise SchemaError(f"Failed to prepare collections: {e}") from e

    async def read_generation(self) -> int:
        try:
            markers = await self._docs("schema_migrations", projection={"version": 1})
        except PyMongoError as e:
            raise SchemaError(f"Cannot read schema generation: {e}") from e
        return max((int(m["version"]) for m in markers if "version" in m), default=0)

    async def record_generation(self, version: int, description: str) -> None:
        await self.db.schema_migrations.update_one(
            {"version": version},
            {"$setOnInsert": {"description": description, "applied_at": datetime.now()}},
            upsert=True,
        )

    async def apply_step(self, step: MigrationStep) -> None:
        try:
            await step.transform()
            if step.destructive:
                await self.validate()
            await self.record_generation(step.version, step.description)
        except PyMongoError as e:
            raise SchemaError(f"Migration {step.name} failed: {e}") from e

    async def backup(self, reason: str) -> Optional[Path]:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        name = f"{self.database_name}.backup_{reason}_{timestamp}"
        target = (self.backup_dir or Path("backups")) / name
        target.mkdir(parents=True, exist_ok=True)
        for collection in COLLECTIONS:
            docs = await self._docs(collection)
            (target / f"{collection}.json").write_text(json_util.dumps(docs), encoding="utf-8")
        return target

    async def collect_integrity(self) -> IntegrityReport:
        report = IntegrityReport()
        for family, required in REQUIRED_FIELDS.items():
            missing = []
            for name in required:
                if await self.db[family].count_documents({name: {"$exists": False}}):
                    missing.append(name)
            if missing:
                report.missing_fields[family] = missing

        model_ids = await self._ids("ai_models")
        exchange_ids = await self._ids("exchanges")
        traders = await self._docs("traders", projection={"ai_model_id": 1, "exchange_id": 1})

        report.orphan_ai_model_refs = sum(
            1 for t in traders if t.get("ai_model_id") not in model_ids
        )
        report.orphan_exchange_refs = sum(
            1 for t in traders if t.get("exchange_id") not in exchange_ids
        )
        report.trader_count = len(traders)
        report.ai_model_count = len(model_ids)
        report.exchange_count = len(exchange_ids)
        return report

    async def finalize(self) -> None:
        try:
            for collection, keys in UNIQUE_INDEXES:
                await self.db[collection].create_index(keys, unique=True)

            for family in ("ai_models", "exchanges"):
                ids = await self._ids(family)
                await self.allocator.ensure_at_least(family, max(ids, default=0))
        except PyMongoError as e:
            raise SchemaError(f"Failed to finalize schema: {e}") from e

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _always(self) -> bool:
        return True

    async def _noop(self) -> None:
        return None

    async def _ids(self, family: str) -> Set[int]:
        docs = await self._docs(family, projection={"id": 1})
        return {d["id"] for d in docs if _is_int(d.get("id"))}

    async def _rekey_in_effect(self) -> bool:
        if await self.db.ai_models.count_documents({"model_id": {"$exists": False}}):
            return False
        if await self.db.exchanges.count_documents({"exchange_id": {"$exists": False}}):
            return False
        for family in ("ai_models", "exchanges"):
            for doc in await self._docs(family, projection={"id": 1}):
                if not _is_int(doc.get("id")):
                    return False
        traders = await self._docs("traders", projection={"ai_model_id": 1, "exchange_id": 1})
        return all(_is_int(t.get("ai_model_id")) and _is_int(t.get("exchange_id")) for t in traders)

    async def _rekey(self) -> None:
        models = await self._rekey_family("ai_models", "model_id", LegacyModelRow)
        exchanges = await self._rekey_family("exchanges", "exchange_id", LegacyExchangeRow)
        await self._relink_traders(models, exchanges)
        logger.info(
            f"Re-keyed {len(models)} AI models and {len(exchanges)} exchanges to integer ids"
        )

    async def _rekey_family(self, family: str, key_field: str, row_cls) -> KeyMap:
        keymap = KeyMap(family)
        collection = self.db[family]
        for doc in await self._docs(family):
            user_id = doc.get("user_id") or DEFAULT_OWNER
            if key_field in doc and _is_int(doc.get("id")):
                keymap.add(KeyMapping(user_id, doc[key_field], doc["id"]))
                continue

            row = row_cls.from_row(doc)
            new_id = await self.allocator.next(family)
            await collection.update_one(
                {"_id": doc["_id"]},
                {"$set": {"id": new_id, key_field: row.legacy_key, "user_id": row.user_id}},
            )
            keymap.add(KeyMapping(row.user_id, row.legacy_key, new_id))
        return keymap

    async def _relink_traders(self, models: KeyMap, exchanges: KeyMap) -> None:
        # Resolve everything before the first write: an unresolvable legacy
        # reference must survive a failed migration untouched.
        updates = []
        unresolved = []
        for doc in await self._docs("traders"):
            link = TraderLink.from_row(doc)
            ai_model_id = models.resolve(link.user_id, link.ai_model_ref)
            exchange_id = exchanges.resolve(link.user_id, link.exchange_ref)
            if ai_model_id == 0 and not _is_int(link.ai_model_ref):
                unresolved.append(f"trader {link.trader_id} AI model {link.ai_model_ref!r}")
            if exchange_id == 0 and not _is_int(link.exchange_ref):
                unresolved.append(f"trader {link.trader_id} exchange {link.exchange_ref!r}")
            if ai_model_id == link.ai_model_ref and exchange_id == link.exchange_ref:
                continue
            updates.append((doc["_id"], ai_model_id, exchange_id))

        if unresolved:
            message = f"{len(unresolved)} trader reference(s) cannot be mapped: " + ", ".join(
                unresolved
            )
            raise IntegrityError(message, unresolved)

        for object_id, ai_model_id, exchange_id in updates:
            await self.db.traders.update_one(
                {"_id": object_id},
                {"$set": {"ai_model_id": ai_model_id, "exchange_id": exchange_id}},
            )
