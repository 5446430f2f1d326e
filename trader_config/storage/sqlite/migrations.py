"""
Schema manager for the embedded relational backend.

Each destructive step runs inside one ``BEGIN IMMEDIATE`` transaction
together with its validation and generation marker, so a failure rolls the
store back to exactly its pre-migration state.
"""

import shutil
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import aiosqlite

from ...exceptions import SchemaError, StoreError
from ...logger import get_logger
from ...models import as_datetime
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
from .schema import (
    ADDITIVE_COLUMNS,
    AI_MODELS_DDL,
    EXCHANGES_DDL,
    INDEXES,
    TABLES,
    TRADERS_DDL,
    table_ddl,
)
from .sequence import SqliteSequenceAllocator

logger = get_logger(__name__)

ConnectionFactory = Callable[[], Awaitable[aiosqlite.Connection]]


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class SqliteSchemaManager(SchemaManager):
    """Brings a SQLite config database to the current generation."""

    def __init__(
        self,
        db_path: Path,
        connect: ConnectionFactory,
        backup_dir: Optional[Path] = None,
    ):
        super().__init__(backup_dir)
        self.db_path = Path(db_path)
        self._connect = connect
        self._conn: Optional[aiosqlite.Connection] = None

    async def ensure_schema(self) -> int:
        self._conn = await self._connect()
        try:
            return await super().ensure_schema()
        finally:
            await self._conn.close()
            self._conn = None

    def steps(self) -> List[MigrationStep]:
        return [
            MigrationStep(
                version=BASELINE_GENERATION,
                name="baseline",
                description="Baseline tables",
                destructive=False,
                detect=self._baseline_present,
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

    # ------------------------------------------------------------------
    # Introspection helpers
    # ------------------------------------------------------------------

    async def _rows(self, sql: str, params: tuple = ()) -> List[Dict[str, Any]]:
        rows = await self._conn.execute_fetchall(sql, params)
        return [dict(row) for row in rows]

    async def _scalar(self, sql: str, params: tuple = ()) -> int:
        rows = list(await self._conn.execute_fetchall(sql, params))
        return int(rows[0][0] or 0) if rows else 0

    async def _table_info(self, table: str) -> Dict[str, str]:
        """Column name -> declared type."""
        rows = await self._conn.execute_fetchall(f"PRAGMA table_info({table})")
        return {row[1]: (row[2] or "").upper() for row in rows}

    async def _columns(self, table: str) -> Set[str]:
        return set(await self._table_info(table))

    async def _table_exists(self, table: str) -> bool:
        count = await self._scalar(
            "SELECT COUNT(*) FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)
        )
        return count > 0

    # ------------------------------------------------------------------
    # Driver hooks
    # ------------------------------------------------------------------

    async def prepare(self) -> None:
        try:
            for table, ddl in TABLES:
                await self._conn.execute(table_ddl(ddl, table))

            for table, column, decl in ADDITIVE_COLUMNS:
                if column in await self._columns(table):
                    continue
                try:
                    await self._conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {decl}")
                    logger.info(f"Added column {table}.{column}")
                except sqlite3.OperationalError as e:
                    # Another process added it between the check and the ALTER
                    if "duplicate column" not in str(e).lower():
                        raise
        except sqlite3.Error as e:
            raise SchemaError(f"Failed to prepare baseline schema: {e}") from e

    async def read_generation(self) -> int:
        return await self._scalar("SELECT COALESCE(MAX(version), 0) FROM schema_migrations")

    async def record_generation(self, version: int, description: str) -> None:
        await self._conn.execute(
            "INSERT OR IGNORE INTO schema_migrations (version, description, applied_at) "
            "VALUES (?, ?, ?)",
            (version, description, datetime.now().isoformat()),
        )

    async def apply_step(self, step: MigrationStep) -> None:
        await self._conn.execute("BEGIN IMMEDIATE")
        try:
            await step.transform()
            if step.destructive:
                await self.validate()
            await self.record_generation(step.version, step.description)
        except sqlite3.Error as e:
            await self._conn.execute("ROLLBACK")
            raise SchemaError(f"Migration {step.name} failed and was rolled back: {e}") from e
        except StoreError:
            await self._conn.execute("ROLLBACK")
            logger.error(f"Migration {step.name} rolled back")
            raise
        await self._conn.execute("COMMIT")

    async def backup(self, reason: str) -> Optional[Path]:
        if not self.db_path.exists():
            return None
        # Fold the WAL into the main file so the copy is self-contained
        await self._conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")

        target_dir = self.backup_dir or self.db_path.parent
        target_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        backup_path = target_dir / f"{self.db_path.stem}.backup_{reason}_{timestamp}.db"
        shutil.copy2(self.db_path, backup_path)
        return backup_path

    async def collect_integrity(self) -> IntegrityReport:
        report = IntegrityReport()
        for family, required in REQUIRED_FIELDS.items():
            columns = await self._columns(family)
            missing = [name for name in required if name not in columns]
            if missing:
                report.missing_fields[family] = missing
        if report.missing_fields:
            return report

        report.orphan_ai_model_refs = await self._scalar(
            "SELECT COUNT(*) FROM traders t "
            "LEFT JOIN ai_models a ON a.id = t.ai_model_id WHERE a.id IS NULL"
        )
        report.orphan_exchange_refs = await self._scalar(
            "SELECT COUNT(*) FROM traders t "
            "LEFT JOIN exchanges e ON e.id = t.exchange_id WHERE e.id IS NULL"
        )
        report.trader_count = await self._scalar("SELECT COUNT(*) FROM traders")
        report.ai_model_count = await self._scalar("SELECT COUNT(*) FROM ai_models")
        report.exchange_count = await self._scalar("SELECT COUNT(*) FROM exchanges")
        return report

    async def finalize(self) -> None:
        try:
            for statement in INDEXES:
                await self._conn.execute(statement)

            allocator = SqliteSequenceAllocator.bound_to(self._conn)
            for family in ("ai_models", "exchanges"):
                highest = await self._scalar(f"SELECT COALESCE(MAX(id), 0) FROM {family}")
                await allocator.ensure_at_least(family, highest)
        except sqlite3.Error as e:
            raise SchemaError(f"Failed to finalize schema: {e}") from e

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _noop(self) -> None:
        return None

    async def _baseline_present(self) -> bool:
        return await self._table_exists("ai_models")

    async def _rekey_in_effect(self) -> bool:
        model_columns = await self._columns("ai_models")
        exchange_columns = await self._columns("exchanges")
        trader_columns = await self._table_info("traders")
        return (
            "model_id" in model_columns
            and "exchange_id" in exchange_columns
            and trader_columns.get("ai_model_id") == "INTEGER"
            and trader_columns.get("exchange_id") == "INTEGER"
        )

    async def _rekey(self) -> None:
        allocator = SqliteSequenceAllocator.bound_to(self._conn)
        models = await self._rekey_ai_models(allocator)
        exchanges = await self._rekey_exchanges(allocator)
        await self._relink_traders(models, exchanges)
        logger.info(
            f"Re-keyed {len(models)} AI models and {len(exchanges)} exchanges to integer ids"
        )

    async def _rekey_ai_models(self, allocator: SqliteSequenceAllocator) -> KeyMap:
        keymap = KeyMap("ai_models")
        if "model_id" in await self._columns("ai_models"):
            for row in await self._rows("SELECT id, model_id, user_id FROM ai_models"):
                keymap.add(KeyMapping(row["user_id"], row["model_id"], int(row["id"])))
            return keymap

        legacy = [
            LegacyModelRow.from_row(row)
            for row in await self._rows("SELECT * FROM ai_models ORDER BY rowid")
        ]
        await self._conn.execute(table_ddl(AI_MODELS_DDL, "ai_models_new"))
        for row in legacy:
            new_id = await allocator.next("ai_models")
            await self._conn.execute(
                """
                INSERT INTO ai_models_new (
                    id, model_id, user_id, name, provider, display_name, enabled,
                    api_key, custom_api_url, custom_model_name, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    new_id,
                    row.legacy_key,
                    row.user_id,
                    row.name,
                    row.provider,
                    row.display_name,
                    int(row.enabled),
                    row.api_key,
                    row.custom_api_url,
                    row.custom_model_name,
                    _ts(row.created_at),
                    _ts(row.updated_at),
                ),
            )
            keymap.add(KeyMapping(row.user_id, row.legacy_key, new_id))

        await self._conn.execute("DROP TABLE ai_models")
        await self._conn.execute("ALTER TABLE ai_models_new RENAME TO ai_models")
        return keymap

    async def _rekey_exchanges(self, allocator: SqliteSequenceAllocator) -> KeyMap:
        keymap = KeyMap("exchanges")
        if "exchange_id" in await self._columns("exchanges"):
            for row in await self._rows("SELECT id, exchange_id, user_id FROM exchanges"):
                keymap.add(KeyMapping(row["user_id"], row["exchange_id"], int(row["id"])))
            return keymap

        legacy = [
            LegacyExchangeRow.from_row(row)
            for row in await self._rows("SELECT * FROM exchanges ORDER BY rowid")
        ]
        await self._conn.execute(table_ddl(EXCHANGES_DDL, "exchanges_new"))
        for row in legacy:
            new_id = await allocator.next("exchanges")
            await self._conn.execute(
                """
                INSERT INTO exchanges_new (
                    id, exchange_id, user_id, name, type, display_name, enabled,
                    api_key, secret_key, testnet, hyperliquid_wallet_addr,
                    aster_user, aster_signer, aster_private_key, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    new_id,
                    row.legacy_key,
                    row.user_id,
                    row.name,
                    row.type,
                    row.display_name,
                    int(row.enabled),
                    row.api_key,
                    row.secret_key,
                    int(row.testnet),
                    row.hyperliquid_wallet_addr,
                    row.aster_user,
                    row.aster_signer,
                    row.aster_private_key,
                    _ts(row.created_at),
                    _ts(row.updated_at),
                ),
            )
            keymap.add(KeyMapping(row.user_id, row.legacy_key, new_id))

        await self._conn.execute("DROP TABLE exchanges")
        await self._conn.execute("ALTER TABLE exchanges_new RENAME TO exchanges")
        return keymap

    async def _relink_traders(self, models: KeyMap, exchanges: KeyMap) -> None:
        links = [
            TraderLink.from_row(row)
            for row in await self._rows("SELECT id, user_id, ai_model_id, exchange_id FROM traders")
        ]

        trader_types = await self._table_info("traders")
        if trader_types.get("ai_model_id") != "INTEGER" or trader_types.get("exchange_id") != "INTEGER":
            await self._conn.execute(table_ddl(TRADERS_DDL, "traders_new"))
            new_columns = await self._table_info("traders_new")
            shared = ", ".join(name for name in new_columns if name in trader_types)
            await self._conn.execute(
                f"INSERT INTO traders_new ({shared}) SELECT {shared} FROM traders"
            )
            await self._conn.execute("DROP TABLE traders")
            await self._conn.execute("ALTER TABLE traders_new RENAME TO traders")

        for link in links:
            ai_model_id = models.resolve(link.user_id, link.ai_model_ref)
            exchange_id = exchanges.resolve(link.user_id, link.exchange_ref)
            await self._conn.execute(
                "UPDATE traders SET ai_model_id = ?, exchange_id = ? WHERE id = ?",
                (ai_model_id, exchange_id, link.trader_id),
            )

        # Legacy rows carry CURRENT_TIMESTAMP text; rewrite as ISO so ordering
        # by created_at matches rows written by the store
        for row in await self._rows("SELECT id, created_at, updated_at FROM traders"):
            await self._conn.execute(
                "UPDATE traders SET created_at = ?, updated_at = ? WHERE id = ?",
                (
                    _ts(as_datetime(row["created_at"])),
                    _ts(as_datetime(row["updated_at"])),
                    row["id"],
                ),
            )
