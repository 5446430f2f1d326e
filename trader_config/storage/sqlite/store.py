"""
Embedded relational backend built on aiosqlite.

Connections are pooled (WAL mode, busy timeout, autocommit); the schema
manager runs on its own connection before the pool serves requests.
"""

import asyncio
import json
import sqlite3
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import aiosqlite

from ...config import StoreConfig
from ...exceptions import (
    BetaCodeUnavailableError,
    DuplicateError,
    NotFoundError,
    StoreConnectionError,
    StoreError,
    StoreTimeoutError,
)
from ...logger import LogEvent, get_logger, log_store_event
from ...models import (
    AIModelConfig,
    BetaCode,
    BetaCodeStats,
    DecisionLogEntry,
    ExchangeConfig,
    SystemConfigEntry,
    TraderRecord,
    User,
    UserSignalSource,
    utcnow,
)
from ..contract import UPDATABLE_TRADER_FIELDS, RecordStore, bounded, require_one
from .migrations import SqliteSchemaManager
from .sequence import SqliteSequenceAllocator

logger = get_logger(__name__)

AI_MODEL_LOOKUP_FIELDS = ("model_id", "provider")


def _adapt(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bool):
        return int(value)
    return value


@contextmanager
def sqlite_errors(operation: str):
    """Translate sqlite3 errors into store errors."""
    try:
        yield
    except sqlite3.IntegrityError as e:
        if "UNIQUE" in str(e) or "PRIMARY KEY" in str(e):
            raise DuplicateError(f"{operation}: {e}") from e
        raise StoreError(f"{operation} failed: {e}") from e
    except sqlite3.OperationalError as e:
        if "locked" in str(e) or "busy" in str(e):
            raise StoreTimeoutError(f"{operation}: {e}") from e
        raise StoreError(f"{operation} failed: {e}") from e
    except sqlite3.Error as e:
        raise StoreError(f"{operation} failed: {e}") from e


class SqliteRecordStore(RecordStore):
    """RecordStore over a single SQLite file."""

    backend_name = "sqlite"

    def __init__(
        self,
        db_path: Path,
        pool_size: int = 5,
        busy_timeout_ms: int = 10_000,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.db_path = Path(db_path)
        self.pool_size = pool_size
        self.busy_timeout_ms = busy_timeout_ms
        self._pool: List[aiosqlite.Connection] = []
        self._available: asyncio.Queue = asyncio.Queue(maxsize=pool_size)
        self._lock = asyncio.Lock()
        self._allocator = SqliteSequenceAllocator(self.get_connection)

    @classmethod
    def from_config(cls, config: StoreConfig) -> "SqliteRecordStore":
        return cls(
            db_path=config.sqlite.path,
            pool_size=config.sqlite.pool_size,
            busy_timeout_ms=config.sqlite.busy_timeout_ms,
            operation_timeout=config.operation_timeout,
            backup_dir=config.backup_dir,
            admin_mode=config.admin_mode,
            beta_codes_file=config.beta_codes_file,
        )

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def _open_connection(self) -> aiosqlite.Connection:
        try:
            conn = await aiosqlite.connect(
                self.db_path,
                timeout=self.busy_timeout_ms / 1000,
                isolation_level=None,
            )
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA journal_mode=WAL")  # Better concurrent access
            await conn.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)}")
        except (sqlite3.Error, OSError) as e:
            log_store_event(
                logger,
                LogEvent.CONNECTION_FAILED,
                f"Cannot open {self.db_path}: {e}",
                level="error",
            )
            raise StoreConnectionError(f"Cannot open SQLite database {self.db_path}: {e}") from e
        return conn

    async def _connect(self) -> None:
        async with self._lock:
            if self._pool:
                return
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise StoreConnectionError(f"Cannot create {self.db_path.parent}: {e}") from e

            for _ in range(self.pool_size):
                conn = await self._open_connection()
                self._pool.append(conn)
                await self._available.put(conn)
            logger.info(f"SQLite store at {self.db_path} with {self.pool_size} connections")

    def schema_manager(self) -> SqliteSchemaManager:
        return SqliteSchemaManager(self.db_path, self._open_connection, self.backup_dir)

    @property
    def allocator(self) -> SqliteSequenceAllocator:
        return self._allocator

    async def close(self) -> None:
        """Close all connections in the pool."""
        for conn in self._pool:
            await conn.close()
        self._pool.clear()
        self._available = asyncio.Queue(maxsize=self.pool_size)
        self._ready = False
        log_store_event(logger, LogEvent.STORE_CLOSED, f"Closed SQLite store {self.db_path}")

    @asynccontextmanager
    async def get_connection(self):
        """Get a connection from the pool."""
        if not self._pool:
            raise StoreError("SQLite store is not open")

        conn = await self._available.get()
        try:
            yield conn
        finally:
            await self._available.put(conn)

    async def _execute(self, operation: str, sql: str, params: Tuple = ()) -> int:
        """Run one statement; returns the affected row count."""
        async with self.get_connection() as conn:
            with sqlite_errors(operation):
                cursor = await conn.execute(sql, tuple(_adapt(p) for p in params))
                count = cursor.rowcount
                await cursor.close()
        return count

    async def _fetchall(self, operation: str, sql: str, params: Tuple = ()) -> List[Dict[str, Any]]:
        async with self.get_connection() as conn:
            with sqlite_errors(operation):
                rows = await conn.execute_fetchall(sql, tuple(_adapt(p) for p in params))
        return [dict(row) for row in rows]

    async def _fetchone(
        self, operation: str, sql: str, params: Tuple = ()
    ) -> Optional[Dict[str, Any]]:
        rows = await self._fetchall(operation, sql, params)
        return rows[0] if rows else None

    async def _insert(self, table: str, values: Dict[str, Any]) -> int:
        columns = ", ".join(values)
        placeholders = ", ".join("?" for _ in values)
        return await self._execute(
            f"insert into {table}",
            f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
            tuple(values.values()),
        )

    async def _update(
        self, table: str, values: Dict[str, Any], where: str, params: Tuple
    ) -> int:
        assignments = ", ".join(f"{column} = ?" for column in values)
        return await self._execute(
            f"update {table}",
            f"UPDATE {table} SET {assignments} WHERE {where}",
            tuple(values.values()) + tuple(params),
        )

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    @bounded
    async def create_user(self, user: User) -> None:
        now = utcnow()
        values = user.to_dict()
        values["created_at"] = user.created_at or now
        values["updated_at"] = user.updated_at or now
        await self._insert("users", values)

    @bounded
    async def get_user_by_email(self, email: str) -> User:
        row = await self._fetchone("get user", "SELECT * FROM users WHERE email = ?", (email,))
        if row is None:
            raise NotFoundError(f"User with email {email!r} not found")
        return User.from_dict(row)

    @bounded
    async def get_user_by_id(self, user_id: str) -> User:
        row = await self._fetchone("get user", "SELECT * FROM users WHERE id = ?", (user_id,))
        if row is None:
            raise NotFoundError(f"User {user_id!r} not found")
        return User.from_dict(row)

    @bounded
    async def list_user_ids(self) -> List[str]:
        rows = await self._fetchall("list users", "SELECT id FROM users ORDER BY id")
        return [row["id"] for row in rows]

    @bounded
    async def set_user_otp_verified(self, user_id: str, verified: bool) -> None:
        matched = await self._update(
            "users", {"otp_verified": verified, "updated_at": utcnow()}, "id = ?", (user_id,)
        )
        require_one(matched, f"User {user_id!r}")

    @bounded
    async def update_user_password(self, user_id: str, password_hash: str) -> None:
        matched = await self._update(
            "users", {"password_hash": password_hash, "updated_at": utcnow()}, "id = ?", (user_id,)
        )
        require_one(matched, f"User {user_id!r}")

    # ------------------------------------------------------------------
    # AI models
    # ------------------------------------------------------------------

    async def _fetch_ai_models(self, user_id: str) -> List[AIModelConfig]:
        rows = await self._fetchall(
            "list AI models", "SELECT * FROM ai_models WHERE user_id = ? ORDER BY id", (user_id,)
        )
        return [AIModelConfig.from_dict(row) for row in rows]

    async def _find_ai_model(
        self, user_id: Optional[str], field: str, value: str
    ) -> Optional[AIModelConfig]:
        if field not in AI_MODEL_LOOKUP_FIELDS:
            raise ValueError(f"Unsupported AI model lookup field: {field}")
        if user_id is None:
            row = await self._fetchone(
                "find AI model",
                f"SELECT * FROM ai_models WHERE {field} = ? ORDER BY id LIMIT 1",
                (value,),
            )
        else:
            row = await self._fetchone(
                "find AI model",
                f"SELECT * FROM ai_models WHERE user_id = ? AND {field} = ? ORDER BY id LIMIT 1",
                (user_id, value),
            )
        return AIModelConfig.from_dict(row) if row else None

    async def _get_ai_model_by_id(self, model_row_id: int) -> Optional[AIModelConfig]:
        row = await self._fetchone(
            "get AI model", "SELECT * FROM ai_models WHERE id = ?", (model_row_id,)
        )
        return AIModelConfig.from_dict(row) if row else None

    async def _insert_ai_model(self, model: AIModelConfig) -> None:
        await self._insert("ai_models", model.to_dict())

    async def _update_ai_model(self, model_row_id: int, values: Dict[str, Any]) -> None:
        matched = await self._update("ai_models", values, "id = ?", (model_row_id,))
        require_one(matched, f"AI model {model_row_id}")

    # ------------------------------------------------------------------
    # Exchanges
    # ------------------------------------------------------------------

    async def _fetch_exchanges(self, user_id: str) -> List[ExchangeConfig]:
        rows = await self._fetchall(
            "list exchanges", "SELECT * FROM exchanges WHERE user_id = ? ORDER BY id", (user_id,)
        )
        return [ExchangeConfig.from_dict(row) for row in rows]

    async def _find_exchange(self, user_id: str, exchange_key: str) -> Optional[ExchangeConfig]:
        row = await self._fetchone(
            "find exchange",
            "SELECT * FROM exchanges WHERE user_id = ? AND exchange_id = ?",
            (user_id, exchange_key),
        )
        return ExchangeConfig.from_dict(row) if row else None

    async def _get_exchange_by_id(self, exchange_row_id: int) -> Optional[ExchangeConfig]:
        row = await self._fetchone(
            "get exchange", "SELECT * FROM exchanges WHERE id = ?", (exchange_row_id,)
        )
        return ExchangeConfig.from_dict(row) if row else None

    async def _insert_exchange(self, exchange: ExchangeConfig) -> None:
        await self._insert("exchanges", exchange.to_dict())

    async def _update_exchange(self, exchange_row_id: int, values: Dict[str, Any]) -> None:
        matched = await self._update("exchanges", values, "id = ?", (exchange_row_id,))
        require_one(matched, f"Exchange {exchange_row_id}")

    # ------------------------------------------------------------------
    # Traders
    # ------------------------------------------------------------------

    @bounded
    async def create_trader(self, trader: TraderRecord) -> None:
        now = utcnow()
        values = trader.to_dict()
        values["created_at"] = trader.created_at or now
        values["updated_at"] = trader.updated_at or now
        await self._insert("traders", values)

    @bounded
    async def list_traders(self, user_id: str) -> List[TraderRecord]:
        rows = await self._fetchall(
            "list traders",
            "SELECT * FROM traders WHERE user_id = ? "
            "ORDER BY julianday(created_at) DESC, rowid DESC",
            (user_id,),
        )
        return [TraderRecord.from_dict(row) for row in rows]

    async def _get_trader(self, user_id: str, trader_id: str) -> Optional[TraderRecord]:
        row = await self._fetchone(
            "get trader",
            "SELECT * FROM traders WHERE id = ? AND user_id = ?",
            (trader_id, user_id),
        )
        return TraderRecord.from_dict(row) if row else None

    async def _update_trader_fields(
        self, user_id: str, trader_id: str, values: Dict[str, Any]
    ) -> None:
        values["updated_at"] = utcnow()
        matched = await self._update(
            "traders", values, "id = ? AND user_id = ?", (trader_id, user_id)
        )
        require_one(matched, f"Trader {trader_id!r} of user {user_id!r}")

    @bounded
    async def set_trader_running(self, user_id: str, trader_id: str, running: bool) -> None:
        await self._update_trader_fields(user_id, trader_id, {"is_running": running})

    @bounded
    async def update_trader(self, trader: TraderRecord) -> None:
        values = {name: getattr(trader, name) for name in UPDATABLE_TRADER_FIELDS}
        await self._update_trader_fields(trader.user_id, trader.id, values)

    @bounded
    async def set_trader_custom_prompt(
        self, user_id: str, trader_id: str, prompt: str, override_base: bool
    ) -> None:
        await self._update_trader_fields(
            user_id, trader_id, {"custom_prompt": prompt, "override_base_prompt": override_base}
        )

    @bounded
    async def set_trader_initial_balance(
        self, user_id: str, trader_id: str, balance: float
    ) -> None:
        await self._update_trader_fields(user_id, trader_id, {"initial_balance": balance})

    @bounded
    async def delete_trader(self, user_id: str, trader_id: str) -> None:
        matched = await self._execute(
            "delete trader",
            "DELETE FROM traders WHERE id = ? AND user_id = ?",
            (trader_id, user_id),
        )
        require_one(matched, f"Trader {trader_id!r} of user {user_id!r}")

    async def _collect_trader_symbols(self) -> List[str]:
        rows = await self._fetchall(
            "collect symbols",
            "SELECT trading_symbols FROM traders ORDER BY julianday(created_at), rowid",
        )
        return [row["trading_symbols"] for row in rows]

    async def _collect_running_timeframes(self) -> List[str]:
        rows = await self._fetchall(
            "collect timeframes", "SELECT timeframes FROM traders WHERE is_running = 1"
        )
        return [row["timeframes"] for row in rows]

    # ------------------------------------------------------------------
    # System config
    # ------------------------------------------------------------------

    @bounded
    async def get_system_config_entry(self, key: str) -> Optional[SystemConfigEntry]:
        row = await self._fetchone(
            "get system config",
            "SELECT key, value, updated_at FROM system_config WHERE key = ?",
            (key,),
        )
        return SystemConfigEntry.from_dict(row) if row else None

    @bounded
    async def set_system_config(self, key: str, value: str) -> None:
        await self._execute(
            "set system config",
            """
            INSERT INTO system_config (key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
            """,
            (key, value, utcnow()),
        )

    @bounded
    async def ensure_system_config(self, key: str, value: str) -> bool:
        inserted = await self._execute(
            "seed system config",
            "INSERT OR IGNORE INTO system_config (key, value, updated_at) VALUES (?, ?, ?)",
            (key, value, utcnow()),
        )
        return inserted == 1

    # ------------------------------------------------------------------
    # Signal sources
    # ------------------------------------------------------------------

    @bounded
    async def create_or_update_signal_source(
        self, user_id: str, coin_pool_url: str, oi_top_url: str
    ) -> None:
        now = utcnow()
        await self._execute(
            "save signal source",
            """
            INSERT INTO user_signal_sources (user_id, coin_pool_url, oi_top_url, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                coin_pool_url = excluded.coin_pool_url,
                oi_top_url = excluded.oi_top_url,
                updated_at = excluded.updated_at
            """,
            (user_id, coin_pool_url, oi_top_url, now, now),
        )

    @bounded
    async def get_signal_source(self, user_id: str) -> UserSignalSource:
        row = await self._fetchone(
            "get signal source",
            "SELECT * FROM user_signal_sources WHERE user_id = ?",
            (user_id,),
        )
        if row is None:
            raise NotFoundError(f"No signal source configured for user {user_id!r}")
        return UserSignalSource.from_dict(row)

    # ------------------------------------------------------------------
    # Beta codes
    # ------------------------------------------------------------------

    async def _insert_beta_code(self, code: str) -> bool:
        inserted = await self._execute(
            "insert beta code",
            "INSERT OR IGNORE INTO beta_codes (code, used, created_at) VALUES (?, 0, ?)",
            (code, utcnow()),
        )
        return inserted == 1

    @bounded
    async def get_beta_code(self, code: str) -> Optional[BetaCode]:
        row = await self._fetchone("get beta code", "SELECT * FROM beta_codes WHERE code = ?", (code,))
        return BetaCode.from_dict(row) if row else None

    @bounded
    async def claim_beta_code(self, code: str, email: str) -> None:
        claimed = await self._execute(
            "claim beta code",
            "UPDATE beta_codes SET used = 1, used_by = ?, used_at = ? WHERE code = ? AND used = 0",
            (email, utcnow(), code),
        )
        if claimed == 0:
            raise BetaCodeUnavailableError("Beta code is invalid or has already been used")

    @bounded
    async def beta_code_stats(self) -> BetaCodeStats:
        row = await self._fetchone(
            "beta code stats",
            "SELECT COUNT(*) AS total, COALESCE(SUM(used), 0) AS used FROM beta_codes",
        )
        return BetaCodeStats(total=int(row["total"]), used=int(row["used"]))

    # ------------------------------------------------------------------
    # Decision logs
    # ------------------------------------------------------------------

    @bounded
    async def save_decision_log(
        self, user_id: str, trader_id: str, record: Dict[str, Any]
    ) -> None:
        await self._execute(
            "save decision log",
            "INSERT INTO decision_logs (user_id, trader_id, record, created_at) VALUES (?, ?, ?, ?)",
            (user_id, trader_id, json.dumps(record, default=str), utcnow()),
        )

    @bounded
    async def get_decision_logs(
        self, user_id: str, trader_id: str, limit: int = 100
    ) -> List[DecisionLogEntry]:
        rows = await self._fetchall(
            "get decision logs",
            "SELECT user_id, trader_id, record, created_at FROM decision_logs WHERE user_id = ? AND trader_id = ? "
            "ORDER BY id DESC LIMIT ?",
            (user_id, trader_id, limit),
        )
        return [DecisionLogEntry.from_dict(row) for row in reversed(rows)]
