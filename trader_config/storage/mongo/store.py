"""
Document-store backend built on PyMongo's asyncio API.

Each record family is one collection; records carry an integer ``id`` field
issued by the counters collection alongside Mongo's own ``_id``.
"""

import functools
import inspect
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING, DESCENDING, AsyncMongoClient
from pymongo.errors import (
    DuplicateKeyError,
    ExecutionTimeout,
    NetworkTimeout,
    PyMongoError,
    ServerSelectionTimeoutError,
    WTimeoutError,
)

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
from .migrations import MongoSchemaManager
from .sequence import MongoSequenceAllocator

logger = get_logger(__name__)

AI_MODEL_LOOKUP_FIELDS = ("model_id", "provider")
NO_ID = {"_id": 0}


def mongo_errors(method):
    """Translate PyMongo errors raised by a store method into store errors."""

    @functools.wraps(method)
    async def wrapper(self, *args, **kwargs):
        try:
            return await method(self, *args, **kwargs)
        except DuplicateKeyError as e:
            raise DuplicateError(f"{method.__name__}: duplicate key") from e
        except (ExecutionTimeout, NetworkTimeout, ServerSelectionTimeoutError, WTimeoutError) as e:
            raise StoreTimeoutError(f"{method.__name__} timed out: {e}") from e
        except PyMongoError as e:
            raise StoreError(f"{method.__name__} failed: {e}") from e

    return wrapper


class MongoRecordStore(RecordStore):
    """RecordStore over one Mongo database."""

    backend_name = "mongo"

    def __init__(
        self,
        client,
        database_name: str,
        owns_client: bool = False,
        verify_connection: bool = True,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self._client = client
        self.database_name = database_name
        self.db = client[database_name]
        self.owns_client = owns_client
        self.verify_connection = verify_connection
        self._allocator = MongoSequenceAllocator(self.db.counters)

    @classmethod
    def from_config(cls, config: StoreConfig) -> "MongoRecordStore":
        client = AsyncMongoClient(
            config.mongo.uri,
            serverSelectionTimeoutMS=config.mongo.timeout_ms,
            connectTimeoutMS=config.mongo.timeout_ms,
            tz_aware=True,
        )
        return cls(
            client,
            config.mongo.database_name,
            owns_client=True,
            operation_timeout=config.operation_timeout,
            backup_dir=config.backup_dir,
            admin_mode=config.admin_mode,
            beta_codes_file=config.beta_codes_file,
        )

    async def _connect(self) -> None:
        if not self.verify_connection:
            return
        try:
            await self._client.admin.command("ping")
        except PyMongoError as e:
            log_store_event(
                logger, LogEvent.CONNECTION_FAILED, f"Mongo unreachable: {e}", level="error"
            )
            raise StoreConnectionError(f"Cannot reach MongoDB: {e}") from e
        logger.info(f"Connected to MongoDB database {self.database_name}")

    def schema_manager(self) -> MongoSchemaManager:
        return MongoSchemaManager(self.db, self._allocator, self.database_name, self.backup_dir)

    @property
    def allocator(self) -> MongoSequenceAllocator:
        return self._allocator

    async def close(self) -> None:
        if self.owns_client:
            result = self._client.close()
            if inspect.isawaitable(result):
                await result
        self._ready = False
        log_store_event(logger, LogEvent.STORE_CLOSED, f"Closed Mongo store {self.database_name}")

    async def _find(self, collection: str, filter: Dict, sort=None, limit: int = 0) -> List[Dict]:
        cursor = self.db[collection].find(filter, NO_ID, sort=sort, limit=limit)
        return await cursor.to_list(length=None)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    @bounded
    @mongo_errors
    async def create_user(self, user: User) -> None:
        now = utcnow()
        doc = user.to_dict()
        doc["created_at"] = user.created_at or now
        doc["updated_at"] = user.updated_at or now
        await self.db.users.insert_one(doc)

    @bounded
    @mongo_errors
    async def get_user_by_email(self, email: str) -> User:
        doc = await self.db.users.find_one({"email": email}, NO_ID)
        if doc is None:
            raise NotFoundError(f"User with email {email!r} not found")
        return User.from_dict(doc)

    @bounded
    @mongo_errors
    async def get_user_by_id(self, user_id: str) -> User:
        doc = await self.db.users.find_one({"id": user_id}, NO_ID)
        if doc is None:
            raise NotFoundError(f"User {user_id!r} not found")
        return User.from_dict(doc)

    @bounded
    @mongo_errors
    async def list_user_ids(self) -> List[str]:
        docs = await self._find("users", {}, sort=[("id", ASCENDING)])
        return [doc["id"] for doc in docs]

    @bounded
    @mongo_errors
    async def set_user_otp_verified(self, user_id: str, verified: bool) -> None:
        result = await self.db.users.update_one(
            {"id": user_id}, {"$set": {"otp_verified": verified, "updated_at": utcnow()}}
        )
        require_one(result.matched_count, f"User {user_id!r}")

    @bounded
    @mongo_errors
    async def update_user_password(self, user_id: str, password_hash: str) -> None:
        result = await self.db.users.update_one(
            {"id": user_id}, {"$set": {"password_hash": password_hash, "updated_at": utcnow()}}
        )
        require_one(result.matched_count, f"User {user_id!r}")

    # ------------------------------------------------------------------
    # AI models
    # ------------------------------------------------------------------

    @mongo_errors
    async def _fetch_ai_models(self, user_id: str) -> List[AIModelConfig]:
        docs = await self._find("ai_models", {"user_id": user_id}, sort=[("id", ASCENDING)])
        return [AIModelConfig.from_dict(doc) for doc in docs]

    @mongo_errors
    async def _find_ai_model(
        self, user_id: Optional[str], field: str, value: str
    ) -> Optional[AIModelConfig]:
        if field not in AI_MODEL_LOOKUP_FIELDS:
            raise ValueError(f"Unsupported AI model lookup field: {field}")
        query: Dict[str, Any] = {field: value}
        if user_id is not None:
            query["user_id"] = user_id
        docs = await self._find("ai_models", query, sort=[("id", ASCENDING)], limit=1)
        return AIModelConfig.from_dict(docs[0]) if docs else None

    @mongo_errors
    async def _get_ai_model_by_id(self, model_row_id: int) -> Optional[AIModelConfig]:
        doc = await self.db.ai_models.find_one({"id": model_row_id}, NO_ID)
        return AIModelConfig.from_dict(doc) if doc else None

    @mongo_errors
    async def _insert_ai_model(self, model: AIModelConfig) -> None:
        await self.db.ai_models.insert_one(model.to_dict())

    @mongo_errors
    async def _update_ai_model(self, model_row_id: int, values: Dict[str, Any]) -> None:
        result = await self.db.ai_models.update_one({"id": model_row_id}, {"$set": values})
        require_one(result.matched_count, f"AI model {model_row_id}")

    # ------------------------------------------------------------------
    # Exchanges
    # ------------------------------------------------------------------

    @mongo_errors
    async def _fetch_exchanges(self, user_id: str) -> List[ExchangeConfig]:
        docs = await self._find("exchanges", {"user_id": user_id}, sort=[("id", ASCENDING)])
        return [ExchangeConfig.from_dict(doc) for doc in docs]

    @mongo_errors
    async def _find_exchange(self, user_id: str, exchange_key: str) -> Optional[ExchangeConfig]:
        doc = await self.db.exchanges.find_one(
            {"user_id": user_id, "exchange_id": exchange_key}, NO_ID
        )
        return ExchangeConfig.from_dict(doc) if doc else None

    @mongo_errors
    async def _get_exchange_by_id(self, exchange_row_id: int) -> Optional[ExchangeConfig]:
        doc = await self.db.exchanges.find_one({"id": exchange_row_id}, NO_ID)
        return ExchangeConfig.from_dict(doc) if doc else None

    @mongo_errors
    async def _insert_exchange(self, exchange: ExchangeConfig) -> None:
        await self.db.exchanges.insert_one(exchange.to_dict())

    @mongo_errors
    async def _update_exchange(self, exchange_row_id: int, values: Dict[str, Any]) -> None:
        result = await self.db.exchanges.update_one({"id": exchange_row_id}, {"$set": values})
        require_one(result.matched_count, f"Exchange {exchange_row_id}")

    # ------------------------------------------------------------------
    # Traders
    # ------------------------------------------------------------------

    @bounded
    @mongo_errors
    async def create_trader(self, trader: TraderRecord) -> None:
        now = utcnow()
        doc = trader.to_dict()
        doc["created_at"] = trader.created_at or now
        doc["updated_at"] = trader.updated_at or now
        await self.db.traders.insert_one(doc)

    @bounded
    @mongo_errors
    async def list_traders(self, user_id: str) -> List[TraderRecord]:
        docs = await self._find(
            "traders", {"user_id": user_id}, sort=[("created_at", DESCENDING), ("_id", DESCENDING)]
        )
        return [TraderRecord.from_dict(doc) for doc in docs]

    @mongo_errors
    async def _get_trader(self, user_id: str, trader_id: str) -> Optional[TraderRecord]:
        doc = await self.db.traders.find_one({"id": trader_id, "user_id": user_id}, NO_ID)
        return TraderRecord.from_dict(doc) if doc else None

    async def _update_trader_fields(
        self, user_id: str, trader_id: str, values: Dict[str, Any]
    ) -> None:
        values["updated_at"] = utcnow()
        result = await self.db.traders.update_one(
            {"id": trader_id, "user_id": user_id}, {"$set": values}
        )
        require_one(result.matched_count, f"Trader {trader_id!r} of user {user_id!r}")

    @bounded
    @mongo_errors
    async def set_trader_running(self, user_id: str, trader_id: str, running: bool) -> None:
        await self._update_trader_fields(user_id, trader_id, {"is_running": running})

    @bounded
    @mongo_errors
    async def update_trader(self, trader: TraderRecord) -> None:
        values = {name: getattr(trader, name) for name in UPDATABLE_TRADER_FIELDS}
        await self._update_trader_fields(trader.user_id, trader.id, values)

    @bounded
    @mongo_errors
    async def set_trader_custom_prompt(
        self, user_id: str, trader_id: str, prompt: str, override_base: bool
    ) -> None:
        await self._update_trader_fields(
            user_id, trader_id, {"custom_prompt": prompt, "override_base_prompt": override_base}
        )

    @bounded
    @mongo_errors
    async def set_trader_initial_balance(
        self, user_id: str, trader_id: str, balance: float
    ) -> None:
        await self._update_trader_fields(user_id, trader_id, {"initial_balance": balance})

    @bounded
    @mongo_errors
    async def delete_trader(self, user_id: str, trader_id: str) -> None:
        result = await self.db.traders.delete_one({"id": trader_id, "user_id": user_id})
        require_one(result.deleted_count, f"Trader {trader_id!r} of user {user_id!r}")

    @mongo_errors
    async def _collect_trader_symbols(self) -> List[str]:
        docs = await self._find(
            "traders", {}, sort=[("created_at", ASCENDING), ("_id", ASCENDING)]
        )
        return [doc.get("trading_symbols", "") for doc in docs]

    @mongo_errors
    async def _collect_running_timeframes(self) -> List[str]:
        docs = await self._find("traders", {"is_running": True})
        return [doc.get("timeframes", "") for doc in docs]

    # ------------------------------------------------------------------
    # System config
    # ------------------------------------------------------------------

    @bounded
    @mongo_errors
    async def get_system_config_entry(self, key: str) -> Optional[SystemConfigEntry]:
        doc = await self.db.system_config.find_one({"key": key}, NO_ID)
        return SystemConfigEntry.from_dict(doc) if doc else None

    @bounded
    @mongo_errors
    async def set_system_config(self, key: str, value: str) -> None:
        await self.db.system_config.update_one(
            {"key": key}, {"$set": {"value": value, "updated_at": utcnow()}}, upsert=True
        )

    @bounded
    @mongo_errors
    async def ensure_system_config(self, key: str, value: str) -> bool:
        result = await self.db.system_config.update_one(
            {"key": key},
            {"$setOnInsert": {"value": value, "updated_at": utcnow()}},
            upsert=True,
        )
        return result.upserted_id is not None

    # ------------------------------------------------------------------
    # Signal sources
    # ------------------------------------------------------------------

    @bounded
    @mongo_errors
    async def create_or_update_signal_source(
        self, user_id: str, coin_pool_url: str, oi_top_url: str
    ) -> None:
        now = utcnow()
        await self.db.user_signal_sources.update_one(
            {"user_id": user_id},
            {
                "$set": {"coin_pool_url": coin_pool_url, "oi_top_url": oi_top_url, "updated_at": now},
                "$setOnInsert": {"created_at": now},
            },
            upsert=True,
        )

    @bounded
    @mongo_errors
    async def get_signal_source(self, user_id: str) -> UserSignalSource:
        doc = await self.db.user_signal_sources.find_one({"user_id": user_id}, NO_ID)
        if doc is None:
            raise NotFoundError(f"No signal source configured for user {user_id!r}")
        return UserSignalSource.from_dict(doc)

    # ------------------------------------------------------------------
    # Beta codes
    # ------------------------------------------------------------------

    @mongo_errors
    async def _insert_beta_code(self, code: str) -> bool:
        result = await self.db.beta_codes.update_one(
            {"code": code},
            {"$setOnInsert": {"used": False, "used_by": "", "created_at": utcnow()}},
            upsert=True,
        )
        return result.upserted_id is not None

    @bounded
    @mongo_errors
    async def get_beta_code(self, code: str) -> Optional[BetaCode]:
        doc = await self.db.beta_codes.find_one({"code": code}, NO_ID)
        return BetaCode.from_dict(doc) if doc else None

    @bounded
    @mongo_errors
    async def claim_beta_code(self, code: str, email: str) -> None:
        result = await self.db.beta_codes.update_one(
            {"code": code, "used": False},
            {"$set": {"used": True, "used_by": email, "used_at": utcnow()}},
        )
        if result.modified_count == 0:
            raise BetaCodeUnavailableError("Beta code is invalid or has already been used")

    @bounded
    @mongo_errors
    async def beta_code_stats(self) -> BetaCodeStats:
        total = await self.db.beta_codes.count_documents({})
        used = await self.db.beta_codes.count_documents({"used": True})
        return BetaCodeStats(total=total, used=used)

    # ------------------------------------------------------------------
    # Decision logs
    # ------------------------------------------------------------------

    @bounded
    @mongo_errors
    async def save_decision_log(
        self, user_id: str, trader_id: str, record: Dict[str, Any]
    ) -> None:
        await self.db.decision_logs.insert_one(
            {"user_id": user_id, "trader_id": trader_id, "record": dict(record), "created_at": utcnow()}
        )

    @bounded
    @mongo_errors
    async def get_decision_logs(
        self, user_id: str, trader_id: str, limit: int = 100
    ) -> List[DecisionLogEntry]:
        cursor = self.db.decision_logs.find(
            {"user_id": user_id, "trader_id": trader_id},
            sort=[("_id", DESCENDING)],
            limit=limit,
        )
        docs = await cursor.to_list(length=None)
        return [DecisionLogEntry.from_dict(doc) for doc in reversed(docs)]
