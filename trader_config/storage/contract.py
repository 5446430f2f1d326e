"""
Record store contract shared by every backend.

``RecordStore`` is the only boundary the trading engine and admin API see.
Backends implement the storage primitives; the cross-cutting policies live
here so both backends behave identically:

- secrets are encrypted on write and decrypted on read through the vault
- updates never overwrite a stored secret with an empty value
- AI model / exchange updates create the row when none exists yet
- trader reads fill defaults for fields added after the record was created
- every public coroutine is bounded by ``operation_timeout``
"""

import asyncio
import functools
import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from ..defaults import (
    DEFAULT_TIMEFRAMES,
    FALLBACK_COINS,
    default_ai_model_name,
    exchange_fallback_info,
    infer_ai_provider,
    new_ai_model_key,
)
from ..exceptions import (
    ConcurrencyConflict,
    DuplicateError,
    NotFoundError,
    StoreError,
    StoreTimeoutError,
)
from ..logger import LogEvent, get_logger, log_store_event
from ..models import (
    ADMIN_EMAIL,
    ADMIN_USER_ID,
    TRADER_READ_DEFAULTS,
    AIModelConfig,
    BetaCode,
    BetaCodeStats,
    DecisionLogEntry,
    ExchangeConfig,
    SystemConfigEntry,
    TraderFullConfig,
    TraderRecord,
    User,
    UserSignalSource,
    normalize_symbol,
    utcnow,
)
from ..vault import CredentialVault

logger = get_logger(__name__)


def bounded(method):
    """Bound a store coroutine by the store's ``operation_timeout``."""

    @functools.wraps(method)
    async def wrapper(self, *args, **kwargs):
        try:
            return await asyncio.wait_for(
                method(self, *args, **kwargs), timeout=self.operation_timeout
            )
        except asyncio.TimeoutError as e:
            raise StoreTimeoutError(
                f"{method.__name__} timed out after {self.operation_timeout}s"
            ) from e

    return wrapper


def parse_beta_code_lines(lines: Iterable[str]) -> List[str]:
    """Strip lines, dropping blanks and ``#`` comments, keeping first occurrences."""
    codes: List[str] = []
    seen = set()
    for line in lines:
        code = line.strip()
        if not code or code.startswith("#") or code in seen:
            continue
        seen.add(code)
        codes.append(code)
    return codes


class RecordStore(ABC):
    """Typed CRUD and query contract over the configuration record families."""

    backend_name = "abstract"

    def __init__(
        self,
        operation_timeout: float = 10.0,
        backup_dir: Optional[Path] = None,
        admin_mode: bool = False,
        beta_codes_file: Optional[Path] = None,
    ):
        self.operation_timeout = operation_timeout
        self.backup_dir = Path(backup_dir) if backup_dir else None
        self.admin_mode = admin_mode
        self.beta_codes_file = Path(beta_codes_file) if beta_codes_file else None
        self.schema_generation: Optional[int] = None
        self._vault: Optional[CredentialVault] = None
        self._ready = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> "RecordStore":
        """Connect, migrate, seed. Raises on any fatal start-up error."""
        from .seeding import DefaultDataSeeder

        await self._connect()
        manager = self.schema_manager()
        self.schema_generation = await manager.ensure_schema()

        seeder = DefaultDataSeeder(
            self, admin_mode=self.admin_mode, beta_codes_file=self.beta_codes_file
        )
        await seeder.seed_defaults()

        self._ready = True
        log_store_event(
            logger,
            LogEvent.STORE_OPENED,
            f"{self.backend_name} store ready at schema generation {self.schema_generation}",
            backend=self.backend_name,
        )
        return self

    @property
    def ready(self) -> bool:
        return self._ready

    @abstractmethod
    async def _connect(self) -> None:
        """Establish backend connectivity (raises StoreConnectionError)."""

    @abstractmethod
    def schema_manager(self):
        """Return the backend's SchemaManager."""

    @property
    @abstractmethod
    def allocator(self):
        """The backend's SequenceAllocator."""

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources."""

    # ------------------------------------------------------------------
    # Vault wiring
    # ------------------------------------------------------------------

    def set_credential_vault(self, vault: Optional[CredentialVault]) -> None:
        self._vault = vault

    @property
    def vault(self) -> Optional[CredentialVault]:
        return self._vault

    def _encrypt(self, value: str) -> str:
        if self._vault is None or not value:
            return value
        return self._vault.encrypt_for_storage(value)

    def _decrypt(self, value: str) -> str:
        if self._vault is None or not value:
            return value
        return self._vault.decrypt_from_storage(value)

    def _encrypt_non_empty(self, secrets: Dict[str, str]) -> Dict[str, str]:
        """Only secrets with a value are written; empty means leave unchanged."""
        return {name: self._encrypt(value) for name, value in secrets.items() if value}

    def _decrypt_record(self, record):
        for name in record.SECRET_FIELDS:
            setattr(record, name, self._decrypt(getattr(record, name)))
        return record

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    @abstractmethod
    async def create_user(self, user: User) -> None:
        """Insert a user; DuplicateError on an existing id or email."""

    @abstractmethod
    async def get_user_by_email(self, email: str) -> User:
        """NotFoundError when absent."""

    @abstractmethod
    async def get_user_by_id(self, user_id: str) -> User:
        """NotFoundError when absent."""

    @abstractmethod
    async def list_user_ids(self) -> List[str]:
        """All user ids, sorted."""

    @abstractmethod
    async def set_user_otp_verified(self, user_id: str, verified: bool) -> None:
        """NotFoundError when the user does not exist."""

    @abstractmethod
    async def update_user_password(self, user_id: str, password_hash: str) -> None:
        """NotFoundError when the user does not exist."""

    @bounded
    async def ensure_admin_user(self) -> bool:
        """Create the reserved admin user if absent. Returns True when created."""
        try:
            await self.get_user_by_id(ADMIN_USER_ID)
            return False
        except NotFoundError:
            pass

        admin = User(id=ADMIN_USER_ID, email=ADMIN_EMAIL, otp_verified=True)
        try:
            await self.create_user(admin)
        except DuplicateError:
            return False
        logger.info("Created reserved admin user")
        return True

    # ------------------------------------------------------------------
    # AI models
    # ------------------------------------------------------------------

    @abstractmethod
    async def _fetch_ai_models(self, user_id: str) -> List[AIModelConfig]:
        """Raw (encrypted) AI models of a user ordered by id."""

    @abstractmethod
    async def _find_ai_model(
        self, user_id: Optional[str], field: str, value: str
    ) -> Optional[AIModelConfig]:
        """First raw AI model where ``field == value``; any owner when user_id is None."""

    @abstractmethod
    async def _get_ai_model_by_id(self, model_row_id: int) -> Optional[AIModelConfig]:
        """Raw AI model by allocator-issued id."""

    @abstractmethod
    async def _insert_ai_model(self, model: AIModelConfig) -> None:
        """Insert; DuplicateError on (model_id, user_id)."""

    @abstractmethod
    async def _update_ai_model(self, model_row_id: int, values: Dict[str, Any]) -> None:
        """Set the given columns on one AI model row."""

    @bounded
    async def list_ai_models(self, user_id: str) -> List[AIModelConfig]:
        models = await self._fetch_ai_models(user_id)
        return [self._decrypt_record(model) for model in models]

    @bounded
    async def create_ai_model(
        self,
        user_id: str,
        model_key: str,
        name: str,
        provider: str,
        enabled: bool = False,
        api_key: str = "",
        custom_api_url: str = "",
        custom_model_name: str = "",
        display_name: str = "",
    ) -> int:
        """Create an AI model config. DuplicateError when (model_key, user) exists."""
        if await self._find_ai_model(user_id, "model_id", model_key) is not None:
            raise DuplicateError(f"AI model {model_key!r} already exists for user {user_id!r}")

        now = utcnow()
        model = AIModelConfig(
            id=await self.allocator.next("ai_models"),
            model_id=model_key,
            user_id=user_id,
            name=name,
            provider=provider,
            display_name=display_name,
            enabled=enabled,
            api_key=self._encrypt(api_key),
            custom_api_url=custom_api_url,
            custom_model_name=custom_model_name,
            created_at=now,
            updated_at=now,
        )
        await self._insert_ai_model(model)
        return model.id

    @bounded
    async def upsert_ai_model(
        self,
        user_id: str,
        model_key: str,
        enabled: bool,
        api_key: str = "",
        custom_api_url: str = "",
        custom_model_name: str = "",
    ) -> int:
        """
        Update a user's AI model config, creating it when absent.

        An empty ``api_key`` leaves the stored key unchanged.

        Returns:
            The allocator-issued id of the updated or created row
        """
        values: Dict[str, Any] = {
            "enabled": enabled,
            "custom_api_url": custom_api_url,
            "custom_model_name": custom_model_name,
            "updated_at": utcnow(),
        }
        values.update(self._encrypt_non_empty({"api_key": api_key}))

        existing = await self._find_ai_model(user_id, "model_id", model_key)
        if existing is None:
            existing = await self._find_ai_model(user_id, "provider", model_key)
            if existing is not None:
                logger.warning(
                    f"Matched AI model by legacy provider key: {model_key} -> {existing.model_id}"
                )
        if existing is not None:
            await self._update_ai_model(existing.id, values)
            return existing.id

        provider = infer_ai_provider(model_key)
        catalog = await self._find_ai_model(None, "provider", provider)
        name = catalog.name if catalog is not None and catalog.name else ""
        name = name or default_ai_model_name(provider)
        new_key = new_ai_model_key(user_id, model_key, provider)

        now = utcnow()
        model = AIModelConfig(
            id=await self.allocator.next("ai_models"),
            model_id=new_key,
            user_id=user_id,
            name=name,
            provider=provider,
            enabled=enabled,
            api_key=self._encrypt(api_key),
            custom_api_url=custom_api_url,
            custom_model_name=custom_model_name,
            created_at=now,
            updated_at=now,
        )
        try:
            await self._insert_ai_model(model)
        except DuplicateError as e:
            raise ConcurrencyConflict(
                f"AI model {new_key!r} for user {user_id!r} was created concurrently"
            ) from e
        logger.info(f"Created AI model config id={model.id} key={new_key} provider={provider}")
        return model.id

    # ------------------------------------------------------------------
    # Exchanges
    # ------------------------------------------------------------------

    @abstractmethod
    async def _fetch_exchanges(self, user_id: str) -> List[ExchangeConfig]:
        """Raw (encrypted) exchanges of a user ordered by id."""

    @abstractmethod
    async def _find_exchange(self, user_id: str, exchange_key: str) -> Optional[ExchangeConfig]:
        """Raw exchange by business key."""

    @abstractmethod
    async def _get_exchange_by_id(self, exchange_row_id: int) -> Optional[ExchangeConfig]:
        """Raw exchange by allocator-issued id."""

    @abstractmethod
    async def _insert_exchange(self, exchange: ExchangeConfig) -> None:
        """Insert; DuplicateError on (exchange_id, user_id)."""

    @abstractmethod
    async def _update_exchange(self, exchange_row_id: int, values: Dict[str, Any]) -> None:
        """Set the given columns on one exchange row."""

    @bounded
    async def list_exchanges(self, user_id: str) -> List[ExchangeConfig]:
        exchanges = await self._fetch_exchanges(user_id)
        return [self._decrypt_record(exchange) for exchange in exchanges]

    def _new_exchange(
        self,
        row_id: int,
        user_id: str,
        exchange_key: str,
        name: str,
        exchange_type: str,
        enabled: bool,
        api_key: str,
        secret_key: str,
        testnet: bool,
        hyperliquid_wallet_addr: str,
        aster_user: str,
        aster_signer: str,
        aster_private_key: str,
    ) -> ExchangeConfig:
        now = utcnow()
        return ExchangeConfig(
            id=row_id,
            exchange_id=exchange_key,
            user_id=user_id,
            name=name,
            type=exchange_type,
            enabled=enabled,
            api_key=self._encrypt(api_key),
            secret_key=self._encrypt(secret_key),
            testnet=testnet,
            hyperliquid_wallet_addr=hyperliquid_wallet_addr,
            aster_user=aster_user,
            aster_signer=aster_signer,
            aster_private_key=self._encrypt(aster_private_key),
            created_at=now,
            updated_at=now,
        )

    @bounded
    async def create_exchange(
        self,
        user_id: str,
        exchange_key: str,
        name: str,
        exchange_type: str,
        enabled: bool = False,
        api_key: str = "",
        secret_key: str = "",
        testnet: bool = False,
        hyperliquid_wallet_addr: str = "",
        aster_user: str = "",
        aster_signer: str = "",
        aster_private_key: str = "",
    ) -> int:
        """Create an exchange config. DuplicateError when (exchange_key, user) exists."""
        if await self._find_exchange(user_id, exchange_key) is not None:
            raise DuplicateError(
                f"Exchange {exchange_key!r} already exists for user {user_id!r}"
            )

        exchange = self._new_exchange(
            await self.allocator.next("exchanges"),
            user_id,
            exchange_key,
            name,
            exchange_type,
            enabled,
            api_key,
            secret_key,
            testnet,
            hyperliquid_wallet_addr,
            aster_user,
            aster_signer,
            aster_private_key,
        )
        await self._insert_exchange(exchange)
        return exchange.id

    @bounded
    async def upsert_exchange(
        self,
        user_id: str,
        exchange_key: str,
        enabled: bool,
        api_key: str = "",
        secret_key: str = "",
        testnet: bool = False,
        hyperliquid_wallet_addr: str = "",
        aster_user: str = "",
        aster_signer: str = "",
        aster_private_key: str = "",
    ) -> int:
        """
        Update a user's exchange config, creating it when absent.

        Empty ``api_key``, ``secret_key`` and ``aster_private_key`` leave the
        stored values unchanged.

        Returns:
            The allocator-issued id of the updated or created row
        """
        existing = await self._find_exchange(user_id, exchange_key)
        if existing is not None:
            values: Dict[str, Any] = {
                "enabled": enabled,
                "testnet": testnet,
                "hyperliquid_wallet_addr": hyperliquid_wallet_addr,
                "aster_user": aster_user,
                "aster_signer": aster_signer,
                "updated_at": utcnow(),
            }
            values.update(
                self._encrypt_non_empty(
                    {
                        "api_key": api_key,
                        "secret_key": secret_key,
                        "aster_private_key": aster_private_key,
                    }
                )
            )
            await self._update_exchange(existing.id, values)
            logger.debug(f"Updated exchange {exchange_key} for user {user_id}")
            return existing.id

        name, exchange_type = exchange_fallback_info(exchange_key)
        exchange = self._new_exchange(
            await self.allocator.next("exchanges"),
            user_id,
            exchange_key,
            name,
            exchange_type,
            enabled,
            api_key,
            secret_key,
            testnet,
            hyperliquid_wallet_addr,
            aster_user,
            aster_signer,
            aster_private_key,
        )
        try:
            await self._insert_exchange(exchange)
        except DuplicateError as e:
            raise ConcurrencyConflict(
                f"Exchange {exchange_key!r} for user {user_id!r} was created concurrently"
            ) from e
        logger.info(f"Created exchange config id={exchange.id} key={exchange_key} type={exchange_type}")
        return exchange.id

    # ------------------------------------------------------------------
    # Traders
    # ------------------------------------------------------------------

    @abstractmethod
    async def create_trader(self, trader: TraderRecord) -> None:
        """Insert a trader; DuplicateError on an existing id."""

    @abstractmethod
    async def list_traders(self, user_id: str) -> List[TraderRecord]:
        """A user's traders, newest first, with read-time defaults applied."""

    @abstractmethod
    async def _get_trader(self, user_id: str, trader_id: str) -> Optional[TraderRecord]:
        """One trader with read-time defaults applied."""

    @abstractmethod
    async def set_trader_running(self, user_id: str, trader_id: str, running: bool) -> None:
        """NotFoundError when the trader does not exist."""

    @abstractmethod
    async def update_trader(self, trader: TraderRecord) -> None:
        """Rewrite a trader's editable settings; NotFoundError when absent."""

    @abstractmethod
    async def set_trader_custom_prompt(
        self, user_id: str, trader_id: str, prompt: str, override_base: bool
    ) -> None:
        """NotFoundError when the trader does not exist."""

    @abstractmethod
    async def set_trader_initial_balance(
        self, user_id: str, trader_id: str, balance: float
    ) -> None:
        """Manual balance resync; NotFoundError when the trader does not exist."""

    @abstractmethod
    async def delete_trader(self, user_id: str, trader_id: str) -> None:
        """NotFoundError when the trader does not exist."""

    @abstractmethod
    async def _collect_trader_symbols(self) -> List[str]:
        """Raw ``trading_symbols`` values of every trader, oldest first."""

    @abstractmethod
    async def _collect_running_timeframes(self) -> List[str]:
        """Raw ``timeframes`` values of running traders."""

    @bounded
    async def get_trader(self, user_id: str, trader_id: str) -> TraderRecord:
        trader = await self._get_trader(user_id, trader_id)
        if trader is None:
            raise NotFoundError(f"Trader {trader_id!r} not found for user {user_id!r}")
        return trader

    @bounded
    async def get_trader_full_config(self, user_id: str, trader_id: str) -> TraderFullConfig:
        """Trader plus its decrypted AI model and exchange."""
        trader = await self._get_trader(user_id, trader_id)
        if trader is None:
            raise NotFoundError(f"Trader {trader_id!r} not found for user {user_id!r}")

        ai_model = await self._get_ai_model_by_id(trader.ai_model_id)
        if ai_model is None:
            raise NotFoundError(
                f"AI model {trader.ai_model_id} referenced by trader {trader_id!r} not found"
            )
        exchange = await self._get_exchange_by_id(trader.exchange_id)
        if exchange is None:
            raise NotFoundError(
                f"Exchange {trader.exchange_id} referenced by trader {trader_id!r} not found"
            )

        return TraderFullConfig(
            trader=trader,
            ai_model=self._decrypt_record(ai_model),
            exchange=self._decrypt_record(exchange),
        )

    @bounded
    async def list_custom_coins(self) -> List[str]:
        """
        Union of symbols configured on traders, normalized, in first-seen order.

        Falls back to the ``default_coins`` system setting, then to a fixed list.
        """
        symbols: List[str] = []
        for raw in await self._collect_trader_symbols():
            for part in (raw or "").split(","):
                coin = normalize_symbol(part)
                if coin and coin not in symbols:
                    symbols.append(coin)
        if symbols:
            return symbols

        stored = await self.get_system_config("default_coins")
        try:
            coins = json.loads(stored)
        except (TypeError, ValueError):
            coins = None
        if not isinstance(coins, list) or not coins:
            logger.warning("default_coins setting missing or unparsable, using fallback list")
            return list(FALLBACK_COINS)
        return [str(c) for c in coins]

    @bounded
    async def list_active_timeframes(self) -> List[str]:
        """Sorted union of timeframes across running traders."""
        timeframes = set()
        for raw in await self._collect_running_timeframes():
            for part in (raw or TRADER_READ_DEFAULTS["timeframes"]).split(","):
                part = part.strip()
                if part:
                    timeframes.add(part)
        if not timeframes:
            return list(DEFAULT_TIMEFRAMES)
        return sorted(timeframes)

    # ------------------------------------------------------------------
    # System config
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_system_config_entry(self, key: str) -> Optional[SystemConfigEntry]:
        """The stored entry for ``key``, or None when it has never been set."""

    @bounded
    async def get_system_config(self, key: str, default: str = "") -> str:
        """Value for ``key``, or ``default`` when the key has never been set."""
        entry = await self.get_system_config_entry(key)
        return entry.value if entry is not None else default

    @abstractmethod
    async def set_system_config(self, key: str, value: str) -> None:
        """Insert or overwrite ``key``."""

    @abstractmethod
    async def ensure_system_config(self, key: str, value: str) -> bool:
        """Insert ``key`` only if absent. Returns True when inserted."""

    # ------------------------------------------------------------------
    # Signal sources
    # ------------------------------------------------------------------

    @abstractmethod
    async def create_or_update_signal_source(
        self, user_id: str, coin_pool_url: str, oi_top_url: str
    ) -> None:
        """Upsert the user's signal source URLs."""

    @abstractmethod
    async def get_signal_source(self, user_id: str) -> UserSignalSource:
        """NotFoundError when the user has none."""

    # ------------------------------------------------------------------
    # Beta codes
    # ------------------------------------------------------------------

    @abstractmethod
    async def _insert_beta_code(self, code: str) -> bool:
        """Insert an unused code if absent. Returns True when inserted."""

    @abstractmethod
    async def get_beta_code(self, code: str) -> Optional[BetaCode]:
        """The stored code, or None when it was never loaded."""

    @bounded
    async def validate_beta_code(self, code: str) -> bool:
        """True when the code exists and is unused."""
        beta_code = await self.get_beta_code(code)
        return beta_code is not None and beta_code.available

    @abstractmethod
    async def claim_beta_code(self, code: str, email: str) -> None:
        """Atomically mark an unused code as used; BetaCodeUnavailableError otherwise."""

    @abstractmethod
    async def beta_code_stats(self) -> BetaCodeStats:
        """Total and used counts."""

    @bounded
    async def load_beta_codes(self, lines: Iterable[str]) -> int:
        """Bulk-load codes from text lines; existing codes are left untouched."""
        codes = parse_beta_code_lines(lines)
        inserted = 0
        for code in codes:
            try:
                if await self._insert_beta_code(code):
                    inserted += 1
            except StoreError as e:
                logger.warning(f"Failed to insert beta code: {e}")
        logger.info(f"Loaded {inserted} new beta codes ({len(codes)} in source)")
        return inserted

    async def load_beta_codes_from_file(self, path: Path) -> int:
        text = Path(path).read_text(encoding="utf-8")
        return await self.load_beta_codes(text.splitlines())

    # ------------------------------------------------------------------
    # Decision logs
    # ------------------------------------------------------------------

    @abstractmethod
    async def save_decision_log(
        self, user_id: str, trader_id: str, record: Dict[str, Any]
    ) -> None:
        """Append one decision snapshot."""

    @abstractmethod
    async def get_decision_logs(
        self, user_id: str, trader_id: str, limit: int = 100
    ) -> List[DecisionLogEntry]:
        """The latest ``limit`` snapshots, oldest first."""

    # ------------------------------------------------------------------

    async def __aenter__(self) -> "RecordStore":
        if not self._ready:
            await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


def require_one(matched: int, what: str) -> None:
    """Raise NotFoundError when an update/delete matched nothing."""
    if matched == 0:
        raise NotFoundError(f"{what} not found")


UPDATABLE_TRADER_FIELDS: Sequence[str] = (
    "name",
    "ai_model_id",
    "exchange_id",
    "scan_interval_minutes",
    "btc_eth_leverage",
    "altcoin_leverage",
    "trading_symbols",
    "use_coin_pool",
    "use_oi_top",
    "custom_prompt",
    "override_base_prompt",
    "system_prompt_template",
    "is_cross_margin",
    "taker_fee_rate",
    "maker_fee_rate",
    "order_strategy",
    "limit_price_offset",
    "limit_timeout_seconds",
    "timeframes",
)
