"""
Typed records persisted by the configuration store.

Each record is a plain dataclass with ``to_dict()`` for backend writes and
``from_dict()`` for rows/documents read back. ``from_dict`` ignores keys it
does not know (Mongo ``_id``, legacy columns) and tolerates missing ones so
that records written by older schema generations still load.
"""

import base64
import json
import secrets
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

DEFAULT_OWNER = "default"
ADMIN_USER_ID = "admin"
ADMIN_EMAIL = "admin@localhost"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_datetime(value: Any) -> Optional[datetime]:
    """Coerce a stored timestamp (ISO text or datetime) to an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).replace(" ", "T", 1)
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def generate_otp_secret() -> str:
    """Generate a base32 OTP secret from 20 random bytes."""
    return base64.b32encode(secrets.token_bytes(20)).decode("ascii")


def normalize_symbol(symbol: str) -> str:
    """Upper-case a trading symbol and append the USDT quote when missing."""
    symbol = symbol.strip().upper()
    if symbol and not symbol.endswith("USDT"):
        symbol += "USDT"
    return symbol


def split_csv(value: str) -> List[str]:
    return [part.strip() for part in (value or "").split(",") if part.strip()]


def _pick(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names and v is not None}


@dataclass
class User:
    """Platform account."""

    id: str
    email: str
    password_hash: str = ""
    otp_secret: str = ""
    otp_verified: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "User":
        values = _pick(cls, data)
        values["otp_verified"] = bool(values.get("otp_verified", False))
        values["created_at"] = as_datetime(values.get("created_at"))
        values["updated_at"] = as_datetime(values.get("updated_at"))
        return cls(**values)


@dataclass
class AIModelConfig:
    """Per-user AI model credentials. ``id`` is allocator-issued."""

    id: int
    model_id: str
    user_id: str
    name: str = ""
    provider: str = ""
    display_name: str = ""
    enabled: bool = False
    api_key: str = ""
    custom_api_url: str = ""
    custom_model_name: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    SECRET_FIELDS = ("api_key",)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AIModelConfig":
        values = _pick(cls, data)
        values["id"] = int(values.get("id", 0))
        values["enabled"] = bool(values.get("enabled", False))
        values["created_at"] = as_datetime(values.get("created_at"))
        values["updated_at"] = as_datetime(values.get("updated_at"))
        return cls(**values)


@dataclass
class ExchangeConfig:
    """Per-user exchange credentials. ``id`` is allocator-issued."""

    id: int
    exchange_id: str
    user_id: str
    name: str = ""
    type: str = ""
    display_name: str = ""
    enabled: bool = False
    api_key: str = ""
    secret_key: str = ""
    testnet: bool = False
    # Hyperliquid main wallet address (agent key lives in api_key)
    hyperliquid_wallet_addr: str = ""
    aster_user: str = ""
    aster_signer: str = ""
    aster_private_key: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    SECRET_FIELDS = ("api_key", "secret_key", "aster_private_key")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExchangeConfig":
        values = _pick(cls, data)
        values["id"] = int(values.get("id", 0))
        values["enabled"] = bool(values.get("enabled", False))
        values["testnet"] = bool(values.get("testnet", False))
        values["created_at"] = as_datetime(values.get("created_at"))
        values["updated_at"] = as_datetime(values.get("updated_at"))
        return cls(**values)


# Applied on read when the stored value is zero, empty or missing
TRADER_READ_DEFAULTS: Dict[str, Any] = {
    "btc_eth_leverage": 5,
    "altcoin_leverage": 5,
    "system_prompt_template": "default",
    "taker_fee_rate": 0.0004,
    "maker_fee_rate": 0.0002,
    "order_strategy": "conservative_hybrid",
    "limit_price_offset": -0.03,
    "limit_timeout_seconds": 60,
    "timeframes": "4h",
}


@dataclass
class TraderRecord:
    """Trader definition referencing one AI model and one exchange by integer id."""

    id: str
    user_id: str
    name: str
    ai_model_id: int
    exchange_id: int
    initial_balance: float = 0.0
    scan_interval_minutes: int = 3
    is_running: bool = False
    btc_eth_leverage: int = 0
    altcoin_leverage: int = 0
    trading_symbols: str = ""
    use_coin_pool: bool = False
    use_oi_top: bool = False
    custom_prompt: str = ""
    override_base_prompt: bool = False
    system_prompt_template: str = ""
    is_cross_margin: bool = True
    taker_fee_rate: float = 0.0
    maker_fee_rate: float = 0.0
    order_strategy: str = ""
    limit_price_offset: float = 0.0
    limit_timeout_seconds: int = 0
    timeframes: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def symbols(self) -> List[str]:
        return split_csv(self.trading_symbols)

    @property
    def timeframe_list(self) -> List[str]:
        return split_csv(self.timeframes)

    def with_defaults(self) -> "TraderRecord":
        """Fill fields introduced after initial creation with their defaults."""
        for name, default in TRADER_READ_DEFAULTS.items():
            if not getattr(self, name):
                setattr(self, name, default)
        return self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TraderRecord":
        values = _pick(cls, data)
        for name in ("ai_model_id", "exchange_id", "scan_interval_minutes",
                     "btc_eth_leverage", "altcoin_leverage", "limit_timeout_seconds"):
            if name in values:
                values[name] = int(values[name])
        for name in ("is_running", "use_coin_pool", "use_oi_top",
                     "override_base_prompt", "is_cross_margin"):
            if name in values:
                values[name] = bool(values[name])
        values["created_at"] = as_datetime(values.get("created_at"))
        values["updated_at"] = as_datetime(values.get("updated_at"))
        return cls(**values).with_defaults()


@dataclass
class TraderFullConfig:
    """A trader with its resolved (decrypted) AI model and exchange."""

    trader: TraderRecord
    ai_model: AIModelConfig
    exchange: ExchangeConfig


@dataclass
class UserSignalSource:
    user_id: str
    coin_pool_url: str = ""
    oi_top_url: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserSignalSource":
        values = _pick(cls, data)
        values["created_at"] = as_datetime(values.get("created_at"))
        values["updated_at"] = as_datetime(values.get("updated_at"))
        return cls(**values)


@dataclass
class SystemConfigEntry:
    key: str
    value: str
    updated_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SystemConfigEntry":
        values = _pick(cls, data)
        values["value"] = "" if values.get("value") is None else str(values["value"])
        values["updated_at"] = as_datetime(values.get("updated_at"))
        return cls(**values)


@dataclass
class BetaCode:
    code: str
    used: bool = False
    used_by: str = ""
    used_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def available(self) -> bool:
        return not self.used

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BetaCode":
        values = _pick(cls, data)
        values["used"] = bool(values.get("used", False))
        values["used_by"] = values.get("used_by") or ""
        values["used_at"] = as_datetime(values.get("used_at"))
        values["created_at"] = as_datetime(values.get("created_at"))
        return cls(**values)


@dataclass(frozen=True)
class BetaCodeStats:
    total: int
    used: int

    @property
    def available(self) -> int:
        return self.total - self.used


@dataclass
class DecisionLogEntry:
    """One trading-cycle decision snapshot saved by the trading engine."""

    user_id: str
    trader_id: str
    record: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DecisionLogEntry":
        values = _pick(cls, data)
        record = values.get("record") or {}
        if isinstance(record, str):
            record = json.loads(record)
        values["record"] = dict(record)
        values["created_at"] = as_datetime(values.get("created_at"))
        return cls(**values)
