"""
Baseline catalog data and the naming rules used when a client configures an
AI model or exchange that has no row yet.
"""

import json
from typing import Dict, List, NamedTuple, Tuple


class CatalogModel(NamedTuple):
    model_id: str
    name: str
    provider: str


class CatalogExchange(NamedTuple):
    exchange_id: str
    name: str
    type: str


DEFAULT_AI_MODELS: Tuple[CatalogModel, ...] = (
    CatalogModel("deepseek", "DeepSeek", "deepseek"),
    CatalogModel("qwen", "Qwen", "qwen"),
)

DEFAULT_EXCHANGES: Tuple[CatalogExchange, ...] = (
    CatalogExchange("binance", "Binance Futures", "binance"),
    CatalogExchange("hyperliquid", "Hyperliquid", "hyperliquid"),
    CatalogExchange("aster", "Aster DEX", "aster"),
)

DEFAULT_COINS: List[str] = [
    "BTCUSDT",
    "ETHUSDT",
    "SOLUSDT",
    "BNBUSDT",
    "XRPUSDT",
    "DOGEUSDT",
    "ADAUSDT",
    "HYPEUSDT",
]

# Used when system_config.default_coins is missing or unparsable
FALLBACK_COINS: List[str] = ["BTCUSDT", "ETHUSDT", "SOLUSDT", "BNBUSDT"]

DEFAULT_TIMEFRAMES: List[str] = ["15m", "1h", "4h"]

DEFAULT_SYSTEM_CONFIG: Dict[str, str] = {
    "beta_mode": "false",
    "api_server_port": "8080",
    "use_default_coins": "true",
    "default_coins": json.dumps(DEFAULT_COINS, separators=(",", ":")),
    "max_daily_loss": "10.0",
    "max_drawdown": "20.0",
    "stop_trading_minutes": "60",
    "btc_eth_leverage": "5",
    "altcoin_leverage": "5",
    "jwt_secret": "",
    "registration_enabled": "true",
}

KNOWN_AI_PROVIDERS = ("deepseek", "qwen")

_EXCHANGE_FALLBACKS: Dict[str, Tuple[str, str]] = {
    "binance": ("Binance Futures", "cex"),
    "hyperliquid": ("Hyperliquid", "dex"),
    "aster": ("Aster DEX", "dex"),
}


def infer_ai_provider(model_key: str) -> str:
    """Infer the provider slug from a model key such as ``user1_deepseek``."""
    if model_key in KNOWN_AI_PROVIDERS:
        return model_key
    parts = model_key.split("_")
    if len(parts) >= 2:
        return parts[-1]
    return model_key


def default_ai_model_name(provider: str) -> str:
    if provider == "deepseek":
        return "DeepSeek AI"
    if provider == "qwen":
        return "Qwen AI"
    return f"{provider} AI"


def new_ai_model_key(user_id: str, model_key: str, provider: str) -> str:
    """A bare provider key becomes ``<user>_<provider>``; anything else is kept."""
    if model_key == provider:
        return f"{user_id}_{provider}"
    return model_key


def exchange_fallback_info(exchange_key: str) -> Tuple[str, str]:
    """Display name and type for an exchange created on first update."""
    return _EXCHANGE_FALLBACKS.get(exchange_key, (f"{exchange_key} Exchange", "cex"))
