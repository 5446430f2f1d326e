"""
Table definitions for the embedded relational backend (current generation).

``{table}`` placeholders let the rekey migration build replacement tables
under a temporary name.
"""

from typing import List, Tuple

USERS_DDL = """
CREATE TABLE IF NOT EXISTS {table} (
    id TEXT PRIMARY KEY,
    email TEXT UNIQUE NOT NULL,
    password_hash TEXT NOT NULL DEFAULT '',
    otp_secret TEXT DEFAULT '',
    otp_verified BOOLEAN DEFAULT 0,
    created_at TEXT,
    updated_at TEXT
)
"""

AI_MODELS_DDL = """
CREATE TABLE IF NOT EXISTS {table} (
    id INTEGER PRIMARY KEY,
    model_id TEXT NOT NULL,
    user_id TEXT NOT NULL DEFAULT 'default',
    name TEXT NOT NULL DEFAULT '',
    provider TEXT NOT NULL DEFAULT '',
    display_name TEXT DEFAULT '',
    enabled BOOLEAN DEFAULT 0,
    api_key TEXT DEFAULT '',
    custom_api_url TEXT DEFAULT '',
    custom_model_name TEXT DEFAULT '',
    created_at TEXT,
    updated_at TEXT,
    UNIQUE(model_id, user_id)
)
"""

EXCHANGES_DDL = """
CREATE TABLE IF NOT EXISTS {table} (
    id INTEGER PRIMARY KEY,
    exchange_id TEXT NOT NULL,
    user_id TEXT NOT NULL DEFAULT 'default',
    name TEXT NOT NULL DEFAULT '',
    type TEXT NOT NULL DEFAULT '',
    display_name TEXT DEFAULT '',
    enabled BOOLEAN DEFAULT 0,
    api_key TEXT DEFAULT '',
    secret_key TEXT DEFAULT '',
    testnet BOOLEAN DEFAULT 0,
    hyperliquid_wallet_addr TEXT DEFAULT '',
    aster_user TEXT DEFAULT '',
    aster_signer TEXT DEFAULT '',
    aster_private_key TEXT DEFAULT '',
    created_at TEXT,
    updated_at TEXT,
    UNIQUE(exchange_id, user_id)
)
"""

TRADERS_DDL = """
CREATE TABLE IF NOT EXISTS {table} (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL DEFAULT 'default',
    name TEXT NOT NULL,
    ai_model_id INTEGER NOT NULL,
    exchange_id INTEGER NOT NULL,
    initial_balance REAL NOT NULL DEFAULT 0,
    scan_interval_minutes INTEGER DEFAULT 3,
    is_running BOOLEAN DEFAULT 0,
    btc_eth_leverage INTEGER DEFAULT 5,
    altcoin_leverage INTEGER DEFAULT 5,
    trading_symbols TEXT DEFAULT '',
    use_coin_pool BOOLEAN DEFAULT 0,
    use_oi_top BOOLEAN DEFAULT 0,
    custom_prompt TEXT DEFAULT '',
    override_base_prompt BOOLEAN DEFAULT 0,
    system_prompt_template TEXT DEFAULT 'default',
    is_cross_margin BOOLEAN DEFAULT 1,
    taker_fee_rate REAL DEFAULT 0.0004,
    maker_fee_rate REAL DEFAULT 0.0002,
    order_strategy TEXT DEFAULT 'conservative_hybrid',
    limit_price_offset REAL DEFAULT -0.03,
    limit_timeout_seconds INTEGER DEFAULT 60,
    timeframes TEXT DEFAULT '4h',
    created_at TEXT,
    updated_at TEXT
)
"""

SIGNAL_SOURCES_DDL = """
CREATE TABLE IF NOT EXISTS {table} (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL UNIQUE,
    coin_pool_url TEXT DEFAULT '',
    oi_top_url TEXT DEFAULT '',
    created_at TEXT,
    updated_at TEXT
)
"""

SYSTEM_CONFIG_DDL = """
CREATE TABLE IF NOT EXISTS {table} (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT
)
"""

BETA_CODES_DDL = """
CREATE TABLE IF NOT EXISTS {table} (
    code TEXT PRIMARY KEY,
    used BOOLEAN DEFAULT 0,
    used_by TEXT DEFAULT '',
    used_at TEXT,
    created_at TEXT
)
"""

COUNTERS_DDL = """
CREATE TABLE IF NOT EXISTS {table} (
    name TEXT PRIMARY KEY,
    seq INTEGER NOT NULL DEFAULT 0
)
"""

DECISION_LOGS_DDL = """
CREATE TABLE IF NOT EXISTS {table} (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    trader_id TEXT NOT NULL,
    record TEXT NOT NULL,
    created_at TEXT
)
"""

SCHEMA_MIGRATIONS_DDL = """
CREATE TABLE IF NOT EXISTS {table} (
    version INTEGER PRIMARY KEY,
    description TEXT NOT NULL,
    applied_at TEXT
)
"""

TABLES: List[Tuple[str, str]] = [
    ("users", USERS_DDL),
    ("ai_models", AI_MODELS_DDL),
    ("exchanges", EXCHANGES_DDL),
    ("traders", TRADERS_DDL),
    ("user_signal_sources", SIGNAL_SOURCES_DDL),
    ("system_config", SYSTEM_CONFIG_DDL),
    ("beta_codes", BETA_CODES_DDL),
    ("counters", COUNTERS_DDL),
    ("decision_logs", DECISION_LOGS_DDL),
    ("schema_migrations", SCHEMA_MIGRATIONS_DDL),
]

# Columns added after tables first shipped; applied to older stores in place
ADDITIVE_COLUMNS: List[Tuple[str, str, str]] = [
    ("users", "otp_secret", "TEXT DEFAULT ''"),
    ("users", "otp_verified", "BOOLEAN DEFAULT 0"),
    ("ai_models", "display_name", "TEXT DEFAULT ''"),
    ("ai_models", "custom_api_url", "TEXT DEFAULT ''"),
    ("ai_models", "custom_model_name", "TEXT DEFAULT ''"),
    ("exchanges", "display_name", "TEXT DEFAULT ''"),
    ("exchanges", "hyperliquid_wallet_addr", "TEXT DEFAULT ''"),
    ("exchanges", "aster_user", "TEXT DEFAULT ''"),
    ("exchanges", "aster_signer", "TEXT DEFAULT ''"),
    ("exchanges", "aster_private_key", "TEXT DEFAULT ''"),
    ("traders", "btc_eth_leverage", "INTEGER DEFAULT 5"),
    ("traders", "altcoin_leverage", "INTEGER DEFAULT 5"),
    ("traders", "trading_symbols", "TEXT DEFAULT ''"),
    ("traders", "use_coin_pool", "BOOLEAN DEFAULT 0"),
    ("traders", "use_oi_top", "BOOLEAN DEFAULT 0"),
    ("traders", "custom_prompt", "TEXT DEFAULT ''"),
    ("traders", "override_base_prompt", "BOOLEAN DEFAULT 0"),
    ("traders", "system_prompt_template", "TEXT DEFAULT 'default'"),
    ("traders", "is_cross_margin", "BOOLEAN DEFAULT 1"),
    ("traders", "taker_fee_rate", "REAL DEFAULT 0.0004"),
    ("traders", "maker_fee_rate", "REAL DEFAULT 0.0002"),
    ("traders", "order_strategy", "TEXT DEFAULT 'conservative_hybrid'"),
    ("traders", "limit_price_offset", "REAL DEFAULT -0.03"),
    ("traders", "limit_timeout_seconds", "INTEGER DEFAULT 60"),
    ("traders", "timeframes", "TEXT DEFAULT '4h'"),
]

# Created after destructive steps: they reference generation-2 columns
INDEXES: List[str] = [
    "CREATE INDEX IF NOT EXISTS idx_ai_models_user ON ai_models (user_id, id)",
    "CREATE INDEX IF NOT EXISTS idx_exchanges_user ON exchanges (user_id, id)",
    "CREATE INDEX IF NOT EXISTS idx_traders_user ON traders (user_id, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_decision_logs_trader "
    "ON decision_logs (user_id, trader_id, id DESC)",
]


def table_ddl(ddl: str, table: str) -> str:
    return ddl.format(table=table)
