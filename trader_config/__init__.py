"""
trader_config - persistent configuration store for a multi-user trading platform.

Users, per-user AI model and exchange credentials, traders, signal sources,
system settings, beta invitation codes and decision logs, behind one record
store contract with SQLite and MongoDB backends.
"""

__version__ = "0.1.0"

from .config import StoreConfig, load_config_from_env
from .exceptions import (
    BetaCodeUnavailableError,
    ConcurrencyConflict,
    DuplicateError,
    IntegrityError,
    NotFoundError,
    SchemaError,
    StoreConnectionError,
    StoreError,
    StoreTimeoutError,
)
from .models import (
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
)
from .storage import RecordStore, open_store
from .vault import CredentialVault

__all__ = [
    "AIModelConfig",
    "BetaCode",
    "BetaCodeStats",
    "BetaCodeUnavailableError",
    "ConcurrencyConflict",
    "CredentialVault",
    "DecisionLogEntry",
    "DuplicateError",
    "ExchangeConfig",
    "IntegrityError",
    "NotFoundError",
    "RecordStore",
    "SchemaError",
    "StoreConfig",
    "StoreConnectionError",
    "StoreError",
    "StoreTimeoutError",
    "SystemConfigEntry",
    "TraderFullConfig",
    "TraderRecord",
    "User",
    "UserSignalSource",
    "load_config_from_env",
    "open_store",
]
