"""
Record store backends and the factory that opens one from configuration.

Usage:
    from trader_config.storage import open_store

    store = await open_store()
    full = await store.get_trader_full_config(user_id, trader_id)
    await store.close()
"""

from typing import Optional

from ..config import StoreBackend, StoreConfig, load_config_from_env
from ..exceptions import ConfigurationError
from ..vault import CredentialVault
from .contract import RecordStore
from .migration import CURRENT_GENERATION, SchemaManager


def create_store(config: StoreConfig) -> RecordStore:
    """Build (but do not open) the backend selected by ``config.backend``."""
    if config.backend == StoreBackend.SQLITE:
        from .sqlite import SqliteRecordStore

        return SqliteRecordStore.from_config(config)
    if config.backend == StoreBackend.MONGO:
        from .mongo import MongoRecordStore

        return MongoRecordStore.from_config(config)
    raise ConfigurationError(f"Unsupported store backend: {config.backend}")


async def open_store(
    config: Optional[StoreConfig] = None, vault: Optional[CredentialVault] = None
) -> RecordStore:
    """
    Open a ready-to-use store: connect, migrate, seed, attach the vault.

    Raises:
        StoreConnectionError, SchemaError, IntegrityError: the owning
            process must refuse to start
    """
    config = config or load_config_from_env()
    store = create_store(config)
    try:
        await store.open()
    except Exception:
        await store.close()
        raise
    store.set_credential_vault(vault or CredentialVault.from_config(config.vault))
    return store


__all__ = [
    "CURRENT_GENERATION",
    "RecordStore",
    "SchemaManager",
    "create_store",
    "open_store",
]
