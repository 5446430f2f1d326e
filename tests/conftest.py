"""Pytest fixtures and configuration for the test suite."""

import sqlite3
from pathlib import Path

import pytest
import pytest_asyncio
from mongomock_motor import AsyncMongoMockClient

from trader_config.storage.mongo import MongoRecordStore
from trader_config.storage.sqlite import SqliteRecordStore
from trader_config.vault import CredentialVault


# Store fixtures
@pytest.fixture
def db_path(tmp_path) -> Path:
    return tmp_path / "config.db"


@pytest.fixture
def backup_dir(tmp_path) -> Path:
    return tmp_path / "backups"


@pytest.fixture
def mongo_client():
    """In-memory Mongo client; each test gets an isolated server."""
    return AsyncMongoMockClient()


def make_sqlite_store(db_path: Path, backup_dir: Path, **kwargs) -> SqliteRecordStore:
    return SqliteRecordStore(db_path, pool_size=3, backup_dir=backup_dir, **kwargs)


def make_mongo_store(client, backup_dir: Path, **kwargs) -> MongoRecordStore:
    return MongoRecordStore(
        client, "trader_config_test", verify_connection=False, backup_dir=backup_dir, **kwargs
    )


@pytest_asyncio.fixture
async def sqlite_store(db_path, backup_dir):
    store = make_sqlite_store(db_path, backup_dir)
    await store.open()
    yield store
    await store.close()


@pytest_asyncio.fixture
async def mongo_store(mongo_client, backup_dir):
    store = make_mongo_store(mongo_client, backup_dir)
    await store.open()
    yield store
    await store.close()


@pytest_asyncio.fixture(params=["sqlite", "mongo"])
async def store(request, db_path, backup_dir, mongo_client):
    """An opened store for each backend."""
    if request.param == "sqlite":
        store = make_sqlite_store(db_path, backup_dir)
    else:
        store = make_mongo_store(mongo_client, backup_dir)
    await store.open()
    yield store
    await store.close()


@pytest.fixture
def vault() -> CredentialVault:
    return CredentialVault([CredentialVault.generate_key()])


# Legacy (generation 1) SQLite layout: string-keyed AI models and exchanges
def create_legacy_schema(db_path: Path) -> None:
    """Create a pre-rekey database with sample data."""
    conn = sqlite3.connect(db_path)
    conn.executescript(
        """
        CREATE TABLE ai_models (
            id TEXT NOT NULL,
            user_id TEXT NOT NULL DEFAULT 'default',
            name TEXT NOT NULL,
            provider TEXT NOT NULL,
            enabled BOOLEAN DEFAULT 0,
            api_key TEXT DEFAULT '',
            created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
            updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (id, user_id)
        );
        CREATE TABLE exchanges (
            id TEXT NOT NULL,
            user_id TEXT NOT NULL DEFAULT 'default',
            name TEXT NOT NULL,
            type TEXT NOT NULL,
            enabled BOOLEAN DEFAULT 0,
            api_key TEXT DEFAULT '',
            secret_key TEXT DEFAULT '',
            testnet BOOLEAN DEFAULT 0,
            created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
            updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (id, user_id)
        );
        CREATE TABLE traders (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL DEFAULT 'default',
            name TEXT NOT NULL,
            ai_model_id TEXT NOT NULL,
            exchange_id TEXT NOT NULL,
            initial_balance REAL NOT NULL,
            scan_interval_minutes INTEGER DEFAULT 3,
            is_running BOOLEAN DEFAULT 0,
            created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
            updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
        );
        CREATE TABLE users (
            id TEXT PRIMARY KEY,
            email TEXT UNIQUE NOT NULL,
            password_hash TEXT NOT NULL,
            created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
            updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
        );
        CREATE TABLE system_config (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
        );
        """
    )
    conn.executemany(
        "INSERT INTO ai_models (id, user_id, name, provider, enabled, api_key) VALUES (?, ?, ?, ?, ?, ?)",
        [
            ("deepseek", "default", "DeepSeek", "deepseek", 0, ""),
            ("qwen", "default", "Qwen", "qwen", 0, ""),
            ("deepseek", "user1", "DeepSeek", "deepseek", 1, "sk-user1"),
        ],
    )
    conn.executemany(
        "INSERT INTO exchanges (id, user_id, name, type, enabled, api_key, secret_key) "
        "VALUES (?, ?, ?, ?, ?, ?, ?)",
        [
            ("binance", "default", "Binance Futures", "binance", 0, "", ""),
            ("binance", "user1", "Binance Futures", "binance", 1, "bn-key", "bn-secret"),
        ],
    )
    conn.execute(
        "INSERT INTO users (id, email, password_hash) VALUES ('user1', 'user1@example.com', 'hash')"
    )
    conn.executemany(
        "INSERT INTO traders (id, user_id, name, ai_model_id, exchange_id, initial_balance) "
        "VALUES (?, ?, ?, ?, ?, ?)",
        [
            ("t1", "user1", "Trader One", "deepseek", "binance", 1000.0),
            ("t2", "user1", "Trader Two", "qwen", "binance", 500.0),
        ],
    )
    conn.execute("INSERT INTO system_config (key, value) VALUES ('max_daily_loss', '3.5')")
    conn.commit()
    conn.close()


@pytest.fixture
def legacy_db(db_path) -> Path:
    create_legacy_schema(db_path)
    return db_path
