"""
Store configuration with Pydantic validation and environment-based settings.

Selects the backend (SQLite or MongoDB), its connection parameters, the
credential vault key material and the store-wide operation timeout.
"""

import os
from enum import Enum
from pathlib import Path
from typing import List, Optional
from urllib.parse import urlsplit

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator


class StoreBackend(str, Enum):
    """Backend enumeration."""

    SQLITE = "sqlite"
    MONGO = "mongo"


class SQLiteConfig(BaseModel):
    """Embedded relational backend configuration."""

    path: Path = Field(default=Path("config.db"), description="Database file path")
    pool_size: int = Field(default=5, ge=1, le=64, description="Pooled connections")
    busy_timeout_ms: int = Field(
        default=10_000, ge=0, description="SQLite busy timeout in milliseconds"
    )


class MongoConfig(BaseModel):
    """Document-store backend configuration."""

    uri: str = Field(default="mongodb://localhost:27017", description="Connection string")
    database: str = Field(default="trader_config", description="Default database name")
    timeout_ms: int = Field(
        default=10_000, ge=100, description="Server selection and operation timeout"
    )

    @field_validator("uri")
    @classmethod
    def validate_uri(cls, v: str) -> str:
        if not v.startswith(("mongodb://", "mongodb+srv://")):
            raise ValueError("Mongo URI must start with mongodb:// or mongodb+srv://")
        return v

    @property
    def database_name(self) -> str:
        """Database named in the URI path, falling back to ``database``."""
        path = urlsplit(self.uri).path.strip("/")
        return path or self.database


class VaultConfig(BaseModel):
    """Credential vault key material. Empty means secrets are stored in plaintext."""

    keys: List[str] = Field(default_factory=list, description="Fernet keys, newest first")
    passphrase: Optional[str] = Field(default=None, description="Passphrase for key derivation")
    salt: str = Field(default="trader-config", description="Key derivation salt")

    @property
    def configured(self) -> bool:
        return bool(self.keys) or bool(self.passphrase)


class StoreConfig(BaseModel):
    """Main configuration class combining all sub-configurations."""

    backend: StoreBackend = Field(default=StoreBackend.SQLITE)
    sqlite: SQLiteConfig = Field(default_factory=SQLiteConfig)
    mongo: MongoConfig = Field(default_factory=MongoConfig)
    vault: VaultConfig = Field(default_factory=VaultConfig)

    operation_timeout: float = Field(
        default=10.0, gt=0, le=600, description="Per-operation timeout in seconds"
    )
    backup_dir: Optional[Path] = Field(
        default=None, description="Directory for pre-migration backups"
    )
    admin_mode: bool = Field(default=False, description="Ensure the reserved admin user")
    beta_codes_file: Optional[Path] = Field(
        default=None, description="Beta code list loaded at start-up"
    )

    @model_validator(mode="after")
    def validate_backup_dir(self) -> "StoreConfig":
        if self.backup_dir is not None and self.backup_dir.exists():
            if not self.backup_dir.is_dir():
                raise ValueError(f"Backup dir {self.backup_dir} is not a directory")
        return self


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def load_config_from_env() -> StoreConfig:
    """
    Load configuration from environment variables with validation.

    Environment variables:
    - STORE_BACKEND=sqlite|mongo
    - STORE_SQLITE_PATH, STORE_SQLITE_POOL_SIZE, STORE_SQLITE_BUSY_TIMEOUT_MS
    - STORE_MONGO_URI, STORE_MONGO_DATABASE, STORE_MONGO_TIMEOUT_MS
    - STORE_VAULT_KEYS (comma separated), STORE_VAULT_PASSPHRASE, STORE_VAULT_SALT
    - STORE_OPERATION_TIMEOUT, STORE_BACKUP_DIR, STORE_ADMIN_MODE,
      STORE_BETA_CODES_FILE

    Returns:
        StoreConfig: Validated configuration object
    """
    load_dotenv()

    backup_dir = os.getenv("STORE_BACKUP_DIR")
    beta_codes_file = os.getenv("STORE_BETA_CODES_FILE")

    config_dict = {
        "backend": os.getenv("STORE_BACKEND", "sqlite").lower(),
        "sqlite": {
            "path": os.getenv("STORE_SQLITE_PATH", "config.db"),
            "pool_size": int(os.getenv("STORE_SQLITE_POOL_SIZE", "5")),
            "busy_timeout_ms": int(os.getenv("STORE_SQLITE_BUSY_TIMEOUT_MS", "10000")),
        },
        "mongo": {
            "uri": os.getenv("STORE_MONGO_URI", "mongodb://localhost:27017"),
            "database": os.getenv("STORE_MONGO_DATABASE", "trader_config"),
            "timeout_ms": int(os.getenv("STORE_MONGO_TIMEOUT_MS", "10000")),
        },
        "vault": {
            "keys": [
                k.strip() for k in os.getenv("STORE_VAULT_KEYS", "").split(",") if k.strip()
            ],
            "passphrase": os.getenv("STORE_VAULT_PASSPHRASE") or None,
            "salt": os.getenv("STORE_VAULT_SALT", "trader-config"),
        },
        "operation_timeout": float(os.getenv("STORE_OPERATION_TIMEOUT", "10")),
        "backup_dir": backup_dir or None,
        "admin_mode": _env_bool("STORE_ADMIN_MODE"),
        "beta_codes_file": beta_codes_file or None,
    }

    return StoreConfig(**config_dict)


__all__ = [
    "StoreConfig",
    "StoreBackend",
    "SQLiteConfig",
    "MongoConfig",
    "VaultConfig",
    "load_config_from_env",
]
