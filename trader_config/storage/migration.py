"""
Schema migration driver shared by both backends.

Migration sequence on every open:
1. ``prepare()``: baseline structures and additive (non-destructive) changes
2. read the stored generation marker
3. for each pending step: ``detect()`` whether it is already in
   effect (destructive steps are then validated before the marker is
   recorded); if not, back up once, then transform + validate + record
4. ``finalize()``: indexes and counter reconciliation

Destructive steps are gated by the generation marker; ``detect()`` only
short-circuits a step whose effect is already present (e.g. a store migrated
by an older build that predates the marker).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..exceptions import IntegrityError, SchemaError, StoreError
from ..logger import LogEvent, get_logger, log_store_event
from ..models import DEFAULT_OWNER, as_datetime

logger = get_logger(__name__)

BASELINE_GENERATION = 1
REKEY_GENERATION = 2
CURRENT_GENERATION = REKEY_GENERATION

# Fields every record of a family must carry once the schema is current
REQUIRED_FIELDS: Dict[str, Tuple[str, ...]] = {
    "ai_models": ("id", "model_id", "user_id", "name", "provider", "enabled", "api_key"),
    "exchanges": (
        "id", "exchange_id", "user_id", "name", "type", "enabled", "api_key", "secret_key",
    ),
    "traders": ("id", "user_id", "name", "ai_model_id", "exchange_id", "initial_balance"),
}


@dataclass
class MigrationStep:
    """One versioned schema change."""

    version: int
    name: str
    description: str
    destructive: bool
    detect: Callable[[], Awaitable[bool]]
    transform: Callable[[], Awaitable[None]]


# =============================================================================
# Typed rows read from a pre-rekey store
# =============================================================================


@dataclass
class LegacyModelRow:
    """AI model row keyed by its business string (generation 1)."""

    legacy_key: str
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

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "LegacyModelRow":
        key = row.get("model_id") or row.get("id")
        if key is None or key == "":
            raise SchemaError(f"AI model row without a key: user={row.get('user_id')!r}")
        return cls(
            legacy_key=str(key),
            user_id=row.get("user_id") or DEFAULT_OWNER,
            name=row.get("name") or "",
            provider=row.get("provider") or "",
            display_name=row.get("display_name") or "",
            enabled=bool(row.get("enabled") or False),
            api_key=row.get("api_key") or "",
            custom_api_url=row.get("custom_api_url") or "",
            custom_model_name=row.get("custom_model_name") or "",
            created_at=as_datetime(row.get("created_at")),
            updated_at=as_datetime(row.get("updated_at")),
        )


@dataclass
class LegacyExchangeRow:
    """Exchange row keyed by its business string (generation 1)."""

    legacy_key: str
    user_id: str
    name: str = ""
    type: str = ""
    display_name: str = ""
    enabled: bool = False
    api_key: str = ""
    secret_key: str = ""
    testnet: bool = False
    hyperliquid_wallet_addr: str = ""
    aster_user: str = ""
    aster_signer: str = ""
    aster_private_key: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "LegacyExchangeRow":
        key = row.get("exchange_id") or row.get("id")
        if key is None or key == "":
            raise SchemaError(f"Exchange row without a key: user={row.get('user_id')!r}")
        return cls(
            legacy_key=str(key),
            user_id=row.get("user_id") or DEFAULT_OWNER,
            name=row.get("name") or "",
            type=row.get("type") or "",
            display_name=row.get("display_name") or "",
            enabled=bool(row.get("enabled") or False),
            api_key=row.get("api_key") or "",
            secret_key=row.get("secret_key") or "",
            testnet=bool(row.get("testnet") or False),
            hyperliquid_wallet_addr=row.get("hyperliquid_wallet_addr") or "",
            aster_user=row.get("aster_user") or "",
            aster_signer=row.get("aster_signer") or "",
            aster_private_key=row.get("aster_private_key") or "",
            created_at=as_datetime(row.get("created_at")),
            updated_at=as_datetime(row.get("updated_at")),
        )


@dataclass
class TraderLink:
    """A trader's references before they are rewritten to integer ids."""

    trader_id: str
    user_id: str
    ai_model_ref: Any
    exchange_ref: Any

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "TraderLink":
        return cls(
            trader_id=str(row["id"]),
            user_id=row.get("user_id") or DEFAULT_OWNER,
            ai_model_ref=row.get("ai_model_id"),
            exchange_ref=row.get("exchange_id"),
        )


@dataclass(frozen=True)
class KeyMapping:
    user_id: str
    legacy_key: str
    new_id: int


@dataclass
class KeyMap:
    """(owner, legacy key) -> new integer id for one record family."""

    family: str
    _entries: Dict[Tuple[str, str], int] = field(default_factory=dict)

    def add(self, mapping: KeyMapping) -> None:
        self._entries[(mapping.user_id, mapping.legacy_key)] = mapping.new_id

    def resolve(self, user_id: str, ref: Any) -> int:
        """
        Resolve a trader reference to a new id.

        Integer references are already rewritten and returned as-is. String
        references are looked up for the trader's owner first, then for the
        ``default`` owner. Unresolvable references become 0, which the
        integrity check reports as orphaned.
        """
        if isinstance(ref, int) and not isinstance(ref, bool):
            return ref
        key = "" if ref is None else str(ref)
        for owner in (user_id, DEFAULT_OWNER):
            new_id = self._entries.get((owner, key))
            if new_id is not None:
                return new_id
        if key.isdigit():
            return int(key)
        logger.warning(f"Unmapped {self.family} reference {key!r} for user {user_id!r}")
        return 0

    def __len__(self) -> int:
        return len(self._entries)


# =============================================================================
# Integrity report
# =============================================================================


@dataclass
class IntegrityReport:
    """Counts collected by a backend after destructive steps."""

    missing_fields: Dict[str, List[str]] = field(default_factory=dict)
    orphan_ai_model_refs: int = 0
    orphan_exchange_refs: int = 0
    trader_count: int = 0
    ai_model_count: int = 0
    exchange_count: int = 0

    def violations(self) -> List[str]:
        problems = []
        for family, names in sorted(self.missing_fields.items()):
            if names:
                problems.append(f"{family} missing required fields: {', '.join(names)}")
        if self.orphan_ai_model_refs:
            problems.append(
                f"{self.orphan_ai_model_refs} trader(s) reference a missing AI model"
            )
        if self.orphan_exchange_refs:
            problems.append(
                f"{self.orphan_exchange_refs} trader(s) reference a missing exchange"
            )
        if self.trader_count > 0 and self.ai_model_count == 0:
            problems.append(f"{self.trader_count} trader(s) exist but no AI models")
        if self.trader_count > 0 and self.exchange_count == 0:
            problems.append(f"{self.trader_count} trader(s) exist but no exchanges")
        return problems


# =============================================================================
# Driver
# =============================================================================


class SchemaManager(ABC):
    """Brings a backend's schema to ``CURRENT_GENERATION``."""

    def __init__(self, backup_dir: Optional[Path] = None):
        self.backup_dir = Path(backup_dir) if backup_dir else None
        self._generation: Optional[int] = None

    @property
    def generation(self) -> Optional[int]:
        """Generation cached by the last ``ensure_schema`` run."""
        return self._generation

    @abstractmethod
    def steps(self) -> List[MigrationStep]:
        """Versioned steps in ascending order."""

    @abstractmethod
    async def prepare(self) -> None:
        """Create baseline structures and apply additive changes."""

    @abstractmethod
    async def read_generation(self) -> int:
        """Highest recorded generation, 0 when none."""

    @abstractmethod
    async def record_generation(self, version: int, description: str) -> None:
        """Persist the generation marker."""

    @abstractmethod
    async def apply_step(self, step: MigrationStep) -> None:
        """Run transform + validate + record for one step, atomically where supported."""

    @abstractmethod
    async def backup(self, reason: str) -> Optional[Path]:
        """Write a point-in-time copy of the store."""

    @abstractmethod
    async def collect_integrity(self) -> IntegrityReport:
        """Count missing fields and orphan references."""

    @abstractmethod
    async def finalize(self) -> None:
        """Post-migration structures and counter reconciliation."""

    async def validate(self) -> None:
        """Raise IntegrityError when the store is internally inconsistent."""
        report = await self.collect_integrity()
        violations = report.violations()
        if violations:
            message = "; ".join(violations)
            log_store_event(
                logger,
                LogEvent.INTEGRITY_VIOLATION,
                message,
                level="error",
                violations=len(violations),
            )
            raise IntegrityError(f"Post-migration integrity check failed: {message}", violations)

    async def _safe_backup(self, reason: str) -> Optional[Path]:
        """Back up; a failure is logged and never blocks the migration."""
        try:
            path = await self.backup(reason)
        except Exception as e:
            log_store_event(
                logger,
                LogEvent.BACKUP_FAILED,
                f"Backup before '{reason}' failed, continuing without it: {e}",
                level="warning",
            )
            return None
        log_store_event(logger, LogEvent.BACKUP_CREATED, f"Backup created at {path}", path=str(path))
        return path

    async def ensure_schema(self) -> int:
        """
        Bring the schema to the current generation.

        Returns:
            The resulting generation

        Raises:
            SchemaError: A step could not be executed
            IntegrityError: Post-migration validation failed
        """
        await self.prepare()

        stored = self._generation
        if stored is None:
            stored = await self.read_generation()

        pending = [s for s in self.steps() if s.version > stored]
        if not pending:
            log_store_event(
                logger, LogEvent.SCHEMA_CURRENT, f"Schema at generation {stored}", generation=stored
            )

        backed_up = False
        for step in pending:
            if await step.detect():
                logger.info(f"Migration {step.name} already in effect, recording marker")
                if step.destructive:
                    await self.validate()
                await self.record_generation(step.version, step.description)
                stored = step.version
                continue

            if step.destructive and not backed_up:
                await self._safe_backup(step.name)
                backed_up = True

            log_store_event(
                logger,
                LogEvent.MIGRATION_STARTED,
                f"Applying migration {step.version}: {step.description}",
                version=step.version,
            )
            try:
                await self.apply_step(step)
            except (SchemaError, IntegrityError):
                log_store_event(
                    logger,
                    LogEvent.MIGRATION_FAILED,
                    f"Migration {step.name} failed",
                    level="error",
                    version=step.version,
                )
                raise
            except StoreError as e:
                raise SchemaError(f"Migration {step.name} failed: {e}") from e
            log_store_event(
                logger,
                LogEvent.MIGRATION_APPLIED,
                f"Migration {step.version} applied",
                version=step.version,
            )
            stored = step.version

        await self.finalize()
        self._generation = stored
        return stored
