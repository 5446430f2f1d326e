"""
Default data seeding.

Runs after the schema is current. Every insert is conditional on absence,
so seeding is idempotent and never touches user-modified values.
"""

from pathlib import Path
from typing import Optional

from ..defaults import DEFAULT_AI_MODELS, DEFAULT_EXCHANGES, DEFAULT_SYSTEM_CONFIG
from ..exceptions import DuplicateError
from ..logger import LogEvent, get_logger, log_store_event
from ..models import DEFAULT_OWNER

logger = get_logger(__name__)


class DefaultDataSeeder:
    """Inserts the baseline catalog and system settings through the store API."""

    def __init__(self, store, admin_mode: bool = False, beta_codes_file: Optional[Path] = None):
        self.store = store
        self.admin_mode = admin_mode
        self.beta_codes_file = beta_codes_file

    async def seed_defaults(self) -> int:
        """Returns the number of records inserted."""
        inserted = 0

        for entry in DEFAULT_AI_MODELS:
            try:
                await self.store.create_ai_model(
                    DEFAULT_OWNER, entry.model_id, entry.name, entry.provider, enabled=False
                )
            except DuplicateError:
                continue
            inserted += 1
            log_store_event(logger, LogEvent.SEED_INSERTED, f"Seeded AI model {entry.model_id}")

        for entry in DEFAULT_EXCHANGES:
            try:
                await self.store.create_exchange(
                    DEFAULT_OWNER, entry.exchange_id, entry.name, entry.type, enabled=False
                )
            except DuplicateError:
                continue
            inserted += 1
            log_store_event(logger, LogEvent.SEED_INSERTED, f"Seeded exchange {entry.exchange_id}")

        for key, value in DEFAULT_SYSTEM_CONFIG.items():
            if await self.store.ensure_system_config(key, value):
                inserted += 1

        if self.admin_mode and await self.store.ensure_admin_user():
            inserted += 1

        if self.beta_codes_file is not None:
            if self.beta_codes_file.exists():
                inserted += await self.store.load_beta_codes_from_file(self.beta_codes_file)
            else:
                logger.warning(f"Beta code file {self.beta_codes_file} not found, skipping")

        log_store_event(
            logger, LogEvent.SEED_COMPLETE, f"Seeding complete, {inserted} records inserted",
            inserted=inserted,
        )
        return inserted
