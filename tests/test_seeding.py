"""Tests for default data seeding."""

import pytest

from trader_config.defaults import DEFAULT_SYSTEM_CONFIG
from trader_config.models import DEFAULT_OWNER
from trader_config.storage.seeding import DefaultDataSeeder
from trader_config.storage.sqlite import SqliteRecordStore


class TestDefaultCatalog:
    @pytest.mark.asyncio
    async def test_catalog_seeded_disabled(self, store):
        models = await store.list_ai_models(DEFAULT_OWNER)
        exchanges = await store.list_exchanges(DEFAULT_OWNER)

        assert [m.model_id for m in models] == ["deepseek", "qwen"]
        assert [e.exchange_id for e in exchanges] == ["binance", "hyperliquid", "aster"]
        assert not any(m.enabled for m in models)
        assert not any(e.enabled for e in exchanges)

    @pytest.mark.asyncio
    async def test_system_config_seeded(self, store):
        assert await store.get_system_config("beta_mode") == "false"
        for key, value in DEFAULT_SYSTEM_CONFIG.items():
            assert await store.get_system_config(key) == value

    @pytest.mark.asyncio
    async def test_seeding_twice_inserts_nothing(self, store):
        seeder = DefaultDataSeeder(store)
        assert await seeder.seed_defaults() == 0
        assert len(await store.list_ai_models(DEFAULT_OWNER)) == 2
        assert len(await store.list_exchanges(DEFAULT_OWNER)) == 3

    @pytest.mark.asyncio
    async def test_user_values_not_overwritten(self, store):
        await store.set_system_config("max_daily_loss", "2.5")
        await store.upsert_exchange(DEFAULT_OWNER, "binance", True, api_key="k")

        await DefaultDataSeeder(store).seed_defaults()

        assert await store.get_system_config("max_daily_loss") == "2.5"
        binance = (await store.list_exchanges(DEFAULT_OWNER))[0]
        assert binance.enabled is True
        assert binance.api_key == "k"


class TestOptionalSeeding:
    @pytest.mark.asyncio
    async def test_admin_mode_creates_admin(self, db_path, backup_dir):
        store = SqliteRecordStore(db_path, backup_dir=backup_dir, admin_mode=True)
        await store.open()
        try:
            admin = await store.get_user_by_id("admin")
            assert admin.email == "admin@localhost"
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_beta_codes_file_loaded(self, db_path, backup_dir, tmp_path):
        codes = tmp_path / "beta_codes.txt"
        codes.write_text("# invites\nCODE1\nCODE2\n")

        store = SqliteRecordStore(db_path, backup_dir=backup_dir, beta_codes_file=codes)
        await store.open()
        try:
            stats = await store.beta_code_stats()
            assert stats.total == 2
            assert await store.validate_beta_code("CODE1") is True
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_missing_beta_codes_file_is_skipped(self, db_path, backup_dir, tmp_path):
        store = SqliteRecordStore(
            db_path, backup_dir=backup_dir, beta_codes_file=tmp_path / "absent.txt"
        )
        await store.open()
        try:
            assert (await store.beta_code_stats()).total == 0
        finally:
            await store.close()
