"""Tests for MongoDB schema migration: integer re-key, markers, indexes."""

import pytest

from trader_config.exceptions import DuplicateError, IntegrityError
from trader_config.storage.migration import CURRENT_GENERATION
from trader_config.storage.mongo import MongoRecordStore

DB_NAME = "trader_config_test"


def open_store(client, backup_dir):
    return MongoRecordStore(client, DB_NAME, verify_connection=False, backup_dir=backup_dir)


async def seed_legacy(db):
    await db.ai_models.insert_many(
        [
            {"id": "deepseek", "user_id": "default", "name": "DeepSeek",
             "provider": "deepseek", "enabled": False, "api_key": ""},
            {"id": "deepseek", "user_id": "user1", "name": "DeepSeek",
             "provider": "deepseek", "enabled": True, "api_key": "sk-user1"},
        ]
    )
    await db.exchanges.insert_many(
        [
            {"id": "binance", "user_id": "default", "name": "Binance Futures",
             "type": "binance", "enabled": False, "api_key": "", "secret_key": ""},
        ]
    )
    await db.traders.insert_one(
        {"id": "t1", "user_id": "user1", "name": "Trader One", "ai_model_id": "deepseek",
         "exchange_id": "binance", "initial_balance": 1000.0}
    )


class TestMongoFreshDatabase:
    @pytest.mark.asyncio
    async def test_creates_current_generation(self, mongo_client, backup_dir):
        store = open_store(mongo_client, backup_dir)
        await store.open()
        try:
            assert store.schema_generation == CURRENT_GENERATION
            markers = await store.db.schema_migrations.find({}).to_list(length=None)
            assert sorted(m["version"] for m in markers) == [1, 2]
        finally:
            await store.close()

        assert not backup_dir.exists()

    @pytest.mark.asyncio
    async def test_unique_business_key_enforced(self, mongo_store):
        with pytest.raises(DuplicateError):
            await mongo_store._insert_ai_model(
                (await mongo_store.list_ai_models("default"))[0]
            )


class TestMongoLegacyMigration:
    @pytest.mark.asyncio
    async def test_rekeys_and_relinks(self, mongo_client, backup_dir):
        await seed_legacy(mongo_client[DB_NAME])

        store = open_store(mongo_client, backup_dir)
        await store.open()
        try:
            models = await store.list_ai_models("user1")
            assert len(models) == 1
            assert isinstance(models[0].id, int)
            assert models[0].model_id == "deepseek"

            full = await store.get_trader_full_config("user1", "t1")
            assert full.ai_model.id == models[0].id
            assert full.ai_model.api_key == "sk-user1"
            assert full.exchange.exchange_id == "binance"
            assert full.exchange.user_id == "default"
        finally:
            await store.close()

        backups = list(backup_dir.glob(f"{DB_NAME}.backup_integer_rekey_*"))
        assert len(backups) == 1
        assert (backups[0] / "ai_models.json").exists()

    @pytest.mark.asyncio
    async def test_second_open_is_a_no_op(self, mongo_client, backup_dir):
        await seed_legacy(mongo_client[DB_NAME])

        store = open_store(mongo_client, backup_dir)
        await store.open()
        first = await store.get_trader_full_config("user1", "t1")
        await store.close()

        store = open_store(mongo_client, backup_dir)
        await store.open()
        try:
            second = await store.get_trader_full_config("user1", "t1")
            assert second.ai_model.id == first.ai_model.id
            assert second.exchange.id == first.exchange.id
        finally:
            await store.close()

        assert len(list(backup_dir.iterdir())) == 1

    @pytest.mark.asyncio
    async def test_partially_migrated_documents_complete(self, mongo_client, backup_dir):
        db = mongo_client[DB_NAME]
        await seed_legacy(db)
        # One document already rewritten by an interrupted run
        await db.ai_models.update_one(
            {"user_id": "default"}, {"$set": {"id": 7, "model_id": "deepseek"}}
        )
        await db.counters.insert_one({"_id": "ai_models", "seq": 7})

        store = open_store(mongo_client, backup_dir)
        await store.open()
        try:
            default_models = await store.list_ai_models("default")
            assert default_models[0].id == 7
            user_models = await store.list_ai_models("user1")
            assert user_models[0].id > 7
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_orphan_reference_fails(self, mongo_client, backup_dir):
        db = mongo_client[DB_NAME]
        await seed_legacy(db)
        await db.traders.insert_one(
            {"id": "t2", "user_id": "user1", "name": "Orphan", "ai_model_id": "gpt4",
             "exchange_id": "binance", "initial_balance": 10.0}
        )

        store = open_store(mongo_client, backup_dir)
        with pytest.raises(IntegrityError):
            await store.open()
        await store.close()

        markers = await db.schema_migrations.find({}).to_list(length=None)
        assert [m["version"] for m in markers] == [1]

    @pytest.mark.asyncio
    async def test_orphan_reference_survives_and_fails_again(self, mongo_client, backup_dir):
        db = mongo_client[DB_NAME]
        await seed_legacy(db)
        await db.traders.insert_one(
            {"id": "t2", "user_id": "user1", "name": "Orphan", "ai_model_id": "gpt4",
             "exchange_id": "binance", "initial_balance": 10.0}
        )

        for _ in range(2):
            store = open_store(mongo_client, backup_dir)
            with pytest.raises(IntegrityError):
                await store.open()
            assert not store.ready
            await store.close()

            orphan = await db.traders.find_one({"id": "t2"})
            assert orphan["ai_model_id"] == "gpt4"
            assert orphan["exchange_id"] == "binance"

        markers = await db.schema_migrations.find({}).to_list(length=None)
        assert [m["version"] for m in markers] == [1]

    @pytest.mark.asyncio
    async def test_rekeyed_store_without_marker_is_still_validated(self, mongo_client, backup_dir):
        db = mongo_client[DB_NAME]
        await db.ai_models.insert_one(
            {"id": 1, "model_id": "deepseek", "user_id": "default", "name": "DeepSeek",
             "provider": "deepseek", "enabled": False, "api_key": ""}
        )
        await db.exchanges.insert_one(
            {"id": 1, "exchange_id": "binance", "user_id": "default", "name": "Binance Futures",
             "type": "binance", "enabled": False, "api_key": "", "secret_key": ""}
        )
        await db.traders.insert_one(
            {"id": "t1", "user_id": "user1", "name": "Dangling", "ai_model_id": 0,
             "exchange_id": 1, "initial_balance": 100.0}
        )

        store = open_store(mongo_client, backup_dir)
        with pytest.raises(IntegrityError):
            await store.open()
        await store.close()

        assert await db.schema_migrations.count_documents({"version": 2}) == 0
